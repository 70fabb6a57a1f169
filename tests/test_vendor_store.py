import asyncio

import httpx
import pytest
from fastapi import HTTPException

from vendor_billing.core import vendor_store

SUPABASE_REST = "https://example.supabase.co/rest/v1"


class FakeResponse:
    def __init__(self, payload) -> None:
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return self._payload


def test_select_vendors_builds_postgrest_query(monkeypatch) -> None:
    class FakeAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            self.kwargs = kwargs

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb) -> None:
            return None

        async def get(self, url: str, params: dict[str, str], headers: dict[str, str]) -> FakeResponse:
            assert url == f"{SUPABASE_REST}/vendors"
            assert headers["Authorization"] == "Bearer test-service-role-key"
            assert headers["apikey"] == "test-service-role-key"
            assert params == {
                "select": "id,name,contact,stripe,subscription",
                "order": "id.asc",
                "limit": "50",
                "subscription->>billingStatus": "eq.active",
            }
            return FakeResponse([{"id": "vendor-1", "subscription": {}}])

    monkeypatch.setattr(vendor_store.httpx, "AsyncClient", FakeAsyncClient)

    rows = asyncio.run(vendor_store.select_vendors({"subscription->>billingStatus": "eq.active"}, limit=50))

    assert rows == [{"id": "vendor-1", "subscription": {}}]


def test_select_vendors_rejects_non_list_payload(monkeypatch) -> None:
    class FakeAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb) -> None:
            return None

        async def get(self, url: str, params: dict[str, str], headers: dict[str, str]) -> FakeResponse:
            return FakeResponse({"message": "unexpected"})

    monkeypatch.setattr(vendor_store.httpx, "AsyncClient", FakeAsyncClient)

    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(vendor_store.select_vendors({}))

    assert exc_info.value.status_code == 502


def test_select_vendors_maps_transport_errors(monkeypatch) -> None:
    class FakeAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb) -> None:
            return None

        async def get(self, url: str, params: dict[str, str], headers: dict[str, str]) -> FakeResponse:
            raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(vendor_store.httpx, "AsyncClient", FakeAsyncClient)

    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(vendor_store.select_vendors({}))

    assert exc_info.value.status_code == 502
    assert exc_info.value.detail == "Failed to query vendors from Supabase."


def test_select_system_setting_returns_data_column(monkeypatch) -> None:
    payloads = [[{"id": "spiriverse", "doc_type": "fees-config", "data": {"subscription-awaken-monthly": {}}}], []]

    class FakeAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb) -> None:
            return None

        async def get(self, url: str, params: dict[str, str], headers: dict[str, str]) -> FakeResponse:
            assert url == f"{SUPABASE_REST}/system_settings"
            assert params["id"] == "eq.spiriverse"
            assert params["doc_type"] == "eq.fees-config"
            return FakeResponse(payloads.pop(0))

    monkeypatch.setattr(vendor_store.httpx, "AsyncClient", FakeAsyncClient)

    first = asyncio.run(vendor_store.select_system_setting("spiriverse", "fees-config"))
    second = asyncio.run(vendor_store.select_system_setting("spiriverse", "fees-config"))

    assert first == {"subscription-awaken-monthly": {}}
    assert second is None


def test_patch_vendor_fields_posts_operations(monkeypatch) -> None:
    captured: dict[str, object] = {}

    class FakeAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb) -> None:
            return None

        async def post(self, url: str, json: dict[str, object], headers: dict[str, str]) -> FakeResponse:
            captured["url"] = url
            captured["json"] = json
            captured["headers"] = headers
            return FakeResponse(None)

    monkeypatch.setattr(vendor_store.httpx, "AsyncClient", FakeAsyncClient)

    asyncio.run(
        vendor_store.patch_vendor_fields(
            "vendor-1",
            [
                vendor_store.set_field("/subscription/failedPaymentAttempts", 0),
                vendor_store.remove_field("/subscription/waived"),
                vendor_store.append_item("/subscription/billing_history", {"id": "record-1"}),
            ],
            actor="BILLING_PROCESSOR",
        )
    )

    assert captured["url"] == f"{SUPABASE_REST}/rpc/patch_vendor_fields"
    assert captured["headers"]["Prefer"] == "return=minimal"
    assert captured["json"] == {
        "p_vendor_id": "vendor-1",
        "p_operations": [
            {"op": "set", "path": "/subscription/failedPaymentAttempts", "value": 0},
            {"op": "remove", "path": "/subscription/waived"},
            {"op": "add", "path": "/subscription/billing_history/-", "value": {"id": "record-1"}},
        ],
        "p_actor": "BILLING_PROCESSOR",
    }


def test_patch_vendor_fields_skips_empty_operations(monkeypatch) -> None:
    class FakeAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            raise AssertionError("no request expected")

    monkeypatch.setattr(vendor_store.httpx, "AsyncClient", FakeAsyncClient)

    asyncio.run(vendor_store.patch_vendor_fields("vendor-1", [], actor="BILLING_PROCESSOR"))


def test_patch_vendor_fields_surfaces_supabase_message(monkeypatch) -> None:
    class FakeAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb) -> None:
            return None

        async def post(self, url: str, json: dict[str, object], headers: dict[str, str]) -> httpx.Response:
            return httpx.Response(
                400,
                json={"message": "vendor not found"},
                request=httpx.Request("POST", url),
            )

    monkeypatch.setattr(vendor_store.httpx, "AsyncClient", FakeAsyncClient)

    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(
            vendor_store.patch_vendor_fields(
                "vendor-404",
                [vendor_store.set_field("/subscription/payment_status", "failed")],
                actor="BILLING_PROCESSOR",
            )
        )

    assert exc_info.value.status_code == 502
    assert exc_info.value.detail == "vendor not found"


def test_upsert_system_status_merges_on_id(monkeypatch) -> None:
    captured: dict[str, object] = {}

    class FakeAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb) -> None:
            return None

        async def post(
            self,
            url: str,
            params: dict[str, str],
            json: dict[str, object],
            headers: dict[str, str],
        ) -> FakeResponse:
            captured.update({"url": url, "params": params, "json": json, "headers": headers})
            return FakeResponse(None)

    monkeypatch.setattr(vendor_store.httpx, "AsyncClient", FakeAsyncClient)

    asyncio.run(vendor_store.upsert_system_status("billing_processor", {"errors": 0}))

    assert captured["url"] == f"{SUPABASE_REST}/system_status"
    assert captured["params"] == {"on_conflict": "id"}
    assert captured["json"]["id"] == "billing_processor"
    assert captured["json"]["payload"] == {"errors": 0}
    assert str(captured["json"]["updated_at"]).endswith("Z")
    assert "resolution=merge-duplicates" in captured["headers"]["Prefer"]
