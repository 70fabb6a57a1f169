from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

import httpx
from fastapi import HTTPException, status

from vendor_billing.core.settings import get_settings

VENDORS_TABLE = "vendors"
SYSTEM_SETTINGS_TABLE = "system_settings"
SYSTEM_STATUS_TABLE = "system_status"
VENDOR_SELECT_COLUMNS = "id,name,contact,stripe,subscription"

PatchOp = Literal["set", "remove", "add"]


@dataclass(frozen=True)
class PatchOperation:
    op: PatchOp
    path: str
    value: Any = None

    def as_dict(self) -> dict[str, Any]:
        if self.op == "remove":
            return {"op": self.op, "path": self.path}
        return {"op": self.op, "path": self.path, "value": self.value}


def set_field(path: str, value: Any) -> PatchOperation:
    return PatchOperation(op="set", path=path, value=value)


def remove_field(path: str) -> PatchOperation:
    return PatchOperation(op="remove", path=path)


def append_item(path: str, value: Any) -> PatchOperation:
    return PatchOperation(op="add", path=f"{path.rstrip('/')}/-", value=value)


def supabase_service_role_headers() -> dict[str, str]:
    settings = get_settings()
    service_role_key = settings.SUPABASE_SERVICE_ROLE_KEY
    return {
        "Authorization": f"Bearer {service_role_key}",
        "apikey": service_role_key,
        "Accept": "application/json",
    }


def _rest_url(resource: str) -> str:
    settings = get_settings()
    return f"{settings.SUPABASE_URL.rstrip('/')}/rest/v1/{resource}"


def _supabase_error_detail(response: httpx.Response) -> str | None:
    payload: Any
    try:
        payload = response.json()
    except ValueError:
        return None

    if not isinstance(payload, dict):
        return None

    detail = payload.get("message")
    if isinstance(detail, str) and detail:
        return detail

    detail = payload.get("detail")
    if isinstance(detail, str) and detail:
        return detail

    return None


def _validated_list_payload(payload: Any, error_message: str) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=error_message,
        )

    for item in payload:
        if not isinstance(item, dict):
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=error_message,
            )

    return payload


async def select_vendors(filters: dict[str, str], *, limit: int = 500) -> list[dict[str, Any]]:
    settings = get_settings()
    params: dict[str, str] = {
        "select": VENDOR_SELECT_COLUMNS,
        "order": "id.asc",
        "limit": str(max(1, limit)),
    }
    params.update(filters)

    try:
        async with httpx.AsyncClient(timeout=settings.STORE_TIMEOUT_SECONDS) as client:
            response = await client.get(
                _rest_url(VENDORS_TABLE),
                params=params,
                headers=supabase_service_role_headers(),
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to query vendors from Supabase.",
        ) from exc

    return _validated_list_payload(response.json(), "Invalid vendors response from Supabase.")


async def select_system_setting(setting_id: str, doc_type: str) -> dict[str, Any] | None:
    settings = get_settings()
    params = {
        "select": "id,doc_type,data",
        "id": f"eq.{setting_id}",
        "doc_type": f"eq.{doc_type}",
        "limit": "1",
    }

    try:
        async with httpx.AsyncClient(timeout=settings.STORE_TIMEOUT_SECONDS) as client:
            response = await client.get(
                _rest_url(SYSTEM_SETTINGS_TABLE),
                params=params,
                headers=supabase_service_role_headers(),
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to fetch system setting from Supabase.",
        ) from exc

    rows = _validated_list_payload(response.json(), "Invalid system settings response from Supabase.")
    if not rows:
        return None
    data = rows[0].get("data")
    return data if isinstance(data, dict) else None


async def patch_vendor_fields(
    vendor_id: str,
    operations: list[PatchOperation],
    *,
    actor: str,
) -> None:
    if not operations:
        return

    settings = get_settings()
    payload = {
        "p_vendor_id": vendor_id,
        "p_operations": [operation.as_dict() for operation in operations],
        "p_actor": actor,
    }
    headers = supabase_service_role_headers()
    headers["Prefer"] = "return=minimal"

    try:
        async with httpx.AsyncClient(timeout=settings.STORE_TIMEOUT_SECONDS) as client:
            response = await client.post(
                _rest_url("rpc/patch_vendor_fields"),
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        detail = _supabase_error_detail(exc.response) or "Failed to patch vendor."
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail) from exc
    except httpx.HTTPError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to patch vendor.",
        ) from exc


async def upsert_system_status(status_id: str, payload: dict[str, Any]) -> None:
    settings = get_settings()
    headers = supabase_service_role_headers()
    headers["Prefer"] = "resolution=merge-duplicates,return=minimal"

    try:
        async with httpx.AsyncClient(timeout=settings.STORE_TIMEOUT_SECONDS) as client:
            response = await client.post(
                _rest_url(SYSTEM_STATUS_TABLE),
                params={"on_conflict": "id"},
                json={
                    "id": status_id,
                    "updated_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                    "payload": payload,
                },
                headers=headers,
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to upsert system status.",
        ) from exc
