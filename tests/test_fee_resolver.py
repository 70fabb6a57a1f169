import asyncio

from vendor_billing.billing import fees
from vendor_billing.billing.state import BillingInterval

FEES = {
    "subscription-awaken-monthly": {"percent": 0, "fixed": 3900, "currency": "AUD"},
    "subscription-awaken-annual": {"percent": 0, "fixed": 39000},
    "subscription-manifest-monthly": {"percent": 0, "fixed": 0, "currency": "aud"},
}


def test_fee_key_normalizes_tier() -> None:
    assert fees.fee_key("Awaken", BillingInterval.MONTHLY) == "subscription-awaken-monthly"
    assert fees.fee_key(" transcend ", BillingInterval.ANNUAL) == "subscription-transcend-annual"


def test_tier_fee_lookup() -> None:
    monthly = fees.tier_fee(FEES, "awaken", BillingInterval.MONTHLY)
    annual = fees.tier_fee(FEES, "awaken", BillingInterval.ANNUAL)

    assert monthly == fees.TierFee(amount=3900, currency="aud")
    assert annual == fees.TierFee(amount=39000, currency="aud")
    assert fees.tier_fee(FEES, "manifest", BillingInterval.MONTHLY) is None
    assert fees.tier_fee(FEES, "illuminate", BillingInterval.MONTHLY) is None
    assert fees.tier_fee(None, "awaken", BillingInterval.MONTHLY) is None
    assert fees.tier_fee(FEES, None, BillingInterval.MONTHLY) is None


def test_fee_resolver_caches_loaded_config() -> None:
    calls: list[int] = []

    async def loader():
        calls.append(1)
        return FEES

    resolver = fees.FeeResolver(loader=loader)

    first = asyncio.run(resolver.load())
    second = asyncio.run(resolver.load())

    assert first is FEES
    assert second is FEES
    assert len(calls) == 1
    assert resolver.monthly_threshold(first, "awaken") == 3900
    assert resolver.monthly_threshold(first, "manifest") is None

    resolver.clear()
    asyncio.run(resolver.load())
    assert len(calls) == 2


def test_fee_resolver_does_not_cache_failures() -> None:
    outcomes: list[object] = [RuntimeError("supabase down"), None, FEES]

    async def loader():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    resolver = fees.FeeResolver(loader=loader)

    assert asyncio.run(resolver.load()) is None
    assert asyncio.run(resolver.load()) is None
    assert asyncio.run(resolver.load()) is FEES
    assert outcomes == []


def test_load_fee_config_document_reads_settings_row(monkeypatch) -> None:
    requested: list[tuple[str, str]] = []

    async def fake_select_system_setting(setting_id: str, doc_type: str):
        requested.append((setting_id, doc_type))
        return FEES

    monkeypatch.setattr(fees, "select_system_setting", fake_select_system_setting)

    assert asyncio.run(fees.load_fee_config_document()) is FEES
    assert requested == [("spiriverse", "fees-config")]
