from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from cachetools import TTLCache

from vendor_billing.billing.state import BillingInterval
from vendor_billing.core.logging import get_logger
from vendor_billing.core.vendor_store import select_system_setting
from vendor_billing.worker.retry import sanitize_error

logger = get_logger("billing.fees")

FEE_CONFIG_ID = "spiriverse"
FEE_CONFIG_DOC_TYPE = "fees-config"
DEFAULT_CURRENCY = "aud"

FeeConfig = dict[str, Any]
FeeConfigLoader = Callable[[], Awaitable[FeeConfig | None]]


@dataclass(frozen=True)
class TierFee:
    amount: int
    currency: str


def fee_key(tier: str, interval: BillingInterval) -> str:
    normalized_tier = "-".join(tier.strip().lower().split())
    return f"subscription-{normalized_tier}-{interval.value}"


async def load_fee_config_document() -> FeeConfig | None:
    return await select_system_setting(FEE_CONFIG_ID, FEE_CONFIG_DOC_TYPE)


def tier_fee(config: FeeConfig | None, tier: str | None, interval: BillingInterval) -> TierFee | None:
    if not config or not tier:
        return None
    entry = config.get(fee_key(tier, interval))
    if not isinstance(entry, dict):
        return None
    fixed = entry.get("fixed")
    if isinstance(fixed, bool) or not isinstance(fixed, int | float) or fixed <= 0:
        return None
    currency = entry.get("currency")
    if not isinstance(currency, str) or not currency.strip():
        currency = DEFAULT_CURRENCY
    return TierFee(amount=int(fixed), currency=currency.strip().lower())


class FeeResolver:
    """Caches the fee config document for the lifetime of the worker process.

    A failed load is logged and returns ``None`` without being cached, so the
    next run tries again.
    """

    _CACHE_KEY = "fees"

    def __init__(self, *, ttl_seconds: int = 300, loader: FeeConfigLoader | None = None) -> None:
        self._cache: TTLCache[str, FeeConfig] = TTLCache(maxsize=1, ttl=max(1, ttl_seconds))
        self._loader = loader or load_fee_config_document

    def clear(self) -> None:
        self._cache.clear()

    async def load(self) -> FeeConfig | None:
        cached = self._cache.get(self._CACHE_KEY)
        if cached is not None:
            return cached

        try:
            config = await self._loader()
        except Exception as exc:
            logger.warning(
                "billing.fee_config_load_failed",
                extra={
                    "component": "worker",
                    "error": sanitize_error(exc, default_message="fee config load failed"),
                },
            )
            return None

        if not isinstance(config, dict):
            logger.warning("billing.fee_config_missing", extra={"component": "worker"})
            return None

        self._cache[self._CACHE_KEY] = config
        logger.info("billing.fee_config_loaded", extra={"component": "worker", "entries": len(config)})
        return config

    def amount_for(self, config: FeeConfig | None, tier: str | None, interval: BillingInterval) -> TierFee | None:
        return tier_fee(config, tier, interval)

    def monthly_threshold(self, config: FeeConfig | None, tier: str | None) -> int | None:
        fee = tier_fee(config, tier, BillingInterval.MONTHLY)
        return fee.amount if fee is not None else None
