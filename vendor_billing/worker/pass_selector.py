from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from vendor_billing.billing.state import (
    MAX_FAILED_PAYMENT_ATTEMPTS,
    BillingPass,
    format_utc_timestamp,
)
from vendor_billing.core.vendor_store import select_vendors

_SUB = "subscription->>"
_SUB_NUM = "subscription->"
_NO_FAILURES = f"({_SUB_NUM}failedPaymentAttempts.is.null,{_SUB_NUM}failedPaymentAttempts.eq.0)"


def _trial_expired_filters(now_iso: str) -> dict[str, str]:
    return {
        f"{_SUB}billingModel": "eq.trial",
        f"{_SUB}billingStatus": "eq.trial",
        f"{_SUB}trialEndsAt": f"lte.{now_iso}",
    }


def pass_filters(
    billing_pass: BillingPass,
    now: datetime,
    *,
    renewal_lookahead: timedelta = timedelta(days=3),
) -> dict[str, str]:
    """PostgREST filters over the vendor ``subscription`` JSON column for one pass."""
    now_iso = format_utc_timestamp(now)

    if billing_pass is BillingPass.TRIAL_EXPIRED_WITH_CARD:
        filters = _trial_expired_filters(now_iso)
        filters.update(
            {
                f"{_SUB}card_status": "eq.saved",
                f"{_SUB}stripePaymentMethodId": "not.is.null",
                "or": _NO_FAILURES,
            }
        )
        return filters

    if billing_pass is BillingPass.TRIAL_EXPIRED_NO_CARD:
        filters = _trial_expired_filters(now_iso)
        filters["and"] = (
            f"(or{_NO_FAILURES},"
            f"or({_SUB}card_status.is.null,{_SUB}card_status.neq.saved,{_SUB}stripePaymentMethodId.is.null))"
        )
        return filters

    if billing_pass is BillingPass.RENEWAL_DUE:
        horizon_iso = format_utc_timestamp(now + renewal_lookahead)
        return {
            f"{_SUB}billingStatus": "eq.active",
            f"{_SUB}subscriptionExpiresAt": f"lte.{horizon_iso}",
            f"{_SUB}stripePaymentMethodId": "not.is.null",
            "or": _NO_FAILURES,
        }

    if billing_pass is BillingPass.RETRY_DUE:
        return {
            f"{_SUB}nextRetryAt": f"lte.{now_iso}",
            f"{_SUB}stripePaymentMethodId": "not.is.null",
            "and": (
                f"({_SUB_NUM}failedPaymentAttempts.gt.0,"
                f"{_SUB_NUM}failedPaymentAttempts.lt.{MAX_FAILED_PAYMENT_ATTEMPTS})"
            ),
        }

    return {
        f"{_SUB}pendingDowngradeTo": "not.is.null",
        f"{_SUB}downgradeEffectiveAt": f"lte.{now_iso}",
    }


async def select_pass_candidates(
    billing_pass: BillingPass,
    now: datetime,
    *,
    renewal_lookahead: timedelta = timedelta(days=3),
    limit: int = 500,
) -> list[dict[str, Any]]:
    filters = pass_filters(billing_pass, now, renewal_lookahead=renewal_lookahead)
    return await select_vendors(filters, limit=limit)
