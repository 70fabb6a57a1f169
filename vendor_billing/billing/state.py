from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

MAX_FAILED_PAYMENT_ATTEMPTS = 3


class BillingStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class BillingPass(str, Enum):
    TRIAL_EXPIRED_WITH_CARD = "trial_expired_with_card"
    TRIAL_EXPIRED_NO_CARD = "trial_expired_no_card"
    RENEWAL_DUE = "renewal_due"
    RETRY_DUE = "retry_due"
    DOWNGRADE_DUE = "downgrade_due"


BILLING_PASS_ORDER: tuple[BillingPass, ...] = (
    BillingPass.TRIAL_EXPIRED_WITH_CARD,
    BillingPass.TRIAL_EXPIRED_NO_CARD,
    BillingPass.RENEWAL_DUE,
    BillingPass.RETRY_DUE,
    BillingPass.DOWNGRADE_DUE,
)

_LEGAL_STATUS_TRANSITIONS: dict[BillingStatus, frozenset[BillingStatus]] = {
    BillingStatus.TRIAL: frozenset({BillingStatus.TRIAL, BillingStatus.ACTIVE, BillingStatus.SUSPENDED}),
    BillingStatus.ACTIVE: frozenset({BillingStatus.ACTIVE, BillingStatus.SUSPENDED}),
    BillingStatus.SUSPENDED: frozenset({BillingStatus.SUSPENDED}),
}


class IllegalTransitionError(ValueError):
    pass


class VendorRecordError(ValueError):
    pass


def ensure_status_transition(current: BillingStatus | None, target: BillingStatus) -> BillingStatus:
    if current is None:
        return target
    if target not in _LEGAL_STATUS_TRANSITIONS[current]:
        raise IllegalTransitionError(f"billing status cannot move from {current.value} to {target.value}")
    return target


def parse_utc_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value.astimezone(UTC) if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.astimezone(UTC) if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def format_utc_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_interval(value: object) -> BillingInterval:
    normalized = str(value or "").strip().lower()
    if normalized in {"annual", "yearly", "year"}:
        return BillingInterval.ANNUAL
    return BillingInterval.MONTHLY


def _parse_status(value: object) -> BillingStatus | None:
    normalized = str(value or "").strip().lower()
    for member in BillingStatus:
        if member.value == normalized:
            return member
    return None


def _safe_int(value: object | None) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return 0
    return 0


def _safe_percent(value: object | None) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float | str):
        return 0.0
    try:
        percent = float(value)
    except ValueError:
        return 0.0
    return min(100.0, max(0.0, percent))


def _clean_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _as_dict(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Typed read-only view of the billing fields on a vendor document."""

    vendor_id: str
    vendor_name: str
    billing_model: str | None
    billing_status: BillingStatus | None
    tier: str | None
    interval: BillingInterval
    trial_ends_at: datetime | None
    expires_at: datetime | None
    payment_method_id: str | None
    card_saved: bool
    failed_attempts: int
    next_retry_at: datetime | None
    last_attempt_at: datetime | None
    waived: bool
    waived_until: datetime | None
    discount_percent: float
    pending_downgrade_to: str | None
    downgrade_effective_at: datetime | None
    payouts_blocked: bool
    history_length: int
    customer_id: str | None
    account_id: str | None

    @property
    def has_card(self) -> bool:
        return self.card_saved and self.payment_method_id is not None


def snapshot_from_vendor(vendor: dict[str, Any]) -> SubscriptionSnapshot:
    vendor_id = _clean_str(vendor.get("id"))
    if vendor_id is None:
        raise VendorRecordError("vendor record has no id")

    subscription = vendor.get("subscription")
    if not isinstance(subscription, dict):
        raise VendorRecordError(f"vendor {vendor_id} has no subscription")

    stripe_info = _as_dict(vendor.get("stripe"))
    history = subscription.get("billing_history")

    return SubscriptionSnapshot(
        vendor_id=vendor_id,
        vendor_name=_clean_str(vendor.get("name")) or vendor_id,
        billing_model=_clean_str(subscription.get("billingModel")),
        billing_status=_parse_status(subscription.get("billingStatus")),
        tier=_clean_str(subscription.get("subscriptionTier")),
        interval=parse_interval(subscription.get("billingInterval")),
        trial_ends_at=parse_utc_timestamp(subscription.get("trialEndsAt")),
        expires_at=parse_utc_timestamp(subscription.get("subscriptionExpiresAt")),
        payment_method_id=_clean_str(subscription.get("stripePaymentMethodId")),
        card_saved=str(subscription.get("card_status") or "").strip().lower() == "saved",
        failed_attempts=max(0, _safe_int(subscription.get("failedPaymentAttempts"))),
        next_retry_at=parse_utc_timestamp(subscription.get("nextRetryAt")),
        last_attempt_at=parse_utc_timestamp(subscription.get("lastPaymentAttemptAt")),
        waived=subscription.get("waived") is True,
        waived_until=parse_utc_timestamp(subscription.get("waivedUntil")),
        discount_percent=_safe_percent(subscription.get("discountPercent")),
        pending_downgrade_to=_clean_str(subscription.get("pendingDowngradeTo")),
        downgrade_effective_at=parse_utc_timestamp(subscription.get("downgradeEffectiveAt")),
        payouts_blocked=subscription.get("payouts_blocked") is True,
        history_length=len(history) if isinstance(history, list) else 0,
        customer_id=_clean_str(stripe_info.get("customerId")),
        account_id=_clean_str(stripe_info.get("accountId")),
    )


def _is_due(moment: datetime | None, cutoff: datetime) -> bool:
    return moment is not None and moment <= cutoff


def classify_vendor(
    snapshot: SubscriptionSnapshot,
    now: datetime,
    *,
    renewal_lookahead: timedelta = timedelta(days=3),
) -> BillingPass | None:
    """Return the single billing pass that applies to the vendor right now.

    Precedence is trial expiry, then downgrade, then retry, then renewal, so a
    vendor matching several query predicates is still handled exactly once.
    """
    if (
        snapshot.billing_model == "trial"
        and snapshot.billing_status is BillingStatus.TRIAL
        and snapshot.failed_attempts == 0
        and _is_due(snapshot.trial_ends_at, now)
    ):
        if snapshot.has_card:
            return BillingPass.TRIAL_EXPIRED_WITH_CARD
        return BillingPass.TRIAL_EXPIRED_NO_CARD

    if snapshot.pending_downgrade_to is not None and _is_due(snapshot.downgrade_effective_at, now):
        return BillingPass.DOWNGRADE_DUE

    if snapshot.billing_status is BillingStatus.SUSPENDED:
        return None

    if (
        0 < snapshot.failed_attempts < MAX_FAILED_PAYMENT_ATTEMPTS
        and snapshot.payment_method_id is not None
        and _is_due(snapshot.next_retry_at, now)
    ):
        return BillingPass.RETRY_DUE

    if (
        snapshot.billing_status is BillingStatus.ACTIVE
        and snapshot.failed_attempts == 0
        and snapshot.payment_method_id is not None
        and _is_due(snapshot.expires_at, now + renewal_lookahead)
    ):
        return BillingPass.RENEWAL_DUE

    return None
