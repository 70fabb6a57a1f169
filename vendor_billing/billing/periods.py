from __future__ import annotations

import calendar
import math
from datetime import UTC, date, datetime

from vendor_billing.billing.state import BillingInterval, BillingPass, SubscriptionSnapshot


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_interval(moment: datetime, interval: BillingInterval) -> datetime:
    if interval is BillingInterval.ANNUAL:
        return add_months(moment, 12)
    return add_months(moment, 1)


def billing_period_start(snapshot: SubscriptionSnapshot, billing_pass: BillingPass, now: datetime) -> datetime:
    if billing_pass is BillingPass.TRIAL_EXPIRED_WITH_CARD:
        return snapshot.trial_ends_at or now
    if billing_pass is BillingPass.RETRY_DUE and snapshot.expires_at is None and snapshot.billing_model == "trial":
        # First charge after the trial never succeeded, so no period was opened.
        return snapshot.trial_ends_at or now
    return snapshot.expires_at or now


def period_date(moment: datetime) -> str:
    """Calendar date of the UTC instant, used in keys, metadata and history."""
    return moment.astimezone(UTC).date().isoformat()


def idempotency_key(
    billing_pass: BillingPass,
    vendor_id: str,
    period_start: date | datetime,
    now: datetime,
) -> str:
    start_text = period_date(period_start) if isinstance(period_start, datetime) else period_start.isoformat()
    if billing_pass is BillingPass.TRIAL_EXPIRED_WITH_CARD:
        return f"trial_first_billing_{vendor_id}_{start_text}"
    if billing_pass is BillingPass.RENEWAL_DUE:
        return f"renewal_{vendor_id}_{start_text}"
    if billing_pass is BillingPass.RETRY_DUE:
        return f"retry_{vendor_id}_{start_text}_{int(now.timestamp() * 1000)}"
    raise ValueError(f"{billing_pass.value} does not charge")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def discounted_amount(fixed_amount: int, discount_percent: float) -> int:
    return round_half_up(fixed_amount * (1 - discount_percent / 100))


def format_amount(amount: int, currency: str) -> str:
    return f"{amount / 100:.2f} {currency.upper()}"
