from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4
from zoneinfo import ZoneInfo

from vendor_billing.billing.periods import format_amount, period_date
from vendor_billing.billing.state import (
    MAX_FAILED_PAYMENT_ATTEMPTS,
    BillingPass,
    BillingStatus,
    SubscriptionSnapshot,
    ensure_status_transition,
    format_utc_timestamp,
)
from vendor_billing.core.logging import get_logger
from vendor_billing.core.stripe_gateway import ChargeResult, update_payout_schedule
from vendor_billing.core.vendor_store import (
    PatchOperation,
    append_item,
    patch_vendor_fields,
    set_field,
)
from vendor_billing.notifications import templates
from vendor_billing.notifications.dispatcher import notify_vendor
from vendor_billing.worker.retry import next_retry_at

logger = get_logger("worker.payment_outcome")

HISTORY_PATH = "/subscription/billing_history"


@dataclass(frozen=True)
class ChargeAttempt:
    billing_pass: BillingPass
    amount: int
    currency: str
    period_start: datetime
    period_end: datetime
    idempotency_key: str


def new_billing_record(attempt: ChargeAttempt, now: datetime) -> dict[str, Any]:
    return {
        "id": str(uuid4()),
        "date": format_utc_timestamp(now),
        "amount": attempt.amount,
        "currency": attempt.currency,
        "period_start": period_date(attempt.period_start),
        "period_end": period_date(attempt.period_end),
    }


def history_operation(history_length: int, record: dict[str, Any]) -> PatchOperation:
    # The store has no append-if-absent, so an empty history is written whole.
    if history_length <= 0:
        return set_field(HISTORY_PATH, [record])
    return append_item(HISTORY_PATH, record)


def _sub(field: str) -> str:
    return f"/subscription/{field}"


class PaymentOutcomeHandler:
    def __init__(self, *, tz: ZoneInfo, actor: str) -> None:
        self.tz = tz
        self.actor = actor

    def _local_date(self, moment: datetime) -> str:
        return moment.astimezone(self.tz).date().isoformat()

    async def handle(
        self,
        vendor: dict[str, Any],
        snapshot: SubscriptionSnapshot,
        attempt: ChargeAttempt,
        result: ChargeResult,
        now: datetime,
    ) -> str:
        if result.outcome == "network_error":
            logger.warning(
                "billing.charge_unreachable",
                extra={
                    "component": "worker",
                    "vendor_id": snapshot.vendor_id,
                    "billing_pass": attempt.billing_pass.value,
                    "idempotency_key": attempt.idempotency_key,
                    "error": result.reason,
                },
            )

        record = new_billing_record(attempt, now)
        if result.succeeded:
            return await self._handle_success(vendor, snapshot, attempt, result, record, now)
        return await self._handle_failure(vendor, snapshot, attempt, result, record, now)

    async def _handle_success(
        self,
        vendor: dict[str, Any],
        snapshot: SubscriptionSnapshot,
        attempt: ChargeAttempt,
        result: ChargeResult,
        record: dict[str, Any],
        now: datetime,
    ) -> str:
        status = ensure_status_transition(snapshot.billing_status, BillingStatus.ACTIVE)
        record["billingStatus"] = "success"
        record["stripePaymentIntentId"] = result.payment_intent_id

        await patch_vendor_fields(
            snapshot.vendor_id,
            [
                set_field(_sub("failedPaymentAttempts"), 0),
                set_field(_sub("nextRetryAt"), None),
                set_field(_sub("payment_status"), "success"),
                set_field(_sub("payouts_blocked"), False),
                set_field(_sub("lastBilledAt"), format_utc_timestamp(now)),
                set_field(_sub("subscriptionExpiresAt"), format_utc_timestamp(attempt.period_end)),
                set_field(_sub("billingStatus"), status.value),
                history_operation(snapshot.history_length, record),
            ],
            actor=self.actor,
        )
        logger.info(
            "billing.charge_succeeded",
            extra={
                "component": "worker",
                "vendor_id": snapshot.vendor_id,
                "billing_pass": attempt.billing_pass.value,
                "amount": attempt.amount,
                "currency": attempt.currency,
                "payment_intent_id": result.payment_intent_id,
            },
        )

        if (snapshot.payouts_blocked or snapshot.failed_attempts > 0) and snapshot.account_id:
            await update_payout_schedule(snapshot.account_id, "daily")

        await notify_vendor(
            vendor,
            templates.PAYMENT_SUCCEEDED,
            {
                "payment": {
                    "amount": format_amount(attempt.amount, attempt.currency),
                    "nextBillingDate": self._local_date(attempt.period_end),
                }
            },
        )
        return "charged"

    async def _handle_failure(
        self,
        vendor: dict[str, Any],
        snapshot: SubscriptionSnapshot,
        attempt: ChargeAttempt,
        result: ChargeResult,
        record: dict[str, Any],
        now: datetime,
    ) -> str:
        attempts = min(MAX_FAILED_PAYMENT_ATTEMPTS, snapshot.failed_attempts + 1)
        error_message = result.reason or f"Payment failed with status {result.http_status or 'unknown'}"
        record["billingStatus"] = "failed"
        if result.payment_intent_id:
            record["stripePaymentIntentId"] = result.payment_intent_id
        record["error"] = error_message
        history_op = history_operation(snapshot.history_length, record)
        payment_variables = {"amount": format_amount(attempt.amount, attempt.currency)}

        if attempts >= MAX_FAILED_PAYMENT_ATTEMPTS:
            status = ensure_status_transition(snapshot.billing_status, BillingStatus.SUSPENDED)
            await patch_vendor_fields(
                snapshot.vendor_id,
                [
                    set_field(_sub("failedPaymentAttempts"), attempts),
                    set_field(_sub("payment_status"), "failed"),
                    set_field(_sub("billingStatus"), status.value),
                    set_field(_sub("payouts_blocked"), True),
                    set_field(_sub("nextRetryAt"), None),
                    history_op,
                ],
                actor=self.actor,
            )
            logger.warning(
                "billing.vendor_suspended",
                extra={
                    "component": "worker",
                    "vendor_id": snapshot.vendor_id,
                    "billing_pass": attempt.billing_pass.value,
                    "attempts": attempts,
                    "error": error_message,
                },
            )

            if snapshot.account_id:
                await update_payout_schedule(snapshot.account_id, "manual")

            await notify_vendor(vendor, templates.PAYMENT_FAILED_FINAL, {"payment": payment_variables})
            await notify_vendor(vendor, templates.ACCOUNT_SUSPENDED, {"payment": payment_variables})
            return "suspended"

        retry_at = next_retry_at(attempts, now, self.tz)
        await patch_vendor_fields(
            snapshot.vendor_id,
            [
                set_field(_sub("failedPaymentAttempts"), attempts),
                set_field(_sub("payment_status"), "failed"),
                set_field(_sub("nextRetryAt"), format_utc_timestamp(retry_at)),
                history_op,
            ],
            actor=self.actor,
        )
        logger.info(
            "billing.retry_scheduled",
            extra={
                "component": "worker",
                "vendor_id": snapshot.vendor_id,
                "billing_pass": attempt.billing_pass.value,
                "attempts": attempts,
                "next_retry_at": format_utc_timestamp(retry_at),
                "error": error_message,
            },
        )

        template_id = templates.PAYMENT_FAILED_FIRST if attempts == 1 else templates.PAYMENT_FAILED_SECOND
        payment_variables["retryDate"] = retry_at.astimezone(self.tz).strftime("%Y-%m-%d %H:%M")
        await notify_vendor(vendor, template_id, {"payment": payment_variables})
        return "failed"
