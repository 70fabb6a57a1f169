from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4
from zoneinfo import ZoneInfo

from vendor_billing.billing.fees import DEFAULT_CURRENCY, FeeConfig, FeeResolver
from vendor_billing.billing.periods import (
    add_interval,
    billing_period_start,
    discounted_amount,
    format_amount,
    idempotency_key,
    period_date,
)
from vendor_billing.billing.state import (
    BILLING_PASS_ORDER,
    BillingPass,
    BillingStatus,
    SubscriptionSnapshot,
    VendorRecordError,
    classify_vendor,
    ensure_status_transition,
    format_utc_timestamp,
    snapshot_from_vendor,
)
from vendor_billing.core.logging import (
    get_logger,
    reset_billing_pass,
    reset_run_id,
    set_billing_pass,
    set_run_id,
)
from vendor_billing.core.stripe_gateway import create_off_session_charge, update_payout_schedule
from vendor_billing.core.vendor_store import patch_vendor_fields, remove_field, set_field
from vendor_billing.notifications import templates
from vendor_billing.notifications.dispatcher import notify_vendor
from vendor_billing.worker.pass_selector import select_pass_candidates
from vendor_billing.worker.payment_outcome import ChargeAttempt, PaymentOutcomeHandler
from vendor_billing.worker.retry import sanitize_error

logger = get_logger("worker.billing")

BILLING_TYPE = "self_managed"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _sub(field: str) -> str:
    return f"/subscription/{field}"


class BillingProcessor:
    """Runs the five billing passes in order, one vendor at a time.

    A failure while handling one vendor is logged and counted as ``error``; the
    rest of the pass and the later passes still run.
    """

    def __init__(
        self,
        *,
        fee_resolver: FeeResolver | None = None,
        clock: Callable[[], datetime] = _utc_now,
        timezone: ZoneInfo | None = None,
        renewal_lookahead_days: int = 3,
        cooldown_minutes: int = 60,
        pass_limit: int = 500,
        actor: str = "BILLING_PROCESSOR",
        fee_fail_open: bool = True,
    ) -> None:
        self.fee_resolver = fee_resolver or FeeResolver()
        self.clock = clock
        self.timezone = timezone or ZoneInfo("Australia/Sydney")
        self.renewal_lookahead = timedelta(days=max(0, renewal_lookahead_days))
        self.cooldown = timedelta(minutes=max(0, cooldown_minutes))
        self.pass_limit = max(1, pass_limit)
        self.actor = actor
        self.fee_fail_open = fee_fail_open
        self.outcome_handler = PaymentOutcomeHandler(tz=self.timezone, actor=actor)

    async def run_once(self) -> dict[str, Any]:
        run_id = uuid4().hex
        token = set_run_id(run_id)
        try:
            started_at = self.clock()
            config = await self.fee_resolver.load()

            passes: dict[str, dict[str, int]] = {}
            for billing_pass in BILLING_PASS_ORDER:
                passes[billing_pass.value] = await self._run_pass(billing_pass, config)

            totals: dict[str, int] = {}
            for counts in passes.values():
                for outcome, count in counts.items():
                    totals[outcome] = totals.get(outcome, 0) + count

            summary = {
                "run_id": run_id,
                "started_at": format_utc_timestamp(started_at),
                "finished_at": format_utc_timestamp(self.clock()),
                "fee_config_loaded": config is not None,
                "passes": passes,
                "totals": totals,
            }
            logger.info(
                "billing.run_completed",
                extra={"component": "worker", "passes": passes, "totals": totals},
            )
            return summary
        finally:
            reset_run_id(token)

    async def _run_pass(self, billing_pass: BillingPass, config: FeeConfig | None) -> dict[str, int]:
        token = set_billing_pass(billing_pass.value)
        try:
            return await self._process_pass(billing_pass, config)
        finally:
            reset_billing_pass(token)

    async def _process_pass(self, billing_pass: BillingPass, config: FeeConfig | None) -> dict[str, int]:
        now = self.clock()
        try:
            vendors = await select_pass_candidates(
                billing_pass,
                now,
                renewal_lookahead=self.renewal_lookahead,
                limit=self.pass_limit,
            )
        except Exception as exc:
            logger.error(
                "billing.pass_query_failed",
                extra={
                    "component": "worker",
                    "billing_pass": billing_pass.value,
                    "error": sanitize_error(exc, default_message="billing pass query failed"),
                },
            )
            return {"query_failed": 1}

        logger.info(
            "billing.pass_candidates",
            extra={"component": "worker", "billing_pass": billing_pass.value, "candidates": len(vendors)},
        )

        counts: dict[str, int] = {}
        for vendor in vendors:
            try:
                outcome = await self._process_vendor(billing_pass, vendor, config)
            except Exception as exc:
                outcome = "error"
                logger.warning(
                    "billing.vendor_failed",
                    extra={
                        "component": "worker",
                        "vendor_id": str(vendor.get("id") or ""),
                        "billing_pass": billing_pass.value,
                        "error": sanitize_error(exc, default_message="vendor billing failed"),
                    },
                )
            counts[outcome] = counts.get(outcome, 0) + 1

        logger.info(
            "billing.pass_completed",
            extra={"component": "worker", "billing_pass": billing_pass.value, "outcomes": counts},
        )
        return counts

    async def _process_vendor(
        self,
        billing_pass: BillingPass,
        vendor: dict[str, Any],
        config: FeeConfig | None,
    ) -> str:
        snapshot = snapshot_from_vendor(vendor)
        now = self.clock()
        classified = classify_vendor(snapshot, now, renewal_lookahead=self.renewal_lookahead)
        if classified is not billing_pass:
            logger.info(
                "billing.vendor_skipped",
                extra={
                    "component": "worker",
                    "vendor_id": snapshot.vendor_id,
                    "billing_pass": billing_pass.value,
                    "classified_pass": classified.value if classified is not None else None,
                    "reason": "pass_mismatch",
                },
            )
            return "skipped"

        if billing_pass is BillingPass.TRIAL_EXPIRED_NO_CARD:
            return await self._suspend_trial_without_card(vendor, snapshot)
        if billing_pass is BillingPass.DOWNGRADE_DUE:
            return await self._apply_downgrade(vendor, snapshot, config)
        return await self._bill_vendor(billing_pass, vendor, snapshot, config, now)

    async def _suspend_trial_without_card(self, vendor: dict[str, Any], snapshot: SubscriptionSnapshot) -> str:
        status = ensure_status_transition(snapshot.billing_status, BillingStatus.SUSPENDED)
        await patch_vendor_fields(
            snapshot.vendor_id,
            [
                set_field(_sub("billingStatus"), status.value),
                set_field(_sub("payouts_blocked"), True),
                set_field(_sub("payment_status"), "failed"),
            ],
            actor=self.actor,
        )
        logger.warning(
            "billing.trial_expired_no_card",
            extra={"component": "worker", "vendor_id": snapshot.vendor_id},
        )

        if snapshot.account_id:
            await update_payout_schedule(snapshot.account_id, "manual")

        await notify_vendor(vendor, templates.TRIAL_EXPIRED_NO_CARD)
        return "suspended"

    async def _apply_downgrade(
        self,
        vendor: dict[str, Any],
        snapshot: SubscriptionSnapshot,
        config: FeeConfig | None,
    ) -> str:
        new_tier = snapshot.pending_downgrade_to
        if new_tier is None:
            raise VendorRecordError(f"vendor {snapshot.vendor_id} has no pending downgrade")

        operations = [set_field(_sub("subscriptionTier"), new_tier)]
        threshold = self.fee_resolver.monthly_threshold(config, new_tier)
        if threshold is not None:
            operations.append(set_field(_sub("subscriptionCostThreshold"), threshold))
        operations.extend(
            [
                set_field(_sub("pendingDowngradeTo"), None),
                set_field(_sub("downgradeEffectiveAt"), None),
            ]
        )
        await patch_vendor_fields(snapshot.vendor_id, operations, actor=self.actor)
        logger.info(
            "billing.downgrade_applied",
            extra={
                "component": "worker",
                "vendor_id": snapshot.vendor_id,
                "from_tier": snapshot.tier,
                "to_tier": new_tier,
                "cost_threshold": threshold,
            },
        )

        fee = self.fee_resolver.amount_for(config, new_tier, snapshot.interval)
        price = (
            format_amount(discounted_amount(fee.amount, snapshot.discount_percent), fee.currency)
            if fee is not None
            else None
        )
        await notify_vendor(
            vendor,
            templates.DOWNGRADE_EFFECTIVE,
            {
                "downgrade": {"fromTier": snapshot.tier, "toTier": new_tier},
                "subscription": {"interval": snapshot.interval.value, "price": price},
            },
        )
        return "downgraded"

    async def _bill_vendor(
        self,
        billing_pass: BillingPass,
        vendor: dict[str, Any],
        snapshot: SubscriptionSnapshot,
        config: FeeConfig | None,
        now: datetime,
    ) -> str:
        period_start = billing_period_start(snapshot, billing_pass, now)
        period_end = add_interval(period_start, snapshot.interval)

        if snapshot.waived:
            if snapshot.waived_until is None or snapshot.waived_until > now:
                await self._advance_period(snapshot, billing_pass, period_end, now, reason="waived")
                return "advanced"
            await patch_vendor_fields(
                snapshot.vendor_id,
                [remove_field(_sub("waived")), remove_field(_sub("waivedUntil"))],
                actor=self.actor,
            )
            logger.info(
                "billing.waiver_expired",
                extra={
                    "component": "worker",
                    "vendor_id": snapshot.vendor_id,
                    "waived_until": snapshot.waived_until,
                },
            )

        fee = self.fee_resolver.amount_for(config, snapshot.tier, snapshot.interval)
        if fee is None:
            logger.warning(
                "billing.fee_missing",
                extra={
                    "component": "worker",
                    "vendor_id": snapshot.vendor_id,
                    "billing_pass": billing_pass.value,
                    "tier": snapshot.tier,
                    "interval": snapshot.interval.value,
                    "fail_open": self.fee_fail_open,
                },
            )
            if not self.fee_fail_open:
                return "skipped"
            amount, currency = 0, DEFAULT_CURRENCY
        else:
            amount = discounted_amount(fee.amount, snapshot.discount_percent)
            currency = fee.currency

        if amount <= 0:
            await self._advance_period(snapshot, billing_pass, period_end, now, reason="free_period")
            return "advanced"

        if snapshot.last_attempt_at is not None and now - snapshot.last_attempt_at < self.cooldown:
            logger.info(
                "billing.vendor_skipped",
                extra={
                    "component": "worker",
                    "vendor_id": snapshot.vendor_id,
                    "billing_pass": billing_pass.value,
                    "last_attempt_at": snapshot.last_attempt_at,
                    "reason": "cooldown",
                },
            )
            return "skipped"

        if snapshot.customer_id is None:
            raise VendorRecordError(f"vendor {snapshot.vendor_id} has no stripe customer")
        if snapshot.payment_method_id is None:
            raise VendorRecordError(f"vendor {snapshot.vendor_id} has no payment method")

        attempt = ChargeAttempt(
            billing_pass=billing_pass,
            amount=amount,
            currency=currency,
            period_start=period_start,
            period_end=period_end,
            idempotency_key=idempotency_key(billing_pass, snapshot.vendor_id, period_start, now),
        )
        await patch_vendor_fields(
            snapshot.vendor_id,
            [set_field(_sub("lastPaymentAttemptAt"), format_utc_timestamp(now))],
            actor=self.actor,
        )
        result = await create_off_session_charge(
            amount=amount,
            currency=currency,
            customer_id=snapshot.customer_id,
            payment_method_id=snapshot.payment_method_id,
            idempotency_key=attempt.idempotency_key,
            metadata={
                "merchantId": snapshot.vendor_id,
                "billing_period_start": period_date(period_start),
                "billing_period_end": period_date(period_end),
                "billing_type": BILLING_TYPE,
                "billing_pass": billing_pass.value,
            },
        )
        return await self.outcome_handler.handle(vendor, snapshot, attempt, result, now)

    async def _advance_period(
        self,
        snapshot: SubscriptionSnapshot,
        billing_pass: BillingPass,
        period_end: datetime,
        now: datetime,
        *,
        reason: str,
    ) -> None:
        status = ensure_status_transition(snapshot.billing_status, BillingStatus.ACTIVE)
        await patch_vendor_fields(
            snapshot.vendor_id,
            [
                set_field(_sub("subscriptionExpiresAt"), format_utc_timestamp(period_end)),
                set_field(_sub("lastBilledAt"), format_utc_timestamp(now)),
                set_field(_sub("billingStatus"), status.value),
                set_field(_sub("payment_status"), "success"),
                set_field(_sub("failedPaymentAttempts"), 0),
                set_field(_sub("nextRetryAt"), None),
            ],
            actor=self.actor,
        )
        logger.info(
            "billing.period_advanced",
            extra={
                "component": "worker",
                "vendor_id": snapshot.vendor_id,
                "billing_pass": billing_pass.value,
                "period_end": period_date(period_end),
                "reason": reason,
            },
        )
