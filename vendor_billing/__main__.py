from __future__ import annotations

import asyncio
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

from vendor_billing.billing.fees import FeeResolver
from vendor_billing.core.logging import configure_logging, get_logger
from vendor_billing.core.settings import Settings, get_settings
from vendor_billing.core.vendor_store import upsert_system_status
from vendor_billing.worker.billing_processor import BillingProcessor
from vendor_billing.worker.retry import sanitize_error

logger = get_logger("worker.supervisor")

HEARTBEAT_STATUS_ID = "billing_processor"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def next_run_at(now: datetime, run_hours: list[int], tz: ZoneInfo) -> datetime:
    """First configured local run hour strictly after ``now``, in UTC."""
    if not run_hours:
        raise ValueError("run_hours must list at least one hour")

    local_now = now.astimezone(tz)
    for day_offset in (0, 1):
        day = local_now.date() + timedelta(days=day_offset)
        for hour in sorted(run_hours):
            candidate = datetime.combine(day, time(hour), tzinfo=tz)
            if candidate > local_now:
                return candidate.astimezone(UTC)
    raise ValueError("run_hours produced no future slot")


def build_processor(settings: Settings) -> BillingProcessor:
    return BillingProcessor(
        fee_resolver=FeeResolver(ttl_seconds=settings.FEE_CONFIG_CACHE_TTL_SECONDS),
        timezone=settings.billing_tz,
        renewal_lookahead_days=settings.BILLING_RENEWAL_LOOKAHEAD_DAYS,
        cooldown_minutes=settings.BILLING_ATTEMPT_COOLDOWN_MINUTES,
        pass_limit=settings.BILLING_PASS_LIMIT,
        actor=settings.BILLING_ACTOR,
        fee_fail_open=settings.FEE_CONFIG_FAIL_OPEN,
    )


async def run_billing_tick(
    processor: BillingProcessor,
    *,
    heartbeat_enabled: bool,
    mode: str = "worker",
) -> dict[str, object]:
    tick_started_at = _now_iso()
    errors = 0
    run_id: str | None = None
    totals: dict[str, int] = {}

    try:
        summary = await processor.run_once()
        run_id = summary.get("run_id")
        totals = dict(summary.get("totals") or {})
        errors = int(totals.get("error") or 0) + int(totals.get("query_failed") or 0)
    except Exception as exc:  # pragma: no cover - defensive guard
        errors += 1
        logger.error(
            "worker.billing_run_error",
            extra={"component": "worker", "error": sanitize_error(exc, default_message="billing run error")},
        )

    payload: dict[str, object] = {
        "mode": mode,
        "tick_started_at": tick_started_at,
        "tick_finished_at": _now_iso(),
        "run_id": run_id,
        "totals": totals,
        "errors": errors,
    }

    if heartbeat_enabled:
        try:
            await upsert_system_status(HEARTBEAT_STATUS_ID, payload)
        except Exception as exc:  # pragma: no cover - defensive guard
            logger.error(
                "worker.heartbeat_error",
                extra={
                    "component": "worker",
                    "error": sanitize_error(exc, default_message="worker heartbeat error"),
                },
            )

    return payload


async def run_billing_loop() -> None:
    settings = get_settings()
    processor = build_processor(settings)
    run_hours = settings.run_hours_list
    tz = settings.billing_tz

    while True:
        now = datetime.now(UTC)
        wake_at = next_run_at(now, run_hours, tz)
        logger.info(
            "worker.billing_run_scheduled",
            extra={"component": "worker", "next_run_at": wake_at},
        )
        await asyncio.sleep(max(1.0, (wake_at - now).total_seconds()))
        await run_billing_tick(processor, heartbeat_enabled=settings.WORKER_HEARTBEAT_ENABLED)


def main() -> None:
    configure_logging()
    settings = get_settings()
    mode = settings.VENDOR_BILLING_MODE.strip().lower()

    if mode == "once":
        asyncio.run(
            run_billing_tick(
                build_processor(settings),
                heartbeat_enabled=settings.WORKER_HEARTBEAT_ENABLED,
                mode="once",
            )
        )
        return

    asyncio.run(run_billing_loop())


if __name__ == "__main__":
    main()
