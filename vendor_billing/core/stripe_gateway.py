from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

import stripe
from fastapi.concurrency import run_in_threadpool

from vendor_billing.core.logging import get_logger
from vendor_billing.core.settings import get_settings

logger = get_logger("core.stripe_gateway")

ChargeOutcome = Literal["succeeded", "declined", "network_error"]
PayoutInterval = Literal["manual", "daily"]


class PaymentGatewayNotConfiguredError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChargeResult:
    outcome: ChargeOutcome
    payment_intent_id: str | None = None
    reason: str | None = None
    http_status: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == "succeeded"

    @classmethod
    def from_payment_intent(cls, intent: Any) -> "ChargeResult":
        intent_id = _field(intent, "id")
        intent_status = _field(intent, "status")
        if intent_status == "succeeded":
            return cls(outcome="succeeded", payment_intent_id=intent_id, http_status=200)

        last_error = _field(intent, "last_payment_error")
        reason = _field(last_error, "message") if last_error is not None else None
        return cls(
            outcome="declined",
            payment_intent_id=intent_id,
            reason=reason or f"Payment status {intent_status or 'unknown'}",
            http_status=200,
        )


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _api_key() -> str:
    api_key = (get_settings().STRIPE_SECRET_KEY or "").strip()
    if not api_key:
        raise PaymentGatewayNotConfiguredError("STRIPE_SECRET_KEY is not configured.")
    return api_key


def _error_message(exc: stripe.StripeError) -> str:
    message = getattr(exc, "user_message", None) or str(exc).strip()
    return message or exc.__class__.__name__


def _declined_intent_id(exc: stripe.StripeError) -> str | None:
    intent = _field(getattr(exc, "error", None), "payment_intent")
    intent_id = _field(intent, "id")
    return intent_id if isinstance(intent_id, str) else None


async def create_off_session_charge(
    *,
    amount: int,
    currency: str,
    customer_id: str,
    payment_method_id: str,
    idempotency_key: str,
    metadata: dict[str, str],
) -> ChargeResult:
    api_key = _api_key()
    try:
        intent = await run_in_threadpool(
            stripe.PaymentIntent.create,
            api_key=api_key,
            idempotency_key=idempotency_key,
            amount=amount,
            currency=currency.lower(),
            customer=customer_id,
            payment_method=payment_method_id,
            off_session=True,
            confirm=True,
            metadata=metadata,
        )
    except stripe.CardError as exc:
        return ChargeResult(
            outcome="declined",
            payment_intent_id=_declined_intent_id(exc),
            reason=_error_message(exc),
            http_status=exc.http_status,
        )
    except stripe.APIConnectionError as exc:
        return ChargeResult(
            outcome="network_error",
            reason=_error_message(exc),
            http_status=getattr(exc, "http_status", None),
        )
    except stripe.StripeError as exc:
        return ChargeResult(
            outcome="declined",
            payment_intent_id=_declined_intent_id(exc),
            reason=_error_message(exc),
            http_status=exc.http_status,
        )

    return ChargeResult.from_payment_intent(intent)


async def update_payout_schedule(account_id: str, interval: PayoutInterval) -> bool:
    try:
        await run_in_threadpool(
            stripe.Account.modify,
            account_id,
            api_key=_api_key(),
            settings={"payouts": {"schedule": {"interval": interval}}},
        )
    except Exception as exc:
        logger.warning(
            "stripe.payout_schedule_failed",
            extra={
                "component": "worker",
                "account_id": account_id,
                "interval": interval,
                "error": str(exc)[:500],
            },
        )
        return False

    logger.info(
        "stripe.payout_schedule_updated",
        extra={"component": "worker", "account_id": account_id, "interval": interval},
    )
    return True
