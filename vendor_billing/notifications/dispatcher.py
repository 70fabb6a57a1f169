from __future__ import annotations

from typing import Any

from fastapi.concurrency import run_in_threadpool

from vendor_billing.core.logging import get_logger, get_run_id
from vendor_billing.core.settings import get_settings
from vendor_billing.notifications.emailer import send_template_email
from vendor_billing.worker.retry import sanitize_error

logger = get_logger("notifications.dispatcher")


def _contact_field(vendor: dict[str, Any], scope: str, field: str) -> str | None:
    contact = vendor.get("contact")
    if not isinstance(contact, dict):
        return None
    section = contact.get(scope)
    if not isinstance(section, dict):
        return None
    value = section.get(field)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def resolve_recipient(vendor: dict[str, Any]) -> str | None:
    return _contact_field(vendor, "internal", "email") or _contact_field(vendor, "public", "email")


def base_variables(vendor: dict[str, Any]) -> dict[str, Any]:
    settings = get_settings()
    vendor_name = str(vendor.get("name") or vendor.get("id") or "").strip()
    contact_name = (
        _contact_field(vendor, "internal", "name")
        or _contact_field(vendor, "public", "name")
        or vendor_name
    )
    return {
        "vendor": {"id": vendor.get("id"), "name": vendor_name, "contactName": contact_name},
        "dashboardUrl": settings.DASHBOARD_URL,
    }


async def notify_vendor(
    vendor: dict[str, Any],
    template_id: str,
    variables: dict[str, Any] | None = None,
) -> bool:
    vendor_id = str(vendor.get("id") or "")
    recipient = resolve_recipient(vendor)
    if recipient is None:
        logger.info(
            "notifications.recipient_missing",
            extra={"component": "worker", "vendor_id": vendor_id, "template_id": template_id},
        )
        return False

    payload = base_variables(vendor)
    payload.update(variables or {})

    try:
        await run_in_threadpool(
            send_template_email,
            from_address=get_settings().EMAIL_FROM or "",
            to=recipient,
            template_id=template_id,
            variables=payload,
            run_id=get_run_id(),
        )
    except Exception as exc:
        logger.warning(
            "notifications.billing_email_failed",
            extra={
                "component": "worker",
                "vendor_id": vendor_id,
                "template_id": template_id,
                "error": sanitize_error(exc, default_message="billing email failed"),
            },
        )
        return False

    return True
