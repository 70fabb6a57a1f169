from __future__ import annotations

from collections.abc import Callable
from html import escape
from typing import Any

PAYMENT_SUCCEEDED = "subscription-payment-succeeded"
PAYMENT_FAILED_FIRST = "subscription-payment-failed-first"
PAYMENT_FAILED_SECOND = "subscription-payment-failed-second"
PAYMENT_FAILED_FINAL = "subscription-payment-failed-final"
ACCOUNT_SUSPENDED = "subscription-account-suspended"
TRIAL_EXPIRED_NO_CARD = "subscription-trial-expired-no-card"
DOWNGRADE_EFFECTIVE = "subscription-downgrade-effective"

EmailMessageParts = dict[str, str]


class UnknownTemplateError(KeyError):
    pass


def _lookup(variables: dict[str, Any], dotted_key: str, default: str) -> str:
    current: Any = variables
    for part in dotted_key.split("."):
        if not isinstance(current, dict):
            return default
        current = current.get(part)
    if current is None:
        return default
    text = str(current).strip()
    return text or default


def _compose(
    subject: str,
    heading: str,
    paragraphs: list[str],
    *,
    cta_label: str | None = None,
    cta_url: str | None = None,
) -> EmailMessageParts:
    text_lines = [heading, ""]
    for paragraph in paragraphs:
        text_lines.extend([paragraph, ""])
    if cta_label and cta_url:
        text_lines.append(f"{cta_label}: {cta_url}")

    html_paragraphs = "".join(f"<p>{escape(paragraph)}</p>" for paragraph in paragraphs)
    html_cta = (
        f'<p><a href="{escape(cta_url, quote=True)}">{escape(cta_label)}</a></p>'
        if cta_label and cta_url
        else ""
    )
    html = (
        "<html><body>"
        f"<h2>{escape(heading)}</h2>"
        f"{html_paragraphs}"
        f"{html_cta}"
        "</body></html>"
    )
    return {"subject": subject, "html": html, "text": "\n".join(text_lines).rstrip() + "\n"}


def payment_succeeded_email(variables: dict[str, Any]) -> EmailMessageParts:
    vendor_name = _lookup(variables, "vendor.name", "your account")
    contact_name = _lookup(variables, "vendor.contactName", "there")
    amount = _lookup(variables, "payment.amount", "your subscription fee")
    next_billing = _lookup(variables, "payment.nextBillingDate", "the end of this period")
    return _compose(
        f"Payment received for {vendor_name}",
        "Payment Successful",
        [
            f"Hi {contact_name},",
            f"Your subscription payment of {amount} for {vendor_name} has been successfully processed.",
            f"Your next billing date is {next_billing}.",
        ],
    )


def payment_failed_first_email(variables: dict[str, Any]) -> EmailMessageParts:
    vendor_name = _lookup(variables, "vendor.name", "your account")
    contact_name = _lookup(variables, "vendor.contactName", "there")
    amount = _lookup(variables, "payment.amount", "your subscription fee")
    retry_date = _lookup(variables, "payment.retryDate", "soon")
    return _compose(
        f"Payment failed for {vendor_name}",
        "Payment Issue",
        [
            f"Hi {contact_name},",
            (
                f"We were unable to process your subscription payment of {amount} for {vendor_name}. "
                "This can happen if your card has expired or has insufficient funds."
            ),
            f"We will try again on {retry_date}. In the meantime, you can update your payment method from your dashboard.",
        ],
        cta_label="Update Payment Method",
        cta_url=_lookup(variables, "dashboardUrl", ""),
    )


def payment_failed_second_email(variables: dict[str, Any]) -> EmailMessageParts:
    vendor_name = _lookup(variables, "vendor.name", "your account")
    contact_name = _lookup(variables, "vendor.contactName", "there")
    amount = _lookup(variables, "payment.amount", "your subscription fee")
    retry_date = _lookup(variables, "payment.retryDate", "soon")
    return _compose(
        f"Second payment attempt failed for {vendor_name}",
        "Payment Still Failing",
        [
            f"Hi {contact_name},",
            (
                f"This is our second attempt to process your subscription payment of {amount} "
                f"for {vendor_name}, and it has failed again."
            ),
            (
                f"We will make a final attempt on {retry_date}. If it is not successful, your account "
                "will be suspended and payouts will be paused."
            ),
        ],
        cta_label="Update Payment Method",
        cta_url=_lookup(variables, "dashboardUrl", ""),
    )


def payment_failed_final_email(variables: dict[str, Any]) -> EmailMessageParts:
    vendor_name = _lookup(variables, "vendor.name", "your account")
    contact_name = _lookup(variables, "vendor.contactName", "there")
    return _compose(
        f"Account suspended: {vendor_name}",
        "Final Payment Attempt Failed",
        [
            f"Hi {contact_name},",
            (
                f"After three unsuccessful payment attempts, your account {vendor_name} has been "
                "suspended and payouts have been paused."
            ),
            "To reactivate your account, please update your payment method from your dashboard.",
        ],
        cta_label="Reactivate Account",
        cta_url=_lookup(variables, "dashboardUrl", ""),
    )


def account_suspended_email(variables: dict[str, Any]) -> EmailMessageParts:
    vendor_name = _lookup(variables, "vendor.name", "your account")
    contact_name = _lookup(variables, "vendor.contactName", "there")
    return _compose(
        f"Your account {vendor_name} has been suspended",
        "Account Suspended",
        [
            f"Hi {contact_name},",
            (
                f"Your account {vendor_name} has been suspended due to outstanding subscription payments. "
                "While suspended, your payouts are paused and your storefront is not visible to customers."
            ),
            "To restore your account, please update your payment method and settle the outstanding balance.",
        ],
        cta_label="Restore Account",
        cta_url=_lookup(variables, "dashboardUrl", ""),
    )


def trial_expired_no_card_email(variables: dict[str, Any]) -> EmailMessageParts:
    vendor_name = _lookup(variables, "vendor.name", "your account")
    contact_name = _lookup(variables, "vendor.contactName", "there")
    return _compose(
        f"Your trial for {vendor_name} has ended",
        "Trial Ended",
        [
            f"Hi {contact_name},",
            (
                f"The free trial for {vendor_name} has ended and no payment method is saved on the account, "
                "so the account has been suspended and payouts are paused."
            ),
            "Add a card from your dashboard to start your subscription and restore your account.",
        ],
        cta_label="Add Payment Method",
        cta_url=_lookup(variables, "dashboardUrl", ""),
    )


def downgrade_effective_email(variables: dict[str, Any]) -> EmailMessageParts:
    vendor_name = _lookup(variables, "vendor.name", "your account")
    contact_name = _lookup(variables, "vendor.contactName", "there")
    from_tier = _lookup(variables, "downgrade.fromTier", "your previous plan")
    to_tier = _lookup(variables, "downgrade.toTier", "your new plan")
    interval = _lookup(variables, "subscription.interval", "monthly")
    price = _lookup(variables, "subscription.price", "unchanged")
    return _compose(
        f"Your {vendor_name} plan has been downgraded",
        "Plan Downgraded",
        [
            f"Hi {contact_name},",
            f"Your {vendor_name} plan has been downgraded from {from_tier} to {to_tier} effective today.",
            (
                f"Your new {interval} billing amount is {price}. Some features may no longer be "
                f"available under the {to_tier} plan."
            ),
        ],
        cta_label="View Plan Details",
        cta_url=_lookup(variables, "dashboardUrl", ""),
    )


BILLING_TEMPLATES: dict[str, Callable[[dict[str, Any]], EmailMessageParts]] = {
    PAYMENT_SUCCEEDED: payment_succeeded_email,
    PAYMENT_FAILED_FIRST: payment_failed_first_email,
    PAYMENT_FAILED_SECOND: payment_failed_second_email,
    PAYMENT_FAILED_FINAL: payment_failed_final_email,
    ACCOUNT_SUSPENDED: account_suspended_email,
    TRIAL_EXPIRED_NO_CARD: trial_expired_no_card_email,
    DOWNGRADE_EFFECTIVE: downgrade_effective_email,
}


def render_template(template_id: str, variables: dict[str, Any]) -> EmailMessageParts:
    renderer = BILLING_TEMPLATES.get(template_id)
    if renderer is None:
        raise UnknownTemplateError(template_id)
    return renderer(variables)
