import pytest

from vendor_billing.notifications import templates

VARIABLES = {
    "vendor": {"name": "Moonlit Readings", "contactName": "Ava"},
    "payment": {"amount": "39.00 AUD", "nextBillingDate": "2024-04-01", "retryDate": "2024-02-28 15:00"},
    "downgrade": {"fromTier": "illuminate", "toTier": "awaken"},
    "subscription": {"interval": "monthly", "price": "39.00 AUD"},
    "dashboardUrl": "https://www.spiriverse.com/dashboard/subscription",
}


def test_payment_succeeded_email_renders_core_fields() -> None:
    payload = templates.render_template(templates.PAYMENT_SUCCEEDED, VARIABLES)

    assert payload["subject"] == "Payment received for Moonlit Readings"
    assert "39.00 AUD" in payload["text"]
    assert "2024-04-01" in payload["html"]


def test_payment_failed_first_email_includes_retry_date_and_link() -> None:
    payload = templates.render_template(templates.PAYMENT_FAILED_FIRST, VARIABLES)

    assert payload["subject"] == "Payment failed for Moonlit Readings"
    assert "2024-02-28 15:00" in payload["text"]
    assert "https://www.spiriverse.com/dashboard/subscription" in payload["html"]


def test_downgrade_email_renders_tiers_and_price() -> None:
    payload = templates.render_template(templates.DOWNGRADE_EFFECTIVE, VARIABLES)

    assert "from illuminate to awaken" in payload["text"]
    assert "monthly billing amount is 39.00 AUD" in payload["text"]


def test_templates_fall_back_when_variables_missing() -> None:
    payload = templates.render_template(templates.PAYMENT_FAILED_SECOND, {})

    assert payload["subject"] == "Second payment attempt failed for your account"
    assert "Hi there," in payload["text"]
    assert "<a href" not in payload["html"]


def test_template_html_is_escaped() -> None:
    payload = templates.render_template(
        templates.ACCOUNT_SUSPENDED,
        {"vendor": {"name": "<script>alert(1)</script>"}},
    )

    assert "<script>" not in payload["html"]
    assert "&lt;script&gt;" in payload["html"]


def test_every_billing_template_renders() -> None:
    for template_id in templates.BILLING_TEMPLATES:
        payload = templates.render_template(template_id, VARIABLES)
        assert set(payload) == {"subject", "html", "text"}
        assert payload["subject"]


def test_unknown_template_raises() -> None:
    with pytest.raises(templates.UnknownTemplateError):
        templates.render_template("subscription-unknown", VARIABLES)
