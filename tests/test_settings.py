import pytest
from pydantic import ValidationError

from vendor_billing.core.settings import Settings

REQUIRED = {
    "SUPABASE_URL": "https://example.supabase.co",
    "SUPABASE_SERVICE_ROLE_KEY": "test-service-role-key",
}


def test_defaults_follow_billing_schedule() -> None:
    settings = Settings(**REQUIRED)

    assert settings.BILLING_TIMEZONE == "Australia/Sydney"
    assert settings.billing_tz.key == "Australia/Sydney"
    assert settings.run_hours_list == [6, 18]
    assert settings.BILLING_ATTEMPT_COOLDOWN_MINUTES == 60
    assert settings.BILLING_RENEWAL_LOOKAHEAD_DAYS == 3
    assert settings.FEE_CONFIG_FAIL_OPEN is True


def test_run_hours_are_sorted_and_deduplicated() -> None:
    settings = Settings(**REQUIRED, BILLING_RUN_HOURS="18, 6,6,")

    assert settings.run_hours_list == [6, 18]


def test_rejects_unknown_timezone() -> None:
    with pytest.raises(ValidationError):
        Settings(**REQUIRED, BILLING_TIMEZONE="Mars/Olympus_Mons")


def test_rejects_out_of_range_run_hour() -> None:
    with pytest.raises(ValidationError):
        Settings(**REQUIRED, BILLING_RUN_HOURS="6,25")


def test_rejects_unknown_mode() -> None:
    with pytest.raises(ValidationError):
        Settings(**REQUIRED, VENDOR_BILLING_MODE="api")


def test_production_requires_stripe_and_sender() -> None:
    with pytest.raises(ValidationError):
        Settings(**REQUIRED, VENDOR_BILLING_ENV="production", EMAIL_FROM="billing@example.com", STRIPE_SECRET_KEY="")

    with pytest.raises(ValidationError):
        Settings(**REQUIRED, VENDOR_BILLING_ENV="production", EMAIL_FROM=" ", STRIPE_SECRET_KEY="sk_live_x")

    settings = Settings(
        **REQUIRED,
        VENDOR_BILLING_ENV="production",
        EMAIL_FROM="billing@example.com",
        STRIPE_SECRET_KEY="sk_live_x",
    )
    assert settings.VENDOR_BILLING_ENV == "production"
