import json
import logging
import sys
from datetime import UTC, datetime

from vendor_billing.core.logging import (
    JsonLogFormatter,
    reset_billing_pass,
    reset_run_id,
    set_billing_pass,
    set_run_id,
)


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord("worker.billing", logging.INFO, __file__, 1, "billing.pass_completed", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_json_with_run_id() -> None:
    token = set_run_id("run-123")
    try:
        payload = json.loads(
            JsonLogFormatter().format(
                _record(
                    component="worker",
                    billing_pass="renewal_due",
                    outcomes={"charged": 2},
                    next_run_at=datetime(2024, 3, 1, 7, 0, tzinfo=UTC),
                )
            )
        )
    finally:
        reset_run_id(token)

    assert payload["msg"] == "billing.pass_completed"
    assert payload["level"] == "INFO"
    assert payload["component"] == "worker"
    assert payload["run_id"] == "run-123"
    assert payload["billing_pass"] == "renewal_due"
    assert payload["outcomes"] == {"charged": 2}
    assert payload["next_run_at"] == "2024-03-01T07:00:00Z"


def test_formatter_redacts_sensitive_keys() -> None:
    payload = json.loads(
        JsonLogFormatter().format(_record(api_key="sk_live_abc", smtp_password="hunter2", vendor_id="V"))
    )

    assert payload["api_key"] == "[redacted]"
    assert payload["smtp_password"] == "[redacted]"
    assert payload["vendor_id"] == "V"
    assert "run_id" not in payload


def test_formatter_reads_billing_pass_context() -> None:
    token = set_billing_pass("retry_due")
    try:
        payload = json.loads(JsonLogFormatter().format(_record()))
    finally:
        reset_billing_pass(token)

    assert payload["billing_pass"] == "retry_due"
    assert payload["logger"] == "worker.billing"
    assert payload["component"] == "worker"
    assert payload["ts"].endswith("Z")


def test_formatter_reports_exceptions() -> None:
    try:
        raise RuntimeError("store unavailable")
    except RuntimeError:
        record = logging.LogRecord(
            "worker.billing",
            logging.ERROR,
            __file__,
            1,
            "billing.pass_query_failed",
            None,
            sys.exc_info(),
        )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["error_type"] == "RuntimeError"
    assert payload["error"] == "store unavailable"
