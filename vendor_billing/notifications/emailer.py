from __future__ import annotations

import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any

from vendor_billing.core.logging import get_logger
from vendor_billing.core.settings import get_settings
from vendor_billing.notifications.templates import render_template

logger = get_logger("notifications.emailer")

SMTP_TIMEOUT_SECONDS = 10


class EmailNotConfiguredError(RuntimeError):
    pass


class EmailSendError(RuntimeError):
    pass


@dataclass(frozen=True)
class SmtpTransport:
    host: str
    port: int
    use_ssl: bool
    use_tls: bool
    username: str | None = None
    password: str | None = None

    @classmethod
    def from_settings(cls) -> SmtpTransport:
        settings = get_settings()
        host = (settings.SMTP_HOST or "").strip()
        if not host:
            raise EmailNotConfiguredError("SMTP transport is not configured.")
        return cls(
            host=host,
            port=settings.SMTP_PORT,
            use_ssl=settings.SMTP_USE_SSL,
            use_tls=settings.SMTP_USE_TLS,
            username=(settings.SMTP_USERNAME or "").strip() or None,
            password=settings.SMTP_PASSWORD or None,
        )

    def _connect(self) -> smtplib.SMTP:
        if self.use_ssl:
            return smtplib.SMTP_SSL(host=self.host, port=self.port, timeout=SMTP_TIMEOUT_SECONDS)
        return smtplib.SMTP(host=self.host, port=self.port, timeout=SMTP_TIMEOUT_SECONDS)

    def deliver(self, message: EmailMessage) -> None:
        with self._connect() as server:
            if self.use_tls and not self.use_ssl:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(message)


def build_message(*, sender: str, recipient: str, template_id: str, variables: dict[str, Any]) -> EmailMessage:
    parts = render_template(template_id, variables)
    message = EmailMessage()
    message["From"] = sender
    message["To"] = recipient
    message["Subject"] = parts["subject"]
    message.set_content(parts["text"])
    message.add_alternative(parts["html"], subtype="html")
    return message


def send_template_email(
    *,
    from_address: str,
    to: str,
    template_id: str,
    variables: dict[str, Any],
    run_id: str | None = None,
) -> None:
    sender = from_address.strip()
    if not sender:
        raise EmailNotConfiguredError("EMAIL_FROM is not configured.")

    message = build_message(sender=sender, recipient=to, template_id=template_id, variables=variables)
    transport = SmtpTransport.from_settings()
    log_fields = {
        "component": "worker",
        "run_id": run_id,
        "template_id": template_id,
        "recipient_domain": _recipient_domain(to),
    }

    try:
        transport.deliver(message)
    except OSError as exc:
        logger.warning("notifications.email_send_failed", extra=log_fields)
        raise EmailSendError("Failed to send billing email.") from exc

    logger.info("notifications.email_sent", extra=log_fields)


def _recipient_domain(recipient: str) -> str:
    _, at, domain = recipient.strip().lower().rpartition("@")
    return domain if at and domain else "unknown"
