"""
auth/notify.py -- Outbound verification / reset messages.

The auth core only ever calls send(kind, recipient, token). Delivery is
best-effort: BackgroundNotifier hands every send to a worker thread, so a slow
or failing mail server can neither delay nor fail the request that triggered
it. Failures are logged with the recipient redacted; tokens are never logged.

Dispatchers:
  LoggingDispatcher -- dev mode (no SMTP_HOST): logs that a message would go out.
  SmtpDispatcher    -- smtplib with STARTTLS, links built from FRONTEND_URL.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from concurrent.futures import Future, ThreadPoolExecutor
from email.message import EmailMessage
from typing import Protocol
from urllib.parse import urlencode

from core.config import Settings

logger = logging.getLogger("stellr.auth.notify")

EMAIL_VERIFICATION = "email-verification"
PASSWORD_RESET = "password-reset"

_TEMPLATES = {
    EMAIL_VERIFICATION: (
        "Verify your email address",
        "/verify-email",
        "Welcome to Stellr Academy!\n\nConfirm your email address by opening this link "
        "within 24 hours:\n\n{link}\n\nIf you did not create an account, ignore this message.",
    ),
    PASSWORD_RESET: (
        "Reset your password",
        "/reset-password",
        "Someone asked to reset the password for your Stellr Academy account.\n\n"
        "Open this link within 1 hour to choose a new password:\n\n{link}\n\n"
        "If this was not you, ignore this message -- your password is unchanged.",
    ),
}


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class NotificationDispatcher(Protocol):
    def send(self, kind: str, recipient: str, token: str) -> None: ...


class LoggingDispatcher:
    """Dev-mode dispatcher: records that a message would be sent."""

    def send(self, kind: str, recipient: str, token: str) -> None:
        logger.info("Notification (not delivered, SMTP not configured): kind=%s to=%s", kind, redact_email(recipient))


class SmtpDispatcher:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def build_message(self, kind: str, recipient: str, token: str) -> EmailMessage:
        try:
            subject, path, body = _TEMPLATES[kind]
        except KeyError:
            raise ValueError(f"Unknown notification kind: {kind!r}") from None
        link = f"{self.settings.frontend_url.rstrip('/')}{path}?{urlencode({'token': token})}"
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.settings.mail_from
        msg["To"] = recipient
        msg.set_content(body.format(link=link))
        return msg

    def send(self, kind: str, recipient: str, token: str) -> None:
        msg = self.build_message(kind, recipient, token)
        cfg = self.settings
        with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.smtp_timeout_seconds) as server:
            if cfg.smtp_use_tls:
                server.starttls(context=ssl.create_default_context())
            if cfg.smtp_user:
                server.login(cfg.smtp_user, cfg.smtp_password)
            server.send_message(msg)
        logger.info("Sent %s email to %s", kind, redact_email(recipient))


class BackgroundNotifier:
    """Fire-and-forget wrapper around any dispatcher.

    send() returns as soon as the job is queued. The returned Future is only
    for tests and shutdown; request code ignores it.
    """

    def __init__(self, dispatcher: NotificationDispatcher, max_workers: int = 2) -> None:
        self.dispatcher = dispatcher
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def send(self, kind: str, recipient: str, token: str) -> Future:
        future = self._executor.submit(self.dispatcher.send, kind, recipient, token)
        future.add_done_callback(lambda f: self._log_failure(f, kind, recipient))
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    @staticmethod
    def _log_failure(future: Future, kind: str, recipient: str) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Failed to send %s notification to %s: %s", kind, redact_email(recipient), exc)


def build_dispatcher(settings: Settings) -> NotificationDispatcher:
    """Pick SMTP delivery when SMTP_HOST is set, log-only delivery otherwise."""
    if settings.smtp_host:
        return SmtpDispatcher(settings)
    logger.warning("SMTP_HOST not set -- verification and reset emails will only be logged")
    return LoggingDispatcher()
