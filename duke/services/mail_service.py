"""
Outgoing email over SMTP.

One client connection shared by the process, guarded by a lock. init()
connects, teardown() closes; send() reconnects and retries (tenacity) when
the server dropped the connection. Bodies are rendered from the Jinja2 templates in
duke/templates/email/.
"""

from __future__ import annotations

import smtplib
import threading
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.config import APP_NAME, SmtpSettings
from ..utils.logger import get_logger

logger = get_logger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


def render(template: str, **context: Any) -> str:
    return _env.get_template(template).render(app_name=APP_NAME, **context)


class Mailer:
    def __init__(self, settings: SmtpSettings):
        self.settings = settings
        self._client: Optional[smtplib.SMTP] = None
        self._lock = threading.Lock()

    def _connect(self) -> smtplib.SMTP:
        client = smtplib.SMTP(self.settings.host, self.settings.port, timeout=self.settings.timeout_seconds)
        if self.settings.starttls:
            client.starttls()
        if self.settings.user:
            client.login(self.settings.user, self.settings.password)
        return client

    def init(self) -> None:
        with self._lock:
            if self._client is None:
                self._client = self._connect()
                logger.info("SMTP client connected", host=self.settings.host, port=self.settings.port)

    def teardown(self) -> None:
        with self._lock:
            if self._client is None:
                return
            try:
                self._client.quit()
            except (smtplib.SMTPException, OSError) as e:
                logger.warning("Error closing SMTP client", error=str(e))
            self._client = None

    def build_message(self, recipient: str, subject: str, title: str, subtitle: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.settings.sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(f"{title}\n\n{body}")
        message.add_alternative(
            render("email/message.html", title=title, subtitle=subtitle, body=body),
            subtype="html",
        )
        return message

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type((smtplib.SMTPServerDisconnected, ConnectionError)),
    )
    def _deliver(self, message: EmailMessage) -> None:
        """Send over the shared connection. Caller holds the lock."""
        if self._client is None:
            self._client = self._connect()
        try:
            self._client.send_message(message)
        except (smtplib.SMTPServerDisconnected, ConnectionError):
            self._client = None
            raise

    def send(self, recipient: str, subject: str, title: str, subtitle: str, body: str) -> bool:
        """Send one email. Returns False (and logs) on any delivery failure."""
        message = self.build_message(recipient, subject, title, subtitle, body)
        with self._lock:
            try:
                self._deliver(message)
            except RetryError as e:
                logger.error(
                    "Failed to send email after retries",
                    recipient=recipient,
                    subject=subject,
                    error=str(e.last_attempt.exception()),
                )
                return False
            except (smtplib.SMTPException, OSError) as e:
                self._client = None
                logger.error("Failed to send email", recipient=recipient, subject=subject, error=str(e))
                return False
        logger.info("Email sent", recipient=recipient, subject=subject)
        return True
