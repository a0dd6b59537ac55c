"""SMTP mailer for transactional auction e-mail."""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class MailerError(Exception):
    """Raised when a message could not be handed to the SMTP server."""
    pass


class MailerConfig(BaseModel):
    host: Optional[str] = None
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    sender: str = "noreply@localhost"
    use_tls: bool = True


class Mailer:
    """Sends plain-text mail over SMTP.

    smtplib is blocking, so every send runs in the default executor.
    With no host configured the mailer is disabled and only logs.
    """

    def __init__(self, config: MailerConfig) -> None:
        self.config = config

    @property
    def enabled(self) -> bool:
        return bool(self.config.host)

    async def send(self, to: str, subject: str, body: str) -> bool:
        if not self.enabled:
            logger.info(f"Mail disabled, not sending '{subject}' to {to}")
            return False

        msg = EmailMessage()
        msg["From"] = self.config.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._send_sync, msg)
        return True

    def _send_sync(self, msg: EmailMessage) -> None:
        try:
            with smtplib.SMTP(self.config.host, self.config.port, timeout=10) as server:
                if self.config.use_tls:
                    server.starttls()
                if self.config.username and self.config.password:
                    server.login(self.config.username, self.config.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailerError(f"Failed to send '{msg['Subject']}' to {msg['To']}: {e}") from e
