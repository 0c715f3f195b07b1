"""Outgoing email over SMTP."""
import logging
import re
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_valid_email(address: Optional[str]) -> bool:
    return bool(address) and bool(_EMAIL_RE.match(address.strip()))


def mask_email(address: Optional[str]) -> str:
    """ab***@ex***.com - enough to tell deliveries apart in logs."""
    if not address or "@" not in address:
        return "***"
    local, _, domain = address.partition("@")
    host, dot, tld = domain.rpartition(".")
    if not dot:
        host, tld = domain, ""
    masked = f"{local[:2]}***@{host[:2]}***"
    return f"{masked}.{tld}" if tld else masked


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    # False when trying again cannot help (bad address)
    retryable: bool = True


class EmailSender:
    def send(self, to_email: str, subject: str, body: str) -> SendResult:
        raise NotImplementedError


class SmtpEmailSender(EmailSender):
    def __init__(self, server: str, port: int = 25, from_addr: str = "noreply@medcert.local"):
        self.server = server
        self.port = port
        self.from_addr = from_addr

    def send(self, to_email: str, subject: str, body: str) -> SendResult:
        if not is_valid_email(to_email):
            return SendResult(success=False, error="invalid recipient address", retryable=False)
        if not self.server:
            return SendResult(success=False, error="SMTP_SERVER is not configured")

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_addr
        msg["To"] = to_email
        msg["Message-ID"] = make_msgid(domain=self.from_addr.partition("@")[2] or None)
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.server, self.port, timeout=30) as s:
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("smtp send to %s failed: %s", mask_email(to_email), exc)
            return SendResult(success=False, error=str(exc))
        return SendResult(success=True, message_id=msg["Message-ID"])
