from __future__ import annotations
import asyncio
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Optional, Tuple

import structlog

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"


@dataclass(frozen=True)
class Message:
    recipient: str
    subject: str
    body_html: str
    body_text: str
    attachments: Tuple[Attachment, ...] = field(default_factory=tuple)


class NotificationTransport(ABC):
    @abstractmethod
    async def send(self, message: Message) -> None: ...


class LogTransport(NotificationTransport):
    """Development transport: logs instead of delivering."""

    async def send(self, message: Message) -> None:
        log.info(
            "mail_logged",
            recipient=message.recipient,
            subject=message.subject,
            attachments=[a.filename for a in message.attachments],
        )


class SmtpTransport(NotificationTransport):
    def __init__(self, *, host: str, port: int, sender: str,
                 user: Optional[str] = None,
                 password: Optional[str] = None,
                 timeout: float = 10.0) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.user = user
        self.password = password
        self.timeout = timeout

    def _build(self, message: Message) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = message.recipient
        msg["Subject"] = message.subject
        msg.set_content(message.body_text)
        msg.add_alternative(message.body_html, subtype="html")
        for a in message.attachments:
            maintype, _, subtype = a.mime_type.partition("/")
            msg.add_attachment(
                a.content, maintype=maintype,
                subtype=subtype or "octet-stream", filename=a.filename,
            )
        return msg

    def _send_sync(self, message: Message) -> None:
        msg = self._build(message)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.user:
                smtp.starttls()
                smtp.login(self.user, self.password or "")
            smtp.send_message(msg)

    async def send(self, message: Message) -> None:
        # smtplib blocks; keep it off the event loop
        await asyncio.to_thread(self._send_sync, message)
