# notify/__init__.py
"""
Best-effort confirmation mail.

Runs strictly after the fulfillment commit. One message per buyer per
purchase, batching every unit. Failures are logged and never reach the
caller: a paid fulfillment stays final whether or not the mail arrives.
"""
from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..fulfillment.request import IssuedUnit
from ..infra.timings import timeit
from .transport import (
    Attachment, LogTransport, Message, NotificationTransport, SmtpTransport
)

log = structlog.get_logger(__name__)

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates")


@dataclass(frozen=True)
class NotificationContext:
    template: str            # base name: <template>.html / <template>.txt
    subject: str
    title: str
    tier_name: str
    quantity: int
    buyer_name: str
    payment_reference: str
    starts_at: Optional[str] = None
    location: Optional[str] = None
    amount: int = 0          # cents
    shipping_address: Optional[Dict[str, str]] = None


class NotificationDispatcher:
    def __init__(self, transport: NotificationTransport,
                 env: Optional[Environment] = None) -> None:
        self.transport = transport
        self.env = env or Environment(
            loader=FileSystemLoader(TEMPLATE_DIR),
            autoescape=select_autoescape(["html"]),
        )

    def render(self, units: Sequence[IssuedUnit],
               context: NotificationContext) -> Tuple[str, str]:
        data = {"ctx": context, "units": units}
        html = self.env.get_template(f"{context.template}.html").render(data)
        txt = self.env.get_template(f"{context.template}.txt").render(data)
        return html, txt

    async def notify(self, units: Sequence[IssuedUnit],
                     context: NotificationContext) -> int:
        """Send one message per recipient. Returns messages delivered."""
        by_recipient: Dict[str, List[IssuedUnit]] = {}
        for u in units:
            if not u.buyer_email:
                continue
            by_recipient.setdefault(u.buyer_email, []).append(u)
        if not by_recipient:
            log.info("notification_skipped_no_recipient",
                     payment_reference=context.payment_reference)
            return 0

        sent = 0
        for recipient, batch in by_recipient.items():
            try:
                html, txt = self.render(batch, context)
                codes = "\n".join(u.scannable_code for u in batch)
                message = Message(
                    recipient=recipient,
                    subject=context.subject,
                    body_html=html,
                    body_text=txt,
                    attachments=(Attachment(
                        filename=f"{context.payment_reference}-codes.txt",
                        content=codes.encode(),
                        mime_type="text/plain",
                    ),),
                )
                async with timeit("notify.send"):
                    await self.transport.send(message)
                sent += 1
                log.info("notification_sent", recipient=recipient,
                         units=len(batch),
                         payment_reference=context.payment_reference)
            except Exception:
                log.exception("notification_failed", recipient=recipient,
                              payment_reference=context.payment_reference)
        return sent

    async def notify_many(
        self,
        batches: Iterable[Tuple[Sequence[IssuedUnit], NotificationContext]],
    ) -> int:
        sent = 0
        for units, context in batches:
            sent += await self.notify(units, context)
        return sent


def new_transport(backend: str, **smtp) -> NotificationTransport:
    if backend == "smtp":
        return SmtpTransport(**smtp)
    if backend == "log":
        return LogTransport()
    raise RuntimeError(f"unknown mail backend: {backend}")


__all__ = [
    "NotificationDispatcher", "NotificationContext", "Message",
    "Attachment", "NotificationTransport", "new_transport",
]
