"""Notification service: tells invoice stakeholders about workflow outcomes."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from invoiceflow.core.config import get_settings
from invoiceflow.core.event_bus import EventBus, EventType, WorkflowEvent

SUBJECTS: Dict[tuple, str] = {
    ("PM", "APPROVE"): "PM Approved Invoice: {label}",
    ("PM", "REJECT"): "PM Rejected Invoice: {label}",
    ("PM", "REQUEST_INFO"): "PM Info Required: Invoice {label}",
    ("FINANCE", "APPROVE"): "Finance Approved Invoice: {label}",
    ("FINANCE", "REJECT"): "Finance Rejected Invoice: {label}",
    ("FINANCE", "REQUEST_INFO"): "Finance Info Required: Invoice {label}",
    ("VENDOR", "RESUBMIT"): "Vendor Resubmitted Invoice: {label}",
    ("VENDOR", "ROUTE"): "New Invoice for Review: {label}",
}


class NotificationService:
    """
    Subscribes to workflow events and notifies the recipients the coordinator
    computed. Posts each notification to a webhook when one is configured.
    Never raises: a failed notification must not disturb the workflow.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 8.0) -> None:
        self.logger = logging.getLogger("invoiceflow.notifications")
        self.webhook_url = webhook_url if webhook_url is not None else get_settings().notify_webhook_url
        self.timeout = timeout

    def register(self, bus: EventBus) -> None:
        bus.subscribe(EventType.INVOICE_SUBMITTED, self.handle_event)
        bus.subscribe(EventType.INVOICE_TRANSITIONED, self.handle_event)

    async def handle_event(self, event: WorkflowEvent) -> None:
        for message in self.build_messages(event):
            self.logger.info(
                "Notify %s: %s",
                message["recipientId"],
                message["subject"],
                extra={"extra_fields": {"type": "notification", **message}},
            )
            await self._post(message)

    def build_messages(self, event: WorkflowEvent) -> List[Dict[str, Any]]:
        data = event.data
        label = data.get("invoiceNumber") or event.invoice_id[-6:]
        template = SUBJECTS.get((data.get("stage"), data.get("action")), "Invoice {label} updated")
        subject = template.format(label=label)
        return [
            {
                "recipientId": recipient,
                "invoiceId": event.invoice_id,
                "subject": subject,
                "content": data.get("notes") or subject,
                "messageType": data.get("action"),
                "senderId": data.get("actorId"),
                "senderRole": data.get("actorRole"),
                "newStatus": data.get("newStatus"),
                "eventId": event.event_id,
            }
            for recipient in data.get("recipients") or []
        ]

    async def _post(self, message: Dict[str, Any]) -> None:
        if not self.webhook_url:
            return
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=message)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            self.logger.warning("Notification webhook failed for %s: %s", message["recipientId"], exc)
