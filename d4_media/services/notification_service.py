from __future__ import annotations

from datetime import datetime
import logging
import os
from typing import Callable

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from db.unit_of_work import transaction
from models.d4_models import Invoice, NotificationQueue, Reservation
from services.document_service import render_invoice_pdf, render_reservation_pdf
from services.errors import ExternalServiceError, NotFoundError
from services.reservation_service import load_reservation

LOGGER = logging.getLogger("d4_media.notifications")

MAX_ATTEMPTS = 5
RECEPTION_WHATSAPP = (os.environ.get("RECEPTION_WHATSAPP") or "").strip() or None


class WhatsAppGateway:
    """Sends text messages, optionally with a PDF, through the HTTP gateway."""

    def __init__(self, api_url: str | None = None, token: str | None = None, timeout: float | None = None):
        self.api_url = (api_url or os.environ.get("WHATSAPP_API_URL") or "").strip()
        self.token = (token or os.environ.get("WHATSAPP_API_TOKEN") or "").strip()
        self.timeout = timeout or float(os.environ.get("WHATSAPP_TIMEOUT_SECONDS") or "10")

    def send_message(
        self,
        recipient: str,
        text: str,
        attachment: bytes | None = None,
        filename: str | None = None,
    ) -> str:
        if not self.api_url:
            raise ExternalServiceError("WHATSAPP_API_URL is not configured.")
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        data = {"to": recipient, "message": text}
        files = None
        if attachment is not None:
            files = {"document": (filename or "document.pdf", attachment, "application/pdf")}
        try:
            response = httpx.post(self.api_url, data=data, files=files, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"WhatsApp delivery to {recipient} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            # Accepted without a message id.
            return ""
        return str(body.get("id") or body.get("messageId") or "")


def queue_notification(
    db: Session,
    reservation: Reservation | None,
    notification_type: str,
    message: str,
    recipient: str | None = None,
    attach_document: bool = False,
) -> NotificationQueue:
    if recipient is None and reservation is not None:
        recipient = reservation.ContactPhone
    notification = NotificationQueue(
        ReservationID=reservation.ReservationID if reservation is not None else None,
        NotificationType=notification_type,
        Recipient=recipient,
        Payload=message,
        AttachDocument=attach_document,
        Attempts=0,
        CreatedAt=datetime.now(),
    )
    db.add(notification)
    return notification


def notify_reception(db: Session, reservation: Reservation, notification_type: str, message: str) -> NotificationQueue:
    return queue_notification(db, reservation, notification_type, message, recipient=RECEPTION_WHATSAPP)


def render_attachment(db: Session, notification: NotificationQueue) -> tuple[bytes, str] | None:
    if not notification.AttachDocument or not notification.ReservationID:
        return None
    if notification.NotificationType == "InvoiceCreated":
        invoice = db.execute(
            select(Invoice).where(Invoice.ReservationID == notification.ReservationID)
        ).scalars().first()
        if invoice:
            return render_invoice_pdf(invoice), f"{invoice.InvoiceNumber}.pdf"
    reservation = load_reservation(db, notification.ReservationID)
    return render_reservation_pdf(reservation), f"{reservation.ReservationNumber}.pdf"


def pending_notifications(db: Session, notification_ids: list[int] | None = None, limit: int = 100) -> list[NotificationQueue]:
    stmt = (
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .where(NotificationQueue.Attempts < MAX_ATTEMPTS)
        .order_by(NotificationQueue.NotificationID)
        .limit(limit)
    )
    if notification_ids is not None:
        if not notification_ids:
            return []
        stmt = stmt.where(NotificationQueue.NotificationID.in_(notification_ids))
    return list(db.execute(stmt).scalars().all())


def dispatch_pending(
    db: Session,
    gateway,
    renderer: Callable[[Session, NotificationQueue], tuple[bytes, str] | None] = render_attachment,
    notification_ids: list[int] | None = None,
    limit: int = 100,
) -> dict:
    """Deliver queued notifications; a failure stays queued with its error."""
    sent = 0
    failed = 0
    for notification in pending_notifications(db, notification_ids, limit):
        with transaction(db):
            notification.Attempts = int(notification.Attempts or 0) + 1
            try:
                if not notification.Recipient:
                    raise ExternalServiceError("No recipient on file.")
                attachment = renderer(db, notification) if renderer else None
                content, filename = attachment if attachment else (None, None)
                delivery_id = gateway.send_message(notification.Recipient, notification.Payload or "", content, filename)
            except (ExternalServiceError, NotFoundError) as exc:
                notification.LastError = str(exc)[:500]
                failed += 1
                LOGGER.warning(
                    "Notification %s (%s) for reservation %s not delivered: %s",
                    notification.NotificationID,
                    notification.NotificationType,
                    notification.ReservationID,
                    exc,
                )
                continue
            except Exception as exc:
                notification.LastError = str(exc)[:500] or exc.__class__.__name__
                failed += 1
                LOGGER.exception(
                    "Notification %s (%s) for reservation %s failed unexpectedly",
                    notification.NotificationID,
                    notification.NotificationType,
                    notification.ReservationID,
                )
                continue
            notification.DeliveryID = delivery_id or None
            notification.SentAt = datetime.now()
            notification.LastError = None
            sent += 1
    return {"sent": sent, "failed": failed}


def serialize_notification(notification: NotificationQueue) -> dict:
    return {
        "notificationID": notification.NotificationID,
        "reservationID": notification.ReservationID,
        "type": notification.NotificationType,
        "recipient": notification.Recipient,
        "payload": notification.Payload,
        "attachDocument": bool(notification.AttachDocument),
        "attempts": notification.Attempts,
        "lastError": notification.LastError,
        "createdAt": notification.CreatedAt,
        "sentAt": notification.SentAt,
    }
