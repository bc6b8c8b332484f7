from __future__ import annotations

from datetime import date, datetime, timedelta
import logging
import os

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.d4_models import Invoice, InvoiceItem, Reservation
from services.errors import InvalidStateError
from services.pricing_service import compute_total
from services.reservation_service import STUDIO_BOOKING, get_policy, load_reservation

LOGGER = logging.getLogger("d4_media.invoices")

INVOICE_DUE_DAYS = int(os.environ.get("INVOICE_DUE_DAYS") or "30")


def generate_invoice_number(db: Session, created_on: date | None = None) -> str:
    year = (created_on or date.today()).year
    prefix = f"INV-{year}-"
    last = db.execute(
        select(Invoice.InvoiceNumber)
        .where(Invoice.InvoiceNumber.like(f"{prefix}%"))
        .order_by(Invoice.InvoiceNumber.desc())
    ).scalars().first()
    next_number = 1
    if last:
        try:
            next_number = int(last.replace(prefix, "")) + 1
        except ValueError:
            next_number = 1
    return f"{prefix}{next_number:06d}"


def find_invoice(db: Session, reservation_id: int) -> Invoice | None:
    return db.execute(
        select(Invoice)
        .options(selectinload(Invoice.Items))
        .where(Invoice.ReservationID == reservation_id)
    ).scalars().first()


def _invoice_type(reservation: Reservation) -> str:
    if reservation.Kind == STUDIO_BOOKING and reservation.BookingType == "event":
        return "event_booking"
    return get_policy(reservation.Kind).invoice_type


def _booking_description(reservation: Reservation) -> str:
    if reservation.Kind == STUDIO_BOOKING:
        room = reservation.StudioRoom or "Studio"
        return f"{room} booking {reservation.WindowStart:%Y-%m-%d %H:%M}-{reservation.WindowEnd:%H:%M}"
    label = reservation.EventName or reservation.Purpose or reservation.Kind.replace("_", " ")
    return f"{label} ({reservation.WindowStart:%Y-%m-%d} to {reservation.WindowEnd:%Y-%m-%d})"


def build_invoice_items(reservation: Reservation) -> list[InvoiceItem]:
    items = []
    if float(reservation.BaseRate or 0) > 0:
        units = float(reservation.DurationUnits or 0)
        items.append(
            InvoiceItem(
                ItemType="booking",
                Description=_booking_description(reservation),
                Quantity=units,
                Rate=float(reservation.BaseRate),
                Amount=round(float(reservation.BaseRate) * units, 2),
            )
        )
    for line in reservation.Items:
        name = line.Equipment.Name if line.Equipment else (line.Description or "Item")
        items.append(
            InvoiceItem(
                ItemType="equipment",
                Description=name,
                Quantity=int(line.Quantity or 0),
                Rate=float(line.Rate or 0),
                Amount=round(float(line.Rate or 0) * int(line.Quantity or 0), 2),
            )
        )
    for charge in reservation.AdditionalCharges or []:
        if isinstance(charge, dict):
            description = charge.get("description") or "Additional charge"
            amount = float(charge.get("amount") or 0)
        else:
            description = "Additional charge"
            amount = float(charge or 0)
        items.append(
            InvoiceItem(ItemType="additional", Description=description, Quantity=1, Rate=amount, Amount=amount)
        )
    return items


def ensure_invoice(db: Session, reservation_id: int, created_by: int | None = None) -> tuple[Invoice, bool]:
    """Return the reservation's invoice, creating it on first call.

    The caller owns the transaction. A unique key on ``ReservationID`` backs
    the lookup, so a racing second creator fails on flush instead of
    producing a duplicate.
    """
    existing = find_invoice(db, reservation_id)
    if existing:
        return existing, False

    reservation = load_reservation(db, reservation_id)
    totals = compute_total(
        reservation.BaseRate,
        reservation.DurationUnits,
        reservation.Items,
        reservation.AdditionalCharges,
        reservation.Discount,
    )
    invoice = Invoice(
        InvoiceNumber=generate_invoice_number(db),
        ReservationID=reservation.ReservationID,
        InvoiceType=_invoice_type(reservation),
        ClientName=reservation.ClientName or reservation.ContactName,
        ClientPhone=reservation.ContactPhone,
        ClientEmail=reservation.ContactEmail,
        Subtotal=totals["subtotal"],
        Discount=totals["discount"],
        Total=totals["total"],
        Status="draft",
        DueDate=datetime.now() + timedelta(days=INVOICE_DUE_DAYS),
        Notes=f"Generated for {reservation.ReservationNumber}",
        CreatedBy=created_by,
        CreatedDate=datetime.now(),
    )
    invoice.Items = build_invoice_items(reservation)
    db.add(invoice)
    db.flush()

    reservation.InvoiceID = invoice.InvoiceID
    reservation.UpdatedDate = datetime.now()
    LOGGER.info("Invoice %s created for %s total=%s", invoice.InvoiceNumber, reservation.ReservationNumber, totals["total"])
    return invoice, True


def assert_invoiceable(reservation: Reservation) -> None:
    policy = get_policy(reservation.Kind)
    if reservation.Status not in policy.invoiceable_statuses:
        raise InvalidStateError(
            f"Cannot invoice {reservation.ReservationNumber} while it is {reservation.Status}."
        )


def serialize_invoice(invoice: Invoice) -> dict:
    return {
        "invoiceID": invoice.InvoiceID,
        "invoiceNumber": invoice.InvoiceNumber,
        "reservationID": invoice.ReservationID,
        "invoiceType": invoice.InvoiceType,
        "clientName": invoice.ClientName,
        "clientPhone": invoice.ClientPhone,
        "clientEmail": invoice.ClientEmail,
        "subtotal": float(invoice.Subtotal or 0),
        "discount": float(invoice.Discount or 0),
        "total": float(invoice.Total or 0),
        "status": invoice.Status,
        "dueDate": invoice.DueDate,
        "notes": invoice.Notes,
        "createdDate": invoice.CreatedDate,
        "items": [
            {
                "itemType": item.ItemType,
                "description": item.Description,
                "quantity": item.Quantity,
                "rate": float(item.Rate or 0),
                "amount": float(item.Amount or 0),
            }
            for item in invoice.Items
        ],
    }
