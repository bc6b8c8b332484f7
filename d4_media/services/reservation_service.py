from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.d4_models import Reservation, ReservationItem
from services.errors import NotFoundError
from services.pricing_service import compute_total

EQUIPMENT_CHECKOUT = "equipment_checkout"
EVENT_CHECKOUT = "event_checkout"
RENTAL = "rental"
STUDIO_BOOKING = "studio_booking"

EVENT_TYPES = {"event", "client_project", "temporary", "maintenance"}
BOOKING_TYPES = {"studio", "event"}
RETURN_CONDITIONS = {"excellent", "good", "fair", "poor", "damaged"}

OPEN_ITEM_STATUSES = {"requested", "reserved", "out"}
HOLDING_ITEM_STATUSES = {"reserved", "out"}


@dataclass(frozen=True)
class KindPolicy:
    """Lifecycle rules for one reservation kind.

    ``transitions`` is the updateStatus table. ``overdue`` and
    ``partially_returned`` are never requested directly: the first is derived
    from the clock, the second is the outcome of returning a subset of items.
    """

    kind: str
    prefix: str
    initial_status: str
    transitions: dict
    holding_statuses: frozenset
    out_statuses: frozenset = frozenset()
    pending_status: str | None = None
    approve_status: str | None = None
    reject_status: str | None = "cancelled"
    take_out_status: str | None = None
    returned_status: str | None = None
    partial_status: str | None = None
    lost_status: str | None = None
    deletable_statuses: frozenset = frozenset()
    invoiceable_statuses: frozenset = frozenset()
    takes_inventory: bool = True
    window_unit: str = "days"
    pricing_context: str = "rental"
    invoice_type: str = "rental"
    terminal_statuses: frozenset = frozenset()

    def allowed_targets(self, status: str) -> frozenset:
        return self.transitions.get(status, frozenset())


POLICIES = {
    EQUIPMENT_CHECKOUT: KindPolicy(
        kind=EQUIPMENT_CHECKOUT,
        prefix="CHK",
        initial_status="pending_approval",
        transitions={
            "pending_approval": frozenset({"checked_out", "cancelled"}),
            "checked_out": frozenset({"returned", "lost"}),
            "overdue": frozenset({"returned", "lost"}),
            "returned": frozenset(),
            "cancelled": frozenset(),
            "lost": frozenset(),
        },
        holding_statuses=frozenset({"checked_out", "overdue"}),
        out_statuses=frozenset({"checked_out", "overdue"}),
        pending_status="pending_approval",
        approve_status="checked_out",
        take_out_status="checked_out",
        returned_status="returned",
        lost_status="lost",
        deletable_statuses=frozenset({"pending_approval", "cancelled"}),
        pricing_context="event",
        invoice_type="checkout",
        terminal_statuses=frozenset({"returned", "cancelled", "lost"}),
    ),
    EVENT_CHECKOUT: KindPolicy(
        kind=EVENT_CHECKOUT,
        prefix="EVT",
        initial_status="checked_out",
        transitions={
            "checked_out": frozenset({"returned", "lost"}),
            "overdue": frozenset({"returned", "lost"}),
            "returned": frozenset(),
            "lost": frozenset(),
        },
        holding_statuses=frozenset({"checked_out", "overdue"}),
        out_statuses=frozenset({"checked_out", "overdue"}),
        reject_status=None,
        take_out_status="checked_out",
        returned_status="returned",
        lost_status="lost",
        pricing_context="event",
        invoice_type="event",
        terminal_statuses=frozenset({"returned", "lost"}),
    ),
    RENTAL: KindPolicy(
        kind=RENTAL,
        prefix="RNT",
        initial_status="pending",
        transitions={
            "pending": frozenset({"confirmed", "cancelled"}),
            "confirmed": frozenset({"rented", "cancelled"}),
            "rented": frozenset({"completed", "lost"}),
            "partially_returned": frozenset({"completed", "lost"}),
            "overdue": frozenset({"completed", "lost"}),
            "completed": frozenset(),
            "cancelled": frozenset(),
            "lost": frozenset(),
        },
        holding_statuses=frozenset({"confirmed", "rented", "partially_returned", "overdue"}),
        out_statuses=frozenset({"rented", "partially_returned", "overdue"}),
        pending_status="pending",
        approve_status="confirmed",
        take_out_status="rented",
        returned_status="completed",
        partial_status="partially_returned",
        lost_status="lost",
        deletable_statuses=frozenset({"pending", "cancelled"}),
        invoiceable_statuses=frozenset({"confirmed", "rented", "partially_returned", "overdue", "completed"}),
        pricing_context="rental",
        invoice_type="rental",
        terminal_statuses=frozenset({"completed", "cancelled", "lost"}),
    ),
    STUDIO_BOOKING: KindPolicy(
        kind=STUDIO_BOOKING,
        prefix="BKG",
        initial_status="inquiry",
        transitions={
            "inquiry": frozenset({"confirmed", "cancelled"}),
            "confirmed": frozenset({"in_progress", "cancelled"}),
            "in_progress": frozenset({"completed"}),
            "completed": frozenset(),
            "cancelled": frozenset(),
        },
        holding_statuses=frozenset({"confirmed", "in_progress"}),
        pending_status="inquiry",
        approve_status="confirmed",
        deletable_statuses=frozenset({"inquiry", "cancelled"}),
        invoiceable_statuses=frozenset({"confirmed", "in_progress", "completed"}),
        takes_inventory=False,
        window_unit="hours",
        pricing_context="studio",
        invoice_type="studio_booking",
        terminal_statuses=frozenset({"completed", "cancelled"}),
    ),
}


def get_policy(kind: str) -> KindPolicy:
    return POLICIES[kind]


def generate_reservation_number(db: Session, kind: str, created_on: date | None = None) -> str:
    token = POLICIES[kind].prefix
    year = (created_on or date.today()).year
    prefix = f"{token}-{year}-"
    last = db.execute(
        select(Reservation.ReservationNumber)
        .where(Reservation.ReservationNumber.like(f"{prefix}%"))
        .order_by(Reservation.ReservationNumber.desc())
    ).scalars().first()
    next_number = 1
    if last:
        raw = last.replace(prefix, "")
        try:
            next_number = int(raw) + 1
        except ValueError:
            next_number = 1
    return f"{prefix}{next_number:06d}"


def load_reservation(db: Session, reservation_id: int) -> Reservation:
    stmt = (
        select(Reservation)
        .options(selectinload(Reservation.Items).selectinload(ReservationItem.Equipment))
        .where(Reservation.ReservationID == reservation_id)
    )
    reservation = db.execute(stmt).scalars().first()
    if not reservation:
        raise NotFoundError(f"Reservation {reservation_id} not found")
    return reservation


def outstanding_items(reservation: Reservation) -> list[ReservationItem]:
    return [item for item in reservation.Items if item.EquipmentID and item.Status == "out"]


def equipment_items(reservation: Reservation) -> list[ReservationItem]:
    return [item for item in reservation.Items if item.EquipmentID]


def recalc_totals(reservation: Reservation) -> dict:
    for item in reservation.Items:
        item.TotalAmount = float(item.Rate or 0) * int(item.Quantity or 0)
    totals = compute_total(
        reservation.BaseRate,
        reservation.DurationUnits,
        reservation.Items,
        reservation.AdditionalCharges,
        reservation.Discount,
    )
    reservation.EquipmentCost = totals["equipmentCost"]
    reservation.Subtotal = totals["subtotal"]
    reservation.TotalAmount = totals["total"]
    return totals


def append_note(reservation: Reservation, note: str | None) -> None:
    if note:
        reservation.Notes = (reservation.Notes + "\n" if reservation.Notes else "") + note


def _money(value) -> float:
    return float(value or 0)


def serialize_item(item: ReservationItem) -> dict:
    return {
        "reservationItemID": item.ReservationItemID,
        "reservationID": item.ReservationID,
        "equipmentID": item.EquipmentID,
        "description": item.Description,
        "quantity": item.Quantity,
        "rate": _money(item.Rate),
        "totalAmount": _money(item.TotalAmount),
        "status": item.Status,
        "returnCondition": item.ReturnCondition,
        "returnedDate": item.ReturnedDate,
        "notes": item.Notes,
        "equipment": {
            "equipmentID": item.Equipment.EquipmentID,
            "name": item.Equipment.Name,
            "equipmentCode": item.Equipment.EquipmentCode,
            "checkoutStatus": item.Equipment.CheckoutStatus,
        } if item.Equipment else None,
    }


def serialize_reservation(reservation: Reservation) -> dict:
    actual_duration = None
    if reservation.ActualStart and reservation.ActualReturn:
        actual_duration = round((reservation.ActualReturn - reservation.ActualStart).total_seconds() / 3600, 2)
    return {
        "reservationID": reservation.ReservationID,
        "reservationNumber": reservation.ReservationNumber,
        "kind": reservation.Kind,
        "status": reservation.Status,
        "requesterID": reservation.RequesterID,
        "clientName": reservation.ClientName,
        "contactName": reservation.ContactName,
        "contactPhone": reservation.ContactPhone,
        "contactEmail": reservation.ContactEmail,
        "company": reservation.Company,
        "purpose": reservation.Purpose,
        "location": reservation.Location,
        "studioRoom": reservation.StudioRoom,
        "bookingType": reservation.BookingType,
        "eventName": reservation.EventName,
        "eventType": reservation.EventType,
        "teamSize": reservation.TeamSize,
        "windowStart": reservation.WindowStart,
        "windowEnd": reservation.WindowEnd,
        "actualStart": reservation.ActualStart,
        "actualReturn": reservation.ActualReturn,
        "actualDurationHours": actual_duration,
        "durationUnits": reservation.DurationUnits,
        "pricing": {
            "baseRate": _money(reservation.BaseRate),
            "equipmentCost": _money(reservation.EquipmentCost),
            "additionalCharges": list(reservation.AdditionalCharges or []),
            "discount": _money(reservation.Discount),
            "securityDeposit": _money(reservation.SecurityDeposit),
            "subtotal": _money(reservation.Subtotal),
            "totalAmount": _money(reservation.TotalAmount),
        },
        "approvedBy": reservation.ApprovedBy,
        "approvalDate": reservation.ApprovalDate,
        "approvalNotes": reservation.ApprovalNotes,
        "confirmedBy": reservation.ConfirmedBy,
        "confirmedAt": reservation.ConfirmedAt,
        "returnCondition": reservation.ReturnCondition,
        "returnNotes": reservation.ReturnNotes,
        "returnedBy": reservation.ReturnedBy,
        "lossAmount": _money(reservation.LossAmount) if reservation.LossAmount is not None else None,
        "invoiceID": reservation.InvoiceID,
        "notes": reservation.Notes,
        "createdBy": reservation.CreatedBy,
        "createdDate": reservation.CreatedDate,
        "updatedDate": reservation.UpdatedDate,
        "items": [serialize_item(item) for item in reservation.Items],
    }


def touch(reservation: Reservation) -> None:
    reservation.UpdatedDate = datetime.now()
