from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
import logging
import os
from typing import NamedTuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from db.unit_of_work import transaction
from models.d4_models import Invoice, NotificationQueue, Reservation, ReservationItem
from services.availability_service import check_equipment_availability, claim_studio_room, is_studio_slot_available
from services.errors import (
    InsufficientAvailabilityError,
    InvalidStateError,
    InvalidTransitionError,
    ResourceBusyError,
    SlotUnavailableError,
    ValidationError,
)
from services.inventory_service import (
    adjust_out,
    append_in_out_record,
    claim_version,
    get_item,
    mark_damaged,
    rate_for,
    write_off,
)
from services.invoice_service import assert_invoiceable, ensure_invoice, find_invoice
from services.notification_service import notify_reception, queue_notification
from services.pricing_service import duration_days, duration_hours
from services.reservation_service import (
    BOOKING_TYPES,
    EQUIPMENT_CHECKOUT,
    EVENT_CHECKOUT,
    EVENT_TYPES,
    HOLDING_ITEM_STATUSES,
    POLICIES,
    RENTAL,
    RETURN_CONDITIONS,
    STUDIO_BOOKING,
    KindPolicy,
    append_note,
    equipment_items,
    generate_reservation_number,
    get_policy,
    load_reservation,
    outstanding_items,
    recalc_totals,
    touch,
)

LOGGER = logging.getLogger("d4_media.lifecycle")

DUE_SOON_DAYS = int(os.environ.get("DUE_SOON_DAYS") or "3")

EDITABLE_FIELDS = {
    "ClientName",
    "ContactName",
    "ContactPhone",
    "ContactEmail",
    "Company",
    "Purpose",
    "Location",
    "EventName",
    "TeamSize",
    "BaseRate",
    "AdditionalCharges",
    "Discount",
    "SecurityDeposit",
    "WindowStart",
    "WindowEnd",
    "Notes",
}
INVOICE_LOCKED_EDITABLE = {"Notes"}


class Outcome(NamedTuple):
    reservation: Reservation
    events: list[NotificationQueue]
    invoice: Invoice | None = None


def effective_status(reservation: Reservation, now: datetime | None = None) -> str:
    """Stored status, or ``overdue`` once units are out past the window end."""
    policy = get_policy(reservation.Kind)
    now = now or datetime.now()
    if (
        reservation.Status in policy.out_statuses
        and reservation.Status != "overdue"
        and reservation.WindowEnd < now
        and outstanding_items(reservation)
    ):
        return "overdue"
    return reservation.Status


def apply_runtime_state(reservation: Reservation, now: datetime | None = None) -> str:
    current = effective_status(reservation, now)
    if current != reservation.Status:
        reservation.Status = current
    return current


def _claim_status(db: Session, reservation: Reservation, target: str, now: datetime) -> None:
    """Move the stored status to ``target`` only if nobody else moved it first."""
    expected = reservation.Status
    db.flush()
    result = db.execute(
        update(Reservation)
        .where(Reservation.ReservationID == reservation.ReservationID)
        .where(Reservation.Status == expected)
        .values(Status=target, UpdatedDate=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStateError(
            f"{reservation.ReservationNumber} was changed by another request; reload and retry."
        )
    reservation.Status = target
    reservation.UpdatedDate = now


def _quantities_by_equipment(items: list[ReservationItem]) -> dict[int, int]:
    totals: dict[int, int] = defaultdict(int)
    for item in items:
        if item.EquipmentID:
            totals[item.EquipmentID] += int(item.Quantity or 0)
    return totals


def _assert_equipment_free(
    db: Session,
    quantities: dict[int, int],
    window_start: datetime,
    window_end: datetime,
    exclude_reservation_id: int | None,
    now: datetime,
) -> None:
    for equipment_id, quantity in quantities.items():
        details = check_equipment_availability(
            db,
            equipment_id,
            window_start,
            window_end,
            quantity=quantity,
            exclude_reservation_id=exclude_reservation_id,
            now=now,
        )
        if not details["available"]:
            raise InsufficientAvailabilityError(f"{details['name']}: {details['reason']}")


def _hold_equipment(
    db: Session,
    reservation: Reservation,
    items: list[ReservationItem],
    window_start: datetime,
    window_end: datetime,
    now: datetime,
) -> None:
    """Binding interval check: lock each row, re-check demand, bump Version."""
    quantities = _quantities_by_equipment(items)
    for equipment_id in sorted(quantities):
        equipment = get_item(db, equipment_id, for_update=True)
        _assert_equipment_free(db, {equipment_id: quantities[equipment_id]}, window_start, window_end, reservation.ReservationID, now)
        claim_version(db, equipment)


def _assert_studio_free(db: Session, reservation: Reservation, window_start: datetime, window_end: datetime) -> None:
    if not is_studio_slot_available(db, reservation.StudioRoom, window_start, window_end, reservation.ReservationID):
        raise SlotUnavailableError(
            f"{reservation.StudioRoom} is already booked between {window_start:%Y-%m-%d %H:%M} and {window_end:%H:%M}."
        )


def _hold_studio(db: Session, reservation: Reservation, window_start: datetime, window_end: datetime) -> None:
    """Binding studio check: claim the room first, then re-check overlaps."""
    claim_studio_room(db, reservation.StudioRoom)
    _assert_studio_free(db, reservation, window_start, window_end)


def _take_out(db: Session, reservation: Reservation, operator_user_id: int | None, now: datetime) -> None:
    for item in equipment_items(reservation):
        if item.Status in {"returned", "lost", "cancelled"}:
            continue
        adjust_out(db, item.EquipmentID, int(item.Quantity))
        item.Status = "out"
        append_in_out_record(
            db,
            item.EquipmentID,
            "out",
            int(item.Quantity),
            reservation_id=reservation.ReservationID,
            reference=reservation.ReservationNumber,
            operator_user_id=operator_user_id,
        )
    reservation.ActualStart = now


def _release_items(reservation: Reservation) -> None:
    for item in reservation.Items:
        if item.Status in {"requested", "reserved"}:
            item.Status = "cancelled"


def _invoice_on_confirm(reservation: Reservation) -> bool:
    if reservation.Kind == RENTAL:
        return True
    return reservation.Kind == STUDIO_BOOKING and reservation.BookingType == "event"


def _auto_invoice(db: Session, reservation: Reservation, operator_user_id: int | None, events: list) -> Invoice | None:
    """Runs after the status change committed; never undoes it."""
    if not _invoice_on_confirm(reservation):
        return None
    try:
        with transaction(db):
            invoice, created = ensure_invoice(db, reservation.ReservationID, operator_user_id)
            if created:
                events.append(
                    queue_notification(
                        db,
                        reservation,
                        "InvoiceCreated",
                        f"Invoice {invoice.InvoiceNumber} for {reservation.ReservationNumber}: total {float(invoice.Total or 0):.2f}",
                        attach_document=True,
                    )
                )
        return invoice
    except IntegrityError:
        existing = find_invoice(db, reservation.ReservationID)
        if existing is None:
            LOGGER.exception("Auto-invoice for %s hit a constraint conflict; status change kept", reservation.ReservationNumber)
            return None
        LOGGER.info("Invoice for %s already created by a concurrent request", reservation.ReservationNumber)
        return existing
    except Exception:
        LOGGER.exception("Auto-invoice failed for %s; status change kept", reservation.ReservationNumber)
        return None


def _default_rate(equipment, policy: KindPolicy, window_start: datetime, window_end: datetime) -> float:
    if policy.kind == EQUIPMENT_CHECKOUT:
        return 0.0
    if policy.window_unit == "hours":
        hourly = rate_for(equipment, policy.pricing_context, "hourly")
        return round(hourly * duration_hours(window_start, window_end), 2)
    return round(rate_for(equipment, policy.pricing_context, "daily") * duration_days(window_start, window_end), 2)


def _duration_units(policy: KindPolicy, window_start: datetime, window_end: datetime) -> float:
    if policy.window_unit == "hours":
        return duration_hours(window_start, window_end)
    return float(duration_days(window_start, window_end))


def _validate_create(kind: str, fields: dict, items: list[dict]) -> KindPolicy:
    if kind not in POLICIES:
        raise ValidationError(f"Unknown reservation kind: {kind}")
    policy = POLICIES[kind]
    window_start = fields.get("WindowStart")
    window_end = fields.get("WindowEnd")
    if not window_start or not window_end:
        raise ValidationError("Start and end of the reservation window are required.")
    if window_end <= window_start:
        raise ValidationError("Window end must be after window start.")

    if policy.takes_inventory and not any(item.get("equipmentID") for item in items):
        raise ValidationError("At least one equipment line item is required.")
    for item in items:
        if int(item.get("quantity") or 0) < 1:
            raise ValidationError("Line item quantity must be at least 1.")
        if item.get("rate") is not None and float(item["rate"]) < 0:
            raise ValidationError("Line item rate cannot be negative.")
        if not item.get("equipmentID") and not item.get("description"):
            raise ValidationError("Line items without equipment need a description.")

    if kind == STUDIO_BOOKING:
        if not fields.get("StudioRoom"):
            raise ValidationError("studioRoom is required for studio bookings.")
        if fields.get("BookingType") and fields["BookingType"] not in BOOKING_TYPES:
            raise ValidationError(f"Unknown booking type: {fields['BookingType']}")
    if kind == EVENT_CHECKOUT:
        if not fields.get("EventName"):
            raise ValidationError("eventName is required for event checkouts.")
        if fields.get("EventType") not in EVENT_TYPES:
            raise ValidationError(f"eventType must be one of {', '.join(sorted(EVENT_TYPES))}.")
    if kind in {RENTAL, STUDIO_BOOKING} and not (fields.get("ClientName") or fields.get("ContactName")):
        raise ValidationError("Client name is required.")
    if float(fields.get("Discount") or 0) < 0:
        raise ValidationError("discount cannot be negative.")
    return policy


def create_reservation(
    db: Session,
    kind: str,
    fields: dict,
    items: list[dict],
    operator_user_id: int | None = None,
    now: datetime | None = None,
) -> Outcome:
    now = now or datetime.now()
    policy = _validate_create(kind, fields, items)
    window_start = fields["WindowStart"]
    window_end = fields["WindowEnd"]

    with transaction(db):
        reservation = Reservation(
            **{key: value for key, value in fields.items() if value is not None},
        )
        reservation.Kind = kind
        reservation.Status = policy.initial_status
        reservation.ReservationNumber = generate_reservation_number(db, kind, now.date())
        reservation.DurationUnits = _duration_units(policy, window_start, window_end)
        reservation.BaseRate = float(fields.get("BaseRate") or 0)
        reservation.AdditionalCharges = list(fields.get("AdditionalCharges") or [])
        reservation.Discount = float(fields.get("Discount") or 0)
        reservation.CreatedBy = operator_user_id
        reservation.CreatedDate = now
        reservation.UpdatedDate = now
        if kind == STUDIO_BOOKING and not reservation.BookingType:
            reservation.BookingType = "studio"

        for line in items:
            equipment = None
            if line.get("equipmentID"):
                equipment = get_item(db, int(line["equipmentID"]))
                if not equipment.IsActive:
                    raise ValidationError(f"{equipment.Name} is not active.")
                usage = equipment.UsageTypes or []
                if kind != EQUIPMENT_CHECKOUT and usage and policy.pricing_context not in usage:
                    raise ValidationError(f"{equipment.Name} is not offered for {policy.pricing_context} use.")
            rate = line.get("rate")
            if rate is None:
                rate = _default_rate(equipment, policy, window_start, window_end) if equipment else 0.0
            reservation.Items.append(
                ReservationItem(
                    EquipmentID=equipment.EquipmentID if equipment else None,
                    Equipment=equipment,
                    Description=line.get("description") or (equipment.Name if equipment else None),
                    Quantity=int(line["quantity"]),
                    Rate=float(rate),
                    Status="requested",
                    Notes=line.get("notes"),
                )
            )
        recalc_totals(reservation)

        if policy.takes_inventory:
            _assert_equipment_free(
                db,
                _quantities_by_equipment(reservation.Items),
                window_start,
                window_end,
                None,
                now,
            )
        elif kind == STUDIO_BOOKING:
            _assert_studio_free(db, reservation, window_start, window_end)

        db.add(reservation)
        db.flush()

        events = []
        if policy.initial_status == policy.take_out_status:
            _hold_equipment(db, reservation, equipment_items(reservation), window_start, window_end, now)
            _take_out(db, reservation, operator_user_id, now)
            events.append(
                queue_notification(
                    db,
                    reservation,
                    "EquipmentCheckedOut",
                    f"{reservation.ReservationNumber}: equipment checked out for {reservation.EventName}, due back {window_end:%Y-%m-%d %H:%M}.",
                    attach_document=True,
                )
            )
        else:
            events.append(
                notify_reception(
                    db,
                    reservation,
                    "ReservationRequested",
                    f"New {kind.replace('_', ' ')} request {reservation.ReservationNumber} "
                    f"for {window_start:%Y-%m-%d %H:%M} - {window_end:%Y-%m-%d %H:%M}.",
                )
            )

    LOGGER.info("Reservation %s created kind=%s status=%s", reservation.ReservationNumber, kind, reservation.Status)
    return Outcome(reservation, events)


def _approve(
    db: Session,
    reservation: Reservation,
    policy: KindPolicy,
    notes: str | None,
    operator_user_id: int | None,
    now: datetime,
) -> list:
    target = policy.approve_status
    if policy.takes_inventory:
        _hold_equipment(db, reservation, equipment_items(reservation), reservation.WindowStart, reservation.WindowEnd, now)
    else:
        _hold_studio(db, reservation, reservation.WindowStart, reservation.WindowEnd)

    _claim_status(db, reservation, target, now)
    if target == policy.take_out_status:
        _take_out(db, reservation, operator_user_id, now)
    else:
        for item in equipment_items(reservation):
            if item.Status == "requested":
                item.Status = "reserved"

    reservation.ApprovedBy = operator_user_id
    reservation.ApprovalDate = now
    reservation.ApprovalNotes = notes
    if reservation.Kind in {RENTAL, STUDIO_BOOKING}:
        reservation.ConfirmedBy = operator_user_id
        reservation.ConfirmedAt = now

    verb = "approved" if reservation.Kind == EQUIPMENT_CHECKOUT else "confirmed"
    return [
        queue_notification(
            db,
            reservation,
            "ReservationApproved",
            f"Your reservation {reservation.ReservationNumber} was {verb}." + (f" {notes}" if notes else ""),
            attach_document=True,
        )
    ]


def _reject(
    db: Session,
    reservation: Reservation,
    policy: KindPolicy,
    notes: str | None,
    operator_user_id: int | None,
    now: datetime,
) -> list:
    _claim_status(db, reservation, policy.reject_status, now)
    _release_items(reservation)
    reservation.ApprovedBy = operator_user_id
    reservation.ApprovalDate = now
    reservation.ApprovalNotes = notes
    return [
        queue_notification(
            db,
            reservation,
            "ReservationRejected",
            f"Your reservation {reservation.ReservationNumber} was not approved." + (f" Reason: {notes}" if notes else ""),
        )
    ]


def approve_or_reject(
    db: Session,
    reservation_id: int,
    approved: bool,
    notes: str | None = None,
    operator_user_id: int | None = None,
    now: datetime | None = None,
) -> Outcome:
    now = now or datetime.now()
    with transaction(db):
        reservation = load_reservation(db, reservation_id)
        policy = get_policy(reservation.Kind)
        if policy.pending_status is None or reservation.Status != policy.pending_status:
            raise InvalidStateError(
                f"{reservation.ReservationNumber} is {reservation.Status}, not awaiting approval."
            )
        if approved:
            events = _approve(db, reservation, policy, notes, operator_user_id, now)
        else:
            events = _reject(db, reservation, policy, notes, operator_user_id, now)

    LOGGER.info(
        "Reservation %s %s by %s",
        reservation.ReservationNumber,
        "approved" if approved else "rejected",
        operator_user_id,
    )
    invoice = _auto_invoice(db, reservation, operator_user_id, events) if approved else None
    return Outcome(reservation, events, invoice)


def _return(
    db: Session,
    reservation: Reservation,
    policy: KindPolicy,
    returns: dict[int, dict],
    default_condition: str,
    notes: str | None,
    operator_user_id: int | None,
    now: datetime,
) -> list:
    outstanding = {item.ReservationItemID: item for item in outstanding_items(reservation)}
    if not outstanding:
        raise InvalidStateError(f"{reservation.ReservationNumber} has nothing left to return.")
    if not returns:
        returns = {item_id: {} for item_id in outstanding}
    unknown = set(returns) - set(outstanding)
    if unknown:
        raise ValidationError(f"Items {sorted(unknown)} are not outstanding on {reservation.ReservationNumber}.")
    remaining = set(outstanding) - set(returns)
    if remaining and not policy.partial_status:
        raise ValidationError("All items of this reservation must be returned together.")

    conditions = {}
    for item_id in returns:
        condition = returns[item_id].get("condition") or default_condition
        if condition not in RETURN_CONDITIONS:
            raise ValidationError(f"Unknown return condition: {condition}")
        conditions[item_id] = condition

    target = policy.partial_status if remaining else policy.returned_status
    _claim_status(db, reservation, target, now)

    for item_id, condition in conditions.items():
        item = outstanding[item_id]
        equipment = get_item(db, item.EquipmentID, for_update=True)
        back = min(int(item.Quantity), int(equipment.CurrentQuantityOut or 0))
        if back > 0:
            equipment = adjust_out(db, item.EquipmentID, -back)
        if condition == "damaged":
            mark_damaged(equipment)
        item.Status = "returned"
        item.ReturnCondition = condition
        item.ReturnedDate = now
        if returns[item_id].get("notes"):
            item.Notes = returns[item_id]["notes"]
        append_in_out_record(
            db,
            item.EquipmentID,
            "in",
            int(item.Quantity),
            reservation_id=reservation.ReservationID,
            reference=reservation.ReservationNumber,
            condition=condition,
            operator_user_id=operator_user_id,
        )

    reservation.ReturnCondition = "damaged" if "damaged" in conditions.values() else default_condition
    reservation.ReturnNotes = notes
    reservation.ReturnedBy = operator_user_id
    if not remaining:
        reservation.ActualReturn = now

    damaged = [str(item_id) for item_id, condition in conditions.items() if condition == "damaged"]
    message = f"{reservation.ReservationNumber}: {len(conditions)} item(s) returned"
    message += f", {len(remaining)} still out." if remaining else ", reservation closed."
    events = [queue_notification(db, reservation, "EquipmentReturned", message, attach_document=not remaining)]
    if damaged:
        events.append(
            notify_reception(
                db,
                reservation,
                "EquipmentDamaged",
                f"{reservation.ReservationNumber}: item(s) {', '.join(damaged)} returned damaged.",
            )
        )
    return events


def return_items(
    db: Session,
    reservation_id: int,
    item_returns: list[dict] | None = None,
    condition: str = "good",
    notes: str | None = None,
    operator_user_id: int | None = None,
    now: datetime | None = None,
) -> Outcome:
    now = now or datetime.now()
    with transaction(db):
        reservation = load_reservation(db, reservation_id)
        policy = get_policy(reservation.Kind)
        current = effective_status(reservation, now)
        if current not in policy.out_statuses:
            raise InvalidStateError(f"{reservation.ReservationNumber} is {current}; nothing is checked out.")
        returns = {int(entry["reservationItemID"]): entry for entry in item_returns or []}
        events = _return(db, reservation, policy, returns, condition, notes, operator_user_id, now)

    LOGGER.info("Reservation %s return processed, status=%s", reservation.ReservationNumber, reservation.Status)
    return Outcome(reservation, events)


def _mark_lost(
    db: Session,
    reservation: Reservation,
    policy: KindPolicy,
    notes: str | None,
    loss_amount: float | None,
    operator_user_id: int | None,
    now: datetime,
) -> list:
    _claim_status(db, reservation, policy.lost_status, now)
    written_off = 0
    value = 0.0
    for item in outstanding_items(reservation):
        equipment = get_item(db, item.EquipmentID, for_update=True)
        units = min(int(item.Quantity), int(equipment.CurrentQuantityOut or 0))
        if units > 0:
            write_off(db, item.EquipmentID, units)
        item.Status = "lost"
        written_off += units
        value += float(item.TotalAmount or 0)
    _release_items(reservation)
    reservation.ReturnedBy = operator_user_id
    reservation.LossAmount = loss_amount if loss_amount is not None else value
    append_note(reservation, f"Marked lost: {notes}" if notes else "Marked lost")
    return [
        notify_reception(
            db,
            reservation,
            "EquipmentLost",
            f"{reservation.ReservationNumber}: {written_off} unit(s) written off as lost.",
        )
    ]


def mark_lost(
    db: Session,
    reservation_id: int,
    notes: str | None = None,
    loss_amount: float | None = None,
    operator_user_id: int | None = None,
    now: datetime | None = None,
) -> Outcome:
    now = now or datetime.now()
    with transaction(db):
        reservation = load_reservation(db, reservation_id)
        policy = get_policy(reservation.Kind)
        current = effective_status(reservation, now)
        if not policy.lost_status or policy.lost_status not in policy.allowed_targets(current):
            raise InvalidTransitionError(current, "lost")
        events = _mark_lost(db, reservation, policy, notes, loss_amount, operator_user_id, now)
    LOGGER.warning("Reservation %s marked lost", reservation.ReservationNumber)
    return Outcome(reservation, events)


def update_status(
    db: Session,
    reservation_id: int,
    target: str,
    notes: str | None = None,
    operator_user_id: int | None = None,
    now: datetime | None = None,
) -> Outcome:
    """Apply one edge of the kind's transition table, with its side effects."""
    now = now or datetime.now()
    with transaction(db):
        reservation = load_reservation(db, reservation_id)
        policy = get_policy(reservation.Kind)
        current = effective_status(reservation, now)
        if target not in policy.allowed_targets(current):
            raise InvalidTransitionError(current, target)

        if current == policy.pending_status and target == policy.approve_status:
            events = _approve(db, reservation, policy, notes, operator_user_id, now)
        elif current == policy.pending_status and target == policy.reject_status:
            events = _reject(db, reservation, policy, notes, operator_user_id, now)
        elif target == policy.take_out_status:
            _claim_status(db, reservation, target, now)
            _take_out(db, reservation, operator_user_id, now)
            append_note(reservation, notes)
            events = [
                queue_notification(
                    db,
                    reservation,
                    "EquipmentCheckedOut",
                    f"{reservation.ReservationNumber}: equipment picked up, due back {reservation.WindowEnd:%Y-%m-%d %H:%M}.",
                    attach_document=True,
                )
            ]
        elif target == policy.returned_status and policy.out_statuses and current in policy.out_statuses:
            events = _return(db, reservation, policy, {}, "good", notes, operator_user_id, now)
        elif target == policy.lost_status:
            events = _mark_lost(db, reservation, policy, notes, None, operator_user_id, now)
        else:
            _claim_status(db, reservation, target, now)
            if target == "cancelled":
                _release_items(reservation)
            elif target == "in_progress":
                reservation.ActualStart = now
            elif target == "completed":
                reservation.ActualReturn = now
            append_note(reservation, notes)
            events = [
                queue_notification(
                    db,
                    reservation,
                    "ReservationStatusChanged",
                    f"{reservation.ReservationNumber} is now {target.replace('_', ' ')}.",
                )
            ]

    LOGGER.info("Reservation %s %s -> %s", reservation.ReservationNumber, current, target)
    invoice = None
    if target == policy.approve_status and current == policy.pending_status:
        invoice = _auto_invoice(db, reservation, operator_user_id, events)
    return Outcome(reservation, events, invoice)


def extend(
    db: Session,
    reservation_id: int,
    new_end: datetime,
    notes: str | None = None,
    operator_user_id: int | None = None,
    now: datetime | None = None,
) -> Outcome:
    now = now or datetime.now()
    with transaction(db):
        reservation = load_reservation(db, reservation_id)
        policy = get_policy(reservation.Kind)
        current = effective_status(reservation, now)
        if current not in policy.holding_statuses:
            raise InvalidStateError(f"{reservation.ReservationNumber} is {current} and cannot be extended.")
        old_end = reservation.WindowEnd
        if new_end <= old_end:
            raise ValidationError("The new end must be later than the current end.")

        if policy.takes_inventory:
            held = [item for item in equipment_items(reservation) if item.Status in HOLDING_ITEM_STATUSES]
            _hold_equipment(db, reservation, held, old_end, new_end, now)
        else:
            _hold_studio(db, reservation, old_end, new_end)

        resumed = reservation.Status
        if current == "overdue" and new_end > now:
            returned = any(item.Status == "returned" for item in reservation.Items)
            resumed = policy.partial_status if returned and policy.partial_status else policy.take_out_status
        _claim_status(db, reservation, resumed, now)

        old_units = float(reservation.DurationUnits or 0)
        new_units = _duration_units(policy, reservation.WindowStart, new_end)
        reservation.WindowEnd = new_end
        if reservation.InvoiceID:
            append_note(reservation, f"Extended to {new_end:%Y-%m-%d %H:%M}; invoice unchanged.")
        else:
            if old_units > 0 and new_units != old_units:
                for item in reservation.Items:
                    item.Rate = round(float(item.Rate or 0) * new_units / old_units, 2)
            reservation.DurationUnits = new_units
            recalc_totals(reservation)
        append_note(reservation, notes)
        touch(reservation)
        events = [
            queue_notification(
                db,
                reservation,
                "ReservationExtended",
                f"{reservation.ReservationNumber} extended to {new_end:%Y-%m-%d %H:%M}.",
            )
        ]

    LOGGER.info("Reservation %s extended %s -> %s", reservation.ReservationNumber, old_end, new_end)
    return Outcome(reservation, events)


def update_reservation_details(
    db: Session,
    reservation_id: int,
    changes: dict,
    operator_user_id: int | None = None,
    now: datetime | None = None,
) -> Outcome:
    now = now or datetime.now()
    with transaction(db):
        reservation = load_reservation(db, reservation_id)
        policy = get_policy(reservation.Kind)
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        if reservation.InvoiceID and set(changes) - INVOICE_LOCKED_EDITABLE:
            raise InvalidStateError(
                f"{reservation.ReservationNumber} is invoiced; only notes can change."
            )
        if reservation.Status in policy.terminal_statuses and set(changes) - INVOICE_LOCKED_EDITABLE:
            raise InvalidStateError(f"{reservation.ReservationNumber} is {reservation.Status}.")

        window_start = changes.get("WindowStart", reservation.WindowStart)
        window_end = changes.get("WindowEnd", reservation.WindowEnd)
        if "WindowStart" in changes or "WindowEnd" in changes:
            if reservation.Status != policy.pending_status:
                raise InvalidStateError("The window can only change before approval; use extend afterwards.")
            if window_end <= window_start:
                raise ValidationError("Window end must be after window start.")
            if policy.takes_inventory:
                _assert_equipment_free(
                    db,
                    _quantities_by_equipment(reservation.Items),
                    window_start,
                    window_end,
                    reservation.ReservationID,
                    now,
                )
            else:
                _assert_studio_free(db, reservation, window_start, window_end)

        _claim_status(db, reservation, reservation.Status, now)
        for field, value in changes.items():
            setattr(reservation, field, value)
        if set(changes) - INVOICE_LOCKED_EDITABLE:
            reservation.DurationUnits = _duration_units(policy, reservation.WindowStart, reservation.WindowEnd)
            recalc_totals(reservation)
        touch(reservation)

    LOGGER.info("Reservation %s details updated by %s", reservation.ReservationNumber, operator_user_id)
    return Outcome(reservation, [])


def delete_reservation(db: Session, reservation_id: int) -> str:
    with transaction(db):
        reservation = load_reservation(db, reservation_id)
        policy = get_policy(reservation.Kind)
        if reservation.InvoiceID or find_invoice(db, reservation_id):
            raise ResourceBusyError(f"{reservation.ReservationNumber} has an invoice and cannot be deleted.")
        if reservation.Status not in policy.deletable_statuses:
            raise InvalidStateError(
                f"{reservation.ReservationNumber} is {reservation.Status}; only "
                f"{', '.join(sorted(policy.deletable_statuses)) or 'no'} reservations can be deleted."
            )
        number = reservation.ReservationNumber
        db.delete(reservation)
    LOGGER.info("Reservation %s deleted", number)
    return number


def generate_invoice(
    db: Session,
    reservation_id: int,
    operator_user_id: int | None = None,
) -> tuple[Invoice, bool, list]:
    events = []
    with transaction(db):
        reservation = load_reservation(db, reservation_id)
        assert_invoiceable(reservation)
        invoice, created = ensure_invoice(db, reservation_id, operator_user_id)
        if created:
            events.append(
                queue_notification(
                    db,
                    reservation,
                    "InvoiceCreated",
                    f"Invoice {invoice.InvoiceNumber} for {reservation.ReservationNumber}: total {float(invoice.Total or 0):.2f}",
                    attach_document=True,
                )
            )
    return invoice, created, events


def refresh_overdue(db: Session, now: datetime | None = None) -> tuple[dict, list]:
    """Persist derived overdue statuses and queue at most one reminder a day."""
    now = now or datetime.now()
    due_soon = now + timedelta(days=DUE_SOON_DAYS)
    active = set()
    for policy in POLICIES.values():
        active |= policy.out_statuses

    marked = 0
    events = []
    with transaction(db):
        reservations = db.execute(
            select(Reservation)
            .options(selectinload(Reservation.Items))
            .where(Reservation.Status.in_(active))
        ).scalars().all()
        for reservation in reservations:
            current = effective_status(reservation, now)
            if current == "overdue" and reservation.Status != "overdue":
                _claim_status(db, reservation, "overdue", now)
                marked += 1
            if reservation.LastReminderDate and reservation.LastReminderDate.date() == now.date():
                continue
            if current == "overdue":
                message = f"{reservation.ReservationNumber} was due back {reservation.WindowEnd:%Y-%m-%d %H:%M} and is overdue."
                events.append(queue_notification(db, reservation, "Overdue", message))
                events.append(notify_reception(db, reservation, "Overdue", message))
            elif reservation.WindowEnd <= due_soon:
                events.append(
                    queue_notification(
                        db,
                        reservation,
                        "DueSoon",
                        f"Reminder: {reservation.ReservationNumber} is due back {reservation.WindowEnd:%Y-%m-%d %H:%M}.",
                    )
                )
            else:
                continue
            reservation.LastReminderDate = now

    LOGGER.info("Overdue sweep: %s newly overdue, %s reminder(s) queued", marked, len(events))
    return {"overdue": marked, "reminders": len(events)}, events
