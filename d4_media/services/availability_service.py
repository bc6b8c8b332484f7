from __future__ import annotations

from datetime import date, datetime, time, timedelta
import os

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.d4_models import Reservation, ReservationItem, StudioRoom
from services.errors import ConcurrentModificationError, ValidationError
from services.inventory_service import HELD_STATUSES, actual_available_quantity, equipment_holds, get_item, peak_demand
from services.reservation_service import POLICIES, STUDIO_BOOKING

# Equipment units are interchangeable, so overlapping holds are fine while the
# summed quantity fits the stock (closed windows). A studio room admits one
# holder at a time; its windows are half-open so back-to-back sessions fit.
RESOURCE_POLICIES = {
    "equipment": "quantity_pooled",
    "studio": "exclusive",
}

STUDIO_HOLDING_STATUSES = POLICIES[STUDIO_BOOKING].holding_statuses


def _parse_clock(raw: str, default: time) -> time:
    try:
        hours, minutes = str(raw).split(":", 1)
        return time(int(hours), int(minutes))
    except (TypeError, ValueError):
        return default


STUDIO_OPEN_TIME = _parse_clock(os.environ.get("STUDIO_OPEN_TIME", "08:00"), time(8, 0))
STUDIO_CLOSE_TIME = _parse_clock(os.environ.get("STUDIO_CLOSE_TIME", "20:00"), time(20, 0))
STUDIO_SLOT_MINUTES = int(os.environ.get("STUDIO_SLOT_MINUTES") or "30")


def _validate_window(window_start: datetime, window_end: datetime, allow_instant: bool = True) -> None:
    if window_start is None or window_end is None:
        raise ValidationError("Both window start and end are required.")
    if window_end < window_start or (not allow_instant and window_end == window_start):
        raise ValidationError("Window end must be after window start.")


def _units_out_for(db: Session, equipment_id: int, reservation_id: int | None) -> int:
    if not reservation_id:
        return 0
    total = db.execute(
        select(func.coalesce(func.sum(ReservationItem.Quantity), 0))
        .where(ReservationItem.ReservationID == reservation_id)
        .where(ReservationItem.EquipmentID == equipment_id)
        .where(ReservationItem.Status == "out")
    ).scalar()
    return int(total or 0)


def check_equipment_availability(
    db: Session,
    equipment_id: int,
    window_start: datetime,
    window_end: datetime,
    quantity: int = 1,
    exclude_reservation_id: int | None = None,
    now: datetime | None = None,
) -> dict:
    _validate_window(window_start, window_end)
    if quantity < 1:
        raise ValidationError("quantity must be at least 1.")
    now = now or datetime.now()
    equipment = get_item(db, equipment_id)

    total = int(equipment.AvailableQuantity or 0)
    holds = equipment_holds(db, equipment_id, window_start, window_end, exclude_reservation_id, now)
    peak = peak_demand(holds)
    free = max(0, total - peak)

    reason = None
    if not equipment.IsActive:
        free = 0
        reason = "Equipment is inactive."
    elif equipment.CheckoutStatus in HELD_STATUSES:
        free = 0
        reason = f"Equipment is {equipment.CheckoutStatus}."
    elif window_start <= now:
        # Counters also see manual movements that no reservation records.
        spare = actual_available_quantity(equipment) + _units_out_for(db, equipment_id, exclude_reservation_id)
        free = min(free, max(0, spare))

    available = quantity <= free
    if not available and reason is None:
        reason = f"Requested {quantity}, only {free} free for the requested window."

    return {
        "equipmentID": equipment.EquipmentID,
        "name": equipment.Name,
        "available": available,
        "requestedQuantity": quantity,
        "availableQuantity": total,
        "currentQuantityOut": equipment.CurrentQuantityOut,
        "actualAvailableQuantity": actual_available_quantity(equipment),
        "peakDemand": peak,
        "freeQuantity": free,
        "reason": reason,
    }


def studio_conflicts(
    db: Session,
    studio_room: str,
    window_start: datetime,
    window_end: datetime,
    exclude_reservation_id: int | None = None,
) -> list[Reservation]:
    stmt = (
        select(Reservation)
        .where(Reservation.Kind == STUDIO_BOOKING)
        .where(Reservation.StudioRoom == studio_room)
        .where(Reservation.Status.in_(STUDIO_HOLDING_STATUSES))
        .where(Reservation.WindowStart < window_end)
        .where(Reservation.WindowEnd > window_start)
        .order_by(Reservation.WindowStart)
    )
    if exclude_reservation_id:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    return list(db.execute(stmt).scalars().all())


def claim_room_version(db: Session, room: StudioRoom) -> None:
    db.flush()
    result = db.execute(
        update(StudioRoom)
        .where(StudioRoom.RoomID == room.RoomID)
        .where(StudioRoom.Version == room.Version)
        .values(Version=StudioRoom.Version + 1, UpdatedDate=datetime.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModificationError(f"{room.Name} was booked concurrently; retry the operation.")
    db.refresh(room)


def claim_studio_room(db: Session, studio_room: str) -> StudioRoom:
    """Lock the room and bump its Version so holds on one room serialize.

    A writer that loses the compare-and-set raises ConcurrentModificationError
    and must retry, by which time the winner's booking is visible.
    """
    room = db.execute(
        select(StudioRoom).where(StudioRoom.Name == studio_room).with_for_update()
    ).scalars().first()
    if room is None:
        room = StudioRoom(Name=studio_room, Version=1, UpdatedDate=datetime.now())
        db.add(room)
        try:
            db.flush()
        except IntegrityError as exc:
            raise ConcurrentModificationError(f"{studio_room} was booked concurrently; retry the operation.") from exc

    claim_room_version(db, room)
    return room


def is_studio_slot_available(
    db: Session,
    studio_room: str,
    window_start: datetime,
    window_end: datetime,
    exclude_reservation_id: int | None = None,
) -> bool:
    _validate_window(window_start, window_end, allow_instant=False)
    return not studio_conflicts(db, studio_room, window_start, window_end, exclude_reservation_id)


def is_available(
    db: Session,
    window_start: datetime,
    window_end: datetime,
    *,
    equipment_id: int | None = None,
    studio_room: str | None = None,
    quantity: int = 1,
    exclude_reservation_id: int | None = None,
    now: datetime | None = None,
) -> bool:
    if (equipment_id is None) == (studio_room is None):
        raise ValidationError("Provide exactly one of equipment_id or studio_room.")
    if studio_room is not None:
        return is_studio_slot_available(db, studio_room, window_start, window_end, exclude_reservation_id)
    details = check_equipment_availability(
        db,
        equipment_id,
        window_start,
        window_end,
        quantity=quantity,
        exclude_reservation_id=exclude_reservation_id,
        now=now,
    )
    return details["available"]


def get_available_time_slots(
    db: Session,
    studio_room: str,
    day: date,
    slot_minutes: int | None = None,
) -> list[dict]:
    step = timedelta(minutes=slot_minutes or STUDIO_SLOT_MINUTES)
    if step <= timedelta(0):
        raise ValidationError("slot length must be positive.")
    opening = datetime.combine(day, STUDIO_OPEN_TIME)
    closing = datetime.combine(day, STUDIO_CLOSE_TIME)
    bookings = studio_conflicts(db, studio_room, opening, closing)

    slots = []
    cursor = opening
    while cursor + step <= closing:
        slot_end = cursor + step
        taken = any(b.WindowStart < slot_end and b.WindowEnd > cursor for b in bookings)
        slots.append(
            {
                "startTime": cursor.strftime("%H:%M"),
                "endTime": slot_end.strftime("%H:%M"),
                "available": not taken,
            }
        )
        cursor = slot_end
    return slots
