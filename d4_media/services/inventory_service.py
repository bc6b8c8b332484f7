from __future__ import annotations

from datetime import date, datetime
import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from models.d4_models import Equipment, InOutRecord, MaintenanceRecord, Reservation, ReservationItem
from services.errors import (
    ConcurrentModificationError,
    DuplicateCodeError,
    InsufficientAvailabilityError,
    InvalidStateError,
    NotFoundError,
    ResourceBusyError,
    ValidationError,
)
from services.reservation_service import HOLDING_ITEM_STATUSES, POLICIES

LOGGER = logging.getLogger("d4_media.inventory")

CATEGORIES = {"audio", "video", "lighting", "presentation", "streaming", "accessories"}
CONDITIONS = {"excellent", "good", "fair", "poor", "damaged"}
USAGE_TYPES = {"studio", "event", "rental"}
HELD_STATUSES = {"maintenance", "damaged", "retired"}
OUT_STATUSES = {"checked_out", "partially_checked_out", "fully_checked_out"}

_RATE_COLUMNS = {
    ("studio", "daily"): "StudioDailyRate",
    ("studio", "hourly"): "StudioHourlyRate",
    ("event", "daily"): "EventDailyRate",
    ("event", "hourly"): "EventHourlyRate",
    ("rental", "daily"): "RentalDailyRate",
    ("rental", "hourly"): "RentalHourlyRate",
    ("rental", "weekly"): "RentalWeeklyRate",
    ("rental", "monthly"): "RentalMonthlyRate",
}


def _parse_seq(code: str) -> Optional[int]:
    parts = code.split("-")
    if len(parts) != 2:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def generate_next_equipment_code(db: Session) -> str:
    year = date.today().year
    prefix = f"EQ{year}-"

    existing = db.execute(
        select(Equipment.EquipmentCode).where(Equipment.EquipmentCode.startswith(prefix))
    ).scalars().all()

    max_seq = 0
    for code in existing:
        if not code:
            continue
        seq = _parse_seq(code)
        if seq and seq > max_seq:
            max_seq = seq

    return f"{prefix}{max_seq + 1:04d}"


def actual_available_quantity(equipment: Equipment) -> int:
    return int(equipment.AvailableQuantity or 0) - int(equipment.CurrentQuantityOut or 0)


def derive_checkout_status(equipment: Equipment) -> str:
    if equipment.CheckoutStatus in HELD_STATUSES:
        return equipment.CheckoutStatus
    out = int(equipment.CurrentQuantityOut or 0)
    total = int(equipment.AvailableQuantity or 0)
    if out <= 0:
        return "available"
    if out >= total:
        return "checked_out" if total == 1 else "fully_checked_out"
    return "partially_checked_out"


def rate_for(equipment: Equipment, context: str, unit: str = "daily") -> float:
    column = _RATE_COLUMNS.get((context, unit))
    if column is None:
        raise ValidationError(f"No {unit} rate exists for {context} usage.")
    value = getattr(equipment, column)
    if value is None and unit != "daily":
        value = getattr(equipment, _RATE_COLUMNS[(context, "daily")])
    return float(value or 0)


def _holding_statuses_by_kind() -> list[tuple[str, frozenset]]:
    return [(kind, policy.holding_statuses) for kind, policy in POLICIES.items() if policy.takes_inventory]


def equipment_holds(
    db: Session,
    equipment_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_reservation_id: int | None = None,
    now: datetime | None = None,
) -> list[tuple[datetime, datetime, int]]:
    """Closed windows of every hold on this equipment that touches the request.

    Units still out past their due date keep holding until they come back, so
    an overdue hold is stretched to ``now``.
    """
    now = now or datetime.now()
    stmt = (
        select(Reservation.Kind, Reservation.Status, Reservation.WindowStart, Reservation.WindowEnd, ReservationItem.Quantity, ReservationItem.Status)
        .join(Reservation, Reservation.ReservationID == ReservationItem.ReservationID)
        .where(ReservationItem.EquipmentID == equipment_id)
        .where(ReservationItem.Status.in_(HOLDING_ITEM_STATUSES))
        .where(Reservation.WindowStart <= window_end)
    )
    if exclude_reservation_id:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)

    holding = dict(_holding_statuses_by_kind())
    holds = []
    for kind, status, start, end, quantity, item_status in db.execute(stmt).all():
        if status not in holding.get(kind, ()):
            continue
        effective_end = max(end, now) if item_status == "out" else end
        if effective_end < window_start:
            continue
        holds.append((max(start, window_start), min(effective_end, window_end), int(quantity or 0)))
    return holds


def peak_demand(holds: list[tuple[datetime, datetime, int]]) -> int:
    """Largest summed quantity held at any single instant (sweep line)."""
    events = []
    for start, end, quantity in holds:
        # Starts sort before ends at the same instant: windows are closed.
        events.append((start, 0, quantity))
        events.append((end, 1, -quantity))
    events.sort(key=lambda event: (event[0], event[1]))

    running = 0
    peak = 0
    for _, _, change in events:
        running += change
        peak = max(peak, running)
    return peak


def promised_units(db: Session, equipment: Equipment, now: datetime | None = None) -> int:
    """Units this item must keep owning: peak reservation demand from now on
    plus whatever was taken out by hand outside any reservation."""
    now = now or datetime.now()
    horizon = db.execute(
        select(func.max(Reservation.WindowEnd))
        .join(ReservationItem, ReservationItem.ReservationID == Reservation.ReservationID)
        .where(ReservationItem.EquipmentID == equipment.EquipmentID)
        .where(ReservationItem.Status.in_(HOLDING_ITEM_STATUSES))
    ).scalar()
    peak = peak_demand(equipment_holds(db, equipment.EquipmentID, now, max(horizon or now, now), now=now))
    reserved_out = db.execute(
        select(func.coalesce(func.sum(ReservationItem.Quantity), 0))
        .where(ReservationItem.EquipmentID == equipment.EquipmentID)
        .where(ReservationItem.Status == "out")
    ).scalar()
    manual_out = int(equipment.CurrentQuantityOut or 0) - int(reserved_out or 0)
    return peak + max(0, manual_out)


def _open_hold_count(db: Session, equipment_id: int) -> int:
    return int(
        db.execute(
            select(func.count(ReservationItem.ReservationItemID))
            .join(Reservation, Reservation.ReservationID == ReservationItem.ReservationID)
            .where(ReservationItem.EquipmentID == equipment_id)
            .where(ReservationItem.Status.in_(HOLDING_ITEM_STATUSES))
            .where(Reservation.Kind.in_([kind for kind, _ in _holding_statuses_by_kind()]))
        ).scalar()
        or 0
    )


def get_item(db: Session, equipment_id: int, for_update: bool = False) -> Equipment:
    stmt = select(Equipment).where(Equipment.EquipmentID == equipment_id)
    if for_update:
        stmt = stmt.with_for_update()
    equipment = db.execute(stmt).scalars().first()
    if not equipment:
        raise NotFoundError(f"Equipment {equipment_id} not found")
    return equipment


def _validate_fields(fields: dict) -> None:
    category = fields.get("Category")
    if category is not None and category not in CATEGORIES:
        raise ValidationError(f"Unknown equipment category: {category}")
    condition = fields.get("Condition")
    if condition is not None and condition not in CONDITIONS:
        raise ValidationError(f"Unknown equipment condition: {condition}")
    usage = fields.get("UsageTypes")
    if usage is not None and not set(usage) <= USAGE_TYPES:
        raise ValidationError("usageTypes must be a subset of studio, event, rental.")
    quantity = fields.get("AvailableQuantity")
    if quantity is not None and int(quantity) < 0:
        raise ValidationError("availableQuantity cannot be negative.")
    for column in _RATE_COLUMNS.values():
        rate = fields.get(column)
        if rate is not None and float(rate) < 0:
            raise ValidationError(f"{column} cannot be negative.")


def _ensure_unique(db: Session, name: str | None, code: str | None, exclude_id: int | None = None) -> None:
    if name:
        stmt = select(Equipment.EquipmentID).where(func.lower(Equipment.Name) == name.strip().lower())
        if exclude_id:
            stmt = stmt.where(Equipment.EquipmentID != exclude_id)
        if db.execute(stmt).first():
            raise DuplicateCodeError(f"Equipment name already exists: {name}")
    if code:
        stmt = select(Equipment.EquipmentID).where(Equipment.EquipmentCode == code)
        if exclude_id:
            stmt = stmt.where(Equipment.EquipmentID != exclude_id)
        if db.execute(stmt).first():
            raise DuplicateCodeError(f"Equipment code already exists: {code}")


def create_item(db: Session, fields: dict, created_by: int | None = None) -> Equipment:
    if not (fields.get("Name") or "").strip():
        raise ValidationError("Equipment name is required.")
    if not fields.get("Category"):
        raise ValidationError("Equipment category is required.")
    _validate_fields(fields)

    code = (fields.get("EquipmentCode") or "").strip().upper() or None
    _ensure_unique(db, fields["Name"], code)

    equipment = Equipment(**{key: value for key, value in fields.items() if key != "EquipmentCode"})
    equipment.Name = fields["Name"].strip()
    equipment.EquipmentCode = code or generate_next_equipment_code(db)
    equipment.AvailableQuantity = int(fields.get("AvailableQuantity") if fields.get("AvailableQuantity") is not None else 1)
    equipment.CurrentQuantityOut = 0
    equipment.CheckoutStatus = "available"
    equipment.Version = 1
    equipment.IsActive = True
    equipment.CreatedBy = created_by
    equipment.CreatedDate = datetime.now()
    equipment.UpdatedDate = datetime.now()
    db.add(equipment)
    db.flush()
    LOGGER.info("Equipment created id=%s code=%s quantity=%s", equipment.EquipmentID, equipment.EquipmentCode, equipment.AvailableQuantity)
    return equipment


def claim_version(db: Session, equipment: Equipment) -> None:
    """Compare-and-set on Version so concurrent writers to one item serialize."""
    db.flush()
    seen = equipment.Version
    result = db.execute(
        update(Equipment)
        .where(Equipment.EquipmentID == equipment.EquipmentID)
        .where(Equipment.Version == seen)
        .values(Version=Equipment.Version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModificationError(f"Equipment {equipment.EquipmentID} was modified concurrently; retry the operation.")
    db.refresh(equipment)


def update_item(db: Session, equipment_id: int, changes: dict) -> Equipment:
    equipment = get_item(db, equipment_id, for_update=True)
    _validate_fields(changes)

    if "EquipmentCode" in changes and changes["EquipmentCode"]:
        changes["EquipmentCode"] = changes["EquipmentCode"].strip().upper()
    _ensure_unique(db, changes.get("Name"), changes.get("EquipmentCode"), exclude_id=equipment_id)

    new_quantity = changes.get("AvailableQuantity")
    if new_quantity is not None:
        if int(new_quantity) < int(equipment.CurrentQuantityOut or 0):
            raise InsufficientAvailabilityError(
                f"availableQuantity cannot drop below the {equipment.CurrentQuantityOut} units currently out."
            )
        promised = promised_units(db, equipment)
        if int(new_quantity) < promised:
            raise InsufficientAvailabilityError(
                f"availableQuantity cannot drop below the {promised} units already promised to reservations."
            )

    claim_version(db, equipment)
    for field, value in changes.items():
        if field in {"EquipmentID", "CurrentQuantityOut", "CheckoutStatus", "Version"}:
            continue
        setattr(equipment, field, value)
    equipment.CheckoutStatus = derive_checkout_status(equipment)
    equipment.UpdatedDate = datetime.now()
    db.flush()
    return equipment


def adjust_out(db: Session, equipment_id: int, delta: int) -> Equipment:
    """Add ``delta`` to CurrentQuantityOut in one guarded statement.

    The bound check and the write happen in the same UPDATE, so two callers
    can never push the counter past AvailableQuantity or below zero.
    """
    db.flush()
    stmt = (
        update(Equipment)
        .where(Equipment.EquipmentID == equipment_id)
        .where(Equipment.CurrentQuantityOut + delta >= 0)
        .where(Equipment.CurrentQuantityOut + delta <= Equipment.AvailableQuantity)
        .values(
            CurrentQuantityOut=Equipment.CurrentQuantityOut + delta,
            Version=Equipment.Version + 1,
            UpdatedDate=datetime.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if delta > 0:
        stmt = stmt.where(Equipment.IsActive.is_(True)).where(Equipment.CheckoutStatus.notin_(HELD_STATUSES))
    result = db.execute(stmt)

    equipment = get_item(db, equipment_id)
    db.refresh(equipment)
    if result.rowcount != 1:
        if delta > 0 and (not equipment.IsActive or equipment.CheckoutStatus in HELD_STATUSES):
            raise InsufficientAvailabilityError(
                f"{equipment.Name} is not available for checkout (status {equipment.CheckoutStatus})."
            )
        raise InsufficientAvailabilityError(
            f"{equipment.Name}: requested {abs(delta)}, available {actual_available_quantity(equipment)}, "
            f"out {equipment.CurrentQuantityOut}."
        )

    equipment.CheckoutStatus = derive_checkout_status(equipment)
    LOGGER.info(
        "Equipment %s out=%s/%s status=%s",
        equipment.EquipmentID,
        equipment.CurrentQuantityOut,
        equipment.AvailableQuantity,
        equipment.CheckoutStatus,
    )
    return equipment


def write_off(db: Session, equipment_id: int, quantity: int) -> Equipment:
    """Remove lost units from both the owned and the outstanding counters."""
    db.flush()
    result = db.execute(
        update(Equipment)
        .where(Equipment.EquipmentID == equipment_id)
        .where(Equipment.CurrentQuantityOut >= quantity)
        .where(Equipment.AvailableQuantity >= quantity)
        .values(
            CurrentQuantityOut=Equipment.CurrentQuantityOut - quantity,
            AvailableQuantity=Equipment.AvailableQuantity - quantity,
            Version=Equipment.Version + 1,
            UpdatedDate=datetime.now(),
        )
        .execution_options(synchronize_session=False)
    )
    equipment = get_item(db, equipment_id)
    db.refresh(equipment)
    if result.rowcount != 1:
        raise InsufficientAvailabilityError(
            f"{equipment.Name}: cannot write off {quantity}, only {equipment.CurrentQuantityOut} out."
        )
    equipment.CheckoutStatus = derive_checkout_status(equipment)
    LOGGER.warning("Equipment %s wrote off %s lost unit(s)", equipment_id, quantity)
    return equipment


def mark_damaged(equipment: Equipment) -> None:
    equipment.Condition = "damaged"
    equipment.CheckoutStatus = "damaged"
    equipment.UpdatedDate = datetime.now()


def deactivate(db: Session, equipment_id: int) -> Equipment:
    equipment = get_item(db, equipment_id, for_update=True)
    if int(equipment.CurrentQuantityOut or 0) > 0 or equipment.CheckoutStatus in OUT_STATUSES:
        raise ResourceBusyError("Cannot delete equipment that is currently checked out")
    if _open_hold_count(db, equipment_id):
        raise ResourceBusyError("Cannot delete equipment that confirmed reservations still hold")
    claim_version(db, equipment)
    equipment.IsActive = False
    equipment.UpdatedDate = datetime.now()
    LOGGER.info("Equipment %s deactivated", equipment_id)
    return equipment


def append_in_out_record(
    db: Session,
    equipment_id: int,
    direction: str,
    quantity: int,
    reservation_id: int | None = None,
    reference: str | None = None,
    condition: str | None = None,
    operator_user_id: int | None = None,
    notes: str | None = None,
) -> InOutRecord:
    record = InOutRecord(
        EquipmentID=equipment_id,
        ReservationID=reservation_id,
        Direction=direction,
        Quantity=quantity,
        Reference=reference,
        Condition=condition,
        OperatorUserID=operator_user_id,
        RecordedAt=datetime.now(),
        Notes=notes,
    )
    db.add(record)
    return record


def record_in_out(
    db: Session,
    equipment_id: int,
    direction: str,
    quantity: int,
    reference: str | None = None,
    condition: str | None = None,
    operator_user_id: int | None = None,
    notes: str | None = None,
) -> Equipment:
    if direction not in {"out", "in"}:
        raise ValidationError("direction must be 'out' or 'in'.")
    if quantity < 1:
        raise ValidationError("quantity must be at least 1.")
    if condition is not None and condition not in CONDITIONS:
        raise ValidationError(f"Unknown equipment condition: {condition}")

    equipment = get_item(db, equipment_id, for_update=True)
    if direction == "in" and quantity > int(equipment.CurrentQuantityOut or 0):
        raise ValidationError(
            f"Cannot check in {quantity} unit(s); only {equipment.CurrentQuantityOut} out."
        )

    equipment = adjust_out(db, equipment_id, quantity if direction == "out" else -quantity)
    if direction == "in" and condition == "damaged":
        mark_damaged(equipment)
    append_in_out_record(
        db,
        equipment_id,
        direction,
        quantity,
        reference=reference,
        condition=condition,
        operator_user_id=operator_user_id,
        notes=notes,
    )
    return equipment


def start_maintenance(
    db: Session,
    equipment_id: int,
    maintenance_type: str,
    description: str,
    performed_by: str | None = None,
    cost: float | None = None,
    notes: str | None = None,
) -> MaintenanceRecord:
    equipment = get_item(db, equipment_id, for_update=True)
    if equipment.CheckoutStatus == "retired":
        raise InvalidStateError("Retired equipment cannot be sent to maintenance.")
    if equipment.CheckoutStatus == "maintenance":
        raise InvalidStateError("Equipment is already in maintenance.")
    if int(equipment.CurrentQuantityOut or 0) > 0:
        raise ResourceBusyError("Equipment with units checked out cannot enter maintenance.")

    claim_version(db, equipment)
    equipment.CheckoutStatus = "maintenance"
    equipment.UpdatedDate = datetime.now()
    record = MaintenanceRecord(
        EquipmentID=equipment_id,
        MaintenanceType=maintenance_type,
        Description=description,
        Status="open",
        Cost=cost,
        PerformedBy=performed_by,
        StartedAt=datetime.now(),
        Notes=notes,
    )
    db.add(record)
    db.flush()
    LOGGER.info("Equipment %s entered maintenance record=%s", equipment_id, record.MaintenanceID)
    return record


def complete_maintenance(
    db: Session,
    equipment_id: int,
    condition_after: str = "good",
    cost: float | None = None,
    notes: str | None = None,
) -> MaintenanceRecord:
    if condition_after not in CONDITIONS or condition_after == "damaged":
        raise ValidationError("conditionAfter must be a serviceable condition.")
    equipment = get_item(db, equipment_id, for_update=True)
    record = db.execute(
        select(MaintenanceRecord)
        .where(MaintenanceRecord.EquipmentID == equipment_id)
        .where(MaintenanceRecord.Status == "open")
        .order_by(MaintenanceRecord.MaintenanceID.desc())
    ).scalars().first()
    if not record:
        raise InvalidStateError("Equipment has no open maintenance record.")

    claim_version(db, equipment)
    record.Status = "completed"
    record.CompletedAt = datetime.now()
    record.ConditionAfter = condition_after
    if cost is not None:
        record.Cost = cost
    if notes:
        record.Notes = (record.Notes + "\n" if record.Notes else "") + notes

    equipment.Condition = condition_after
    equipment.CheckoutStatus = "available"
    equipment.CheckoutStatus = derive_checkout_status(equipment)
    equipment.UpdatedDate = datetime.now()
    LOGGER.info("Equipment %s left maintenance condition=%s", equipment_id, condition_after)
    return record


def retire(db: Session, equipment_id: int, notes: str | None = None) -> Equipment:
    equipment = get_item(db, equipment_id, for_update=True)
    if int(equipment.CurrentQuantityOut or 0) > 0:
        raise ResourceBusyError("Equipment with units checked out cannot be retired.")
    claim_version(db, equipment)
    equipment.CheckoutStatus = "retired"
    if notes:
        equipment.Notes = (equipment.Notes + "\n" if equipment.Notes else "") + notes
    equipment.UpdatedDate = datetime.now()
    return equipment


def serialize_equipment(equipment: Equipment) -> dict:
    return {
        "equipmentID": equipment.EquipmentID,
        "name": equipment.Name,
        "equipmentCode": equipment.EquipmentCode,
        "category": equipment.Category,
        "description": equipment.Description,
        "specifications": equipment.Specifications,
        "pricing": {
            "studio": {
                "dailyRate": float(equipment.StudioDailyRate or 0),
                "hourlyRate": float(equipment.StudioHourlyRate) if equipment.StudioHourlyRate is not None else None,
            },
            "event": {
                "dailyRate": float(equipment.EventDailyRate or 0),
                "hourlyRate": float(equipment.EventHourlyRate) if equipment.EventHourlyRate is not None else None,
            },
            "rental": {
                "dailyRate": float(equipment.RentalDailyRate or 0),
                "hourlyRate": float(equipment.RentalHourlyRate) if equipment.RentalHourlyRate is not None else None,
                "weeklyRate": float(equipment.RentalWeeklyRate) if equipment.RentalWeeklyRate is not None else None,
                "monthlyRate": float(equipment.RentalMonthlyRate) if equipment.RentalMonthlyRate is not None else None,
            },
        },
        "usageTypes": list(equipment.UsageTypes or []),
        "availableQuantity": equipment.AvailableQuantity,
        "currentQuantityOut": equipment.CurrentQuantityOut,
        "actualAvailableQuantity": actual_available_quantity(equipment),
        "checkoutStatus": equipment.CheckoutStatus,
        "condition": equipment.Condition,
        "location": equipment.Location,
        "serialNumber": equipment.SerialNumber,
        "brand": equipment.Brand,
        "model": equipment.Model,
        "notes": equipment.Notes,
        "isActive": bool(equipment.IsActive),
        "version": equipment.Version,
        "createdDate": equipment.CreatedDate,
        "updatedDate": equipment.UpdatedDate,
    }


def serialize_maintenance(record: MaintenanceRecord) -> dict:
    return {
        "maintenanceID": record.MaintenanceID,
        "equipmentID": record.EquipmentID,
        "maintenanceType": record.MaintenanceType,
        "description": record.Description,
        "status": record.Status,
        "cost": float(record.Cost) if record.Cost is not None else None,
        "performedBy": record.PerformedBy,
        "startedAt": record.StartedAt,
        "completedAt": record.CompletedAt,
        "conditionAfter": record.ConditionAfter,
        "notes": record.Notes,
    }


def serialize_in_out(record: InOutRecord) -> dict:
    return {
        "recordID": record.RecordID,
        "equipmentID": record.EquipmentID,
        "reservationID": record.ReservationID,
        "direction": record.Direction,
        "quantity": record.Quantity,
        "reference": record.Reference,
        "condition": record.Condition,
        "operatorUserID": record.OperatorUserID,
        "recordedAt": record.RecordedAt,
        "notes": record.Notes,
    }
