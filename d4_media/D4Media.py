import logging
import os
from datetime import date, datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.orm import Session, selectinload

from dotenv import load_dotenv

load_dotenv()

from db.deps import get_d4_db
from db.unit_of_work import transaction
from models.d4_models import Equipment, InOutRecord, MaintenanceRecord, NotificationQueue, Reservation, ReservationItem
from schemas.equipment import EquipmentUpsert, InOutRequest, MaintenanceRequest
from schemas.reservations import (
    CreateReservationDto,
    ExtensionRequest,
    InvoiceRequest,
    MarkLostRequest,
    PriceEstimateRequest,
    ReservationDecisionRequest,
    ReturnRequest,
    StatusUpdateRequest,
    UpdateReservationDto,
)
from services.availability_service import (
    RESOURCE_POLICIES,
    check_equipment_availability,
    get_available_time_slots,
    studio_conflicts,
)
from services.errors import ReservationError, ValidationError
from services.inventory_service import (
    complete_maintenance,
    create_item,
    deactivate,
    get_item,
    rate_for,
    record_in_out,
    retire,
    serialize_equipment,
    serialize_in_out,
    serialize_maintenance,
    start_maintenance,
    update_item,
)
from services.invoice_service import serialize_invoice
from services.lifecycle_service import (
    Outcome,
    apply_runtime_state,
    approve_or_reject,
    create_reservation,
    delete_reservation,
    extend,
    generate_invoice,
    mark_lost,
    refresh_overdue,
    return_items,
    update_reservation_details,
    update_status,
)
from services.notification_service import WhatsAppGateway, dispatch_pending, serialize_notification
from services.pricing_service import compute_total, duration_days, duration_hours
from services.reservation_service import POLICIES, load_reservation, serialize_reservation

LOGGER = logging.getLogger("d4_media.api")

app = FastAPI()

def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

_GATEWAY = WhatsAppGateway()


def get_gateway() -> WhatsAppGateway:
    return _GATEWAY


@app.exception_handler(ReservationError)
def handle_reservation_error(request: Request, exc: ReservationError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "error": exc.code})


def _dispatch_events(db: Session, gateway, events: list[NotificationQueue]) -> None:
    ids = [event.NotificationID for event in events if event.NotificationID]
    if not ids:
        return
    try:
        dispatch_pending(db, gateway, notification_ids=ids)
    except Exception:
        # Delivery is best effort; the queue keeps what was not sent.
        LOGGER.exception("Dispatch after commit failed for notifications %s", ids)


def _outcome_payload(message: str, outcome: Outcome) -> dict:
    return {
        "message": message,
        "reservation": serialize_reservation(outcome.reservation),
        "invoice": serialize_invoice(outcome.invoice) if outcome.invoice else None,
    }


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_d4_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/equipment")
def get_equipment(
    category: Optional[str] = None,
    include_inactive: bool = Query(False, alias="includeInactive"),
    db: Session = Depends(get_d4_db),
):
    stmt = select(Equipment).order_by(Equipment.Name)
    if category:
        stmt = stmt.where(Equipment.Category == category)
    if not include_inactive:
        stmt = stmt.where(Equipment.IsActive == True)
    return [serialize_equipment(equipment) for equipment in db.execute(stmt).scalars().all()]


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: int, db: Session = Depends(get_d4_db)):
    return serialize_equipment(get_item(db, equipment_id))


@app.post("/api/equipment")
def create_equipment(payload: EquipmentUpsert, operator_user_id: Optional[int] = Query(None, alias="operatorUserID"), db: Session = Depends(get_d4_db)):
    fields = {_map_equipment_field(field): value for field, value in payload.model_dump(exclude_unset=True).items() if field != "equipmentID"}
    with transaction(db):
        equipment = create_item(db, fields, created_by=operator_user_id)
    return serialize_equipment(equipment)


@app.put("/api/equipment/{equipment_id}")
def update_equipment(equipment_id: int, payload: EquipmentUpsert, db: Session = Depends(get_d4_db)):
    changes = {_map_equipment_field(field): value for field, value in payload.model_dump(exclude_unset=True).items() if field != "equipmentID"}
    with transaction(db):
        equipment = update_item(db, equipment_id, changes)
    return serialize_equipment(equipment)


@app.delete("/api/equipment/{equipment_id}")
def delete_equipment(equipment_id: int, db: Session = Depends(get_d4_db)):
    with transaction(db):
        deactivate(db, equipment_id)
    return {"message": "Deactivated"}


@app.post("/api/equipment/{equipment_id}/maintenance")
def equipment_maintenance(equipment_id: int, payload: MaintenanceRequest, db: Session = Depends(get_d4_db)):
    with transaction(db):
        if payload.action == "start":
            if not payload.description:
                raise ValidationError("description is required to start maintenance.")
            record = start_maintenance(
                db,
                equipment_id,
                payload.maintenanceType or "repair",
                payload.description,
                performed_by=payload.performedBy,
                cost=payload.cost,
                notes=payload.notes,
            )
        elif payload.action == "complete":
            record = complete_maintenance(
                db,
                equipment_id,
                condition_after=payload.conditionAfter or "good",
                cost=payload.cost,
                notes=payload.notes,
            )
        else:
            record = None
            retire(db, equipment_id, notes=payload.notes)
    equipment = get_item(db, equipment_id)
    return {
        "equipment": serialize_equipment(equipment),
        "maintenance": serialize_maintenance(record) if record else None,
    }


@app.post("/api/equipment/{equipment_id}/in-out")
def equipment_in_out(equipment_id: int, payload: InOutRequest, db: Session = Depends(get_d4_db)):
    with transaction(db):
        equipment = record_in_out(
            db,
            equipment_id,
            payload.direction,
            payload.quantity,
            reference=payload.reference,
            condition=payload.condition,
            operator_user_id=payload.operatorUserID,
            notes=payload.notes,
        )
    return serialize_equipment(equipment)


@app.get("/api/equipment/{equipment_id}/history")
def equipment_history(equipment_id: int, db: Session = Depends(get_d4_db)):
    get_item(db, equipment_id)
    maintenance = db.execute(
        select(MaintenanceRecord)
        .where(MaintenanceRecord.EquipmentID == equipment_id)
        .order_by(MaintenanceRecord.MaintenanceID.desc())
    ).scalars().all()
    movements = db.execute(
        select(InOutRecord)
        .where(InOutRecord.EquipmentID == equipment_id)
        .order_by(InOutRecord.RecordID.desc())
    ).scalars().all()
    return {
        "maintenance": [serialize_maintenance(record) for record in maintenance],
        "inOut": [serialize_in_out(record) for record in movements],
    }


@app.get("/api/availability/equipment")
def equipment_availability(
    equipment_id: int = Query(..., alias="equipmentID"),
    start: datetime = Query(...),
    end: datetime = Query(...),
    quantity: int = Query(1),
    exclude_reservation_id: Optional[int] = Query(None, alias="excludeReservationID"),
    db: Session = Depends(get_d4_db),
):
    details = check_equipment_availability(db, equipment_id, start, end, quantity, exclude_reservation_id)
    details["policy"] = RESOURCE_POLICIES["equipment"]
    return details


@app.get("/api/availability/studio")
def studio_availability(
    studio_room: str = Query(..., alias="studioRoom"),
    start: datetime = Query(...),
    end: datetime = Query(...),
    exclude_reservation_id: Optional[int] = Query(None, alias="excludeReservationID"),
    db: Session = Depends(get_d4_db),
):
    if end <= start:
        raise ValidationError("end must be after start.")
    conflicts = studio_conflicts(db, studio_room, start, end, exclude_reservation_id)
    return {
        "studioRoom": studio_room,
        "available": not conflicts,
        "policy": RESOURCE_POLICIES["studio"],
        "conflicts": [
            {
                "reservationNumber": booking.ReservationNumber,
                "windowStart": booking.WindowStart,
                "windowEnd": booking.WindowEnd,
                "status": booking.Status,
            }
            for booking in conflicts
        ],
    }


@app.get("/api/availability/studio/slots")
def studio_slots(
    studio_room: str = Query(..., alias="studioRoom"),
    day: date = Query(...),
    slot_minutes: Optional[int] = Query(None, alias="slotMinutes"),
    db: Session = Depends(get_d4_db),
):
    return {"studioRoom": studio_room, "day": day, "slots": get_available_time_slots(db, studio_room, day, slot_minutes)}


@app.get("/api/reservations")
def get_reservations(
    kind: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_d4_db),
):
    stmt = (
        select(Reservation)
        .options(selectinload(Reservation.Items).selectinload(ReservationItem.Equipment))
        .order_by(Reservation.WindowStart.desc())
    )
    if kind:
        stmt = stmt.where(Reservation.Kind == kind)
    reservations = db.execute(stmt).scalars().all()
    payloads = []
    for reservation in reservations:
        current = apply_runtime_state(reservation)
        if status and current != status:
            continue
        payloads.append(serialize_reservation(reservation))
    return payloads


@app.get("/api/reservations/{reservation_id}")
def get_reservation(reservation_id: int, db: Session = Depends(get_d4_db)):
    reservation = load_reservation(db, reservation_id)
    apply_runtime_state(reservation)
    return serialize_reservation(reservation)


@app.post("/api/reservations")
def create_reservation_endpoint(
    payload: CreateReservationDto,
    db: Session = Depends(get_d4_db),
    gateway=Depends(get_gateway),
):
    data = payload.model_dump()
    fields = {
        _map_reservation_field(field): value
        for field, value in data.items()
        if field not in {"kind", "items", "operatorUserID"}
    }
    outcome = create_reservation(db, payload.kind, fields, data["items"], operator_user_id=payload.operatorUserID)
    _dispatch_events(db, gateway, outcome.events)
    return serialize_reservation(outcome.reservation)


@app.put("/api/reservations/{reservation_id}")
def update_reservation_endpoint(reservation_id: int, payload: UpdateReservationDto, db: Session = Depends(get_d4_db)):
    changes = {
        _map_reservation_field(field): value
        for field, value in payload.model_dump(exclude_unset=True).items()
        if field != "operatorUserID"
    }
    outcome = update_reservation_details(db, reservation_id, changes, operator_user_id=payload.operatorUserID)
    return serialize_reservation(outcome.reservation)


@app.delete("/api/reservations/{reservation_id}")
def delete_reservation_endpoint(reservation_id: int, db: Session = Depends(get_d4_db)):
    number = delete_reservation(db, reservation_id)
    return {"message": "Deleted", "reservationNumber": number}


@app.post("/api/reservations/{reservation_id}/decide")
def decide_reservation(
    reservation_id: int,
    payload: ReservationDecisionRequest,
    db: Session = Depends(get_d4_db),
    gateway=Depends(get_gateway),
):
    approved = payload.decision == "approve"
    outcome = approve_or_reject(db, reservation_id, approved, payload.notes, payload.operatorUserID)
    _dispatch_events(db, gateway, outcome.events)
    return _outcome_payload("Reservation approved" if approved else "Reservation rejected", outcome)


@app.post("/api/reservations/{reservation_id}/status")
def update_reservation_status(
    reservation_id: int,
    payload: StatusUpdateRequest,
    db: Session = Depends(get_d4_db),
    gateway=Depends(get_gateway),
):
    outcome = update_status(db, reservation_id, payload.status, payload.notes, payload.operatorUserID)
    _dispatch_events(db, gateway, outcome.events)
    return _outcome_payload(f"Status changed to {outcome.reservation.Status}", outcome)


@app.post("/api/reservations/{reservation_id}/return")
def return_reservation(
    reservation_id: int,
    payload: ReturnRequest,
    db: Session = Depends(get_d4_db),
    gateway=Depends(get_gateway),
):
    outcome = return_items(
        db,
        reservation_id,
        [item.model_dump() for item in payload.items] or None,
        condition=payload.condition,
        notes=payload.notes,
        operator_user_id=payload.operatorUserID,
    )
    _dispatch_events(db, gateway, outcome.events)
    return _outcome_payload("Return processed successfully", outcome)


@app.post("/api/reservations/{reservation_id}/extend")
def extend_reservation(
    reservation_id: int,
    payload: ExtensionRequest,
    db: Session = Depends(get_d4_db),
    gateway=Depends(get_gateway),
):
    outcome = extend(db, reservation_id, payload.newEndDate, payload.notes, payload.operatorUserID)
    _dispatch_events(db, gateway, outcome.events)
    return _outcome_payload("Reservation extended", outcome)


@app.post("/api/reservations/{reservation_id}/mark-lost")
def mark_reservation_lost(
    reservation_id: int,
    payload: MarkLostRequest,
    db: Session = Depends(get_d4_db),
    gateway=Depends(get_gateway),
):
    outcome = mark_lost(db, reservation_id, payload.notes, payload.lossAmount, payload.operatorUserID)
    _dispatch_events(db, gateway, outcome.events)
    return _outcome_payload("Reservation marked as lost", outcome)


@app.post("/api/reservations/{reservation_id}/invoice")
def invoice_reservation(
    reservation_id: int,
    payload: InvoiceRequest,
    db: Session = Depends(get_d4_db),
    gateway=Depends(get_gateway),
):
    invoice, created, events = generate_invoice(db, reservation_id, payload.operatorUserID)
    _dispatch_events(db, gateway, events)
    return {"created": created, "invoice": serialize_invoice(invoice)}


@app.post("/api/pricing/estimate")
def estimate_price(payload: PriceEstimateRequest, db: Session = Depends(get_d4_db)):
    units = payload.durationUnits
    if units is None:
        if not payload.windowStart or not payload.windowEnd or payload.windowEnd <= payload.windowStart:
            raise ValidationError("Provide durationUnits or a valid windowStart/windowEnd.")
        if payload.unit == "hours":
            units = duration_hours(payload.windowStart, payload.windowEnd)
        else:
            units = duration_days(payload.windowStart, payload.windowEnd)

    line_items = []
    for item in payload.items:
        rate = item.rate
        if rate is None:
            if not item.equipmentID:
                raise ValidationError("Line items need a rate or an equipmentID.")
            unit_name = "hourly" if payload.unit == "hours" else "daily"
            rate = rate_for(get_item(db, item.equipmentID), payload.context, unit_name) * units
        line_items.append({"rate": rate, "quantity": item.quantity})

    charges = [charge if isinstance(charge, (int, float)) else charge.model_dump() for charge in payload.additionalCharges]
    totals = compute_total(payload.baseRate, units, line_items, charges, payload.discount)
    totals["durationUnits"] = units
    return totals


@app.post("/api/notifications/run")
def run_notifications(db: Session = Depends(get_d4_db), gateway=Depends(get_gateway)):
    summary, events = refresh_overdue(db)
    _dispatch_events(db, gateway, events)
    return summary


@app.get("/api/notifications/pending")
def get_pending_notifications(db: Session = Depends(get_d4_db)):
    notifications = db.execute(
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .order_by(NotificationQueue.NotificationID)
    ).scalars().all()
    return [serialize_notification(n) for n in notifications]


@app.post("/api/notifications/dispatch")
def dispatch_notifications(
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_d4_db),
    gateway=Depends(get_gateway),
):
    return dispatch_pending(db, gateway, limit=limit)


@app.get("/api/reservation-kinds")
def get_reservation_kinds():
    return [
        {
            "kind": policy.kind,
            "prefix": policy.prefix,
            "initialStatus": policy.initial_status,
            "transitions": {status: sorted(targets) for status, targets in policy.transitions.items()},
            "holdingStatuses": sorted(policy.holding_statuses),
        }
        for policy in POLICIES.values()
    ]


def _map_equipment_field(field: str) -> str:
    mapping = {
        "equipmentID": "EquipmentID",
        "name": "Name",
        "equipmentCode": "EquipmentCode",
        "category": "Category",
        "description": "Description",
        "specifications": "Specifications",
        "studioDailyRate": "StudioDailyRate",
        "studioHourlyRate": "StudioHourlyRate",
        "eventDailyRate": "EventDailyRate",
        "eventHourlyRate": "EventHourlyRate",
        "rentalDailyRate": "RentalDailyRate",
        "rentalHourlyRate": "RentalHourlyRate",
        "rentalWeeklyRate": "RentalWeeklyRate",
        "rentalMonthlyRate": "RentalMonthlyRate",
        "usageTypes": "UsageTypes",
        "availableQuantity": "AvailableQuantity",
        "condition": "Condition",
        "location": "Location",
        "serialNumber": "SerialNumber",
        "brand": "Brand",
        "model": "Model",
        "notes": "Notes",
    }
    return mapping.get(field, field)


def _map_reservation_field(field: str) -> str:
    mapping = {
        "windowStart": "WindowStart",
        "windowEnd": "WindowEnd",
        "requesterID": "RequesterID",
        "clientName": "ClientName",
        "contactName": "ContactName",
        "contactPhone": "ContactPhone",
        "contactEmail": "ContactEmail",
        "company": "Company",
        "purpose": "Purpose",
        "location": "Location",
        "studioRoom": "StudioRoom",
        "bookingType": "BookingType",
        "eventName": "EventName",
        "eventType": "EventType",
        "teamSize": "TeamSize",
        "baseRate": "BaseRate",
        "discount": "Discount",
        "securityDeposit": "SecurityDeposit",
        "additionalCharges": "AdditionalCharges",
        "notes": "Notes",
    }
    return mapping.get(field, field)
