import os
import sys
from datetime import datetime, timedelta
from pathlib import Path


os.environ.setdefault("D4_MEDIA_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.base import Base
from db.unit_of_work import transaction
from models.d4_models import Equipment
from services.errors import ExternalServiceError
from services.inventory_service import create_item
from services.lifecycle_service import create_reservation


def make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    return engine, factory


def add_equipment(db, name: str = "Sony FX6", quantity: int = 5, **overrides) -> Equipment:
    fields = {
        "Name": name,
        "Category": "video",
        "AvailableQuantity": quantity,
        "StudioDailyRate": 100,
        "StudioHourlyRate": 20,
        "EventDailyRate": 80,
        "RentalDailyRate": 50,
    }
    fields.update(overrides)
    with transaction(db):
        equipment = create_item(db, fields, created_by=1)
    return equipment


def hours_from_now(hours: float) -> datetime:
    return (datetime.now() + timedelta(hours=hours)).replace(microsecond=0)


def make_reservation(db, kind: str, start: datetime, end: datetime, items: list[dict] | None = None, **fields):
    values = {
        "WindowStart": start,
        "WindowEnd": end,
        "ClientName": "Nile Productions",
        "ContactPhone": "+201000000001",
        "Purpose": "Shoot",
    }
    values.update(fields)
    return create_reservation(db, kind, values, items or [], operator_user_id=7)


class FakeGateway:
    def __init__(self):
        self.sent = []

    def send_message(self, recipient, text, attachment=None, filename=None):
        self.sent.append({"recipient": recipient, "text": text, "attachment": attachment, "filename": filename})
        return f"msg-{len(self.sent)}"


class FailingGateway:
    def __init__(self):
        self.calls = 0

    def send_message(self, recipient, text, attachment=None, filename=None):
        self.calls += 1
        raise ExternalServiceError("gateway down")
