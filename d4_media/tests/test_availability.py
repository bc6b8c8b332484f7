import unittest
from datetime import datetime, timedelta

from d4_test_support import add_equipment, make_reservation, make_session_factory

from sqlalchemy import select, update

from db.unit_of_work import transaction
from models.d4_models import Equipment, StudioRoom
from services.availability_service import (
    check_equipment_availability,
    claim_room_version,
    claim_studio_room,
    get_available_time_slots,
    is_available,
    peak_demand,
)
from services.errors import (
    ConcurrentModificationError,
    InsufficientAvailabilityError,
    SlotUnavailableError,
    ValidationError,
)
from services.lifecycle_service import approve_or_reject


class PeakDemandTests(unittest.TestCase):
    def test_overlapping_holds_are_summed(self):
        base = datetime(2025, 3, 1, 9, 0)
        holds = [
            (base, base + timedelta(hours=4), 2),
            (base + timedelta(hours=1), base + timedelta(hours=2), 1),
            (base + timedelta(hours=5), base + timedelta(hours=6), 3),
        ]
        self.assertEqual(peak_demand(holds), 3)

    def test_touching_windows_count_as_overlapping(self):
        base = datetime(2025, 3, 1, 9, 0)
        holds = [(base, base + timedelta(hours=2), 1), (base + timedelta(hours=2), base + timedelta(hours=3), 1)]
        self.assertEqual(peak_demand(holds), 2)

    def test_no_holds(self):
        self.assertEqual(peak_demand([]), 0)


class EquipmentAvailabilityTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.SessionLocal = make_session_factory()
        self.db = self.SessionLocal()
        self.base = datetime.now().replace(microsecond=0)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def days(self, n):
        return self.base + timedelta(days=n)

    def test_future_hold_blocks_only_overlapping_windows(self):
        camera = add_equipment(self.db, quantity=2)
        rental = make_reservation(
            self.db,
            "rental",
            self.days(10),
            self.days(12),
            items=[{"equipmentID": camera.EquipmentID, "quantity": 2}],
        ).reservation
        approve_or_reject(self.db, rental.ReservationID, True, operator_user_id=3)

        overlap = check_equipment_availability(self.db, camera.EquipmentID, self.days(11), self.days(13))
        self.assertFalse(overlap["available"])
        self.assertEqual(overlap["peakDemand"], 2)
        self.assertEqual(overlap["freeQuantity"], 0)

        with self.assertRaises(InsufficientAvailabilityError):
            make_reservation(
                self.db,
                "equipment_checkout",
                self.days(11),
                self.days(13),
                items=[{"equipmentID": camera.EquipmentID, "quantity": 1}],
            )

        self.assertTrue(is_available(self.db, self.days(13), self.days(14), equipment_id=camera.EquipmentID))
        self.assertTrue(is_available(self.db, self.days(1), self.days(2), equipment_id=camera.EquipmentID, quantity=2))
        # Counters are untouched until pickup.
        self.assertEqual(self.db.get(Equipment, camera.EquipmentID).CurrentQuantityOut, 0)

    def test_pending_requests_do_not_hold_stock(self):
        camera = add_equipment(self.db, quantity=1)
        make_reservation(
            self.db,
            "equipment_checkout",
            self.days(1),
            self.days(2),
            items=[{"equipmentID": camera.EquipmentID, "quantity": 1}],
        )
        self.assertTrue(is_available(self.db, self.days(1), self.days(2), equipment_id=camera.EquipmentID))

    def test_excluded_reservation_is_ignored(self):
        camera = add_equipment(self.db, quantity=1)
        rental = make_reservation(
            self.db,
            "rental",
            self.days(3),
            self.days(4),
            items=[{"equipmentID": camera.EquipmentID, "quantity": 1}],
        ).reservation
        approve_or_reject(self.db, rental.ReservationID, True)

        self.assertFalse(is_available(self.db, self.days(3), self.days(4), equipment_id=camera.EquipmentID))
        self.assertTrue(
            is_available(
                self.db,
                self.days(3),
                self.days(4),
                equipment_id=camera.EquipmentID,
                exclude_reservation_id=rental.ReservationID,
            )
        )

    def test_requires_exactly_one_resource(self):
        with self.assertRaises(ValidationError):
            is_available(self.db, self.days(1), self.days(2))
        with self.assertRaises(ValidationError):
            is_available(self.db, self.days(1), self.days(2), equipment_id=1, studio_room="Studio A")


class StudioAvailabilityTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.SessionLocal = make_session_factory()
        self.db = self.SessionLocal()
        self.day = (datetime.now() + timedelta(days=5)).date()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def at(self, hour, minute=0):
        return datetime.combine(self.day, datetime.min.time()).replace(hour=hour, minute=minute)

    def book(self, start, end, confirm=True):
        outcome = make_reservation(self.db, "studio_booking", start, end, StudioRoom="Studio A", BaseRate=100)
        if confirm:
            approve_or_reject(self.db, outcome.reservation.ReservationID, True)
        return outcome.reservation

    def test_confirmed_booking_is_exclusive(self):
        self.book(self.at(11), self.at(13))

        self.assertFalse(is_available(self.db, self.at(10), self.at(12), studio_room="Studio A"))
        self.assertFalse(is_available(self.db, self.at(11, 30), self.at(12), studio_room="Studio A"))
        self.assertTrue(is_available(self.db, self.at(13), self.at(14), studio_room="Studio A"))
        self.assertTrue(is_available(self.db, self.at(9), self.at(11), studio_room="Studio A"))
        self.assertTrue(is_available(self.db, self.at(10), self.at(12), studio_room="Studio B"))

        with self.assertRaises(SlotUnavailableError):
            self.book(self.at(10), self.at(12), confirm=False)

    def test_inquiries_do_not_block_until_confirmed(self):
        first = self.book(self.at(15), self.at(16), confirm=False)
        second = self.book(self.at(15), self.at(16), confirm=False)
        self.assertTrue(is_available(self.db, self.at(15), self.at(16), studio_room="Studio A"))

        approve_or_reject(self.db, first.ReservationID, True)
        with self.assertRaises(SlotUnavailableError):
            approve_or_reject(self.db, second.ReservationID, True)
        self.db.refresh(second)
        self.assertEqual(second.Status, "inquiry")

    def room_version(self):
        return self.db.execute(select(StudioRoom.Version).where(StudioRoom.Name == "Studio A")).scalar()

    def test_confirmations_bump_the_room_version(self):
        self.book(self.at(9), self.at(10), confirm=False)
        self.assertIsNone(self.room_version())

        self.book(self.at(10), self.at(11))
        self.assertEqual(self.room_version(), 2)
        self.book(self.at(11), self.at(12))
        self.assertEqual(self.room_version(), 3)

    def test_stale_room_version_is_rejected(self):
        with transaction(self.db):
            room = claim_studio_room(self.db, "Studio A")
        self.db.execute(
            update(StudioRoom)
            .where(StudioRoom.RoomID == room.RoomID)
            .values(Version=StudioRoom.Version + 1)
            .execution_options(synchronize_session=False)
        )
        with self.assertRaises(ConcurrentModificationError):
            claim_room_version(self.db, room)
        self.db.rollback()

    def test_time_slots_mark_booked_hours(self):
        self.book(self.at(11), self.at(13))
        slots = {slot["startTime"]: slot for slot in get_available_time_slots(self.db, "Studio A", self.day, slot_minutes=60)}

        self.assertTrue(slots["10:00"]["available"])
        self.assertFalse(slots["11:00"]["available"])
        self.assertFalse(slots["12:00"]["available"])
        self.assertTrue(slots["13:00"]["available"])
        self.assertEqual(slots["12:00"]["endTime"], "13:00")


if __name__ == "__main__":
    unittest.main()
