import unittest
from datetime import datetime, timedelta

from d4_test_support import add_equipment, make_reservation, make_session_factory

from sqlalchemy import select, update

from db.unit_of_work import transaction
from models.d4_models import Equipment, InOutRecord
from services.errors import (
    ConcurrentModificationError,
    DuplicateCodeError,
    InsufficientAvailabilityError,
    InvalidStateError,
    ResourceBusyError,
    ValidationError,
)
from services.inventory_service import (
    adjust_out,
    claim_version,
    complete_maintenance,
    deactivate,
    derive_checkout_status,
    get_item,
    record_in_out,
    retire,
    serialize_equipment,
    start_maintenance,
    update_item,
)
from services.lifecycle_service import approve_or_reject, update_status


class InventoryStoreTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.SessionLocal = make_session_factory()
        self.db = self.SessionLocal()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_create_generates_code_and_rejects_duplicates(self):
        equipment = add_equipment(self.db, name="Aputure 600d", quantity=2, Category="lighting")
        self.assertTrue(equipment.EquipmentCode.startswith("EQ"))
        self.assertEqual(equipment.CheckoutStatus, "available")

        with self.assertRaises(DuplicateCodeError):
            add_equipment(self.db, name="aputure 600D")

        add_equipment(self.db, name="Rode NTG5", Category="audio", EquipmentCode="mic-01")
        with self.assertRaises(DuplicateCodeError):
            add_equipment(self.db, name="Rode NTG3", Category="audio", EquipmentCode="MIC-01")

    def test_create_validates_category(self):
        with self.assertRaises(ValidationError):
            add_equipment(self.db, name="Mystery box", Category="food")

    def test_adjust_out_keeps_counter_within_bounds(self):
        equipment = add_equipment(self.db, quantity=5)

        with transaction(self.db):
            adjust_out(self.db, equipment.EquipmentID, 3)
        self.assertEqual(equipment.CurrentQuantityOut, 3)
        self.assertEqual(equipment.CheckoutStatus, "partially_checked_out")

        with self.assertRaises(InsufficientAvailabilityError):
            with transaction(self.db):
                adjust_out(self.db, equipment.EquipmentID, 3)
        with self.assertRaises(InsufficientAvailabilityError):
            with transaction(self.db):
                adjust_out(self.db, equipment.EquipmentID, -4)

        stored = get_item(self.db, equipment.EquipmentID)
        self.db.refresh(stored)
        self.assertEqual(stored.CurrentQuantityOut, 3)

        with transaction(self.db):
            adjust_out(self.db, equipment.EquipmentID, 2)
        self.assertEqual(stored.CheckoutStatus, "fully_checked_out")

    def test_single_unit_fully_out_is_checked_out(self):
        equipment = add_equipment(self.db, quantity=1)
        with transaction(self.db):
            adjust_out(self.db, equipment.EquipmentID, 1)
        self.assertEqual(equipment.CheckoutStatus, "checked_out")
        self.assertEqual(serialize_equipment(equipment)["actualAvailableQuantity"], 0)

    def test_derive_status_keeps_held_states(self):
        equipment = Equipment(AvailableQuantity=4, CurrentQuantityOut=0, CheckoutStatus="damaged")
        self.assertEqual(derive_checkout_status(equipment), "damaged")
        equipment.CheckoutStatus = "available"
        equipment.CurrentQuantityOut = 1
        self.assertEqual(derive_checkout_status(equipment), "partially_checked_out")

    def test_stale_version_is_rejected(self):
        equipment = add_equipment(self.db)
        self.db.execute(
            update(Equipment)
            .where(Equipment.EquipmentID == equipment.EquipmentID)
            .values(Version=Equipment.Version + 1)
            .execution_options(synchronize_session=False)
        )
        with self.assertRaises(ConcurrentModificationError):
            claim_version(self.db, equipment)
        self.db.rollback()

    def test_update_cannot_drop_quantity_below_units_out(self):
        equipment = add_equipment(self.db, quantity=4)
        with transaction(self.db):
            adjust_out(self.db, equipment.EquipmentID, 3)

        with self.assertRaises(InsufficientAvailabilityError):
            with transaction(self.db):
                update_item(self.db, equipment.EquipmentID, {"AvailableQuantity": 2})

        with transaction(self.db):
            updated = update_item(self.db, equipment.EquipmentID, {"AvailableQuantity": 3, "Location": "Van"})
        self.assertEqual(updated.CheckoutStatus, "fully_checked_out")
        self.assertEqual(updated.Location, "Van")

    def test_deactivate_refuses_while_units_are_out(self):
        equipment = add_equipment(self.db, quantity=2)
        with transaction(self.db):
            adjust_out(self.db, equipment.EquipmentID, 1)

        with self.assertRaises(ResourceBusyError):
            with transaction(self.db):
                deactivate(self.db, equipment.EquipmentID)

        with transaction(self.db):
            adjust_out(self.db, equipment.EquipmentID, -1)
        with transaction(self.db):
            deactivate(self.db, equipment.EquipmentID)
        self.assertFalse(get_item(self.db, equipment.EquipmentID).IsActive)

    def test_confirmed_future_holds_block_shrinking_and_deactivation(self):
        equipment = add_equipment(self.db, quantity=5)
        now = datetime.now().replace(microsecond=0)
        rental = make_reservation(
            self.db,
            "rental",
            now + timedelta(days=1),
            now + timedelta(days=3),
            items=[{"equipmentID": equipment.EquipmentID, "quantity": 5}],
        ).reservation
        approve_or_reject(self.db, rental.ReservationID, True)

        with self.assertRaises(InsufficientAvailabilityError):
            with transaction(self.db):
                update_item(self.db, equipment.EquipmentID, {"AvailableQuantity": 2})
        with self.assertRaises(ResourceBusyError):
            with transaction(self.db):
                deactivate(self.db, equipment.EquipmentID)
        self.assertEqual(get_item(self.db, equipment.EquipmentID).AvailableQuantity, 5)
        self.assertTrue(get_item(self.db, equipment.EquipmentID).IsActive)

        update_status(self.db, rental.ReservationID, "cancelled")
        with transaction(self.db):
            update_item(self.db, equipment.EquipmentID, {"AvailableQuantity": 2})
        with transaction(self.db):
            deactivate(self.db, equipment.EquipmentID)
        self.assertFalse(get_item(self.db, equipment.EquipmentID).IsActive)

    def test_manual_in_out_records_history(self):
        equipment = add_equipment(self.db, quantity=3)
        with transaction(self.db):
            record_in_out(self.db, equipment.EquipmentID, "out", 2, reference="Loan to partner", operator_user_id=9)
        self.assertEqual(equipment.CurrentQuantityOut, 2)

        with self.assertRaises(ValidationError):
            with transaction(self.db):
                record_in_out(self.db, equipment.EquipmentID, "in", 3)

        with transaction(self.db):
            record_in_out(self.db, equipment.EquipmentID, "in", 2, condition="damaged")
        stored = get_item(self.db, equipment.EquipmentID)
        self.assertEqual(stored.CurrentQuantityOut, 0)
        self.assertEqual(stored.CheckoutStatus, "damaged")

        records = self.db.execute(
            select(InOutRecord).where(InOutRecord.EquipmentID == equipment.EquipmentID).order_by(InOutRecord.RecordID)
        ).scalars().all()
        self.assertEqual([(r.Direction, r.Quantity) for r in records], [("out", 2), ("in", 2)])
        self.assertEqual(records[0].OperatorUserID, 9)

    def test_maintenance_cycle(self):
        equipment = add_equipment(self.db, quantity=2)
        with transaction(self.db):
            adjust_out(self.db, equipment.EquipmentID, 1)
        with self.assertRaises(ResourceBusyError):
            with transaction(self.db):
                start_maintenance(self.db, equipment.EquipmentID, "repair", "Fan noise")

        with transaction(self.db):
            adjust_out(self.db, equipment.EquipmentID, -1)
        with transaction(self.db):
            record = start_maintenance(self.db, equipment.EquipmentID, "repair", "Fan noise", performed_by="Cairo Service")
        self.assertEqual(record.Status, "open")
        self.assertEqual(get_item(self.db, equipment.EquipmentID).CheckoutStatus, "maintenance")

        with self.assertRaises(InsufficientAvailabilityError):
            with transaction(self.db):
                adjust_out(self.db, equipment.EquipmentID, 1)

        with transaction(self.db):
            completed = complete_maintenance(self.db, equipment.EquipmentID, condition_after="excellent", cost=250)
        self.assertEqual(completed.Status, "completed")
        stored = get_item(self.db, equipment.EquipmentID)
        self.assertEqual(stored.CheckoutStatus, "available")
        self.assertEqual(stored.Condition, "excellent")

        with self.assertRaises(InvalidStateError):
            with transaction(self.db):
                complete_maintenance(self.db, equipment.EquipmentID)

    def test_retire_marks_equipment_unusable(self):
        equipment = add_equipment(self.db, quantity=1)
        with transaction(self.db):
            retire(self.db, equipment.EquipmentID, notes="End of life")
        stored = get_item(self.db, equipment.EquipmentID)
        self.assertEqual(stored.CheckoutStatus, "retired")
        with self.assertRaises(InvalidStateError):
            with transaction(self.db):
                start_maintenance(self.db, equipment.EquipmentID, "repair", "Try again")


if __name__ == "__main__":
    unittest.main()
