import unittest
from unittest.mock import patch

from d4_test_support import add_equipment, make_session_factory

from sqlalchemy import text

from scripts.db_overview import main, run_column_checks, run_existence_checks, run_integrity_checks


class DbOverviewTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.SessionLocal = make_session_factory()

    def tearDown(self):
        self.engine.dispose()

    def test_fresh_schema_passes_every_check(self):
        checks = run_existence_checks(self.engine) + run_column_checks(self.engine) + run_integrity_checks(self.engine)
        self.assertTrue(checks)
        self.assertEqual([check.name for check in checks if not check.ok], [])

    def test_counter_outside_bounds_is_reported(self):
        db = self.SessionLocal()
        try:
            camera = add_equipment(db, quantity=2)
        finally:
            db.close()
        with self.engine.begin() as conn:
            conn.execute(
                text('UPDATE "Equipment" SET CurrentQuantityOut = 3 WHERE EquipmentID = :id'),
                {"id": camera.EquipmentID},
            )

        failed = {check.name: check.detail for check in run_integrity_checks(self.engine) if not check.ok}
        self.assertEqual(failed, {"equipment:counter_out_of_bounds": "count=1"})

    def test_missing_url_exits_with_usage_code(self):
        with patch.dict("os.environ", {"D4_MEDIA_DB_URL": ""}):
            self.assertEqual(main(["--db-url", ""]), 2)


if __name__ == "__main__":
    unittest.main()
