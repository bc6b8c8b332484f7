import unittest
from datetime import datetime

import d4_test_support  # noqa: F401

from services.pricing_service import compute_total, duration_days, duration_hours, format_amount


class PricingTests(unittest.TestCase):
    def test_compute_total_combines_every_component(self):
        totals = compute_total(100, 3, [{"rate": 50, "quantity": 2}], [20], 30)

        self.assertEqual(totals["total"], 390)
        self.assertEqual(totals["equipmentCost"], 100)
        self.assertEqual(totals["subtotal"], 420)

    def test_negative_total_is_clamped_to_zero(self):
        totals = compute_total(10, 1, [], [], 500)

        self.assertEqual(totals["total"], 0)
        self.assertEqual(totals["subtotal"], 10)

    def test_charges_accept_amount_mappings(self):
        totals = compute_total(0, 0, [], [{"description": "Crew", "amount": 75.5}, 4.5])

        self.assertEqual(totals["additionalChargesTotal"], 80)
        self.assertEqual(totals["total"], 80)

    def test_durations(self):
        start = datetime(2025, 6, 1, 10, 0)
        self.assertEqual(duration_days(start, datetime(2025, 6, 1, 18, 0)), 1)
        self.assertEqual(duration_days(start, datetime(2025, 6, 3, 11, 0)), 3)
        self.assertEqual(duration_hours(start, datetime(2025, 6, 1, 12, 30)), 2.5)

    def test_format_amount_uses_two_decimals(self):
        self.assertEqual(format_amount(3), "3.00")
        self.assertEqual(format_amount(None), "0.00")


if __name__ == "__main__":
    unittest.main()
