import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from d4_test_support import FakeGateway, make_session_factory

from fastapi.testclient import TestClient

import D4Media as app_module


class ApiFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.SessionLocal = make_session_factory()
        self.gateway = FakeGateway()

        def override_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_d4_db] = override_db
        app_module.app.dependency_overrides[app_module.get_gateway] = lambda: self.gateway
        self.client = TestClient(app_module.app)
        self.now = datetime.now().replace(microsecond=0)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()

    def iso(self, value):
        return value.isoformat()

    def create_camera(self, quantity=5):
        response = self.client.post(
            "/api/equipment?operatorUserID=1",
            json={
                "name": "Sony FX6",
                "category": "video",
                "availableQuantity": quantity,
                "eventDailyRate": 80,
                "rentalDailyRate": 50,
            },
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_health_endpoints(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_equipment_create_and_duplicate(self):
        camera = self.create_camera()
        self.assertTrue(camera["equipmentCode"].startswith("EQ"))
        self.assertEqual(camera["actualAvailableQuantity"], 5)
        self.assertEqual(camera["pricing"]["rental"]["dailyRate"], 50)

        duplicate = self.client.post("/api/equipment", json={"name": "sony fx6", "category": "video"})
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["error"], "duplicate_code")

        listed = self.client.get("/api/equipment", params={"category": "video"}).json()
        self.assertEqual([item["name"] for item in listed], ["Sony FX6"])

    def test_checkout_decide_and_return(self):
        camera = self.create_camera()
        created = self.client.post(
            "/api/reservations",
            json={
                "kind": "equipment_checkout",
                "windowStart": self.iso(self.now - timedelta(hours=1)),
                "windowEnd": self.iso(self.now + timedelta(days=1)),
                "contactPhone": "+201000000002",
                "purpose": "Interview shoot",
                "items": [{"equipmentID": camera["equipmentID"], "quantity": 2}],
            },
        )
        self.assertEqual(created.status_code, 200, created.text)
        reservation = created.json()
        self.assertEqual(reservation["status"], "pending_approval")
        self.assertTrue(reservation["reservationNumber"].startswith("CHK-"))

        decided = self.client.post(
            f"/api/reservations/{reservation['reservationID']}/decide",
            json={"decision": "approve", "operatorUserID": 3},
        )
        self.assertEqual(decided.status_code, 200, decided.text)
        self.assertEqual(decided.json()["reservation"]["status"], "checked_out")
        self.assertEqual(self.client.get(f"/api/equipment/{camera['equipmentID']}").json()["currentQuantityOut"], 2)
        self.assertTrue(any(sent["recipient"] == "+201000000002" for sent in self.gateway.sent))

        returned = self.client.post(
            f"/api/reservations/{reservation['reservationID']}/return",
            json={"condition": "good", "notes": "Complete kit"},
        )
        self.assertEqual(returned.status_code, 200, returned.text)
        self.assertEqual(returned.json()["reservation"]["status"], "returned")

        equipment = self.client.get(f"/api/equipment/{camera['equipmentID']}").json()
        self.assertEqual(equipment["currentQuantityOut"], 0)
        self.assertEqual(equipment["checkoutStatus"], "available")

        history = self.client.get(f"/api/equipment/{camera['equipmentID']}/history").json()
        self.assertEqual([entry["direction"] for entry in history["inOut"]], ["in", "out"])

        invalid = self.client.post(
            f"/api/reservations/{reservation['reservationID']}/status",
            json={"status": "checked_out"},
        )
        self.assertEqual(invalid.status_code, 409)
        self.assertEqual(invalid.json()["error"], "invalid_transition")

    def test_studio_conflict_returns_409(self):
        day = (self.now + timedelta(days=3)).replace(hour=0, minute=0, second=0)
        first = self.client.post(
            "/api/reservations",
            json={
                "kind": "studio_booking",
                "windowStart": self.iso(day.replace(hour=11)),
                "windowEnd": self.iso(day.replace(hour=13)),
                "studioRoom": "Studio A",
                "clientName": "Nile Productions",
                "contactPhone": "+201000000003",
                "baseRate": 100,
            },
        ).json()
        confirmed = self.client.post(f"/api/reservations/{first['reservationID']}/status", json={"status": "confirmed"})
        self.assertEqual(confirmed.status_code, 200, confirmed.text)

        clash = self.client.post(
            "/api/reservations",
            json={
                "kind": "studio_booking",
                "windowStart": self.iso(day.replace(hour=10)),
                "windowEnd": self.iso(day.replace(hour=12)),
                "studioRoom": "Studio A",
                "clientName": "Delta Films",
            },
        )
        self.assertEqual(clash.status_code, 409)
        self.assertEqual(clash.json()["error"], "slot_unavailable")

        availability = self.client.get(
            "/api/availability/studio",
            params={"studioRoom": "Studio A", "start": self.iso(day.replace(hour=13)), "end": self.iso(day.replace(hour=14))},
        ).json()
        self.assertTrue(availability["available"])
        self.assertEqual(availability["policy"], "exclusive")

        slots = self.client.get(
            "/api/availability/studio/slots",
            params={"studioRoom": "Studio A", "day": day.date().isoformat(), "slotMinutes": 60},
        ).json()["slots"]
        taken = [slot["startTime"] for slot in slots if not slot["available"]]
        self.assertEqual(taken, ["11:00", "12:00"])

    def test_equipment_availability_endpoint(self):
        camera = self.create_camera(quantity=1)
        response = self.client.get(
            "/api/availability/equipment",
            params={
                "equipmentID": camera["equipmentID"],
                "start": self.iso(self.now + timedelta(days=1)),
                "end": self.iso(self.now + timedelta(days=2)),
                "quantity": 2,
            },
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertFalse(body["available"])
        self.assertEqual(body["freeQuantity"], 1)
        self.assertEqual(body["policy"], "quantity_pooled")

    def test_rental_confirmation_returns_invoice(self):
        camera = self.create_camera()
        rental = self.client.post(
            "/api/reservations",
            json={
                "kind": "rental",
                "windowStart": self.iso(self.now + timedelta(days=1)),
                "windowEnd": self.iso(self.now + timedelta(days=3)),
                "clientName": "Delta Films",
                "contactPhone": "+201000000004",
                "items": [{"equipmentID": camera["equipmentID"], "quantity": 1}],
            },
        ).json()
        self.assertEqual(rental["pricing"]["totalAmount"], 100)

        decided = self.client.post(f"/api/reservations/{rental['reservationID']}/decide", json={"decision": "approve"}).json()
        self.assertEqual(decided["reservation"]["status"], "confirmed")
        self.assertEqual(decided["invoice"]["total"], 100)

        again = self.client.post(f"/api/reservations/{rental['reservationID']}/invoice", json={}).json()
        self.assertFalse(again["created"])
        self.assertEqual(again["invoice"]["invoiceNumber"], decided["invoice"]["invoiceNumber"])

        deleted = self.client.delete(f"/api/reservations/{rental['reservationID']}")
        self.assertEqual(deleted.status_code, 409)
        self.assertEqual(deleted.json()["error"], "resource_busy")

    def test_dispatch_failure_after_commit_is_logged_by_the_api(self):
        camera = self.create_camera()
        with patch.object(app_module, "dispatch_pending", side_effect=RuntimeError("queue table locked")):
            with self.assertLogs("d4_media.api", level="ERROR"):
                response = self.client.post(
                    "/api/reservations",
                    json={
                        "kind": "event_checkout",
                        "windowStart": self.iso(self.now),
                        "windowEnd": self.iso(self.now + timedelta(days=1)),
                        "eventName": "Cairo ICT",
                        "eventType": "event",
                        "contactPhone": "+201000000005",
                        "items": [{"equipmentID": camera["equipmentID"], "quantity": 1}],
                    },
                )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["status"], "checked_out")

    def test_price_estimate(self):
        response = self.client.post(
            "/api/pricing/estimate",
            json={
                "baseRate": 100,
                "durationUnits": 3,
                "items": [{"rate": 50, "quantity": 2}],
                "additionalCharges": [20],
                "discount": 30,
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total"], 390)

    def test_missing_reservation_is_404(self):
        response = self.client.get("/api/reservations/999")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "not_found")

    def test_validation_errors_are_400(self):
        response = self.client.post(
            "/api/reservations",
            json={
                "kind": "rental",
                "windowStart": self.iso(self.now + timedelta(days=2)),
                "windowEnd": self.iso(self.now + timedelta(days=1)),
                "clientName": "Delta Films",
            },
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "validation_error")

    def test_reservation_kinds_describe_transitions(self):
        kinds = {entry["kind"]: entry for entry in self.client.get("/api/reservation-kinds").json()}
        self.assertEqual(kinds["rental"]["prefix"], "RNT")
        self.assertEqual(kinds["studio_booking"]["transitions"]["inquiry"], ["cancelled", "confirmed"])


if __name__ == "__main__":
    unittest.main()
