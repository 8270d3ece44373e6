import os
import unittest
from datetime import datetime, timedelta
from unittest import mock

from fastapi.testclient import TestClient

from _support import SqliteDatabase, add_asset, add_user

import LoanMan as app_module


class LoanApiTests(unittest.TestCase):
    def setUp(self):
        self.database = SqliteDatabase()
        with self.database.Session() as db:
            self.student_id = add_user(db).UserID
            self.other_id = add_user(db).UserID
            self.inactive_id = add_user(db, active=False).UserID
            self.admin_id = add_user(db, role="admin").UserID
            self.technician_id = add_user(db, role="technician").UserID
            self.asset_id = add_asset(db).AssetID

        def _override_db():
            db = self.database.Session()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_loans_db] = _override_db
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.database.close()

    def _as(self, user_id):
        return {"X-Actor-ID": str(user_id)}

    def _request_reservation(self, user_id=None, start_in_days=2, length_days=3):
        start = datetime.now().replace(microsecond=0) + timedelta(days=start_in_days)
        response = self.client.post(
            "/api/reservations",
            json={
                "assetID": self.asset_id,
                "startAt": start.isoformat(),
                "endAt": (start + timedelta(days=length_days)).isoformat(),
            },
            headers=self._as(user_id or self.student_id),
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json()["db"], "ok")

    def test_actor_header_is_required(self):
        self.assertEqual(self.client.get("/api/loans").status_code, 401)
        self.assertEqual(self.client.get("/api/loans", headers={"X-Actor-ID": "abc"}).status_code, 401)
        self.assertEqual(self.client.get("/api/loans", headers=self._as(9999)).status_code, 401)
        self.assertEqual(self.client.get("/api/loans", headers=self._as(self.inactive_id)).status_code, 401)

    def test_reservation_approval_flow(self):
        reservation = self._request_reservation()
        self.assertEqual(reservation["status"], "pending")
        rid = reservation["reservationID"]

        forbidden = self.client.post(f"/api/reservations/{rid}/approve", headers=self._as(self.student_id))
        self.assertEqual(forbidden.status_code, 403)

        approved = self.client.post(
            f"/api/reservations/{rid}/approve", json={"reason": "ok"}, headers=self._as(self.admin_id)
        )
        self.assertEqual(approved.status_code, 200, approved.text)
        self.assertEqual(approved.json()["status"], "approved")

        other = self._request_reservation(user_id=self.other_id, start_in_days=3)
        conflict = self.client.post(
            f"/api/reservations/{other['reservationID']}/approve", headers=self._as(self.technician_id)
        )
        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.json()["code"], "RESERVATION_OVERLAP")

        own = self.client.get("/api/reservations", headers=self._as(self.student_id)).json()
        self.assertEqual([r["reservationID"] for r in own], [rid])
        everything = self.client.get("/api/reservations", headers=self._as(self.admin_id)).json()
        self.assertEqual(len(everything), 2)

        hidden = self.client.get(f"/api/reservations/{rid}", headers=self._as(self.other_id))
        self.assertEqual(hidden.status_code, 403)

    def test_availability_check(self):
        reservation = self._request_reservation()
        self.client.post(f"/api/reservations/{reservation['reservationID']}/approve", headers=self._as(self.admin_id))

        anonymous = self.client.get(
            "/api/reservations/availability",
            params={"assetID": self.asset_id, "startAt": reservation["startAt"], "endAt": reservation["endAt"]},
        )
        self.assertEqual(anonymous.status_code, 401)

        taken = self.client.get(
            "/api/reservations/availability",
            params={"assetID": self.asset_id, "startAt": reservation["startAt"], "endAt": reservation["endAt"]},
            headers=self._as(self.other_id),
        )
        self.assertEqual(taken.status_code, 200)
        self.assertFalse(taken.json()["available"])

        inverted = self.client.get(
            "/api/reservations/availability",
            params={"assetID": self.asset_id, "startAt": reservation["endAt"], "endAt": reservation["startAt"]},
            headers=self._as(self.other_id),
        )
        self.assertEqual(inverted.status_code, 400)

    def test_error_mapping(self):
        now = datetime.now().replace(microsecond=0)
        invalid = self.client.post(
            "/api/reservations",
            json={"assetID": self.asset_id, "startAt": now.isoformat(), "endAt": now.isoformat()},
            headers=self._as(self.student_id),
        )
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(invalid.json()["code"], "INVALID_INTERVAL")

        missing = self.client.post("/api/reservations/999/approve", headers=self._as(self.admin_id))
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["code"], "RESERVATION_NOT_FOUND")

        reservation = self._request_reservation()
        rid = reservation["reservationID"]
        no_reason = self.client.post(f"/api/reservations/{rid}/deny", json={}, headers=self._as(self.admin_id))
        self.assertEqual(no_reason.status_code, 400)
        self.assertEqual(no_reason.json()["code"], "MISSING_REASON")

        not_owner = self.client.post(f"/api/reservations/{rid}/cancel", headers=self._as(self.other_id))
        self.assertEqual(not_owner.status_code, 403)
        self.assertEqual(not_owner.json()["code"], "NOT_OWNER")

        cancelled = self.client.post(f"/api/reservations/{rid}/cancel", headers=self._as(self.student_id))
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()["status"], "cancelled")

        bad_status = self.client.patch(
            f"/api/assets/{self.asset_id}", json={"status": "checked_out"}, headers=self._as(self.admin_id)
        )
        self.assertEqual(bad_status.status_code, 400)
        self.assertEqual(bad_status.json()["code"], "INVALID_VALUE")

    def test_loan_checkout_and_return(self):
        checkout = self.client.post(
            "/api/loans/adhoc",
            json={"borrowerUserID": self.student_id, "assetID": self.asset_id},
            headers=self._as(self.admin_id),
        )
        self.assertEqual(checkout.status_code, 201, checkout.text)
        loan = checkout.json()
        self.assertIsNone(loan["returnAt"])

        asset = self.client.get(f"/api/assets/{self.asset_id}", headers=self._as(self.student_id)).json()
        self.assertEqual(asset["status"], "checked_out")
        self.assertFalse(asset["isAvailable"])

        again = self.client.post(
            "/api/loans/adhoc",
            json={"borrowerUserID": self.other_id, "assetID": self.asset_id},
            headers=self._as(self.admin_id),
        )
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["code"], "ITEM_UNAVAILABLE")

        stranger = self.client.post(
            f"/api/loans/{loan['loanID']}/return", json={"damaged": False}, headers=self._as(self.other_id)
        )
        self.assertEqual(stranger.status_code, 403)

        returned = self.client.post(
            f"/api/loans/{loan['loanID']}/return", json={"damaged": False}, headers=self._as(self.student_id)
        )
        self.assertEqual(returned.status_code, 200, returned.text)
        self.assertIsNotNone(returned.json()["returnAt"])
        self.assertEqual(returned.json()["penalties"], [])

        twice = self.client.post(
            f"/api/loans/{loan['loanID']}/return", json={"damaged": False}, headers=self._as(self.student_id)
        )
        self.assertEqual(twice.status_code, 400)
        self.assertEqual(twice.json()["code"], "ALREADY_RETURNED")

        mine = self.client.get("/api/loans", headers=self._as(self.student_id)).json()
        self.assertEqual(len(mine), 1)
        self.assertEqual(self.client.get("/api/loans", headers=self._as(self.other_id)).json(), [])

    def test_malformed_penalty_rate_is_a_client_error(self):
        with mock.patch.dict(os.environ, {"PENALTY_PER_DAY": "ten"}):
            response = self.client.post(
                "/api/loans/adhoc",
                json={"borrowerUserID": self.student_id, "assetID": self.asset_id},
                headers=self._as(self.admin_id),
            )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "INVALID_VALUE")

        asset = self.client.get(f"/api/assets/{self.asset_id}", headers=self._as(self.admin_id)).json()
        self.assertEqual(asset["status"], "available")

    def test_checkout_from_reservation_requires_staff(self):
        reservation = self._request_reservation()
        rid = reservation["reservationID"]
        self.client.post(f"/api/reservations/{rid}/approve", headers=self._as(self.admin_id))

        denied = self.client.post(
            "/api/loans/from-reservation", json={"reservationID": rid}, headers=self._as(self.student_id)
        )
        self.assertEqual(denied.status_code, 403)

        created = self.client.post(
            "/api/loans/from-reservation", json={"reservationID": rid}, headers=self._as(self.admin_id)
        )
        self.assertEqual(created.status_code, 201, created.text)
        self.assertEqual(created.json()["reservationID"], rid)
        status = self.client.get(f"/api/reservations/{rid}", headers=self._as(self.student_id)).json()["status"]
        self.assertEqual(status, "confirmed")

    def test_ticket_routes(self):
        created = self.client.post(
            "/api/tickets",
            json={"assetID": self.asset_id, "severity": "high", "description": "Battery swollen"},
            headers=self._as(self.student_id),
        )
        self.assertEqual(created.status_code, 201, created.text)
        tid = created.json()["ticketID"]

        wrong = self.client.put(
            f"/api/tickets/{tid}/assign", json={"technicianID": self.student_id}, headers=self._as(self.admin_id)
        )
        self.assertEqual(wrong.status_code, 400)
        self.assertEqual(wrong.json()["code"], "INVALID_ASSIGNEE")

        assigned = self.client.put(
            f"/api/tickets/{tid}/assign", json={"technicianID": self.technician_id}, headers=self._as(self.admin_id)
        )
        self.assertEqual(assigned.json()["status"], "in_progress")

        closed = self.client.patch(f"/api/tickets/{tid}", json={"status": "closed"}, headers=self._as(self.technician_id))
        self.assertEqual(closed.status_code, 200)
        self.assertIsNotNone(closed.json()["closedAt"])

        student_patch = self.client.patch(f"/api/tickets/{tid}", json={"status": "open"}, headers=self._as(self.student_id))
        self.assertEqual(student_patch.status_code, 403)

    def test_notifications(self):
        self._request_reservation()

        notes = self.client.get("/api/notifications", headers=self._as(self.student_id)).json()
        self.assertEqual(len(notes), 1)
        nid = notes[0]["notificationID"]

        foreign = self.client.post(f"/api/notifications/{nid}/read", headers=self._as(self.other_id))
        self.assertEqual(foreign.json(), {"updated": False})
        read = self.client.post(f"/api/notifications/{nid}/read", headers=self._as(self.student_id))
        self.assertEqual(read.json(), {"updated": True})

        unread = self.client.get(
            "/api/notifications", params={"unreadOnly": "true"}, headers=self._as(self.student_id)
        ).json()
        self.assertEqual(unread, [])

    def test_expire_route_is_staff_only(self):
        self.assertEqual(
            self.client.post("/api/admin/expire-reservations", headers=self._as(self.student_id)).status_code, 403
        )
        response = self.client.post("/api/admin/expire-reservations", headers=self._as(self.admin_id))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 0)


if __name__ == "__main__":
    unittest.main()
