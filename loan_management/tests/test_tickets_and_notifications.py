import unittest
from decimal import Decimal

from _support import SqliteDatabase, add_asset, add_user, audit_events, day, notifications_for

from schemas.policy import LoanPolicy
from services.errors import AssetNotFoundError, InvalidAssigneeError, LoanNotFoundError, TicketNotFoundError
from services.loan_service import checkout_adhoc, return_loan
from services.notification_service import list_notifications, mark_read, notify, serialize_notification
from services.ticket_service import assign_ticket, create_ticket, serialize_ticket, update_ticket


class MaintenanceTicketTests(unittest.TestCase):
    def setUp(self):
        self.database = SqliteDatabase()
        self.db = self.database.Session()
        self.student = add_user(self.db)
        self.technician = add_user(self.db, role="technician")
        self.admin = add_user(self.db, role="admin")
        self.asset = add_asset(self.db)

    def tearDown(self):
        self.db.close()
        self.database.close()

    def _ticket(self, **kwargs):
        return create_ticket(self.db, self.student.UserID, self.asset.AssetID, kwargs.pop("severity", "low"), now=day(0), **kwargs)

    def test_create_ticket(self):
        ticket = self._ticket(description="Loose strap")

        self.assertEqual(ticket.Status, "open")
        self.assertEqual(ticket.OpenedBy, self.student.UserID)
        self.assertEqual(serialize_ticket(ticket)["description"], "Loose strap")
        self.assertEqual(len(audit_events(self.db, "ticket", "open")), 1)

    def test_create_ticket_validation(self):
        with self.assertRaises(ValueError):
            self._ticket(severity="urgent")
        with self.assertRaises(AssetNotFoundError):
            create_ticket(self.db, self.student.UserID, 999, "low")
        with self.assertRaises(LoanNotFoundError):
            self._ticket(loan_id=999)

    def test_loan_ticket_is_unique_per_asset(self):
        policy = LoanPolicy(default_loan_days=7, penalty_per_day=Decimal("10"))
        loan = checkout_adhoc(self.db, self.admin.UserID, self.student.UserID, self.asset.AssetID, now=day(0), policy=policy)
        return_loan(self.db, self.admin.UserID, loan.LoanID, damaged=True, now=day(1), policy=policy)

        with self.assertRaises(ValueError):
            self._ticket(loan_id=loan.LoanID)

    def test_assign_to_technician_starts_work_and_notifies(self):
        ticket = self._ticket()

        assigned = assign_ticket(self.db, self.admin.UserID, ticket.TicketID, self.technician.UserID, now=day(1))

        self.assertEqual(assigned.AssignedTo, self.technician.UserID)
        self.assertEqual(assigned.Status, "in_progress")
        notes = notifications_for(self.db, self.technician.UserID, "maintenance")
        self.assertEqual(len(notes), 1)
        self.assertEqual(notes[0].Payload["ticket_id"], ticket.TicketID)

        unassigned = assign_ticket(self.db, self.admin.UserID, ticket.TicketID, None, now=day(2))
        self.assertIsNone(unassigned.AssignedTo)
        self.assertEqual(unassigned.Status, "open")

    def test_assign_to_non_technician_is_rejected(self):
        ticket = self._ticket()

        with self.assertRaises(InvalidAssigneeError):
            assign_ticket(self.db, self.admin.UserID, ticket.TicketID, self.student.UserID)
        with self.assertRaises(TicketNotFoundError):
            assign_ticket(self.db, self.admin.UserID, 999, self.technician.UserID)

    def test_closing_and_reopening(self):
        ticket = self._ticket()

        closed = update_ticket(self.db, self.technician.UserID, ticket.TicketID, status="closed", now=day(3))
        self.assertEqual(closed.ClosedAt, day(3))

        reopened = update_ticket(self.db, self.technician.UserID, ticket.TicketID, status="open", severity="high")
        self.assertIsNone(reopened.ClosedAt)
        self.assertEqual(reopened.Severity, "high")
        self.assertEqual(len(audit_events(self.db, "ticket", "update")), 2)

    def test_update_without_changes_is_rejected(self):
        ticket = self._ticket()

        with self.assertRaises(ValueError):
            update_ticket(self.db, self.technician.UserID, ticket.TicketID)
        with self.assertRaises(ValueError):
            update_ticket(self.db, self.technician.UserID, ticket.TicketID, status="done")


class NotificationTests(unittest.TestCase):
    def setUp(self):
        self.database = SqliteDatabase()
        self.db = self.database.Session()
        self.user = add_user(self.db)
        self.other = add_user(self.db)

    def tearDown(self):
        self.db.close()
        self.database.close()

    def test_unknown_type_is_rejected(self):
        with self.assertRaises(ValueError):
            notify(self.db, self.user.UserID, "sms", {"message": "hi"})

    def test_mark_read_only_for_owner_and_once(self):
        note = notify(self.db, self.user.UserID, "system", {"message": "Lab closes early"}, created_at=day(0))
        self.db.commit()

        self.assertFalse(mark_read(self.db, self.other.UserID, note.NotificationID))
        self.assertTrue(mark_read(self.db, self.user.UserID, note.NotificationID, now=day(1)))
        self.assertFalse(mark_read(self.db, self.user.UserID, note.NotificationID))

    def test_unread_filter(self):
        first = notify(self.db, self.user.UserID, "system", {"message": "one"})
        notify(self.db, self.user.UserID, "system", {"message": "two"})
        self.db.commit()
        mark_read(self.db, self.user.UserID, first.NotificationID)

        unread = list_notifications(self.db, self.user.UserID, unread_only=True)
        self.assertEqual([n.Payload["message"] for n in unread], ["two"])
        self.assertEqual(len(list_notifications(self.db, self.user.UserID)), 2)
        self.assertTrue(serialize_notification(unread[0])["isUnread"])


if __name__ == "__main__":
    unittest.main()
