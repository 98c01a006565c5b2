import tempfile
import unittest
from pathlib import Path
from unittest import mock

from lending_fixtures import in_days, seed_equipment, seed_user

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from db.base import Base
from models.lending_models import BorrowRequest, Equipment, EquipmentBooking
from services import borrow_service
from services.lending_errors import InvalidOperationError


class ConcurrentTransitionTests(unittest.TestCase):
    """Two sessions on one file database; the second commits while the first is mid-transition."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.engine = create_engine(f"sqlite+pysqlite:///{Path(self.tmp.name) / 'lending.db'}", future=True)
        Base.metadata.create_all(bind=self.engine)
        self.Session = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False, future=True)
        self.db = self.Session()
        self.equipment_id = seed_equipment(self.db, total=10).EquipmentID
        self.student_id = seed_user(self.db, "Ada Student").UserID
        self.assistant_id = seed_user(self.db, "Lin Assistant", role="LAB_ASSISTANT").UserID
        self.request_id = borrow_service.submit(
            self.db, self.equipment_id, self.student_id, 8, in_days(1), in_days(6)
        ).RequestID

    def tearDown(self):
        self.db.close()
        self.engine.dispose()
        self.tmp.cleanup()

    def _interleave(self, name, other):
        """Patch ``borrow_service.<name>`` so its first call runs ``other`` in a second session."""
        real = getattr(borrow_service, name)
        fired = []

        def hook(*args, **kwargs):
            if not fired:
                fired.append(True)
                with self.Session() as other_db:
                    other(other_db)
            return real(*args, **kwargs)

        return mock.patch.object(borrow_service, name, side_effect=hook)

    def _stored(self):
        with self.Session() as check:
            status = check.get(BorrowRequest, self.request_id).Status
            active = check.execute(
                select(EquipmentBooking)
                .where(EquipmentBooking.RequestID == self.request_id)
                .where(EquipmentBooking.Status == "ACTIVE")
            ).scalars().all()
            available = check.get(Equipment, self.equipment_id).AvailableQuantity
        return status, len(active), available

    def test_reject_committed_during_approve_wins(self):
        with self._interleave("require_user", lambda other: borrow_service.reject(other, self.request_id, "No")):
            with self.assertRaisesRegex(InvalidOperationError, "Only pending requests can be approved"):
                borrow_service.approve(self.db, self.request_id, self.assistant_id)

        self.assertEqual(self._stored(), ("REJECTED", 0, 10))

    def test_approve_committed_during_reject_wins(self):
        with self._interleave(
            "to_rejected",
            lambda other: borrow_service.approve(other, self.request_id, self.assistant_id),
        ):
            with self.assertRaisesRegex(InvalidOperationError, "Only pending requests can be rejected"):
                borrow_service.reject(self.db, self.request_id, "late")

        self.assertEqual(self._stored(), ("APPROVED", 6, 2))

    def test_overlapping_approvals_report_invalid_operation(self):
        with self._interleave(
            "require_user",
            lambda other: borrow_service.approve(other, self.request_id, self.assistant_id),
        ):
            with self.assertRaisesRegex(InvalidOperationError, "Only pending requests can be approved"):
                borrow_service.approve(self.db, self.request_id, self.assistant_id)

        self.assertEqual(self._stored(), ("APPROVED", 6, 2))

    def test_overlapping_returns_restore_counter_once(self):
        borrow_service.approve(self.db, self.request_id, self.assistant_id)

        with self._interleave("require_item", lambda other: borrow_service.mark_returned(other, self.request_id)):
            with self.assertRaisesRegex(InvalidOperationError, "Only approved requests can be marked as returned"):
                borrow_service.mark_returned(self.db, self.request_id)

        self.assertEqual(self._stored(), ("RETURNED", 0, 10))


if __name__ == "__main__":
    unittest.main()
