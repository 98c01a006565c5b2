import unittest
from datetime import datetime

from lending_fixtures import in_days, open_session, reset_schema, seed_equipment, seed_user

from sqlalchemy import select

from models.lending_models import AuditLog, BorrowRequest, EquipmentBooking
from services.availability_service import (
    booked_quantity_for_date,
    count_days,
    find_capacity_violations,
    find_coverage_gaps,
    is_available,
    iter_days,
    materialize_bookings,
    outstanding_quantity,
    reconcile_available_quantity,
    release_bookings,
    sync_available_quantity,
)
from services.catalog_service import adjust_available
from services.lending_errors import InvalidRequestError, NotFoundError


class LedgerTests(unittest.TestCase):
    def setUp(self):
        reset_schema()
        self.db = open_session()
        self.equipment = seed_equipment(self.db, total=10)
        self.user = seed_user(self.db, "Ada Student")

    def tearDown(self):
        self.db.close()

    def _approved(self, quantity, from_date, to_date):
        now = datetime.now()
        borrow_request = BorrowRequest(
            EquipmentID=self.equipment.EquipmentID,
            RequestedBy=self.user.UserID,
            Quantity=quantity,
            FromDate=from_date,
            ToDate=to_date,
            Status="APPROVED",
            CreatedDate=now,
            UpdatedDate=now,
        )
        self.db.add(borrow_request)
        self.db.flush()
        materialize_bookings(self.db, borrow_request)
        self.db.commit()
        return borrow_request

    def _active_rows(self, request_id):
        return self.db.execute(
            select(EquipmentBooking)
            .where(EquipmentBooking.RequestID == request_id)
            .where(EquipmentBooking.Status == "ACTIVE")
            .order_by(EquipmentBooking.BookingDate)
        ).scalars().all()

    def test_day_helpers_are_inclusive(self):
        self.assertEqual(list(iter_days(in_days(3), in_days(3))), [in_days(3)])
        self.assertEqual(len(list(iter_days(in_days(1), in_days(6)))), 6)
        self.assertEqual(count_days(in_days(1), in_days(6)), 6)
        self.assertEqual(count_days(in_days(6), in_days(1)), 0)

    def test_materialize_writes_one_row_per_day(self):
        borrow_request = self._approved(3, in_days(2), in_days(6))
        rows = self._active_rows(borrow_request.RequestID)

        self.assertEqual([row.BookingDate for row in rows], list(iter_days(in_days(2), in_days(6))))
        self.assertTrue(all(row.Quantity == 3 for row in rows))
        self.assertTrue(all(row.EquipmentID == self.equipment.EquipmentID for row in rows))

    def test_single_day_request_has_one_row(self):
        borrow_request = self._approved(1, in_days(4), in_days(4))
        self.assertEqual(len(self._active_rows(borrow_request.RequestID)), 1)

    def test_availability_uses_busiest_day_in_range(self):
        self._approved(7, in_days(5), in_days(5))

        self.assertTrue(is_available(self.db, self.equipment.EquipmentID, 3, in_days(1), in_days(10)))
        self.assertFalse(is_available(self.db, self.equipment.EquipmentID, 4, in_days(1), in_days(10)))
        self.assertTrue(is_available(self.db, self.equipment.EquipmentID, 10, in_days(6), in_days(10)))
        self.assertEqual(booked_quantity_for_date(self.db, self.equipment.EquipmentID, in_days(5)), 7)
        self.assertEqual(booked_quantity_for_date(self.db, self.equipment.EquipmentID, in_days(6)), 0)

    def test_released_rows_free_capacity(self):
        borrow_request = self._approved(10, in_days(1), in_days(3))
        self.assertFalse(is_available(self.db, self.equipment.EquipmentID, 1, in_days(2), in_days(2)))

        released = release_bookings(self.db, borrow_request.RequestID)
        self.db.commit()

        self.assertEqual(len(released), 3)
        self.assertEqual(self._active_rows(borrow_request.RequestID), [])
        self.assertTrue(is_available(self.db, self.equipment.EquipmentID, 10, in_days(1), in_days(3)))

    def test_unknown_item_is_not_found(self):
        with self.assertRaisesRegex(NotFoundError, "Equipment not found with id: 999"):
            is_available(self.db, 999, 1, in_days(1), in_days(2))

    def test_invalid_inputs_are_rejected(self):
        with self.assertRaisesRegex(InvalidRequestError, "From date cannot be after to date"):
            is_available(self.db, self.equipment.EquipmentID, 1, in_days(5), in_days(2))
        with self.assertRaisesRegex(InvalidRequestError, "Quantity must be at least 1"):
            is_available(self.db, self.equipment.EquipmentID, 0, in_days(1), in_days(2))

    def test_outstanding_counts_each_request_once(self):
        self._approved(3, in_days(1), in_days(4))
        self._approved(2, in_days(10), in_days(10))
        self.assertEqual(outstanding_quantity(self.db, self.equipment.EquipmentID), 5)

    def test_sync_never_exceeds_capacity_after_it_shrinks(self):
        borrow_request = self._approved(8, in_days(1), in_days(2))
        sync_available_quantity(self.db, self.equipment.EquipmentID, expected_delta=-8)
        self.db.commit()
        self.assertEqual(self.equipment.AvailableQuantity, 2)

        self.equipment.TotalQuantity = 5
        self.db.commit()
        release_bookings(self.db, borrow_request.RequestID)
        result = sync_available_quantity(self.db, self.equipment.EquipmentID, expected_delta=8)
        self.db.commit()

        self.assertEqual(result["after"], 5)
        self.assertEqual(self.equipment.AvailableQuantity, 5)

    def test_adjust_available_is_bounded(self):
        self.assertEqual(adjust_available(self.db, self.equipment.EquipmentID, 4), 0)
        self.assertEqual(adjust_available(self.db, self.equipment.EquipmentID, -25), -10)
        self.assertEqual(self.equipment.AvailableQuantity, 0)
        self.assertEqual(adjust_available(self.db, self.equipment.EquipmentID, 3), 3)
        self.assertEqual(self.equipment.AvailableQuantity, 3)

    def test_reconcile_repairs_drift_and_writes_audit_row(self):
        self._approved(4, in_days(1), in_days(2))
        self.equipment.AvailableQuantity = 9
        self.db.commit()

        result = reconcile_available_quantity(self.db, self.equipment.EquipmentID, user_id=self.user.UserID)
        self.db.commit()

        self.assertTrue(result["changed"])
        self.assertEqual((result["before"], result["after"], result["outstanding"]), (9, 6, 4))
        audit = self.db.execute(select(AuditLog).where(AuditLog.Action == "ReconcileAvailability")).scalars().all()
        self.assertEqual(len(audit), 1)
        self.assertEqual(audit[0].EntityID, self.equipment.EquipmentID)

        again = reconcile_available_quantity(self.db, self.equipment.EquipmentID)
        self.assertFalse(again["changed"])

    def test_integrity_checks_report_overbooking_and_missing_days(self):
        first = self._approved(6, in_days(1), in_days(3))
        self._approved(6, in_days(3), in_days(4))
        self.assertEqual(
            find_capacity_violations(self.db, self.equipment.EquipmentID),
            [{"date": in_days(3), "booked": 12, "totalQuantity": 10}],
        )
        self.assertEqual(find_coverage_gaps(self.db, self.equipment.EquipmentID), [])

        self.db.delete(self._active_rows(first.RequestID)[0])
        self.db.commit()
        self.assertEqual(
            find_coverage_gaps(self.db, self.equipment.EquipmentID),
            [{"requestID": first.RequestID, "expectedDays": 3, "activeDays": 2}],
        )


if __name__ == "__main__":
    unittest.main()
