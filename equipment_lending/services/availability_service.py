"""Per-day booking ledger for equipment items.

Every approved borrow request owns one ``EquipmentBookings`` row per calendar
day of its range. The ledger answers availability questions from the ACTIVE
rows and keeps the catalog's ``AvailableQuantity`` counter in step with them.
Nothing in here commits: callers run these helpers inside their own unit of work.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import date, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.lending_models import (
    AuditLog,
    BOOKING_ACTIVE,
    BOOKING_RELEASED,
    REQUEST_APPROVED,
    BorrowRequest,
    EquipmentBooking,
)
from services.catalog_service import adjust_available, require_item
from services.lending_errors import InvalidRequestError

LOGGER = logging.getLogger("equipment_lending.ledger")


def iter_days(from_date: date, to_date: date) -> Iterator[date]:
    current = from_date
    while current <= to_date:
        yield current
        current += timedelta(days=1)


def count_days(from_date: date, to_date: date) -> int:
    if to_date < from_date:
        return 0
    return (to_date - from_date).days + 1


def booked_quantity_for_date(db: Session, equipment_id: int, booking_date: date) -> int:
    total = db.execute(
        select(func.sum(EquipmentBooking.Quantity))
        .where(EquipmentBooking.EquipmentID == equipment_id)
        .where(EquipmentBooking.BookingDate == booking_date)
        .where(EquipmentBooking.Status == BOOKING_ACTIVE)
    ).scalar()
    return int(total or 0)


def booked_quantities_for_range(db: Session, equipment_id: int, from_date: date, to_date: date) -> dict[date, int]:
    rows = db.execute(
        select(EquipmentBooking.BookingDate, func.sum(EquipmentBooking.Quantity))
        .where(EquipmentBooking.EquipmentID == equipment_id)
        .where(EquipmentBooking.BookingDate >= from_date)
        .where(EquipmentBooking.BookingDate <= to_date)
        .where(EquipmentBooking.Status == BOOKING_ACTIVE)
        .group_by(EquipmentBooking.BookingDate)
    ).all()
    return {booking_date: int(total or 0) for booking_date, total in rows}


def is_available(db: Session, equipment_id: int, requested_quantity: int, from_date: date, to_date: date) -> bool:
    """True only if every day in ``[from_date, to_date]`` has room for the quantity.

    An unknown item raises ``NotFoundError``; it is never reported as available.
    """
    if from_date > to_date:
        raise InvalidRequestError("From date cannot be after to date")
    wanted = int(requested_quantity or 0)
    if wanted < 1:
        raise InvalidRequestError("Quantity must be at least 1")

    equipment = require_item(db, equipment_id)
    capacity = int(equipment.TotalQuantity or 0)
    booked_by_day = booked_quantities_for_range(db, equipment_id, from_date, to_date)
    for day in iter_days(from_date, to_date):
        free = capacity - booked_by_day.get(day, 0)
        if free < wanted:
            LOGGER.debug(
                "Capacity exhausted equipment_id=%s date=%s free=%s wanted=%s",
                equipment_id,
                day,
                free,
                wanted,
            )
            return False
    return True


def materialize_bookings(db: Session, borrow_request: BorrowRequest) -> list[EquipmentBooking]:
    now = datetime.now()
    bookings = [
        EquipmentBooking(
            EquipmentID=borrow_request.EquipmentID,
            BookingDate=day,
            Quantity=borrow_request.Quantity,
            Status=BOOKING_ACTIVE,
            CreatedDate=now,
            UpdatedDate=now,
        )
        for day in iter_days(borrow_request.FromDate, borrow_request.ToDate)
    ]
    borrow_request.Bookings.extend(bookings)
    db.add_all(bookings)
    db.flush()
    LOGGER.info("Created %s booking entries for request_id=%s", len(bookings), borrow_request.RequestID)
    return bookings


def release_bookings(db: Session, request_id: int) -> list[EquipmentBooking]:
    bookings = db.execute(
        select(EquipmentBooking)
        .where(EquipmentBooking.RequestID == request_id)
        .order_by(EquipmentBooking.BookingDate)
    ).scalars().all()
    now = datetime.now()
    for booking in bookings:
        booking.Status = BOOKING_RELEASED
        booking.UpdatedDate = now
    db.flush()
    LOGGER.info("Released %s booking entries for request_id=%s", len(bookings), request_id)
    return list(bookings)


def outstanding_quantity(db: Session, equipment_id: int) -> int:
    """Units held by requests that still own ACTIVE bookings for the item."""
    held = (
        select(EquipmentBooking.RequestID, func.max(EquipmentBooking.Quantity).label("Quantity"))
        .where(EquipmentBooking.EquipmentID == equipment_id)
        .where(EquipmentBooking.Status == BOOKING_ACTIVE)
        .group_by(EquipmentBooking.RequestID)
        .subquery()
    )
    total = db.execute(select(func.sum(held.c.Quantity))).scalar()
    return int(total or 0)


def sync_available_quantity(db: Session, equipment_id: int, expected_delta: int = 0) -> dict:
    """Set ``AvailableQuantity`` to ``TotalQuantity - outstanding`` (floored at 0).

    ``expected_delta`` is the move the caller's transition implies (minus the
    quantity on approval, plus it on return). A different applied delta means the
    counter had drifted or capacity changed while units were out, and is logged.
    """
    equipment = require_item(db, equipment_id)
    before = int(equipment.AvailableQuantity or 0)
    outstanding = outstanding_quantity(db, equipment_id)
    target = max(0, int(equipment.TotalQuantity or 0) - outstanding)
    applied = adjust_available(db, equipment_id, target - before)
    after = before + applied
    if applied != expected_delta:
        LOGGER.warning(
            "Available counter corrected equipment_id=%s before=%s after=%s expected_delta=%s outstanding=%s",
            equipment_id,
            before,
            after,
            expected_delta,
            outstanding,
        )
    return {
        "equipmentID": equipment_id,
        "before": before,
        "after": after,
        "outstanding": outstanding,
        "changed": after != before,
    }


def reconcile_available_quantity(db: Session, equipment_id: int, user_id: int | None = None) -> dict:
    result = sync_available_quantity(db, equipment_id)
    if result["changed"]:
        db.add(
            AuditLog(
                EntityType="Equipment",
                EntityID=equipment_id,
                Action="ReconcileAvailability",
                Details=f"AvailableQuantity {result['before']} -> {result['after']} (outstanding={result['outstanding']})",
                UserID=user_id,
                CreatedAt=datetime.now(),
            )
        )
    return result


def find_capacity_violations(db: Session, equipment_id: int) -> list[dict]:
    equipment = require_item(db, equipment_id)
    capacity = int(equipment.TotalQuantity or 0)
    rows = db.execute(
        select(EquipmentBooking.BookingDate, func.sum(EquipmentBooking.Quantity))
        .where(EquipmentBooking.EquipmentID == equipment_id)
        .where(EquipmentBooking.Status == BOOKING_ACTIVE)
        .group_by(EquipmentBooking.BookingDate)
        .having(func.sum(EquipmentBooking.Quantity) > capacity)
        .order_by(EquipmentBooking.BookingDate)
    ).all()
    return [
        {"date": booking_date, "booked": int(total or 0), "totalQuantity": capacity}
        for booking_date, total in rows
    ]


def find_coverage_gaps(db: Session, equipment_id: int) -> list[dict]:
    """Approved requests whose ACTIVE rows do not cover their date range exactly."""
    active_counts = (
        select(EquipmentBooking.RequestID, func.count(EquipmentBooking.BookingID).label("ActiveDays"))
        .where(EquipmentBooking.Status == BOOKING_ACTIVE)
        .group_by(EquipmentBooking.RequestID)
        .subquery()
    )
    rows = db.execute(
        select(BorrowRequest, active_counts.c.ActiveDays)
        .outerjoin(active_counts, active_counts.c.RequestID == BorrowRequest.RequestID)
        .where(BorrowRequest.EquipmentID == equipment_id)
        .where(BorrowRequest.Status == REQUEST_APPROVED)
        .order_by(BorrowRequest.RequestID)
    ).all()

    gaps: list[dict] = []
    for borrow_request, active_days in rows:
        expected = count_days(borrow_request.FromDate, borrow_request.ToDate)
        if int(active_days or 0) != expected:
            gaps.append(
                {
                    "requestID": borrow_request.RequestID,
                    "expectedDays": expected,
                    "activeDays": int(active_days or 0),
                }
            )
    return gaps
