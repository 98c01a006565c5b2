from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from models.lending_models import (
    REQUEST_APPROVED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    REQUEST_RETURNED,
    REQUEST_STATUSES,
    AuditLog,
    BorrowRequest,
)
from services.availability_service import (
    is_available,
    materialize_bookings,
    release_bookings,
    sync_available_quantity,
)
from services.borrow_state import apply_state, state_of, to_approved, to_rejected, to_returned, transition_error
from services.catalog_service import require_item
from services.lending_errors import (
    InvalidRequestError,
    LendingError,
    NotAvailableError,
    NotFoundError,
    PersistenceError,
)
from services.user_directory_service import display_name, require_user

LOGGER = logging.getLogger("equipment_lending.borrow")


def log_audit(db: Session, request_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType="BorrowRequest",
            EntityID=request_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def _rollback_rejected(db: Session, action: str, request_id: int | None, exc: LendingError) -> None:
    db.rollback()
    LOGGER.warning("%s failed request_id=%s kind=%s reason=%s", action, request_id, exc.kind, exc.message)


def _persistence_failure(db: Session, action: str, request_id: int | None) -> PersistenceError:
    db.rollback()
    LOGGER.exception("%s failed request_id=%s: persistence error", action, request_id)
    return PersistenceError()


def _request_query():
    return (
        select(BorrowRequest)
        .options(selectinload(BorrowRequest.Equipment))
        .options(selectinload(BorrowRequest.Requester))
        .options(selectinload(BorrowRequest.Approver))
        .order_by(BorrowRequest.CreatedDate.desc(), BorrowRequest.RequestID.desc())
    )


def _require_request(db: Session, request_id: int, refresh: bool = False, lock: bool = False) -> BorrowRequest:
    stmt = _request_query().where(BorrowRequest.RequestID == request_id)
    if lock:
        stmt = stmt.with_for_update(of=BorrowRequest)
    if refresh or lock:
        stmt = stmt.execution_options(populate_existing=True)
    borrow_request = db.execute(stmt).scalars().first()
    if not borrow_request:
        raise NotFoundError(f"Borrow request not found with id: {request_id}")
    return borrow_request


def _claim_status(db: Session, borrow_request: BorrowRequest, target: str) -> None:
    """Move the stored status only if it still holds the value this session read.

    Guards against a concurrent transition that committed after the read, also on
    backends that ignore ``FOR UPDATE``.
    """
    expected = borrow_request.Status
    result = db.execute(
        update(BorrowRequest)
        .where(BorrowRequest.RequestID == borrow_request.RequestID)
        .where(BorrowRequest.Status == expected)
        .values(Status=target, UpdatedDate=datetime.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        LOGGER.warning(
            "Status changed concurrently request_id=%s expected=%s target=%s",
            borrow_request.RequestID,
            expected,
            target,
        )
        raise transition_error(expected, target)


def parse_status(raw: str | None) -> str | None:
    value = (raw or "").strip().upper()
    if not value:
        return None
    if value not in REQUEST_STATUSES:
        raise InvalidRequestError(
            f"Invalid status '{raw}'. Expected one of: {', '.join(REQUEST_STATUSES)}"
        )
    return value


def submit(
    db: Session,
    equipment_id: int,
    requester_id: int,
    quantity: int,
    from_date: date,
    to_date: date,
    reason: str | None = None,
    today: date | None = None,
) -> BorrowRequest:
    LOGGER.info(
        "Creating borrow request equipment_id=%s user_id=%s quantity=%s from=%s to=%s",
        equipment_id,
        requester_id,
        quantity,
        from_date,
        to_date,
    )
    today = today or date.today()
    try:
        require_item(db, equipment_id)
        require_user(db, requester_id, "User")
        if from_date > to_date:
            raise InvalidRequestError("From date cannot be after to date")
        if from_date < today:
            raise InvalidRequestError("From date cannot be in the past")
        if not is_available(db, equipment_id, quantity, from_date, to_date):
            raise NotAvailableError("Not enough equipment available for the requested period")

        now = datetime.now()
        borrow_request = BorrowRequest(
            EquipmentID=equipment_id,
            RequestedBy=requester_id,
            Quantity=int(quantity),
            FromDate=from_date,
            ToDate=to_date,
            Reason=reason,
            Status=REQUEST_PENDING,
            CreatedDate=now,
            UpdatedDate=now,
        )
        db.add(borrow_request)
        db.flush()
        log_audit(
            db,
            borrow_request.RequestID,
            "CreateBorrowRequest",
            f"quantity={borrow_request.Quantity} from={from_date} to={to_date}",
            user_id=requester_id,
        )
        db.commit()
    except LendingError as exc:
        _rollback_rejected(db, "Submit", None, exc)
        raise
    except SQLAlchemyError as exc:
        raise _persistence_failure(db, "Submit", None) from exc

    LOGGER.info("Borrow request created request_id=%s status=%s", borrow_request.RequestID, borrow_request.Status)
    return _require_request(db, borrow_request.RequestID, refresh=True)


def approve(db: Session, request_id: int, approver_id: int, remarks: str | None = None) -> BorrowRequest:
    """Approve a pending request and commit its units for every day of the range.

    The item row is locked before availability is checked again, because another
    request may have been approved for the same days since this one was submitted.
    The request itself is then re-read under lock and its status claimed, so a
    reject or approve that committed in between wins. Bookings, the counter
    update and the status change commit together.
    """
    LOGGER.info("Approving borrow request request_id=%s approved_by=%s", request_id, approver_id)
    try:
        borrow_request = _require_request(db, request_id)
        to_approved(state_of(borrow_request), approver_id, remarks)
        require_user(db, approver_id, "Approver")

        require_item(db, borrow_request.EquipmentID, for_update=True)
        borrow_request = _require_request(db, request_id, lock=True)
        approved = to_approved(state_of(borrow_request), approver_id, remarks)
        _claim_status(db, borrow_request, approved.status)
        if not is_available(
            db,
            borrow_request.EquipmentID,
            borrow_request.Quantity,
            borrow_request.FromDate,
            borrow_request.ToDate,
        ):
            raise NotAvailableError("Equipment no longer available for the requested period")

        apply_state(borrow_request, approved)
        materialize_bookings(db, borrow_request)
        sync_available_quantity(db, borrow_request.EquipmentID, expected_delta=-int(borrow_request.Quantity))
        log_audit(
            db,
            request_id,
            "ApproveBorrowRequest",
            f"Approved by {approver_id}; quantity={borrow_request.Quantity}",
            user_id=approver_id,
        )
        db.commit()
    except LendingError as exc:
        _rollback_rejected(db, "Approve", request_id, exc)
        raise
    except SQLAlchemyError as exc:
        raise _persistence_failure(db, "Approve", request_id) from exc

    LOGGER.info(
        "Borrow request approved request_id=%s equipment_id=%s quantity=%s",
        request_id,
        borrow_request.EquipmentID,
        borrow_request.Quantity,
    )
    return _require_request(db, request_id, refresh=True)


def reject(db: Session, request_id: int, remarks: str | None = None, actor_id: int | None = None) -> BorrowRequest:
    LOGGER.info("Rejecting borrow request request_id=%s", request_id)
    try:
        borrow_request = _require_request(db, request_id, lock=True)
        rejected = to_rejected(state_of(borrow_request), remarks)
        _claim_status(db, borrow_request, rejected.status)
        apply_state(borrow_request, rejected)
        log_audit(db, request_id, "RejectBorrowRequest", remarks, user_id=actor_id)
        db.commit()
    except LendingError as exc:
        _rollback_rejected(db, "Reject", request_id, exc)
        raise
    except SQLAlchemyError as exc:
        raise _persistence_failure(db, "Reject", request_id) from exc

    LOGGER.info("Borrow request rejected request_id=%s", request_id)
    return _require_request(db, request_id, refresh=True)


def mark_returned(
    db: Session,
    request_id: int,
    return_date: date | None = None,
    condition_after_use: str | None = None,
    actor_id: int | None = None,
) -> BorrowRequest:
    LOGGER.info("Marking borrow request returned request_id=%s return_date=%s", request_id, return_date)
    try:
        borrow_request = _require_request(db, request_id)
        to_returned(state_of(borrow_request), return_date or date.today(), condition_after_use)

        require_item(db, borrow_request.EquipmentID, for_update=True)
        borrow_request = _require_request(db, request_id, lock=True)
        returned = to_returned(state_of(borrow_request), return_date or date.today(), condition_after_use)
        _claim_status(db, borrow_request, returned.status)
        apply_state(borrow_request, returned)
        release_bookings(db, request_id)
        sync_available_quantity(db, borrow_request.EquipmentID, expected_delta=int(borrow_request.Quantity))
        log_audit(
            db,
            request_id,
            "ReturnBorrowRequest",
            f"condition={condition_after_use or ''}",
            user_id=actor_id,
        )
        db.commit()
    except LendingError as exc:
        _rollback_rejected(db, "Return", request_id, exc)
        raise
    except SQLAlchemyError as exc:
        raise _persistence_failure(db, "Return", request_id) from exc

    LOGGER.info(
        "Borrow request returned request_id=%s equipment_id=%s quantity=%s condition=%s",
        request_id,
        borrow_request.EquipmentID,
        borrow_request.Quantity,
        condition_after_use,
    )
    return _require_request(db, request_id, refresh=True)


def get_by_id(db: Session, request_id: int) -> BorrowRequest:
    return _require_request(db, request_id, refresh=True)


def list_by_requester(db: Session, requester_id: int) -> list[BorrowRequest]:
    require_user(db, requester_id, "User")
    rows = db.execute(_request_query().where(BorrowRequest.RequestedBy == requester_id)).scalars().all()
    LOGGER.debug("Retrieved %s borrow requests for user_id=%s", len(rows), requester_id)
    return list(rows)


def list_by_status(db: Session, status: str) -> list[BorrowRequest]:
    return list_with_filters(db, status=status)


def list_with_filters(db: Session, status: str | None = None, requester_id: int | None = None) -> list[BorrowRequest]:
    stmt = _request_query()
    normalized = parse_status(status)
    if normalized:
        stmt = stmt.where(BorrowRequest.Status == normalized)
    if requester_id is not None:
        stmt = stmt.where(BorrowRequest.RequestedBy == requester_id)
    return list(db.execute(stmt).scalars().all())


def count_by_status(db: Session) -> dict:
    counts = {status: 0 for status in REQUEST_STATUSES}
    rows = db.execute(
        select(BorrowRequest.Status, func.count(BorrowRequest.RequestID)).group_by(BorrowRequest.Status)
    ).all()
    for status, count in rows:
        counts[status] = int(count or 0)
    return {
        "totalRequests": sum(counts.values()),
        "pendingRequests": counts[REQUEST_PENDING],
        "approvedRequests": counts[REQUEST_APPROVED],
        "returnedRequests": counts[REQUEST_RETURNED],
        "rejectedRequests": counts[REQUEST_REJECTED],
    }


def serialize_borrow_request(borrow_request: BorrowRequest) -> dict:
    equipment = borrow_request.Equipment
    return {
        "requestID": borrow_request.RequestID,
        "equipmentID": borrow_request.EquipmentID,
        "equipmentName": equipment.EquipmentName if equipment else None,
        "userID": borrow_request.RequestedBy,
        "userName": display_name(borrow_request.Requester, borrow_request.RequestedBy),
        "quantity": borrow_request.Quantity,
        "fromDate": borrow_request.FromDate,
        "toDate": borrow_request.ToDate,
        "returnDate": borrow_request.ReturnDate,
        "reason": borrow_request.Reason,
        "status": borrow_request.Status,
        "remarks": borrow_request.Remarks,
        "conditionAfterUse": borrow_request.ConditionAfterUse,
        "approvedBy": borrow_request.ApprovedBy,
        "approvedByName": display_name(borrow_request.Approver, borrow_request.ApprovedBy),
        "createdDate": borrow_request.CreatedDate,
        "updatedDate": borrow_request.UpdatedDate,
    }
