from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime

from models.lending_models import (
    REQUEST_APPROVED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    REQUEST_RETURNED,
    BorrowRequest,
)
from services.lending_errors import InvalidOperationError


STATE_TRANSITIONS = {
    REQUEST_PENDING: {REQUEST_APPROVED, REQUEST_REJECTED},
    REQUEST_APPROVED: {REQUEST_RETURNED},
    REQUEST_REJECTED: set(),
    REQUEST_RETURNED: set(),
}
TERMINAL_STATES = {state for state, targets in STATE_TRANSITIONS.items() if not targets}

_TRANSITION_ERRORS = {
    REQUEST_APPROVED: "Only pending requests can be approved",
    REQUEST_REJECTED: "Only pending requests can be rejected",
    REQUEST_RETURNED: "Only approved requests can be marked as returned",
}


@dataclass(frozen=True)
class BorrowState:
    status: str = REQUEST_PENDING
    approved_by: int | None = None
    remarks: str | None = None
    return_date: date | None = None
    condition_after_use: str | None = None


def can_transition(current: str, target: str) -> bool:
    return target in STATE_TRANSITIONS.get(current, set())


def transition_error(current: str, target: str) -> InvalidOperationError:
    return InvalidOperationError(_TRANSITION_ERRORS.get(target, f"Invalid state transition: {current} -> {target}"))


def _require_transition(state: BorrowState, target: str) -> None:
    if not can_transition(state.status, target):
        raise transition_error(state.status, target)


def to_approved(state: BorrowState, approver_id: int, remarks: str | None) -> BorrowState:
    _require_transition(state, REQUEST_APPROVED)
    return replace(state, status=REQUEST_APPROVED, approved_by=approver_id, remarks=remarks)


def to_rejected(state: BorrowState, remarks: str | None) -> BorrowState:
    _require_transition(state, REQUEST_REJECTED)
    return replace(state, status=REQUEST_REJECTED, remarks=remarks)


def to_returned(state: BorrowState, return_date: date, condition_after_use: str | None) -> BorrowState:
    _require_transition(state, REQUEST_RETURNED)
    return replace(
        state,
        status=REQUEST_RETURNED,
        return_date=return_date,
        condition_after_use=condition_after_use,
    )


def state_of(borrow_request: BorrowRequest) -> BorrowState:
    return BorrowState(
        status=borrow_request.Status or REQUEST_PENDING,
        approved_by=borrow_request.ApprovedBy,
        remarks=borrow_request.Remarks,
        return_date=borrow_request.ReturnDate,
        condition_after_use=borrow_request.ConditionAfterUse,
    )


def apply_state(borrow_request: BorrowRequest, state: BorrowState) -> None:
    borrow_request.Status = state.status
    borrow_request.ApprovedBy = state.approved_by
    borrow_request.Remarks = state.remarks
    borrow_request.ReturnDate = state.return_date
    borrow_request.ConditionAfterUse = state.condition_after_use
    borrow_request.UpdatedDate = datetime.now()
