from __future__ import annotations

from sqlalchemy.orm import Session

from models.lending_models import LabUser
from services.lending_errors import NotFoundError


RIGHTS_BY_ROLE = {
    "STUDENT": {
        "borrow": True,
        "manageRequests": False,
        "manageLedger": False,
    },
    "TEACHER": {
        "borrow": True,
        "manageRequests": False,
        "manageLedger": False,
    },
    "LAB_ASSISTANT": {
        "borrow": False,
        "manageRequests": True,
        "manageLedger": False,
    },
    "ADMIN": {
        "borrow": False,
        "manageRequests": True,
        "manageLedger": True,
    },
}


def normalize_role(raw_role: str | None) -> str | None:
    role = (raw_role or "").strip().upper().replace("-", "_")
    if role.startswith("ROLE_"):
        role = role[len("ROLE_"):]
    if role in RIGHTS_BY_ROLE:
        return role
    return None


def has_right(role: str | None, right: str) -> bool:
    normalized = normalize_role(role)
    if not normalized:
        return False
    return bool(RIGHTS_BY_ROLE[normalized].get(right))


def get_user(db: Session, user_id: int | None) -> LabUser | None:
    if user_id is None:
        return None
    return db.get(LabUser, int(user_id))


def require_user(db: Session, user_id: int | None, label: str = "User") -> LabUser:
    user = get_user(db, user_id)
    if not user:
        raise NotFoundError(f"{label} not found with id: {user_id}")
    return user


def display_name(user: LabUser | None, fallback_id: int | None = None) -> str | None:
    if user and (user.FullName or "").strip():
        return user.FullName.strip()
    if fallback_id is None:
        return None
    return f"User #{fallback_id}"
