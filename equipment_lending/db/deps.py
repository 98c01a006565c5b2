from collections.abc import Iterator

from sqlalchemy.orm import Session

from .session import SessionLocalLending


def get_lending_db() -> Iterator[Session]:
    """Request-scoped session; whatever the handler left uncommitted is rolled back on close."""
    with SessionLocalLending() as db:
        yield db
