from __future__ import annotations


class LendingError(RuntimeError):
    """Business-rule failure with a message that is safe to show to the caller."""

    kind = "LendingError"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(LendingError):
    kind = "NotFound"
    status_code = 404


class InvalidRequestError(LendingError):
    kind = "InvalidRequest"
    status_code = 400


class NotAvailableError(LendingError):
    kind = "NotAvailable"
    status_code = 409


class InvalidOperationError(LendingError):
    kind = "InvalidOperation"
    status_code = 400


class PersistenceError(LendingError):
    kind = "Internal"
    status_code = 500

    def __init__(self, message: str = "Internal error. Please retry later."):
        super().__init__(message)
