"""Typed exceptions for invoice edit failures.

Every exception carries an ErrorKind so callers branch on the kind, never on
message text. The session manager turns most of these into SaveResult /
DeleteResult values at its public boundary.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Failure kinds surfaced by the edit core."""

    NOT_FOUND = "not_found"
    PART_NOT_FOUND = "part_not_found"
    INVALID_INVOICE = "invalid_invoice"
    INVALID_QUANTITY = "invalid_quantity"
    INVALID_PRICE = "invalid_price"
    INSUFFICIENT_STOCK = "insufficient_stock"
    VERSION_CONFLICT = "version_conflict"
    INVOICE_DELETED = "invoice_deleted"
    RETRY_EXHAUSTED = "retry_exhausted"
    STORE_ERROR = "store_error"
    FATAL_STORE_ERROR = "fatal_store_error"
    SESSION_ENDED = "session_ended"
    UNSUPPORTED_STRATEGY = "unsupported_strategy"


class InvoiceEditError(Exception):
    """Base class for edit core errors."""

    kind: ErrorKind = ErrorKind.STORE_ERROR
    fatal: bool = False

    def __init__(self, message: str, **context: Any):
        self.context = context
        super().__init__(message)


class StoreError(InvoiceEditError):
    """
    Transient store failure (network, timeout, contention).

    Retried inside the transaction envelope; callers only see it once the
    retry budget is spent or outside a transaction.
    """

    kind = ErrorKind.STORE_ERROR


class FatalStoreError(InvoiceEditError):
    """Permission, schema or corrupt-document failure. Never retried."""

    kind = ErrorKind.FATAL_STORE_ERROR
    fatal = True


class RetryExhaustedError(InvoiceEditError):
    """Transaction kept colliding until the attempt budget ran out."""

    kind = ErrorKind.RETRY_EXHAUSTED

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Transaction aborted after {attempts} attempts", attempts=attempts
        )


class InvoiceNotFoundError(InvoiceEditError):
    """Invoice does not exist when an operation starts."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} not found", invoice_id=invoice_id)


class InvoiceDeletedError(InvoiceEditError):
    """Invoice disappeared while a session was editing it."""

    kind = ErrorKind.INVOICE_DELETED
    fatal = True

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(
            f"Invoice {invoice_id} has been deleted by another user",
            invoice_id=invoice_id,
        )


class PartNotFoundError(InvoiceEditError):
    """A line item references a part that does not exist."""

    kind = ErrorKind.PART_NOT_FOUND
    fatal = True

    def __init__(self, part_id: str):
        self.part_id = part_id
        super().__init__(f"Part {part_id} not found", part_id=part_id)


class VersionConflictError(InvoiceEditError):
    """Remote version moved past the version the session was based on."""

    kind = ErrorKind.VERSION_CONFLICT

    def __init__(self, invoice_id: str, expected_version: int, remote_version: int):
        self.invoice_id = invoice_id
        self.expected_version = expected_version
        self.remote_version = remote_version
        super().__init__(
            f"Invoice {invoice_id} is at version {remote_version}, "
            f"expected {expected_version}",
            invoice_id=invoice_id,
            expected_version=expected_version,
            remote_version=remote_version,
        )


class InsufficientStockError(InvoiceEditError):
    """One or more parts cannot cover the requested allocation."""

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, shortages: list[dict[str, Any]]):
        self.shortages = shortages
        names = ", ".join(s.get("part_name") or s["part_id"] for s in shortages)
        super().__init__(f"Insufficient stock for {names}", shortages=shortages)


class SessionEndedError(InvoiceEditError):
    """Operation attempted on a session that is done, cancelled or dead."""

    kind = ErrorKind.SESSION_ENDED

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Edit session {session_id} has ended", session_id=session_id)


class UnsupportedStrategyError(InvoiceEditError):
    """Requested conflict strategy is not offered for the current conflicts."""

    kind = ErrorKind.UNSUPPORTED_STRATEGY

    def __init__(self, strategy: str, reason: str):
        self.strategy = strategy
        super().__init__(
            f"Strategy '{strategy}' not allowed: {reason}", strategy=strategy
        )
