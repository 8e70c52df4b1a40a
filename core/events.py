"""
Domain events for invoice editing.

Immutable event objects that represent state changes in the invoice edit
core. Events let the UI and other services react without the publisher
knowing who's listening.

Event Categories:
- SessionEvent: Edit session state transitions
- InvoiceEvent: Committed invoice lifecycle (create, edit, delete)

Events carry the full domain object so handlers don't need to re-fetch state.
This prevents race conditions where persistence hasn't completed yet.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from utils.timezone import now_utc


@dataclass(frozen=True, kw_only=True)
class EditEvent:
    """Base class for all invoice edit events."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = field(default_factory=now_utc)


# =============================================================================
# SESSION EVENTS
# =============================================================================


@dataclass(frozen=True)
class SessionEvent(EditEvent):
    """Events related to edit session lifecycle."""
    pass


@dataclass(frozen=True)
class SessionStateChanged(SessionEvent):
    """
    A session entered a new state.

    validation, conflict and error reflect the session at the moment of the
    transition so a UI can render without polling.
    """
    session_id: str = ""
    invoice_id: str = ""
    state: Any = None  # EditState
    previous_state: Any = None
    validation: Any = None  # ValidationResult | None
    conflict: Any = None  # ConflictAnalysis | None
    error: Any = None  # ErrorInfo | None

    @classmethod
    def create(cls, session: Any, previous_state: Any) -> "SessionStateChanged":
        return cls(
            session_id=session.session_id,
            invoice_id=session.invoice_id,
            state=session.state,
            previous_state=previous_state,
            validation=session.validation,
            conflict=session.conflict,
            error=session.error,
        )


# =============================================================================
# INVOICE EVENTS
# =============================================================================


@dataclass(frozen=True)
class InvoiceEvent(EditEvent):
    """Events related to committed invoice changes."""
    pass


@dataclass(frozen=True)
class InvoiceCreated(InvoiceEvent):
    """A new invoice was issued and its stock allocated."""
    invoice: Any = None  # Invoice, typed Any to avoid a circular import
    stock_changes: tuple = ()

    @classmethod
    def create(cls, invoice: Any, stock_changes: list) -> "InvoiceCreated":
        return cls(invoice=invoice, stock_changes=tuple(stock_changes))


@dataclass(frozen=True)
class InvoiceEditCommitted(InvoiceEvent):
    """An edit session committed a new invoice version."""
    invoice: Any = None
    previous_version: int = 0
    stock_changes: tuple = ()
    session_id: str = ""

    @classmethod
    def create(
        cls, invoice: Any, previous_version: int, stock_changes: list, session_id: str
    ) -> "InvoiceEditCommitted":
        return cls(
            invoice=invoice,
            previous_version=previous_version,
            stock_changes=tuple(stock_changes),
            session_id=session_id,
        )


@dataclass(frozen=True)
class InvoiceDeleted(InvoiceEvent):
    """An invoice was deleted and its stock released."""
    invoice: Any = None
    stock_changes: tuple = ()

    @classmethod
    def create(cls, invoice: Any, stock_changes: list) -> "InvoiceDeleted":
        return cls(invoice=invoice, stock_changes=tuple(stock_changes))
