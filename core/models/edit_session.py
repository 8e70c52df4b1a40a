"""Edit session state and the typed results returned by the session API."""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, Field

from core.errors import ErrorKind, InvoiceEditError
from core.models.conflict import ConflictAnalysis
from core.models.invoice import Invoice
from core.models.part import Part
from core.models.stock import StockChange
from core.models.validation import StockAnalysis, ValidationResult


class EditState(str, Enum):
    """Lifecycle of an edit session."""

    IDLE = "idle"
    LOADING = "loading"
    EDITING = "editing"
    VALIDATING = "validating"
    PRE_CHECK = "pre_check"
    CONFLICT = "conflict"
    SAVING = "saving"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


class ErrorInfo(BaseModel):
    """Renderable description of a failure."""

    kind: ErrorKind
    message: str
    fatal: bool = False
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: InvoiceEditError) -> "ErrorInfo":
        return cls(kind=exc.kind, message=str(exc), fatal=exc.fatal, context=exc.context)


@dataclass
class EditSession:
    """
    A user's in-progress modification of one invoice.

    Owned exclusively by the caller that started it. original_invoice is the
    snapshot the session is based on and is only ever replaced wholesale
    (reload or conflict resolution), never mutated. parts is a read-only
    mapping captured at load.
    """

    session_id: str
    invoice_id: str
    actor: str
    original_invoice: Invoice
    current_invoice: Invoice
    expected_version: int
    parts: Mapping[str, Part]
    started_at: datetime
    state: EditState = EditState.IDLE
    validation: ValidationResult | None = None
    stock_analysis: StockAnalysis | None = None
    conflict: ConflictAnalysis | None = None
    error: ErrorInfo | None = None
    dirty: bool = False
    ended: bool = False
    change_count: int = 0
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def __post_init__(self):
        if not isinstance(self.parts, MappingProxyType):
            self.parts = MappingProxyType(dict(self.parts))

    @property
    def is_active(self) -> bool:
        return not self.ended


class CommitResult(BaseModel):
    """What a successful transaction wrote."""

    invoice: Invoice
    stock_changes: list[StockChange] = Field(default_factory=list)
    audit_id: str


class SaveResult(BaseModel):
    """
    Outcome of save_edit.

    Exactly one of new_version (status ok), conflict (status conflict) or
    error (status error) is populated.
    """

    status: str
    new_version: int | None = None
    invoice: Invoice | None = None
    stock_changes: list[StockChange] = Field(default_factory=list)
    conflict: ConflictAnalysis | None = None
    error: ErrorInfo | None = None
    validation: ValidationResult | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @classmethod
    def committed(cls, commit: CommitResult) -> "SaveResult":
        return cls(
            status="ok",
            new_version=commit.invoice.version,
            invoice=commit.invoice,
            stock_changes=commit.stock_changes,
        )

    @classmethod
    def conflicted(cls, analysis: ConflictAnalysis) -> "SaveResult":
        return cls(status="conflict", conflict=analysis)

    @classmethod
    def failed(cls, error: ErrorInfo, validation: ValidationResult | None = None) -> "SaveResult":
        return cls(status="error", error=error, validation=validation)


class DeleteResult(BaseModel):
    """Outcome of delete_invoice."""

    ok: bool
    invoice_id: str
    stock_changes: list[StockChange] = Field(default_factory=list)
    error: ErrorInfo | None = None
