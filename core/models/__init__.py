"""Core domain models."""

from core.models.line_item import LineItem, LineItemCreate, MarkupType, compute_final_price
from core.models.invoice import Invoice, InvoiceCreate, CustomerInfo, CUSTOMER_FIELDS
from core.models.part import Part
from core.models.stock import StockChange, StockChangeReason
from core.models.validation import IssueKind, ValidationIssue, ValidationResult, StockAnalysis
from core.models.conflict import (
    Conflict, ConflictAnalysis, ConflictKind, FieldResolution,
    ResolutionChoice, ResolutionStrategy, Severity, StrategyId, SEVERITY_BY_KIND,
)
from core.models.edit_session import (
    EditSession, EditState, ErrorInfo,
    CommitResult, SaveResult, DeleteResult,
)

__all__ = [
    # LineItem
    "LineItem", "LineItemCreate", "MarkupType", "compute_final_price",
    # Invoice
    "Invoice", "InvoiceCreate", "CustomerInfo", "CUSTOMER_FIELDS",
    # Part
    "Part",
    # Stock
    "StockChange", "StockChangeReason",
    # Validation
    "IssueKind", "ValidationIssue", "ValidationResult", "StockAnalysis",
    # Conflict
    "Conflict", "ConflictAnalysis", "ConflictKind", "FieldResolution",
    "ResolutionChoice", "ResolutionStrategy", "Severity", "StrategyId", "SEVERITY_BY_KIND",
    # Session
    "EditSession", "EditState", "ErrorInfo",
    "CommitResult", "SaveResult", "DeleteResult",
]
