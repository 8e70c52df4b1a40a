"""Validation and stock analysis results."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from core.models.stock import StockChange


class IssueKind(str, Enum):
    """Kinds of validation findings. The first group are errors, the rest warnings."""

    PART_NOT_FOUND = "part_not_found"
    INVALID_INVOICE = "invalid_invoice"
    INVALID_QUANTITY = "invalid_quantity"
    INVALID_PRICE = "invalid_price"
    INSUFFICIENT_STOCK = "insufficient_stock"

    DUPLICATE_PARTS = "duplicate_parts"
    STALE_SESSION = "stale_session"
    HIGH_MARKUP = "high_markup"
    LOW_STOCK = "low_stock"
    OLD_INVOICE = "old_invoice"
    MULTIPLE_EDITS = "multiple_edits"


class ValidationIssue(BaseModel):
    """A single validation error or warning."""

    kind: IssueKind
    message: str
    part_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class ValidationResult(BaseModel):
    """Outcome of validating an invoice. ok is true when there are no errors."""

    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error_kinds(self) -> set[IssueKind]:
        return {issue.kind for issue in self.errors}

    def warning_kinds(self) -> set[IssueKind]:
        return {issue.kind for issue in self.warnings}

    def merged(self, other: "ValidationResult") -> "ValidationResult":
        """Combine two results, keeping order: self first."""
        return ValidationResult(
            errors=[*self.errors, *other.errors],
            warnings=[*self.warnings, *other.warnings],
        )


class StockAnalysis(BaseModel):
    """Stock changes for an edit plus their feasibility against a parts snapshot."""

    changes: list[StockChange] = Field(default_factory=list)
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def delta_for(self, part_id: str) -> int:
        """Net delta for a part, 0 if untouched."""
        for change in self.changes:
            if change.part_id == part_id:
                return change.delta
        return 0

    def as_validation(self) -> ValidationResult:
        return ValidationResult(errors=list(self.errors), warnings=list(self.warnings))
