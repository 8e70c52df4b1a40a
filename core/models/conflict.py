"""Conflict detection and resolution models."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from core.models.invoice import Invoice


class ConflictKind(str, Enum):
    """Semantic differences between a local working copy and the remote invoice."""

    VERSION_CONFLICT = "version_conflict"
    QUANTITY_CONFLICT = "quantity_conflict"
    PRICE_CONFLICT = "price_conflict"
    ITEM_ADDED_REMOTELY = "item_added_remotely"
    ITEM_REMOVED_REMOTELY = "item_removed_remotely"
    CUSTOMER_INFO_CONFLICT = "customer_info_conflict"
    NOTES_CONFLICT = "notes_conflict"
    INVOICE_DELETED = "invoice_deleted"


class Severity(str, Enum):
    """Conflict severity, ordered by rank."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.NONE: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


SEVERITY_BY_KIND = {
    ConflictKind.VERSION_CONFLICT: Severity.CRITICAL,
    ConflictKind.QUANTITY_CONFLICT: Severity.HIGH,
    ConflictKind.PRICE_CONFLICT: Severity.MEDIUM,
    ConflictKind.ITEM_ADDED_REMOTELY: Severity.MEDIUM,
    ConflictKind.ITEM_REMOVED_REMOTELY: Severity.MEDIUM,
    ConflictKind.CUSTOMER_INFO_CONFLICT: Severity.LOW,
    ConflictKind.NOTES_CONFLICT: Severity.LOW,
    ConflictKind.INVOICE_DELETED: Severity.CRITICAL,
}


class ResolutionChoice(str, Enum):
    """Per-conflict choice in a manual resolution."""

    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    CUSTOM = "custom"


class StrategyId(str, Enum):
    """Ways out of the CONFLICT state."""

    RELOAD = "reload"
    AUTO_MERGE = "auto_merge"
    MANUAL_RESOLVE = "manual_resolve"
    FORCE_OVERWRITE = "force_overwrite"


class Conflict(BaseModel):
    """
    One detected conflict.

    key identifies the conflict in a manual resolution, e.g. "quantity:A",
    "customer_info.name" or "notes".
    """

    kind: ConflictKind
    severity: Severity
    key: str
    field: str
    message: str
    part_id: str | None = None
    part_name: str | None = None
    local: Any = None
    remote: Any = None
    local_display: str = ""
    remote_display: str = ""
    recommended_action: str = "manual"
    choices: tuple[ResolutionChoice, ...] = (
        ResolutionChoice.USE_LOCAL,
        ResolutionChoice.USE_REMOTE,
        ResolutionChoice.CUSTOM,
    )


class FieldResolution(BaseModel):
    """Caller's answer for one conflict. value is only read for CUSTOM."""

    choice: ResolutionChoice
    value: Any = None


class ResolutionStrategy(BaseModel):
    """A strategy the caller may apply to leave CONFLICT."""

    id: StrategyId
    name: str
    description: str
    risk: Severity
    recommended: bool = False
    requires_confirmation: bool = False


class ConflictAnalysis(BaseModel):
    """Everything the caller needs to render and resolve a conflict."""

    invoice_id: str
    expected_version: int
    remote_version: int | None = None
    remote: Invoice | None = None
    conflicts: list[Conflict] = Field(default_factory=list)
    strategies: list[ResolutionStrategy] = Field(default_factory=list)
    auto_merge_eligible: bool = False

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def severity(self) -> Severity:
        if not self.conflicts:
            return Severity.NONE
        return max((c.severity for c in self.conflicts), key=lambda s: s.rank)

    def kinds(self) -> set[ConflictKind]:
        return {c.kind for c in self.conflicts}

    def has_kind(self, kind: ConflictKind) -> bool:
        return any(c.kind == kind for c in self.conflicts)

    def strategy_ids(self) -> list[StrategyId]:
        return [s.id for s in self.strategies]

    def summary(self) -> dict[str, Any]:
        """Counts for a conflict dialog header."""
        return {
            "total_conflicts": len(self.conflicts),
            "severity": self.severity.value,
            "can_auto_resolve": self.auto_merge_eligible,
            "remote_version": self.remote_version,
            "expected_version": self.expected_version,
        }
