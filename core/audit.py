"""
Audit trail for invoice edit sessions.

Every session lifecycle event and every committed invoice mutation is logged
under audit/{audit_id}. The audit log is:
- Append-only (entries are created with SET NX, never modified or deleted)
- Actor-attributed (who made the change)
- Detailed (before/after partial documents, line diff, stock changes)

Two write paths:
- record(): best-effort, outside transactions. A failed write is logged and
  swallowed; missing audit for a failed save is acceptable.
- stage(): inside a store transaction. The entry commits or rolls back with
  the mutation it describes.
"""

import logging
from enum import Enum
from typing import Any
from uuid import uuid4
from datetime import datetime

from pydantic import BaseModel, Field

from clients.document_store import DocumentStore, Transaction
from core.errors import InvoiceEditError
from core.models import CUSTOMER_FIELDS, Invoice, StockChange
from utils.user_context import get_current_actor
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

AUDIT_COLLECTION = "audit"

# Header fields captured in before/after snapshots
HEADER_FIELDS = ("invoice_number", "version", "customer_info", "notes", "subtotal", "total_amount")


class AuditAction(str, Enum):
    """Type of event recorded."""

    EDIT_START = "edit_start"
    EDIT_CHANGE = "edit_change"
    VALIDATION_FAILED = "validation_failed"
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"
    SAVE_COMMITTED = "save_committed"
    SAVE_FAILED = "save_failed"
    DELETE_COMMITTED = "delete_committed"
    CANCELLED = "cancelled"
    INVOICE_CREATED = "invoice_created"


class AuditEntry(BaseModel):
    """One append-only audit record."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str | None = None
    invoice_id: str
    invoice_number: str = ""
    action: AuditAction
    actor: str = Field(default_factory=get_current_actor)
    timestamp: datetime = Field(default_factory=now_utc)
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    stock_changes: list[StockChange] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @property
    def path(self) -> str:
        return f"{AUDIT_COLLECTION}/{self.id}"

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def compute_changes(
    old: dict[str, Any],
    new: dict[str, Any],
    exclude_fields: set[str] | None = None
) -> dict[str, dict[str, Any]]:
    """
    Compute changes between two document states.

    Args:
        old: Previous state
        new: New state
        exclude_fields: Fields to ignore (defaults to {"updated_at"})

    Returns:
        Dict of {field: {"old": old_val, "new": new_val}} for changed fields.
        Empty dict if no changes.
    """
    exclude = exclude_fields or {"updated_at"}
    changes = {}

    all_keys = set(old.keys()) | set(new.keys())
    for key in sorted(all_keys):
        if key in exclude:
            continue

        old_val = old.get(key)
        new_val = new.get(key)

        if old_val != new_val:
            changes[key] = {"old": old_val, "new": new_val}

    return changes


def header_snapshot(invoice: Invoice) -> dict[str, Any]:
    """Header fields of an invoice as a JSON-compatible partial document."""
    return invoice.model_dump(mode="json", include=set(HEADER_FIELDS))


def diff_line_items(before: Invoice, after: Invoice) -> list[dict[str, Any]]:
    """
    Line-level diff keyed by part_id.

    Lines sharing a part_id are compared by summed quantity and the first
    line's final_price.
    """
    def index(invoice: Invoice) -> dict[str, dict[str, Any]]:
        lines: dict[str, dict[str, Any]] = {}
        for item in invoice.items:
            if item.part_id not in lines:
                lines[item.part_id] = {
                    "product_name": item.product_name,
                    "quantity": 0,
                    "final_price": item.final_price,
                }
            lines[item.part_id]["quantity"] += item.quantity
        return lines

    old_lines = index(before)
    new_lines = index(after)
    diff = []

    for part_id in [*old_lines, *(p for p in new_lines if p not in old_lines)]:
        old = old_lines.get(part_id)
        new = new_lines.get(part_id)
        if old is None:
            diff.append({"type": "added", "part_id": part_id, **new})
        elif new is None:
            diff.append({"type": "removed", "part_id": part_id, **old})
        elif old["quantity"] != new["quantity"] or old["final_price"] != new["final_price"]:
            diff.append({
                "type": "modified",
                "part_id": part_id,
                "product_name": new["product_name"],
                "quantity": {"from": old["quantity"], "to": new["quantity"]},
                "final_price": {"from": old["final_price"], "to": new["final_price"]},
            })

    return diff


def diff_customer_info(before: Invoice, after: Invoice) -> dict[str, dict[str, str]]:
    """Changed customer fields as {field: {"from": old, "to": new}}."""
    changes = {}
    for name in CUSTOMER_FIELDS:
        old = getattr(before.customer_info, name)
        new = getattr(after.customer_info, name)
        if old != new:
            changes[name] = {"from": old, "to": new}
    return changes


class AuditTrail:
    """
    Append-only audit log for invoice edits.

    Usage:
        audit = AuditTrail(store)

        # Lifecycle event outside a transaction (best-effort)
        audit.record(AuditEntry(
            session_id=session.session_id,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            action=AuditAction.EDIT_START,
        ))

        # Inside a transaction - commits with the invoice write
        def body(tx):
            ...
            audit.stage(tx, entry)

        # Get history
        history = audit.history_for_invoice(invoice.id)
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def record(self, entry: AuditEntry) -> bool:
        """
        Write an entry outside any transaction.

        Best-effort: store failures are logged and reported as False.
        """
        try:
            self.store.run_transaction(lambda tx: tx.create(entry.path, entry.to_document()))
        except InvoiceEditError as e:
            logger.warning(
                "Audit write failed for %s on invoice %s: %s",
                entry.action.value, entry.invoice_id, e,
            )
            return False
        return True

    def stage(self, tx: Transaction, entry: AuditEntry) -> None:
        """Stage an entry in an open transaction."""
        tx.create(entry.path, entry.to_document())

    def get(self, audit_id: str) -> AuditEntry | None:
        doc = self.store.get_doc(f"{AUDIT_COLLECTION}/{audit_id}")
        if doc is None:
            return None
        return AuditEntry.model_validate(doc)

    def history_for_invoice(self, invoice_id: str) -> list[AuditEntry]:
        """
        Full audit history for an invoice.

        Returns:
            List of entries, newest first.
        """
        entries = [e for e in self._all() if e.invoice_id == invoice_id]
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)

    def recent(self, limit: int = 100, actor: str | None = None) -> list[AuditEntry]:
        """
        Recent activity, optionally for one actor.

        Returns:
            List of entries, newest first.
        """
        entries = self._all()
        if actor is not None:
            entries = [e for e in entries if e.actor == actor]
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)[:limit]

    def _all(self) -> list[AuditEntry]:
        return [AuditEntry.model_validate(doc) for doc in self.store.list_docs(AUDIT_COLLECTION)]
