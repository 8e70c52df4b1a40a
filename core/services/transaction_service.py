"""
Atomic invoice operations.

Every decision that matters (invoice version, part existence, stock
feasibility) is made from reads inside a single store transaction, and the
invoice write, every part stock write and the audit entry commit together.
When another writer touches any document read here, the store re-runs the
whole body against fresh reads.
"""

import logging
from typing import Any

from clients.document_store import DocumentStore, Transaction
from core.audit import (
    AuditAction,
    AuditEntry,
    AuditTrail,
    diff_customer_info,
    diff_line_items,
    header_snapshot,
)
from core.config import EditConfig
from core.errors import (
    InsufficientStockError,
    InvoiceDeletedError,
    InvoiceNotFoundError,
    PartNotFoundError,
    VersionConflictError,
)
from core.models import CommitResult, EditSession, Invoice, Part, StockChange
from core.reconciliation import compute_stock_changes, release_all, shortage
from utils.user_context import get_current_actor
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


def invoice_path(invoice_id: str) -> str:
    return f"invoices/{invoice_id}"


def part_path(part_id: str) -> str:
    return f"parts/{part_id}"


def read_invoice(tx: Transaction, invoice_id: str) -> Invoice | None:
    doc = tx.get(invoice_path(invoice_id))
    if doc is None:
        return None
    return Invoice.model_validate(doc)


def stage_stock_changes(
    tx: Transaction,
    changes: list[StockChange],
    invoice: Invoice,
    *,
    actor: str,
    skip_missing: bool = False,
) -> list[StockChange]:
    """
    Read every affected part inside tx and stage its new stock.

    All parts are checked before anything is staged so a failure reports
    every shortage at once.

    Returns:
        The changes actually applied (missing parts dropped when skip_missing).

    Raises:
        PartNotFoundError: A part is gone and skip_missing is False.
        InsufficientStockError: Any part would go below zero.
    """
    now = now_utc().isoformat()
    updates: list[tuple[StockChange, dict[str, Any], int]] = []
    shortages = []

    for change in changes:
        doc = tx.get(part_path(change.part_id))
        if doc is None:
            if skip_missing:
                logger.warning(
                    "Part %s missing while releasing stock for invoice %s",
                    change.part_id, invoice.id,
                )
                continue
            raise PartNotFoundError(change.part_id)

        part = Part.model_validate(doc)
        new_stock = part.stock + change.delta
        if new_stock < 0:
            shortages.append(shortage(
                change.model_copy(update={"part_name": change.part_name or part.name}),
                part.stock,
            ))
            continue
        updates.append((change, doc, new_stock))

    if shortages:
        raise InsufficientStockError(shortages)

    applied = []
    for change, doc, new_stock in updates:
        doc.update({
            "stock": new_stock,
            "updated_at": now,
            "last_stock_change": {
                "delta": change.delta,
                "reason": change.reason.value,
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "actor": actor,
                "at": now,
            },
        })
        tx.put(part_path(change.part_id), doc)
        applied.append(change)
    return applied


class InvoiceTransactionService:
    """
    Single-transaction commit and delete for invoices.

    Usage:
        transactions = InvoiceTransactionService(store, audit, config)
        result = transactions.commit_edit(session)
        result.invoice.version  # session.expected_version + 1
    """

    def __init__(self, store: DocumentStore, audit: AuditTrail, config: EditConfig | None = None):
        self.store = store
        self.audit = audit
        self.config = config or EditConfig()

    def commit_edit(self, session: EditSession) -> CommitResult:
        """
        Commit a session's working copy.

        Raises:
            InvoiceDeletedError: Invoice no longer exists.
            VersionConflictError: Someone committed since the session's base.
            PartNotFoundError: A line references a missing part.
            InsufficientStockError: Stock can't cover the allocation.
            RetryExhaustedError / StoreError / FatalStoreError: From the store.
        """
        actor = session.actor or get_current_actor()

        def body(tx: Transaction) -> CommitResult:
            stored = read_invoice(tx, session.invoice_id)
            if stored is None:
                raise InvoiceDeletedError(session.invoice_id)
            if stored.version != session.expected_version:
                raise VersionConflictError(
                    session.invoice_id, session.expected_version, stored.version
                )

            edited = session.current_invoice
            changes = compute_stock_changes(stored.items, edited.items, session.parts)

            # Lines with unchanged quantity still need an existing part
            changed = {c.part_id for c in changes}
            for part_id in dict.fromkeys(item.part_id for item in edited.items):
                if part_id not in changed and tx.get(part_path(part_id)) is None:
                    raise PartNotFoundError(part_id)

            now = now_utc()
            updated = edited.model_copy(update={
                "id": stored.id,
                "invoice_number": stored.invoice_number,
                "created_at": stored.created_at,
                "version": stored.version + 1,
                "updated_at": now,
                "edit_count": stored.edit_count + 1,
                "last_edit": {
                    "actor": actor,
                    "session_id": session.session_id,
                    "at": now.isoformat(),
                    "stock_changes": len(changes),
                },
            }).with_totals()

            applied = stage_stock_changes(tx, changes, updated, actor=actor)
            tx.put(invoice_path(updated.id), updated.to_document())

            entry = AuditEntry(
                session_id=session.session_id,
                invoice_id=updated.id,
                invoice_number=updated.invoice_number,
                action=AuditAction.SAVE_COMMITTED,
                actor=actor,
                timestamp=now,
                before=header_snapshot(stored),
                after=header_snapshot(updated),
                stock_changes=applied,
                context={
                    "line_changes": diff_line_items(stored, updated),
                    "customer_changes": diff_customer_info(stored, updated),
                    "previous_version": stored.version,
                },
            )
            self.audit.stage(tx, entry)
            return CommitResult(invoice=updated, stock_changes=applied, audit_id=entry.id)

        result = self.store.run_transaction(body, self.config.transaction_max_attempts)
        logger.info(
            "Committed invoice %s v%d (%d stock changes)",
            result.invoice.id, result.invoice.version, len(result.stock_changes),
        )
        return result

    def delete_invoice(self, invoice_id: str, session_id: str | None = None) -> CommitResult:
        """
        Delete an invoice and release all of its stock.

        Parts that no longer exist are skipped and listed in the audit
        context.

        Returns:
            CommitResult whose invoice is the deleted snapshot.

        Raises:
            InvoiceNotFoundError: Invoice doesn't exist.
            RetryExhaustedError / StoreError / FatalStoreError: From the store.
        """
        actor = get_current_actor()

        def body(tx: Transaction) -> CommitResult:
            stored = read_invoice(tx, invoice_id)
            if stored is None:
                raise InvoiceNotFoundError(invoice_id)

            changes = release_all(stored)
            applied = stage_stock_changes(tx, changes, stored, actor=actor, skip_missing=True)
            tx.delete(invoice_path(invoice_id))

            applied_ids = {c.part_id for c in applied}
            entry = AuditEntry(
                session_id=session_id,
                invoice_id=invoice_id,
                invoice_number=stored.invoice_number,
                action=AuditAction.DELETE_COMMITTED,
                actor=actor,
                before=stored.to_document(),
                after=None,
                stock_changes=applied,
                context={
                    "missing_parts": [c.part_id for c in changes if c.part_id not in applied_ids],
                },
            )
            self.audit.stage(tx, entry)
            return CommitResult(invoice=stored, stock_changes=applied, audit_id=entry.id)

        result = self.store.run_transaction(body, self.config.transaction_max_attempts)
        logger.info(
            "Deleted invoice %s, released stock for %d parts",
            invoice_id, len(result.stock_changes),
        )
        return result
