"""
Invoice service for issuing and reading invoices.

Creating an invoice allocates stock for every line in the same transaction
that assigns its number, so a number is never burned on a failed issue.
"""

import logging
from uuid import uuid4

from clients.document_store import DocumentStore, Transaction
from core.audit import AuditTrail, AuditAction, AuditEntry, header_snapshot
from core.config import EditConfig
from core.errors import InvoiceNotFoundError, PartNotFoundError
from core.event_bus import EventBus
from core.events import InvoiceCreated
from core.models import Invoice, InvoiceCreate, LineItem, Part
from core.reconciliation import allocate_all
from core.services.transaction_service import (
    invoice_path,
    part_path,
    stage_stock_changes,
)
from utils.user_context import get_current_actor
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

COUNTER_PATH = "counters/invoice_number"


class InvoiceService:
    """Service for invoice operations outside edit sessions."""

    def __init__(
        self,
        store: DocumentStore,
        audit: AuditTrail,
        event_bus: EventBus,
        config: EditConfig | None = None,
    ):
        self.store = store
        self.audit = audit
        self.event_bus = event_bus
        self.config = config or EditConfig()

    def _next_invoice_number(self, tx: Transaction) -> str:
        """
        Allocate the next invoice number inside tx.

        Format: INV-YYYY-NNNN. The sequence is deployment-wide and never
        resets, so every new number is greater than all existing ones.
        """
        counter = tx.get(COUNTER_PATH) or {"value": 0}
        sequence = int(counter.get("value", 0)) + 1
        tx.put(COUNTER_PATH, {"value": sequence})
        return f"INV-{now_utc().year}-{sequence:04d}"

    def create_invoice(self, data: InvoiceCreate) -> Invoice:
        """
        Issue a new invoice and allocate its stock.

        Lines capture each part's name, code and (unless given) price at
        this moment.

        Raises:
            PartNotFoundError: A line references a missing part.
            InsufficientStockError: Stock can't cover the allocation.
        """
        actor = get_current_actor()
        invoice_id = str(uuid4())

        def body(tx: Transaction) -> tuple[Invoice, list]:
            parts: dict[str, Part] = {}
            for line in data.items:
                if line.part_id in parts:
                    continue
                doc = tx.get(part_path(line.part_id))
                if doc is None:
                    raise PartNotFoundError(line.part_id)
                parts[line.part_id] = Part.model_validate(doc)

            items = []
            for line in data.items:
                part = parts[line.part_id]
                original_price = line.original_price if line.original_price is not None else part.price
                if original_price is None or original_price <= 0:
                    raise ValueError(f"Part {part.id} has no price; pass original_price")
                items.append(LineItem.priced(
                    part_id=part.id,
                    original_price=original_price,
                    quantity=line.quantity,
                    markup_type=line.markup_type,
                    markup_value=line.markup_value,
                    product_code=part.code or "",
                    product_name=part.name,
                ))

            now = now_utc()
            invoice = Invoice(
                id=invoice_id,
                invoice_number=self._next_invoice_number(tx),
                version=1,
                customer_info=data.customer_info,
                notes=data.notes,
                items=tuple(items),
                created_at=now,
                updated_at=now,
            ).with_totals()

            changes = stage_stock_changes(tx, allocate_all(items, parts), invoice, actor=actor)
            tx.put(invoice_path(invoice.id), invoice.to_document())

            self.audit.stage(tx, AuditEntry(
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                action=AuditAction.INVOICE_CREATED,
                actor=actor,
                timestamp=now,
                after=header_snapshot(invoice),
                stock_changes=changes,
            ))
            return invoice, changes

        invoice, changes = self.store.run_transaction(body, self.config.transaction_max_attempts)
        logger.info(f"Created invoice {invoice.invoice_number} ({invoice.id})")

        self.event_bus.publish(InvoiceCreated.create(invoice=invoice, stock_changes=changes))
        return invoice

    def get_by_id(self, invoice_id: str) -> Invoice | None:
        """Get invoice by ID, None if it doesn't exist."""
        doc = self.store.get_doc(invoice_path(invoice_id))
        if doc is None:
            return None
        return Invoice.model_validate(doc)

    def require(self, invoice_id: str) -> Invoice:
        """
        Get invoice by ID.

        Raises:
            InvoiceNotFoundError: Invoice doesn't exist.
        """
        invoice = self.get_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def load_parts(self, invoice: Invoice) -> dict[str, Part]:
        """Snapshot of every part an invoice references. Missing parts are omitted."""
        parts = {}
        for part_id in dict.fromkeys(item.part_id for item in invoice.items):
            doc = self.store.get_doc(part_path(part_id))
            if doc is not None:
                parts[part_id] = Part.model_validate(doc)
        return parts
