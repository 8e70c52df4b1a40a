"""Invoice domain models.

subtotal is always the sum of line totals and total_amount equals subtotal;
there is no tax layer. version starts at 1 and increases by exactly one on
every committed mutation.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from core.models.line_item import LineItem, LineItemCreate


class CustomerInfo(BaseModel):
    """Customer header fields carried on the invoice."""

    name: str = ""
    contact: str = ""
    address: str = ""

    model_config = {"frozen": True}


CUSTOMER_FIELDS = ("name", "contact", "address")


class InvoiceCreate(BaseModel):
    """Data required to issue a new invoice."""

    customer_info: CustomerInfo = Field(default_factory=CustomerInfo)
    notes: str = Field("", max_length=2000)
    items: list[LineItemCreate] = Field(..., min_length=1)


class Invoice(BaseModel):
    """Full invoice document as stored under invoices/{id}."""

    id: str
    invoice_number: str
    version: int = 1
    customer_info: CustomerInfo = Field(default_factory=CustomerInfo)
    notes: str = ""
    items: tuple[LineItem, ...] = ()
    subtotal: float = 0
    total_amount: float = 0
    created_at: datetime
    updated_at: datetime
    edit_count: int = 0
    last_edit: dict[str, Any] | None = None

    model_config = {"frozen": True}

    @property
    def computed_subtotal(self) -> float:
        """Sum of line totals."""
        return round(sum(item.total_price for item in self.items), 2)

    def with_totals(self) -> "Invoice":
        """Copy with subtotal and total_amount recomputed from the items."""
        subtotal = self.computed_subtotal
        return self.model_copy(update={"subtotal": subtotal, "total_amount": subtotal})

    def with_items(self, items: list[LineItem] | tuple[LineItem, ...]) -> "Invoice":
        """Copy with new items and recomputed totals."""
        return self.model_copy(update={"items": tuple(items)}).with_totals()

    def to_document(self) -> dict[str, Any]:
        """JSON-compatible dict for the document store."""
        return self.model_dump(mode="json")
