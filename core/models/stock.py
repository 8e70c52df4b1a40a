"""Stock change models.

A StockChange is derived, never persisted on its own: it lives inside audit
entries and part last_stock_change notes. Negative delta allocates stock to
the invoice, positive delta releases it back.
"""

from enum import Enum

from pydantic import BaseModel


class StockChangeReason(str, Enum):
    """Why a part's stock moves."""

    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    INVOICE_CREATED = "invoice_created"
    INVOICE_DELETED = "invoice_deleted"


class StockChange(BaseModel):
    """Net stock movement for one part."""

    part_id: str
    part_name: str = ""
    delta: int
    reason: StockChangeReason
    original_quantity: int = 0
    new_quantity: int = 0

    model_config = {"frozen": True}

    @property
    def is_allocation(self) -> bool:
        """Whether this change takes stock out of the part."""
        return self.delta < 0
