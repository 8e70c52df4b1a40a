"""Part domain model.

Only stock and name matter to the edit core. Everything else a part document
carries (supplier, image, datasheet, ...) is preserved untouched.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class Part(BaseModel):
    """Part document as stored under parts/{id}."""

    id: str
    name: str = ""
    stock: int = Field(0, ge=0)
    code: str | None = None
    price: float | None = None
    low_stock_threshold: int | None = Field(None, ge=0)
    last_stock_change: dict[str, Any] | None = None
    updated_at: datetime | None = None

    model_config = {"extra": "allow", "frozen": True}

    def threshold(self, default: int) -> int:
        """Low-stock threshold for this part, falling back to the configured default."""
        if self.low_stock_threshold is None:
            return default
        return self.low_stock_threshold
