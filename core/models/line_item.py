"""Line item domain models.

Prices are plain floats compared with a 0.01 tolerance. final_price and
total_price are stored alongside the inputs they derive from so that a
saved invoice can be checked for arithmetic closure without the parts table.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class MarkupType(str, Enum):
    """How markup_value is applied to original_price."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


def compute_final_price(original_price: float, markup_type: MarkupType, markup_value: float) -> float:
    """Selling price per unit for a given markup."""
    if markup_type == MarkupType.PERCENTAGE:
        return original_price * (1 + markup_value / 100)
    return original_price + markup_value


class LineItemCreate(BaseModel):
    """Data required to add a part to a new invoice."""

    part_id: str
    quantity: int = Field(1, ge=1)
    markup_type: MarkupType = MarkupType.PERCENTAGE
    markup_value: float = Field(0, ge=0)
    original_price: float | None = Field(None, gt=0)  # Defaults to the part's price


class LineItem(BaseModel):
    """
    One row of an invoice's bill of materials.

    product_code and product_name are captured when the line is created and
    are never refreshed from the part. Fields are deliberately unconstrained
    so that a bad edit can be represented and reported by the validator.
    """

    part_id: str
    product_code: str = ""
    product_name: str = ""
    original_price: float
    quantity: int
    markup_type: MarkupType = MarkupType.PERCENTAGE
    markup_value: float = 0
    final_price: float
    total_price: float

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def compute_prices_if_missing(cls, data: Any) -> Any:
        """Derive final_price and total_price from the pricing inputs if not provided."""
        if not isinstance(data, dict):
            return data
        if data.get("final_price") is not None and data.get("total_price") is not None:
            return data
        try:
            final_price = data.get("final_price")
            if final_price is None:
                final_price = round(compute_final_price(
                    float(data["original_price"]),
                    MarkupType(data.get("markup_type", MarkupType.PERCENTAGE)),
                    float(data.get("markup_value", 0)),
                ), 2)
            total_price = data.get("total_price")
            if total_price is None:
                total_price = round(float(final_price) * int(data["quantity"]), 2)
        except (KeyError, TypeError, ValueError):
            # Field validation reports the bad input
            return data
        return {**data, "final_price": final_price, "total_price": total_price}

    @classmethod
    def priced(
        cls,
        part_id: str,
        original_price: float,
        quantity: int,
        markup_type: MarkupType = MarkupType.PERCENTAGE,
        markup_value: float = 0,
        product_code: str = "",
        product_name: str = "",
    ) -> "LineItem":
        """Build a line with final_price and total_price computed."""
        final_price = round(compute_final_price(original_price, markup_type, markup_value), 2)
        return cls(
            part_id=part_id,
            product_code=product_code,
            product_name=product_name,
            original_price=original_price,
            quantity=quantity,
            markup_type=markup_type,
            markup_value=markup_value,
            final_price=final_price,
            total_price=round(final_price * quantity, 2),
        )

    def repriced(self) -> "LineItem":
        """Copy with final_price and total_price recomputed from the inputs."""
        return LineItem.priced(
            part_id=self.part_id,
            original_price=self.original_price,
            quantity=self.quantity,
            markup_type=self.markup_type,
            markup_value=self.markup_value,
            product_code=self.product_code,
            product_name=self.product_name,
        )

    def with_quantity(self, quantity: int) -> "LineItem":
        """Copy with a new quantity and recomputed totals."""
        return self.model_copy(update={"quantity": quantity}).repriced()

    def with_markup(self, markup_type: MarkupType, markup_value: float) -> "LineItem":
        """Copy with a new markup and recomputed totals."""
        return self.model_copy(
            update={"markup_type": markup_type, "markup_value": markup_value}
        ).repriced()
