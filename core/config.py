"""Invoice edit configuration."""

from pydantic import BaseModel, Field


class EditConfig(BaseModel):
    """
    Invoice edit configuration.

    Durations are in their natural units (milliseconds for the debounce,
    minutes for sessions, days for invoice age).
    """

    # Session behaviour
    validation_debounce_ms: int = Field(
        default=200,
        description="Delay before a queued validation run fires after the last change",
        ge=0,
        le=2000,
    )
    stale_session_minutes: int = Field(
        default=30,
        description="Sessions open longer than this get a staleness warning",
        ge=1,
    )
    audit_edit_changes: bool = Field(
        default=True,
        description="Write an edit_change audit entry for every patch",
    )

    # Stock
    low_stock_threshold: int = Field(
        default=10,
        description="Warn when a part would end at or below this stock level",
        ge=0,
    )

    # Pricing
    price_tolerance: float = Field(
        default=0.01,
        description="Allowed absolute drift when recomputing prices and totals",
        gt=0,
    )
    max_percentage_markup: float = Field(
        default=1000,
        description="Percentage markup above this is an error",
        gt=0,
    )
    high_percentage_markup: float = Field(
        default=200,
        description="Percentage markup above this is a warning",
        gt=0,
    )
    high_fixed_markup_ratio: float = Field(
        default=2.0,
        description="Fixed markup above original_price times this is a warning",
        gt=0,
    )

    # Editability
    old_invoice_days: int = Field(
        default=30,
        description="Warn when editing invoices older than this",
        ge=1,
    )
    multiple_edits_warning: int = Field(
        default=5,
        description="Warn when an invoice has been edited more than this many times",
        ge=1,
    )

    # Store
    transaction_max_attempts: int = Field(
        default=5,
        description="Attempts before a contended transaction reports retry_exhausted",
        ge=1,
        le=20,
    )
    batch_write_limit: int = Field(
        default=500,
        description="Maximum operations in a single batch write",
        ge=1,
        le=10000,
    )

    # Conflicts
    allow_force_overwrite: bool = Field(
        default=True,
        description="Offer force_overwrite when no quantity conflict exists",
    )
