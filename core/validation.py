"""
Invoice edit validation.

Pure, synchronous and deterministic: the same invoice, parts snapshot and
clock always give the same result. Validation never raises; every finding is
a typed ValidationIssue.
"""

from datetime import datetime
from typing import Mapping

from core.config import EditConfig
from core.models import (
    EditSession,
    Invoice,
    IssueKind,
    LineItem,
    MarkupType,
    Part,
    ValidationIssue,
    ValidationResult,
    compute_final_price,
)
from utils.timezone import minutes_since, now_utc, to_utc


class InvoiceEditValidator:
    """
    Validates an in-progress invoice against a parts snapshot.

    Usage:
        validator = InvoiceEditValidator(config)
        result = validator.validate_invoice(invoice, parts)
        if not result.ok:
            for issue in result.errors:
                print(issue.kind, issue.message)
    """

    def __init__(self, config: EditConfig | None = None):
        self.config = config or EditConfig()

    def validate_invoice(self, invoice: Invoice, parts: Mapping[str, Part]) -> ValidationResult:
        """Structural, per-line, aggregate and markup checks."""
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        if not invoice.id:
            errors.append(ValidationIssue(kind=IssueKind.INVALID_INVOICE, message="Invoice has no id"))
        if not invoice.invoice_number:
            errors.append(ValidationIssue(
                kind=IssueKind.INVALID_INVOICE, message="Invoice has no invoice number",
            ))
        if not invoice.items:
            errors.append(ValidationIssue(
                kind=IssueKind.INVALID_INVOICE, message="Invoice must have at least one line item",
            ))

        for index, item in enumerate(invoice.items):
            line_errors, line_warnings = self.validate_line(item, index, parts)
            errors.extend(line_errors)
            warnings.extend(line_warnings)

        errors.extend(self._check_totals(invoice))
        warnings.extend(self._check_duplicates(invoice))

        return ValidationResult(errors=errors, warnings=warnings)

    def validate_line(
        self, item: LineItem, index: int, parts: Mapping[str, Part]
    ) -> tuple[list[ValidationIssue], list[ValidationIssue]]:
        """Errors and warnings for a single line."""
        errors: list[ValidationIssue] = []
        label = item.product_name or item.part_id
        context = {"line": index}

        if item.part_id not in parts:
            errors.append(ValidationIssue(
                kind=IssueKind.PART_NOT_FOUND,
                message=f"Part {item.part_id} no longer exists",
                part_id=item.part_id,
                context=context,
            ))

        if item.quantity < 1:
            errors.append(ValidationIssue(
                kind=IssueKind.INVALID_QUANTITY,
                message=f"Quantity for {label} must be at least 1",
                part_id=item.part_id,
                context={**context, "quantity": item.quantity},
            ))

        errors.extend(self.validate_pricing(item, index))
        warnings = self._check_markup(item, index)
        return errors, warnings

    def validate_pricing(self, item: LineItem, index: int = 0) -> list[ValidationIssue]:
        """Price ranges and final/total arithmetic for one line."""
        errors: list[ValidationIssue] = []
        label = item.product_name or item.part_id
        tolerance = self.config.price_tolerance

        def invalid(message: str, **extra) -> ValidationIssue:
            return ValidationIssue(
                kind=IssueKind.INVALID_PRICE,
                message=message,
                part_id=item.part_id,
                context={"line": index, **extra},
            )

        if item.original_price <= 0:
            errors.append(invalid(f"Original price for {label} must be positive",
                                  original_price=item.original_price))
        if item.markup_value < 0:
            errors.append(invalid(f"Markup for {label} cannot be negative",
                                  markup_value=item.markup_value))
        if (
            item.markup_type == MarkupType.PERCENTAGE
            and item.markup_value > self.config.max_percentage_markup
        ):
            errors.append(invalid(
                f"Markup for {label} exceeds {self.config.max_percentage_markup:g}%",
                markup_value=item.markup_value,
            ))

        expected_final = compute_final_price(item.original_price, item.markup_type, item.markup_value)
        if abs(expected_final - item.final_price) > tolerance:
            errors.append(invalid(
                f"Final price for {label} does not match its markup",
                expected=round(expected_final, 2),
                actual=item.final_price,
            ))

        expected_total = item.final_price * item.quantity
        if abs(expected_total - item.total_price) > tolerance:
            errors.append(invalid(
                f"Line total for {label} does not match price times quantity",
                expected=round(expected_total, 2),
                actual=item.total_price,
            ))

        return errors

    def validate_editable(self, invoice: Invoice, now: datetime | None = None) -> ValidationResult:
        """Warnings about editing old or frequently edited invoices."""
        warnings: list[ValidationIssue] = []
        current = now or now_utc()

        age_days = (to_utc(current) - to_utc(invoice.created_at)).days
        if age_days > self.config.old_invoice_days:
            warnings.append(ValidationIssue(
                kind=IssueKind.OLD_INVOICE,
                message=f"Invoice is {age_days} days old",
                context={"age_days": age_days},
            ))

        if invoice.edit_count > self.config.multiple_edits_warning:
            warnings.append(ValidationIssue(
                kind=IssueKind.MULTIPLE_EDITS,
                message=f"Invoice has been edited {invoice.edit_count} times",
                context={"edit_count": invoice.edit_count},
            ))

        return ValidationResult(warnings=warnings)

    def validate_session(self, session: EditSession, now: datetime | None = None) -> ValidationResult:
        """Full validation of a session's working copy, including staleness."""
        current = now or now_utc()
        result = self.validate_invoice(session.current_invoice, session.parts)
        result = result.merged(self.validate_editable(session.original_invoice, current))

        age = minutes_since(session.started_at, current)
        if age > self.config.stale_session_minutes:
            result = result.merged(ValidationResult(warnings=[ValidationIssue(
                kind=IssueKind.STALE_SESSION,
                message=f"Edit session has been open for {int(age)} minutes; "
                        "the invoice may have changed",
                context={"minutes": int(age)},
            )]))

        return result

    def _check_totals(self, invoice: Invoice) -> list[ValidationIssue]:
        errors = []
        tolerance = self.config.price_tolerance
        expected = sum(item.total_price for item in invoice.items)

        if abs(expected - invoice.subtotal) > tolerance:
            errors.append(ValidationIssue(
                kind=IssueKind.INVALID_INVOICE,
                message="Subtotal does not match the sum of line totals",
                context={"expected": round(expected, 2), "actual": invoice.subtotal},
            ))
        if abs(invoice.subtotal - invoice.total_amount) > tolerance:
            errors.append(ValidationIssue(
                kind=IssueKind.INVALID_INVOICE,
                message="Total amount does not match subtotal",
                context={"expected": invoice.subtotal, "actual": invoice.total_amount},
            ))
        return errors

    def _check_duplicates(self, invoice: Invoice) -> list[ValidationIssue]:
        counts: dict[str, int] = {}
        for item in invoice.items:
            counts[item.part_id] = counts.get(item.part_id, 0) + 1

        return [
            ValidationIssue(
                kind=IssueKind.DUPLICATE_PARTS,
                message=f"Part {part_id} appears on {count} lines",
                part_id=part_id,
                context={"lines": count},
            )
            for part_id, count in counts.items()
            if count > 1
        ]

    def _check_markup(self, item: LineItem, index: int) -> list[ValidationIssue]:
        label = item.product_name or item.part_id

        if item.markup_type == MarkupType.PERCENTAGE:
            high = self.config.high_percentage_markup
            if high < item.markup_value <= self.config.max_percentage_markup:
                return [ValidationIssue(
                    kind=IssueKind.HIGH_MARKUP,
                    message=f"Markup of {item.markup_value:g}% on {label} is unusually high",
                    part_id=item.part_id,
                    context={"line": index, "markup_value": item.markup_value},
                )]
            return []

        limit = item.original_price * self.config.high_fixed_markup_ratio
        if item.original_price > 0 and item.markup_value > limit:
            return [ValidationIssue(
                kind=IssueKind.HIGH_MARKUP,
                message=f"Fixed markup on {label} exceeds {self.config.high_fixed_markup_ratio:g}x "
                        "the original price",
                part_id=item.part_id,
                context={"line": index, "markup_value": item.markup_value},
            )]
        return []
