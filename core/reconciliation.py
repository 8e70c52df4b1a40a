"""
Stock reconciliation.

Turns an edit (original items -> edited items) into the minimal set of
per-part stock changes and checks them against a parts snapshot. Quantities
are summed per part_id, so duplicate lines for the same part reconcile as one.

Sign convention: delta = original - edited. Negative allocates stock to the
invoice, positive releases it back.
"""

from typing import Any, Iterable, Mapping

from core.models import (
    Invoice,
    IssueKind,
    LineItem,
    Part,
    StockAnalysis,
    StockChange,
    StockChangeReason,
    ValidationIssue,
)

DEFAULT_LOW_STOCK_THRESHOLD = 10


def quantities_by_part(items: Iterable[LineItem]) -> dict[str, int]:
    """Summed quantity per part_id, in first-appearance order."""
    totals: dict[str, int] = {}
    for item in items:
        totals[item.part_id] = totals.get(item.part_id, 0) + item.quantity
    return totals


def _names(items: Iterable[LineItem], parts: Mapping[str, Part] | None) -> dict[str, str]:
    names = {}
    for item in items:
        names.setdefault(item.part_id, item.product_name)
    for part_id, part in (parts or {}).items():
        if part.name:
            names[part_id] = part.name
    return names


def compute_stock_changes(
    original_items: Iterable[LineItem],
    edited_items: Iterable[LineItem],
    parts: Mapping[str, Part] | None = None,
) -> list[StockChange]:
    """
    Net stock change per part for an edit.

    Parts whose summed quantity is unchanged are omitted. Order is stable:
    parts from the original items first, then parts only in the edit.
    """
    original_items = list(original_items)
    edited_items = list(edited_items)
    orig = quantities_by_part(original_items)
    edit = quantities_by_part(edited_items)
    names = _names([*original_items, *edited_items], parts)

    changes = []
    for part_id in [*orig, *(p for p in edit if p not in orig)]:
        before = orig.get(part_id, 0)
        after = edit.get(part_id, 0)
        delta = before - after
        if delta == 0:
            continue

        if part_id not in orig:
            reason = StockChangeReason.ADDED
        elif part_id not in edit:
            reason = StockChangeReason.REMOVED
        else:
            reason = StockChangeReason.MODIFIED

        changes.append(StockChange(
            part_id=part_id,
            part_name=names.get(part_id, ""),
            delta=delta,
            reason=reason,
            original_quantity=before,
            new_quantity=after,
        ))
    return changes


def release_all(invoice: Invoice, parts: Mapping[str, Part] | None = None) -> list[StockChange]:
    """Changes that return every allocated unit of an invoice to stock."""
    names = _names(invoice.items, parts)
    return [
        StockChange(
            part_id=part_id,
            part_name=names.get(part_id, ""),
            delta=quantity,
            reason=StockChangeReason.INVOICE_DELETED,
            original_quantity=quantity,
            new_quantity=0,
        )
        for part_id, quantity in quantities_by_part(invoice.items).items()
    ]


def allocate_all(items: Iterable[LineItem], parts: Mapping[str, Part] | None = None) -> list[StockChange]:
    """Changes that allocate every unit of a new invoice's items."""
    items = list(items)
    names = _names(items, parts)
    return [
        StockChange(
            part_id=part_id,
            part_name=names.get(part_id, ""),
            delta=-quantity,
            reason=StockChangeReason.INVOICE_CREATED,
            original_quantity=0,
            new_quantity=quantity,
        )
        for part_id, quantity in quantities_by_part(items).items()
    ]


def shortage(change: StockChange, available: int) -> dict[str, Any]:
    """Shortage details for an allocation that stock can't cover."""
    required = -change.delta
    return {
        "part_id": change.part_id,
        "part_name": change.part_name,
        "required": required,
        "available": available,
        "shortage": required - available,
    }


def check_availability(
    changes: Iterable[StockChange],
    parts: Mapping[str, Part],
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
) -> tuple[list[ValidationIssue], list[ValidationIssue]]:
    """
    Feasibility of changes against a parts snapshot.

    Returns (errors, warnings). A part's own low_stock_threshold overrides
    the default.
    """
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    for change in changes:
        part = parts.get(change.part_id)
        if part is None:
            errors.append(ValidationIssue(
                kind=IssueKind.PART_NOT_FOUND,
                message=f"Part {change.part_id} no longer exists",
                part_id=change.part_id,
            ))
            continue

        if change.delta >= 0:
            continue

        remaining = part.stock + change.delta
        if remaining < 0:
            details = shortage(change, part.stock)
            errors.append(ValidationIssue(
                kind=IssueKind.INSUFFICIENT_STOCK,
                message=f"Insufficient stock for {change.part_name or change.part_id}: "
                        f"need {details['required']}, have {details['available']}",
                part_id=change.part_id,
                context=details,
            ))
            continue

        threshold = part.threshold(low_stock_threshold)
        if remaining <= threshold:
            warnings.append(ValidationIssue(
                kind=IssueKind.LOW_STOCK,
                message=f"{change.part_name or change.part_id} will have {remaining} left in stock",
                part_id=change.part_id,
                context={"remaining": remaining, "threshold": threshold},
            ))

    return errors, warnings


def reconcile(
    original_items: Iterable[LineItem],
    edited_items: Iterable[LineItem],
    parts: Mapping[str, Part],
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
) -> StockAnalysis:
    """Stock changes for an edit and their feasibility against parts."""
    changes = compute_stock_changes(original_items, edited_items, parts)
    errors, warnings = check_availability(changes, parts, low_stock_threshold)
    return StockAnalysis(changes=changes, errors=errors, warnings=warnings)
