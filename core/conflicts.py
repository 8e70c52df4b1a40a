"""
Conflict detection and resolution between a local working copy and the
latest remote invoice.

Detection is three-way when the session's base snapshot is known: a side
"changed" something when it differs from the base. Without a base it falls
back to a two-way comparison that also reports the version bump itself.

All functions here are pure; nothing reads or writes the store.
"""

import logging
from typing import Any, Mapping

from core.config import EditConfig
from core.errors import UnsupportedStrategyError
from core.models import (
    CUSTOMER_FIELDS,
    Conflict,
    ConflictAnalysis,
    ConflictKind,
    CustomerInfo,
    FieldResolution,
    Invoice,
    LineItem,
    MarkupType,
    ResolutionChoice,
    ResolutionStrategy,
    SEVERITY_BY_KIND,
    Severity,
    StrategyId,
)
from core.reconciliation import quantities_by_part

logger = logging.getLogger(__name__)

_LOCAL_OR_REMOTE = (ResolutionChoice.USE_LOCAL, ResolutionChoice.USE_REMOTE)

# Kinds that rule out merging without a human decision
_BLOCKING_KINDS = frozenset({
    ConflictKind.QUANTITY_CONFLICT,
    ConflictKind.VERSION_CONFLICT,
    ConflictKind.INVOICE_DELETED,
})


def _lines_by_part(invoice: Invoice) -> dict[str, list[LineItem]]:
    lines: dict[str, list[LineItem]] = {}
    for item in invoice.items:
        lines.setdefault(item.part_id, []).append(item)
    return lines


def _display(value: Any) -> str:
    if value is None:
        return "(none)"
    if isinstance(value, float):
        return f"{value:.2f}"
    if value == "":
        return "(empty)"
    return str(value)


def _conflict(kind: ConflictKind, key: str, field: str, message: str, **kwargs: Any) -> Conflict:
    local = kwargs.get("local")
    remote = kwargs.get("remote")
    kwargs.setdefault("local_display", _display(local))
    kwargs.setdefault("remote_display", _display(remote))
    return Conflict(
        kind=kind,
        severity=SEVERITY_BY_KIND[kind],
        key=key,
        field=field,
        message=message,
        **kwargs,
    )


class ConflictResolver:
    """
    Classifies differences between local and remote invoices and builds
    resolved candidates.

    Usage:
        resolver = ConflictResolver(config)
        analysis = resolver.detect_conflicts(
            local, remote, expected_version=session.expected_version, base=session.original_invoice,
        )
        if analysis.auto_merge_eligible:
            merged = resolver.auto_merge(analysis, local, base=session.original_invoice)
    """

    def __init__(self, config: EditConfig | None = None):
        self.config = config or EditConfig()

    # =========================================================================
    # DETECTION
    # =========================================================================

    def detect_conflicts(
        self,
        local: Invoice,
        remote: Invoice | None,
        *,
        expected_version: int,
        base: Invoice | None = None,
    ) -> ConflictAnalysis:
        """
        Compare local against remote.

        Args:
            local: The working copy.
            remote: Latest stored invoice, None if it was deleted.
            expected_version: Version the working copy is based on.
            base: Snapshot the working copy started from. Enables three-way
                detection; without it the version bump is itself a conflict.
        """
        if remote is None:
            conflicts = [_conflict(
                ConflictKind.INVOICE_DELETED,
                key="deleted",
                field="invoice",
                message=f"Invoice {local.invoice_number} has been deleted by another user",
                recommended_action="reload",
                choices=(),
            )]
            return ConflictAnalysis(
                invoice_id=local.id,
                expected_version=expected_version,
                conflicts=conflicts,
            )

        conflicts: list[Conflict] = []

        if base is None and remote.version > expected_version:
            conflicts.append(_conflict(
                ConflictKind.VERSION_CONFLICT,
                key="version",
                field="version",
                message=f"Invoice was changed by another user (version {expected_version} "
                        f"is now {remote.version})",
                local=expected_version,
                remote=remote.version,
                recommended_action="reload",
                choices=(),
            ))

        conflicts.extend(self._item_conflicts(local, remote, base))
        conflicts.extend(self._header_conflicts(local, remote))

        analysis = ConflictAnalysis(
            invoice_id=local.id,
            expected_version=expected_version,
            remote_version=remote.version,
            remote=remote,
            conflicts=conflicts,
        )
        eligible = self.can_auto_merge(analysis)
        analysis = analysis.model_copy(update={
            "auto_merge_eligible": eligible,
            "strategies": self.strategies(analysis, eligible),
        })

        if conflicts:
            logger.info(
                "Detected %d conflicts on invoice %s (severity %s)",
                len(conflicts), local.id, analysis.severity.value,
            )
        return analysis

    def _item_conflicts(
        self, local: Invoice, remote: Invoice, base: Invoice | None
    ) -> list[Conflict]:
        conflicts = []
        local_qty = quantities_by_part(local.items)
        remote_qty = quantities_by_part(remote.items)
        base_qty = quantities_by_part(base.items) if base is not None else None
        local_lines = _lines_by_part(local)
        remote_lines = _lines_by_part(remote)
        base_lines = _lines_by_part(base) if base is not None else {}

        for part_id in [*local_qty, *(p for p in remote_qty if p not in local_qty)]:
            in_local = part_id in local_qty
            in_remote = part_id in remote_qty
            sample = (local_lines.get(part_id) or remote_lines[part_id])[0]
            name = sample.product_name or part_id

            if in_local and in_remote:
                lq, rq = local_qty[part_id], remote_qty[part_id]
                if base_qty is None:
                    both_changed = lq != rq
                else:
                    bq = base_qty.get(part_id, 0)
                    both_changed = lq != bq and rq != bq and lq != rq
                    if not both_changed and lq != rq:
                        # Both sides touched the part and quantities differ.
                        # Only a single-line part can carry the remote quantity
                        # onto the local price.
                        base_part = base_lines.get(part_id)
                        touched = (
                            local_lines[part_id] != base_part
                            and remote_lines[part_id] != base_part
                        )
                        single = len(local_lines[part_id]) == 1 and len(remote_lines[part_id]) == 1
                        both_changed = touched and not single
                if both_changed:
                    conflicts.append(_conflict(
                        ConflictKind.QUANTITY_CONFLICT,
                        key=f"quantity:{part_id}",
                        field="quantity",
                        message=f"Quantity of {name} was changed to {rq} by another user",
                        part_id=part_id,
                        part_name=name,
                        local=lq,
                        remote=rq,
                    ))

                lp = local_lines[part_id][0].final_price
                rp = remote_lines[part_id][0].final_price
                if abs(lp - rp) > self.config.price_tolerance:
                    conflicts.append(_conflict(
                        ConflictKind.PRICE_CONFLICT,
                        key=f"price:{part_id}",
                        field="final_price",
                        message=f"Price of {name} differs ({lp:.2f} local, {rp:.2f} remote)",
                        part_id=part_id,
                        part_name=name,
                        local=lp,
                        remote=rp,
                        recommended_action=ResolutionChoice.USE_REMOTE.value,
                    ))

            elif in_remote:
                if base_qty is None or part_id not in base_qty:
                    conflicts.append(_conflict(
                        ConflictKind.ITEM_ADDED_REMOTELY,
                        key=f"item_added:{part_id}",
                        field="items",
                        message=f"{name} was added by another user",
                        part_id=part_id,
                        part_name=name,
                        local=None,
                        remote=remote_qty[part_id],
                        recommended_action=ResolutionChoice.USE_REMOTE.value,
                        choices=_LOCAL_OR_REMOTE,
                    ))

            elif base_qty is None or part_id in base_qty:
                conflicts.append(_conflict(
                    ConflictKind.ITEM_REMOVED_REMOTELY,
                    key=f"item_removed:{part_id}",
                    field="items",
                    message=f"{name} was removed by another user",
                    part_id=part_id,
                    part_name=name,
                    local=local_qty[part_id],
                    remote=None,
                    recommended_action=ResolutionChoice.USE_REMOTE.value,
                    choices=_LOCAL_OR_REMOTE,
                ))

        return conflicts

    def _header_conflicts(self, local: Invoice, remote: Invoice) -> list[Conflict]:
        conflicts = []
        for name in CUSTOMER_FIELDS:
            lv = getattr(local.customer_info, name)
            rv = getattr(remote.customer_info, name)
            if lv != rv:
                conflicts.append(_conflict(
                    ConflictKind.CUSTOMER_INFO_CONFLICT,
                    key=f"customer_info.{name}",
                    field=f"customer_info.{name}",
                    message=f"Customer {name} differs from the saved invoice",
                    local=lv,
                    remote=rv,
                    recommended_action=ResolutionChoice.USE_LOCAL.value,
                ))

        if local.notes != remote.notes:
            conflicts.append(_conflict(
                ConflictKind.NOTES_CONFLICT,
                key="notes",
                field="notes",
                message="Notes differ from the saved invoice",
                local=local.notes,
                remote=remote.notes,
                recommended_action=ResolutionChoice.USE_LOCAL.value,
            ))
        return conflicts

    # =========================================================================
    # STRATEGIES
    # =========================================================================

    def can_auto_merge(self, analysis: ConflictAnalysis) -> bool:
        """All conflicts at most medium and none that need a human decision."""
        for conflict in analysis.conflicts:
            if conflict.kind in _BLOCKING_KINDS:
                return False
            if conflict.severity.rank > Severity.MEDIUM.rank:
                return False
        return True

    def can_force_overwrite(self, analysis: ConflictAnalysis) -> bool:
        """Overwriting is never allowed when stock-affecting quantities disagree."""
        return (
            self.config.allow_force_overwrite
            and not analysis.has_kind(ConflictKind.QUANTITY_CONFLICT)
            and not analysis.has_kind(ConflictKind.INVOICE_DELETED)
        )

    def strategies(
        self, analysis: ConflictAnalysis, eligible: bool | None = None
    ) -> list[ResolutionStrategy]:
        """Strategies offered for an analysis, in priority order."""
        if analysis.has_kind(ConflictKind.INVOICE_DELETED):
            return []

        if eligible is None:
            eligible = self.can_auto_merge(analysis)

        offered = [ResolutionStrategy(
            id=StrategyId.RELOAD,
            name="Reload",
            description="Discard your changes and continue from the latest saved invoice",
            risk=Severity.LOW,
            recommended=not eligible,
        )]
        if eligible:
            offered.append(ResolutionStrategy(
                id=StrategyId.AUTO_MERGE,
                name="Merge automatically",
                description="Combine your changes with the other user's changes",
                risk=Severity.LOW,
                recommended=True,
            ))
        if analysis.has_conflicts:
            offered.append(ResolutionStrategy(
                id=StrategyId.MANUAL_RESOLVE,
                name="Resolve manually",
                description="Choose which value to keep for each conflict",
                risk=Severity.MEDIUM,
            ))
        if self.can_force_overwrite(analysis):
            offered.append(ResolutionStrategy(
                id=StrategyId.FORCE_OVERWRITE,
                name="Overwrite",
                description="Keep your version and discard the other user's changes",
                risk=Severity.HIGH,
                requires_confirmation=True,
            ))
        return offered

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def auto_merge(
        self, analysis: ConflictAnalysis, local: Invoice, base: Invoice | None = None
    ) -> Invoice:
        """
        Merge local and remote.

        Per part: the local lines win when local changed them, otherwise the
        remote lines. When local changed only the pricing of a line whose
        quantity was changed remotely, the merged line keeps the local
        pricing with the remote quantity. Remote additions are included, local additions kept,
        lines removed remotely dropped. Header fields: remote when local left
        them untouched, else non-empty local, else remote.

        Raises:
            UnsupportedStrategyError: The analysis is not auto-mergeable.
        """
        if not self.can_auto_merge(analysis):
            raise UnsupportedStrategyError(
                StrategyId.AUTO_MERGE.value,
                "quantity, version or deletion conflicts need a manual decision",
            )
        remote = analysis.remote

        local_lines = _lines_by_part(local)
        remote_lines = _lines_by_part(remote)
        base_lines = _lines_by_part(base) if base is not None else None

        merged: list[LineItem] = []
        for part_id, lines in local_lines.items():
            if part_id in remote_lines:
                remote_part = remote_lines[part_id]
                if base_lines is not None and base_lines.get(part_id) == lines:
                    merged.extend(remote_part)
                elif self._remote_quantity_only(lines, remote_part, base_lines):
                    merged.append(lines[0].with_quantity(remote_part[0].quantity))
                else:
                    merged.extend(lines)
            elif base_lines is None or part_id not in base_lines:
                merged.extend(lines)

        for part_id, lines in remote_lines.items():
            if part_id in local_lines:
                continue
            if base_lines is None or part_id not in base_lines:
                merged.extend(lines)

        def pick(local_value: str, remote_value: str, base_value: str | None) -> str:
            if base_value is not None and local_value == base_value:
                return remote_value
            return local_value or remote_value

        customer = CustomerInfo(**{
            name: pick(
                getattr(local.customer_info, name),
                getattr(remote.customer_info, name),
                getattr(base.customer_info, name) if base is not None else None,
            )
            for name in CUSTOMER_FIELDS
        })
        notes = pick(local.notes, remote.notes, base.notes if base is not None else None)

        return self._candidate(remote, merged, customer, notes)

    @staticmethod
    def _remote_quantity_only(
        local_part: list[LineItem],
        remote_part: list[LineItem],
        base_lines: Mapping[str, list[LineItem]] | None,
    ) -> bool:
        """Single-line part whose quantity only the remote side changed."""
        if base_lines is None or len(local_part) != 1 or len(remote_part) != 1:
            return False
        base_qty = sum(item.quantity for item in base_lines.get(local_part[0].part_id, []))
        return local_part[0].quantity == base_qty and remote_part[0].quantity != base_qty

    def apply_resolutions(
        self,
        analysis: ConflictAnalysis,
        local: Invoice,
        choices: Mapping[str, FieldResolution | ResolutionChoice | str] | None = None,
    ) -> Invoice:
        """
        Build a candidate from per-conflict choices keyed by Conflict.key.

        Conflicts without a choice take their recommended action; quantity
        conflicts have none and must be answered explicitly.

        Raises:
            UnsupportedStrategyError: Missing or invalid choice.
        """
        if analysis.has_kind(ConflictKind.INVOICE_DELETED):
            raise UnsupportedStrategyError(
                StrategyId.MANUAL_RESOLVE.value, "the invoice has been deleted"
            )

        remote = analysis.remote
        choices = choices or {}
        unknown = set(choices) - {c.key for c in analysis.conflicts}
        if unknown:
            raise UnsupportedStrategyError(
                StrategyId.MANUAL_RESOLVE.value, f"unknown conflicts: {', '.join(sorted(unknown))}"
            )

        lines = _lines_by_part(local)
        remote_lines = _lines_by_part(remote)
        customer = local.customer_info.model_dump()
        notes = local.notes

        ordered = sorted(
            analysis.conflicts,
            key=lambda c: c.kind != ConflictKind.QUANTITY_CONFLICT,
        )
        for conflict in ordered:
            if conflict.kind == ConflictKind.VERSION_CONFLICT:
                continue
            resolution = self._resolution_for(conflict, choices.get(conflict.key))
            choice = resolution.choice

            if conflict.kind == ConflictKind.QUANTITY_CONFLICT:
                if choice == ResolutionChoice.USE_REMOTE:
                    lines[conflict.part_id] = list(remote_lines[conflict.part_id])
                elif choice == ResolutionChoice.CUSTOM:
                    quantity = self._custom_quantity(conflict, resolution.value)
                    lines[conflict.part_id] = [lines[conflict.part_id][0].with_quantity(quantity)]

            elif conflict.kind == ConflictKind.PRICE_CONFLICT:
                if choice == ResolutionChoice.USE_REMOTE:
                    source = remote_lines[conflict.part_id][0]
                    lines[conflict.part_id] = [
                        line.model_copy(update={
                            "original_price": source.original_price,
                            "markup_type": source.markup_type,
                            "markup_value": source.markup_value,
                        }).repriced()
                        for line in lines[conflict.part_id]
                    ]
                elif choice == ResolutionChoice.CUSTOM:
                    lines[conflict.part_id] = [
                        self._custom_price(conflict, line, resolution.value)
                        for line in lines[conflict.part_id]
                    ]

            elif conflict.kind == ConflictKind.ITEM_ADDED_REMOTELY:
                if choice == ResolutionChoice.USE_REMOTE:
                    lines[conflict.part_id] = list(remote_lines[conflict.part_id])

            elif conflict.kind == ConflictKind.ITEM_REMOVED_REMOTELY:
                if choice == ResolutionChoice.USE_REMOTE:
                    lines.pop(conflict.part_id, None)

            elif conflict.kind == ConflictKind.CUSTOMER_INFO_CONFLICT:
                name = conflict.field.split(".", 1)[1]
                customer[name] = self._text_choice(resolution, conflict)

            elif conflict.kind == ConflictKind.NOTES_CONFLICT:
                notes = self._text_choice(resolution, conflict)

        items = [line for part_lines in lines.values() for line in part_lines]
        return self._candidate(remote, items, CustomerInfo(**customer), notes)

    def force_overwrite(self, analysis: ConflictAnalysis, local: Invoice) -> Invoice:
        """
        Keep the local copy wholesale on top of the remote version.

        Raises:
            UnsupportedStrategyError: Quantities disagree, the invoice is gone,
                or overwriting is disabled.
        """
        if not self.can_force_overwrite(analysis):
            raise UnsupportedStrategyError(
                StrategyId.FORCE_OVERWRITE.value,
                "not permitted while quantities disagree or the invoice is deleted",
            )
        return self._candidate(analysis.remote, list(local.items), local.customer_info, local.notes)

    def _candidate(
        self, remote: Invoice, items: list[LineItem], customer: CustomerInfo, notes: str
    ) -> Invoice:
        return remote.model_copy(update={
            "items": tuple(items),
            "customer_info": customer,
            "notes": notes,
            "version": remote.version + 1,
        }).with_totals()

    def _resolution_for(
        self, conflict: Conflict, given: FieldResolution | ResolutionChoice | str | None
    ) -> FieldResolution:
        if given is None:
            if conflict.recommended_action not in {c.value for c in _LOCAL_OR_REMOTE}:
                raise UnsupportedStrategyError(
                    StrategyId.MANUAL_RESOLVE.value,
                    f"conflict '{conflict.key}' needs an explicit choice",
                )
            return FieldResolution(choice=ResolutionChoice(conflict.recommended_action))

        if isinstance(given, FieldResolution):
            resolution = given
        else:
            try:
                resolution = FieldResolution(choice=ResolutionChoice(given))
            except ValueError:
                raise UnsupportedStrategyError(
                    StrategyId.MANUAL_RESOLVE.value, f"unknown choice '{given}'"
                )

        if resolution.choice not in conflict.choices:
            raise UnsupportedStrategyError(
                StrategyId.MANUAL_RESOLVE.value,
                f"'{resolution.choice.value}' is not available for '{conflict.key}'",
            )
        return resolution

    def _custom_quantity(self, conflict: Conflict, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise UnsupportedStrategyError(
                StrategyId.MANUAL_RESOLVE.value,
                f"custom quantity for '{conflict.key}' must be a positive integer",
            )
        return value

    def _custom_price(self, conflict: Conflict, line: LineItem, value: Any) -> LineItem:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < line.original_price:
            raise UnsupportedStrategyError(
                StrategyId.MANUAL_RESOLVE.value,
                f"custom price for '{conflict.key}' must be at least the original price",
            )
        return line.with_markup(MarkupType.FIXED, round(value - line.original_price, 2))

    def _text_choice(self, resolution: FieldResolution, conflict: Conflict) -> str:
        if resolution.choice == ResolutionChoice.USE_LOCAL:
            return conflict.local
        if resolution.choice == ResolutionChoice.USE_REMOTE:
            return conflict.remote
        return "" if resolution.value is None else str(resolution.value)
