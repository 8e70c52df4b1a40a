"""
Tests for EditSessionManager.

Uses a real DocumentStore over fakeredis. Two users are simulated with
separate sessions on the same manager.
"""

from datetime import timedelta

import fakeredis
import pytest

from core.audit import AuditAction
from core.config import EditConfig
from core.errors import (
    ErrorKind,
    FatalStoreError,
    InvoiceNotFoundError,
    RetryExhaustedError,
    SessionEndedError,
    UnsupportedStrategyError,
    VersionConflictError,
)
from core.models import (
    ConflictKind,
    EditState,
    IssueKind,
    MarkupType,
    ResolutionChoice,
    StrategyId,
)
from core.services.edit_session_service import EditSessionManager, build_edit_manager
from utils.user_context import actor_context


@pytest.fixture
def states(event_bus):
    """Every state a session enters, in order."""
    seen = []
    event_bus.subscribe("SessionStateChanged", lambda e: seen.append(e.state))
    return seen


def _open_as(manager, actor, invoice_id="inv-1"):
    with actor_context(actor):
        return manager.start_edit(invoice_id)


def _set_quantity(manager, session, part_id, quantity):
    items = [
        item.with_quantity(quantity) if item.part_id == part_id else item
        for item in session.current_invoice.items
    ]
    return manager.update_edit(session, {"items": items})


def _actions(audit, invoice_id="inv-1"):
    return [e.action for e in audit.history_for_invoice(invoice_id)]


# =============================================================================
# START AND UPDATE
# =============================================================================


class TestStartEdit:
    """Opening a session loads the invoice and a parts snapshot."""

    def test_opens_in_editing(self, manager, seed_part, seed_invoice, as_test_user):
        seed_part("A", 10)
        invoice = seed_invoice([("A", 2)])

        session = manager.start_edit("inv-1")

        assert session.state == EditState.EDITING
        assert session.actor == as_test_user
        assert session.expected_version == 1
        assert session.original_invoice == invoice
        assert session.current_invoice == invoice
        assert session.parts["A"].stock == 10
        assert session.validation.ok
        assert manager.get_session(session.session_id) is session

    def test_records_edit_start(self, manager, audit, seed_part, seed_invoice, as_test_user):
        seed_part("A", 10)
        seed_invoice([("A", 2)])

        manager.start_edit("inv-1")

        assert _actions(audit) == [AuditAction.EDIT_START]

    def test_missing_invoice(self, manager):
        with pytest.raises(InvoiceNotFoundError):
            manager.start_edit("nope")

        assert manager.active_sessions() == []

    def test_parts_snapshot_is_read_only(self, manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])

        session = manager.start_edit("inv-1")

        with pytest.raises(TypeError):
            session.parts["B"] = session.parts["A"]

    def test_missing_part_is_reported_not_raised(self, manager, seed_invoice):
        seed_invoice([("Z", 1)])

        session = manager.start_edit("inv-1")

        assert session.state == EditState.EDITING
        assert IssueKind.PART_NOT_FOUND in session.validation.error_kinds()


class TestUpdateEdit:
    """Shallow patches to the working copy."""

    @pytest.fixture
    def session(self, manager, seed_part, seed_invoice, as_test_user):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        return manager.start_edit("inv-1")

    def test_items_are_repriced(self, manager, session):
        _set_quantity(manager, session, "A", 3)

        assert session.current_invoice.items[0].total_price == 150
        assert session.current_invoice.subtotal == 150
        assert session.original_invoice.subtotal == 100
        assert session.dirty
        assert session.change_count == 1

    def test_partial_customer_info(self, manager, session):
        manager.update_edit(session, {"customer_info": {"name": "Dana R. Reyes"}})

        info = session.current_invoice.customer_info
        assert info.name == "Dana R. Reyes"
        assert info.contact == "555-0100"

    def test_notes(self, manager, session):
        manager.update_edit(session, {"notes": "Customer supplied own oil"})

        assert session.current_invoice.notes == "Customer supplied own oil"

    def test_non_editable_field(self, manager, session):
        with pytest.raises(ValueError, match="not editable"):
            manager.update_edit(session, {"version": 9})

        assert not session.dirty

    def test_validation_runs_after_change(self, manager, session):
        _set_quantity(manager, session, "A", 13)

        assert IssueKind.INSUFFICIENT_STOCK in session.validation.error_kinds()
        assert session.stock_analysis.delta_for("A") == -11
        assert session.state == EditState.EDITING

    def test_new_part_joins_snapshot(self, manager, session, seed_part):
        seed_part("C", 5, name="Wiper blade")
        items = [*session.current_invoice.items, {
            "part_id": "C", "original_price": 20, "quantity": 1,
        }]

        manager.update_edit(session, {"items": items})

        line = session.current_invoice.items[1]
        assert line.product_name == "Wiper blade"
        assert line.product_code == "P-C"
        assert line.total_price == 20
        assert session.parts["C"].stock == 5
        assert session.current_invoice.subtotal == 120

    def test_edit_change_audit(self, manager, session, audit):
        manager.update_edit(session, {"notes": "urgent"})

        entry = next(e for e in audit.history_for_invoice("inv-1") if e.action == AuditAction.EDIT_CHANGE)
        assert entry.context["fields"] == ["notes"]
        assert entry.context["changes"]["notes"] == {"old": "", "new": "urgent"}

    def test_edit_change_audit_can_be_disabled(self, store, audit, event_bus, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        manager = EditSessionManager(store, audit, event_bus, EditConfig(
            validation_debounce_ms=0, audit_edit_changes=False,
        ))
        session = manager.start_edit("inv-1")

        manager.update_edit(session, {"notes": "urgent"})

        assert AuditAction.EDIT_CHANGE not in _actions(audit)
        manager.close()


class TestDebouncedValidation:
    """Validation coalesces behind the debounce delay."""

    @pytest.fixture
    def slow_manager(self, store, audit, event_bus):
        manager = EditSessionManager(store, audit, event_bus, EditConfig(validation_debounce_ms=2000))
        yield manager
        manager.close()

    def test_flush_runs_latest_validation(self, slow_manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = slow_manager.start_edit("inv-1")

        _set_quantity(slow_manager, session, "A", 20)
        _set_quantity(slow_manager, session, "A", 3)

        assert session.validation.ok  # Still the result from start
        assert slow_manager.flush(session) is True
        assert session.stock_analysis.delta_for("A") == -1
        assert slow_manager.flush(session) is False

    def test_validate_edit_supersedes_queued_run(self, slow_manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = slow_manager.start_edit("inv-1")
        _set_quantity(slow_manager, session, "A", 20)

        result = slow_manager.validate_edit(session)

        assert IssueKind.INSUFFICIENT_STOCK in result.error_kinds()
        assert slow_manager.flush(session) is False


class TestValidateEdit:

    def test_stale_session_warning(self, manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        session.started_at = session.started_at - timedelta(minutes=45)

        result = manager.validate_edit(session)

        assert IssueKind.STALE_SESSION in result.warning_kinds()

    def test_low_stock_warning(self, manager, seed_part, seed_invoice):
        seed_part("A", 12)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        _set_quantity(manager, session, "A", 5)

        result = manager.validate_edit(session)

        assert result.ok
        assert IssueKind.LOW_STOCK in result.warning_kinds()


# =============================================================================
# SAVE
# =============================================================================


class TestSaveEdit:
    """End-to-end saves against the store."""

    def test_simple_quantity_increase(self, manager, seed_part, seed_invoice, store, stock, audit, as_test_user):
        """S1: qty 2 -> 3 commits v2 and allocates one unit."""
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        _set_quantity(manager, session, "A", 3)

        result = manager.save_edit(session)

        assert result.ok
        assert result.new_version == 2
        saved = store.get_doc("invoices/inv-1")
        assert saved["items"][0]["total_price"] == 150
        assert saved["subtotal"] == 150
        assert stock(store, "A") == 9
        committed = [e for e in audit.history_for_invoice("inv-1") if e.action == AuditAction.SAVE_COMMITTED]
        assert len(committed) == 1
        assert [(c.part_id, c.delta) for c in committed[0].stock_changes] == [("A", -1)]

    def test_success_ends_session(self, manager, seed_part, seed_invoice, states):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        manager.update_edit(session, {"notes": "done"})

        manager.save_edit(session)

        assert session.state == EditState.DONE
        assert session.ended
        assert manager.get_session(session.session_id) is None
        assert states[-3:] == [EditState.PRE_CHECK, EditState.SAVING, EditState.DONE]

    def test_publishes_commit_event(self, manager, event_bus, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        events = []
        event_bus.subscribe("InvoiceEditCommitted", events.append)
        session = manager.start_edit("inv-1")
        _set_quantity(manager, session, "A", 1)

        manager.save_edit(session)

        assert len(events) == 1
        assert events[0].previous_version == 1
        assert events[0].invoice.version == 2
        assert events[0].session_id == session.session_id

    def test_insufficient_stock_rejected(self, manager, seed_part, seed_invoice, store, stock):
        """S2: qty 2 -> 5 with stock 2 fails without writing."""
        seed_part("A", 2, name="Brake pad")
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        _set_quantity(manager, session, "A", 5)

        result = manager.save_edit(session)

        assert result.status == "error"
        assert result.error.kind == ErrorKind.INSUFFICIENT_STOCK
        assert result.error.context["shortages"] == [{
            "part_id": "A", "part_name": "Brake pad", "required": 3, "available": 2, "shortage": 1,
        }]
        assert stock(store, "A") == 2
        assert store.get_doc("invoices/inv-1")["version"] == 1
        assert session.state == EditState.ERROR
        assert session.is_active

    def test_retry_after_insufficient_stock(self, manager, seed_part, seed_invoice, store, stock):
        seed_part("A", 2)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        _set_quantity(manager, session, "A", 5)
        manager.save_edit(session)

        _set_quantity(manager, session, "A", 4)
        result = manager.save_edit(session)

        assert session.state == EditState.DONE
        assert result.ok
        assert stock(store, "A") == 0

    def test_stale_snapshot_sees_real_stock_after_failure(self, manager, seed_part, seed_invoice, store):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        store.put_doc("parts/A", {"name": "Part A", "stock": 1})
        _set_quantity(manager, session, "A", 5)

        result = manager.save_edit(session)

        assert result.error.kind == ErrorKind.INSUFFICIENT_STOCK
        assert session.parts["A"].stock == 1
        assert IssueKind.INSUFFICIENT_STOCK in session.validation.error_kinds()

    def test_validation_errors_block_save(self, manager, seed_part, seed_invoice, store, audit):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        _set_quantity(manager, session, "A", 0)

        result = manager.save_edit(session)

        assert result.error.kind == ErrorKind.INVALID_QUANTITY
        assert not result.validation.ok
        assert session.state == EditState.EDITING
        assert store.get_doc("invoices/inv-1")["version"] == 1
        assert AuditAction.VALIDATION_FAILED in _actions(audit)

    def test_missing_part_puts_session_in_error(self, manager, seed_part, seed_invoice, line_factory):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        manager.update_edit(session, {"items": [*session.current_invoice.items, line_factory("Z", 1)]})

        result = manager.save_edit(session)

        assert result.error.kind == ErrorKind.PART_NOT_FOUND
        assert session.state == EditState.ERROR
        assert session.is_active

    def test_versions_are_monotone(self, manager, seed_part, seed_invoice, store):
        seed_part("A", 10)
        seed_invoice([("A", 2)])

        versions = []
        for notes in ("first", "second", "third"):
            session = manager.start_edit("inv-1")
            manager.update_edit(session, {"notes": notes})
            versions.append(manager.save_edit(session).new_version)

        assert versions == [2, 3, 4]
        assert store.get_doc("invoices/inv-1")["edit_count"] == 3

    def test_ended_session_rejects_operations(self, manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        manager.save_edit(session)

        with pytest.raises(SessionEndedError):
            manager.update_edit(session, {"notes": "late"})
        with pytest.raises(SessionEndedError):
            manager.save_edit(session)
        with pytest.raises(SessionEndedError):
            manager.validate_edit(session)


class TestSaveFailures:
    """Store failures surface as typed results."""

    @pytest.fixture
    def session(self, manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        _set_quantity(manager, session, "A", 3)
        return session

    def test_retry_exhausted_keeps_session(self, manager, session, monkeypatch, audit):
        def exhausted(_session):
            raise RetryExhaustedError(5)

        monkeypatch.setattr(manager.transactions, "commit_edit", exhausted)

        result = manager.save_edit(session)

        assert result.error.kind == ErrorKind.RETRY_EXHAUSTED
        assert session.state == EditState.ERROR
        assert session.is_active
        assert AuditAction.SAVE_FAILED in _actions(audit)

    def test_retry_succeeds_after_transient_failure(self, manager, session, monkeypatch):
        real = manager.transactions.commit_edit
        monkeypatch.setattr(manager.transactions, "commit_edit", lambda s: (_ for _ in ()).throw(RetryExhaustedError(5)))
        manager.save_edit(session)

        monkeypatch.setattr(manager.transactions, "commit_edit", real)
        result = manager.save_edit(session)

        assert result.ok
        assert result.new_version == 2

    def test_fatal_store_error_ends_session(self, manager, session, monkeypatch):
        def denied(_session):
            raise FatalStoreError("Store authentication failed")

        monkeypatch.setattr(manager.transactions, "commit_edit", denied)

        result = manager.save_edit(session)

        assert result.error.kind == ErrorKind.FATAL_STORE_ERROR
        assert result.error.fatal
        assert session.ended

    def test_version_race_inside_transaction_rechecks(self, manager, session, monkeypatch):
        real = manager.transactions.commit_edit
        calls = []

        def racing(s):
            calls.append(1)
            if len(calls) == 1:
                raise VersionConflictError(s.invoice_id, s.expected_version, s.expected_version + 1)
            return real(s)

        monkeypatch.setattr(manager.transactions, "commit_edit", racing)

        result = manager.save_edit(session)

        assert result.ok
        assert len(calls) == 2


# =============================================================================
# CONCURRENT EDITS
# =============================================================================


class TestConcurrentEdits:
    """Two users on the same invoice."""

    def test_auto_merge_disjoint_changes(self, manager, seed_part, seed_invoice, store, audit):
        """S3: U2 edits notes, U1 edits the customer name, merge gives v3."""
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        u1 = _open_as(manager, "mechanic-1")
        u2 = _open_as(manager, "mechanic-2")

        manager.update_edit(u2, {"notes": "urgent"})
        assert manager.save_edit(u2).new_version == 2

        manager.update_edit(u1, {"customer_info": {"name": "Dana R. Reyes"}})
        result = manager.save_edit(u1)

        assert result.status == "conflict"
        analysis = result.conflict
        assert analysis.kinds() == {ConflictKind.NOTES_CONFLICT, ConflictKind.CUSTOMER_INFO_CONFLICT}
        assert analysis.auto_merge_eligible
        assert u1.state == EditState.CONFLICT
        assert AuditAction.CONFLICT_DETECTED in _actions(audit)

        manager.resolve_conflict(u1, StrategyId.AUTO_MERGE)
        assert u1.state == EditState.EDITING
        assert u1.current_invoice.version == 3

        saved = manager.save_edit(u1)

        assert saved.new_version == 3
        doc = store.get_doc("invoices/inv-1")
        assert doc["customer_info"]["name"] == "Dana R. Reyes"
        assert doc["notes"] == "urgent"
        assert AuditAction.CONFLICT_RESOLVED in _actions(audit)

    def test_quantity_conflict_needs_manual_resolution(self, manager, seed_part, seed_invoice, store, stock):
        """S4: local 5 vs remote 3; use_local commits against the remote base."""
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        u1 = _open_as(manager, "mechanic-1")
        u2 = _open_as(manager, "mechanic-2")

        _set_quantity(manager, u1, "A", 5)
        _set_quantity(manager, u2, "A", 3)
        manager.save_edit(u2)
        assert stock(store, "A") == 9

        result = manager.save_edit(u1)

        conflict = result.conflict.conflicts[0]
        assert result.conflict.kinds() == {ConflictKind.QUANTITY_CONFLICT}
        assert (conflict.local, conflict.remote) == (5, 3)
        assert not result.conflict.auto_merge_eligible
        assert StrategyId.FORCE_OVERWRITE not in result.conflict.strategy_ids()

        with pytest.raises(UnsupportedStrategyError):
            manager.resolve_conflict(u1, StrategyId.AUTO_MERGE)
        with pytest.raises(UnsupportedStrategyError):
            manager.resolve_conflict(u1, StrategyId.FORCE_OVERWRITE, confirm=True)

        manager.resolve_conflict(u1, StrategyId.MANUAL_RESOLVE, {"quantity:A": ResolutionChoice.USE_LOCAL})
        saved = manager.save_edit(u1)

        assert saved.new_version == 3
        assert store.get_doc("invoices/inv-1")["items"][0]["quantity"] == 5
        # Conservation across both commits: 10 - (5 - 2)
        assert stock(store, "A") == 7

    def test_auto_merge_keeps_remote_quantity_and_stock(self, manager, seed_part, seed_invoice, store, stock):
        """U2 saves qty 2 -> 3, U1 only changes A's markup; the merge keeps both."""
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        u1 = _open_as(manager, "mechanic-1")
        u2 = _open_as(manager, "mechanic-2")

        _set_quantity(manager, u2, "A", 3)
        manager.save_edit(u2)
        assert stock(store, "A") == 9

        items = [item.with_markup(MarkupType.PERCENTAGE, 10) for item in u1.current_invoice.items]
        manager.update_edit(u1, {"items": items})
        result = manager.save_edit(u1)

        assert result.conflict.kinds() == {ConflictKind.PRICE_CONFLICT}
        assert result.conflict.auto_merge_eligible

        manager.resolve_conflict(u1, StrategyId.AUTO_MERGE)
        saved = manager.save_edit(u1)

        assert saved.new_version == 3
        line = store.get_doc("invoices/inv-1")["items"][0]
        assert line["quantity"] == 3
        assert line["markup_value"] == 10
        assert stock(store, "A") == 9

    def test_manual_resolve_needs_quantity_choice(self, manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        u1 = _open_as(manager, "mechanic-1")
        u2 = _open_as(manager, "mechanic-2")
        _set_quantity(manager, u1, "A", 5)
        _set_quantity(manager, u2, "A", 3)
        manager.save_edit(u2)
        manager.save_edit(u1)

        with pytest.raises(UnsupportedStrategyError):
            manager.resolve_conflict(u1, StrategyId.MANUAL_RESOLVE, {})

        assert u1.state == EditState.CONFLICT

    def test_unrelated_remote_change_rebases_silently(self, manager, seed_part, seed_invoice, store, stock):
        seed_part("A", 10)
        seed_part("B", 5)
        seed_invoice([("A", 2), ("B", 1)])
        u1 = _open_as(manager, "mechanic-1")
        u2 = _open_as(manager, "mechanic-2")

        _set_quantity(manager, u2, "B", 2)
        manager.save_edit(u2)
        _set_quantity(manager, u1, "A", 3)

        result = manager.save_edit(u1)

        assert result.ok
        assert result.new_version == 3
        items = {i["part_id"]: i["quantity"] for i in store.get_doc("invoices/inv-1")["items"]}
        assert items == {"A": 3, "B": 2}
        assert stock(store, "A") == 9
        assert stock(store, "B") == 4

    def test_reload_discards_local_changes(self, manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        u1 = _open_as(manager, "mechanic-1")
        u2 = _open_as(manager, "mechanic-2")
        manager.update_edit(u2, {"notes": "urgent"})
        manager.save_edit(u2)
        manager.update_edit(u1, {"notes": "mine"})
        manager.save_edit(u1)

        manager.resolve_conflict(u1, "reload")

        assert u1.state == EditState.EDITING
        assert u1.expected_version == 2
        assert u1.current_invoice.notes == "urgent"
        assert not u1.dirty
        assert u1.conflict is None

    def test_force_overwrite_requires_confirmation(self, manager, seed_part, seed_invoice, store):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        u1 = _open_as(manager, "mechanic-1")
        u2 = _open_as(manager, "mechanic-2")
        manager.update_edit(u2, {"notes": "urgent"})
        manager.save_edit(u2)
        manager.update_edit(u1, {"notes": "mine"})
        manager.save_edit(u1)

        with pytest.raises(UnsupportedStrategyError, match="confirmation"):
            manager.resolve_conflict(u1, StrategyId.FORCE_OVERWRITE)

        manager.resolve_conflict(u1, StrategyId.FORCE_OVERWRITE, confirm=True)
        manager.save_edit(u1)

        assert store.get_doc("invoices/inv-1")["notes"] == "mine"

    def test_resolve_outside_conflict(self, manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")

        with pytest.raises(UnsupportedStrategyError, match="not in conflict"):
            manager.resolve_conflict(session, StrategyId.RELOAD)
        with pytest.raises(UnsupportedStrategyError, match="unknown strategy"):
            manager.resolve_conflict(session, "rewind")

    def test_save_in_conflict_returns_analysis(self, manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        u1 = _open_as(manager, "mechanic-1")
        u2 = _open_as(manager, "mechanic-2")
        manager.update_edit(u2, {"notes": "urgent"})
        manager.save_edit(u2)
        manager.update_edit(u1, {"notes": "mine"})
        first = manager.save_edit(u1)

        second = manager.save_edit(u1)

        assert second.status == "conflict"
        assert second.conflict == first.conflict

    def test_invoice_deleted_under_edit(self, manager, seed_part, seed_invoice, store, stock):
        """S6: save after another user deleted the invoice."""
        seed_part("A", 8)
        seed_invoice([("A", 2)])
        u1 = _open_as(manager, "mechanic-1")
        manager.update_edit(u1, {"notes": "late"})

        with actor_context("mechanic-2"):
            assert manager.delete_invoice("inv-1").ok

        result = manager.save_edit(u1)

        assert result.error.kind == ErrorKind.INVOICE_DELETED
        assert u1.state == EditState.ERROR
        assert u1.ended
        assert u1.conflict.kinds() == {ConflictKind.INVOICE_DELETED}
        assert store.get_doc("invoices/inv-1") is None
        assert stock(store, "A") == 10


class TestRemoteChanges:
    """Subscription feed into the session."""

    def test_remote_commit_surfaces_conflicts(self, manager, event_bus, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        u1 = _open_as(manager, "mechanic-1")
        u2 = _open_as(manager, "mechanic-2")
        events = []
        event_bus.subscribe("SessionStateChanged", events.append)
        manager.update_edit(u1, {"notes": "mine"})
        manager.update_edit(u2, {"notes": "urgent"})
        manager.save_edit(u2)
        events.clear()

        delivered = manager.poll_remote(u1)

        assert delivered >= 1
        assert u1.state == EditState.EDITING
        assert u1.conflict.kinds() == {ConflictKind.NOTES_CONFLICT}
        assert events[-1].session_id == u1.session_id
        assert events[-1].conflict is u1.conflict

    def test_remote_delete_surfaces_deletion(self, manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")

        manager.delete_invoice("inv-1")
        manager.poll_remote(session)

        assert session.conflict.kinds() == {ConflictKind.INVOICE_DELETED}

    def test_ended_session_ignores_changes(self, manager, seed_part, seed_invoice, store):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        manager.cancel_edit(session)

        store.put_doc("invoices/inv-1", {**store.get_doc("invoices/inv-1"), "version": 5})

        assert manager.poll_remote(session) == 0
        assert session.conflict is None


# =============================================================================
# CANCEL AND DELETE
# =============================================================================


class TestCancelEdit:

    def test_dirty_cancel_is_audited(self, manager, audit, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        manager.update_edit(session, {"notes": "scratch"})

        manager.cancel_edit(session)

        assert session.state == EditState.CANCELLED
        assert session.ended
        assert AuditAction.CANCELLED in _actions(audit)

    def test_clean_cancel_is_not_audited(self, manager, audit, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")

        manager.cancel_edit(session)

        assert AuditAction.CANCELLED not in _actions(audit)

    def test_cancel_is_idempotent(self, manager, seed_part, seed_invoice):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")

        manager.cancel_edit(session)
        manager.cancel_edit(session)

        assert manager.active_sessions() == []

    def test_cancel_never_waits_on_busy_session(self, manager, seed_part, seed_invoice):
        import threading

        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        held = threading.Event()
        release = threading.Event()

        def hold():
            with session.lock:
                held.set()
                release.wait(2.0)

        worker = threading.Thread(target=hold)
        worker.start()
        held.wait(2.0)

        manager.cancel_edit(session)

        assert session.ended
        release.set()
        worker.join()

    def test_cancel_leaves_store_untouched(self, manager, seed_part, seed_invoice, store, stock):
        seed_part("A", 10)
        seed_invoice([("A", 2)])
        session = manager.start_edit("inv-1")
        _set_quantity(manager, session, "A", 5)

        manager.cancel_edit(session)

        assert stock(store, "A") == 10
        assert store.get_doc("invoices/inv-1")["version"] == 1


class TestDeleteInvoice:

    def test_delete_releases_stock(self, manager, seed_part, seed_invoice, store, stock, audit, event_bus):
        """S5: A 8 + 2, B 4 + 1."""
        seed_part("A", 8)
        seed_part("B", 4)
        seed_invoice([("A", 2), ("B", 1)])
        events = []
        event_bus.subscribe("InvoiceDeleted", events.append)

        result = manager.delete_invoice("inv-1")

        assert result.ok
        assert store.get_doc("invoices/inv-1") is None
        assert stock(store, "A") == 10
        assert stock(store, "B") == 5
        deleted = [e for e in audit.history_for_invoice("inv-1") if e.action == AuditAction.DELETE_COMMITTED]
        assert len(deleted) == 1
        assert [(c.part_id, c.delta) for c in deleted[0].stock_changes] == [("A", 2), ("B", 1)]
        assert len(events) == 1

    def test_delete_missing_invoice(self, manager):
        result = manager.delete_invoice("nope")

        assert not result.ok
        assert result.error.kind == ErrorKind.NOT_FOUND


class TestBuildEditManager:

    def test_wires_store_from_vault_url(self, monkeypatch, redis_server):
        import clients.document_store as store_module
        import core.services.edit_session_service as module

        urls = []
        monkeypatch.setattr(module, "get_valkey_url", lambda: "redis://valkey:6379/0")

        def fake_from_url(url, **kwargs):
            urls.append(url)
            return fakeredis.FakeRedis(server=redis_server, decode_responses=True)

        monkeypatch.setattr(store_module.redis, "from_url", fake_from_url)

        manager = build_edit_manager(key_prefix="shop1:")

        assert urls == ["redis://valkey:6379/0"]
        assert manager.store.prefix == "shop1:"
        assert manager.store.max_attempts == manager.config.transaction_max_attempts
        manager.close()
