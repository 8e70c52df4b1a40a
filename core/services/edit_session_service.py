"""
Edit session manager.

Owns every open edit session: the working copy, the session state machine,
the debounced validator and the subscription to the remote invoice. This is
the public surface of the invoice edit core.

    IDLE -> LOADING -> EDITING <-> VALIDATING
    EDITING -> PRE_CHECK -> CONFLICT -> (resolve) -> EDITING
                         -> SAVING -> DONE | ERROR
    EDITING -> CANCELLED

Sessions live on the manager instance, never in module state. Each session
is guarded by its own lock so caller mutations, debounced validation runs
and remote-change callbacks apply in a consistent order.
"""

import logging
import threading
from types import MappingProxyType
from typing import Any, Mapping
from uuid import uuid4

from clients.document_store import DocumentStore, Subscription
from clients.vault_client import get_valkey_url
from core.audit import (
    AuditAction,
    AuditEntry,
    AuditTrail,
    compute_changes,
    diff_line_items,
    header_snapshot,
)
from core.config import EditConfig
from core.conflicts import ConflictResolver
from core.debounce import Debouncer
from core.errors import (
    ErrorKind,
    InvoiceDeletedError,
    InvoiceEditError,
    InvoiceNotFoundError,
    RetryExhaustedError,
    SessionEndedError,
    UnsupportedStrategyError,
    VersionConflictError,
    InsufficientStockError,
)
from core.event_bus import EventBus
from core.events import InvoiceDeleted, InvoiceEditCommitted, SessionStateChanged
from core.models import (
    ConflictAnalysis,
    CustomerInfo,
    DeleteResult,
    EditSession,
    EditState,
    ErrorInfo,
    FieldResolution,
    Invoice,
    IssueKind,
    LineItem,
    Part,
    ResolutionChoice,
    SaveResult,
    StrategyId,
    ValidationResult,
)
from core.reconciliation import reconcile
from core.services.invoice_service import InvoiceService
from core.services.transaction_service import InvoiceTransactionService, invoice_path
from core.validation import InvoiceEditValidator
from utils.user_context import get_current_actor
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

# Fields a caller may patch on the working copy
EDITABLE_FIELDS = frozenset({"customer_info", "notes", "items"})

# Failures after which the session can't continue
_ENDS_SESSION = frozenset({ErrorKind.INVOICE_DELETED, ErrorKind.FATAL_STORE_ERROR})


class EditSessionManager:
    """
    Public API for editing issued invoices.

    Usage:
        manager = EditSessionManager(store, audit, event_bus, config)
        session = manager.start_edit(invoice_id)
        manager.update_edit(session, {"notes": "Customer supplied own oil"})
        result = manager.save_edit(session)
        if result.status == "conflict":
            manager.resolve_conflict(session, StrategyId.AUTO_MERGE)
            result = manager.save_edit(session)
    """

    def __init__(
        self,
        store: DocumentStore,
        audit: AuditTrail | None = None,
        event_bus: EventBus | None = None,
        config: EditConfig | None = None,
    ):
        self.store = store
        self.config = config or EditConfig()
        self.audit = audit or AuditTrail(store)
        self.event_bus = event_bus or EventBus()
        self.validator = InvoiceEditValidator(self.config)
        self.resolver = ConflictResolver(self.config)
        self.invoices = InvoiceService(store, self.audit, self.event_bus, self.config)
        self.transactions = InvoiceTransactionService(store, self.audit, self.config)

        self._lock = threading.Lock()
        self._sessions: dict[str, EditSession] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._debouncers: dict[str, Debouncer] = {}

    # =========================================================================
    # SESSION LIFECYCLE
    # =========================================================================

    def start_edit(self, invoice_id: str) -> EditSession:
        """
        Open an edit session on an invoice.

        Raises:
            InvoiceNotFoundError: Invoice doesn't exist.
            StoreError / FatalStoreError: Store unavailable.
        """
        session_id = str(uuid4())
        subscription = self.store.subscribe(
            invoice_path(invoice_id),
            lambda doc: self._on_remote_change(session_id, doc),
        )
        try:
            invoice = self.invoices.get_by_id(invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)
            parts = self.invoices.load_parts(invoice)
        except InvoiceEditError:
            subscription.cancel()
            raise

        session = EditSession(
            session_id=session_id,
            invoice_id=invoice_id,
            actor=get_current_actor(),
            original_invoice=invoice,
            current_invoice=invoice,
            expected_version=invoice.version,
            parts=parts,
            started_at=now_utc(),
            state=EditState.LOADING,
        )

        with self._lock:
            self._sessions[session_id] = session
            self._subscriptions[session_id] = subscription
            self._debouncers[session_id] = Debouncer(self.config.validation_debounce_ms)

        with session.lock:
            self._refresh_validation(session)
            self._transition(session, EditState.EDITING)

        self._record(session, AuditAction.EDIT_START, context={"version": invoice.version})
        logger.info(
            f"Edit session {session_id} started on invoice {invoice.invoice_number} "
            f"v{invoice.version} by {session.actor}"
        )
        return session

    def get_session(self, session_id: str) -> EditSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def active_sessions(self) -> list[EditSession]:
        with self._lock:
            return list(self._sessions.values())

    def cancel_edit(self, session: EditSession) -> None:
        """
        Discard a session. Always safe and never waits on an in-flight save.

        A dirty session gets a cancelled audit entry.
        """
        if session.ended:
            return

        if not session.lock.acquire(blocking=False):
            logger.info(f"Edit session {session.session_id} cancelled during save")
            self._end(session)
            return

        try:
            if session.ended:
                return
            if session.dirty:
                self._record(session, AuditAction.CANCELLED, context={
                    "change_count": session.change_count,
                })
            self._transition(session, EditState.CANCELLED)
            self._end(session)
        finally:
            session.lock.release()
        logger.info(f"Edit session {session.session_id} cancelled")

    def close(self) -> None:
        """End every open session without auditing. For shutdown."""
        for session in self.active_sessions():
            self._end(session)

    # =========================================================================
    # EDITING
    # =========================================================================

    def update_edit(self, session: EditSession, patch: Mapping[str, Any]) -> EditSession:
        """
        Apply a shallow patch to the working copy.

        customer_info may be partial; items replaces the whole line list and
        each line is repriced from its inputs. Validation runs after the
        debounce delay.

        Raises:
            SessionEndedError: Session is no longer active.
            ValueError: Patch touches a non-editable field or fails model
                validation.
        """
        with session.lock:
            self._require_active(session)

            unknown = set(patch) - EDITABLE_FIELDS
            if unknown:
                raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

            before = session.current_invoice
            update: dict[str, Any] = {}

            if "customer_info" in patch:
                info = patch["customer_info"]
                if isinstance(info, CustomerInfo):
                    info = info.model_dump()
                update["customer_info"] = CustomerInfo(**{**before.customer_info.model_dump(), **info})

            if "notes" in patch:
                update["notes"] = patch["notes"] or ""

            if "items" in patch:
                lines = [
                    item if isinstance(item, LineItem) else LineItem.model_validate(item)
                    for item in patch["items"]
                ]
                self._extend_parts(session, lines)
                update["items"] = tuple(self._fill_line(session, line).repriced() for line in lines)

            current = Invoice.model_validate({**before.model_dump(), **update}).with_totals()
            session.current_invoice = current
            session.dirty = True
            session.change_count += 1

            if session.state == EditState.ERROR:
                session.error = None
                self._transition(session, EditState.EDITING)

            if self.config.audit_edit_changes:
                context: dict[str, Any] = {
                    "fields": sorted(patch),
                    "changes": compute_changes(
                        header_snapshot(before), header_snapshot(current),
                    ),
                }
                if "items" in patch:
                    context["line_changes"] = diff_line_items(before, current)
                self._record(session, AuditAction.EDIT_CHANGE, context=context)

            session_id = session.session_id
            self._debouncer(session).schedule(lambda: self._debounced_validation(session_id))
            return session

    def validate_edit(self, session: EditSession) -> ValidationResult:
        """
        Validate the working copy now, superseding any queued run.

        Includes stock feasibility against the session's parts snapshot.
        """
        with session.lock:
            self._require_active(session)
            self._debouncer(session).cancel()
            return self._run_validation(session)

    def flush(self, session: EditSession) -> bool:
        """Run a queued validation immediately. Returns False if none was queued."""
        debouncer = self._debouncers.get(session.session_id)
        if debouncer is None:
            return False
        return debouncer.flush()

    def poll_remote(self, session: EditSession) -> int:
        """Deliver pending remote changes for a session. Returns how many arrived."""
        subscription = self._subscriptions.get(session.session_id)
        if subscription is None:
            return 0
        return subscription.pump()

    # =========================================================================
    # SAVING
    # =========================================================================

    def save_edit(self, session: EditSession) -> SaveResult:
        """
        Commit the working copy.

        Returns ok with the new version, conflict with the analysis (session
        enters CONFLICT), or error with a kind. Validation failures and most
        store failures leave the session open for a retry; a deleted invoice
        or fatal store error ends it.

        Raises:
            SessionEndedError: Session is no longer active.
        """
        with session.lock:
            self._require_active(session)

            if session.state == EditState.CONFLICT:
                return SaveResult.conflicted(session.conflict)
            if session.state == EditState.ERROR:
                session.error = None
                self._transition(session, EditState.EDITING)

            self._debouncer(session).cancel()
            validation = self._run_validation(session)

            # Stock feasibility is decided inside the transaction
            blocking = [e for e in validation.errors if e.kind != IssueKind.INSUFFICIENT_STOCK]
            if blocking:
                return self._reject_invalid(session, validation, blocking)

            previous_version = session.expected_version
            for attempt in range(self.config.transaction_max_attempts):
                outcome = self._precheck(session)
                if outcome is not None:
                    return outcome

                self._transition(session, EditState.SAVING)
                try:
                    commit = self.transactions.commit_edit(session)
                except VersionConflictError as e:
                    logger.info(f"Edit session {session.session_id}: {e}, re-checking")
                    continue
                except InvoiceEditError as e:
                    return self._fail(session, e)
                break
            else:
                return self._fail(session, RetryExhaustedError(self.config.transaction_max_attempts))

            session.error = None
            session.dirty = False
            self._transition(session, EditState.DONE)
            self._end(session)

        self.event_bus.publish(InvoiceEditCommitted.create(
            invoice=commit.invoice,
            previous_version=previous_version,
            stock_changes=commit.stock_changes,
            session_id=session.session_id,
        ))
        return SaveResult.committed(commit)

    def _precheck(self, session: EditSession) -> SaveResult | None:
        """
        Compare against the current remote before committing.

        Returns a result when the save must stop here, None to proceed.
        A remote change that conflicts with nothing is merged silently.
        """
        self._transition(session, EditState.PRE_CHECK)
        try:
            remote = self.invoices.get_by_id(session.invoice_id)
        except InvoiceEditError as e:
            return self._fail(session, e)

        if remote is None:
            return self._fail(session, InvoiceDeletedError(session.invoice_id))
        if remote.version == session.expected_version:
            return None

        analysis = self.resolver.detect_conflicts(
            session.current_invoice,
            remote,
            expected_version=session.expected_version,
            base=session.original_invoice,
        )
        if analysis.has_conflicts:
            return self._enter_conflict(session, analysis)

        merged = self.resolver.auto_merge(analysis, session.current_invoice, session.original_invoice)
        logger.info(
            f"Edit session {session.session_id} rebased from v{session.expected_version} "
            f"to v{remote.version} without conflicts"
        )
        self._rebase(session, remote, merged)
        return None

    def _reject_invalid(
        self, session: EditSession, validation: ValidationResult, blocking: list
    ) -> SaveResult:
        first = blocking[0]
        error = ErrorInfo(
            kind=ErrorKind(first.kind.value),
            message=first.message,
            context={"errors": [issue.model_dump(mode="json") for issue in blocking]},
        )
        session.error = error
        self._record(session, AuditAction.VALIDATION_FAILED, context={
            "errors": [issue.model_dump(mode="json") for issue in blocking],
        })
        if any(issue.kind == IssueKind.PART_NOT_FOUND for issue in blocking):
            self._transition(session, EditState.ERROR)
        logger.info(
            f"Edit session {session.session_id} save blocked by {len(blocking)} validation errors"
        )
        return SaveResult.failed(error, validation)

    def _enter_conflict(self, session: EditSession, analysis: ConflictAnalysis) -> SaveResult:
        session.conflict = analysis
        self._record(session, AuditAction.CONFLICT_DETECTED, context={
            "remote_version": analysis.remote_version,
            "conflicts": [c.key for c in analysis.conflicts],
            "severity": analysis.severity.value,
        })
        self._transition(session, EditState.CONFLICT)
        return SaveResult.conflicted(analysis)

    def _fail(self, session: EditSession, exc: InvoiceEditError) -> SaveResult:
        error = ErrorInfo.from_exception(exc)
        session.error = error

        if isinstance(exc, InvoiceDeletedError):
            session.conflict = self.resolver.detect_conflicts(
                session.current_invoice, None, expected_version=session.expected_version,
            )
        if isinstance(exc, InsufficientStockError):
            # The snapshot was stale; show the user what stock really is
            try:
                session.parts = MappingProxyType(self.invoices.load_parts(session.current_invoice))
                self._refresh_validation(session)
            except InvoiceEditError as refresh_error:
                logger.warning(f"Could not refresh parts for {session.session_id}: {refresh_error}")

        self._record(session, AuditAction.SAVE_FAILED, context={
            "error": error.kind.value,
            "message": error.message,
        })
        self._transition(session, EditState.ERROR)
        logger.warning(f"Edit session {session.session_id} save failed: {exc}")

        if error.kind in _ENDS_SESSION:
            self._end(session)
        return SaveResult.failed(error, session.validation)

    # =========================================================================
    # CONFLICTS
    # =========================================================================

    def resolve_conflict(
        self,
        session: EditSession,
        strategy: StrategyId | str,
        choices: Mapping[str, FieldResolution | ResolutionChoice | str] | None = None,
        confirm: bool = False,
    ) -> EditSession:
        """
        Leave CONFLICT by applying a strategy.

        The session is rebased onto the remote invoice: its base snapshot and
        expected version become the remote's, and the working copy becomes the
        resolved candidate. Saving again commits against that base.

        Raises:
            SessionEndedError: Session is no longer active.
            UnsupportedStrategyError: Strategy not offered, missing choices,
                or force_overwrite without confirm.
        """
        with session.lock:
            self._require_active(session)

            try:
                strategy = StrategyId(strategy)
            except ValueError:
                raise UnsupportedStrategyError(str(strategy), "unknown strategy")

            if session.state != EditState.CONFLICT or session.conflict is None:
                raise UnsupportedStrategyError(strategy.value, "session is not in conflict")

            # Re-run against the same remote in case the working copy changed meanwhile
            analysis = self.resolver.detect_conflicts(
                session.current_invoice,
                session.conflict.remote,
                expected_version=session.expected_version,
                base=session.original_invoice,
            )
            if strategy not in analysis.strategy_ids():
                raise UnsupportedStrategyError(strategy.value, "not offered for these conflicts")

            if strategy == StrategyId.RELOAD:
                return self._reload(session, analysis)

            if strategy == StrategyId.AUTO_MERGE:
                candidate = self.resolver.auto_merge(
                    analysis, session.current_invoice, session.original_invoice
                )
            elif strategy == StrategyId.MANUAL_RESOLVE:
                candidate = self.resolver.apply_resolutions(analysis, session.current_invoice, choices)
            else:
                if not confirm:
                    raise UnsupportedStrategyError(strategy.value, "requires explicit confirmation")
                candidate = self.resolver.force_overwrite(analysis, session.current_invoice)

            self._rebase(session, analysis.remote, candidate)
            session.dirty = True
            self._record(session, AuditAction.CONFLICT_RESOLVED, context={
                "strategy": strategy.value,
                "conflicts": [c.key for c in analysis.conflicts],
                "remote_version": analysis.remote_version,
            })
            self._refresh_validation(session)
            self._transition(session, EditState.EDITING)
            logger.info(f"Edit session {session.session_id} resolved conflict via {strategy.value}")
            return session

    def _reload(self, session: EditSession, analysis: ConflictAnalysis) -> EditSession:
        self._transition(session, EditState.LOADING)
        try:
            remote = self.invoices.get_by_id(session.invoice_id)
        except InvoiceEditError as e:
            self._fail(session, e)
            return session
        if remote is None:
            self._fail(session, InvoiceDeletedError(session.invoice_id))
            return session

        session.parts = MappingProxyType(self.invoices.load_parts(remote))
        session.original_invoice = remote
        session.current_invoice = remote
        session.expected_version = remote.version
        session.conflict = None
        session.error = None
        session.dirty = False
        self._record(session, AuditAction.CONFLICT_RESOLVED, context={
            "strategy": StrategyId.RELOAD.value,
            "conflicts": [c.key for c in analysis.conflicts],
            "remote_version": remote.version,
        })
        self._refresh_validation(session)
        self._transition(session, EditState.EDITING)
        return session

    def _rebase(self, session: EditSession, remote: Invoice, candidate: Invoice) -> None:
        session.original_invoice = remote
        session.expected_version = remote.version
        session.current_invoice = candidate
        session.conflict = None
        self._extend_parts(session, candidate.items)

    def _on_remote_change(self, session_id: str, doc: dict[str, Any] | None) -> None:
        session = self.get_session(session_id)
        if session is None or session.ended:
            return

        with session.lock:
            if session.ended or session.state not in (EditState.EDITING, EditState.ERROR):
                return

            remote = Invoice.model_validate(doc) if doc is not None else None
            if remote is not None and remote.version <= session.expected_version:
                return

            session.conflict = self.resolver.detect_conflicts(
                session.current_invoice,
                remote,
                expected_version=session.expected_version,
                base=session.original_invoice,
            )
            logger.info(
                f"Edit session {session_id} saw remote change "
                f"({len(session.conflict.conflicts)} conflicts)"
            )
            self.event_bus.publish(SessionStateChanged.create(session, session.state))

    # =========================================================================
    # DELETE
    # =========================================================================

    def delete_invoice(self, invoice_id: str) -> DeleteResult:
        """Delete an invoice and release its stock in one transaction."""
        try:
            commit = self.transactions.delete_invoice(invoice_id)
        except InvoiceEditError as e:
            logger.warning(f"Delete of invoice {invoice_id} failed: {e}")
            return DeleteResult(ok=False, invoice_id=invoice_id, error=ErrorInfo.from_exception(e))

        self.event_bus.publish(InvoiceDeleted.create(
            invoice=commit.invoice, stock_changes=commit.stock_changes,
        ))
        return DeleteResult(ok=True, invoice_id=invoice_id, stock_changes=commit.stock_changes)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _require_active(self, session: EditSession) -> None:
        if session.ended or self.get_session(session.session_id) is not session:
            raise SessionEndedError(session.session_id)

    def _debouncer(self, session: EditSession) -> Debouncer:
        return self._debouncers[session.session_id]

    def _transition(self, session: EditSession, state: EditState) -> None:
        previous = session.state
        session.state = state
        logger.debug(f"Edit session {session.session_id}: {previous.value} -> {state.value}")
        self.event_bus.publish(SessionStateChanged.create(session, previous))

    def _debounced_validation(self, session_id: str) -> None:
        session = self.get_session(session_id)
        if session is None:
            return
        with session.lock:
            if session.ended or session.state not in (EditState.EDITING, EditState.ERROR):
                return
            self._run_validation(session)

    def _run_validation(self, session: EditSession) -> ValidationResult:
        resume = session.state == EditState.EDITING
        if resume:
            self._transition(session, EditState.VALIDATING)
        result = self._refresh_validation(session)
        if resume:
            self._transition(session, EditState.EDITING)
        return result

    def _refresh_validation(self, session: EditSession) -> ValidationResult:
        stock = reconcile(
            session.original_invoice.items,
            session.current_invoice.items,
            session.parts,
            self.config.low_stock_threshold,
        )
        result = self.validator.validate_session(session).merged(stock.as_validation())
        session.stock_analysis = stock
        session.validation = result
        return result

    def _extend_parts(self, session: EditSession, lines) -> None:
        """Add snapshot entries for parts the working copy newly references."""
        missing = [
            part_id for part_id in dict.fromkeys(line.part_id for line in lines)
            if part_id not in session.parts
        ]
        if not missing:
            return
        parts = dict(session.parts)
        for part_id in missing:
            doc = self.store.get_doc(f"parts/{part_id}")
            if doc is not None:
                parts[part_id] = Part.model_validate(doc)
        session.parts = MappingProxyType(parts)

    def _fill_line(self, session: EditSession, line: LineItem) -> LineItem:
        part = session.parts.get(line.part_id)
        if part is None or (line.product_name and line.product_code):
            return line
        return line.model_copy(update={
            "product_name": line.product_name or part.name,
            "product_code": line.product_code or part.code or "",
        })

    def _record(self, session: EditSession, action: AuditAction, context: dict[str, Any]) -> None:
        self.audit.record(AuditEntry(
            session_id=session.session_id,
            invoice_id=session.invoice_id,
            invoice_number=session.original_invoice.invoice_number,
            action=action,
            actor=session.actor,
            before=header_snapshot(session.original_invoice),
            after=header_snapshot(session.current_invoice),
            context=context,
        ))

    def _end(self, session: EditSession) -> None:
        session.ended = True
        with self._lock:
            self._sessions.pop(session.session_id, None)
            subscription = self._subscriptions.pop(session.session_id, None)
            debouncer = self._debouncers.pop(session.session_id, None)
        if debouncer is not None:
            debouncer.cancel()
        if subscription is not None:
            subscription.cancel()


def build_edit_manager(
    url: str | None = None,
    config: EditConfig | None = None,
    key_prefix: str = "",
) -> EditSessionManager:
    """
    Wire an EditSessionManager against a Valkey server.

    The URL comes from Vault when not given.
    """
    config = config or EditConfig()
    store = DocumentStore.from_url(
        url or get_valkey_url(),
        prefix=key_prefix,
        max_attempts=config.transaction_max_attempts,
        batch_limit=config.batch_write_limit,
    )
    audit = AuditTrail(store)
    return EditSessionManager(store, audit, EventBus(), config)
