"""
Document store adapter over Valkey (Redis-compatible).

Every interaction the edit core has with persisted documents goes through
DocumentStore. Documents are JSON objects stored under
"<prefix><collection>/<id>"; reads embed the id from the path.

Transactions use optimistic concurrency (WATCH/MULTI/EXEC): reads through a
Transaction watch their keys, writes are staged in memory and queued after
MULTI. If any watched key changes before EXEC the store raises WatchError and
the whole transaction body runs again, up to a bounded number of attempts.

Every committed write publishes the new document (or null on delete) on
"<prefix>changes:<path>" inside the same MULTI, so subscribers see every
committed version.

Fail-fast: raises on connection failure, never falls back to a local mirror.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import redis

from core.errors import FatalStoreError, RetryExhaustedError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BATCH_LIMIT = 500


def classify_error(exc: redis.RedisError) -> StoreError | FatalStoreError:
    """
    Map a redis-py exception onto the edit core's store error kinds.

    AuthenticationError subclasses ConnectionError in redis-py, so it is
    checked first.
    """
    if isinstance(exc, redis.AuthenticationError):
        return FatalStoreError(f"Store authentication failed: {exc}")
    if isinstance(exc, (redis.ConnectionError, redis.TimeoutError)):
        return StoreError(f"Store unavailable: {exc}")
    return FatalStoreError(f"Store rejected operation: {exc}")


def split_path(path: str) -> tuple[str, str]:
    """
    Split "collection/id" into its parts.

    Raises ValueError for anything that is not exactly two non-empty segments.
    """
    parts = path.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid document path '{path}', expected 'collection/id'")
    return parts[0], parts[1]


def _decode(path: str, raw: str | bytes | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        doc = json.loads(raw)
    except json.JSONDecodeError as e:
        raise FatalStoreError(f"Corrupt document at '{path}': {e}")
    if not isinstance(doc, dict):
        raise FatalStoreError(f"Document at '{path}' is not an object")
    _, doc_id = split_path(path)
    doc["id"] = doc_id
    return doc


def _encode(doc: dict[str, Any]) -> str:
    return json.dumps(doc, sort_keys=True, default=str)


@dataclass(frozen=True)
class BatchOp:
    """One write in a batch. kind is "put" or "delete"."""

    kind: str
    path: str
    doc: dict[str, Any] | None = None


class Transaction:
    """
    Handle passed to a transaction body.

    Reads observe a consistent snapshot: a read watches its key, and any
    change to a watched key before commit aborts the attempt. Writes are
    staged and only land on commit. Reads of a path already written in
    this transaction return the staged value.
    """

    def __init__(self, store: "DocumentStore", pipe: redis.client.Pipeline):
        self._store = store
        self._pipe = pipe
        self._reads: dict[str, dict[str, Any] | None] = {}
        self._staged: dict[str, dict[str, Any] | None] = {}
        self._writes: list[tuple[str, str, dict[str, Any] | None]] = []

    def get(self, path: str) -> dict[str, Any] | None:
        """Read a document inside the transaction."""
        if path in self._staged:
            staged = self._staged[path]
            return None if staged is None else json.loads(_encode(staged))

        if path not in self._reads:
            key = self._store.key(path)
            self._pipe.watch(key)
            self._reads[path] = _decode(path, self._pipe.get(key))

        doc = self._reads[path]
        return None if doc is None else dict(doc)

    def put(self, path: str, doc: dict[str, Any]) -> None:
        """Stage an unconditional write."""
        self._stage("put", path, doc)

    def create(self, path: str, doc: dict[str, Any]) -> None:
        """Stage a write that never overwrites an existing document."""
        self._stage("create", path, doc)

    def delete(self, path: str) -> None:
        """Stage a delete."""
        self._stage("delete", path, None)

    def _stage(self, kind: str, path: str, doc: dict[str, Any] | None) -> None:
        split_path(path)
        body = None
        if doc is not None:
            body = {k: v for k, v in doc.items() if k != "id"}
        self._writes.append((kind, path, body))
        self._staged[path] = body

    def _commit(self) -> None:
        if not self._writes:
            return

        self._pipe.multi()
        for kind, path, doc in self._writes:
            self._store._queue_write(self._pipe, kind, path, doc)
        self._pipe.execute()


class Subscription:
    """
    Live feed of committed versions of one document.

    Single-threaded callers drive delivery with pump(); start() moves
    delivery onto a daemon thread. The callback receives the document dict
    (with id) or None when the document was deleted.
    """

    def __init__(
        self,
        store: "DocumentStore",
        path: str,
        callback: Callable[[dict[str, Any] | None], None],
    ):
        self.path = path
        self._callback = callback
        self._pubsub = store.client.pubsub()
        self._pubsub.subscribe(store.channel(path))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.active = True

    def pump(self, timeout: float = 0.0) -> int:
        """
        Deliver every pending change notification.

        Waits up to timeout seconds for the first message. Returns the
        number of documents delivered.
        """
        delivered = 0
        wait = timeout
        while self.active:
            try:
                message = self._pubsub.get_message(timeout=wait)
            except redis.RedisError as e:
                raise classify_error(e) from e
            if message is None:
                break
            wait = 0.0
            if message["type"] != "message":
                continue

            payload = json.loads(message["data"])
            doc = payload.get("doc")
            if doc is not None:
                _, doc_id = split_path(self.path)
                doc["id"] = doc_id

            try:
                self._callback(doc)
            except Exception:
                logger.exception("Subscription callback failed for %s", self.path)
            delivered += 1
        return delivered

    def start(self, poll_interval: float = 0.1) -> None:
        """Deliver changes on a background daemon thread until cancelled."""
        if self._thread is not None:
            return

        def run():
            while not self._stop.is_set():
                try:
                    self.pump(timeout=poll_interval)
                except StoreError:
                    if self._stop.is_set():
                        break
                    logger.warning("Subscription to %s lost connection, retrying", self.path)
                    time.sleep(poll_interval)

        self._thread = threading.Thread(
            target=run, name=f"subscription:{self.path}", daemon=True
        )
        self._thread.start()

    def cancel(self) -> None:
        """Stop delivery. Safe to call more than once."""
        if not self.active:
            return
        self.active = False
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        try:
            self._pubsub.unsubscribe()
            self._pubsub.close()
        except redis.RedisError as e:
            logger.warning("Error closing subscription to %s: %s", self.path, e)


class DocumentStore:
    """
    Document store over a Redis-compatible client.

    Usage:
        store = DocumentStore.from_url("redis://localhost:6379/0")
        store.put_doc("parts/A", {"name": "Brake pad", "stock": 10})
        part = store.get_doc("parts/A")  # {"id": "A", "name": ..., "stock": 10}

        def body(tx):
            part = tx.get("parts/A")
            part["stock"] -= 1
            tx.put("parts/A", part)

        store.run_transaction(body)
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        backoff_seconds: float = 0.01,
    ):
        self.client = client
        self.prefix = prefix
        self.max_attempts = max_attempts
        self.batch_limit = batch_limit
        self.backoff_seconds = backoff_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "DocumentStore":
        """
        Connect to a Valkey/Redis URL.

        Raises FatalStoreError or StoreError if the server is unreachable.
        """
        client = redis.from_url(url, decode_responses=True)
        store = cls(client, **kwargs)
        store.ping()
        logger.info("DocumentStore connected")
        return store

    def ping(self) -> bool:
        """Health check. Raises if the server is unreachable."""
        try:
            self.client.ping()
        except redis.RedisError as e:
            raise classify_error(e) from e
        return True

    def key(self, path: str) -> str:
        split_path(path)
        return f"{self.prefix}{path}"

    def channel(self, path: str) -> str:
        split_path(path)
        return f"{self.prefix}changes:{path}"

    def get_doc(self, path: str) -> dict[str, Any] | None:
        """Read a document. Returns None if it doesn't exist (not an error)."""
        try:
            raw = self.client.get(self.key(path))
        except redis.RedisError as e:
            raise classify_error(e) from e
        return _decode(path, raw)

    def put_doc(self, path: str, doc: dict[str, Any]) -> None:
        """Write a document unconditionally and notify subscribers."""
        self._write_now([("put", path, {k: v for k, v in doc.items() if k != "id"})])

    def delete_doc(self, path: str) -> None:
        """Delete a document and notify subscribers. Missing documents are fine."""
        self._write_now([("delete", path, None)])

    def list_docs(self, collection: str) -> list[dict[str, Any]]:
        """All documents in a collection, in no particular order."""
        pattern = f"{self.prefix}{collection}/*"
        try:
            keys = list(self.client.scan_iter(match=pattern))
            raws = self.client.mget(keys) if keys else []
        except redis.RedisError as e:
            raise classify_error(e) from e

        docs = []
        for key, raw in zip(keys, raws):
            if isinstance(key, bytes):
                key = key.decode()
            doc = _decode(key[len(self.prefix):], raw)
            if doc is not None:
                docs.append(doc)
        return docs

    def run_transaction(self, fn: Callable[[Transaction], T], max_attempts: int | None = None) -> T:
        """
        Run fn(tx) atomically.

        fn may run several times; it must make every decision from tx reads
        and have no side effects outside tx. Exceptions raised by fn abort
        the transaction without writing and propagate unchanged.

        Raises:
            RetryExhaustedError: Every attempt collided with another writer.
            StoreError: Transient failures on every attempt.
            FatalStoreError: Non-retryable store failure.
        """
        attempts = max_attempts or self.max_attempts
        last_transient: StoreError | None = None

        for attempt in range(1, attempts + 1):
            try:
                with self.client.pipeline(transaction=True) as pipe:
                    tx = Transaction(self, pipe)
                    result = fn(tx)
                    tx._commit()
                    return result
            except redis.WatchError:
                last_transient = None
                logger.info("Transaction contention (attempt %d/%d)", attempt, attempts)
            except redis.RedisError as e:
                error = classify_error(e)
                if error.fatal:
                    raise error from e
                last_transient = error
                logger.warning(
                    "Transient store error (attempt %d/%d): %s", attempt, attempts, e
                )

            if attempt < attempts:
                time.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        if last_transient is not None:
            raise last_transient
        raise RetryExhaustedError(attempts)

    def batch_write(self, ops: list[BatchOp]) -> None:
        """
        Apply up to batch_limit writes as a single all-or-nothing unit.

        Raises ValueError if the batch is too large or contains an unknown op.
        """
        if len(ops) > self.batch_limit:
            raise ValueError(f"Batch of {len(ops)} exceeds limit of {self.batch_limit}")

        writes = []
        for op in ops:
            if op.kind == "put":
                if op.doc is None:
                    raise ValueError(f"Put to '{op.path}' has no document")
                writes.append(("put", op.path, {k: v for k, v in op.doc.items() if k != "id"}))
            elif op.kind == "delete":
                writes.append(("delete", op.path, None))
            else:
                raise ValueError(f"Unknown batch operation '{op.kind}'")

        self._write_now(writes)

    def subscribe(
        self, path: str, callback: Callable[[dict[str, Any] | None], None]
    ) -> Subscription:
        """Subscribe to committed versions of a document. Cancel via the handle."""
        try:
            return Subscription(self, path, callback)
        except redis.RedisError as e:
            raise classify_error(e) from e

    def close(self) -> None:
        """Close the connection."""
        self.client.close()
        logger.info("DocumentStore closed")

    def _write_now(self, writes: list[tuple[str, str, dict[str, Any] | None]]) -> None:
        if not writes:
            return
        try:
            with self.client.pipeline(transaction=True) as pipe:
                for kind, path, doc in writes:
                    self._queue_write(pipe, kind, path, doc)
                pipe.execute()
        except redis.RedisError as e:
            raise classify_error(e) from e

    def _queue_write(
        self,
        pipe: redis.client.Pipeline,
        kind: str,
        path: str,
        doc: dict[str, Any] | None,
    ) -> None:
        key = self.key(path)
        if kind == "put":
            pipe.set(key, _encode(doc))
        elif kind == "create":
            pipe.set(key, _encode(doc), nx=True)
        else:
            pipe.delete(key)
        pipe.publish(self.channel(path), json.dumps({"path": path, "doc": doc}, default=str))
