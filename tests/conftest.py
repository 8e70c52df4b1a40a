"""Shared test fixtures for the invoice edit test suite."""

import pytest
from datetime import datetime, timezone
from pathlib import Path

import fakeredis
from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
# override=True ensures .env takes precedence over shell env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from clients.document_store import DocumentStore
from core.audit import AuditTrail
from core.config import EditConfig
from core.event_bus import EventBus
from core.models import CustomerInfo, Invoice, LineItem, MarkupType
from utils.user_context import actor_context, clear_current_actor


# =============================================================================
# TEST ACTOR CONSTANTS
# =============================================================================

# Primary test user - use for single-user tests
TEST_ACTOR = "mechanic-1"

# Secondary test user - use for concurrent edit tests
TEST_ACTOR_B = "mechanic-2"

CREATED_AT = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# ACTOR CONTEXT FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def reset_actor_context():
    """Ensure clean actor context before and after each test."""
    clear_current_actor()
    yield
    clear_current_actor()


@pytest.fixture
def as_test_user():
    """Run the test as the primary test user."""
    with actor_context(TEST_ACTOR):
        yield TEST_ACTOR


# =============================================================================
# STORE FIXTURES
# =============================================================================


@pytest.fixture
def redis_server():
    """Isolated in-memory Redis server per test."""
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    client = fakeredis.FakeRedis(server=redis_server, decode_responses=True)
    yield client
    client.close()


@pytest.fixture
def store(redis_client):
    """DocumentStore over fakeredis, no retry backoff."""
    return DocumentStore(redis_client, prefix="test:", backoff_seconds=0)


@pytest.fixture
def config():
    """Config with synchronous validation so tests are deterministic."""
    return EditConfig(validation_debounce_ms=0)


@pytest.fixture
def audit(store):
    return AuditTrail(store)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def manager(store, audit, event_bus, config):
    from core.services.edit_session_service import EditSessionManager

    manager = EditSessionManager(store, audit, event_bus, config)
    yield manager
    manager.close()


# =============================================================================
# SEED DATA
# =============================================================================


def make_line(
    part_id: str,
    quantity: int,
    price: float = 50.0,
    markup_type: MarkupType = MarkupType.PERCENTAGE,
    markup_value: float = 0,
) -> LineItem:
    return LineItem.priced(
        part_id=part_id,
        original_price=price,
        quantity=quantity,
        markup_type=markup_type,
        markup_value=markup_value,
        product_code=f"P-{part_id}",
        product_name=f"Part {part_id}",
    )


def make_invoice(
    lines: list[LineItem],
    invoice_id: str = "inv-1",
    invoice_number: str = "INV-2025-0001",
    version: int = 1,
    notes: str = "",
    customer: CustomerInfo | None = None,
    created_at: datetime = CREATED_AT,
    edit_count: int = 0,
) -> Invoice:
    return Invoice(
        id=invoice_id,
        invoice_number=invoice_number,
        version=version,
        customer_info=customer or CustomerInfo(name="Dana Reyes", contact="555-0100", address="12 Elm St"),
        notes=notes,
        items=tuple(lines),
        created_at=created_at,
        updated_at=created_at,
        edit_count=edit_count,
    ).with_totals()


@pytest.fixture
def seed_part(store):
    """Write a part document. Returns its path."""
    def _seed(part_id: str, stock: int, name: str | None = None, price: float = 50.0, **extra):
        path = f"parts/{part_id}"
        store.put_doc(path, {
            "name": name or f"Part {part_id}",
            "stock": stock,
            "code": f"P-{part_id}",
            "price": price,
            **extra,
        })
        return path
    return _seed


@pytest.fixture
def seed_invoice(store):
    """Write an invoice document built from (part_id, quantity) pairs or LineItems."""
    def _seed(lines, **kwargs) -> Invoice:
        items = [line if isinstance(line, LineItem) else make_line(*line) for line in lines]
        invoice = make_invoice(items, **kwargs)
        store.put_doc(f"invoices/{invoice.id}", invoice.to_document())
        return invoice
    return _seed


@pytest.fixture
def line_factory():
    return make_line


@pytest.fixture
def invoice_factory():
    return make_invoice


def stock_of(store: DocumentStore, part_id: str) -> int:
    return store.get_doc(f"parts/{part_id}")["stock"]


@pytest.fixture
def stock():
    """Current stock of a part: stock(store, "A")."""
    return stock_of
