# Infrastructure clients
from clients.vault_client import (
    VaultClient,
    VaultError,
    get_valkey_url,
)
from clients.document_store import (
    BatchOp,
    DocumentStore,
    Subscription,
    Transaction,
    classify_error,
)
