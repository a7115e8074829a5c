"""
Hive Blockstore: typed, secret-aware configuration blocks.

Users store configuration, credentials and infrastructure settings as named
block documents and reuse them across jobs:

- **Block types**: schemas registered under a stable slug
- **Documents**: named, validated instances of a block type
- **Secrets**: fields flagged secret are Fernet-encrypted at rest and masked
  in every str/repr/serialization/log path
- **References**: a field may point at another named document; loads hydrate
  the reference graph and reject cycles

Quick start:

    from blockstore import Block, SecretValue

    class Cube(Block):
        edge_length_inches: float

    Cube(edge_length_inches=2.25).save("rubiks-cube")
    Cube.load("rubiks-cube").edge_length_inches  # 2.25

See `blockstore.cli` for the ``blockstore`` command.
"""

from blockstore.block import Block, block_classes, get_block_class
from blockstore.catalog import (
    JSON,
    ConnectionProfile,
    DatabaseCredentials,
    Secret,
    String,
    Webhook,
    register_builtin_blocks,
)
from blockstore.client import BlockClient, DocumentCache, get_client, set_client
from blockstore.documents import Document, Reference, StoredDocument
from blockstore.errors import (
    AlreadyExistsError,
    BlockstoreError,
    ConflictError,
    CyclicReferenceError,
    DecryptionError,
    DocumentNotFoundError,
    NotFoundError,
    SchemaConflictError,
    SchemaNotFoundError,
    StorageError,
    TransientError,
    ValidationError,
)
from blockstore.logging_config import LogContext, configure_logging, get_logger
from blockstore.registry import SchemaRegistry
from blockstore.resilience import retry_transient
from blockstore.resolver import ReferenceResolver
from blockstore.schemas import FieldDefinition, FieldType, SchemaType
from blockstore.settings import BlockstoreSettings, load_settings
from blockstore.storage import BlockStorage, FileStorage, InMemoryStorage
from blockstore.store import DocumentStore
from blockstore.vault import MASK, SecretValue, SecretVault

__version__ = "0.1.0"

__all__ = [
    # Blocks
    "Block",
    "block_classes",
    "get_block_class",
    "String",
    "JSON",
    "Secret",
    "Webhook",
    "DatabaseCredentials",
    "ConnectionProfile",
    "register_builtin_blocks",
    # Client
    "BlockClient",
    "DocumentCache",
    "get_client",
    "set_client",
    # Schemas and documents
    "FieldDefinition",
    "FieldType",
    "SchemaType",
    "SchemaRegistry",
    "Document",
    "Reference",
    "StoredDocument",
    "DocumentStore",
    "ReferenceResolver",
    # Storage
    "BlockStorage",
    "FileStorage",
    "InMemoryStorage",
    # Secrets
    "MASK",
    "SecretValue",
    "SecretVault",
    # Settings, logging, resilience
    "BlockstoreSettings",
    "load_settings",
    "configure_logging",
    "get_logger",
    "LogContext",
    "retry_transient",
    # Errors
    "BlockstoreError",
    "ValidationError",
    "NotFoundError",
    "SchemaNotFoundError",
    "DocumentNotFoundError",
    "AlreadyExistsError",
    "SchemaConflictError",
    "ConflictError",
    "CyclicReferenceError",
    "TransientError",
    "StorageError",
    "DecryptionError",
]
