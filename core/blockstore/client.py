"""
Client façade for block types and block documents.

BlockClient ties the registry, document store, vault and resolver together
behind the operations users call: register a block type, save, load
(hydrated), delete and list documents, addressed either by
``(type_slug, name)``, by the ``"type_slug/name"`` key, or by document id.

Usage:
    from blockstore import BlockClient, SchemaType

    client = BlockClient.from_settings()
    client.register_block_type(SchemaType.from_fields("cube", {"edge_length_inches": "float"}))
    client.save("cube", "rubiks-cube", {"edge_length_inches": 2.25})
    client.load_by_key("cube/rubiks-cube").field_values["edge_length_inches"]  # 2.25
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Any

from .documents import Document, split_key
from .errors import ValidationError
from .logging_config import get_logger, log_performance
from .registry import SchemaRegistry
from .resolver import ReferenceResolver
from .schemas import SchemaType
from .settings import BlockstoreSettings, load_settings
from .storage import BlockStorage, FileStorage, InMemoryStorage
from .store import DocumentStore
from .vault import SecretVault

if TYPE_CHECKING:
    from .block import Block

logger = get_logger(__name__)


class DocumentCache:
    """Thread-safe TTL cache of loaded (unhydrated) documents keyed by ``type_slug/name``."""

    def __init__(self, ttl: float = 60.0):
        self.ttl = ttl
        self._entries: dict[str, tuple[float, Document]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def get(self, key: str) -> Document | None:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry[0] < time.monotonic():
                self._entries.pop(key, None)
                self.misses += 1
                return None
            self.hits += 1
            return entry[1].model_copy(deep=True)

    def put(self, document: Document) -> None:
        if not self.enabled:
            return
        with self._lock:
            now = time.monotonic()
            self._purge_expired(now)
            self._entries[document.key] = (now + self.ttl, document.model_copy(deep=True))

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at < now]
        for key in expired:
            del self._entries[key]

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class BlockClient:
    """
    User-facing operations over a block storage backend.

    Every save, load and delete is an independent atomic operation against
    the backend. Loads read through a per-client TTL cache which is
    invalidated by this client's writes; with several writers, pass
    ``cache_ttl=0`` or keep the TTL short.
    """

    def __init__(
        self,
        storage: BlockStorage | None = None,
        vault: SecretVault | None = None,
        cache_ttl: float = 0.0,
    ):
        self.storage = storage or InMemoryStorage()
        if vault is None:
            vault = SecretVault(SecretVault.generate_key())
            logger.warning(
                "generated_encryption_key",
                hint="Secrets saved by this client can only be read back by this process",
            )
        self.registry = SchemaRegistry(self.storage)
        self.store = DocumentStore(self.storage, self.registry, vault)
        self.resolver = ReferenceResolver(self.store, loader=self._load_unhydrated)
        self.cache = DocumentCache(ttl=cache_ttl)

    @classmethod
    def from_settings(cls, settings: BlockstoreSettings | None = None) -> BlockClient:
        """Build a client from resolved settings (see :func:`load_settings`)."""
        settings = settings or load_settings()
        if settings.storage == "memory":
            storage: BlockStorage = InMemoryStorage(lock_timeout=settings.lock_timeout)
        else:
            storage = FileStorage(settings.home, lock_timeout=settings.lock_timeout)
        vault = None
        if settings.encryption_key is not None:
            vault = SecretVault(settings.encryption_key.get_secret_value())
        return cls(storage=storage, vault=vault, cache_ttl=settings.cache_ttl)

    # === BLOCK TYPES ===

    def register_block_type(
        self, block_type: SchemaType | type[Block], new_version: bool = False
    ) -> str:
        """
        Register a block type from a SchemaType or a Block subclass.

        Referenced block types of a Block subclass are registered first.
        """
        if isinstance(block_type, SchemaType):
            return self.registry.register(block_type, new_version=new_version)
        for dependency in block_type.referenced_block_types():
            self.register_block_type(dependency, new_version=new_version)
        return self.registry.register(block_type.to_schema(), new_version=new_version)

    def get_block_type(self, slug: str, version: int | None = None) -> SchemaType:
        return self.registry.get(slug, version)

    def list_block_types(self) -> list[SchemaType]:
        return self.registry.list_types()

    def delete_block_type(self, slug: str) -> None:
        """
        Unregister a block type.

        Raises:
            SchemaNotFoundError: if the slug is not registered
            ValidationError: if documents of this type still exist
        """
        remaining = self.store.count(slug)
        if remaining:
            raise ValidationError(
                f"Cannot delete block type {slug!r}: {remaining} document(s) still use it",
                type_slug=slug,
            )
        self.registry.unregister(slug)

    # === DOCUMENTS ===

    @log_performance("block_save")
    def save(
        self,
        type_slug: str,
        name: str,
        values: dict[str, Any],
        overwrite: bool = False,
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> str:
        """Validate and persist a document; returns its id. See :meth:`DocumentStore.save`."""
        try:
            return self.store.save(
                type_slug,
                name,
                values,
                overwrite=overwrite,
                expected_version=expected_version,
                timeout=timeout,
            )
        finally:
            self.cache.invalidate(f"{type_slug}/{name}")

    @log_performance("block_load")
    def load(
        self,
        type_slug: str,
        name: str,
        hydrate: bool = True,
        timeout: float | None = None,
    ) -> Document:
        """
        Load a document, resolving nested references unless ``hydrate`` is False.

        Raises:
            DocumentNotFoundError: if the document (or a referenced one) is missing
            CyclicReferenceError: if references form a cycle
        """
        document = self._load_unhydrated(type_slug, name, timeout=timeout)
        return self.resolver.hydrate(document) if hydrate else document

    def load_by_key(self, key: str, hydrate: bool = True, timeout: float | None = None) -> Document:
        type_slug, name = split_key(key)
        return self.load(type_slug, name, hydrate=hydrate, timeout=timeout)

    def load_by_id(self, document_id: str, hydrate: bool = True, timeout: float | None = None) -> Document:
        document = self.store.load_by_id(document_id, timeout=timeout)
        return self.resolver.hydrate(document) if hydrate else document

    @log_performance("block_delete")
    def delete(
        self,
        type_slug: str,
        name: str,
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> None:
        """Delete a document; raises DocumentNotFoundError if it does not exist."""
        try:
            self.store.delete(type_slug, name, expected_version=expected_version, timeout=timeout)
        finally:
            self.cache.invalidate(f"{type_slug}/{name}")

    def delete_by_key(self, key: str, timeout: float | None = None) -> None:
        type_slug, name = split_key(key)
        self.delete(type_slug, name, timeout=timeout)

    def delete_by_id(self, document_id: str, timeout: float | None = None) -> Document:
        document = self.store.delete_by_id(document_id, timeout=timeout)
        self.cache.invalidate(document.key)
        return document

    def list_documents(self, type_slug: str | None = None) -> list[Document]:
        return self.store.list_documents(type_slug)

    def exists(self, type_slug: str, name: str) -> bool:
        return self.store.exists(type_slug, name)

    # === SECRETS ===

    def rotate_encryption_key(self, new_key: bytes | str) -> dict[str, bool]:
        """Re-encrypt every stored secret with ``new_key``. See :meth:`DocumentStore.rotate_encryption_key`."""
        try:
            return self.store.rotate_encryption_key(new_key)
        finally:
            self.cache.clear()

    def clear_cache(self) -> None:
        self.cache.clear()

    def _load_unhydrated(self, type_slug: str, name: str, timeout: float | None = None) -> Document:
        key = f"{type_slug}/{name}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        document = self.store.load(type_slug, name, timeout=timeout)
        self.cache.put(document)
        return document


# =============================================================================
# Default client
# =============================================================================

_default_client: BlockClient | None = None
_default_lock = threading.Lock()


def get_client() -> BlockClient:
    """Return the process-wide client, building it from settings on first use."""
    global _default_client
    with _default_lock:
        if _default_client is None:
            _default_client = BlockClient.from_settings()
        return _default_client


def set_client(client: BlockClient | None) -> BlockClient | None:
    """Replace the process-wide client; returns the previous one. ``None`` resets it."""
    global _default_client
    with _default_lock:
        previous = _default_client
        _default_client = client
        return previous
