"""
Storage backends for block types and block documents.

This module provides abstract and concrete storage implementations:
- BlockStorage: Abstract base class; owns locking, version checks and error mapping
- FileStorage: JSON files on disk (default for production)
- InMemoryStorage: For testing and ephemeral use

Backends only ever see at-rest data: StoredDocument values whose secret
fields are already encrypted by the document store.
"""

from __future__ import annotations

import json
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager, nullcontext
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .documents import StoredDocument, make_key
from .errors import (
    AlreadyExistsError,
    ConflictError,
    StorageError,
    TransientError,
    ValidationError,
)
from .logging_config import get_logger
from .schemas import SchemaType, validate_slug
from .utils.io import atomic_write

if os.name == "nt":
    import msvcrt
else:
    import fcntl

logger = get_logger(__name__)

DEFAULT_LOCK_TIMEOUT = 10.0
LOCK_POLL_INTERVAL = 0.05


class BlockStorage(ABC):
    """
    Abstract storage backend for block types and documents.

    Subclasses implement the unlocked primitives (``_read_*``, ``_write_*``,
    ``_remove_*``). The public methods run each primitive under a lock
    acquired with a timeout, so every operation is atomic with respect to
    other callers of the same backend and never blocks indefinitely.
    Backends shared between processes add an inter-process lock through
    ``_process_lock``; it is taken once, by the outermost locked call.

    Error mapping:
        - lock timeout, OS timeouts -> TransientError (retryable)
        - other OSError             -> StorageError
    """

    def __init__(self, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        self._lock_depth = 0

    @contextmanager
    def _locked(self, timeout: float | None = None) -> Iterator[None]:
        wait = max(self.lock_timeout if timeout is None else timeout, 0)
        deadline = time.monotonic() + wait
        if not self._lock.acquire(timeout=wait):
            raise TransientError(
                f"Timed out after {wait}s waiting for the storage lock",
                metadata={"timeout": wait},
            )
        self._lock_depth += 1
        try:
            with self._process_lock(deadline) if self._lock_depth == 1 else nullcontext():
                yield
        except (TimeoutError, BlockingIOError, InterruptedError) as e:
            raise TransientError(f"Storage operation timed out: {e}", cause=e) from e
        except OSError as e:
            raise StorageError(f"Storage I/O failed: {e}", cause=e) from e
        finally:
            self._lock_depth -= 1
            self._lock.release()

    def _process_lock(self, deadline: float):
        """Context manager guarding the backend against other processes."""
        return nullcontext()

    def transaction(self, timeout: float | None = None):
        """
        Hold the storage lock across several operations.

        Operations called inside the block reuse the held lock, so a
        read-modify-write sequence cannot interleave with other writers.

        Example:
            with storage.transaction():
                for document in storage.list_documents():
                    storage.replace_document(reencrypt(document))
        """
        return self._locked(timeout)

    # === PRIMITIVES ===

    @abstractmethod
    def _read_schemas(self, slug: str) -> list[SchemaType]:
        """Return every registered version of a block type, oldest first."""

    @abstractmethod
    def _write_schemas(self, slug: str, versions: list[SchemaType]) -> None:
        """Persist the full version list of a block type."""

    @abstractmethod
    def _remove_schemas(self, slug: str) -> bool:
        """Remove a block type; True if it existed."""

    @abstractmethod
    def _schema_slugs(self) -> list[str]:
        """List registered block type slugs."""

    @abstractmethod
    def _read_document(self, type_slug: str, name: str) -> StoredDocument | None:
        """Load a document by key."""

    @abstractmethod
    def _write_document(self, document: StoredDocument) -> None:
        """Persist a document, replacing any previous one under the same key."""

    @abstractmethod
    def _remove_document(self, type_slug: str, name: str) -> bool:
        """Remove a document; True if it existed."""

    @abstractmethod
    def _document_keys(self, type_slug: str | None = None) -> list[tuple[str, str]]:
        """List ``(type_slug, name)`` pairs, optionally for one type."""

    @abstractmethod
    def _key_for_id(self, document_id: str) -> tuple[str, str] | None:
        """Map a document id to its key."""

    # === SCHEMA OPERATIONS ===

    def save_schema(self, schema: SchemaType, timeout: float | None = None) -> None:
        """Insert or replace one version of a block type."""
        self.update_schemas(schema.slug, lambda current: schema, timeout=timeout)

    def update_schemas(
        self,
        slug: str,
        update: Callable[[list[SchemaType]], SchemaType | None],
        timeout: float | None = None,
    ) -> SchemaType | None:
        """
        Read-compare-write a block type under one lock.

        ``update`` receives the current versions and returns the version to
        store, or None to leave storage untouched. Exceptions raised by
        ``update`` abort without writing.
        """
        with self._locked(timeout):
            current = self._read_schemas(slug)
            schema = update(current)
            if schema is not None:
                versions = [s for s in current if s.version != schema.version]
                versions.append(schema)
                versions.sort(key=lambda s: s.version)
                self._write_schemas(slug, versions)
        if schema is not None:
            logger.debug("schema_saved", type_slug=slug, version=schema.version)
        return schema

    def load_schemas(self, slug: str, timeout: float | None = None) -> list[SchemaType]:
        """Return all versions of a block type (empty if unregistered)."""
        with self._locked(timeout):
            return self._read_schemas(slug)

    def delete_schema(self, slug: str, timeout: float | None = None) -> bool:
        with self._locked(timeout):
            return self._remove_schemas(slug)

    def list_schema_slugs(self, timeout: float | None = None) -> list[str]:
        with self._locked(timeout):
            return sorted(self._schema_slugs())

    # === DOCUMENT OPERATIONS ===

    def write_document(
        self,
        type_slug: str,
        name: str,
        field_values: dict[str, Any],
        *,
        schema_version: int = 1,
        overwrite: bool = False,
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> StoredDocument:
        """
        Create or overwrite a document.

        The existence and version checks run under the same lock as the
        write. An overwrite keeps the document id and bumps its version.

        Raises:
            AlreadyExistsError: if the key exists and ``overwrite`` is False
            ConflictError: if ``expected_version`` does not match the stored version
            TransientError: if the lock could not be acquired in time
        """
        with self._locked(timeout):
            existing = self._read_document(type_slug, name)
            actual_version = existing.version if existing else 0

            if expected_version is not None and expected_version != actual_version:
                raise ConflictError(
                    f"Version mismatch: expected {expected_version}, found {actual_version}",
                    type_slug=type_slug,
                    name=name,
                    expected_version=expected_version,
                    actual_version=actual_version,
                )
            if existing is not None and not overwrite:
                raise AlreadyExistsError(
                    f"Block document {make_key(type_slug, name)!r} already exists; "
                    "use overwrite=True to replace it",
                    type_slug=type_slug,
                    name=name,
                )

            now = datetime.now(UTC)
            if existing is not None:
                document = existing.model_copy(
                    update={
                        "field_values": field_values,
                        "version": existing.version + 1,
                        "schema_version": schema_version,
                        "updated_at": now,
                    }
                )
            else:
                document = StoredDocument(
                    id=_new_id(),
                    type_slug=type_slug,
                    name=name,
                    field_values=field_values,
                    schema_version=schema_version,
                    created_at=now,
                    updated_at=now,
                )
            self._write_document(document)

        logger.debug("document_written", type_slug=type_slug, name=name, version=document.version)
        return document

    def replace_document(self, document: StoredDocument, timeout: float | None = None) -> None:
        """Write a document exactly as given (used for re-encryption and rollback)."""
        with self._locked(timeout):
            self._write_document(document)

    def read_document(
        self, type_slug: str, name: str, timeout: float | None = None
    ) -> StoredDocument | None:
        with self._locked(timeout):
            return self._read_document(type_slug, name)

    def read_document_by_id(
        self, document_id: str, timeout: float | None = None
    ) -> StoredDocument | None:
        with self._locked(timeout):
            key = self._key_for_id(document_id)
            if key is None:
                return None
            return self._read_document(*key)

    def delete_document(
        self,
        type_slug: str,
        name: str,
        *,
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> bool:
        """
        Delete a document.

        Returns:
            True if the document existed and was deleted, False otherwise

        Raises:
            ConflictError: if ``expected_version`` does not match the stored version
        """
        with self._locked(timeout):
            if expected_version is not None:
                existing = self._read_document(type_slug, name)
                actual_version = existing.version if existing else 0
                if actual_version != expected_version:
                    raise ConflictError(
                        f"Version mismatch: expected {expected_version}, found {actual_version}",
                        type_slug=type_slug,
                        name=name,
                        expected_version=expected_version,
                        actual_version=actual_version,
                    )
            removed = self._remove_document(type_slug, name)
        if removed:
            logger.debug("document_deleted", type_slug=type_slug, name=name)
        return removed

    def list_documents(
        self, type_slug: str | None = None, timeout: float | None = None
    ) -> list[StoredDocument]:
        with self._locked(timeout):
            documents = []
            for slug, name in sorted(self._document_keys(type_slug)):
                document = self._read_document(slug, name)
                if document is not None:
                    documents.append(document)
            return documents

    def exists(self, type_slug: str, name: str, timeout: float | None = None) -> bool:
        with self._locked(timeout):
            return self._read_document(type_slug, name) is not None


def _new_id() -> str:
    return str(uuid.uuid4())


def _try_lock_file(fd: int) -> bool:
    try:
        if os.name == "nt":
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, PermissionError):
        return False
    return True


def _unlock_file(fd: int) -> None:
    if os.name == "nt":
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)


class FileStorage(BlockStorage):
    """
    JSON file storage.

    Directory structure:
        {base_path}/
            schemas/
                {type_slug}.json          # All versions of a block type
            documents/
                {type_slug}/
                    {name}.json           # At-rest document (secrets encrypted)
            metadata/
                index.json                # document id -> key index

    Every file is replaced atomically. Slugs and names are validated before
    they are used as path components.

    Example:
        storage = FileStorage("~/.blockstore")
        storage.write_document("cube", "rubiks-cube", {"edge_length_inches": 2.25})
    """

    DEFAULT_PATH = "~/.blockstore"

    def __init__(self, base_path: str | Path | None = None, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        super().__init__(lock_timeout=lock_timeout)
        self.base_path = Path(base_path or self.DEFAULT_PATH).expanduser()
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        """Create directory structure."""
        (self.base_path / "schemas").mkdir(parents=True, exist_ok=True)
        (self.base_path / "documents").mkdir(parents=True, exist_ok=True)
        (self.base_path / "metadata").mkdir(parents=True, exist_ok=True)

    @property
    def _lock_path(self) -> Path:
        return self.base_path / "metadata" / ".lock"

    @contextmanager
    def _process_lock(self, deadline: float) -> Iterator[None]:
        """Sentinel file lock shared by every FileStorage on the same directory."""
        with open(self._lock_path, "a") as f:
            while not _try_lock_file(f.fileno()):
                if time.monotonic() >= deadline:
                    raise TransientError(
                        f"Timed out waiting for the file lock on {self.base_path}",
                        metadata={"lock_path": str(self._lock_path)},
                    )
                time.sleep(LOCK_POLL_INTERVAL)
            try:
                yield
            finally:
                _unlock_file(f.fileno())

    @staticmethod
    def _safe(value: str, kind: str) -> str:
        try:
            return validate_slug(value, kind)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def _schema_path(self, slug: str) -> Path:
        return self.base_path / "schemas" / f"{self._safe(slug, 'slug')}.json"

    def _doc_path(self, type_slug: str, name: str) -> Path:
        return (
            self.base_path
            / "documents"
            / self._safe(type_slug, "slug")
            / f"{self._safe(name, 'name')}.json"
        )

    @property
    def _index_path(self) -> Path:
        return self.base_path / "metadata" / "index.json"

    def _read_json(self, path: Path) -> Any:
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt storage file {path}: {e}", cause=e) from e

    # === SCHEMAS ===

    def _read_schemas(self, slug: str) -> list[SchemaType]:
        path = self._schema_path(slug)
        if not path.exists():
            return []
        data = self._read_json(path)
        try:
            return [SchemaType.model_validate(v) for v in data.get("versions", [])]
        except PydanticValidationError as e:
            raise StorageError(f"Corrupt schema file {path}", type_slug=slug, cause=e) from e

    def _write_schemas(self, slug: str, versions: list[SchemaType]) -> None:
        payload = {"versions": [s.model_dump(mode="json") for s in versions]}
        with atomic_write(self._schema_path(slug)) as f:
            json.dump(payload, f, indent=2)

    def _remove_schemas(self, slug: str) -> bool:
        path = self._schema_path(slug)
        if path.exists():
            path.unlink()
            return True
        return False

    def _schema_slugs(self) -> list[str]:
        return [p.stem for p in (self.base_path / "schemas").glob("*.json")]

    # === DOCUMENTS ===

    def _read_document(self, type_slug: str, name: str) -> StoredDocument | None:
        path = self._doc_path(type_slug, name)
        if not path.exists():
            return None
        data = self._read_json(path)
        try:
            return StoredDocument.model_validate(data)
        except PydanticValidationError as e:
            raise StorageError(
                f"Corrupt document file {path}", type_slug=type_slug, name=name, cause=e
            ) from e

    def _write_document(self, document: StoredDocument) -> None:
        with atomic_write(self._doc_path(document.type_slug, document.name)) as f:
            f.write(document.model_dump_json(indent=2))
        self._update_index(document.id, "save", document.key)

    def _remove_document(self, type_slug: str, name: str) -> bool:
        path = self._doc_path(type_slug, name)
        if not path.exists():
            return False
        document = self._read_document(type_slug, name)
        path.unlink()
        if document is not None:
            self._update_index(document.id, "delete")
        return True

    def _document_keys(self, type_slug: str | None = None) -> list[tuple[str, str]]:
        root = self.base_path / "documents"
        if type_slug is not None:
            type_dirs = [root / self._safe(type_slug, "slug")]
        else:
            type_dirs = [p for p in root.iterdir() if p.is_dir()]
        keys = []
        for type_dir in type_dirs:
            if not type_dir.is_dir():
                continue
            keys.extend((type_dir.name, p.stem) for p in type_dir.glob("*.json"))
        return keys

    def _key_for_id(self, document_id: str) -> tuple[str, str] | None:
        if not self._index_path.exists():
            return None
        entry = self._read_json(self._index_path).get("documents", {}).get(document_id)
        if entry is None:
            return None
        slug, _, name = entry["key"].partition("/")
        return slug, name

    def _update_index(self, document_id: str, operation: str, key: str | None = None) -> None:
        """Update the id index."""
        if self._index_path.exists():
            index = self._read_json(self._index_path)
        else:
            index = {"documents": {}, "version": "1.0"}

        if operation == "save":
            index["documents"][document_id] = {
                "key": key,
                "updated_at": datetime.now(UTC).isoformat(),
            }
        elif operation == "delete":
            index["documents"].pop(document_id, None)

        index["last_modified"] = datetime.now(UTC).isoformat()

        with atomic_write(self._index_path) as f:
            json.dump(index, f, indent=2)


class InMemoryStorage(BlockStorage):
    """
    In-memory storage for testing.

    Data is lost when the process exits. Values are deep-copied on the way
    in and out so callers never share state with the backend.

    Example:
        storage = InMemoryStorage()
        client = BlockClient(storage=storage, vault=SecretVault(SecretVault.generate_key()))
    """

    def __init__(self, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        super().__init__(lock_timeout=lock_timeout)
        self._schemas: dict[str, list[SchemaType]] = {}
        self._documents: dict[tuple[str, str], StoredDocument] = {}

    def _read_schemas(self, slug: str) -> list[SchemaType]:
        return [s.model_copy(deep=True) for s in self._schemas.get(slug, [])]

    def _write_schemas(self, slug: str, versions: list[SchemaType]) -> None:
        self._schemas[slug] = [s.model_copy(deep=True) for s in versions]

    def _remove_schemas(self, slug: str) -> bool:
        return self._schemas.pop(slug, None) is not None

    def _schema_slugs(self) -> list[str]:
        return list(self._schemas)

    def _read_document(self, type_slug: str, name: str) -> StoredDocument | None:
        document = self._documents.get((type_slug, name))
        return document.model_copy(deep=True) if document else None

    def _write_document(self, document: StoredDocument) -> None:
        self._documents[(document.type_slug, document.name)] = document.model_copy(deep=True)

    def _remove_document(self, type_slug: str, name: str) -> bool:
        return self._documents.pop((type_slug, name), None) is not None

    def _document_keys(self, type_slug: str | None = None) -> list[tuple[str, str]]:
        return [k for k in self._documents if type_slug is None or k[0] == type_slug]

    def _key_for_id(self, document_id: str) -> tuple[str, str] | None:
        for key, document in self._documents.items():
            if document.id == document_id:
                return key
        return None

    def clear(self) -> None:
        """Remove all block types and documents."""
        self._schemas.clear()
        self._documents.clear()
