"""
Document store: validated, encrypted persistence of block documents.

The store sits between the client and a storage backend:
- save: validate against the block type, encrypt secret fields, encode
  references, then write through the backend's atomic create/overwrite.
- load: read the at-rest form and decode it back into a Document whose
  secret fields are SecretValue wrappers and reference fields are
  unresolved Reference objects (see ReferenceResolver for hydration).
"""

from __future__ import annotations

from typing import Any

from .documents import SECRET_MARKER, Document, Reference, StoredDocument, make_key
from .errors import (
    DecryptionError,
    DocumentNotFoundError,
    StorageError,
    ValidationError,
)
from .logging_config import get_logger
from .registry import SchemaRegistry
from .schemas import FieldType, SchemaType, validate_slug
from .storage import BlockStorage
from .vault import SecretValue, SecretVault

logger = get_logger(__name__)


class DocumentStore:
    """
    Persist named block documents.

    Deleting a document that does not exist raises DocumentNotFoundError;
    it is never a silent no-op.

    Example:
        store = DocumentStore(storage, registry, vault)
        doc_id = store.save("cube", "rubiks-cube", {"edge_length_inches": 2.25})
        store.load("cube", "rubiks-cube").field_values["edge_length_inches"]  # 2.25
    """

    def __init__(self, storage: BlockStorage, registry: SchemaRegistry, vault: SecretVault):
        self._storage = storage
        self._registry = registry
        self._vault = vault

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def save(
        self,
        type_slug: str,
        name: str,
        values: dict[str, Any],
        overwrite: bool = False,
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> str:
        """
        Validate and persist a document.

        Args:
            type_slug: Registered block type
            name: Document name, unique per block type
            values: Field values; secrets may be raw or SecretValue
            overwrite: Replace an existing document of the same name
            expected_version: Fail with ConflictError unless the stored version matches
                (0 means "must not exist yet")
            timeout: Seconds to wait for the backend before raising TransientError

        Returns:
            The document id (stable across overwrites)

        Raises:
            ValidationError, SchemaNotFoundError, AlreadyExistsError, ConflictError, TransientError
        """
        _check_name(type_slug, name)
        schema = self._registry.get(type_slug)
        validated = self._registry.validate_against(schema, values)
        # Encrypt under the lock so a concurrent key rotation cannot interleave
        with self._storage.transaction(timeout):
            encoded = self._encode(schema, validated)
            stored = self._storage.write_document(
                type_slug,
                name,
                encoded,
                schema_version=schema.version,
                overwrite=overwrite,
                expected_version=expected_version,
                timeout=timeout,
            )
        logger.info(
            "block_document_saved",
            type_slug=type_slug,
            name=name,
            version=stored.version,
            secret_fields=schema.secret_fields,
        )
        return stored.id

    def load(self, type_slug: str, name: str, timeout: float | None = None) -> Document:
        """
        Load a document with secrets decrypted into SecretValue wrappers.

        Raises:
            DocumentNotFoundError: if no document exists under the key
            DecryptionError: if a secret was encrypted with another key
        """
        stored = self._storage.read_document(type_slug, name, timeout=timeout)
        if stored is None:
            raise DocumentNotFoundError(
                f"Block document {make_key(type_slug, name)!r} not found",
                type_slug=type_slug,
                name=name,
            )
        return self._decode(stored)

    def load_by_id(self, document_id: str, timeout: float | None = None) -> Document:
        stored = self._storage.read_document_by_id(document_id, timeout=timeout)
        if stored is None:
            raise DocumentNotFoundError(
                f"No block document with id {document_id!r}",
                metadata={"document_id": document_id},
            )
        return self._decode(stored)

    def exists(self, type_slug: str, name: str, timeout: float | None = None) -> bool:
        return self._storage.exists(type_slug, name, timeout=timeout)

    def delete(
        self,
        type_slug: str,
        name: str,
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> None:
        """
        Delete a document.

        Raises:
            DocumentNotFoundError: if no document exists under the key
            ConflictError: if ``expected_version`` does not match
        """
        removed = self._storage.delete_document(
            type_slug, name, expected_version=expected_version, timeout=timeout
        )
        if not removed:
            raise DocumentNotFoundError(
                f"Block document {make_key(type_slug, name)!r} not found",
                type_slug=type_slug,
                name=name,
            )
        logger.info("block_document_deleted", type_slug=type_slug, name=name)

    def delete_by_id(self, document_id: str, timeout: float | None = None) -> Document:
        """Delete a document by id; returns the deleted document."""
        document = self.load_by_id(document_id, timeout=timeout)
        self.delete(document.type_slug, document.name, timeout=timeout)
        return document

    def list_documents(self, type_slug: str | None = None, timeout: float | None = None) -> list[Document]:
        return [self._decode(s) for s in self._storage.list_documents(type_slug, timeout=timeout)]

    def count(self, type_slug: str) -> int:
        return len(self._storage.list_documents(type_slug))

    # === KEY ROTATION ===

    def rotate_encryption_key(
        self,
        new_key: bytes | str,
        validate_strength: bool = True,
        timeout: float | None = None,
    ) -> dict[str, bool]:
        """
        Re-encrypt every secret field with a new key.

        1. decrypts every document with the current key (nothing is written
           if any document fails)
        2. rewrites each document encrypted with the new key
        3. on any failure, restores every rewritten document and the old key

        The storage lock is held throughout, so saves from other callers
        wait for the rotation and are never reverted by it.

        Returns:
            dict mapping ``type_slug/name`` to success status

        Raises:
            ValueError: if the new key is malformed
            DecryptionError: if a document cannot be decrypted with the current key
            TransientError: if the storage lock could not be acquired in time
        """
        if validate_strength:
            new_key = SecretVault.validate_key(new_key)
        new_vault = SecretVault(new_key)

        with self._storage.transaction(timeout):
            originals = self._storage.list_documents()
            if not originals:
                logger.info("key_rotation_skipped", reason="no documents")
                self._vault = new_vault
                return {}

            logger.info("key_rotation_started", documents=len(originals))

            # First pass: make sure everything decrypts before writing anything
            decoded = [(stored, self._decode(stored)) for stored in originals]

            old_vault = self._vault
            rewritten: list[StoredDocument] = []
            results: dict[str, bool] = {}
            try:
                self._vault = new_vault
                for stored, document in decoded:
                    schema = self._registry.get(stored.type_slug, stored.schema_version)
                    reencoded = stored.model_copy(
                        update={"field_values": self._encode(schema, document.field_values)}
                    )
                    self._storage.replace_document(reencoded)
                    rewritten.append(stored)
                    results[stored.key] = True
            except Exception as e:
                logger.error("key_rotation_failed", error=str(e), rolled_back=len(rewritten))
                self._vault = old_vault
                for stored in rewritten:
                    self._storage.replace_document(stored)
                raise

        logger.info("key_rotation_completed", documents=len(results))
        return results

    # === ENCODING ===

    def _encode(self, schema: SchemaType, values: dict[str, Any]) -> dict[str, Any]:
        definitions = schema.field_map
        encoded: dict[str, Any] = {}
        for name, value in values.items():
            definition = definitions.get(name)
            if value is None:
                encoded[name] = None
            elif definition is not None and definition.secret:
                encoded[name] = {SECRET_MARKER: self._vault.encrypt(value)}
            elif definition is not None and definition.type == FieldType.REFERENCE:
                encoded[name] = Reference.coerce(value).to_marker()
            else:
                encoded[name] = value
        return encoded

    def _decode(self, stored: StoredDocument) -> Document:
        schema = self._registry.get(stored.type_slug, stored.schema_version)
        definitions = schema.field_map
        values: dict[str, Any] = {}
        for name, value in stored.field_values.items():
            definition = definitions.get(name)
            if value is None or definition is None:
                values[name] = value
            elif definition.secret:
                values[name] = self._decrypt_field(stored, name, value)
            elif definition.type == FieldType.REFERENCE:
                values[name] = Reference.coerce(value)
            else:
                values[name] = value
        return Document(
            id=stored.id,
            type_slug=stored.type_slug,
            name=stored.name,
            field_values=values,
            version=stored.version,
            schema_version=stored.schema_version,
            created_at=stored.created_at,
            updated_at=stored.updated_at,
        )

    def _decrypt_field(self, stored: StoredDocument, field: str, value: Any) -> SecretValue:
        if not isinstance(value, dict) or not isinstance(value.get(SECRET_MARKER), str):
            raise StorageError(
                "Secret field is not encrypted at rest",
                type_slug=stored.type_slug,
                name=stored.name,
                field=field,
            )
        try:
            return SecretValue(self._vault.decrypt(value[SECRET_MARKER]))
        except DecryptionError as e:
            raise DecryptionError(
                "Failed to decrypt secret field; was it encrypted with another key?",
                type_slug=stored.type_slug,
                name=stored.name,
                field=field,
                cause=e,
            ) from e


def _check_name(type_slug: str, name: str) -> None:
    try:
        validate_slug(type_slug)
        validate_slug(name, "name")
    except ValueError as e:
        raise ValidationError(str(e), type_slug=type_slug, name=name) from e

