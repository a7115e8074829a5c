"""
Reference resolution for nested block documents.

A reference field stores a (block type slug, name) pointer to another
document. Hydration walks the reference graph depth-first and replaces each
Reference with the loaded, hydrated target Document.

Cycle detection uses the set of keys on the current traversal path, so
shared targets (A -> B, A -> C, B -> D, C -> D) are fine while A -> B -> A
fails with CyclicReferenceError instead of recursing forever.
"""

from __future__ import annotations

from typing import Any, Callable

from .documents import Document, Reference
from .errors import CyclicReferenceError, DocumentNotFoundError
from .logging_config import get_logger
from .store import DocumentStore

logger = get_logger(__name__)


class ReferenceResolver:
    """
    Hydrate documents by loading their referenced documents.

    ``loader`` replaces ``store.load`` for fetching targets (the client
    passes its cached loader).

    Example:
        resolver = ReferenceResolver(store)
        profile = resolver.hydrate(store.load("connection-profile", "warehouse"))
        profile.field_values["credentials"]  # Document, not Reference
    """

    def __init__(
        self,
        store: DocumentStore,
        loader: Callable[[str, str], Document] | None = None,
    ):
        self._store = store
        self._load = loader or store.load

    def hydrate(self, document: Document) -> Document:
        """
        Return a copy of ``document`` with every reference resolved.

        References inside list and mapping values are resolved too. Each
        target is loaded at most once per call.

        Raises:
            CyclicReferenceError: if the reference graph loops back onto the current path
            DocumentNotFoundError: if a referenced document does not exist
        """
        resolved: dict[str, Document] = {}
        return self._hydrate(document, path=[], resolved=resolved)

    def _hydrate(self, document: Document, path: list[str], resolved: dict[str, Document]) -> Document:
        path = path + [document.key]
        values = {
            field: self._resolve_value(value, document, field, path, resolved)
            for field, value in document.field_values.items()
        }
        hydrated = document.model_copy(update={"field_values": values})
        resolved[document.key] = hydrated
        return hydrated

    def _resolve_value(
        self,
        value: Any,
        owner: Document,
        field: str,
        path: list[str],
        resolved: dict[str, Document],
    ) -> Any:
        if isinstance(value, Reference):
            return self._follow(value, owner, field, path, resolved)
        if isinstance(value, dict):
            return {k: self._resolve_value(v, owner, field, path, resolved) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(v, owner, field, path, resolved) for v in value]
        return value

    def _follow(
        self,
        reference: Reference,
        owner: Document,
        field: str,
        path: list[str],
        resolved: dict[str, Document],
    ) -> Document:
        if reference.key in path:
            cycle = path[path.index(reference.key):] + [reference.key]
            raise CyclicReferenceError(
                f"Cyclic block reference: {' -> '.join(cycle)}",
                type_slug=owner.type_slug,
                name=owner.name,
                field=field,
                path=cycle,
            )
        if reference.key in resolved:
            return resolved[reference.key]

        try:
            target = self._load(reference.block_type_slug, reference.name)
        except DocumentNotFoundError as e:
            raise DocumentNotFoundError(
                f"Block document {owner.key!r} references missing document {reference.key!r}",
                type_slug=owner.type_slug,
                name=owner.name,
                field=field,
                metadata={"reference": reference.key},
                cause=e,
            ) from e

        logger.debug("reference_resolved", source=owner.key, field=field, target=reference.key)
        return self._hydrate(target, path, resolved)
