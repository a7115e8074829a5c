"""
Block type registry: register, look up and validate against block schemas.

Each block type is a SchemaType stored under its slug. Registration is
idempotent for an identical field list; a different field list under a
used slug is a conflict unless registered explicitly as a new version.
Validation is strict: values are not coerced between types.
"""

from __future__ import annotations

from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from pydantic import ConfigDict, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .documents import Reference
from .errors import SchemaConflictError, SchemaNotFoundError, ValidationError
from .logging_config import get_logger
from .schemas import FieldDefinition, FieldType, SchemaType
from .storage import BlockStorage
from .vault import SecretValue, unwrap

logger = get_logger(__name__)

_PYTHON_TYPES: dict[FieldType, Any] = {
    FieldType.STRING: str,
    FieldType.INTEGER: int,
    FieldType.FLOAT: float,
    FieldType.BOOLEAN: bool,
    FieldType.MAPPING: dict[str, Any],
    FieldType.LIST: list[Any],
    FieldType.ANY: Any,
}


@lru_cache(maxsize=None)
def _adapter(field_type: FieldType) -> TypeAdapter:
    return TypeAdapter(_PYTHON_TYPES[field_type], config=ConfigDict(strict=True))


class SchemaRegistry:
    """
    Registry of block types backed by a BlockStorage.

    Example:
        registry = SchemaRegistry(InMemoryStorage())
        registry.register(SchemaType.from_fields("cube", {"edge_length_inches": "float"}))
        registry.validate("cube", {"edge_length_inches": 2.25})
    """

    def __init__(self, storage: BlockStorage):
        self._storage = storage

    def register(self, schema: SchemaType, new_version: bool = False) -> str:
        """
        Register a block type.

        Args:
            schema: The schema to register
            new_version: Store a schema with a different field list as the next version

        Returns:
            The schema's slug

        Raises:
            SchemaConflictError: if the slug holds a schema with a different field
                list and ``new_version`` is False
        """
        added: list[int] = []

        def merge(versions: list[SchemaType]) -> SchemaType | None:
            if not versions:
                added.append(1)
                return schema.model_copy(update={"version": 1, "created_at": datetime.now(UTC)})

            latest = versions[-1]
            if latest.checksum == schema.checksum:
                # Same fields: only display metadata may change
                updated = latest.model_copy(
                    update={
                        "name": schema.name,
                        "description": schema.description,
                        "capabilities": schema.capabilities,
                        "fields": schema.fields,
                    }
                )
                return updated if updated != latest else None

            if not new_version:
                raise SchemaConflictError(
                    f"Block type {schema.slug!r} is already registered with different fields "
                    f"({latest.checksum} != {schema.checksum}); register with new_version=True "
                    "to add a version",
                    type_slug=schema.slug,
                    metadata={"registered_version": latest.version},
                )

            added.append(latest.version + 1)
            return schema.model_copy(
                update={"version": latest.version + 1, "created_at": datetime.now(UTC)}
            )

        # Compare and write under one storage lock
        self._storage.update_schemas(schema.slug, merge)
        if added:
            logger.info("block_type_registered", type_slug=schema.slug, version=added[0])
        return schema.slug

    def get(self, slug: str, version: int | None = None) -> SchemaType:
        """
        Return a block type, the latest version unless one is requested.

        Raises:
            SchemaNotFoundError: if the slug (or version) is not registered
        """
        versions = self._storage.load_schemas(slug)
        if not versions:
            raise SchemaNotFoundError(f"No block type registered as {slug!r}", type_slug=slug)
        if version is None:
            return versions[-1]
        for schema in versions:
            if schema.version == version:
                return schema
        raise SchemaNotFoundError(
            f"Block type {slug!r} has no version {version}",
            type_slug=slug,
            metadata={"version": version},
        )

    def versions(self, slug: str) -> list[SchemaType]:
        versions = self._storage.load_schemas(slug)
        if not versions:
            raise SchemaNotFoundError(f"No block type registered as {slug!r}", type_slug=slug)
        return versions

    def exists(self, slug: str) -> bool:
        return bool(self._storage.load_schemas(slug))

    def list_types(self) -> list[SchemaType]:
        """Latest version of every block type, sorted by slug."""
        return [self.get(slug) for slug in self._storage.list_schema_slugs()]

    def unregister(self, slug: str) -> None:
        """
        Remove every version of a block type.

        Raises:
            SchemaNotFoundError: if the slug is not registered
        """
        if not self._storage.delete_schema(slug):
            raise SchemaNotFoundError(f"No block type registered as {slug!r}", type_slug=slug)
        logger.info("block_type_unregistered", type_slug=slug)

    # === VALIDATION ===

    def validate(self, slug: str, values: dict[str, Any]) -> dict[str, Any]:
        """
        Validate field values against the latest version of a block type.

        Defaults are filled in for omitted optional fields, secret fields are
        wrapped in SecretValue and reference fields become Reference objects.

        Raises:
            SchemaNotFoundError: if the block type is not registered
            ValidationError: listing every failing field
        """
        return self.validate_against(self.get(slug), values)

    def validate_against(self, schema: SchemaType, values: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(values, dict):
            raise ValidationError(
                f"Block values must be a mapping, got {type(values).__name__}",
                type_slug=schema.slug,
            )

        definitions = schema.field_map
        errors: list[dict[str, Any]] = []
        result: dict[str, Any] = {}

        for name in values:
            if name not in definitions:
                errors.append({"field": name, "error": "unknown field"})

        for definition in schema.fields:
            if definition.name not in values or values[definition.name] is None:
                if definition.name in values and not definition.required:
                    result[definition.name] = None
                elif definition.required:
                    errors.append({"field": definition.name, "error": "field required"})
                elif definition.default is not None:
                    result[definition.name] = self._validate_field(definition, definition.default)
                continue
            try:
                result[definition.name] = self._validate_field(definition, values[definition.name])
            except ValueError as e:
                errors.append({"field": definition.name, "error": str(e)})

        if errors:
            summary = "; ".join(f"{e['field']}: {e['error']}" for e in errors)
            raise ValidationError(
                f"Invalid values for block type {schema.slug!r}: {summary}",
                type_slug=schema.slug,
                field=errors[0]["field"],
                errors=errors,
            )
        return result

    def _validate_field(self, definition: FieldDefinition, value: Any) -> Any:
        if definition.type == FieldType.REFERENCE:
            reference = Reference.coerce(value)
            if reference.block_type_slug != definition.reference_type:
                raise ValueError(
                    f"reference must point to a {definition.reference_type!r} block, "
                    f"not {reference.block_type_slug!r}"
                )
            return reference

        raw = unwrap(value) if definition.secret else value
        if isinstance(raw, SecretValue):
            raise ValueError("secret value given for a non-secret field")
        try:
            validated = _adapter(definition.type).validate_python(raw)
        except PydanticValidationError as e:
            # Messages never include the input for secret fields
            message = e.errors(include_input=False, include_url=False)[0]["msg"]
            raise ValueError(message) from None
        return SecretValue(validated) if definition.secret else validated
