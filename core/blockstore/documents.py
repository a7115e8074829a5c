"""
Block documents and references.

A Document is a named instance of a block type. Its ``field_values`` hold
plain values, SecretValue wrappers for secret fields, and Reference
pointers (or, after hydration, nested Documents) for reference fields.

Every rendering of a Document masks secrets: ``repr()``, ``str()``,
``model_dump()`` and ``model_dump_json()`` never expose raw secret values.
Use :meth:`Document.get` / :func:`blockstore.vault.unwrap` to read them.

StoredDocument is the at-rest form handed to storage backends: secrets are
Fernet tokens and references are ``{"$ref": {...}}`` markers.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, FieldSerializationInfo, field_serializer

from .errors import ValidationError
from .schemas import validate_slug
from .vault import SecretValue, mask

REF_MARKER = "$ref"
SECRET_MARKER = "$secret"


def _now() -> datetime:
    return datetime.now(UTC)


def split_key(key: str) -> tuple[str, str]:
    """
    Split a ``type_slug/name`` key.

    Raises:
        ValidationError: if the key is not of the form ``slug/name``
    """
    slug, sep, name = key.partition("/")
    if not sep or not slug or not name or "/" in name:
        raise ValidationError(f"Invalid block key {key!r}: expected '<type_slug>/<name>'")
    return slug, name


def make_key(type_slug: str, name: str) -> str:
    return f"{type_slug}/{name}"


class Reference(BaseModel):
    """Pointer from a field to another named document."""

    model_config = ConfigDict(frozen=True)

    block_type_slug: str
    name: str

    @property
    def key(self) -> str:
        return make_key(self.block_type_slug, self.name)

    @classmethod
    def coerce(cls, value: Any) -> Reference:
        """
        Build a Reference from a Reference, a ``{"block_type_slug", "name"}``
        mapping (optionally under ``$ref``) or a ``"slug/name"`` string.

        Raises:
            ValueError: if the value cannot be read as a reference
        """
        if isinstance(value, Reference):
            return value
        if isinstance(value, str):
            slug, sep, name = value.partition("/")
            if not sep:
                raise ValueError(f"{value!r} is not a 'slug/name' reference")
            return cls(block_type_slug=validate_slug(slug), name=validate_slug(name, "name"))
        if isinstance(value, dict):
            if REF_MARKER in value and isinstance(value[REF_MARKER], dict):
                value = value[REF_MARKER]
            if set(value) == {"block_type_slug", "name"}:
                return cls(
                    block_type_slug=validate_slug(value["block_type_slug"]),
                    name=validate_slug(value["name"], "name"),
                )
        raise ValueError(f"{type(value).__name__} value cannot be used as a reference")

    def to_marker(self) -> dict[str, Any]:
        return {REF_MARKER: {"block_type_slug": self.block_type_slug, "name": self.name}}

    def __str__(self) -> str:
        return self.key


def _render(value: Any, mode: str) -> Any:
    if isinstance(value, Document):
        return value.model_dump(mode=mode)
    if isinstance(value, Reference):
        return value.to_marker()
    if isinstance(value, SecretValue):
        return value.masked()
    if isinstance(value, dict):
        return {k: _render(v, mode) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_render(v, mode) for v in value]
    return mask(value)


class Document(BaseModel):
    """A named, loaded instance of a block type."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type_slug: str
    name: str
    field_values: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    schema_version: int = 1
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def key(self) -> str:
        return make_key(self.type_slug, self.name)

    def get(self, field: str, default: Any = None, *, reveal: bool = False) -> Any:
        """
        Read a field value.

        Secret fields are returned wrapped unless ``reveal`` is set.
        """
        value = self.field_values.get(field, default)
        if reveal and isinstance(value, SecretValue):
            return value.get_secret_value()
        return value

    @field_serializer("field_values")
    def _mask_field_values(self, values: dict[str, Any], info: FieldSerializationInfo) -> dict[str, Any]:
        return {k: _render(v, info.mode) for k, v in values.items()}

    def __str__(self) -> str:
        return f"{self.key} (v{self.version}) {_render(self.field_values, 'python')}"


class StoredDocument(BaseModel):
    """At-rest form of a document as written by storage backends."""

    id: str
    type_slug: str
    name: str
    field_values: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    schema_version: int = 1
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def key(self) -> str:
        return make_key(self.type_slug, self.name)
