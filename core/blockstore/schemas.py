"""
Block type schemas.

A SchemaType describes the fields of a block type: their value types,
whether they are secret, their defaults, and (for reference fields) which
block type they point at. Schemas are identified by a stable slug and
fingerprinted by a checksum over their field list.
"""

from __future__ import annotations

import hashlib
import json
import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def validate_slug(value: str, kind: str = "slug") -> str:
    """
    Validate a block type slug or document name.

    Only lowercase letters, digits and dashes are allowed, which also keeps
    keys safe to use as file names.

    Raises:
        ValueError: if the value is empty or contains other characters
    """
    if not value or not SLUG_PATTERN.match(value):
        raise ValueError(
            f"Invalid {kind} {value!r}: must only contain lowercase letters, numbers, and dashes"
        )
    return value


class FieldType(StrEnum):
    """Value types a block field can hold."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    MAPPING = "mapping"
    LIST = "list"
    ANY = "any"
    REFERENCE = "reference"


class FieldDefinition(BaseModel):
    """One field of a block type."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: FieldType
    secret: bool = False
    required: bool = True
    default: Any = None
    description: str | None = None
    reference_type: str | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if not v.isidentifier():
            raise ValueError(f"Field name {v!r} must be a valid identifier")
        return v

    @model_validator(mode="after")
    def _check_reference(self) -> FieldDefinition:
        if self.type == FieldType.REFERENCE:
            if not self.reference_type:
                raise ValueError(f"Reference field {self.name!r} needs a reference_type")
            validate_slug(self.reference_type)
            if self.secret:
                raise ValueError(f"Reference field {self.name!r} cannot be secret")
        elif self.reference_type is not None:
            raise ValueError(f"Only reference fields may set reference_type ({self.name!r})")
        return self


class SchemaType(BaseModel):
    """
    A registered block type.

    Attributes:
        slug: Stable unique identifier, e.g. ``"cube"``
        name: Display name
        description: Free-form help text
        fields: Ordered field definitions
        capabilities: Optional tags describing what the block can do
        version: Registration version, assigned by the registry
        created_at: Assigned by the registry on first registration
    """

    slug: str
    name: str = ""
    description: str | None = None
    fields: list[FieldDefinition] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=list)
    version: int = 1
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("slug")
    @classmethod
    def _check_slug(cls, v: str) -> str:
        return validate_slug(v)

    @model_validator(mode="after")
    def _check_fields(self) -> SchemaType:
        seen: set[str] = set()
        for definition in self.fields:
            if definition.name in seen:
                raise ValueError(f"Duplicate field {definition.name!r} in schema {self.slug!r}")
            seen.add(definition.name)
        if not self.name:
            self.name = self.slug.replace("-", " ").title()
        return self

    @classmethod
    def from_fields(
        cls,
        slug: str,
        fields: dict[str, FieldType | str | tuple],
        **kwargs: Any,
    ) -> SchemaType:
        """
        Build a schema from a compact ``name -> type`` mapping.

        Values may be a FieldType (or its string value), or a tuple of
        ``(type, secret)`` or ``(type, secret, default)``. A default makes
        the field optional.

        Example:
            SchemaType.from_fields("cube", {"edge_length_inches": "float"})
        """
        definitions = []
        for name, spec in fields.items():
            secret = False
            extra: dict[str, Any] = {}
            if isinstance(spec, tuple):
                field_type = spec[0]
                if len(spec) > 1:
                    secret = bool(spec[1])
                if len(spec) > 2:
                    extra = {"default": spec[2], "required": False}
            else:
                field_type = spec
            definitions.append(
                FieldDefinition(name=name, type=FieldType(field_type), secret=secret, **extra)
            )
        return cls(slug=slug, fields=definitions, **kwargs)

    @property
    def field_map(self) -> dict[str, FieldDefinition]:
        return {f.name: f for f in self.fields}

    @property
    def secret_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.secret]

    @property
    def reference_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.type == FieldType.REFERENCE]

    @property
    def checksum(self) -> str:
        """sha256 over the canonical field list. Descriptions and display names are excluded."""
        canonical = json.dumps(
            [f.model_dump(mode="json", exclude={"description"}) for f in self.fields],
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return "sha256:" + hashlib.sha256(canonical.encode()).hexdigest()

    def is_compatible_with(self, other: SchemaType) -> bool:
        return self.slug == other.slug and self.checksum == other.checksum
