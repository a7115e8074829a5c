"""
Declarative block classes.

Subclass Block and declare fields with type hints; the block type schema is
derived from the class:

    class Cube(Block):
        edge_length_inches: float

    Cube(edge_length_inches=2.25).save("rubiks-cube")
    Cube.load("rubiks-cube").edge_length_inches  # 2.25

Type mapping:
    str / int / float / bool       -> string / integer / float / boolean
    dict[...] / list[...] / Any    -> mapping / list / any
    SecretStr                      -> secret string
    SecretValue[T]                 -> secret field of T's type
    another Block subclass         -> reference to that block type
    X | None, Any                  -> optional field (None is storable)
"""

from __future__ import annotations

import inspect
import re
import types
from typing import Any, ClassVar, Literal, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, PrivateAttr, SecretBytes, SecretStr
from pydantic.fields import FieldInfo

from .documents import Document, Reference
from .errors import ValidationError
from .schemas import FieldDefinition, FieldType, SchemaType
from .vault import SecretValue

_BLOCK_CLASSES: dict[str, type[Block]] = {}

_SCALARS: list[tuple[type, FieldType]] = [
    (bool, FieldType.BOOLEAN),  # before int: bool is an int subclass
    (str, FieldType.STRING),
    (int, FieldType.INTEGER),
    (float, FieldType.FLOAT),
    (dict, FieldType.MAPPING),
    (list, FieldType.LIST),
]

_JSON_SCALARS = (str, int, float, bool, type(None))


def _kebab(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "-", name).lower()


def _strip_optional(annotation: Any) -> tuple[Any, bool]:
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0], len(args) != len(get_args(annotation))
    return annotation, False


def _is_block_class(annotation: Any) -> bool:
    return inspect.isclass(annotation) and issubclass(annotation, Block)


def _value_type(annotation: Any) -> FieldType:
    if annotation is Any or annotation is None:
        return FieldType.ANY
    origin = get_origin(annotation)
    if origin is Literal:
        literal_types = {type(a) for a in get_args(annotation)}
        if len(literal_types) == 1:
            return _value_type(literal_types.pop())
        return FieldType.ANY
    target = origin or annotation
    if inspect.isclass(target):
        for python_type, field_type in _SCALARS:
            if issubclass(target, python_type):
                return field_type
        if issubclass(target, tuple):
            return FieldType.LIST
    return FieldType.ANY


def _json_default(value: Any) -> bool:
    if isinstance(value, _JSON_SCALARS):
        return True
    if isinstance(value, list):
        return all(_json_default(v) for v in value)
    if isinstance(value, dict):
        return all(isinstance(k, str) and _json_default(v) for k, v in value.items())
    return False


def _field_definition(name: str, info: FieldInfo) -> FieldDefinition:
    annotation, optional = _strip_optional(info.annotation)
    # Any admits None, so the stored field must too
    required = info.is_required() and not optional and annotation is not Any

    default = None
    if not info.is_required():
        candidate = info.get_default(call_default_factory=True)
        if _json_default(candidate):
            default = candidate

    secret = False
    reference_type = None
    if _is_block_class(annotation):
        field_type = FieldType.REFERENCE
        reference_type = annotation.get_block_type_slug()
        default = None
    elif inspect.isclass(annotation) and issubclass(annotation, (SecretStr, SecretBytes)):
        field_type, secret = FieldType.STRING, True
    elif annotation is SecretValue or get_origin(annotation) is SecretValue:
        args = get_args(annotation)
        field_type, secret = (_value_type(args[0]) if args else FieldType.ANY), True
    else:
        field_type = _value_type(annotation)

    if secret:
        # Secret defaults never go into the schema
        default = None

    return FieldDefinition(
        name=name,
        type=field_type,
        secret=secret,
        required=required,
        default=default,
        description=info.description,
        reference_type=reference_type,
    )


class Block(BaseModel):
    """
    Base class for typed configuration blocks.

    Class-level settings (all optional):
        _block_type_slug: Slug to register under (default: kebab-case class name)
        _block_type_name: Display name (default: class name)
        _description: Help text (default: class docstring)
        _capabilities: Capability tags
    """

    # Validation errors never echo inputs, which may be secrets
    model_config = ConfigDict(extra="forbid", validate_assignment=True, hide_input_in_errors=True)

    _block_type_slug: ClassVar[str | None] = None
    _block_type_name: ClassVar[str | None] = None
    _description: ClassVar[str | None] = None
    _capabilities: ClassVar[list[str]] = []

    _document_id: str | None = PrivateAttr(default=None)
    _document_name: str | None = PrivateAttr(default=None)

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        _BLOCK_CLASSES[cls.get_block_type_slug()] = cls

    # === SCHEMA ===

    @classmethod
    def get_block_type_slug(cls) -> str:
        return cls._block_type_slug or _kebab(cls.__name__)

    @classmethod
    def get_block_type_name(cls) -> str:
        return cls._block_type_name or cls.__name__

    @classmethod
    def get_description(cls) -> str | None:
        if cls._description:
            return cls._description
        if cls.__doc__ and cls.__doc__ is not Block.__doc__:
            return inspect.cleandoc(cls.__doc__)
        return None

    @classmethod
    def to_schema(cls) -> SchemaType:
        """Derive the block type schema from the declared fields."""
        return SchemaType(
            slug=cls.get_block_type_slug(),
            name=cls.get_block_type_name(),
            description=cls.get_description(),
            fields=[_field_definition(name, info) for name, info in cls.model_fields.items()],
            capabilities=list(cls._capabilities),
        )

    @classmethod
    def referenced_block_types(cls) -> list[type[Block]]:
        """Block classes referenced by this class's fields."""
        found = []
        for info in cls.model_fields.values():
            annotation, _ = _strip_optional(info.annotation)
            if _is_block_class(annotation) and annotation not in found:
                found.append(annotation)
        return found

    @classmethod
    def register_type(cls, client: Any = None, new_version: bool = False) -> str:
        """Register this block type (and the block types it references)."""
        return _client(client).register_block_type(cls, new_version=new_version)

    # === DOCUMENTS ===

    @property
    def document_name(self) -> str | None:
        """Name this block was saved or loaded under."""
        return self._document_name

    @property
    def document_id(self) -> str | None:
        return self._document_id

    def to_values(self) -> dict[str, Any]:
        """
        Field values as passed to the document store.

        Nested blocks become references and must already be saved.

        Raises:
            ValidationError: if a nested block has not been saved
        """
        values: dict[str, Any] = {}
        for name in type(self).model_fields:
            value = getattr(self, name)
            if isinstance(value, Block):
                if value.document_name is None:
                    raise ValidationError(
                        f"Nested {type(value).__name__} block must be saved before it can be referenced",
                        type_slug=self.get_block_type_slug(),
                        field=name,
                    )
                value = Reference(
                    block_type_slug=value.get_block_type_slug(),
                    name=value.document_name,
                )
            values[name] = value
        return values

    def save(self, name: str, overwrite: bool = False, client: Any = None) -> str:
        """
        Save this block as a named document, registering its type if needed.

        Returns:
            The document id

        Raises:
            AlreadyExistsError: if ``name`` is taken and ``overwrite`` is False
        """
        client = _client(client)
        client.register_block_type(type(self))
        document_id = client.save(self.get_block_type_slug(), name, self.to_values(), overwrite=overwrite)
        self._document_id = document_id
        self._document_name = name
        return document_id

    @classmethod
    def load(cls, name: str, client: Any = None) -> Block:
        """
        Load a named document of this block type, nested blocks included.

        Raises:
            DocumentNotFoundError: if the document or a referenced one is missing
        """
        document = _client(client).load(cls.get_block_type_slug(), name)
        return cls.from_document(document)

    @classmethod
    def delete(cls, name: str, client: Any = None) -> None:
        _client(client).delete(cls.get_block_type_slug(), name)

    @classmethod
    def from_document(cls, document: Document) -> Block:
        """Build a block from a hydrated document."""
        values: dict[str, Any] = {}
        for name, value in document.field_values.items():
            info = cls.model_fields.get(name)
            annotation = _strip_optional(info.annotation)[0] if info else None
            if isinstance(value, Document):
                block_cls = annotation if _is_block_class(annotation) else get_block_class(value.type_slug)
                value = block_cls.from_document(value)
            elif isinstance(value, Reference):
                raise ValidationError(
                    "Document must be hydrated before building a block",
                    type_slug=document.type_slug,
                    name=document.name,
                    field=name,
                )
            elif isinstance(value, SecretValue) and inspect.isclass(annotation) and issubclass(
                annotation, (SecretStr, SecretBytes)
            ):
                value = annotation(value.get_secret_value())
            values[name] = value
        block = cls.model_validate(values)
        block._document_id = document.id
        block._document_name = document.name
        return block


def get_block_class(slug: str) -> type[Block]:
    """
    Return the Block subclass registered for a slug.

    Raises:
        ValidationError: if no class is known for the slug
    """
    try:
        return _BLOCK_CLASSES[slug]
    except KeyError:
        raise ValidationError(f"No Block class is defined for block type {slug!r}", type_slug=slug) from None


def block_classes() -> dict[str, type[Block]]:
    return dict(_BLOCK_CLASSES)


def _client(client: Any):
    if client is not None:
        return client
    from .client import get_client

    return get_client()
