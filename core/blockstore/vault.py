"""
Secret handling for block documents.

Two halves:
- SecretValue: an in-memory wrapper whose raw contents never appear in
  str/repr, pydantic serialization or log output. Mapping secrets render
  with their keys intact and every leaf masked.
- SecretVault: Fernet symmetric encryption (AES-128-CBC + HMAC) used to
  keep secret fields encrypted at rest.

Example:
    token = SecretValue("hunter2")
    str(token)                 # '********'
    token.get_secret_value()   # 'hunter2'

    vault = SecretVault(SecretVault.generate_key())
    ciphertext = vault.encrypt({"user": "admin"})
    vault.decrypt(ciphertext)  # {'user': 'admin'}
"""

from __future__ import annotations

import json
from typing import Any, Generic, TypeVar, get_args

from cryptography.fernet import Fernet, InvalidToken
from pydantic import GetCoreSchemaHandler, SecretBytes, SecretStr
from pydantic_core import core_schema

from .errors import DecryptionError

T = TypeVar("T")

# Fixed width, independent of the raw value's length.
MASK = "********"


def _mask_leaves(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _mask_leaves(v) for k, v in value.items()}
    return MASK


class SecretValue(Generic[T]):
    """
    Wrapper for a secret field value.

    Equality and hashing use the raw value so that documents compare
    naturally; every rendering path shows the mask instead.
    """

    __slots__ = ("_secret_value",)

    def __init__(self, value: T):
        if isinstance(value, SecretValue):
            value = value.get_secret_value()
        self._secret_value = value

    def get_secret_value(self) -> T:
        """Return the raw value. This is the only way to read it."""
        return self._secret_value

    def masked(self) -> Any:
        """Return the display form: the mask, or a key-preserving masked mapping."""
        return _mask_leaves(self._secret_value)

    def __str__(self) -> str:
        return str(self.masked())

    def __repr__(self) -> str:
        return f"SecretValue({self.masked()!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretValue):
            return self._secret_value == other._secret_value
        return NotImplemented

    def __hash__(self) -> int:
        try:
            return hash(self._secret_value)
        except TypeError:
            return hash(json.dumps(self._secret_value, sort_keys=True, default=str))

    def __bool__(self) -> bool:
        return bool(self._secret_value)

    def __reduce__(self):
        # Pickling goes through the constructor, never through __dict__
        return (SecretValue, (self._secret_value,))

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        args = get_args(source)
        inner = handler.generate_schema(args[0]) if args else core_schema.any_schema()
        return core_schema.no_info_after_validator_function(
            cls,
            core_schema.chain_schema(
                [core_schema.no_info_plain_validator_function(unwrap), inner]
            ),
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda v: v.masked(), when_used="always"
            ),
        )


def wrap(value: Any) -> SecretValue:
    """Wrap a raw value. Already-wrapped values are returned unchanged."""
    if isinstance(value, SecretValue):
        return value
    if isinstance(value, (SecretStr, SecretBytes)):
        return SecretValue(value.get_secret_value())
    return SecretValue(value)


def unwrap(value: Any) -> Any:
    """Return the raw value of a secret; other values pass through."""
    if isinstance(value, (SecretValue, SecretStr, SecretBytes)):
        return value.get_secret_value()
    return value


def is_secret(value: Any) -> bool:
    return isinstance(value, (SecretValue, SecretStr, SecretBytes))


def mask(value: Any) -> Any:
    """
    Render a structure for display with every secret replaced by its mask.

    Mappings, lists and tuples are walked recursively; other values are
    returned as-is.
    """
    if isinstance(value, SecretValue):
        return value.masked()
    if isinstance(value, (SecretStr, SecretBytes)):
        return MASK
    if isinstance(value, dict):
        return {k: mask(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(mask(v) for v in value)
    return value


class SecretVault:
    """
    Fernet encryption for secret field values at rest.

    Raw values are JSON-encoded before encryption so that mapping and list
    secrets survive the round trip with their types.
    """

    def __init__(self, key: bytes | str):
        if isinstance(key, str):
            key = key.encode()
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"invalid fernet key: {e}") from e
        self._key = key

    @staticmethod
    def generate_key() -> bytes:
        """Generate a new url-safe base64 Fernet key."""
        return Fernet.generate_key()

    @staticmethod
    def validate_key(key: bytes | str) -> bytes:
        """
        Check that a key is a well-formed Fernet key.

        Raises:
            ValueError: if the key length or encoding is wrong
        """
        if isinstance(key, str):
            key = key.encode()
        if len(key) != 44:  # fernet keys are 44 bytes base64
            raise ValueError("invalid key length - fernet keys should be 44 bytes base64 encoded")
        try:
            Fernet(key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"invalid fernet key: {e}") from e
        return key

    @property
    def key(self) -> bytes:
        return self._key

    def encrypt(self, value: Any) -> str:
        """Encrypt a raw (JSON-serializable) value into a token string."""
        payload = json.dumps(unwrap(value)).encode()
        return self._fernet.encrypt(payload).decode()

    def decrypt(self, token: str) -> Any:
        """
        Decrypt a token produced by :meth:`encrypt`.

        Raises:
            DecryptionError: if the token was produced with another key or was tampered with
        """
        try:
            payload = self._fernet.decrypt(token.encode())
        except InvalidToken as e:
            raise DecryptionError("Failed to decrypt secret value", cause=e) from e
        return json.loads(payload.decode())
