"""
Built-in block types.

Ready-made blocks for the configuration most jobs need: plain strings and
JSON, standalone secrets, webhooks with secret headers, and database
credentials with a connection profile that references them.
"""

from __future__ import annotations

from typing import Any, ClassVar, Literal

from pydantic import Field, SecretStr

from .block import Block
from .vault import MASK, SecretValue


class String(Block):
    """A block that represents a string."""

    value: str = Field(description="A string value.")


class JSON(Block):
    """A block that represents JSON. Values are not masked."""

    value: Any = Field(description="A JSON-compatible value.")


class Secret(Block):
    """
    A block that represents a secret value.

    The value is encrypted at rest and masked when displayed.
    """

    value: SecretValue[Any] = Field(description="A value that should be kept secret.")

    def get(self) -> Any:
        return self.value.get_secret_value()


class Webhook(Block):
    """Call a webhook URL; headers often carry tokens and are stored as a secret mapping."""

    _capabilities: ClassVar[list[str]] = ["notify"]

    url: str = Field(description="The webhook URL.")
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: SecretValue[dict[str, Any]] | None = Field(
        default=None, description="Headers to send; stored as a secret mapping."
    )


class DatabaseCredentials(Block):
    """Credentials for connecting to a database."""

    driver: str = Field(description="SQLAlchemy-style driver name, e.g. 'postgresql+psycopg'.")
    host: str
    port: int | None = None
    username: str | None = None
    password: SecretStr | None = None
    database: str | None = None

    def rendered_url(self, reveal: bool = False) -> str:
        """Build a connection URL. The password is masked unless ``reveal`` is set."""
        auth = ""
        if self.username:
            auth = self.username
            if self.password is not None:
                secret = self.password.get_secret_value() if reveal else MASK
                auth += f":{secret}"
            auth += "@"
        port = f":{self.port}" if self.port else ""
        database = f"/{self.database}" if self.database else ""
        return f"{self.driver}://{auth}{self.host}{port}{database}"


class ConnectionProfile(Block):
    """Database connection settings that reference a DatabaseCredentials block."""

    credentials: DatabaseCredentials
    options: dict[str, Any] = Field(default_factory=dict)
    pool_size: int = 5


BUILTIN_BLOCKS: list[type[Block]] = [
    String,
    JSON,
    Secret,
    Webhook,
    DatabaseCredentials,
    ConnectionProfile,
]


def register_builtin_blocks(client: Any = None) -> list[str]:
    """Register every built-in block type; returns their slugs."""
    return [block.register_type(client=client) for block in BUILTIN_BLOCKS]
