"""Shared fixtures for blockstore tests."""

import pytest
from cryptography.fernet import Fernet

from blockstore.client import BlockClient, set_client
from blockstore.registry import SchemaRegistry
from blockstore.schemas import SchemaType
from blockstore.storage import FileStorage, InMemoryStorage
from blockstore.store import DocumentStore
from blockstore.vault import SecretVault


@pytest.fixture
def encryption_key():
    """generate a fresh encryption key"""
    return Fernet.generate_key()


@pytest.fixture
def vault(encryption_key):
    return SecretVault(encryption_key)


@pytest.fixture
def memory_storage():
    return InMemoryStorage(lock_timeout=1.0)


@pytest.fixture
def file_storage(tmp_path):
    return FileStorage(tmp_path / "blockstore", lock_timeout=1.0)


@pytest.fixture(params=["memory", "file"])
def storage(request, tmp_path):
    """Run a test against every storage backend."""
    if request.param == "memory":
        return InMemoryStorage(lock_timeout=1.0)
    return FileStorage(tmp_path / "blockstore", lock_timeout=1.0)


@pytest.fixture
def registry(storage):
    return SchemaRegistry(storage)


@pytest.fixture
def store(storage, registry, vault):
    return DocumentStore(storage, registry, vault)


@pytest.fixture
def client(memory_storage, vault):
    return BlockClient(storage=memory_storage, vault=vault)


@pytest.fixture
def default_client(client):
    """Install ``client`` as the process-wide client for Block.save/load."""
    previous = set_client(client)
    yield client
    set_client(previous)


@pytest.fixture
def cube_schema():
    return SchemaType.from_fields("cube", {"edge_length_inches": "float"})


@pytest.fixture
def credentials_schema():
    return SchemaType.from_fields(
        "api-credentials",
        {
            "username": "string",
            "api_key": ("string", True),
            "scopes": ("list", False, ["read"]),
        },
    )
