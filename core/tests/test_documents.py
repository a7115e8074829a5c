"""Tests for documents, references and keys."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from blockstore.documents import Document, Reference, make_key, split_key
from blockstore.errors import ValidationError
from blockstore.vault import MASK, SecretValue


class TestKeys:
    def test_split_and_make(self):
        assert split_key("cube/rubiks-cube") == ("cube", "rubiks-cube")
        assert make_key("cube", "rubiks-cube") == "cube/rubiks-cube"

    @pytest.mark.parametrize("key", ["cube", "/name", "cube/", "a/b/c", ""])
    def test_invalid_keys(self, key):
        with pytest.raises(ValidationError):
            split_key(key)


class TestReference:
    def test_coerce_string(self):
        ref = Reference.coerce("cube/rubiks-cube")

        assert ref.block_type_slug == "cube"
        assert ref.name == "rubiks-cube"
        assert str(ref) == "cube/rubiks-cube"

    def test_marker_round_trip(self):
        ref = Reference(block_type_slug="cube", name="a")

        assert Reference.coerce(ref.to_marker()) == ref

    @pytest.mark.parametrize("value", [None, 3, "no-slash", {"name": "a"}, {"$ref": "cube/a"}])
    def test_invalid_references(self, value):
        with pytest.raises(ValueError):
            Reference.coerce(value)

    def test_frozen(self):
        ref = Reference(block_type_slug="cube", name="a")

        with pytest.raises(PydanticValidationError):
            ref.name = "b"


class TestDocument:
    @pytest.fixture
    def document(self):
        return Document(
            type_slug="api-credentials",
            name="prod",
            field_values={
                "username": "bot",
                "api_key": SecretValue("sk-123"),
                "headers": SecretValue({"X-Token": "header-token-xyz"}),
                "service": Reference(block_type_slug="service", name="api"),
            },
        )

    def test_get(self, document):
        assert document.get("username") == "bot"
        assert isinstance(document.get("api_key"), SecretValue)
        assert document.get("api_key", reveal=True) == "sk-123"
        assert document.get("missing", "fallback") == "fallback"

    def test_dump_masks_secrets(self, document):
        dumped = document.model_dump()

        assert dumped["field_values"]["api_key"] == MASK
        assert dumped["field_values"]["headers"] == {"X-Token": MASK}
        assert dumped["field_values"]["service"] == {
            "$ref": {"block_type_slug": "service", "name": "api"}
        }

    def test_every_rendering_is_masked(self, document):
        for rendered in (str(document), repr(document), document.model_dump_json()):
            assert "sk-123" not in rendered
            assert "header-token-xyz" not in rendered

    def test_nested_document_masked(self, document):
        parent = Document(type_slug="wrapper", name="w", field_values={"inner": document})

        assert "sk-123" not in parent.model_dump_json()
        assert parent.model_dump()["field_values"]["inner"]["field_values"]["api_key"] == MASK

    def test_defaults(self):
        document = Document(type_slug="cube", name="a")

        assert document.version == 1
        assert document.key == "cube/a"
        assert document.id
