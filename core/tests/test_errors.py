"""Tests for the blockstore error hierarchy."""

import pytest

from blockstore.errors import (
    AlreadyExistsError,
    BlockstoreError,
    ConflictError,
    CyclicReferenceError,
    DecryptionError,
    DocumentNotFoundError,
    ErrorCategory,
    ErrorContext,
    NotFoundError,
    SchemaConflictError,
    SchemaNotFoundError,
    StorageError,
    TransientError,
    ValidationError,
)


class TestErrorContext:
    def test_defaults(self):
        context = ErrorContext()

        assert context.field is None
        assert context.metadata == {}
        assert context.key is None

    def test_metadata_not_shared(self):
        first, second = ErrorContext(), ErrorContext()
        first.metadata["attempt"] = 1

        assert second.metadata == {}


class TestBlockstoreError:
    def test_message_includes_context(self):
        err = BlockstoreError("boom", type_slug="cube", name="rubiks-cube", field="edge")

        assert str(err) == "boom [type_slug=cube, name=rubiks-cube, field=edge]"
        assert err.message == "boom"
        assert err.context.key == "cube/rubiks-cube"

    def test_message_without_context(self):
        err = BlockstoreError("boom")

        assert str(err) == "boom"
        assert err.context.key is None

    def test_cause_is_chained(self):
        cause = OSError("disk full")
        err = StorageError("write failed", cause=cause)

        assert err.__cause__ is cause

    def test_to_dict(self):
        err = DocumentNotFoundError("missing", type_slug="cube", name="x", metadata={"reference": "a/b"})

        data = err.to_dict()

        assert data["error_code"] == "DOCUMENT_NOT_FOUND"
        assert data["category"] == "not_found"
        assert data["retry_allowed"] is False
        assert data["context"]["type_slug"] == "cube"
        assert data["context"]["metadata"] == {"reference": "a/b"}


class TestHierarchy:
    @pytest.mark.parametrize(
        "error_cls",
        [
            ValidationError,
            NotFoundError,
            SchemaNotFoundError,
            DocumentNotFoundError,
            AlreadyExistsError,
            SchemaConflictError,
            ConflictError,
            CyclicReferenceError,
            TransientError,
            StorageError,
            DecryptionError,
        ],
    )
    def test_all_inherit_from_base(self, error_cls):
        assert issubclass(error_cls, BlockstoreError)

    def test_not_found_subclasses(self):
        assert issubclass(SchemaNotFoundError, NotFoundError)
        assert issubclass(DocumentNotFoundError, NotFoundError)

    def test_only_transient_is_retryable(self):
        retryable = [
            cls
            for cls in (
                ValidationError,
                NotFoundError,
                AlreadyExistsError,
                SchemaConflictError,
                ConflictError,
                CyclicReferenceError,
                TransientError,
                StorageError,
                DecryptionError,
            )
            if cls.retry_allowed
        ]
        assert retryable == [TransientError]

    def test_conflict_error_versions(self):
        err = ConflictError("mismatch", expected_version=1, actual_version=2)

        assert err.expected_version == 1
        assert err.actual_version == 2
        assert err.category == ErrorCategory.CONFLICT

    def test_cyclic_reference_path(self):
        err = CyclicReferenceError("cycle", path=["a/x", "b/y", "a/x"])

        assert err.path == ["a/x", "b/y", "a/x"]

    def test_validation_errors_list(self):
        err = ValidationError("bad", errors=[{"field": "x", "error": "field required"}])

        assert err.errors[0]["field"] == "x"
