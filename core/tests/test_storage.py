"""Tests for the storage backends."""

import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from blockstore.errors import (
    AlreadyExistsError,
    ConflictError,
    SchemaConflictError,
    StorageError,
    TransientError,
    ValidationError,
)
from blockstore.storage import FileStorage
from blockstore.utils.io import atomic_write


class TestDocumentWrites:
    """Behaviour shared by every backend"""

    def test_create_and_read(self, storage):
        stored = storage.write_document("cube", "rubiks-cube", {"edge_length_inches": 2.25})

        loaded = storage.read_document("cube", "rubiks-cube")
        assert loaded is not None
        assert loaded.id == stored.id
        assert loaded.version == 1
        assert loaded.field_values == {"edge_length_inches": 2.25}

    def test_read_missing_returns_none(self, storage):
        assert storage.read_document("cube", "missing") is None
        assert not storage.exists("cube", "missing")

    def test_create_collision(self, storage):
        storage.write_document("cube", "a", {"x": 1})

        with pytest.raises(AlreadyExistsError):
            storage.write_document("cube", "a", {"x": 2})

        assert storage.read_document("cube", "a").field_values == {"x": 1}

    def test_overwrite_keeps_id_and_bumps_version(self, storage):
        first = storage.write_document("cube", "a", {"x": 1})
        second = storage.write_document("cube", "a", {"x": 2}, overwrite=True)

        assert second.id == first.id
        assert second.version == 2
        assert second.created_at == first.created_at
        assert storage.read_document("cube", "a").field_values == {"x": 2}

    def test_expected_version_match(self, storage):
        storage.write_document("cube", "a", {"x": 1})

        stored = storage.write_document("cube", "a", {"x": 2}, overwrite=True, expected_version=1)

        assert stored.version == 2

    def test_expected_version_mismatch(self, storage):
        storage.write_document("cube", "a", {"x": 1})
        storage.write_document("cube", "a", {"x": 2}, overwrite=True)

        with pytest.raises(ConflictError) as exc:
            storage.write_document("cube", "a", {"x": 3}, overwrite=True, expected_version=1)

        assert exc.value.expected_version == 1
        assert exc.value.actual_version == 2

    def test_expected_version_zero_means_absent(self, storage):
        storage.write_document("cube", "a", {"x": 1}, expected_version=0)

        with pytest.raises(ConflictError):
            storage.write_document("cube", "a", {"x": 1}, overwrite=True, expected_version=0)

    def test_read_by_id(self, storage):
        stored = storage.write_document("cube", "a", {"x": 1})

        assert storage.read_document_by_id(stored.id).name == "a"
        assert storage.read_document_by_id("no-such-id") is None

    def test_delete(self, storage):
        storage.write_document("cube", "a", {"x": 1})

        assert storage.delete_document("cube", "a") is True
        assert storage.delete_document("cube", "a") is False
        assert storage.read_document("cube", "a") is None

    def test_delete_removes_id_lookup(self, storage):
        stored = storage.write_document("cube", "a", {"x": 1})
        storage.delete_document("cube", "a")

        assert storage.read_document_by_id(stored.id) is None

    def test_delete_expected_version(self, storage):
        storage.write_document("cube", "a", {"x": 1})

        with pytest.raises(ConflictError):
            storage.delete_document("cube", "a", expected_version=5)

        assert storage.delete_document("cube", "a", expected_version=1)

    def test_list_documents(self, storage):
        storage.write_document("cube", "b", {"x": 1})
        storage.write_document("cube", "a", {"x": 1})
        storage.write_document("sphere", "c", {"r": 1})

        assert [d.key for d in storage.list_documents()] == ["cube/a", "cube/b", "sphere/c"]
        assert [d.key for d in storage.list_documents("sphere")] == ["sphere/c"]
        assert storage.list_documents("nothing") == []

    def test_returned_documents_are_copies(self, storage):
        storage.write_document("cube", "a", {"x": {"nested": 1}})

        loaded = storage.read_document("cube", "a")
        loaded.field_values["x"]["nested"] = 99

        assert storage.read_document("cube", "a").field_values == {"x": {"nested": 1}}


class TestSchemaStorage:
    def test_versions_sorted(self, storage, cube_schema):
        storage.save_schema(cube_schema.model_copy(update={"version": 2}))
        storage.save_schema(cube_schema)

        assert [s.version for s in storage.load_schemas("cube")] == [1, 2]

    def test_save_replaces_same_version(self, storage, cube_schema):
        storage.save_schema(cube_schema)
        storage.save_schema(cube_schema.model_copy(update={"description": "updated"}))

        versions = storage.load_schemas("cube")
        assert len(versions) == 1
        assert versions[0].description == "updated"

    def test_delete_schema(self, storage, cube_schema):
        storage.save_schema(cube_schema)

        assert storage.delete_schema("cube") is True
        assert storage.delete_schema("cube") is False
        assert storage.list_schema_slugs() == []

    def test_update_schemas_writes_returned_version(self, storage, cube_schema):
        storage.save_schema(cube_schema)

        stored = storage.update_schemas(
            "cube", lambda current: cube_schema.model_copy(update={"version": len(current) + 1})
        )

        assert stored.version == 2
        assert [s.version for s in storage.load_schemas("cube")] == [1, 2]

    def test_update_schemas_none_writes_nothing(self, storage):
        seen = []

        def inspect(current):
            seen.append(list(current))
            return None

        assert storage.update_schemas("cube", inspect) is None
        assert seen == [[]]
        assert storage.list_schema_slugs() == []

    def test_update_schemas_error_aborts(self, storage, cube_schema):
        storage.save_schema(cube_schema)

        def refuse(current):
            raise SchemaConflictError("taken", type_slug="cube")

        with pytest.raises(SchemaConflictError):
            storage.update_schemas("cube", refuse)

        assert [s.version for s in storage.load_schemas("cube")] == [1]


class TestLocking:
    def test_lock_timeout_raises_transient_error(self, storage):
        held = threading.Event()
        release = threading.Event()

        def hold_lock():
            with storage._locked():
                held.set()
                release.wait(5)

        holder = threading.Thread(target=hold_lock)
        holder.start()
        try:
            assert held.wait(5)
            with pytest.raises(TransientError) as exc:
                storage.read_document("cube", "a", timeout=0.05)
            assert exc.value.retry_allowed is True
        finally:
            release.set()
            holder.join()

    def test_concurrent_creates_have_one_winner(self, storage):
        def create(i):
            try:
                storage.write_document("cube", "contended", {"writer": i})
                return True
            except AlreadyExistsError:
                return False

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(create, range(16)))

        assert results.count(True) == 1
        assert storage.read_document("cube", "contended").version == 1

    def test_concurrent_overwrites_bump_version_once_each(self, storage):
        storage.write_document("cube", "counter", {"n": 0})

        def overwrite(i):
            storage.write_document("cube", "counter", {"n": i}, overwrite=True)

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(overwrite, range(20)))

        assert storage.read_document("cube", "counter").version == 21

    def test_transaction_blocks_other_writers(self, storage):
        storage.write_document("cube", "a", {"v": 1})
        outcome = []

        def overwrite():
            try:
                storage.write_document("cube", "a", {"v": 2}, overwrite=True, timeout=0.1)
                outcome.append("written")
            except TransientError:
                outcome.append("blocked")

        with storage.transaction():
            stale = storage.read_document("cube", "a")
            writer = threading.Thread(target=overwrite)
            writer.start()
            writer.join()
            storage.replace_document(stale)

        assert outcome == ["blocked"]
        assert storage.read_document("cube", "a").version == 1


class TestFileStorage:
    def test_layout(self, file_storage, cube_schema):
        file_storage.save_schema(cube_schema)
        stored = file_storage.write_document("cube", "rubiks-cube", {"edge_length_inches": 2.25})

        base = file_storage.base_path
        assert (base / "schemas" / "cube.json").exists()
        assert (base / "documents" / "cube" / "rubiks-cube.json").exists()
        index = json.loads((base / "metadata" / "index.json").read_text())
        assert index["documents"][stored.id]["key"] == "cube/rubiks-cube"

    def test_persists_across_instances(self, tmp_path):
        FileStorage(tmp_path).write_document("cube", "a", {"x": 1})

        assert FileStorage(tmp_path).read_document("cube", "a").field_values == {"x": 1}

    def test_file_lock_shared_between_instances(self, tmp_path):
        first = FileStorage(tmp_path, lock_timeout=1.0)
        second = FileStorage(tmp_path, lock_timeout=1.0)

        with first.transaction():
            with pytest.raises(TransientError):
                second.write_document("cube", "a", {"x": 1}, timeout=0.1)

        second.write_document("cube", "a", {"x": 1})
        assert (tmp_path / "metadata" / ".lock").exists()

    def test_create_race_between_instances(self, tmp_path, monkeypatch):
        first = FileStorage(tmp_path, lock_timeout=1.0)
        second = FileStorage(tmp_path, lock_timeout=1.0)
        read = first._read_document
        outcome = []

        def read_then_race(type_slug, name):
            document = read(type_slug, name)
            try:
                second.write_document(type_slug, name, {"v": "from-second"}, timeout=0.1)
                outcome.append("written")
            except TransientError:
                outcome.append("blocked")
            return document

        monkeypatch.setattr(first, "_read_document", read_then_race)
        first.write_document("cube", "a", {"v": "from-first"})
        monkeypatch.undo()

        assert outcome == ["blocked"]
        with pytest.raises(AlreadyExistsError):
            second.write_document("cube", "a", {"v": "from-second"})
        assert second.read_document("cube", "a").field_values == {"v": "from-first"}

    def test_no_temp_files_left(self, file_storage):
        file_storage.write_document("cube", "a", {"x": 1})
        file_storage.write_document("cube", "a", {"x": 2}, overwrite=True)

        leftovers = list(file_storage.base_path.rglob("*.tmp"))
        assert leftovers == []

    def test_corrupt_document_raises_storage_error(self, file_storage):
        file_storage.write_document("cube", "a", {"x": 1})
        (file_storage.base_path / "documents" / "cube" / "a.json").write_text("{not json")

        with pytest.raises(StorageError):
            file_storage.read_document("cube", "a")

    def test_unsafe_names_rejected(self, file_storage):
        with pytest.raises(ValidationError):
            file_storage.write_document("cube", "../escape", {"x": 1})

    def test_os_error_becomes_storage_error(self, file_storage, monkeypatch):
        def broken(*args, **kwargs):
            raise PermissionError("read-only file system")

        monkeypatch.setattr(file_storage, "_write_document", broken)

        with pytest.raises(StorageError) as exc:
            file_storage.write_document("cube", "a", {"x": 1})

        assert isinstance(exc.value.__cause__, PermissionError)

    def test_os_timeout_becomes_transient_error(self, file_storage, monkeypatch):
        def slow(*args, **kwargs):
            raise TimeoutError("nfs timeout")

        monkeypatch.setattr(file_storage, "_read_document", slow)

        with pytest.raises(TransientError):
            file_storage.read_document("cube", "a")


class TestAtomicWrite:
    def test_replaces_file(self, tmp_path):
        path = tmp_path / "out.json"
        path.write_text("old")

        with atomic_write(path) as f:
            f.write("new")

        assert path.read_text() == "new"

    def test_failure_keeps_original(self, tmp_path):
        path = tmp_path / "out.json"
        path.write_text("old")

        with pytest.raises(RuntimeError):
            with atomic_write(path) as f:
                f.write("partial")
                raise RuntimeError("boom")

        assert path.read_text() == "old"
        assert list(tmp_path.glob("*.tmp")) == []
        assert list(tmp_path.glob(".*.tmp")) == []


class TestInMemoryStorage:
    def test_clear(self, memory_storage, cube_schema):
        memory_storage.save_schema(cube_schema)
        memory_storage.write_document("cube", "a", {"x": 1})

        memory_storage.clear()

        assert memory_storage.list_schema_slugs() == []
        assert memory_storage.list_documents() == []
