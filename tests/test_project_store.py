from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from software_project import (
    Annotation,
    FileMetadata,
    IOFailure,
    MalformedMetadata,
    NotFoundError,
    ProjectStore,
)


def _annotation(message: str = "Test annotation", tool: str = "test") -> Annotation:
    return Annotation(location="1:1", tool=tool, type="info", message=message)


def test_initialize_creates_project_and_metadata_roots(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path / "project")
    store.initialize()
    store.initialize()

    assert (tmp_path / "project").is_dir()
    assert (tmp_path / "project" / ".metadata").is_dir()


def test_write_persists_content_and_sidecar_without_content(store: ProjectStore, project_root: Path) -> None:
    modified = datetime(2024, 9, 3, 23, 32, 8, tzinfo=UTC)
    store.write(
        "test.txt",
        FileMetadata(content="Test content", size=12, last_modified=modified, annotations=[_annotation()]),
    )

    assert (project_root / "test.txt").read_text(encoding="utf-8") == "Test content"
    sidecar = json.loads((project_root / ".metadata" / "test.txt.json").read_text(encoding="utf-8"))
    assert "content" not in sidecar
    assert sidecar["size"] == 12
    assert datetime.fromisoformat(sidecar["last_modified"].replace("Z", "+00:00")) == modified
    assert sidecar["annotations"] == [
        {"location": "1:1", "tool": "test", "type": "info", "message": "Test annotation"}
    ]


def test_write_creates_intermediate_directories(store: ProjectStore, project_root: Path) -> None:
    store.write("deep/nested/file.txt", FileMetadata(content="x"))

    assert (project_root / "deep" / "nested" / "file.txt").is_file()
    assert (project_root / ".metadata" / "deep" / "nested" / "file.txt.json").is_file()


def test_annotations_round_trip_exactly(store: ProjectStore) -> None:
    annotations = [_annotation("first"), _annotation("second", tool="build")]
    store.write("src/index.ts", FileMetadata(annotations=annotations))

    assert store.read("src/index.ts", ["annotations"]).annotations == annotations


def test_write_without_annotations_reads_back_empty(store: ProjectStore) -> None:
    store.write("notes.md", FileMetadata(content="# notes"))

    assert store.read("notes.md", ["annotations"]).annotations == []


def test_write_replaces_previous_sidecar_instead_of_merging(store: ProjectStore) -> None:
    store.write("a.txt", FileMetadata(content="a", annotations=[_annotation("old")]))
    store.write("a.txt", FileMetadata(annotations=[_annotation("new")]))

    assert [item.message for item in store.read("a.txt", ["annotations"]).annotations] == ["new"]
    assert store.read("a.txt", ["content"]).content == "a"


def test_read_returns_only_requested_fields(store: ProjectStore) -> None:
    store.write("test.txt", FileMetadata(content="Test content"))

    result = store.read("test.txt", ["content"])

    assert result.content == "Test content"
    assert result.size is None
    assert result.last_modified is None
    assert result.annotations is None


def test_read_size_and_mtime_come_from_filesystem(store: ProjectStore, project_root: Path) -> None:
    store.write("test.txt", FileMetadata(content="abc", size=999))
    (project_root / "test.txt").write_text("abcdef", encoding="utf-8")

    result = store.read("test.txt")

    assert result.size == 6
    assert result.content == "abcdef"
    assert isinstance(result.last_modified, datetime)
    assert result.last_modified.tzinfo is not None


def test_binary_content_round_trips_as_bytes(store: ProjectStore) -> None:
    payload = b"\x89PNG\r\n\x1a\n\xff\xfe"
    store.write("assets/logo.png", FileMetadata(content=payload))

    result = store.read("assets/logo.png", ["content", "size"])

    assert result.content == payload
    assert result.size == len(payload)
    assert store.read("src/index.ts", ["content"]).content == "export const answer: number = 42;\n"


def test_read_missing_content_raises_not_found(store: ProjectStore) -> None:
    with pytest.raises(NotFoundError):
        store.read("missing.txt", ["content"])
    with pytest.raises(FileNotFoundError):
        store.read("missing.txt", ["size"])


def test_read_annotations_without_sidecar_or_content_is_empty(store: ProjectStore) -> None:
    assert store.read("ghost.txt", ["annotations"]).annotations == []


def test_read_directory_content_raises_io_failure(store: ProjectStore) -> None:
    with pytest.raises(IOFailure):
        store.read("src", ["content"])


def test_malformed_sidecar_json_is_not_treated_as_empty(store: ProjectStore, project_root: Path) -> None:
    store.write("a.txt", FileMetadata(content="a"))
    (project_root / ".metadata" / "a.txt.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(MalformedMetadata):
        store.read("a.txt", ["annotations"])


def test_sidecar_with_wrong_shape_raises_malformed_metadata(store: ProjectStore, project_root: Path) -> None:
    store.write("a.txt", FileMetadata(content="a"))
    (project_root / ".metadata" / "a.txt.json").write_text('{"annotations": "nope"}', encoding="utf-8")

    with pytest.raises(MalformedMetadata):
        store.read_metadata("a.txt")


def test_unknown_field_is_rejected(store: ProjectStore) -> None:
    with pytest.raises(ValueError, match="unknown file field"):
        store.read("src/index.ts", ["checksum"])


def test_list_matches_pattern_and_skips_metadata_tree(store: ProjectStore) -> None:
    store.write("file1.txt", FileMetadata(content="1"))
    store.write("file2.txt", FileMetadata(content="22"))
    store.write(".hidden.txt", FileMetadata(content="333"))

    result = store.list("*.txt")

    assert set(result) == {"file1.txt", "file2.txt", ".hidden.txt"}
    assert result["file2.txt"].size == 2
    assert isinstance(result["file1.txt"].last_modified, datetime)
    assert result["file1.txt"].content is None


def test_list_default_pattern_includes_directories(store: ProjectStore) -> None:
    result = store.list()

    assert {"src", "src/index.ts", "src/index.test.ts"} <= set(result)
    assert not any(path.startswith(".metadata") for path in result)


def test_delete_removes_content_and_sidecar(store: ProjectStore, project_root: Path) -> None:
    store.write("test.txt", FileMetadata(content="x", annotations=[_annotation()]))

    store.delete("test.txt")

    assert not (project_root / "test.txt").exists()
    assert not (project_root / ".metadata" / "test.txt.json").exists()
    with pytest.raises(NotFoundError):
        store.read("test.txt", ["content"])


def test_delete_without_sidecar_succeeds(store: ProjectStore, project_root: Path) -> None:
    store.delete("src/index.ts")

    assert not (project_root / "src" / "index.ts").exists()


def test_delete_missing_file_raises_not_found(store: ProjectStore) -> None:
    with pytest.raises(NotFoundError):
        store.delete("missing.txt")


def test_copy_duplicates_content_and_metadata_independently(store: ProjectStore) -> None:
    store.write("source.txt", FileMetadata(content="payload", annotations=[_annotation("original")]))
    before = store.read("source.txt", ["annotations"]).annotations

    store.copy("source.txt", "copies/destination.txt")

    assert store.read("copies/destination.txt", ["content"]).content == "payload"
    assert store.read("copies/destination.txt", ["annotations"]).annotations == before

    store.write("copies/destination.txt", FileMetadata(annotations=[]))
    assert store.read("source.txt", ["annotations"]).annotations == before


def test_copy_overwrites_destination_and_clears_stale_sidecar(store: ProjectStore) -> None:
    store.write("stale.txt", FileMetadata(content="old", annotations=[_annotation("stale")]))

    store.copy("src/index.ts", "stale.txt")

    assert store.read("stale.txt", ["content"]).content == "export const answer: number = 42;\n"
    assert store.read("stale.txt", ["annotations"]).annotations == []


def test_copy_missing_source_raises_not_found(store: ProjectStore) -> None:
    with pytest.raises(NotFoundError):
        store.copy("missing.txt", "other.txt")


def test_copy_destination_failure_names_destination(store: ProjectStore, project_root: Path) -> None:
    (project_root / "dest").mkdir()

    with pytest.raises(IOFailure, match=r"^I/O failure on dest:"):
        store.copy("src/index.ts", "dest")

    assert store.read("src/index.ts", ["content"]).content == "export const answer: number = 42;\n"


def test_copy_onto_itself_keeps_content(store: ProjectStore) -> None:
    store.copy("src/index.ts", "src/index.ts")

    assert store.read("src/index.ts", ["content"]).content == "export const answer: number = 42;\n"


def test_move_relocates_content_and_sidecar(store: ProjectStore, project_root: Path) -> None:
    annotations = [_annotation("moved")]
    store.write("source.txt", FileMetadata(content="payload", annotations=annotations))

    store.move("source.txt", "dest/destination.txt")

    assert not (project_root / "source.txt").exists()
    assert not (project_root / ".metadata" / "source.txt.json").exists()
    moved = store.read("dest/destination.txt", ["content", "annotations"])
    assert moved.content == "payload"
    assert moved.annotations == annotations


def test_move_missing_source_raises_not_found(store: ProjectStore) -> None:
    with pytest.raises(NotFoundError):
        store.move("missing.txt", "other.txt")


def test_move_destination_failure_names_destination(store: ProjectStore, project_root: Path) -> None:
    (project_root / "dest").mkdir()
    (project_root / "dest" / "keep.txt").write_text("k", encoding="utf-8")

    with pytest.raises(IOFailure, match=r"^I/O failure on dest:"):
        store.move("src/index.ts", "dest")

    assert (project_root / "src" / "index.ts").is_file()


def test_reconcile_removes_only_orphaned_sidecars(store: ProjectStore, project_root: Path) -> None:
    store.write("keep.txt", FileMetadata(content="k", annotations=[_annotation()]))
    store.write("gone/orphan.txt", FileMetadata(content="o", annotations=[_annotation()]))
    (project_root / "gone" / "orphan.txt").unlink()

    assert store.reconcile(dry_run=True) == ["gone/orphan.txt"]
    assert (project_root / ".metadata" / "gone" / "orphan.txt.json").exists()

    assert store.reconcile() == ["gone/orphan.txt"]
    assert not (project_root / ".metadata" / "gone" / "orphan.txt.json").exists()
    assert (project_root / ".metadata" / "keep.txt.json").exists()
    assert store.reconcile() == []


@pytest.mark.parametrize("bad_path", ["../outside.txt", "/etc/passwd", "", "a/../../b"])
def test_paths_outside_project_are_rejected(store: ProjectStore, bad_path: str) -> None:
    with pytest.raises(ValueError):
        store.write(bad_path, FileMetadata(content="x"))


def test_custom_metadata_dir(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path, metadata_dir=".annotations")
    store.initialize()
    store.write("a.txt", FileMetadata(content="a", annotations=[_annotation()]))

    assert (tmp_path / ".annotations" / "a.txt.json").is_file()
    assert set(store.list("**/*")) == {"a.txt"}
