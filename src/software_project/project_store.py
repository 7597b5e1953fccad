from __future__ import annotations

import glob
import json
import logging
import os
import posixpath
import shutil
import tempfile
from collections.abc import Iterable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path, PurePath, PurePosixPath
from typing import Iterator

from pydantic import ValidationError

from .errors import IOFailure, MalformedMetadata, NotFoundError, StoreError
from .models import ALL_FIELDS, LIST_FIELDS, FileField, FileMetadata

logger = logging.getLogger(__name__)

_SIDECAR_SUFFIX = ".json"


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------

@contextmanager
def _translated_os_errors(logical_path: str) -> Iterator[None]:
    """Re-raise ``OSError`` from the wrapped block as a store error.

    A missing file becomes ``NotFoundError``; any other OS-level failure
    (permissions, full disk, directory in place of a file) becomes
    ``IOFailure``.  Store errors raised inside the block pass through.
    """
    try:
        yield
    except StoreError:
        raise
    except FileNotFoundError as exc:
        raise NotFoundError(f"{logical_path} not found: {exc.filename or exc}") from exc
    except OSError as exc:
        raise IOFailure(f"I/O failure on {logical_path}: {exc}") from exc


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write *data* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place so readers never observe a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as tmp_handle:
            tmp_handle.write(data)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _decode_content(data: bytes) -> str | bytes:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data


def _normalize_fields(fields: Iterable[FileField | str]) -> frozenset[FileField]:
    try:
        return frozenset(FileField(field) for field in fields)
    except ValueError as exc:
        raise ValueError(f"unknown file field requested: {exc}") from exc


def normalize_logical_path(path: str | PurePath) -> str:
    """Return the canonical forward-slash form of a project-relative path.

    Raises:
        ValueError: If the path is empty, absolute, or escapes the project root.
    """
    raw = str(path).replace("\\", "/")
    if not raw.strip():
        raise ValueError("project path must be non-empty")
    normalized = posixpath.normpath(raw)
    pure = PurePosixPath(normalized)
    if pure.is_absolute() or normalized == "." or pure.parts[0] == "..":
        raise ValueError(f"project path must stay inside the project root: {path!r}")
    return normalized


# ---------------------------------------------------------------------------
# ProjectStore
# ---------------------------------------------------------------------------

class ProjectStore:
    """Project files paired with JSON metadata sidecars.

    Content for a logical path ``a/b.txt`` lives at ``<root>/a/b.txt`` and its
    metadata at ``<root>/.metadata/a/b.txt.json``.  Every mutating call keeps
    the two facets symmetric in existence, but the pair is not updated
    transactionally: a crash between the content and sidecar operations leaves
    an orphan that ``reconcile`` removes.

    The store does no locking.  Callers sharing one project root must
    serialize their own writes.
    """

    def __init__(self, root: Path | str, *, metadata_dir: str = ".metadata") -> None:
        self.root = Path(root)
        self.metadata_dir = metadata_dir
        self.metadata_root = self.root / metadata_dir

    def __repr__(self) -> str:
        return f"ProjectStore(root={str(self.root)!r})"

    def initialize(self) -> None:
        """Create the project root and metadata root if they do not exist."""
        with _translated_os_errors(str(self.root)):
            self.root.mkdir(parents=True, exist_ok=True)
            self.metadata_root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Path mapping
    # ------------------------------------------------------------------

    def content_path(self, path: str | PurePath) -> Path:
        """Filesystem path holding the content facet of ``path``."""
        return self.root.joinpath(*PurePosixPath(normalize_logical_path(path)).parts)

    def metadata_path(self, path: str | PurePath) -> Path:
        """Filesystem path holding the metadata sidecar of ``path``."""
        logical = PurePosixPath(normalize_logical_path(path))
        return self.metadata_root.joinpath(*logical.parent.parts, logical.name + _SIDECAR_SUFFIX)

    def _is_metadata_entry(self, relative: str) -> bool:
        metadata_parts = PurePosixPath(self.metadata_dir).parts
        return PurePosixPath(relative).parts[: len(metadata_parts)] == metadata_parts

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def write(self, path: str | PurePath, record: FileMetadata) -> None:
        """Write the content facet (when given) and replace the sidecar.

        The sidecar receives ``record`` minus ``content`` and minus unset
        fields.  It is not merged with the previous sidecar.

        Args:
            path: Project-relative path.
            record: Content and metadata to persist.
        """
        logical = normalize_logical_path(path)
        with _translated_os_errors(logical):
            if record.content is not None:
                data = record.content.encode("utf-8") if isinstance(record.content, str) else record.content
                _atomic_write_bytes(self.content_path(logical), data)
            _atomic_write_bytes(self.metadata_path(logical), record.sidecar_json().encode("utf-8"))
        logger.debug("wrote %s (content=%s)", logical, record.content is not None)

    def read(
        self,
        path: str | PurePath,
        fields: Iterable[FileField | str] = ALL_FIELDS,
    ) -> FileMetadata:
        """Return only the requested facets of ``path``.

        Content is returned as text when it decodes as UTF-8 and as raw
        ``bytes`` otherwise.  ``size`` and ``last_modified`` come from a live ``stat`` of the content
        file; ``annotations`` comes from the sidecar and is ``[]`` when there is
        no sidecar.

        Raises:
            NotFoundError: If content or stat facets are requested and the
                content file does not exist.
            MalformedMetadata: If annotations are requested and the sidecar
                cannot be parsed.
        """
        logical = normalize_logical_path(path)
        requested = _normalize_fields(fields)
        content_path = self.content_path(logical)
        values: dict[str, object] = {}

        with _translated_os_errors(logical):
            if FileField.CONTENT in requested:
                values["content"] = _decode_content(content_path.read_bytes())
            if requested & LIST_FIELDS:
                stats = content_path.stat()
                if FileField.SIZE in requested:
                    values["size"] = stats.st_size
                if FileField.LAST_MODIFIED in requested:
                    values["last_modified"] = datetime.fromtimestamp(stats.st_mtime, tz=UTC)
        if FileField.ANNOTATIONS in requested:
            values["annotations"] = list(self.read_metadata(logical).annotations or [])
        return FileMetadata(**values)

    def read_metadata(self, path: str | PurePath) -> FileMetadata:
        """Return the sidecar document of ``path`` as stored.

        A missing sidecar yields an empty ``FileMetadata``.

        Raises:
            MalformedMetadata: If the sidecar is not valid JSON or does not
                match the sidecar schema.
        """
        logical = normalize_logical_path(path)
        sidecar = self.metadata_path(logical)
        with _translated_os_errors(logical):
            if not sidecar.is_file():
                return FileMetadata()
            raw = sidecar.read_text(encoding="utf-8")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedMetadata(f"metadata sidecar for {logical} at {sidecar} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise MalformedMetadata(f"metadata sidecar for {logical} at {sidecar} must be a JSON object")
        payload.pop("content", None)
        try:
            return FileMetadata.model_validate(payload)
        except ValidationError as exc:
            raise MalformedMetadata(f"metadata sidecar for {logical} at {sidecar} failed validation: {exc}") from exc

    def list(
        self,
        pattern: str = "**/*",
        fields: Iterable[FileField | str] = LIST_FIELDS,
    ) -> dict[str, FileMetadata]:
        """Expand ``pattern`` against the project root and read each match.

        Hidden entries and directories are included; the metadata tree is not.
        The mapping's iteration order is unspecified.
        """
        requested = _normalize_fields(fields)
        matches = glob.glob(pattern, root_dir=self.root, recursive=True, include_hidden=True)
        result: dict[str, FileMetadata] = {}
        for match in matches:
            relative = Path(match).as_posix()
            if self._is_metadata_entry(relative):
                continue
            result[relative] = self.read(relative, requested)
        logger.debug("list %r matched %d entries under %s", pattern, len(result), self.root)
        return result

    def delete(self, path: str | PurePath) -> None:
        """Remove the content file, then its sidecar when present.

        Raises:
            NotFoundError: If the content file does not exist.
        """
        logical = normalize_logical_path(path)
        with _translated_os_errors(logical):
            self.content_path(logical).unlink()
            self.metadata_path(logical).unlink(missing_ok=True)
        logger.debug("deleted %s", logical)

    def copy(self, source: str | PurePath, destination: str | PurePath) -> None:
        """Copy content byte-for-byte and the sidecar verbatim.

        The destination is overwritten.  When the source has no sidecar, any
        sidecar left at the destination is removed so both paths read the
        same annotations.

        Raises:
            NotFoundError: If the source content file does not exist.
            IOFailure: If the source cannot be read or the destination cannot
                be written; the message names the side that failed.
        """
        src = normalize_logical_path(source)
        dst = normalize_logical_path(destination)
        src_sidecar = self.metadata_path(src)
        dst_sidecar = self.metadata_path(dst)
        with _translated_os_errors(src):
            reader = self.content_path(src).open("rb")
            has_sidecar = src_sidecar.is_file()
        if src == dst:
            reader.close()
            return
        with reader, _translated_os_errors(dst):
            dst_content = self.content_path(dst)
            dst_content.parent.mkdir(parents=True, exist_ok=True)
            with dst_content.open("wb") as writer:
                shutil.copyfileobj(reader, writer)
            if has_sidecar:
                dst_sidecar.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(src_sidecar, dst_sidecar)
            else:
                dst_sidecar.unlink(missing_ok=True)
        logger.debug("copied %s -> %s", src, dst)

    def move(self, source: str | PurePath, destination: str | PurePath) -> None:
        """Rename content, then the sidecar when present.

        The two renames are not atomic as a pair; a failure between them is
        detectable by a subsequent ``read`` and repaired by ``reconcile``.

        Raises:
            NotFoundError: If the source content file does not exist.
            IOFailure: If the destination cannot be replaced; the message
                names the destination.
        """
        src = normalize_logical_path(source)
        dst = normalize_logical_path(destination)
        src_content = self.content_path(src)
        src_sidecar = self.metadata_path(src)
        dst_sidecar = self.metadata_path(dst)
        with _translated_os_errors(src):
            src_content.lstat()
            has_sidecar = src_sidecar.is_file()
        with _translated_os_errors(dst):
            dst_content = self.content_path(dst)
            dst_content.parent.mkdir(parents=True, exist_ok=True)
            os.replace(src_content, dst_content)
            if has_sidecar:
                dst_sidecar.parent.mkdir(parents=True, exist_ok=True)
                os.replace(src_sidecar, dst_sidecar)
            else:
                dst_sidecar.unlink(missing_ok=True)
        logger.debug("moved %s -> %s", src, dst)

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def reconcile(self, *, dry_run: bool = False) -> list[str]:
        """Remove sidecars whose content file no longer exists.

        Args:
            dry_run: Report orphans without deleting them.

        Returns:
            Sorted logical paths of the orphaned sidecars.
        """
        if not self.metadata_root.is_dir():
            return []
        orphans: list[str] = []
        with _translated_os_errors(str(self.metadata_root)):
            for sidecar in self.metadata_root.rglob(f"*{_SIDECAR_SUFFIX}"):
                if not sidecar.is_file():
                    continue
                relative = sidecar.relative_to(self.metadata_root).as_posix()
                logical = relative[: -len(_SIDECAR_SUFFIX)]
                if self.content_path(logical).exists():
                    continue
                orphans.append(logical)
                if not dry_run:
                    sidecar.unlink()
        if orphans:
            logger.info(
                "%s %d orphaned metadata sidecar(s) under %s",
                "found" if dry_run else "removed",
                len(orphans),
                self.metadata_root,
            )
        return sorted(orphans)
