"""Version store — full-tree snapshots of a project directory.

Each version is a copy of the project tree under ``<root>/<version_id>/``
plus a ``metadata.json`` record. ``<root>/versions.json`` holds the
newest-first index of version summaries, bounded by ``max_versions``.

Versions are populated in a staging directory and published with a
single rename, so restore, diff and export never see a partial copy.
Writers are serialized by a lock; readers load the index file, which is
only ever replaced atomically.
"""
from __future__ import annotations

import fnmatch
import json
import logging
import os
import re
import shutil
import threading
import uuid
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from devspace.engine.config import INTERNAL_DIRNAME
from devspace.engine.errors import IOFailureError, NotFoundError
from devspace.shared.services.durable_write import (
    atomic_write_json,
    fsync_dir,
    publish_dir,
)

logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"
SCREENSHOT_FILENAME = "screenshot.json"
INDEX_FILENAME = "versions.json"
INTERNAL_ARTIFACTS = frozenset({METADATA_FILENAME, SCREENSHOT_FILENAME})

EXCLUDED_DIRS = frozenset({"node_modules", ".git", INTERNAL_DIRNAME})
EXCLUDED_FILE_PATTERNS: tuple[str, ...] = ("*.log", ".DS_Store")

DEFAULT_SCREENSHOT_SIZE = {"width": 1920, "height": 1080}

_VERSION_ID_RE = re.compile(r"[0-9a-fA-F-]{1,64}")


@dataclass
class VersionMetadata:
    """Contents of a version's metadata.json."""
    id: str
    timestamp: str
    description: str
    source_project_path: str
    file_count: int
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "description": self.description,
            "sourceProjectPath": self.source_project_path,
            "fileCount": self.file_count,
            "sizeBytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionMetadata:
        return cls(
            id=str(data["id"]),
            timestamp=str(data.get("timestamp", "")),
            description=str(data.get("description", "")),
            source_project_path=str(data.get("sourceProjectPath", "")),
            file_count=int(data.get("fileCount", 0)),
            size_bytes=int(data.get("sizeBytes", 0)),
        )

    def summary(self) -> VersionSummary:
        return VersionSummary(
            id=self.id,
            timestamp=self.timestamp,
            description=self.description,
            file_count=self.file_count,
            size_bytes=self.size_bytes,
        )


@dataclass
class VersionSummary:
    """One entry of versions.json."""
    id: str
    timestamp: str
    description: str
    file_count: int
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "description": self.description,
            "fileCount": self.file_count,
            "sizeBytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionSummary:
        return cls(
            id=str(data["id"]),
            timestamp=str(data.get("timestamp", "")),
            description=str(data.get("description", "")),
            file_count=int(data.get("fileCount", 0)),
            size_bytes=int(data.get("sizeBytes", 0)),
        )


@dataclass
class SavedVersion:
    version_id: str
    timestamp: str
    description: str
    metadata: VersionMetadata


@dataclass
class VersionDetails:
    metadata: VersionMetadata
    files: list[str] = field(default_factory=list)


@dataclass
class RestoreResult:
    version_id: str
    target_path: Path
    timestamp: str
    file_count: int


@dataclass
class VersionDiff:
    """Path-membership comparison between two versions.

    File contents are not compared, so a file edited between the two
    versions appears in ``common`` only.
    """
    added: list[str]
    removed: list[str]
    common: list[str]
    file_count_diff: int
    size_diff: int
    time_diff_seconds: float


@dataclass
class ExportResult:
    version_id: str
    path: Path
    size: int


@dataclass
class VersionStats:
    total_versions: int
    total_size: int
    average_size: float
    oldest_version: VersionSummary | None
    newest_version: VersionSummary | None


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _list_files(root: Path, *, skip_internal: bool = False) -> list[tuple[str, int]]:
    """Return ``(relative_posix_path, size)`` for every file under root.

    Symlinks are not followed. With ``skip_internal`` the top-level
    metadata artifacts are left out.
    """
    entries: list[tuple[str, int]] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        current = Path(dirpath)
        for name in sorted(filenames):
            path = current / name
            rel = path.relative_to(root).as_posix()
            if skip_internal and rel in INTERNAL_ARTIFACTS:
                continue
            entries.append((rel, path.lstat().st_size))
    return entries


def _empty_dir(target: Path, *, keep: Path | None = None) -> None:
    """Remove everything under target except ``keep`` and its ancestors."""
    for child in target.iterdir():
        is_real_dir = child.is_dir() and not child.is_symlink()
        if keep is not None and is_real_dir:
            resolved = child.resolve()
            if resolved == keep:
                logger.warning("Leaving version store %s in place while restoring", keep)
                continue
            if keep.is_relative_to(resolved):
                _empty_dir(child, keep=keep)
                continue
        if is_real_dir:
            shutil.rmtree(child)
        else:
            child.unlink()


class VersionStore:
    """Create, index, restore, diff, export and prune project versions."""

    def __init__(self, root: Path | str = "versions", max_versions: int = 50) -> None:
        if max_versions < 1:
            raise ValueError("max_versions must be at least 1")
        self._root = Path(root).expanduser().resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._index_path = self._root / INDEX_FILENAME
        self._max_versions = max_versions
        self._write_lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def max_versions(self) -> int:
        return self._max_versions

    # ── save ─────────────────────────────────────────────────────

    def save_version(
        self,
        project_path: Path | str,
        description: str = "",
        preview_url: str | None = None,
    ) -> SavedVersion:
        """Snapshot ``project_path`` and prepend it to the index.

        Args:
            project_path: Directory to copy.
            description: Human-readable description.
            preview_url: When given, a screenshot.json preview descriptor
                pointing at the live preview is stored with the version.
        """
        source = Path(project_path).expanduser().resolve()
        if not source.is_dir():
            raise NotFoundError("project", str(project_path))

        version_id = str(uuid.uuid4())
        timestamp = _utc_timestamp()
        staging_dir = self._root / f".tmp-{version_id}"

        try:
            shutil.copytree(
                source, staging_dir, symlinks=True, ignore=self._copy_filter(source),
            )
            files = _list_files(staging_dir)
            metadata = VersionMetadata(
                id=version_id,
                timestamp=timestamp,
                description=description,
                source_project_path=str(source),
                file_count=len(files),
                size_bytes=sum(size for _, size in files),
            )
            atomic_write_json(staging_dir / METADATA_FILENAME, metadata.to_dict())
            if preview_url:
                atomic_write_json(
                    staging_dir / SCREENSHOT_FILENAME,
                    {
                        "timestamp": timestamp,
                        "url": preview_url,
                        "size": dict(DEFAULT_SCREENSHOT_SIZE),
                    },
                )

            final_dir = self._root / version_id
            with self._write_lock:
                publish_dir(staging_dir, final_dir)
                index = self._read_index()
                index.insert(0, metadata.summary())
                pruned = index[self._max_versions:]
                index = index[:self._max_versions]
                try:
                    self._write_index(index)
                except OSError:
                    shutil.rmtree(final_dir, ignore_errors=True)
                    raise
                for entry in pruned:
                    shutil.rmtree(self._root / entry.id, ignore_errors=True)
        except OSError as exc:
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise IOFailureError("save_version", str(source), str(exc)) from exc

        if pruned:
            logger.info("Pruned %d old versions", len(pruned))
        logger.info(
            "Saved version %s (%d files, %d bytes): %s",
            version_id, metadata.file_count, metadata.size_bytes,
            description or "no description",
        )
        return SavedVersion(
            version_id=version_id,
            timestamp=timestamp,
            description=description,
            metadata=metadata,
        )

    def _copy_filter(self, source: Path):
        """Build a copytree ignore callable for dependency/VCS/log paths."""
        store_root = self._root

        def _ignore(dirpath: str, names: list[str]) -> set[str]:
            ignored: set[str] = set()
            for name in names:
                if name in EXCLUDED_DIRS:
                    ignored.add(name)
                elif any(fnmatch.fnmatch(name, pat) for pat in EXCLUDED_FILE_PATTERNS):
                    ignored.add(name)
                elif name == store_root.name and (Path(dirpath) / name).resolve() == store_root:
                    ignored.add(name)
            return ignored

        return _ignore

    # ── read ─────────────────────────────────────────────────────

    def get_versions(self) -> list[VersionSummary]:
        """Return the index, newest first."""
        return self._read_index()

    def get_version(self, version_id: str) -> VersionDetails:
        version_dir = self._version_dir(version_id)
        metadata = self._load_metadata(version_dir, version_id)
        files = sorted(rel for rel, _ in _list_files(version_dir, skip_internal=True))
        return VersionDetails(metadata=metadata, files=files)

    def compare_versions(self, version_id_1: str, version_id_2: str) -> VersionDiff:
        first = self.get_version(version_id_1)
        second = self.get_version(version_id_2)
        files_1 = set(first.files)
        files_2 = set(second.files)
        time_diff = (
            _parse_timestamp(second.metadata.timestamp)
            - _parse_timestamp(first.metadata.timestamp)
        ).total_seconds()
        return VersionDiff(
            added=sorted(files_2 - files_1),
            removed=sorted(files_1 - files_2),
            common=sorted(files_1 & files_2),
            file_count_diff=second.metadata.file_count - first.metadata.file_count,
            size_diff=second.metadata.size_bytes - first.metadata.size_bytes,
            time_diff_seconds=time_diff,
        )

    def get_version_stats(self) -> VersionStats:
        versions = self._read_index()
        total_size = sum(v.size_bytes for v in versions)
        return VersionStats(
            total_versions=len(versions),
            total_size=total_size,
            average_size=total_size / len(versions) if versions else 0.0,
            oldest_version=versions[-1] if versions else None,
            newest_version=versions[0] if versions else None,
        )

    # ── restore / export ─────────────────────────────────────────

    def restore_version(self, version_id: str, target_path: Path | str) -> RestoreResult:
        """Replace the contents of ``target_path`` with a version.

        WARNING: destructive. Everything in the target is deleted first;
        there is no merge.
        """
        version_dir = self._version_dir(version_id)
        self._load_metadata(version_dir, version_id)
        target = Path(target_path).expanduser().resolve()
        if target == self._root or target.is_relative_to(self._root):
            raise IOFailureError(
                "restore_version", str(target), "target lies inside the version store",
            )

        try:
            target.mkdir(parents=True, exist_ok=True)
            keep = self._root if self._root.is_relative_to(target) else None
            _empty_dir(target, keep=keep)
            shutil.copytree(version_dir, target, symlinks=True, dirs_exist_ok=True)
            for name in INTERNAL_ARTIFACTS:
                (target / name).unlink(missing_ok=True)
            fsync_dir(target)
        except OSError as exc:
            raise IOFailureError("restore_version", str(target), str(exc)) from exc

        file_count = len(_list_files(target))
        logger.info("Restored version %s to %s", version_id, target)
        return RestoreResult(
            version_id=version_id,
            target_path=target,
            timestamp=_utc_timestamp(),
            file_count=file_count,
        )

    def export_version(self, version_id: str, export_dir: Path | str) -> ExportResult:
        """Write the version directory to ``<export_dir>/version-<id>.zip``."""
        version_dir = self._version_dir(version_id)
        self._load_metadata(version_dir, version_id)
        out_dir = Path(export_dir).expanduser()
        zip_path = out_dir / f"version-{version_id}.zip"
        tmp_path = out_dir / f".version-{version_id}.zip.tmp"

        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(
                tmp_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9,
            ) as zf:
                for rel, _ in _list_files(version_dir):
                    zf.write(version_dir / rel, arcname=rel)
            os.replace(tmp_path, zip_path)
        except (OSError, zipfile.BadZipFile) as exc:
            tmp_path.unlink(missing_ok=True)
            raise IOFailureError("export_version", str(zip_path), str(exc)) from exc

        size = zip_path.stat().st_size
        logger.info("Exported version %s to %s (%d bytes)", version_id, zip_path, size)
        return ExportResult(version_id=version_id, path=zip_path, size=size)

    # ── delete ───────────────────────────────────────────────────

    def delete_version(self, version_id: str) -> bool:
        version_dir = self._version_dir(version_id)
        with self._write_lock:
            index = self._read_index()
            remaining = [v for v in index if v.id != version_id]
            if not version_dir.exists() and len(remaining) == len(index):
                raise NotFoundError("version", version_id)
            try:
                if version_dir.exists():
                    shutil.rmtree(version_dir)
                if len(remaining) != len(index):
                    self._write_index(remaining)
            except OSError as exc:
                raise IOFailureError("delete_version", str(version_dir), str(exc)) from exc
        logger.info("Deleted version %s", version_id)
        return True

    def rebuild_index(self) -> list[VersionSummary]:
        """Regenerate versions.json from the metadata of published versions."""
        with self._write_lock:
            summaries = self._scan_metadata()
            self._write_index(summaries)
        logger.info("Rebuilt version index with %d entries", len(summaries))
        return summaries

    # ── internals ────────────────────────────────────────────────

    def _version_dir(self, version_id: str) -> Path:
        if not isinstance(version_id, str) or not _VERSION_ID_RE.fullmatch(version_id):
            raise NotFoundError("version", str(version_id))
        return self._root / version_id

    def _load_metadata(self, version_dir: Path, version_id: str) -> VersionMetadata:
        meta_file = version_dir / METADATA_FILENAME
        if not meta_file.is_file():
            raise NotFoundError("version", version_id)
        try:
            return VersionMetadata.from_dict(json.loads(meta_file.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError) as exc:
            raise IOFailureError("read_metadata", str(meta_file), str(exc)) from exc

    def _read_index(self) -> list[VersionSummary]:
        if not self._index_path.exists():
            return []
        try:
            raw = json.loads(self._index_path.read_text(encoding="utf-8"))
            return [VersionSummary.from_dict(item) for item in raw]
        except (OSError, ValueError, KeyError, TypeError):
            logger.warning(
                "Version index %s is unreadable; rebuilding from metadata",
                self._index_path,
            )
            return self._scan_metadata()

    def _write_index(self, index: list[VersionSummary]) -> None:
        atomic_write_json(self._index_path, [v.to_dict() for v in index])

    def _scan_metadata(self) -> list[VersionSummary]:
        summaries: list[VersionSummary] = []
        for child in self._root.iterdir():
            meta_file = child / METADATA_FILENAME
            if child.name.startswith(".") or not meta_file.is_file():
                continue
            try:
                meta = VersionMetadata.from_dict(
                    json.loads(meta_file.read_text(encoding="utf-8"))
                )
            except (OSError, ValueError, KeyError):
                logger.debug("Skipping corrupt version metadata in %s", child)
                continue
            summaries.append(meta.summary())
        summaries.sort(key=lambda v: v.timestamp, reverse=True)
        return summaries[:self._max_versions]
