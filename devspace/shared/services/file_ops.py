"""Project-scoped file operations used by the action executor."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from devspace.engine.config import INTERNAL_DIRNAME
from devspace.engine.errors import IOFailureError, NotFoundError, PolicyViolationError

logger = logging.getLogger(__name__)

EDIT_OPERATIONS = frozenset(
    {"replace", "append", "prepend", "insert", "replace_text", "delete_lines"}
)
LIST_SKIP_DIRS = frozenset({"node_modules", ".git", INTERNAL_DIRNAME})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FileOperations:
    """Read, create, edit, delete and list files under one project root."""

    def __init__(self, project_root: Path | str, max_file_size: int = 10 * 1024 * 1024) -> None:
        self._root = Path(project_root).expanduser().resolve()
        self._max_file_size = max_file_size

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, file: str | Path) -> Path:
        if not file:
            raise ValueError("File path is required")
        candidate = Path(file).expanduser()
        if not candidate.is_absolute():
            candidate = self._root / candidate
        candidate = candidate.resolve()
        if not candidate.is_relative_to(self._root):
            raise PolicyViolationError("path", str(file), "outside project directory")
        return candidate

    def relative(self, path: Path) -> str:
        return path.relative_to(self._root).as_posix()

    def read_file(
        self,
        file: str,
        start_line: int | None = None,
        end_line: int | None = None,
    ) -> dict[str, Any]:
        path = self.resolve(file)
        if not path.is_file():
            raise NotFoundError("file", file)
        size = path.stat().st_size
        if size > self._max_file_size:
            raise IOFailureError("read_file", file, f"file too large ({size} bytes)")
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise IOFailureError("read_file", file, str(exc)) from exc

        if start_line is not None or end_line is not None:
            lines = content.split("\n")
            start = start_line or 1
            end = end_line or len(lines)
            if start < 1 or end > len(lines) or start > end:
                raise ValueError("Invalid line range")
            content = "\n".join(lines[start - 1:end])

        return {
            "file": self.relative(path),
            "content": content,
            "size": size,
            "lines": content.count("\n") + 1,
            "timestamp": _now(),
        }

    def create_file(self, file: str, content: str = "") -> dict[str, Any]:
        path = self.resolve(file)
        if path.exists():
            raise IOFailureError("create_file", file, "file already exists")
        self._write(path, content, "create_file")
        logger.info("Created %s (%d chars)", self.relative(path), len(content))
        return {
            "file": self.relative(path),
            "size": len(content),
            "timestamp": _now(),
        }

    def edit_file(
        self,
        file: str,
        content: str = "",
        operation: str = "replace",
        *,
        search: str | None = None,
        replace: str | None = None,
        line: int | None = None,
    ) -> dict[str, Any]:
        """Apply one edit operation.

        ``insert`` puts ``content`` before 1-based ``line``;
        ``replace_text`` is a regex substitution of ``search`` by
        ``replace``; ``delete_lines`` removes 1-based ``line``.
        """
        if operation not in EDIT_OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        path = self.resolve(file)
        original = ""
        if path.exists():
            try:
                original = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise IOFailureError("edit_file", file, str(exc)) from exc

        if operation == "replace":
            updated = content
        elif operation == "append":
            updated = f"{original}\n{content}"
        elif operation == "prepend":
            updated = f"{content}\n{original}"
        elif operation == "insert":
            lines = original.split("\n")
            if line is None or line < 1 or line > len(lines) + 1:
                raise ValueError("Invalid line number for insert operation")
            lines.insert(line - 1, content)
            updated = "\n".join(lines)
        elif operation == "replace_text":
            if not search or replace is None:
                raise ValueError("Search and replace text required")
            updated = re.sub(search, replace, original)
        else:
            lines = original.split("\n")
            if line is None or line < 1 or line > len(lines):
                raise ValueError("Invalid line number for delete operation")
            del lines[line - 1]
            updated = "\n".join(lines)

        self._write(path, updated, "edit_file")
        logger.info(
            "Edited %s (%s, %+d chars)", self.relative(path), operation,
            len(updated) - len(original),
        )
        return {
            "file": self.relative(path),
            "operation": operation,
            "original_size": len(original),
            "new_size": len(updated),
            "changes": len(updated) - len(original),
            "timestamp": _now(),
        }

    def delete_file(self, file: str) -> dict[str, Any]:
        path = self.resolve(file)
        if not path.is_file():
            raise NotFoundError("file", file)
        size = path.stat().st_size
        try:
            path.unlink()
        except OSError as exc:
            raise IOFailureError("delete_file", file, str(exc)) from exc
        logger.info("Deleted %s", self.relative(path))
        return {"file": self.relative(path), "deleted_size": size, "timestamp": _now()}

    def list_files(self, pattern: str = "**/*", include_hidden: bool = False) -> dict[str, Any]:
        if ".." in pattern or pattern.startswith("/"):
            raise ValueError("Invalid pattern: contains path traversal")
        entries: list[dict[str, Any]] = []
        for path in self._root.glob(pattern):
            rel_parts = path.relative_to(self._root).parts
            if any(part in LIST_SKIP_DIRS for part in rel_parts):
                continue
            if not include_hidden and any(part.startswith(".") for part in rel_parts):
                continue
            try:
                stat = path.stat()
            except OSError:
                logger.debug("Skipping unreadable entry %s", path)
                continue
            entries.append({
                "path": "/".join(rel_parts),
                "is_directory": path.is_dir(),
                "size": stat.st_size,
                "last_modified": datetime.fromtimestamp(
                    stat.st_mtime, tz=timezone.utc,
                ).isoformat(),
            })
        entries.sort(key=lambda e: (not e["is_directory"], e["path"]))
        return {"files": entries, "count": len(entries), "timestamp": _now()}

    def _write(self, path: Path, content: str, operation: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise IOFailureError(operation, self.relative(path), str(exc)) from exc
