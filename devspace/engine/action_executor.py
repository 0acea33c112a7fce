"""Policy-gated execution of agent-proposed actions.

Each action is checked by the PolicyGuard before anything runs. A
rejection is recorded as a result, never raised; an approved action is
dispatched to the preview orchestrator, the version store, file
operations or a shell, and its output or typed error is recorded.
Actions run in order and a failure never stops the remaining ones.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import aiohttp

from devspace.shared.services.file_ops import FileOperations
from devspace.shared.services.policy_guard import PolicyGuard
from devspace.shared.services.version_store import EXCLUDED_DIRS, VersionStore

from .config import WorkspaceConfig
from .errors import PolicyViolationError, ProcessFailureError, UnknownActionError
from .models import Action, ActionResult, ActionStatus, WorkspaceSession
from .preview import PreviewOrchestrator

logger = logging.getLogger(__name__)

ACTION_ALIASES: dict[str, str] = {
    "bash": "run_command",
    "startup": "start_preview",
    "version_save": "save_version",
    "create_snapshot": "save_version",
    "web_fetch": "fetch_url",
}
FILE_ACTIONS = frozenset({"create_file", "edit_file", "read_file", "delete_file"})
CONTENT_ACTIONS = frozenset({"create_file", "edit_file"})


def _trim_output(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    omitted = len(text) - limit
    return f"{text[:limit]}\n... [truncated {omitted} chars]"


def _project_size(root: Path) -> int:
    """Bytes under root, skipping dependency and VCS directories."""
    total = 0
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in EXCLUDED_DIRS]
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total


class ActionExecutor:
    """Runs the policy gate for each action, then dispatches it."""

    def __init__(
        self,
        policy: PolicyGuard,
        previews: PreviewOrchestrator,
        versions: VersionStore,
        config: WorkspaceConfig | None = None,
    ) -> None:
        self._policy = policy
        self._previews = previews
        self._versions = versions
        self._config = config or WorkspaceConfig()

    async def execute(
        self,
        session: WorkspaceSession,
        actions: Iterable[Action | dict[str, Any]],
    ) -> list[ActionResult]:
        results: list[ActionResult] = []
        for raw in actions:
            action = raw if isinstance(raw, Action) else Action.from_dict(raw)
            kind = ACTION_ALIASES.get(action.type, action.type)

            try:
                self._check(session, kind, action)
            except PolicyViolationError as exc:
                logger.warning(
                    "Rejected %s for session %s: %s", action.type, session.id, exc.reason,
                )
                results.append(ActionResult(action=action, status=ActionStatus.REJECTED, error=exc))
                continue

            try:
                result = await self._dispatch(session, kind, action)
            except Exception as exc:  # recorded per action; the batch continues
                logger.error(
                    "Action %s failed for session %s: %s: %s",
                    action.type, session.id, type(exc).__name__, exc,
                )
                results.append(ActionResult(action=action, status=ActionStatus.FAILED, error=exc))
            else:
                status = ActionStatus.OK
                error = None
                if kind == "run_command" and result.get("exit_code") != 0:
                    status = ActionStatus.FAILED
                    error = ProcessFailureError(
                        session.id, "command exited with an error", result.get("exit_code"),
                    )
                results.append(
                    ActionResult(action=action, status=status, result=result, error=error)
                )
        return results

    # ── policy gate ──────────────────────────────────────────────

    def _check(self, session: WorkspaceSession, kind: str, action: Action) -> None:
        params = action.params
        self._require("session duration", str(session.created_at),
                      self._policy.check_session_duration(session.created_at))

        if kind in FILE_ACTIONS:
            file = params.get("file") or params.get("path")
            self._require("path", str(file),
                          self._policy.check_file_path(file, session.working_directory))
            if kind in CONTENT_ACTIONS:
                content = params.get("content") or ""
                self._require("file size", str(file),
                              self._policy.check_file_size(len(str(content).encode("utf-8"))))
        elif kind == "list_files":
            root = params.get("path") or "."
            self._require("path", str(root),
                          self._policy.check_file_path(root, session.working_directory))
        elif kind == "run_command":
            command = params.get("command")
            self._require("command", str(command), self._policy.check_command(command))
        elif kind == "fetch_url":
            url = params.get("url")
            self._require("url", str(url), self._policy.check_url(url))
        elif kind == "start_preview":
            others = [s for s in self._previews.active_sessions() if s != session.id]
            self._require("concurrent sessions", session.id,
                          self._policy.check_concurrent_sessions(len(others)))
        elif kind == "save_version":
            size = _project_size(session.working_directory)
            self._require("project size", str(session.working_directory),
                          self._policy.check_project_size(size))

    @staticmethod
    def _require(check: str, subject: str, verdict: tuple[bool, str]) -> None:
        allowed, reason = verdict
        if not allowed:
            raise PolicyViolationError(check, subject, reason)

    # ── dispatch ─────────────────────────────────────────────────

    async def _dispatch(self, session: WorkspaceSession, kind: str, action: Action) -> Any:
        params = action.params
        if kind in FILE_ACTIONS or kind == "list_files":
            return await asyncio.to_thread(self._file_action, session, kind, params)

        if kind == "run_command":
            return await self._run_command(session, params["command"])
        if kind == "fetch_url":
            return await self._fetch_url(params["url"])

        if kind == "start_preview":
            return await self._previews.start_preview(
                session.id,
                session.working_directory,
                params.get("project_type") or session.project_type,
            )
        if kind == "restart_preview":
            return await self._previews.restart_preview(session.id)
        if kind == "stop_preview":
            return await self._previews.stop_preview(session.id)

        if kind == "save_version":
            description = self._policy.sanitize_input(
                params.get("description") or action.description
            )
            return await asyncio.to_thread(
                self._versions.save_version,
                session.working_directory,
                description,
                self._previews.get_preview_url(session.id),
            )
        if kind == "restore_version":
            version_id = params.get("version_id")
            if not version_id:
                raise ValueError("restore_version requires a version_id")
            return await asyncio.to_thread(
                self._versions.restore_version,
                version_id,
                session.working_directory,
            )

        raise UnknownActionError(action.type)

    def _file_action(self, session: WorkspaceSession, kind: str, params: dict[str, Any]) -> Any:
        files = FileOperations(
            session.working_directory, max_file_size=self._policy.rules.max_file_size,
        )
        file = params.get("file") or params.get("path")
        if kind == "read_file":
            return files.read_file(file, params.get("start_line"), params.get("end_line"))
        if kind == "create_file":
            return files.create_file(file, params.get("content") or "")
        if kind == "edit_file":
            return files.edit_file(
                file,
                params.get("content") or "",
                params.get("operation") or "replace",
                search=params.get("search"),
                replace=params.get("replace"),
                line=params.get("line"),
            )
        if kind == "delete_file":
            return files.delete_file(file)
        return files.list_files(
            params.get("pattern") or "**/*",
            include_hidden=bool(params.get("include_hidden", False)),
        )

    async def _run_command(self, session: WorkspaceSession, command: str) -> dict[str, Any]:
        timeout = self._config.command_timeout_seconds
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(session.working_directory),
            start_new_session=True,
        )
        logger.info("Running command for session %s pid=%s: %s", session.id, proc.pid, command)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await proc.wait()
            raise ProcessFailureError(
                session.id, f"command timed out after {timeout}s",
            ) from None

        limit = self._config.max_output_chars
        return {
            "command": command,
            "exit_code": proc.returncode,
            "stdout": _trim_output(stdout.decode(errors="ignore"), limit),
            "stderr": _trim_output(stderr.decode(errors="ignore"), limit),
        }

    async def _fetch_url(self, url: str) -> dict[str, Any]:
        """GET a URL. Redirects are not followed, so every hop passes the gate."""
        timeout = aiohttp.ClientTimeout(total=self._config.fetch_timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as client:
            async with client.get(url, allow_redirects=False) as resp:
                body = await resp.text(errors="ignore")
                return {
                    "url": url,
                    "status": resp.status,
                    "content_type": resp.content_type,
                    "location": resp.headers.get("Location"),
                    "body": _trim_output(body, self._config.max_output_chars),
                }
