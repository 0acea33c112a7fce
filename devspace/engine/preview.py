"""Preview orchestrator — one dev-server process per session.

Lifecycle per session (see lifecycle.py):

    start_preview ─> acquire port ─> spawn ─> probe task ─> RUNNING
    stop_preview  ─> cancel probe ─> SIGTERM ─> bounded wait ─> SIGKILL
                  ─> release port ─> drop entry

Operations on the same session are serialized by a per-session lock.
The lock is never held across the health probe, so a stop can
supersede a start that is still waiting for the server; the start then
fails with ProcessFailureError and no process or port is left behind.
Different sessions never contend on a shared lock.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiohttp

from .config import DEFAULT_PROJECT_TYPE, WorkspaceConfig
from .errors import NotFoundError, PreviewAlreadyRunningError, ProcessFailureError
from .lifecycle import validate_transition
from .models import (
    NOT_FOUND_STATUS,
    TERMINAL_STATES,
    CleanupOutcome,
    PreviewInfo,
    PreviewInstance,
    PreviewState,
    StatusRecord,
)
from .port_allocator import PortAllocator
from .process_handle import ProcessLauncher, make_subprocess_launcher

logger = logging.getLogger(__name__)

# Signature: async def probe(url) -> bool (True once the server answers)
ReadinessProbe = Callable[[str], Awaitable[bool]]


class HttpProbe:
    """GET the preview URL; any HTTP response (or only 2xx) means ready."""

    def __init__(self, timeout_seconds: float = 2.0, accept_any_status: bool = True) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._accept_any_status = accept_any_status

    async def __call__(self, url: str) -> bool:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(url, allow_redirects=False) as resp:
                    if self._accept_any_status:
                        return True
                    return 200 <= resp.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PreviewOrchestrator:
    """Owns the per-session preview processes and their ports."""

    def __init__(
        self,
        port_allocator: PortAllocator,
        config: WorkspaceConfig | None = None,
        *,
        launcher: ProcessLauncher | None = None,
        probe: ReadinessProbe | None = None,
    ) -> None:
        self._config = config or WorkspaceConfig()
        self._ports = port_allocator
        self._launcher = launcher or make_subprocess_launcher(self._config.log_buffer_lines)
        self._probe = probe or HttpProbe(
            timeout_seconds=self._config.probe_request_timeout_seconds,
            accept_any_status=self._config.probe_accept_any_status,
        )
        self._instances: dict[str, PreviewInstance] = {}
        self._locks = KeyedLocks()

    async def __aenter__(self) -> PreviewOrchestrator:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.cleanup_all_previews()

    # ── start ────────────────────────────────────────────────────

    async def start_preview(
        self,
        session_id: str,
        project_path: Path | str,
        project_type: str = DEFAULT_PROJECT_TYPE,
    ) -> PreviewInfo:
        """Spawn the dev server for a session and wait until it answers.

        Raises:
            NotFoundError: project_path is not a directory.
            ResourceExhaustedError: no free port.
            PreviewAlreadyRunningError: the session's preview is starting
                or running; no second process is spawned.
            ProcessFailureError: spawn failed, the server never answered,
                it exited during startup, or a stop superseded the start.
        """
        path = Path(project_path).expanduser()
        project_type = project_type or DEFAULT_PROJECT_TYPE

        async with self._locks.hold(session_id):
            existing = self._instances.get(session_id)
            if existing is not None:
                if existing.handle is not None and not existing.handle.is_alive():
                    logger.info(
                        "Discarding dead preview for session %s before restart",
                        session_id,
                    )
                    existing.superseded = True
                    if existing.probe_task is not None and not existing.probe_task.done():
                        existing.probe_task.cancel()
                    self._transition(existing, PreviewState.FAILED)
                    await self._terminate(existing)
                else:
                    raise PreviewAlreadyRunningError(session_id, existing.state.value)

            if not path.is_dir():
                raise NotFoundError("project", str(project_path))

            port = self._ports.acquire()
            instance = PreviewInstance(
                session_id=session_id,
                project_path=path,
                project_type=project_type,
                port=port,
            )
            self._transition(instance, PreviewState.STARTING)
            command = self._config.start_command_for(project_type, port)
            logger.info(
                "Starting preview for session %s on port %d: %s",
                session_id, port, command,
            )
            try:
                instance.handle = await self._launcher(
                    command, path, {"PORT": str(port), "NODE_ENV": "development"},
                )
            except (OSError, ValueError) as exc:
                self._ports.release(port)
                instance.released = True
                self._transition(instance, PreviewState.FAILED)
                raise ProcessFailureError(session_id, f"spawn failed: {exc}") from exc

            self._instances[session_id] = instance
            instance.probe_task = asyncio.create_task(
                self._wait_until_ready(instance),
                name=f"preview-probe-{session_id}",
            )

        try:
            await instance.probe_task
        except asyncio.CancelledError:
            await asyncio.shield(self._abort_start(instance))
            if instance.superseded:
                raise ProcessFailureError(
                    session_id, "startup superseded by stop",
                ) from None
            raise
        except ProcessFailureError:
            await asyncio.shield(self._abort_start(instance))
            raise

        async with self._locks.hold(session_id):
            if instance.superseded or self._instances.get(session_id) is not instance:
                raise ProcessFailureError(session_id, "startup superseded by stop")
            instance.url = f"http://localhost:{instance.port}"
            self._transition(instance, PreviewState.RUNNING)
            instance.watch_task = asyncio.create_task(
                self._watch_exit(instance),
                name=f"preview-watch-{session_id}",
            )
            logger.info("Preview started successfully: %s", instance.url)
            return instance.to_info()

    async def _wait_until_ready(self, instance: PreviewInstance) -> None:
        """Fixed-interval readiness probe bounded by probe_max_attempts."""
        url = f"http://{self._config.probe_host}:{instance.port}"
        max_attempts = self._config.probe_max_attempts
        handle = instance.handle
        for attempt in range(1, max_attempts + 1):
            if handle is not None and not handle.is_alive():
                raise ProcessFailureError(
                    instance.session_id,
                    "process exited before becoming ready",
                    handle.returncode,
                )
            if await self._probe(url):
                logger.info("Server is ready on port %d", instance.port)
                return
            logger.debug(
                "Waiting for server on port %d... attempt %d/%d",
                instance.port, attempt, max_attempts,
            )
            if attempt < max_attempts:
                await asyncio.sleep(self._config.probe_interval_seconds)
        raise ProcessFailureError(
            instance.session_id,
            f"server failed to start after {max_attempts} attempts",
        )

    async def _abort_start(self, instance: PreviewInstance) -> None:
        async with self._locks.hold(instance.session_id):
            if instance.released:
                return
            if instance.state == PreviewState.STARTING:
                self._transition(instance, PreviewState.FAILED)
            await self._terminate(instance)

    # ── stop / restart ───────────────────────────────────────────

    async def stop_preview(self, session_id: str) -> bool:
        """Stop a session's preview. Returns False if none existed."""
        async with self._locks.hold(session_id):
            instance = self._instances.get(session_id)
            if instance is None:
                logger.warning("No preview found for session: %s", session_id)
                return False

            logger.info("Stopping preview for session: %s", session_id)
            instance.superseded = True
            if instance.probe_task is not None and not instance.probe_task.done():
                instance.probe_task.cancel()
            if instance.state in (PreviewState.STARTING, PreviewState.RUNNING):
                self._transition(instance, PreviewState.STOPPING)
            try:
                await self._terminate(instance)
            except BaseException:
                if instance.state == PreviewState.STOPPING:
                    self._transition(instance, PreviewState.FAILED)
                raise
            if instance.state == PreviewState.STOPPING:
                self._transition(instance, PreviewState.STOPPED)

        logger.info("Preview stopped for session: %s", session_id)
        return True

    async def restart_preview(self, session_id: str) -> PreviewInfo:
        instance = self._instances.get(session_id)
        if instance is None:
            raise NotFoundError("preview", session_id)
        logger.info("Restarting preview for session: %s", session_id)
        project_path, project_type = instance.project_path, instance.project_type
        await self.stop_preview(session_id)
        info = await self.start_preview(session_id, project_path, project_type)
        logger.info("Preview restarted successfully for session: %s", session_id)
        return info

    async def _terminate(self, instance: PreviewInstance) -> None:
        """Kill the process (bounded wait) and release the port. Lock held."""
        watch_task = instance.watch_task
        if watch_task is not None and watch_task is not asyncio.current_task():
            watch_task.cancel()
        try:
            handle = instance.handle
            if handle is not None and handle.is_alive():
                handle.terminate()
                code = await handle.wait(timeout=self._config.stop_timeout_seconds)
                if code is None:
                    logger.warning(
                        "Preview for session %s did not exit within %.1fs; killing",
                        instance.session_id, self._config.stop_timeout_seconds,
                    )
                    handle.kill()
                    await handle.wait(timeout=self._config.stop_timeout_seconds)
        finally:
            self._ports.release(instance.port)
            instance.released = True
            if self._instances.get(instance.session_id) is instance:
                del self._instances[instance.session_id]

    async def _watch_exit(self, instance: PreviewInstance) -> None:
        """Reclaim resources when a running server exits on its own."""
        if instance.handle is None:
            return
        code = await instance.handle.wait()
        async with self._locks.hold(instance.session_id):
            if instance.released or instance.superseded:
                return
            if self._instances.get(instance.session_id) is not instance:
                return
            logger.warning(
                "Preview process for session %s exited unexpectedly (code %s)",
                instance.session_id, code,
            )
            self._transition(instance, PreviewState.FAILED)
            await self._terminate(instance)

    # ── status ───────────────────────────────────────────────────

    def get_preview_status(self, session_id: str) -> StatusRecord:
        """Status from the live process handle, not just the last state."""
        instance = self._instances.get(session_id)
        if instance is None:
            return StatusRecord(session_id=session_id, status=NOT_FOUND_STATUS)

        status = instance.state.value
        handle = instance.handle
        if (
            handle is not None
            and not handle.is_alive()
            and instance.state not in TERMINAL_STATES
        ):
            status = (
                PreviewState.STOPPED.value
                if handle.returncode == 0
                else PreviewState.FAILED.value
            )
        return StatusRecord(
            session_id=session_id,
            status=status,
            url=instance.url,
            port=instance.port,
            started_at=instance.started_at,
            uptime_seconds=(_utcnow() - instance.started_at).total_seconds(),
            pid=handle.pid if handle is not None else None,
        )

    def get_preview_url(self, session_id: str) -> str | None:
        if self.get_preview_status(session_id).status != PreviewState.RUNNING.value:
            return None
        return self._instances[session_id].url

    def get_preview_logs(self, session_id: str, lines: int = 100) -> dict[str, Any] | None:
        instance = self._instances.get(session_id)
        if instance is None:
            return None
        tail = instance.handle.output_tail(lines) if instance.handle is not None else []
        return {
            "session_id": session_id,
            "lines": tail,
            "timestamp": _utcnow().isoformat(),
        }

    def get_all_previews(self) -> list[StatusRecord]:
        records: list[StatusRecord] = []
        for session_id in list(self._instances):
            try:
                records.append(self.get_preview_status(session_id))
            except Exception as exc:
                logger.error(
                    "Failed to read preview status for %s: %s", session_id, exc,
                )
                records.append(StatusRecord(session_id=session_id, status="unknown"))
        return records

    def active_sessions(self) -> list[str]:
        return list(self._instances)

    async def cleanup_all_previews(self) -> list[CleanupOutcome]:
        """Stop every preview; one failure never stops the others."""
        session_ids = list(self._instances)
        logger.info("Cleaning up %d previews", len(session_ids))
        results = await asyncio.gather(
            *(self.stop_preview(sid) for sid in session_ids),
            return_exceptions=True,
        )
        outcomes: list[CleanupOutcome] = []
        for session_id, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to stop preview for %s: %s: %s",
                    session_id, type(result).__name__, result,
                )
                outcomes.append(
                    CleanupOutcome(session_id=session_id, success=False, error=result)
                )
            else:
                outcomes.append(
                    CleanupOutcome(session_id=session_id, success=True, stopped=result)
                )
        logger.info("All previews cleaned up")
        return outcomes

    @staticmethod
    def _transition(instance: PreviewInstance, target: PreviewState) -> None:
        validate_transition(instance.state, target)
        logger.debug(
            "Preview %s: %s -> %s", instance.session_id, instance.state.value, target.value,
        )
        instance.state = target
