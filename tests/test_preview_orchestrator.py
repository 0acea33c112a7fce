"""Preview orchestrator tests — fake processes plus one real dev server."""

from __future__ import annotations

import asyncio
import shlex
import socket
import sys

import pytest

from devspace.engine.config import WorkspaceConfig
from devspace.engine.errors import (
    NotFoundError,
    PreviewAlreadyRunningError,
    ProcessFailureError,
)
from devspace.engine.port_allocator import PortAllocator
from devspace.engine.preview import HttpProbe, KeyedLocks, PreviewOrchestrator


class FakeHandle:
    def __init__(self, pid: int) -> None:
        self._pid = pid
        self._returncode: int | None = None
        self._exited = asyncio.Event()
        self.ignore_terminate = False
        self.fail_terminate = False
        self.terminated = 0
        self.killed = 0
        self.lines = [f"ready on pid {pid}", "compiled"]

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def is_alive(self) -> bool:
        return self._returncode is None

    def exit(self, code: int) -> None:
        if self._returncode is None:
            self._returncode = code
            self._exited.set()

    def terminate(self) -> None:
        self.terminated += 1
        if self.fail_terminate:
            raise RuntimeError("signal failed")
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed += 1
        self.exit(-9)

    async def wait(self, timeout: float | None = None) -> int | None:
        if timeout is None:
            await self._exited.wait()
            return self._returncode
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self._returncode

    def output_tail(self, lines: int = 100) -> list[str]:
        return self.lines[-lines:]


class FakeLauncher:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.handles: list[FakeHandle] = []
        self.error: Exception | None = None
        self.exit_immediately: int | None = None

    async def __call__(self, command, cwd, env):
        self.calls.append((command, dict(env)))
        if self.error is not None:
            raise self.error
        handle = FakeHandle(pid=1000 + len(self.handles))
        if self.exit_immediately is not None:
            handle.exit(self.exit_immediately)
        self.handles.append(handle)
        return handle


async def always_ready(url: str) -> bool:
    return True


async def never_ready(url: str) -> bool:
    return False


async def hangs(url: str) -> bool:
    await asyncio.Event().wait()
    return True


def _config(**overrides) -> WorkspaceConfig:
    values = dict(
        base_port=4100,
        probe_interval_seconds=0.01,
        probe_max_attempts=3,
        stop_timeout_seconds=0.05,
    )
    values.update(overrides)
    return WorkspaceConfig(**values)


def _orchestrator(launcher, probe=always_ready, **overrides):
    ports = PortAllocator(base_port=4100)
    orch = PreviewOrchestrator(ports, _config(**overrides), launcher=launcher, probe=probe)
    return orch, ports


async def _until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.mark.asyncio
async def test_start_preview_returns_running_info(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher)

    info = await orch.start_preview("s1", tmp_path, "react")

    assert info.status == "running"
    assert info.port == 4100
    assert info.url == "http://localhost:4100"
    assert launcher.calls[0][0] == "bun dev --port 4100 --host"
    assert launcher.calls[0][1] == {"PORT": "4100", "NODE_ENV": "development"}

    status = orch.get_preview_status("s1")
    assert status.status == "running"
    assert status.pid == 1000
    assert orch.get_preview_url("s1") == "http://localhost:4100"
    assert ports.in_use() == [4100]
    await orch.cleanup_all_previews()


@pytest.mark.asyncio
async def test_unknown_project_type_uses_nextjs_command(tmp_path):
    launcher = FakeLauncher()
    orch, _ = _orchestrator(launcher)
    await orch.start_preview("s1", tmp_path, "cobol")
    assert launcher.calls[0][0] == "bun dev --port 4100 --hostname 0.0.0.0"
    await orch.cleanup_all_previews()


@pytest.mark.asyncio
async def test_second_start_for_same_session_is_rejected(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher)
    await orch.start_preview("s1", tmp_path)

    with pytest.raises(PreviewAlreadyRunningError):
        await orch.start_preview("s1", tmp_path)

    assert len(launcher.calls) == 1
    assert ports.in_use() == [4100]
    await orch.cleanup_all_previews()


@pytest.mark.asyncio
async def test_concurrent_starts_for_same_session_spawn_once(tmp_path):
    launcher = FakeLauncher()
    orch, _ = _orchestrator(launcher)

    results = await asyncio.gather(
        orch.start_preview("s1", tmp_path),
        orch.start_preview("s1", tmp_path),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, PreviewAlreadyRunningError)) == 1
    assert len(launcher.handles) == 1
    await orch.cleanup_all_previews()


@pytest.mark.asyncio
async def test_concurrent_sessions_get_distinct_ports(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher)

    infos = await asyncio.gather(
        *(orch.start_preview(f"s{i}", tmp_path) for i in range(5))
    )

    assert sorted(i.port for i in infos) == [4100, 4101, 4102, 4103, 4104]
    assert len(orch.get_all_previews()) == 5
    outcomes = await orch.cleanup_all_previews()
    assert all(o.success and o.stopped for o in outcomes)
    assert ports.in_use() == []


@pytest.mark.asyncio
async def test_stop_releases_port_for_reuse(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher)
    await orch.start_preview("s1", tmp_path)

    assert await orch.stop_preview("s1") is True
    assert launcher.handles[0].terminated == 1
    assert not launcher.handles[0].is_alive()
    assert ports.in_use() == []
    assert orch.get_preview_status("s1").status == "not_found"
    assert not orch.get_preview_status("s1").found

    info = await orch.start_preview("s2", tmp_path)
    assert info.port == 4100
    await orch.cleanup_all_previews()


@pytest.mark.asyncio
async def test_stop_unknown_session_returns_false():
    orch, _ = _orchestrator(FakeLauncher())
    assert await orch.stop_preview("ghost") is False


@pytest.mark.asyncio
async def test_stop_kills_process_ignoring_terminate(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher)
    await orch.start_preview("s1", tmp_path)
    launcher.handles[0].ignore_terminate = True

    await orch.stop_preview("s1")

    assert launcher.handles[0].killed == 1
    assert ports.in_use() == []


@pytest.mark.asyncio
async def test_probe_timeout_kills_process_and_releases_port(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher, probe=never_ready)

    with pytest.raises(ProcessFailureError, match="after 3 attempts"):
        await orch.start_preview("s1", tmp_path)

    assert launcher.handles[0].terminated == 1
    assert ports.in_use() == []
    assert orch.active_sessions() == []


@pytest.mark.asyncio
async def test_process_exiting_during_startup_fails_fast(tmp_path):
    launcher = FakeLauncher()
    launcher.exit_immediately = 1
    orch, ports = _orchestrator(launcher, probe=never_ready, probe_max_attempts=100)

    with pytest.raises(ProcessFailureError) as exc_info:
        await orch.start_preview("s1", tmp_path)

    assert exc_info.value.exit_code == 1
    assert ports.in_use() == []


@pytest.mark.asyncio
async def test_spawn_failure_releases_port(tmp_path):
    launcher = FakeLauncher()
    launcher.error = FileNotFoundError("bun")
    orch, ports = _orchestrator(launcher)

    with pytest.raises(ProcessFailureError, match="spawn failed"):
        await orch.start_preview("s1", tmp_path)

    assert ports.in_use() == []
    assert orch.get_preview_status("s1").status == "not_found"


@pytest.mark.asyncio
async def test_missing_project_path_raises_not_found(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher)
    with pytest.raises(NotFoundError):
        await orch.start_preview("s1", tmp_path / "missing")
    assert launcher.calls == []
    assert ports.in_use() == []


@pytest.mark.asyncio
async def test_stop_supersedes_pending_start(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher, probe=hangs)

    start = asyncio.create_task(orch.start_preview("s1", tmp_path))
    await _until(lambda: launcher.handles)
    assert orch.get_preview_status("s1").status == "starting"

    assert await orch.stop_preview("s1") is True

    with pytest.raises(ProcessFailureError, match="superseded"):
        await start
    assert launcher.handles[0].terminated == 1
    assert ports.in_use() == []
    assert orch.active_sessions() == []


@pytest.mark.asyncio
async def test_cancelled_start_leaves_nothing_behind(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher, probe=hangs)

    start = asyncio.create_task(orch.start_preview("s1", tmp_path))
    await _until(lambda: launcher.handles)
    start.cancel()

    with pytest.raises(asyncio.CancelledError):
        await start
    assert not launcher.handles[0].is_alive()
    assert ports.in_use() == []
    assert orch.active_sessions() == []


@pytest.mark.asyncio
async def test_unexpected_exit_reclaims_resources(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher)
    await orch.start_preview("s1", tmp_path)

    launcher.handles[0].exit(1)
    await _until(lambda: not orch.active_sessions())

    assert ports.in_use() == []
    assert orch.get_preview_url("s1") is None
    info = await orch.start_preview("s1", tmp_path)
    assert info.status == "running"
    await orch.cleanup_all_previews()


@pytest.mark.asyncio
async def test_restart_preview(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher)
    first = await orch.start_preview("s1", tmp_path, "vue")

    second = await orch.restart_preview("s1")

    assert second.port == first.port
    assert second.project_type == "vue"
    assert len(launcher.handles) == 2
    assert not launcher.handles[0].is_alive()
    assert orch.get_preview_status("s1").pid == launcher.handles[1].pid
    await orch.cleanup_all_previews()
    assert ports.in_use() == []


@pytest.mark.asyncio
async def test_restart_unknown_session_raises():
    orch, _ = _orchestrator(FakeLauncher())
    with pytest.raises(NotFoundError):
        await orch.restart_preview("ghost")


@pytest.mark.asyncio
async def test_preview_logs(tmp_path):
    launcher = FakeLauncher()
    orch, _ = _orchestrator(launcher)
    await orch.start_preview("s1", tmp_path)

    logs = orch.get_preview_logs("s1", lines=1)
    assert logs["session_id"] == "s1"
    assert logs["lines"] == ["compiled"]
    assert orch.get_preview_logs("ghost") is None
    await orch.cleanup_all_previews()


@pytest.mark.asyncio
async def test_cleanup_continues_past_failures(tmp_path):
    launcher = FakeLauncher()
    orch, ports = _orchestrator(launcher)
    for sid in ("a", "b", "c"):
        await orch.start_preview(sid, tmp_path)
    launcher.handles[1].fail_terminate = True

    outcomes = await orch.cleanup_all_previews()

    by_session = {o.session_id: o for o in outcomes}
    assert by_session["a"].success and by_session["c"].success
    assert not by_session["b"].success
    assert isinstance(by_session["b"].error, RuntimeError)
    assert ports.in_use() == []
    assert orch.active_sessions() == []


@pytest.mark.asyncio
async def test_context_manager_cleans_up(tmp_path):
    launcher = FakeLauncher()
    ports = PortAllocator(base_port=4100)
    async with PreviewOrchestrator(
        ports, _config(), launcher=launcher, probe=always_ready,
    ) as orch:
        await orch.start_preview("s1", tmp_path)
    assert ports.in_use() == []
    assert not launcher.handles[0].is_alive()


@pytest.mark.asyncio
async def test_keyed_locks_are_dropped_when_idle():
    locks = KeyedLocks()
    async with locks.hold("a"):
        assert len(locks) == 1
    assert len(locks) == 0


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.mark.asyncio
async def test_real_dev_server_lifecycle(tmp_path):
    (tmp_path / "index.html").write_text("<h1>preview</h1>", encoding="utf-8")
    port = _free_port()
    python = shlex.quote(sys.executable)
    config = WorkspaceConfig(
        base_port=port,
        start_commands={"static": f"{python} -m http.server {{port}} --bind 127.0.0.1"},
        probe_host="127.0.0.1",
        probe_interval_seconds=0.1,
        probe_max_attempts=100,
        stop_timeout_seconds=5.0,
    )
    ports = PortAllocator(base_port=port)
    orch = PreviewOrchestrator(
        ports, config, probe=HttpProbe(timeout_seconds=1.0, accept_any_status=False),
    )

    info = await orch.start_preview("real", tmp_path, "static")
    assert info.port == port
    pid = orch.get_preview_status("real").pid
    assert pid is not None

    assert await orch.stop_preview("real") is True
    assert ports.in_use() == []
    assert orch.get_preview_status("real").status == "not_found"
