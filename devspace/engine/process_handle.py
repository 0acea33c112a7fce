"""Opaque handles around spawned dev-server processes.

The rest of the engine only sees ``wait``/``terminate``/``kill``/
``is_alive`` and a bounded tail of captured output; the asyncio process
object never crosses this module's boundary.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class ProcessHandle(Protocol):
    """What the preview orchestrator needs from a running process."""

    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    def is_alive(self) -> bool: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self, timeout: float | None = None) -> int | None: ...

    def output_tail(self, lines: int = 100) -> list[str]: ...


# Signature: async def launcher(command, cwd, env) -> ProcessHandle
ProcessLauncher = Callable[[str, Path, Mapping[str, str]], Awaitable[ProcessHandle]]


class SubprocessHandle:
    """ProcessHandle backed by an asyncio subprocess in its own process group."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        *,
        label: str = "",
        buffer_lines: int = 500,
    ) -> None:
        self._proc = proc
        self._label = label or str(proc.pid)
        self._output: deque[str] = deque(maxlen=buffer_lines)
        self._readers = [
            asyncio.create_task(self._drain(proc.stdout, "stdout")),
            asyncio.create_task(self._drain(proc.stderr, "stderr")),
        ]

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    def is_alive(self) -> bool:
        return self._proc.returncode is None

    def terminate(self) -> None:
        self._signal(signal.SIGTERM)

    def kill(self) -> None:
        self._signal(signal.SIGKILL)

    async def wait(self, timeout: float | None = None) -> int | None:
        """Wait for exit. Returns None if still running after ``timeout``."""
        try:
            if timeout is None:
                code = await self._proc.wait()
            else:
                code = await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        await asyncio.gather(*self._readers, return_exceptions=True)
        return code

    def output_tail(self, lines: int = 100) -> list[str]:
        if lines <= 0:
            return []
        return list(self._output)[-lines:]

    def _signal(self, sig: signal.Signals) -> None:
        """Signal the whole process group; dev servers fork workers."""
        if self._proc.returncode is not None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(self._proc.pid, sig)
            else:
                self._proc.send_signal(sig)
        except ProcessLookupError:
            return

    async def _drain(self, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            decoded = line.decode(errors="ignore").rstrip("\n")
            self._output.append(decoded)
            logger.debug("preview[%s] %s: %s", self._label, name, decoded)


def make_subprocess_launcher(buffer_lines: int = 500) -> ProcessLauncher:
    """Build the default launcher that spawns real subprocesses."""

    async def launch(command: str, cwd: Path, env: Mapping[str, str]) -> ProcessHandle:
        argv = shlex.split(command)
        if not argv:
            raise ValueError("empty start command")
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env={**os.environ, **env},
            start_new_session=True,
        )
        logger.info("Spawned pid=%s cwd=%s command=%s", proc.pid, cwd, command)
        return SubprocessHandle(proc, label=str(proc.pid), buffer_lines=buffer_lines)

    return launch
