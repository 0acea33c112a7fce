"""Core data models for the workspace engine.

All dataclasses and enums shared between the preview orchestrator,
the action executor and the version store. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .process_handle import ProcessHandle


class PreviewState(str, Enum):
    """Preview lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_STATES = frozenset({PreviewState.STOPPED, PreviewState.FAILED})

NOT_FOUND_STATUS = "not_found"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorkspaceSession:
    """The slice of an externally owned session the engine reads."""
    id: str
    working_directory: Path
    project_type: str = "nextjs"
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        self.working_directory = Path(self.working_directory)


@dataclass
class PreviewInstance:
    """Mutable per-session preview record. Owned by PreviewOrchestrator."""
    session_id: str
    project_path: Path
    project_type: str
    port: int
    handle: ProcessHandle | None = None
    state: PreviewState = PreviewState.IDLE
    started_at: datetime = field(default_factory=_utcnow)
    url: str | None = None
    probe_task: asyncio.Task | None = field(default=None, repr=False)
    watch_task: asyncio.Task | None = field(default=None, repr=False)
    superseded: bool = False
    released: bool = False

    def to_info(self) -> PreviewInfo:
        return PreviewInfo(
            session_id=self.session_id,
            port=self.port,
            url=self.url,
            status=self.state.value,
            started_at=self.started_at,
            project_path=self.project_path,
            project_type=self.project_type,
        )


@dataclass(frozen=True)
class PreviewInfo:
    """Immutable view of a preview returned to callers."""
    session_id: str
    port: int
    url: str | None
    status: str
    started_at: datetime
    project_path: Path
    project_type: str


@dataclass(frozen=True)
class StatusRecord:
    session_id: str
    status: str
    url: str | None = None
    port: int | None = None
    started_at: datetime | None = None
    uptime_seconds: float | None = None
    pid: int | None = None

    @property
    def found(self) -> bool:
        return self.status != NOT_FOUND_STATUS


@dataclass(frozen=True)
class CleanupOutcome:
    """Per-session result of a batch preview operation."""
    session_id: str
    success: bool
    stopped: bool = False
    error: BaseException | None = None


@dataclass
class Action:
    """A single agent-proposed operation."""
    type: str
    params: dict[str, Any] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Action:
        return cls(
            type=str(data.get("type", "")),
            params=dict(data.get("params") or {}),
            description=str(data.get("description", "")),
        )


class ActionStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass
class ActionResult:
    """Outcome of one action, in the order the actions were proposed."""
    action: Action
    status: ActionStatus
    result: Any = None
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.status == ActionStatus.OK

    @property
    def reason(self) -> str | None:
        if self.error is None:
            return None
        return str(self.error)
