"""devspace — per-session preview servers, project versions and a policy gate."""
from .models import (
    Action,
    ActionResult,
    ActionStatus,
    CleanupOutcome,
    PreviewInfo,
    PreviewInstance,
    PreviewState,
    StatusRecord,
    WorkspaceSession,
)
from .config import WorkspaceConfig
from .port_allocator import PortAllocator
from .errors import (
    IOFailureError,
    NotFoundError,
    PolicyViolationError,
    PreviewAlreadyRunningError,
    ProcessFailureError,
    ResourceExhaustedError,
    UnknownActionError,
    WorkspaceError,
)

__all__ = [
    # Engine (lazy import to avoid circular deps)
    "WorkspaceEngine",
    "PreviewOrchestrator",
    "ActionExecutor",
    # Models
    "Action",
    "ActionResult",
    "ActionStatus",
    "CleanupOutcome",
    "PreviewInfo",
    "PreviewInstance",
    "PreviewState",
    "StatusRecord",
    "WorkspaceSession",
    # Config
    "WorkspaceConfig",
    "PortAllocator",
    # YAML config (lazy import)
    "DevspaceConfig",
    "load_yaml_config",
    # Errors
    "IOFailureError",
    "NotFoundError",
    "PolicyViolationError",
    "PreviewAlreadyRunningError",
    "ProcessFailureError",
    "ResourceExhaustedError",
    "UnknownActionError",
    "WorkspaceError",
]


def __getattr__(name: str):
    if name == "WorkspaceEngine":
        from .engine import WorkspaceEngine
        return WorkspaceEngine
    if name == "PreviewOrchestrator":
        from .preview import PreviewOrchestrator
        return PreviewOrchestrator
    if name == "ActionExecutor":
        from .action_executor import ActionExecutor
        return ActionExecutor
    if name == "DevspaceConfig":
        from .yaml_config import DevspaceConfig
        return DevspaceConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
