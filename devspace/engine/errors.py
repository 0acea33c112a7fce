"""Exception hierarchy for the workspace engine.

Specific exceptions for each failure mode so callers can branch on the
kind of failure instead of parsing messages.
"""
from __future__ import annotations


class WorkspaceError(Exception):
    """Base exception for all workspace orchestration errors."""


class NotFoundError(WorkspaceError):
    """A session, preview, version or path does not exist."""
    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class PolicyViolationError(WorkspaceError):
    """An action was blocked by the policy guard."""
    def __init__(self, check: str, subject: str, reason: str):
        self.check = check
        self.subject = subject
        self.reason = reason
        super().__init__(f"Blocked by {check} policy: {reason} ({subject})")


class ResourceExhaustedError(WorkspaceError):
    """No port left to allocate, or a size/duration limit was breached."""
    def __init__(self, resource: str, detail: str):
        self.resource = resource
        self.detail = detail
        super().__init__(f"{resource} exhausted: {detail}")


class ProcessFailureError(WorkspaceError):
    """Spawn error, health probe timeout, or unexpected process exit."""
    def __init__(
        self, session_id: str, reason: str, exit_code: int | None = None
    ):
        self.session_id = session_id
        self.reason = reason
        self.exit_code = exit_code
        suffix = f" (exit code {exit_code})" if exit_code is not None else ""
        super().__init__(
            f"Preview process for session {session_id} failed: {reason}{suffix}"
        )


class IOFailureError(WorkspaceError):
    """Copy, write or archive failure on the filesystem."""
    def __init__(self, operation: str, path: str, reason: str):
        self.operation = operation
        self.path = path
        self.reason = reason
        super().__init__(f"{operation} failed for {path}: {reason}")


class PreviewAlreadyRunningError(WorkspaceError):
    """start_preview called for a session whose preview is still active."""
    def __init__(self, session_id: str, state: str):
        self.session_id = session_id
        self.state = state
        super().__init__(
            f"Preview for session {session_id} is already {state}"
        )


class UnknownActionError(WorkspaceError):
    """The executor received an action type it cannot dispatch."""
    def __init__(self, action_type: str):
        self.action_type = action_type
        super().__init__(f"Unknown action type: {action_type}")
