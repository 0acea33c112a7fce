"""Allow/deny rules for agent-initiated commands, paths and URLs.

The guard is a best-effort filter, not a sandbox: substring and regex
checks can be bypassed by encoded or obfuscated input. Every check is
side-effect-free apart from logging and fails closed, so an internal
error during evaluation is reported as a rejection.

Workspace-local command deny rules are stored as one regex per line in
``<workspace>/.devspace/command_blacklist.txt``.
"""
from __future__ import annotations

import functools
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from devspace.engine.config import INTERNAL_DIRNAME

logger = logging.getLogger(__name__)

BLACKLIST_FILENAME = "command_blacklist.txt"

DEFAULT_FORBIDDEN_COMMANDS: tuple[str, ...] = (
    "rm -rf /",
    "dd if=",
    "mkfs",
    "fdisk",
    "mount",
    "umount",
    "chmod 777",
    "chown root",
    "sudo",
    "su",
    "passwd",
    "useradd",
    "userdel",
    "groupadd",
    "groupdel",
    "init",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
)
DEFAULT_TRAVERSAL_TOKENS: tuple[str, ...] = ("cd ..",)
DEFAULT_SENSITIVE_PATH_PREFIXES: tuple[str, ...] = ("/etc/", "/var/", "/sys/")
DEFAULT_FORBIDDEN_PATH_FRAGMENTS: tuple[str, ...] = (
    ".env",
    ".git",
    "node_modules",
    INTERNAL_DIRNAME,
    "package-lock.json",
    "yarn.lock",
)
DEFAULT_FORBIDDEN_URL_PATTERNS: tuple[str, ...] = (
    r"login\.php",
    r"admin\.php",
    r"wp-admin",
    r"administrator",
    r"\.env$",
    r"config\.php",
    r"database\.php",
)
DEFAULT_BLOCKED_PORTS: frozenset[int] = frozenset(
    {21, 22, 23, 25, 53, 80, 443, 3306, 5432, 27017}
)
DEFAULT_INTRUSION_PATTERNS: tuple[str, ...] = (
    r"<\s*script",
    r"javascript:",
    r"on\w+\s*=",
    r"<\s*iframe",
    r"<\s*object",
    r"<\s*embed",
)
ALLOWED_URL_SCHEMES = frozenset({"http", "https"})
COMMAND_MATCH_MODES = frozenset({"substring", "token"})

MiB = 1024 * 1024


@dataclass(frozen=True)
class PolicyRuleSet:
    """Immutable deny-lists and ceilings evaluated by PolicyGuard."""

    forbidden_commands: tuple[str, ...] = DEFAULT_FORBIDDEN_COMMANDS
    forbidden_command_patterns: tuple[str, ...] = ()
    traversal_tokens: tuple[str, ...] = DEFAULT_TRAVERSAL_TOKENS
    sensitive_path_prefixes: tuple[str, ...] = DEFAULT_SENSITIVE_PATH_PREFIXES
    forbidden_path_fragments: tuple[str, ...] = DEFAULT_FORBIDDEN_PATH_FRAGMENTS
    forbidden_url_patterns: tuple[str, ...] = DEFAULT_FORBIDDEN_URL_PATTERNS
    blocked_ports: frozenset[int] = DEFAULT_BLOCKED_PORTS
    intrusion_patterns: tuple[str, ...] = DEFAULT_INTRUSION_PATTERNS
    max_file_size: int = 10 * MiB
    max_project_size: int = 100 * MiB
    max_session_duration_seconds: float = 2 * 60 * 60
    max_concurrent_sessions: int = 5
    # "substring" rejects any command containing a forbidden entry;
    # "token" only matches entries that do not start or end inside a word.
    command_match: str = "substring"

    def with_command_patterns(self, patterns: Iterable[str]) -> PolicyRuleSet:
        """Return a copy with extra command deny regexes appended."""
        extra = tuple(p for p in patterns if p not in self.forbidden_command_patterns)
        if not extra:
            return self
        return replace(
            self,
            forbidden_command_patterns=self.forbidden_command_patterns + extra,
        )


def read_workspace_patterns(workspace_dir: Path | str) -> list[str]:
    """Read workspace-local command deny regexes, skipping comments."""
    path = Path(workspace_dir) / INTERNAL_DIRNAME / BLACKLIST_FILENAME
    if not path.exists():
        return []
    lines: list[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#"):
            continue
        lines.append(entry)
    return lines


def _compile_patterns(patterns: Iterable[str]) -> list[re.Pattern[str]]:
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE | re.MULTILINE))
        except re.error:
            logger.warning("Invalid policy regex ignored: %s", pattern)
    return compiled


def _token_pattern(entry: str) -> re.Pattern[str]:
    """Match ``entry`` as a substring that does not start or end mid-word."""
    body = re.escape(entry.lower())
    if entry[:1].isalnum() or entry[:1] == "_":
        body = r"(?<!\w)" + body
    if entry[-1:].isalnum() or entry[-1:] == "_":
        body = body + r"(?!\w)"
    return re.compile(body)


def _fail_closed(check: str) -> Callable[..., Any]:
    def decorator(fn: Callable[..., tuple[bool, str]]) -> Callable[..., tuple[bool, str]]:
        @functools.wraps(fn)
        def wrapper(self: PolicyGuard, *args: Any, **kwargs: Any) -> tuple[bool, str]:
            try:
                return fn(self, *args, **kwargs)
            except Exception as exc:  # fail closed on any evaluation error
                logger.error(
                    "Error evaluating %s policy for %r: %s: %s",
                    check, args[:1], type(exc).__name__, exc,
                )
                return (False, f"{check} check failed: {type(exc).__name__}")
        return wrapper
    return decorator


@dataclass
class PolicyGuard:
    """Evaluates a PolicyRuleSet. Holds compiled patterns only."""

    rules: PolicyRuleSet = field(default_factory=PolicyRuleSet)

    def __post_init__(self) -> None:
        if self.rules.command_match not in COMMAND_MATCH_MODES:
            raise ValueError(f"Unknown command_match mode: {self.rules.command_match}")
        self._command_tokens = [
            (entry, _token_pattern(entry) if self.rules.command_match == "token" else None)
            for entry in self.rules.forbidden_commands
            if entry
        ]
        self._command_patterns = _compile_patterns(self.rules.forbidden_command_patterns)
        self._url_patterns = _compile_patterns(self.rules.forbidden_url_patterns)
        self._intrusion_patterns = _compile_patterns(self.rules.intrusion_patterns)
        logger.debug(
            "Policy loaded: %d forbidden commands, %d command regexes, "
            "%d url regexes, %d blocked ports",
            len(self._command_tokens), len(self._command_patterns),
            len(self._url_patterns), len(self.rules.blocked_ports),
        )

    @classmethod
    def for_workspace(
        cls, workspace_dir: Path | str, rules: PolicyRuleSet | None = None,
    ) -> PolicyGuard:
        """Build a guard with the workspace's extra command deny rules merged in."""
        base = rules or PolicyRuleSet()
        return cls(rules=base.with_command_patterns(read_workspace_patterns(workspace_dir)))

    # ── commands ─────────────────────────────────────────────────

    @_fail_closed("command")
    def check_command(self, command: str) -> tuple[bool, str]:
        if not isinstance(command, str):
            return (False, "command must be a string")
        lowered = command.lower().strip()
        if not lowered:
            return (False, "empty command")

        for entry, pattern in self._command_tokens:
            if pattern is None:
                matched = entry.lower() in lowered
            else:
                matched = pattern.search(lowered) is not None
            if matched:
                logger.warning("Forbidden command detected: %s", command)
                return (False, f"forbidden command '{entry}'")

        for pattern in self._command_patterns:
            if pattern.search(command):
                logger.warning("Command matches deny rule %s: %s", pattern.pattern, command)
                return (False, f"matches deny rule {pattern.pattern}")

        for token in self.rules.traversal_tokens:
            if token in lowered:
                logger.warning("Directory traversal attempt: %s", command)
                return (False, "directory traversal")

        for prefix in self.rules.sensitive_path_prefixes:
            if prefix in lowered:
                logger.warning("System file access attempt: %s", command)
                return (False, f"system path {prefix}")

        return (True, "")

    def is_command_safe(self, command: str) -> bool:
        return self.check_command(command)[0]

    # ── paths ────────────────────────────────────────────────────

    @_fail_closed("path")
    def check_file_path(
        self, path: str | Path, project_root: str | Path,
    ) -> tuple[bool, str]:
        """Check that ``path`` resolves inside ``project_root``.

        Relative paths are resolved against the project root. The deny
        fragments are matched against the project-relative part only, so
        a project living under e.g. ``~/.envs`` is still usable.
        """
        root = Path(project_root).expanduser().resolve()
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = root / candidate
        candidate = candidate.resolve()

        if not candidate.is_relative_to(root):
            logger.warning("File path outside project directory: %s", path)
            return (False, "outside project directory")

        relative = candidate.relative_to(root).as_posix()
        for fragment in self.rules.forbidden_path_fragments:
            if fragment and fragment in relative:
                logger.warning("Forbidden file access: %s", path)
                return (False, f"forbidden path fragment '{fragment}'")
        return (True, "")

    def is_file_path_safe(self, path: str | Path, project_root: str | Path) -> bool:
        return self.check_file_path(path, project_root)[0]

    # ── urls ─────────────────────────────────────────────────────

    @_fail_closed("url")
    def check_url(self, url: str) -> tuple[bool, str]:
        parts = urlsplit(url)
        if parts.scheme.lower() not in ALLOWED_URL_SCHEMES:
            logger.warning("Unsafe protocol: %s", url)
            return (False, f"scheme '{parts.scheme}' not allowed")
        if not parts.hostname:
            return (False, "missing host")

        for pattern in self._url_patterns:
            if pattern.search(url):
                logger.warning("Forbidden URL pattern: %s", url)
                return (False, f"matches forbidden pattern {pattern.pattern}")

        # .port raises ValueError for out-of-range values, which fails closed.
        port = parts.port
        if port is not None and port in self.rules.blocked_ports:
            logger.warning("Forbidden port: %s", url)
            return (False, f"port {port} is blocked")
        return (True, "")

    def is_url_safe(self, url: str) -> bool:
        return self.check_url(url)[0]

    # ── limits ───────────────────────────────────────────────────

    @_fail_closed("file size")
    def check_file_size(self, size_bytes: int) -> tuple[bool, str]:
        if size_bytes > self.rules.max_file_size:
            return (False, f"file size {size_bytes} exceeds {self.rules.max_file_size}")
        return (True, "")

    def is_file_size_safe(self, size_bytes: int) -> bool:
        return self.check_file_size(size_bytes)[0]

    @_fail_closed("project size")
    def check_project_size(self, size_bytes: int) -> tuple[bool, str]:
        if size_bytes > self.rules.max_project_size:
            return (
                False,
                f"project size {size_bytes} exceeds {self.rules.max_project_size}",
            )
        return (True, "")

    def is_project_size_safe(self, size_bytes: int) -> bool:
        return self.check_project_size(size_bytes)[0]

    @_fail_closed("session duration")
    def check_session_duration(
        self, started_at: datetime | float, now: datetime | None = None,
    ) -> tuple[bool, str]:
        """``started_at`` is an aware datetime or a POSIX timestamp."""
        if not isinstance(started_at, datetime):
            started_at = datetime.fromtimestamp(float(started_at), tz=timezone.utc)
        current = now or datetime.now(timezone.utc)
        elapsed = (current - started_at).total_seconds()
        if elapsed > self.rules.max_session_duration_seconds:
            return (
                False,
                f"session running for {int(elapsed)}s exceeds "
                f"{int(self.rules.max_session_duration_seconds)}s",
            )
        return (True, "")

    def is_session_duration_safe(
        self, started_at: datetime | float, now: datetime | None = None,
    ) -> bool:
        return self.check_session_duration(started_at, now)[0]

    @_fail_closed("concurrent sessions")
    def check_concurrent_sessions(self, active: int) -> tuple[bool, str]:
        """``active`` counts the other sessions that already hold a preview."""
        if active >= self.rules.max_concurrent_sessions:
            return (
                False,
                f"{active} concurrent sessions reach the limit of "
                f"{self.rules.max_concurrent_sessions}",
            )
        return (True, "")

    def is_concurrent_sessions_safe(self, active: int) -> bool:
        return self.check_concurrent_sessions(active)[0]

    def report(self) -> dict[str, Any]:
        """Summary of the active rule set and usage limits."""
        rules = self.rules
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "command_validation": True,
                "file_path_validation": True,
                "url_validation": True,
                "intrusion_detection": True,
            },
            "command_match": rules.command_match,
            "usage_limits": {
                "max_file_size": rules.max_file_size,
                "max_project_size": rules.max_project_size,
                "max_session_duration_seconds": rules.max_session_duration_seconds,
                "max_concurrent_sessions": rules.max_concurrent_sessions,
            },
            "forbidden_commands": len(self._command_tokens),
            "forbidden_command_patterns": len(self._command_patterns),
            "forbidden_url_patterns": len(self._url_patterns),
            "blocked_ports": sorted(rules.blocked_ports),
        }

    # ── free text ────────────────────────────────────────────────

    @staticmethod
    def sanitize_input(value: Any) -> Any:
        """Strip angle brackets, javascript: URIs and inline handlers.

        Non-string input is returned unchanged.
        """
        if not isinstance(value, str):
            return value
        cleaned = re.sub(r"[<>]", "", value)
        cleaned = re.sub(r"javascript:", "", cleaned, flags=re.IGNORECASE)
        cleaned = re.sub(r"on\w+\s*=", "", cleaned, flags=re.IGNORECASE)
        return cleaned.strip()

    def detect_intrusion(self, text: str) -> bool:
        if not isinstance(text, str):
            return False
        for pattern in self._intrusion_patterns:
            if pattern.search(text):
                logger.warning("Intrusion attempt detected: %s", text[:200])
                return True
        return False
