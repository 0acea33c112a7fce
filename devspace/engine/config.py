"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via DEVSPACE_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


DEFAULT_PROJECT_TYPE = "nextjs"

# Dev-server start commands keyed by project type. ``{port}`` is
# substituted with the allocated port before spawning.
DEFAULT_START_COMMANDS: dict[str, str] = {
    "nextjs": "bun dev --port {port} --hostname 0.0.0.0",
    "react": "bun dev --port {port} --host",
    "vue": "bun dev --port {port} --host",
    "svelte": "bun dev --port {port} --host",
    "vanilla": "bun dev --port {port} --host",
}

# Directory inside a project that holds engine-private files.
INTERNAL_DIRNAME = ".devspace"


@dataclass
class WorkspaceConfig:
    """Workspace engine configuration."""

    # Port allocation
    base_port: int = 3000
    max_port: int = 65535

    # Preview servers
    start_commands: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_START_COMMANDS)
    )
    probe_host: str = "localhost"
    probe_interval_seconds: float = 2.0
    probe_max_attempts: int = 30
    # Per-request timeout for a single health probe GET.
    probe_request_timeout_seconds: float = 2.0
    # When False only a 2xx response marks a preview ready.
    probe_accept_any_status: bool = True
    stop_timeout_seconds: float = 5.0
    # Captured stdout/stderr lines kept per preview.
    log_buffer_lines: int = 500

    # Version store
    versions_dir: str = "versions"
    max_versions: int = 50

    # Action executor
    command_timeout_seconds: float = 120.0
    fetch_timeout_seconds: float = 15.0
    max_output_chars: int = 12000

    # Logging
    log_level: str = "INFO"

    def start_command_for(self, project_type: str | None, port: int) -> str:
        """Resolve the dev-server command; unknown types fall back to nextjs."""
        template = self.start_commands.get(project_type or "")
        if template is None:
            template = self.start_commands.get(
                DEFAULT_PROJECT_TYPE, DEFAULT_START_COMMANDS[DEFAULT_PROJECT_TYPE]
            )
        return template.format(port=port)

    @classmethod
    def from_env(cls) -> WorkspaceConfig:
        """Load configuration from DEVSPACE_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("DEVSPACE_")
        }
        if overrides:
            logger.info(
                "WorkspaceConfig.from_env: DEVSPACE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("WorkspaceConfig.from_env: no DEVSPACE_* env vars set, using defaults")

        config = cls(
            base_port=int(os.getenv(
                "DEVSPACE_BASE_PORT", str(cls.base_port)
            )),
            max_port=int(os.getenv(
                "DEVSPACE_MAX_PORT", str(cls.max_port)
            )),
            probe_host=os.getenv("DEVSPACE_PROBE_HOST", cls.probe_host),
            probe_interval_seconds=float(os.getenv(
                "DEVSPACE_PROBE_INTERVAL", str(cls.probe_interval_seconds)
            )),
            probe_max_attempts=int(os.getenv(
                "DEVSPACE_PROBE_ATTEMPTS", str(cls.probe_max_attempts)
            )),
            probe_accept_any_status=(
                os.getenv("DEVSPACE_PROBE_REQUIRE_2XX", "").lower()
                not in {"1", "true", "yes"}
            ),
            stop_timeout_seconds=float(os.getenv(
                "DEVSPACE_STOP_TIMEOUT", str(cls.stop_timeout_seconds)
            )),
            versions_dir=os.getenv("DEVSPACE_VERSIONS_DIR", cls.versions_dir),
            max_versions=int(os.getenv(
                "DEVSPACE_MAX_VERSIONS", str(cls.max_versions)
            )),
            command_timeout_seconds=float(os.getenv(
                "DEVSPACE_COMMAND_TIMEOUT", str(cls.command_timeout_seconds)
            )),
            log_level=os.getenv("DEVSPACE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "WorkspaceConfig.from_env: base_port=%d versions_dir=%s max_versions=%d",
            config.base_port, config.versions_dir, config.max_versions,
        )
        return config
