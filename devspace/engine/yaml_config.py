"""YAML configuration loader.

Loads a single YAML file covering the preview, version and policy
settings. Any section or key may be omitted; environment variables
(see config.py) provide the base values.

Example YAML:
    preview:
      base_port: 4000
      probe_interval_seconds: 1.5
      probe_max_attempts: 40
      stop_timeout_seconds: 5
      start_commands:
        nextjs: "bun dev --port {port} --hostname 0.0.0.0"
        astro: "bun run astro dev --port {port}"

    versions:
      dir: /srv/devspace/versions
      max_versions: 20

    policy:
      forbidden_commands: [sudo, mkfs, "rm -rf /"]
      forbidden_command_patterns: ['curl\\s+.*\\|\\s*sh']
      blocked_ports: [22, 3306]
      max_file_size_mb: 5
      max_project_size_mb: 200
      max_session_hours: 4
      max_concurrent_sessions: 5
      command_match: substring
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from devspace.shared.services.policy_guard import MiB, PolicyRuleSet

from .config import WorkspaceConfig

logger = logging.getLogger(__name__)

_PREVIEW_KEYS = {
    "base_port", "max_port", "probe_host", "probe_interval_seconds",
    "probe_max_attempts", "probe_request_timeout_seconds",
    "probe_accept_any_status", "stop_timeout_seconds", "log_buffer_lines",
    "command_timeout_seconds", "fetch_timeout_seconds", "max_output_chars",
}
_POLICY_TUPLE_KEYS = {
    "forbidden_commands", "forbidden_command_patterns", "traversal_tokens",
    "sensitive_path_prefixes", "forbidden_path_fragments",
    "forbidden_url_patterns", "intrusion_patterns",
}


@dataclass
class DevspaceConfig:
    """Fully resolved configuration from YAML plus environment."""
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    policy: PolicyRuleSet = field(default_factory=PolicyRuleSet)
    source_path: Path | None = None


def load_yaml_config(
    path: str | Path,
    base: WorkspaceConfig | None = None,
) -> DevspaceConfig:
    """Load a YAML config file on top of ``base`` (default: from env)."""
    config_path = Path(path).expanduser()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{config_path}: top level must be a mapping")
    logger.info("Loading YAML config from %s", config_path)

    workspace = base or WorkspaceConfig.from_env()
    workspace = _apply_preview(workspace, raw.get("preview") or {})
    workspace = _apply_versions(workspace, raw.get("versions") or {})
    policy = _build_policy(raw.get("policy") or {})

    for section in raw:
        if section not in {"preview", "versions", "policy"}:
            logger.warning("Ignoring unknown config section %r in %s", section, config_path)

    return DevspaceConfig(workspace=workspace, policy=policy, source_path=config_path)


def _apply_preview(config: WorkspaceConfig, data: dict[str, Any]) -> WorkspaceConfig:
    updates: dict[str, Any] = {}
    for key, value in data.items():
        if key == "start_commands":
            commands = dict(config.start_commands)
            commands.update({str(k): str(v) for k, v in (value or {}).items()})
            updates["start_commands"] = commands
        elif key in _PREVIEW_KEYS:
            updates[key] = value
        else:
            logger.warning("Ignoring unknown preview setting %r", key)
    return replace(config, **updates)


def _apply_versions(config: WorkspaceConfig, data: dict[str, Any]) -> WorkspaceConfig:
    updates: dict[str, Any] = {}
    if "dir" in data:
        updates["versions_dir"] = str(data["dir"])
    if "max_versions" in data:
        updates["max_versions"] = int(data["max_versions"])
    for key in data:
        if key not in {"dir", "max_versions"}:
            logger.warning("Ignoring unknown versions setting %r", key)
    return replace(config, **updates)


def _build_policy(data: dict[str, Any]) -> PolicyRuleSet:
    known = {f.name for f in fields(PolicyRuleSet)}
    updates: dict[str, Any] = {}
    for key, value in data.items():
        if key in _POLICY_TUPLE_KEYS:
            updates[key] = tuple(str(v) for v in value or ())
        elif key == "blocked_ports":
            updates[key] = frozenset(int(v) for v in value or ())
        elif key == "max_file_size_mb":
            updates["max_file_size"] = int(float(value) * MiB)
        elif key == "max_project_size_mb":
            updates["max_project_size"] = int(float(value) * MiB)
        elif key == "max_session_hours":
            updates["max_session_duration_seconds"] = float(value) * 3600
        elif key in known:
            updates[key] = value
        else:
            logger.warning("Ignoring unknown policy setting %r", key)
    return replace(PolicyRuleSet(), **updates)
