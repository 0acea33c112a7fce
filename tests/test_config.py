from __future__ import annotations

import pytest

from devspace.engine.config import WorkspaceConfig
from devspace.engine.errors import PolicyViolationError
from devspace.engine.yaml_config import load_yaml_config
from devspace.shared.services.policy_guard import MiB, PolicyGuard


def test_defaults():
    config = WorkspaceConfig()
    assert config.base_port == 3000
    assert config.max_versions == 50
    assert config.probe_max_attempts == 30
    assert config.start_command_for("nextjs", 3000) == (
        "bun dev --port 3000 --hostname 0.0.0.0"
    )
    assert config.start_command_for("svelte", 3001) == "bun dev --port 3001 --host"
    assert config.start_command_for(None, 3002) == (
        "bun dev --port 3002 --hostname 0.0.0.0"
    )


def test_from_env(monkeypatch):
    monkeypatch.setenv("DEVSPACE_BASE_PORT", "4000")
    monkeypatch.setenv("DEVSPACE_PROBE_ATTEMPTS", "5")
    monkeypatch.setenv("DEVSPACE_PROBE_REQUIRE_2XX", "true")
    monkeypatch.setenv("DEVSPACE_VERSIONS_DIR", "/tmp/devspace-versions")
    monkeypatch.setenv("DEVSPACE_MAX_VERSIONS", "7")

    config = WorkspaceConfig.from_env()

    assert config.base_port == 4000
    assert config.probe_max_attempts == 5
    assert config.probe_accept_any_status is False
    assert config.versions_dir == "/tmp/devspace-versions"
    assert config.max_versions == 7


def test_load_yaml_config(tmp_path, monkeypatch):
    for key in ("DEVSPACE_BASE_PORT", "DEVSPACE_MAX_VERSIONS"):
        monkeypatch.delenv(key, raising=False)
    path = tmp_path / "devspace.yaml"
    path.write_text(
        """
preview:
  base_port: 4500
  probe_interval_seconds: 0.5
  start_commands:
    astro: "bun run astro dev --port {port}"
versions:
  dir: /srv/versions
  max_versions: 20
policy:
  forbidden_commands: [sudo]
  forbidden_command_patterns: ['npm\\s+publish']
  blocked_ports: [22]
  max_file_size_mb: 1
  max_session_hours: 4
telemetry:
  enabled: true
""",
        encoding="utf-8",
    )

    loaded = load_yaml_config(path)

    assert loaded.source_path == path
    ws = loaded.workspace
    assert ws.base_port == 4500
    assert ws.probe_interval_seconds == 0.5
    assert ws.start_command_for("astro", 4500) == "bun run astro dev --port 4500"
    assert ws.start_command_for("react", 4500) == "bun dev --port 4500 --host"
    assert ws.versions_dir == "/srv/versions"
    assert ws.max_versions == 20

    rules = loaded.policy
    assert rules.forbidden_commands == ("sudo",)
    assert rules.blocked_ports == frozenset({22})
    assert rules.max_file_size == MiB
    assert rules.max_session_duration_seconds == 4 * 3600

    guard = PolicyGuard(rules)
    assert guard.is_command_safe("reboot")
    assert not guard.is_command_safe("npm publish")
    assert guard.is_url_safe("http://example.com:3306/")


def test_yaml_top_level_must_be_mapping(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_yaml_config(path)


def test_policy_violation_message():
    exc = PolicyViolationError("path", "/etc/passwd", "outside project directory")
    assert "path" in str(exc)
    assert exc.reason == "outside project directory"
