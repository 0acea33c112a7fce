from __future__ import annotations

import json

from devspace.engine.cli import main


def test_check_command(capsys):
    assert main(["check", "command", "rm -rf /"]) == 1
    assert "blocked" in capsys.readouterr().out
    assert main(["check", "command", "ls"]) == 0
    assert capsys.readouterr().out.strip() == "allowed"


def test_check_path(tmp_path, capsys):
    assert main(["check", "path", "/etc/passwd", "--root", str(tmp_path)]) == 1
    assert main(["check", "path", "src/app.ts", "--root", str(tmp_path)]) == 0


def test_versions_roundtrip(tmp_path, capsys):
    project = tmp_path / "app"
    project.mkdir()
    (project / "index.html").write_text("<p>hi</p>", encoding="utf-8")
    store = str(tmp_path / "versions")

    assert main(["--versions-dir", store, "versions", "save", str(project), "-d", "first"]) == 0
    saved = json.loads(capsys.readouterr().out)
    assert saved["description"] == "first"

    assert main(["--versions-dir", store, "versions", "list"]) == 0
    listed = json.loads(capsys.readouterr().out)
    assert [v["id"] for v in listed] == [saved["version_id"]]

    assert main(["--versions-dir", store, "versions", "show", "0000"]) == 1
    assert "not found" in capsys.readouterr().err


def test_policy_report(capsys):
    assert main(["policy"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["usage_limits"]["max_concurrent_sessions"] == 5
