"""
tests/test_main.py — CLI entry point.
"""

from __future__ import annotations

import asyncio
import json

import pytest

import main as cli


@pytest.fixture
def ini(py_config, tmp_path):
    path = tmp_path / "psgate.ini"
    with path.open("w", encoding="utf-8") as fh:
        py_config.write(fh)
    return path


def _cli(ini, *argv) -> int:
    args = cli._parse_args([*argv, "--config", str(ini)])
    return asyncio.run(cli._main(args))


def _audit_entries(tmp_path) -> list[dict]:
    path = tmp_path / "logs" / "audit.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_mode_is_required():
    with pytest.raises(SystemExit):
        cli._parse_args([])


def test_check_allowed(ini, tmp_path, capsys):
    assert _cli(ini, "--check", "Get-Service -Name wuauserv") == 0
    assert "ALLOWED: matches allow rule" in capsys.readouterr().out

    entry = _audit_entries(tmp_path)[-1]
    assert entry["event"] == "DECISION"
    assert entry["payload"]["allowed"] is True
    assert entry["payload"]["command"]["length"] == len("Get-Service -Name wuauserv")
    assert "wuauserv" not in json.dumps(entry)


def test_check_rejected(ini, capsys):
    assert _cli(ini, "--check", "Get-WsusServer; Invoke-Expression $x") == 1
    out = capsys.readouterr().out
    assert "REJECTED [POLICY_REJECTION]" in out
    assert "(dynamic-code)" in out


def test_sanitize_mode(ini, capsys):
    assert _cli(ini, "--sanitize", "iex Get-Service") == 0
    out = capsys.readouterr().out
    assert "sanitized: Get-Service" in out
    assert "ALLOWED" in out


def test_list_rules(ini, capsys):
    assert _cli(ini, "--list-rules") == 0
    out = capsys.readouterr().out
    assert "BLOCK" in out and "ALLOW" in out
    assert "remote-content" in out
    assert "SAFE PIPELINE: Where-Object" in out


def test_run_rejected_records_execution(ini, tmp_path, capsys):
    assert _cli(ini, "--run", "Restart-Computer -Force") == 1
    result = json.loads(capsys.readouterr().out)
    assert result["success"] is False
    assert result["state"] == "FAILED"
    assert result["error_kind"] == "POLICY_REJECTION"

    entry = _audit_entries(tmp_path)[-1]
    assert entry["event"] == "EXECUTION"
    assert entry["payload"]["exit_code"] == 1


def test_run_spawns_interpreter(ini, capsys):
    # allowed by policy; the stand-in Python interpreter then fails on it
    assert _cli(ini, "--run", "Get-Date", "--timeout", "10000") == 1
    result = json.loads(capsys.readouterr().out)
    assert result["state"] == "COMPLETED"
    assert result["exit_code"] != 0
    assert "NameError" in result["stderr"]


def test_run_logs_lifecycle(ini, tmp_path, capsys):
    _cli(ini, "--run", "Get-Date", "--log-level", "DEBUG")
    app_log = (tmp_path / "logs" / "psgate.log").read_text(encoding="utf-8")
    assert "Execution PENDING → RUNNING" in app_log
    assert "Execution RUNNING → COMPLETED" in app_log


def test_verify(ini, capsys):
    _cli(ini, "--check", "Get-Service")
    capsys.readouterr()
    assert _cli(ini, "--verify") == 0
    assert "Audit log OK" in capsys.readouterr().out
