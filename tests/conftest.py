"""
tests/conftest.py — shared fixtures.

The executor tests use the running Python interpreter as a stand-in for
PowerShell (`python -c <command>`), with a catalog that allows the handful
of Python statements they need and keeps every default BLOCK rule.
"""

from __future__ import annotations

import configparser
import sys
from pathlib import Path

import pytest

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).parent.parent))

from psgate.catalog import DEFAULT_CATALOG, PolicyCatalog, PolicyRule, RuleKind
from psgate.engine import DecisionEngine
from psgate.execution import SupervisedExecutor

PYTHON_STATEMENTS = r"import|print|time\.sleep|sys\.exit"


@pytest.fixture
def py_catalog() -> PolicyCatalog:
    return PolicyCatalog(
        allow_rules=(PolicyRule(PYTHON_STATEMENTS, RuleKind.ALLOW, True, "test-python"),),
        block_rules=DEFAULT_CATALOG.block_rules,
    )


@pytest.fixture
def py_config(tmp_path) -> configparser.ConfigParser:
    cfg = configparser.ConfigParser()
    cfg["logging"] = {
        "log_dir": str(tmp_path / "logs"),
        "audit_file": str(tmp_path / "logs/audit.jsonl"),
        "app_file": str(tmp_path / "logs/psgate.log"),
        "level": "DEBUG",
    }
    cfg["policy"] = {"max_command_length": "32767", "sanitize": "false"}
    cfg["execution"] = {
        "interpreter": sys.executable,
        "interpreter_args": "-c",
        "default_timeout_ms": "10000",
        "max_timeout_ms": "60000",
        "max_output_bytes": "1048576",
    }
    cfg["boundary"] = {
        "resource_dir": str(tmp_path / "dist"),
        "dev_origins": "http://localhost:3000",
    }
    return cfg


@pytest.fixture
def py_executor(py_catalog, py_config) -> SupervisedExecutor:
    return SupervisedExecutor(DecisionEngine(py_catalog), py_config)
