"""
psgate: command authorization engine and supervised execution wrapper.
"""

from psgate.catalog import DEFAULT_CATALOG, PolicyCatalog, PolicyRule, RuleKind, load_catalog
from psgate.engine import CommandRequest, Decision, DecisionEngine
from psgate.errors import ErrorKind, GateError
from psgate.execution import ExecutionResult, SupervisedExecutor
from psgate.sanitizer import sanitize

__version__ = "1.0.0"

__all__ = [
    "DEFAULT_CATALOG",
    "PolicyCatalog",
    "PolicyRule",
    "RuleKind",
    "load_catalog",
    "CommandRequest",
    "Decision",
    "DecisionEngine",
    "ErrorKind",
    "GateError",
    "ExecutionResult",
    "SupervisedExecutor",
    "sanitize",
]
