"""
psgate/service.py — Facade used by domain callers (update approval, cleanup,
health checks) to run interpreter commands.

Everything funnels through SupervisedExecutor.execute(), which authorizes
before spawning. The module helpers only build fixed command templates
around a validated module name.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from psgate.errors import ErrorKind
from psgate.execution import ExecutionResult, SupervisedExecutor
from psgate.sanitizer import sanitize

logger = logging.getLogger("psgate.service")

_MODULE_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def is_valid_module_name(name: Any) -> bool:
    return isinstance(name, str) and bool(_MODULE_NAME_RE.match(name))


class CommandService:
    def __init__(self, executor: SupervisedExecutor, sanitize_input: bool = False) -> None:
        self._executor = executor
        self._sanitize = sanitize_input

    @classmethod
    def from_config(cls, executor: SupervisedExecutor, config: Any) -> "CommandService":
        return cls(executor, config.getboolean("policy", "sanitize", fallback=False))

    async def execute(self, text: Any, timeout_ms: int | None = None) -> ExecutionResult:
        if self._sanitize and isinstance(text, str):
            text = sanitize(text)
        return await self._executor.execute(text, timeout_ms)

    async def check_module(self, name: Any) -> bool:
        """True when the module is installed (listed by Get-Module -ListAvailable)."""
        if not is_valid_module_name(name):
            logger.warning("check_module: invalid module name refused")
            return False
        result = await self.execute(
            f'Get-Module -ListAvailable -Name "{name}" | Select-Object -First 1'
        )
        return result.success and len(result.stdout) > 0

    async def import_module(self, name: Any) -> ExecutionResult:
        if not is_valid_module_name(name):
            logger.warning("import_module: invalid module name refused")
            return ExecutionResult.rejected("Invalid module name", ErrorKind.VALIDATION)
        return await self.execute(f'Import-Module "{name}" -ErrorAction SilentlyContinue')
