"""
psgate/errors.py
────────────────
Error taxonomy for the command gate.

Every public entry point returns these as data (a Decision or an
ExecutionResult carrying an ErrorKind). The exception classes exist so the
internals can short-circuit, and so a caller can opt in to raising via
ExecutionResult.raise_for_status().
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION_ERROR"    # malformed request, never reaches policy
    POLICY = "POLICY_REJECTION"        # BLOCK match or no ALLOW match
    SECURITY = "SECURITY_ERROR"        # channel/origin check failed
    EXECUTION = "EXECUTION_ERROR"      # timeout, non-zero exit, spawn failure


class GateError(Exception):
    kind: ErrorKind = ErrorKind.EXECUTION

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(GateError):
    kind = ErrorKind.VALIDATION


class PolicyRejection(GateError):
    kind = ErrorKind.POLICY


class SecurityError(GateError):
    kind = ErrorKind.SECURITY


class ExecutionError(GateError):
    kind = ErrorKind.EXECUTION


_BY_KIND: dict[ErrorKind, type[GateError]] = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.POLICY: PolicyRejection,
    ErrorKind.SECURITY: SecurityError,
    ErrorKind.EXECUTION: ExecutionError,
}


def error_for(kind: ErrorKind, message: str) -> GateError:
    """Build the exception matching an ErrorKind."""
    return _BY_KIND[kind](message)
