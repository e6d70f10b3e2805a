"""
psgate/execution/executor.py - Supervised interpreter execution.

Runs an authorized command in a child interpreter process. No shell is
involved: the interpreter is exec'd directly and the command travels as a
single escaped argument.

Every call authorizes first, then:
  - output is drained incrementally so a timeout still returns what was
    captured before the kill
  - combined stdout+stderr is capped; crossing the cap kills the process
  - the deadline kills the whole process tree (psutil)
  - failures come back as ExecutionResult data, never as exceptions
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass
from typing import Any

import psutil

from psgate.engine import DEFAULT_TIMEOUT_MS, MAX_TIMEOUT_MS, DecisionEngine
from psgate.errors import ErrorKind, error_for
from psgate.state_machine import ExecutionState, ExecutionStateMachine, StateListener

logger = logging.getLogger("psgate.executor")

DEFAULT_INTERPRETER = "powershell.exe"
DEFAULT_INTERPRETER_ARGS = "-NoProfile -NonInteractive -ExecutionPolicy Bypass -Command"
MAX_OUTPUT_BYTES = 10 * 1024 * 1024
_CHUNK = 64 * 1024
_DRAIN_GRACE_S = 2.0


@dataclass
class ExecutionResult:
    stdout: str
    stderr: str
    exit_code: int
    success: bool
    duration_ms: int = 0
    state: ExecutionState = ExecutionState.COMPLETED
    error_kind: ErrorKind | None = None

    @classmethod
    def rejected(cls, reason: str, kind: ErrorKind, duration_ms: int = 0) -> "ExecutionResult":
        """Refusal shape: nothing ran, exit code 1, reason in stderr."""
        return cls(
            stdout="",
            stderr=reason,
            exit_code=1,
            success=False,
            duration_ms=duration_ms,
            state=ExecutionState.FAILED,
            error_kind=kind,
        )

    def raise_for_status(self) -> "ExecutionResult":
        """Opt-in: raise the matching GateError if this result is a failure."""
        if not self.success:
            raise error_for(self.error_kind or ErrorKind.EXECUTION, self.stderr)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "state": self.state.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


def escape_command(text: str) -> str:
    """Escape double quotes and the variable sigil so the interpreter takes the text literally."""
    return text.replace('"', '\\"').replace("$", "`$")


class _OutputCapture:
    """Shared byte budget for both streams."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.total = 0
        self.buffers: dict[str, bytearray] = {"stdout": bytearray(), "stderr": bytearray()}
        self.overflowed = asyncio.Event()

    async def drain(self, stream: asyncio.StreamReader, name: str) -> None:
        buf = self.buffers[name]
        while True:
            chunk = await stream.read(_CHUNK)
            if not chunk:
                return
            room = self.limit - self.total
            if len(chunk) > room:
                buf.extend(chunk[:max(room, 0)])
                self.total = self.limit
                self.overflowed.set()
                return
            buf.extend(chunk)
            self.total += len(chunk)

    def text(self, name: str, encoding: str) -> str:
        return self.buffers[name].decode(encoding, errors="replace").strip()


def kill_process_tree(pid: int) -> int:
    """Kill a process and all of its descendants. Returns how many were signalled."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0
    try:
        victims = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        victims = []
    victims.append(parent)
    killed = 0
    for proc in victims:
        try:
            proc.kill()
            killed += 1
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as exc:
            logger.warning(f"Could not kill pid={proc.pid}: {exc}")
    return killed


class SupervisedExecutor:
    """
    Authorize-then-run wrapper around the interpreter.

    `on_state` is called as (old, new) on every lifecycle transition of
    every call, so a caller can observe PENDING → RUNNING → terminal
    without polling.
    """

    def __init__(
        self,
        engine: DecisionEngine,
        config: Any,
        on_state: StateListener | None = None,
    ) -> None:
        self._engine = engine
        self._on_state = on_state
        self._interpreter = config.get("execution", "interpreter", fallback=DEFAULT_INTERPRETER)
        self._interpreter_args = shlex.split(
            config.get("execution", "interpreter_args", fallback=DEFAULT_INTERPRETER_ARGS)
        )
        self._default_timeout_ms = config.getint(
            "execution", "default_timeout_ms", fallback=DEFAULT_TIMEOUT_MS
        )
        self._max_timeout_ms = config.getint("execution", "max_timeout_ms", fallback=MAX_TIMEOUT_MS)
        self._max_output = config.getint("execution", "max_output_bytes", fallback=MAX_OUTPUT_BYTES)
        self._encoding = config.get("execution", "encoding", fallback="utf-8")

    @property
    def default_timeout_ms(self) -> int:
        return self._default_timeout_ms

    @property
    def max_timeout_ms(self) -> int:
        return self._max_timeout_ms

    def valid_timeout(self, timeout_ms: Any) -> bool:
        if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int):
            return False
        return 1 <= timeout_ms <= self._max_timeout_ms

    def build_argv(self, text: str) -> list[str]:
        return [self._interpreter, *self._interpreter_args, escape_command(text)]

    async def execute(self, text: Any, timeout_ms: int | None = None) -> ExecutionResult:
        """
        Authorize, then run. Always returns an ExecutionResult.
        A rejected command never reaches the interpreter.
        """
        t0 = time.monotonic()
        fsm = ExecutionStateMachine()
        if self._on_state is not None:
            fsm.add_listener(self._on_state)
        if timeout_ms is None:
            timeout_ms = self._default_timeout_ms

        if not self.valid_timeout(timeout_ms):
            fsm.transition(ExecutionState.FAILED)
            return ExecutionResult.rejected(
                f"invalid timeout (1..{self._max_timeout_ms} ms)", ErrorKind.VALIDATION
            )

        decision = self._engine.authorize(text)
        if not decision.allowed:
            fsm.transition(ExecutionState.FAILED)
            return ExecutionResult.rejected(decision.reason, decision.kind, _elapsed_ms(t0))

        argv = self.build_argv(text)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            fsm.transition(ExecutionState.FAILED)
            logger.error(f"Failed to start interpreter '{self._interpreter}': {exc}")
            return ExecutionResult(
                stdout="",
                stderr=f"failed to start interpreter: {exc}",
                exit_code=1,
                success=False,
                duration_ms=_elapsed_ms(t0),
                state=fsm.state,
                error_kind=ErrorKind.EXECUTION,
            )

        fsm.transition(ExecutionState.RUNNING)
        logger.info(f"Started pid={proc.pid} timeout={timeout_ms}ms")
        return await self._supervise(proc, fsm, timeout_ms, t0)

    async def _supervise(
        self,
        proc: asyncio.subprocess.Process,
        fsm: ExecutionStateMachine,
        timeout_ms: int,
        t0: float,
    ) -> ExecutionResult:
        capture = _OutputCapture(self._max_output)
        readers = [
            asyncio.ensure_future(capture.drain(proc.stdout, "stdout")),
            asyncio.ensure_future(capture.drain(proc.stderr, "stderr")),
        ]
        exited = asyncio.ensure_future(self._wait_exit(proc, readers))
        overflow = asyncio.ensure_future(capture.overflowed.wait())

        done, _ = await asyncio.wait(
            {exited, overflow},
            timeout=timeout_ms / 1000,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if capture.overflowed.is_set():
            outcome = ExecutionState.FAILED
        elif exited in done:
            outcome = ExecutionState.COMPLETED
        else:
            outcome = ExecutionState.TIMED_OUT

        if outcome is not ExecutionState.COMPLETED:
            kill_process_tree(proc.pid)
            await self._reap(proc, readers)
        overflow.cancel()
        exited.cancel()

        fsm.transition(outcome)
        stdout = capture.text("stdout", self._encoding)
        stderr = capture.text("stderr", self._encoding)
        duration = _elapsed_ms(t0)

        if outcome is ExecutionState.TIMED_OUT:
            logger.warning(f"pid={proc.pid} timed out after {timeout_ms}ms, process tree killed")
            return ExecutionResult(
                stdout=stdout,
                stderr=_join(stderr, f"command timed out after {timeout_ms} ms"),
                exit_code=1,
                success=False,
                duration_ms=duration,
                state=outcome,
                error_kind=ErrorKind.EXECUTION,
            )

        if outcome is ExecutionState.FAILED:
            logger.warning(f"pid={proc.pid} exceeded {self._max_output} output bytes, process tree killed")
            return ExecutionResult(
                stdout=stdout,
                stderr=_join(stderr, f"output exceeded {self._max_output} bytes"),
                exit_code=1,
                success=False,
                duration_ms=duration,
                state=outcome,
                error_kind=ErrorKind.EXECUTION,
            )

        code = proc.returncode
        if code != 0:
            logger.warning(f"pid={proc.pid} exited with code {code}")
            return ExecutionResult(
                stdout=stdout,
                stderr=stderr or f"process exited with code {code}",
                exit_code=code,
                success=False,
                duration_ms=duration,
                state=outcome,
                error_kind=ErrorKind.EXECUTION,
            )

        logger.info(f"pid={proc.pid} completed in {duration}ms")
        return ExecutionResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=0,
            success=True,
            duration_ms=duration,
            state=outcome,
        )

    @staticmethod
    async def _wait_exit(proc: asyncio.subprocess.Process, readers: list[asyncio.Future]) -> None:
        await asyncio.gather(*readers, return_exceptions=True)
        await proc.wait()

    @staticmethod
    async def _reap(proc: asyncio.subprocess.Process, readers: list[asyncio.Future]) -> None:
        """After a kill: collect the exit status and whatever the pipes still hold."""
        try:
            await asyncio.wait_for(proc.wait(), timeout=_DRAIN_GRACE_S)
        except asyncio.TimeoutError:
            logger.error(f"pid={proc.pid} did not exit after kill")
        _, pending = await asyncio.wait(readers, timeout=_DRAIN_GRACE_S)
        for reader in pending:
            reader.cancel()


def _elapsed_ms(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)


def _join(stderr: str, note: str) -> str:
    return f"{stderr}\n{note}" if stderr else note
