"""
psgate/boundary.py
──────────────────
Trust-boundary checks for commands arriving from a lower-trust UI process.

The higher-trust side (CommandBroker) is authoritative. Before it looks at
the command text at all it verifies that:
  - the calling channel is still alive
  - the caller's declared origin is trusted: the packaged app's own
    file:// resource directory, or an explicit loopback dev server

BridgeClient is the lower-trust side. Its pre-check only exists to fail
fast in the UI; the broker never relies on it.
"""

from __future__ import annotations

import functools
import logging
import os
import posixpath
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Protocol
from urllib.parse import unquote, urlsplit

from psgate.engine import DEFAULT_TIMEOUT_MS, CommandRequest
from psgate.errors import ErrorKind
from psgate.execution import ExecutionResult, SupervisedExecutor
from psgate.sanitizer import sanitize

logger = logging.getLogger("psgate.boundary")

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
_DEFAULT_PORTS = {"http": 80, "https": 443}
_LOG_ORIGIN_MAX = 200

REASON_CHANNEL = "calling channel is no longer valid"
REASON_ORIGIN = "untrusted origin"
REASON_TIMEOUT = "invalid timeout"


class Channel(Protocol):
    def is_alive(self) -> bool: ...


class LocalChannel:
    """In-process channel; alive until closed."""

    def __init__(self) -> None:
        self._alive = True

    def is_alive(self) -> bool:
        return self._alive

    def close(self) -> None:
        self._alive = False


def _split_http_origin(origin: str) -> tuple[str, str, int] | None:
    parts = urlsplit(origin)
    if parts.scheme not in _DEFAULT_PORTS or not parts.hostname:
        return None
    if parts.username is not None or parts.password is not None:
        return None
    try:
        port = parts.port or _DEFAULT_PORTS[parts.scheme]
    except ValueError:
        return None
    return parts.scheme, parts.hostname.lower(), port


def _normalise_path(path: str) -> str:
    path = posixpath.normpath(unquote(path).replace("\\", "/"))
    return path.lower() if os.name == "nt" else path


class OriginGuard:
    def __init__(self, resource_dir: str | Path, dev_origins: Iterable[str] = ()) -> None:
        resource_uri = Path(resource_dir).expanduser().resolve().as_uri()
        self._resource_path = _normalise_path(urlsplit(resource_uri).path)

        self._dev_origins: set[tuple[str, str, int]] = set()
        for origin in dev_origins:
            parsed = _split_http_origin(origin)
            if parsed is None or parsed[1] not in LOOPBACK_HOSTS:
                raise ValueError(f"Development origin must be a loopback http(s) URL: {origin!r}")
            self._dev_origins.add(parsed)

    @classmethod
    def from_config(cls, config: Any, base_dir: str | Path | None = None) -> "OriginGuard":
        resource_dir = Path(config.get("boundary", "resource_dir", fallback="dist"))
        if base_dir is not None and not resource_dir.is_absolute():
            resource_dir = Path(base_dir) / resource_dir
        raw = config.get("boundary", "dev_origins", fallback="")
        return cls(resource_dir, [o.strip() for o in raw.split(",") if o.strip()])

    @property
    def resource_uri(self) -> str:
        return "file://" + self._resource_path

    def is_trusted(self, origin: Any) -> bool:
        if not isinstance(origin, str) or not origin or origin == "null":
            return False
        if origin.lower().startswith("file:"):
            return self._is_resource(origin)
        parsed = _split_http_origin(origin)
        return parsed is not None and parsed in self._dev_origins

    def _is_resource(self, origin: str) -> bool:
        parts = urlsplit(origin)
        if parts.netloc not in ("", "localhost"):
            return False
        path = _normalise_path(parts.path)
        root = self._resource_path.rstrip("/")
        return path == root or path.startswith(root + "/")


class CommandBroker:
    """Higher-trust entry point: channel → origin → (sanitize) → timeout → execute."""

    def __init__(self, executor: SupervisedExecutor, origin_guard: OriginGuard, sanitize: bool = False) -> None:
        self._executor = executor
        self._guard = origin_guard
        self._sanitize = sanitize

    async def handle(self, channel: Channel | None, request: CommandRequest) -> ExecutionResult:
        if not self._channel_alive(channel):
            logger.error("SECURITY | request on a dead channel refused")
            return ExecutionResult.rejected(REASON_CHANNEL, ErrorKind.SECURITY)

        origin = request.caller_origin
        if not self._guard.is_trusted(origin):
            shown = origin[:_LOG_ORIGIN_MAX] if isinstance(origin, str) else origin
            logger.error(f"SECURITY | untrusted origin {shown!r} refused")
            return ExecutionResult.rejected(REASON_ORIGIN, ErrorKind.SECURITY)

        text = request.text
        if self._sanitize and isinstance(text, str):
            text = sanitize(text)

        if not self._executor.valid_timeout(request.timeout_ms):
            return ExecutionResult.rejected(REASON_TIMEOUT, ErrorKind.VALIDATION)

        return await self._executor.execute(text, request.timeout_ms)

    def connect(self, channel: Channel) -> Callable[[CommandRequest], Awaitable[ExecutionResult]]:
        """A send function bound to `channel`, suitable for BridgeClient."""
        return functools.partial(self.handle, channel)

    @staticmethod
    def _channel_alive(channel: Channel | None) -> bool:
        if channel is None:
            return False
        try:
            return bool(channel.is_alive())
        except Exception as exc:
            logger.warning(f"Channel liveness check failed: {exc}")
            return False


class BridgeClient:
    def __init__(self, send: Callable[[CommandRequest], Awaitable[ExecutionResult]], origin: str) -> None:
        self._send = send
        self._origin = origin

    async def execute(self, text: Any, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ExecutionResult:
        # Advisory only; the broker re-checks everything.
        if not isinstance(text, str) or not text:
            return ExecutionResult.rejected("Invalid command", ErrorKind.VALIDATION)
        return await self._send(CommandRequest(text, timeout_ms, self._origin))
