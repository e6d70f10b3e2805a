"""
psgate/logger.py — Application logging + tamper-evident audit trail.

Audit log: append-only JSONL. Each entry is SHA-256 chained to the previous
one, so editing or dropping a line breaks verification. Command text is
never written to the audit trail, only its digest and length.

App log: rotating file + coloured console output on the "psgate" logger.
Modules log through logging.getLogger("psgate.<module>").
"""

from __future__ import annotations

import hashlib
import json
import logging
import logging.handlers
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, NamedTuple

from colorama import Fore, Style, init as colorama_init

colorama_init(autoreset=True)

GENESIS_HASH = "0" * 64

# ── Colour map ────────────────────────────────────────────────────────────────
_LEVEL_COLOURS = {
    "DEBUG":    Fore.CYAN,
    "INFO":     Fore.GREEN,
    "WARNING":  Fore.YELLOW,
    "ERROR":    Fore.RED,
    "CRITICAL": Fore.MAGENTA,
}


class ColouredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        colour = _LEVEL_COLOURS.get(record.levelname, "")
        prefix = f"{colour}[{record.levelname[:4]}]{Style.RESET_ALL}"
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S")
        name = record.name.split(".", 1)[-1]
        return f"{Fore.WHITE}{ts}{Style.RESET_ALL} {prefix} {name}: {record.getMessage()}"


# ── Audit log ─────────────────────────────────────────────────────────────────
class AuditEvent(str, Enum):
    DECISION = "DECISION"      # authorize() outcome, nothing ran
    EXECUTION = "EXECUTION"    # supervised run outcome


class AuditReport(NamedTuple):
    ok: bool
    entries: int
    error: str = ""


class AuditLog:
    """
    Append-only JSONL trail of decisions and executions.

    Every line carries `prev_hash` (the previous line's hash, GENESIS_HASH
    for the first) and `hash`, computed over all of its other fields.
    Reopening an existing file continues from its last entry.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._head = self._recover_head()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def head(self) -> str:
        """Hash of the newest entry, GENESIS_HASH while the log is empty."""
        return self._head

    def _lines(self) -> Iterator[tuple[int, str]]:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, 1):
                line = line.strip()
                if line:
                    yield lineno, line

    def _recover_head(self) -> str:
        last = None
        for _, line in self._lines():
            last = line
        if last is None:
            return GENESIS_HASH
        try:
            return json.loads(last).get("hash", GENESIS_HASH)
        except json.JSONDecodeError:
            return GENESIS_HASH

    def write(self, event: AuditEvent | str, payload: dict[str, Any]) -> str:
        """Append one entry. Returns the entry's hash."""
        with self._lock:
            entry = {
                "ts": datetime.now(tz=timezone.utc).isoformat(),
                "event": getattr(event, "value", event),
                "payload": payload,
                "prev_hash": self._head,
            }
            entry["hash"] = _entry_hash(entry)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=False) + "\n")
            self._head = entry["hash"]
            return self._head

    def verify(self) -> AuditReport:
        """Walk the chain from GENESIS_HASH; stops at the first bad line."""
        prev = GENESIS_HASH
        count = 0
        for lineno, line in self._lines():
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as exc:
                return AuditReport(False, count, f"Line {lineno}: invalid JSON ({exc})")
            problem = _link_problem(entry, prev)
            if problem:
                return AuditReport(False, count, f"Line {lineno}: {problem}")
            prev = entry["hash"]
            count += 1
        return AuditReport(True, count)


def _entry_hash(entry: dict[str, Any]) -> str:
    serialised = json.dumps(entry, ensure_ascii=False, sort_keys=True)
    return hashlib.sha256(serialised.encode("utf-8")).hexdigest()


def _link_problem(entry: dict[str, Any], prev: str) -> str | None:
    body = {k: v for k, v in entry.items() if k != "hash"}
    if entry.get("hash") != _entry_hash(body):
        return "hash mismatch"
    if body.get("prev_hash") != prev:
        return "chain broken"
    return None


def command_fingerprint(text: Any) -> dict[str, Any]:
    """Digest + length of a command, for audit payloads. Never the text itself."""
    if not isinstance(text, str):
        return {"sha256": None, "length": 0}
    return {
        "sha256": hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest(),
        "length": len(text),
    }


# ── Module-level singletons (initialised by setup()) ─────────────────────────
_audit: AuditLog | None = None
_app_logger: logging.Logger | None = None


def setup(config: Any) -> logging.Logger:
    """Call once at startup with the parsed ConfigParser object."""
    global _audit, _app_logger

    log_dir = Path(config.get("logging", "log_dir", fallback="logs"))
    log_dir.mkdir(parents=True, exist_ok=True)

    audit_path = config.get("logging", "audit_file", fallback=str(log_dir / "audit.jsonl"))
    _audit = AuditLog(audit_path)

    app_path = Path(config.get("logging", "app_file", fallback=str(log_dir / "psgate.log")))
    app_path.parent.mkdir(parents=True, exist_ok=True)
    level_str = config.get("logging", "level", fallback="INFO")
    level = getattr(logging, level_str.upper(), logging.INFO)

    logger = logging.getLogger("psgate")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    # Console
    ch = logging.StreamHandler()
    ch.setFormatter(ColouredFormatter())
    ch.setLevel(level)
    logger.addHandler(ch)

    # File (rotating, 5 MB × 3)
    fh = logging.handlers.RotatingFileHandler(
        app_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    fh.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s"
    ))
    fh.setLevel(level)
    logger.addHandler(fh)

    _app_logger = logger
    return logger


def get() -> logging.Logger:
    if _app_logger is None:
        raise RuntimeError("Logger not initialised, call logger.setup() first")
    return _app_logger


def audit(event: AuditEvent | str, payload: dict[str, Any]) -> str:
    if _audit is None:
        raise RuntimeError("Audit log not initialised, call logger.setup() first")
    return _audit.write(event, payload)


def verify_audit() -> AuditReport:
    if _audit is None:
        return AuditReport(False, 0, "Audit log not initialised")
    return _audit.verify()
