"""
main.py — psgate command-line entry point.

Usage:
  python main.py --check "Get-Service -Name wuauserv"    # authorize only
  python main.py --run "Get-WsusServer" --timeout 60000  # authorize + execute
  python main.py --sanitize "iex (Get-Content x)"        # show sanitizer output + decision
  python main.py --list-rules                            # dump the policy catalog
  python main.py --verify                                # verify audit log integrity
"""

from __future__ import annotations

import argparse
import asyncio
import configparser
import json
import os
import sys
from pathlib import Path

from psgate import logger as logger_mod
from psgate.catalog import load_catalog
from psgate.engine import DecisionEngine
from psgate.execution import SupervisedExecutor
from psgate.logger import AuditEvent, command_fingerprint
from psgate.sanitizer import sanitize
from psgate.service import CommandService
from psgate.state_machine import TERMINAL_STATES, ExecutionState

# Define the absolute root of the project based on this file's location
PROJECT_ROOT = Path(__file__).resolve().parent


def _load_config(config_path: str = "config/psgate.ini") -> configparser.ConfigParser:
    config = configparser.ConfigParser()
    path = Path(config_path)
    if not path.is_absolute():
        path = PROJECT_ROOT / config_path

    if path.exists():
        config.read(path, encoding="utf-8")
    else:
        print(f"⚠  Config not found at {path}, using defaults", file=sys.stderr)
    return config


def _log_state(old: ExecutionState, new: ExecutionState) -> None:
    log = logger_mod.get()
    if new in TERMINAL_STATES:
        log.info(f"Execution {old.value} → {new.value}")
    else:
        log.debug(f"Execution {old.value} → {new.value}")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="psgate: command authorization gate and supervised PowerShell runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --check "Get-Service | Where-Object {$_.Status -eq 'Running'}"
  python main.py --run "Get-WsusServer" --timeout 60000
  python main.py --list-rules
  python main.py --verify
        """,
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--check", metavar="TEXT", help="Authorize TEXT without running it")
    mode.add_argument("--run", metavar="TEXT", help="Authorize and execute TEXT")
    mode.add_argument("--sanitize", metavar="TEXT", help="Print sanitized TEXT and its decision")
    mode.add_argument("--list-rules", action="store_true", help="Print the ALLOW/BLOCK catalog")
    mode.add_argument("--verify", action="store_true", help="Verify audit log integrity and exit")
    parser.add_argument(
        "--timeout", type=int, default=None, metavar="MS",
        help="Execution timeout in milliseconds (default from config, 30000)",
    )
    parser.add_argument(
        "--config", default="config/psgate.ini",
        help="Path to config file relative to project root (default: config/psgate.ini)",
    )
    parser.add_argument(
        "--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser.parse_args(argv)


async def _main(args: argparse.Namespace) -> int:
    config = _load_config(args.config)

    # Override log level from CLI if provided
    if args.log_level:
        if not config.has_section("logging"):
            config.add_section("logging")
        config.set("logging", "level", args.log_level.upper())

    # Initialise logging first
    logger_mod.setup(config)
    log = logger_mod.get()

    # ── Audit verify mode ─────────────────────────────────────────────────────
    if args.verify:
        ok, count, err = logger_mod.verify_audit()
        if ok:
            log.info(f"Audit log OK: {count} entries verified, chain intact")
            print(f"✅ Audit log OK: {count} entries verified, chain intact.")
        else:
            log.error(f"Audit log TAMPERED: {err}")
            print(f"❌ Audit log TAMPERED: {err}")
        return 0 if ok else 1

    catalog = load_catalog(config)
    engine = DecisionEngine.from_config(catalog, config)

    if args.list_rules:
        print(f"catalog {catalog.version}")
        for rule in catalog.list_block_rules() + catalog.list_allow_rules():
            print(f"{rule.kind.value:<6} {rule.category:<22} {rule.pattern}")
        print("SAFE PIPELINE: " + ", ".join(catalog.safe_pipeline_verbs))
        return 0

    if args.check is not None or args.sanitize is not None:
        text = args.check
        if args.sanitize is not None:
            text = sanitize(args.sanitize)
            print(f"sanitized: {text}")
        decision = engine.authorize(text)
        logger_mod.audit(AuditEvent.DECISION, {
            "command": command_fingerprint(text),
            **decision.to_dict(),
        })
        if decision.allowed:
            print(f"✅ ALLOWED: {decision.reason}")
        else:
            print(f"❌ REJECTED [{decision.kind.value}]: {decision.reason}")
        return 0 if decision.allowed else 1

    # ── Execute ───────────────────────────────────────────────────────────────
    executor = SupervisedExecutor(engine, config, on_state=_log_state)
    service = CommandService.from_config(executor, config)
    result = await service.execute(args.run, args.timeout)
    logger_mod.audit(AuditEvent.EXECUTION, {
        "command": command_fingerprint(args.run),
        "success": result.success,
        "exit_code": result.exit_code,
        "state": result.state.value,
        "error_kind": result.error_kind.value if result.error_kind else None,
        "duration_ms": result.duration_ms,
    })
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0 if result.success else 1


def main(argv: list[str] | None = None) -> None:
    # Safely change to script directory so relative paths work globally
    os.chdir(PROJECT_ROOT)

    args = _parse_args(argv)

    try:
        sys.exit(asyncio.run(_main(args)))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
