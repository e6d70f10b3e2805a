"""
psgate/engine.py
════════════════
Decision engine: the single authority on whether a command may run.

Evaluation order (strict):
  1. Validation   — empty, non-text, NUL bytes or over-long → REJECTED
  2. BLOCK        — any BLOCK pattern anywhere in the normalized text → REJECTED.
                    Nothing after this step can override it.
  3. ALLOW        — an allowed verb in an invocation context, and no
                    unlisted command invoked alongside it → ALLOWED
  4. Pipeline     — a plain expression piped only into safe pipeline verbs,
                    no assignment, no control flow → ALLOWED
  5. Default deny → REJECTED

authorize() is a pure function of (catalog, text). It never raises and
keeps no history between calls.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from psgate.catalog import PolicyCatalog, PolicyRule
from psgate.context import command_words, is_in_context, mask_literals, normalize
from psgate.errors import ErrorKind

logger = logging.getLogger("psgate.engine")

DEFAULT_TIMEOUT_MS = 30_000
MAX_TIMEOUT_MS = 3_600_000
# Windows command-line length limit
MAX_COMMAND_LENGTH = 32_767

REASON_INVALID = "invalid command"
REASON_ALLOW = "matches allow rule"
REASON_PIPELINE = "matches safe pipeline"
REASON_NOT_LISTED = "not in allowlist"
REASON_BLOCKED = "command not permitted by policy: blocked construct ({category})"

# Language keywords that may stand at a command position without being commands.
_KEYWORDS = frozenset({
    "if", "elseif", "else", "foreach", "for", "while", "do", "until",
    "switch", "try", "catch", "finally", "throw", "return", "break",
    "continue", "exit", "param", "begin", "process", "end", "trap", "in",
})

_ASSIGNMENT_RE = re.compile(r"\$[\w:.]+(?:\[[^\]]*\])?\s*[-+*/%]?=")
_CONTROL_FLOW_RE = re.compile(
    r"\b(?:if|elseif|foreach|for|while|switch|until)\s*\("
    r"|\b(?:else|try|catch|finally|do|trap)\s*[{\[]",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class CommandRequest:
    text: Any
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    caller_origin: str | None = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str
    kind: ErrorKind | None = None

    @classmethod
    def allow(cls, reason: str) -> "Decision":
        return cls(True, reason, None)

    @classmethod
    def reject(cls, reason: str, kind: ErrorKind = ErrorKind.POLICY) -> "Decision":
        return cls(False, reason, kind)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "kind": self.kind.value if self.kind else None,
        }


class DecisionEngine:
    """
    Stateless authorizer over an immutable PolicyCatalog.
    Call authorize() before every execution; a REJECTED decision is final.
    """

    def __init__(self, catalog: PolicyCatalog, max_command_length: int = MAX_COMMAND_LENGTH) -> None:
        if max_command_length <= 0:
            raise ValueError("max_command_length must be positive")
        self._catalog = catalog
        self._max_len = max_command_length
        safe = "|".join(re.escape(v) for v in catalog.safe_pipeline_verbs)
        self._pipe_to_safe_re = re.compile(rf"\|\s*(?:{safe})(?![\w-])", re.IGNORECASE)

    @classmethod
    def from_config(cls, catalog: PolicyCatalog, config: Any) -> "DecisionEngine":
        return cls(catalog, config.getint("policy", "max_command_length", fallback=MAX_COMMAND_LENGTH))

    @property
    def catalog(self) -> PolicyCatalog:
        return self._catalog

    def authorize(self, request: CommandRequest | str | None) -> Decision:
        """Always returns a Decision. Never raises."""
        text = request.text if isinstance(request, CommandRequest) else request
        try:
            decision = self._evaluate(text)
        except Exception as exc:
            logger.error(f"Authorization failed internally, rejecting: {exc}")
            decision = Decision.reject(REASON_INVALID, ErrorKind.VALIDATION)
        self._log(decision)
        return decision

    # ── Steps ─────────────────────────────────────────────────────────────────

    def _evaluate(self, text: Any) -> Decision:
        if not self._is_well_formed(text):
            return Decision.reject(REASON_INVALID, ErrorKind.VALIDATION)

        normalized = normalize(text)
        blocked = self._first_block(normalized)
        if blocked is not None:
            return Decision.reject(REASON_BLOCKED.format(category=blocked.category))

        masked = mask_literals(text)
        words = command_words(text)

        if self._has_allow_hit(masked):
            unlisted = [w for w in words if not self._is_listed(w)]
            if not unlisted:
                return Decision.allow(REASON_ALLOW)
            logger.debug(f"Allow hit overridden by {len(unlisted)} unlisted command(s)")
            return Decision.reject(REASON_NOT_LISTED)

        if self._is_safe_pipeline(normalize(masked), words):
            return Decision.allow(REASON_PIPELINE)

        return Decision.reject(REASON_NOT_LISTED)

    def _is_well_formed(self, text: Any) -> bool:
        if not isinstance(text, str):
            return False
        if not text.strip() or "\x00" in text:
            return False
        return len(text) <= self._max_len

    def _first_block(self, normalized: str) -> PolicyRule | None:
        for rule in self._catalog.block_rules:
            if rule.search(normalized):
                return rule
        return None

    def _has_allow_hit(self, masked: str) -> bool:
        return any(is_in_context(masked, rule.pattern) for rule in self._catalog.allow_rules)

    def _is_listed(self, word: str) -> bool:
        return word.lower() in _KEYWORDS or self._catalog.covers(word)

    def _is_safe_pipeline(self, masked_normalized: str, words: list[str]) -> bool:
        if not self._pipe_to_safe_re.search(masked_normalized):
            return False
        if _ASSIGNMENT_RE.search(masked_normalized):
            return False
        if _CONTROL_FLOW_RE.search(masked_normalized):
            return False
        return all(self._catalog.is_safe_pipeline_verb(w) for w in words)

    def _log(self, decision: Decision) -> None:
        if decision.allowed:
            logger.debug(f"ALLOWED | {decision.reason}")
        else:
            logger.warning(f"REJECTED [{decision.kind.value}] | {decision.reason}")
