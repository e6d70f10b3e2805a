"""
psgate/context.py
─────────────────
Invocation-context matcher.

A verb only counts as invoked when it sits in one of six command
positions: start of text, after a pipe, after a statement separator,
after a variable assignment, after an opening paren or after an opening
brace. Anything else (a verb name inside a string, a comment, or an
argument) is an inert mention.

mask_literals() blanks out single/double-quoted string contents and
comments so that command_words() can list what is actually at a command
position. Subexpressions inside double-quoted strings ("$( ... )") stay
visible because PowerShell executes them.
"""

from __future__ import annotations

import re
from enum import Enum
from functools import lru_cache


class InvocationContext(str, Enum):
    START = "start"
    AFTER_PIPE = "after-pipe"
    AFTER_SEPARATOR = "after-separator"
    AFTER_ASSIGNMENT = "after-assignment"
    AFTER_OPEN_PAREN = "after-open-paren"
    AFTER_OPEN_BRACE = "after-open-brace"


_CONTEXT_PREFIXES: dict[InvocationContext, str] = {
    InvocationContext.START: r"^",
    InvocationContext.AFTER_PIPE: r"\|\s*",
    InvocationContext.AFTER_SEPARATOR: r";\s*",
    InvocationContext.AFTER_ASSIGNMENT: r"\$[A-Za-z_]\w*\s*=\s*",
    InvocationContext.AFTER_OPEN_PAREN: r"\(\s*",
    InvocationContext.AFTER_OPEN_BRACE: r"\{\s*",
}

# a verb ends where a name can no longer continue
_VERB_END = r"(?![\w-])"

_WHITESPACE_RE = re.compile(r"\s+")

_SINGLE_QUOTES = "'‘’‚‛"
_DOUBLE_QUOTES = '"“”„'

# Command positions for the masked, un-normalized text. Either line
# terminator (CR or LF) ends a statement, "&" covers "&&" chains and the
# call operator, and "." covers dot-sourcing. A type literal standing at a
# command position ("[Type]::Member", "[Type]'text'") is reported as well.
_COMMAND_WORD_RE = re.compile(
    r"(?:^|[|;({&\r\n]|\$(?:[\w:]+|\{[^}]*\})\s*[-+*/%]?=)"
    r"[ \t\r\n]*(?:\.[ \t]+)?"
    r"(?:(?P<type>\[[^\[\]\r\n]*(?:\[[^\[\]\r\n]*\][^\[\]\r\n]*)*\])"
    r"|(?P<word>[^\s$\[\](){}@'\"‘-‟!,;|&=+\-<>#`]"
    r"[^\s(){}\[\];|&,=<>'\"`]*))"
)
# Number literals ("5", "1..10", "0x1F", "2.5e3", "10MB") and arithmetic
# on them are values, not commands.
_NUMBER = r"(?:0x[0-9a-f]+|\d[\d.]*(?:e[+-]?\d+)?)(?:[lud]|[kmgtp]b)?"
_NUMBER_RE = re.compile(rf"{_NUMBER}(?:[-+*/%.]+{_NUMBER})*", re.IGNORECASE)
_LINE_END_RE = re.compile(r"[\r\n]")
_KEY_ASSIGN_RE = re.compile(r"\s*=(?!=)")


def normalize(text: str) -> str:
    """Collapse whitespace runs to a single space and trim."""
    return _WHITESPACE_RE.sub(" ", text).strip()


@lru_cache(maxsize=1024)
def _context_variants(verb_pattern: str) -> tuple[tuple[InvocationContext, re.Pattern], ...]:
    return tuple(
        (ctx, re.compile(f"{prefix}(?:{verb_pattern}){_VERB_END}", re.IGNORECASE))
        for ctx, prefix in _CONTEXT_PREFIXES.items()
    )


def matching_context(text: str, verb_pattern: str) -> InvocationContext | None:
    """First invocation context in which `verb_pattern` appears, or None."""
    normalized = normalize(text)
    for ctx, regex in _context_variants(verb_pattern):
        if regex.search(normalized):
            return ctx
    return None


def is_in_context(text: str, verb_pattern: str) -> bool:
    return matching_context(text, verb_pattern) is not None


def mask_literals(text: str) -> str:
    """
    Replace string-literal contents and comments with spaces.

    Length and newlines outside the masked regions are preserved, so
    positions in the result line up with the input. Quote characters
    themselves are kept. Unterminated strings and block comments are masked
    to the end of the text.
    """
    out = list(text)
    n = len(text)
    i = 0
    # each frame: [mode, paren_depth, is_subexpression]
    frames: list[list] = [["code", 0, False]]

    def blank(start: int, end: int) -> None:
        for k in range(start, min(end, n)):
            if out[k] not in "\r\n":
                out[k] = " "

    while i < n:
        ch = text[i]
        frame = frames[-1]

        if frame[0] == "dq":
            if ch == "`":
                blank(i, i + 2)
                i += 2
            elif ch in _DOUBLE_QUOTES:
                if i + 1 < n and text[i + 1] in _DOUBLE_QUOTES:
                    blank(i, i + 2)
                    i += 2
                else:
                    frames.pop()
                    i += 1
            elif ch == "$" and i + 1 < n and text[i + 1] == "(":
                blank(i, i + 1)
                frames.append(["code", 0, True])
                i += 1
            else:
                blank(i, i + 1)
                i += 1
            continue

        if ch == "`":
            # escaped character outside strings, never a quote or separator
            i += 2
        elif ch in _SINGLE_QUOTES:
            j = i + 1
            while j < n:
                if text[j] in _SINGLE_QUOTES:
                    if j + 1 < n and text[j + 1] in _SINGLE_QUOTES:
                        j += 2
                        continue
                    break
                j += 1
            blank(i + 1, j)
            i = j + 1
        elif ch in _DOUBLE_QUOTES:
            frames.append(["dq", 0, False])
            i += 1
        elif ch == "<" and text.startswith("<#", i) and (i == 0 or text[i - 1].isspace()):
            end = text.find("#>", i + 2)
            end = n if end < 0 else end + 2
            blank(i, end)
            i = end
        elif ch == "#" and (i == 0 or text[i - 1].isspace()):
            line_end = _LINE_END_RE.search(text, i)
            end = line_end.start() if line_end else n
            blank(i, end)
            i = end
        elif ch == "(":
            frame[1] += 1
            i += 1
        elif ch == ")":
            frame[1] -= 1
            if frame[2] and frame[1] <= 0:
                frames.pop()
            i += 1
        else:
            i += 1

    return "".join(out)


def _hashtable_mask(masked: str) -> list[bool]:
    """For each position, whether the innermost open brace is an @{ literal."""
    inside = [False] * len(masked)
    stack: list[bool] = []
    previous = ""
    for idx, ch in enumerate(masked):
        if ch == "{":
            stack.append(previous == "@")
        elif ch == "}" and stack:
            stack.pop()
        inside[idx] = bool(stack) and stack[-1]
        if not ch.isspace():
            previous = ch
    return inside


def command_words(text: str) -> list[str]:
    """
    Bare words standing at a command position, in order of appearance.

    Quoted strings and comments are masked first. Keys of hashtable
    literals (`@{ Name = ... }`) and number literals are not commands and
    are skipped. A type literal is reported without inner whitespace, e.g.
    "[ScriptBlock]" for `[ ScriptBlock ]::Create(...)`.
    """
    masked = mask_literals(text)
    in_hashtable = _hashtable_mask(masked)
    words: list[str] = []
    for match in _COMMAND_WORD_RE.finditer(masked):
        if match.group("type") is not None:
            words.append(_WHITESPACE_RE.sub("", match.group("type")))
            continue
        word = match.group("word")
        if _NUMBER_RE.fullmatch(word):
            continue
        if in_hashtable[match.start("word")] and _KEY_ASSIGN_RE.match(masked, match.end("word")):
            continue
        words.append(word)
    return words
