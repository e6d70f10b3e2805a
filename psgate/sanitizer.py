"""
psgate/sanitizer.py
───────────────────
Advisory text scrubber for known obfuscation idioms.

Its output is NOT proof of safety. Anything it returns goes back through
DecisionEngine.authorize() as fresh untrusted input.
"""

from __future__ import annotations

import re

# Applied in this order.
_STRIPS: tuple[re.Pattern, ...] = (
    re.compile(r"\bInvoke-Expression\b", re.IGNORECASE),
    re.compile(r"\biex\b", re.IGNORECASE),
    re.compile(r"\.DownloadString\s*\(", re.IGNORECASE),
    re.compile(r"\.DownloadFile\s*\(", re.IGNORECASE),
    re.compile(r"-WindowStyle\s+Hidden", re.IGNORECASE),
    re.compile(r"\[System\.Convert\]::FromBase64String", re.IGNORECASE),
    re.compile(r"-EncodedCommand", re.IGNORECASE),
    re.compile(r"-enc\b", re.IGNORECASE),
    re.compile(r"\[System\.IO\.MemoryStream\]", re.IGNORECASE),
    re.compile(r"\[System\.Reflection\.Assembly\]::Load", re.IGNORECASE),
    # null and bell escapes; case matters for backtick escapes
    re.compile(r"`0"),
    re.compile(r"`a"),
)


def sanitize(text: str) -> str:
    """Strip each known idiom, then trim. Pure."""
    for pattern in _STRIPS:
        text = pattern.sub("", text)
    return text.strip()
