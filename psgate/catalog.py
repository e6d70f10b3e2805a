"""
psgate/catalog.py
═════════════════
Policy catalog: the static ALLOW / BLOCK tables the decision engine reads.

Rules:
  - The catalog is an immutable value, built once at startup and handed to
    the DecisionEngine constructor. Nothing mutates it afterwards.
  - BLOCK rules are plain case-insensitive patterns; presence anywhere in
    the command vetoes it.
  - ALLOW rules name a command verb and are anchored: the verb only counts
    when it appears in an invocation context (see psgate/context.py).
  - A type literal at a command position ("[math]::Round", "[xml]$doc")
    is a command too. "[Name]" rules list single types; a rule left open at
    a namespace ("[System.IO.Compression") lists every type below it.
  - BLOCK always beats ALLOW. Adding ALLOW rules never re-permits a BLOCK
    match, because the engine evaluates every BLOCK rule first.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

logger = logging.getLogger("psgate.catalog")

CATALOG_VERSION = "2024.11.1"

_FLAGS = re.IGNORECASE
_VERB_NAME_RE = re.compile(r"^[A-Za-z]+-[A-Za-z][A-Za-z0-9]*$")


class RuleKind(str, Enum):
    ALLOW = "ALLOW"
    BLOCK = "BLOCK"


@dataclass(frozen=True)
class PolicyRule:
    pattern: str
    kind: RuleKind
    anchored: bool
    category: str
    regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "regex", re.compile(self.pattern, _FLAGS))

    @classmethod
    def allow(cls, verb: str, category: str) -> "PolicyRule":
        """ALLOW rule for a literal command name (escaped, anchored)."""
        return cls(re.escape(verb), RuleKind.ALLOW, True, category)

    @classmethod
    def block(cls, pattern: str, category: str) -> "PolicyRule":
        return cls(pattern, RuleKind.BLOCK, False, category)

    def search(self, text: str) -> bool:
        return self.regex.search(text) is not None

    def names(self, word: str) -> bool:
        """
        True when `word` is exactly the command this rule allows.

        A type-literal rule left open at a namespace ("[System.IO.Compression")
        also names every type below it ("[System.IO.Compression.ZipFile]").
        """
        if self.regex.fullmatch(word) is not None:
            return True
        if not (word.startswith("[") and self.pattern.startswith(r"\[")) or self.pattern.endswith(r"\]"):
            return False
        match = self.regex.match(word)
        return match is not None and word[match.end():match.end() + 1] in (".", "]")


# ══════════════════════════════════════════════
# ALLOW TABLE — verb-noun commands the console needs
# ══════════════════════════════════════════════
_ALLOW_TABLE: dict[str, tuple[str, ...]] = {
    "wsus-inventory": (
        "Get-WsusServer", "Get-WsusComputer", "Get-WsusUpdate",
        "Get-WsusProduct", "Get-WsusClassification",
    ),
    "wsus-admin": (
        "Invoke-WsusServerSynchronization", "Invoke-WsusServerCleanup",
        "Set-WsusServerSynchronization", "Set-WsusProduct",
        "Set-WsusClassification", "Approve-WsusUpdate", "Deny-WsusUpdate",
    ),
    "service-control": (
        "Get-Service", "Start-Service", "Stop-Service", "Restart-Service",
        "Get-Process", "Stop-Process",
    ),
    "database": ("Invoke-Sqlcmd",),
    "module": ("Get-Module", "Import-Module"),
    "structured-data": (
        "ConvertTo-Json", "ConvertFrom-Json", "[xml]", "[PSCustomObject]",
    ),
    "value-types": (
        "[int]", "[long]", "[double]", "[decimal]", "[string]", "[bool]",
        "[char]", "[datetime]", "[timespan]", "[guid]", "[version]",
        "[math]", "[array]", "[hashtable]", "[ordered]",
    ),
    "file-read": (
        "Test-Path", "Get-ChildItem", "Get-Content", "Get-Item",
        "Get-ItemProperty", "Get-PSDrive", "[System.IO.Compression",
    ),
    "file-write": ("New-Item", "Out-File"),
    "output": (
        "Write-Output", "Write-Host", "Write-Warning", "Write-Error",
        "Out-Null", "Start-Sleep", "Get-Date",
    ),
    "object": ("New-Object",),
    "pipeline": (
        "Select-Object", "Where-Object", "Measure-Object", "ForEach-Object",
    ),
    "scheduled-task": (
        "Register-ScheduledTask", "Unregister-ScheduledTask",
        "Get-ScheduledTask", "Set-ScheduledTask", "New-ScheduledTaskTrigger",
        "New-ScheduledTaskAction", "New-ScheduledTaskPrincipal",
        "New-ScheduledTaskSettingsSet",
    ),
    "audit": (
        "Get-WebConfigurationProperty", "Get-WebConfiguration",
        "Get-NetFirewallProfile", "netsh", "auditpol", "secedit",
    ),
    "deployment": (
        "Install-WindowsFeature", "Get-WindowsFeature", "Get-CimInstance",
    ),
}

# ══════════════════════════════════════════════
# BLOCK TABLE — vetoed anywhere in the text
# ══════════════════════════════════════════════
_BLOCK_TABLE: dict[str, tuple[str, ...]] = {
    "dynamic-code": (
        r"\bInvoke-Expression\b",
        r"\biex\b",
        r"\bAdd-Type\b",
        r"ScriptBlock\]::Create",
        r"\[(?:System\.Management\.Automation\.)?PowerShell\]",
        r"\bAddScript\b",
        r"\.InvokeScript\s*\(",
        r"-ComObject\b",
        r"\[(?:System\.)?Activator\]",
        r"\bGetTypeFrom(?:ProgID|CLSID)\b",
        # call operator / dot-source on a string, variable or expression
        r"(?:^|[|;({=\r\n]\s*)&\s*[\"'$({]",
        r"(?:^|[|;({=\r\n]\s*)\.\s+[\"'$(]",
    ),
    "remote-execution": (
        r"\bInvoke-Command\b",
        r"\bicm\b",
        r"\b(?:Enter|New)-PSSession\b",
        r"\bInvoke-(?:Wmi|Cim)Method\b",
        r"\[wmi(?:class|searcher)?\]",
    ),
    "remote-content": (
        r"\bInvoke-WebRequest\b",
        r"\biwr\b",
        r"\bInvoke-RestMethod\b",
        r"\birm\b",
        r"\bStart-BitsTransfer\b",
        r"\bNet\.WebClient\b",
        r"\bSystem\.Net\.Http\b",
        r"\.Download(?:String|File|Data)\b",
        r"\b(?:Install|Save)-(?:Module|Package)\b",
        r"\b(?:curl|wget|bitsadmin|certutil)(?:\.exe)?\b",
    ),
    "encoded-payload": (
        r"(?:^|\s)-e(?:c|nc|ncodedcommand)?\b",
        r"\b(?:From|To)Base64String\b",
    ),
    "memory-loading": (
        r"\[(?:System\.)?Reflection\.Assembly\]::Load",
        r"\[(?:System\.)?IO\.MemoryStream\]",
        r"\[(?:System\.)?Runtime\.InteropServices\.Marshal\]",
        r"\bVirtualAlloc\b",
        r"\bAppDomain\]",
    ),
    "hidden-window": (
        r"-W(?:indow(?:Style)?)?\s+(?:Hidden|1)\b",
    ),
    "destructive-file": (
        r"\bRemove-Item\b[^;|\r\n]*\s-r(?:ecurse)?\b",
        r"\b(?:rm|ri|rmdir|rd|del|erase)\b[^;|\r\n]*\s-r(?:ecurse)?\b",
        r"\b(?:rmdir|rd|del|erase)\s+/[sq]\b",
        r"\b(?:Format-Volume|Clear-Disk|Initialize-Disk|Remove-Partition)\b",
        r"\bformat(?:\.com)?\s+[a-z]:",
        r"\bcipher(?:\.exe)?\s+/w\b",
        r"\bvssadmin\b[^;|\r\n]*\bdelete\b",
        r"\[(?:System\.)?IO\.(?:File|Directory)\]::(?:Delete|Move|Replace|Write\w*|Append\w*)\b",
    ),
    "nested-interpreter": (
        r"\b(?:powershell|pwsh)\.exe\b",
        r"\b(?:powershell|pwsh)\s+-\w",
        r"\bcmd(?:\.exe)?\b[^;|\r\n]*\s/[ck]\b",
        r"\[(?:System\.)?Diagnostics\.Process(?:StartInfo)?\]",
        r"\b(?:mshta|rundll32|regsvr32|wscript|cscript|msiexec|wmic)(?:\.exe)?\b",
    ),
    "privilege-escalation": (
        r"-Verb\s+RunAs\b",
        r"\bSet-ExecutionPolicy\b",
        r"\b(?:New-LocalUser|Add-LocalGroupMember)\b",
        r"\bnet(?:\.exe)?\s+(?:user|localgroup)\b[^;|\r\n]*\s/add\b",
    ),
    "system-power": (
        r"\b(?:Stop|Restart)-Computer\b",
        r"\bshutdown(?:\.exe)?\s+[/-]",
    ),
}

# Read-only, side-effect-free pipeline tails (filter, project, sort, group,
# count, format/convert).
SAFE_PIPELINE_VERBS: tuple[str, ...] = (
    "Where-Object", "Select-Object", "Sort-Object", "Group-Object",
    "Measure-Object", "Select-String", "Format-Table", "Format-List",
    "Out-String", "ConvertTo-Json", "ConvertTo-Csv",
)


@dataclass(frozen=True)
class PolicyCatalog:
    allow_rules: tuple[PolicyRule, ...]
    block_rules: tuple[PolicyRule, ...]
    safe_pipeline_verbs: tuple[str, ...] = SAFE_PIPELINE_VERBS
    version: str = CATALOG_VERSION

    def __post_init__(self) -> None:
        object.__setattr__(self, "allow_rules", tuple(self.allow_rules))
        object.__setattr__(self, "block_rules", tuple(self.block_rules))
        object.__setattr__(self, "safe_pipeline_verbs", tuple(self.safe_pipeline_verbs))
        for rule in self.allow_rules:
            if rule.kind is not RuleKind.ALLOW or not rule.anchored:
                raise ValueError(f"Not an anchored ALLOW rule: {rule.pattern!r}")
        for rule in self.block_rules:
            if rule.kind is not RuleKind.BLOCK:
                raise ValueError(f"Not a BLOCK rule: {rule.pattern!r}")

    def list_allow_rules(self) -> tuple[PolicyRule, ...]:
        return self.allow_rules

    def list_block_rules(self) -> tuple[PolicyRule, ...]:
        return self.block_rules

    def is_safe_pipeline_verb(self, word: str) -> bool:
        lowered = word.lower()
        return any(lowered == verb.lower() for verb in self.safe_pipeline_verbs)

    def covers(self, word: str) -> bool:
        """True when `word` is an allowed command or a safe pipeline verb."""
        if self.is_safe_pipeline_verb(word):
            return True
        return any(rule.names(word) for rule in self.allow_rules)

    def with_allow_rules(self, rules: Iterable[PolicyRule]) -> "PolicyCatalog":
        """Return a new catalog with extra ALLOW rules; BLOCK rules are kept as-is."""
        return PolicyCatalog(
            allow_rules=self.allow_rules + tuple(rules),
            block_rules=self.block_rules,
            safe_pipeline_verbs=self.safe_pipeline_verbs,
            version=self.version,
        )


def _build_default() -> PolicyCatalog:
    allow = [
        PolicyRule.allow(verb, category)
        for category, verbs in _ALLOW_TABLE.items()
        for verb in verbs
    ]
    block = [
        PolicyRule.block(pattern, category)
        for category, patterns in _BLOCK_TABLE.items()
        for pattern in patterns
    ]
    return PolicyCatalog(allow_rules=tuple(allow), block_rules=tuple(block))


DEFAULT_CATALOG = _build_default()


def load_catalog(config: Any = None) -> PolicyCatalog:
    """
    Build the process-wide catalog. Call once at startup.

    `[policy] extra_allow` may list additional verb-noun commands
    (comma separated). They are added as ALLOW rules only.
    """
    catalog = DEFAULT_CATALOG
    if config is None:
        return catalog

    raw = config.get("policy", "extra_allow", fallback="")
    extra: list[PolicyRule] = []
    for name in (n.strip() for n in raw.split(",")):
        if not name:
            continue
        if not _VERB_NAME_RE.match(name):
            raise ValueError(f"extra_allow entry is not a Verb-Noun command name: {name!r}")
        extra.append(PolicyRule.allow(name, "site-local"))

    if extra:
        catalog = catalog.with_allow_rules(extra)
        logger.info(f"Policy catalog {catalog.version}: {len(extra)} site-local allow rule(s) added")
    return catalog
