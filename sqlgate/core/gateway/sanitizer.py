import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Tuple

# -----------------------------------------------------------------------------
# SANITIZER MODULE - Command text classification
# Purpose: Decide whether free command text may reach a stored procedure,
# returning Allowed or Blocked with the reasons that fired
# Why: Pattern based defence in depth in front of the database, not a SQL parser.
# Pure and deterministic: no logging, no I/O, no state
# -----------------------------------------------------------------------------

MAX_COMMAND_LENGTH = 10000
MAX_VALUE_LENGTH = 8000


class ToolAccess(str, Enum):
    READ_ONLY = "read_only"
    READ_WRITE = "read_write"


@dataclass(frozen=True)
class SanitizerPolicy:
    access: ToolAccess = ToolAccess.READ_ONLY
    max_length: int = MAX_COMMAND_LENGTH


READ_ONLY_POLICY = SanitizerPolicy(ToolAccess.READ_ONLY)
READ_WRITE_POLICY = SanitizerPolicy(ToolAccess.READ_WRITE)


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    reasons: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def blocked(self) -> bool:
        return not self.allowed


# ===== Detection set =====

DML_VERBS = frozenset({"INSERT", "UPDATE", "DELETE", "MERGE"})
DDL_VERBS = frozenset({"CREATE", "ALTER", "DROP", "TRUNCATE"})
PRIVILEGE_VERBS = frozenset({"GRANT", "REVOKE", "DENY"})
ADMIN_VERBS = frozenset(
    {"BACKUP", "RESTORE", "DBCC", "SHUTDOWN", "RECONFIGURE", "BULK", "KILL", "WAITFOR"}
)
DYNAMIC_EXECUTION = frozenset(
    {"EXEC", "EXECUTE", "SP_EXECUTESQL", "OPENROWSET", "OPENQUERY", "OPENDATASOURCE"}
)

# Allow tab, LF, CR
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_ZERO_WIDTH = re.compile(r"[\u200B-\u200D\u2060\uFEFF]")

# A terminator is only dangerous when something follows it
_STATEMENT_TERMINATOR = re.compile(r";\s*\S")
_COMMENT_TOKEN = re.compile(r"--|/\*|\*/")
_NUMERIC_TAUTOLOGY = re.compile(r"\bOR\s+\d+\s*=\s*\d+", re.IGNORECASE)
_STRING_TAUTOLOGY = re.compile(r"\bOR\s+'([^']*)'\s*=\s*'\1'", re.IGNORECASE)
_SYSTEM_PROCEDURE = re.compile(r"(?<![\w@#$])(?:xp|sp)_\w+", re.IGNORECASE)

# Whole words only: UpdatedAt or drop_date never match
_WORD = re.compile(r"(?<![\w@#$])[A-Za-z_]+(?![\w$])")


def normalize_command_text(text: str) -> str:
    """NFKC fold (fullwidth ； becomes ;) and drop zero-width characters."""
    normalized = unicodedata.normalize("NFKC", text)
    return _ZERO_WIDTH.sub("", normalized)


def _dedupe(items: List[str]) -> Tuple[str, ...]:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return tuple(seen)


def classify(text: Any, policy: SanitizerPolicy = READ_ONLY_POLICY) -> Verdict:
    """
    Classify command text against a tool policy.

    Args:
        text: Free command text supplied by the caller.
        policy: Read-only tools reject DML and DDL; write tools reject DDL,
            privilege and administrative statements but allow DML.

    Returns:
        Verdict(allowed=True) or Verdict(allowed=False, reasons=(...)).

    Example:
        classify("SELECT * FROM Users; DROP TABLE Users", READ_ONLY_POLICY)
        -> Verdict(allowed=False, reasons=("statement_terminator", "forbidden_verb:DROP"))
    """
    if not isinstance(text, str):
        return Verdict(False, ("not_text",))

    scan = normalize_command_text(text)
    if not scan.strip():
        return Verdict(False, ("empty",))

    reasons: List[str] = []

    if len(text) > policy.max_length:
        reasons.append("too_long")
    if _CONTROL_CHARS.search(scan):
        reasons.append("control_character")

    # ===== Structural patterns =====
    if _STATEMENT_TERMINATOR.search(scan):
        reasons.append("statement_terminator")
    if _COMMENT_TOKEN.search(scan):
        reasons.append("comment_token")
    if _NUMERIC_TAUTOLOGY.search(scan) or _STRING_TAUTOLOGY.search(scan):
        reasons.append("tautology")
    if _SYSTEM_PROCEDURE.search(scan):
        reasons.append("system_procedure")

    # ===== Keywords =====
    # Literals are scanned too: an unparsed literal is ambiguous, so fail closed
    for word in _WORD.findall(scan):
        upper = word.upper()
        if upper in DYNAMIC_EXECUTION:
            reasons.append("dynamic_execution")
        elif upper in DDL_VERBS or upper in PRIVILEGE_VERBS or upper in ADMIN_VERBS:
            reasons.append(f"forbidden_verb:{upper}")
        elif upper in DML_VERBS and policy.access == ToolAccess.READ_ONLY:
            reasons.append(f"forbidden_verb:{upper}")

    if scan.count("'") % 2:
        reasons.append("unbalanced_quote")

    if reasons:
        return Verdict(False, _dedupe(reasons))
    return Verdict(True)


def check_value(value: Any, max_length: int = MAX_VALUE_LENGTH) -> Verdict:
    """
    Checks for ordinary (non command) string parameters.

    Null bytes and oversize values are blocked. Injection looking content is
    only reported as a warning because plain values are always bound as
    parameters and never concatenated into SQL.
    """
    if not isinstance(value, str):
        return Verdict(True)

    reasons: List[str] = []
    warnings: List[str] = []
    if "\x00" in value:
        reasons.append("null_byte")
    if len(value) > max_length:
        reasons.append("too_long")

    scan = normalize_command_text(value)
    if _STATEMENT_TERMINATOR.search(scan):
        warnings.append("statement_terminator")
    if _COMMENT_TOKEN.search(scan):
        warnings.append("comment_token")
    if _NUMERIC_TAUTOLOGY.search(scan) or _STRING_TAUTOLOGY.search(scan):
        warnings.append("tautology")

    return Verdict(not reasons, tuple(reasons), tuple(warnings))
