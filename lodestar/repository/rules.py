"""Built-in pattern rules: a declarative table of (pattern, severity, category, message).

Rules are data.  ``RULES`` is the default table; a rule applies to a file
when its ``extensions`` set is empty (all files) or contains the file's
suffix.  :func:`scan_text` matches every applicable rule against every line
and yields one :class:`Issue` per (line, rule) hit.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterable

from lodestar.repository.issues import Category, Issue, Severity

TOOL_NAME = "pattern-scan"

JS_EXTENSIONS = frozenset({".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"})
PY_EXTENSIONS = frozenset({".py"})
SOURCE_EXTENSIONS = JS_EXTENSIONS | PY_EXTENSIONS

# Lines longer than this are skipped (minified bundles, data blobs).
MAX_LINE_LENGTH = 2000


@dataclass(frozen=True)
class PatternRule:
    rule_id: str
    pattern: re.Pattern[str]
    severity: Severity
    category: Category
    message: str
    extensions: frozenset[str] = frozenset()

    def applies_to(self, path: str) -> bool:
        if not self.extensions:
            return True
        return PurePosixPath(path).suffix.lower() in self.extensions


def _rule(rule_id: str, pattern: str, severity: Severity, category: Category, message: str,
          extensions: frozenset[str] = frozenset(), flags: int = re.IGNORECASE) -> PatternRule:
    return PatternRule(rule_id, re.compile(pattern, flags), severity, category, message, extensions)


RULES: tuple[PatternRule, ...] = (
    # ── Security, every file ─────────────────────────────────────────
    _rule("SEC001", r"""password\s*=\s*['"][^'"]+['"]""", "high", "security", "Hardcoded password detected"),
    _rule("SEC002", r"""api[_-]?key\s*=\s*['"][^'"]+['"]""", "high", "security", "Hardcoded API key detected"),
    _rule("SEC003", r"""secret\s*=\s*['"][^'"]+['"]""", "high", "security", "Hardcoded secret detected"),
    _rule("SEC004", r"""\btoken\s*=\s*['"][^'"]+['"]""", "high", "security", "Hardcoded token detected"),
    _rule("SEC005", r"\bexec\s*\(", "medium", "security", "Dynamic code or command execution"),
    _rule("SEC006", r"\beval\s*\(", "medium", "security", "Use of eval"),
    _rule("SEC007", r"\b(?:TODO|FIXME|XXX|BUG)\b", "low", "security", "Unresolved code annotation",
          flags=0),

    # ── Security, language specific ──────────────────────────────────
    _rule("JS001", r"\.innerHTML\s*=", "medium", "security",
          "Possible XSS: assignment to innerHTML", JS_EXTENSIONS),
    _rule("JS002", r"document\.write\s*\(", "medium", "security",
          "Possible XSS: document.write", JS_EXTENSIONS),
    _rule("PY001", r"\bpickle\.loads?\s*\(", "medium", "security",
          "Unsafe deserialisation with pickle", PY_EXTENSIONS),
    _rule("PY002", r"\.system\s*\(", "medium", "security",
          "Possible command injection through a system call", PY_EXTENSIONS),
    _rule("PY003", r"subprocess\.\w+\(.*shell\s*=\s*True", "medium", "security",
          "Subprocess call with shell=True", PY_EXTENSIONS),

    # ── Environmental: resource and performance waste ────────────────
    _rule("ENV001", r"\bwhile\s*\(?\s*(?:true|1)\s*\)?\s*:?\s*\{?\s*$", "low", "environmental",
          "Unbounded loop; make sure it blocks or sleeps", SOURCE_EXTENSIONS),
    _rule("ENV002", r"\bsetInterval\s*\([^,]+,\s*\d{1,2}\s*\)", "medium", "environmental",
          "Polling interval under 100 ms", JS_EXTENSIONS),
    _rule("ENV003", r"\btime\.sleep\s*\(\s*0(?:\.0+)?\s*\)", "medium", "environmental",
          "Busy wait with sleep(0)", PY_EXTENSIONS),
    _rule("ENV004", r"\bSELECT\s+\*\s+FROM\b", "low", "environmental",
          "SELECT * fetches every column", SOURCE_EXTENSIONS),
    _rule("ENV005", r"\.readlines\s*\(\s*\)", "low", "environmental",
          "readlines() loads the whole file into memory", PY_EXTENSIONS),

    # ── Inclusivity: non-inclusive terminology ───────────────────────
    _rule("INC001", r"\b(?:master|slave)s?\b", "low", "inclusivity",
          "Non-inclusive term; consider primary/replica or main", SOURCE_EXTENSIONS),
    _rule("INC002", r"\b(?:white|black)list(?:ed|s)?\b", "low", "inclusivity",
          "Non-inclusive term; consider allowlist/denylist", SOURCE_EXTENSIONS),
    _rule("INC003", r"\b(?:sanity[ _-]?check|dummy)\b", "low", "inclusivity",
          "Ableist term; consider 'confidence check' or 'placeholder'", SOURCE_EXTENSIONS),

    # ── Ethical: privacy and user tracking ───────────────────────────
    _rule("ETH001", r"\b(?:log|logger\.\w+|print|console\.log)\s*\(.*\b(?:password|ssn|credit[_ ]?card)\b",
          "high", "ethical", "Sensitive personal data written to logs", SOURCE_EXTENSIONS),
    _rule("ETH002", r"\b(?:fingerprint(?:js)?|navigator\.geolocation|getCurrentPosition)\b", "medium", "ethical",
          "User tracking or location access; confirm consent is collected", SOURCE_EXTENSIONS),
    _rule("ETH003", r"\b(?:ssn|social_security|date_of_birth|passport_number)\b", "medium", "ethical",
          "Handling of sensitive personal identifiers", SOURCE_EXTENSIONS),
)


def rules_for(path: str, rules: Iterable[PatternRule] = RULES) -> list[PatternRule]:
    return [r for r in rules if r.applies_to(path)]


def scan_text(path: str, text: str, rules: Iterable[PatternRule] = RULES) -> list[Issue]:
    """Match the applicable *rules* against every line of *text*."""
    applicable = rules_for(path, rules)
    if not applicable:
        return []

    issues: list[Issue] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        if len(line) > MAX_LINE_LENGTH:
            continue
        for rule in applicable:
            if rule.pattern.search(line):
                issues.append(Issue(
                    file=path,
                    line=line_no,
                    severity=rule.severity,
                    category=rule.category,
                    message=rule.message,
                    tool=TOOL_NAME,
                    rule_id=rule.rule_id,
                    code_snippet=line.strip()[:200],
                ))
    return issues
