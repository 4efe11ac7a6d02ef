"""Scan findings.  Issues are frozen: a scan produces new ones, never edits old ones."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

Severity = Literal["high", "medium", "low"]
Category = Literal["security", "environmental", "inclusivity", "ethical"]

SEVERITIES: tuple[Severity, ...] = ("high", "medium", "low")
CATEGORIES: tuple[Category, ...] = ("security", "environmental", "inclusivity", "ethical")


class ContextLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    line_number: int
    content: str
    is_issue_line: bool = False


class ChangeInfo(BaseModel):
    """Diff metadata of the file an issue was found in."""
    model_config = ConfigDict(frozen=True)

    insertions: int = 0
    deletions: int = 0
    changes: int = 0


class Issue(BaseModel):
    """A single finding from one scanning strategy."""
    model_config = ConfigDict(frozen=True)

    file: str
    line: int = 0
    severity: Severity = "medium"
    category: Category = "security"
    message: str
    tool: str                       # "pattern-scan" | "bandit" | "ruff" | "eslint"
    rule_id: str = ""
    code_snippet: str = ""
    context_lines: tuple[ContextLine, ...] = ()
    change_info: ChangeInfo | None = None

    def one_line(self) -> str:
        rule = f" [{self.rule_id}]" if self.rule_id else ""
        return f"[{self.severity.upper()}/{self.category}]{rule} {self.file}:{self.line} {self.message} ({self.tool})"
