"""Context windows and categorisation for scan findings."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping

from pydantic import BaseModel, Field

from lodestar.core.logging import get_logger
from lodestar.repository.git import FileChange
from lodestar.repository.issues import CATEGORIES, SEVERITIES, ChangeInfo, ContextLine, Issue

logger = get_logger("repository.context")

DEFAULT_RADIUS = 5


class IssueBreakdown(BaseModel):
    by_severity: dict[str, int] = Field(default_factory=lambda: {s: 0 for s in SEVERITIES})
    by_category: dict[str, int] = Field(default_factory=lambda: {c: 0 for c in CATEGORIES})
    total: int = 0


def order_issues(issues: Iterable[Issue]) -> list[Issue]:
    """File-then-line order.  Stable, so severity never reorders a report."""
    return sorted(issues, key=lambda i: (i.file, i.line))


def context_window(lines: list[str], line_no: int, radius: int = DEFAULT_RADIUS) -> tuple[ContextLine, ...]:
    """Up to *radius* lines either side of 1-based *line_no*."""
    if line_no < 1 or not lines:
        return ()
    start = max(1, line_no - radius)
    end = min(len(lines), line_no + radius)
    return tuple(
        ContextLine(line_number=n, content=lines[n - 1], is_issue_line=(n == line_no))
        for n in range(start, end + 1)
    )


def build_context(
    issues: Iterable[Issue],
    root: Path,
    file_changes: Mapping[str, FileChange] | None = None,
    radius: int = DEFAULT_RADIUS,
) -> list[Issue]:
    """Return new issues carrying their context window and diff metadata.

    The input issues are left untouched; the result is in file-then-line
    order.
    """
    changes = file_changes or {}
    cache: dict[str, list[str] | None] = {}
    enriched: list[Issue] = []

    for issue in order_issues(issues):
        if issue.file not in cache:
            cache[issue.file] = _read_lines(root / issue.file)
        lines = cache[issue.file]

        update: dict = {}
        if lines is not None:
            update["context_lines"] = context_window(lines, issue.line, radius)
            if not issue.code_snippet and 1 <= issue.line <= len(lines):
                update["code_snippet"] = lines[issue.line - 1].strip()[:200]
        change = changes.get(issue.file)
        if change is not None:
            update["change_info"] = ChangeInfo(
                insertions=change.insertions,
                deletions=change.deletions,
                changes=change.changes,
            )
        enriched.append(issue.model_copy(update=update) if update else issue)

    return enriched


def categorize(issues: Iterable[Issue]) -> IssueBreakdown:
    breakdown = IssueBreakdown()
    for issue in issues:
        breakdown.by_severity[issue.severity] = breakdown.by_severity.get(issue.severity, 0) + 1
        breakdown.by_category[issue.category] = breakdown.by_category.get(issue.category, 0) + 1
        breakdown.total += 1
    return breakdown


def _read_lines(path: Path) -> list[str] | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as exc:
        logger.debug("Cannot read %s for context: %s", path, exc)
        return None
