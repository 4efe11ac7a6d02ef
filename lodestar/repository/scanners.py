"""External static-analysis tools: bandit and ruff (Python), eslint (JS/TS).

Every tool is optional.  A scanner whose executable cannot be found raises
:class:`ScannerToolUnavailable`; any other failure raises
:class:`ScannerError`.  :func:`run_external_scanners` catches both, logs
them, and carries on with the remaining scanners, so a missing tool only
ever shrinks the issue set.
"""

from __future__ import annotations

import importlib.util
import json
import shutil
import subprocess
import sys
from pathlib import Path, PurePosixPath
from typing import Iterable

from lodestar.core.logging import get_logger
from lodestar.repository.issues import Issue, Severity
from lodestar.repository.rules import JS_EXTENSIONS, PY_EXTENSIONS

logger = get_logger("repository.scanners")

_TOOL_TIMEOUT = 60


class ScannerError(Exception):
    """A scanner ran but its run could not be used."""


class ScannerToolUnavailable(ScannerError):
    """The scanner's executable is not installed."""

    def __init__(self, tool: str) -> None:
        super().__init__(f"{tool} is not installed")
        self.tool = tool


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------

class ExternalScanner:
    name: str = ""
    extensions: frozenset[str] = frozenset()

    def __init__(self, timeout: int = _TOOL_TIMEOUT) -> None:
        self.timeout = timeout

    def matches(self, path: str) -> bool:
        return PurePosixPath(path).suffix.lower() in self.extensions

    def command(self, root: Path) -> list[str] | None:
        """Base command for this tool, or ``None`` when it is not installed."""
        return _python_tool(self.name)

    def build_args(self, files: list[str]) -> list[str]:
        raise NotImplementedError

    def parse(self, root: Path, stdout: str) -> list[Issue]:
        raise NotImplementedError

    def scan(self, root: Path, files: list[str]) -> list[Issue]:
        targets = [f for f in files if self.matches(f)]
        if not targets:
            return []

        base = self.command(root)
        if base is None:
            raise ScannerToolUnavailable(self.name)

        try:
            proc = subprocess.run(
                base + self.build_args(targets),
                cwd=root,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise ScannerToolUnavailable(self.name) from exc
        except subprocess.TimeoutExpired as exc:
            raise ScannerError(f"{self.name} timed out after {self.timeout}s") from exc

        # Most linters exit 1 when they report findings; that is expected.
        raw = (proc.stdout or "").strip()
        if not raw:
            if proc.returncode not in (0, 1):
                raise ScannerError(f"{self.name} exited {proc.returncode}: {proc.stderr.strip()[:300]}")
            return []

        try:
            issues = self.parse(root, raw)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise ScannerError(f"Could not parse {self.name} output: {exc}") from exc

        logger.info("%s: %d issues in %d file(s)", self.name, len(issues), len(targets))
        return issues


# ---------------------------------------------------------------------------
# bandit
# ---------------------------------------------------------------------------

class BanditScanner(ExternalScanner):
    name = "bandit"
    extensions = PY_EXTENSIONS

    def build_args(self, files: list[str]) -> list[str]:
        return ["-f", "json", "-q"] + files

    def parse(self, root: Path, stdout: str) -> list[Issue]:
        data = json.loads(stdout)
        issues: list[Issue] = []
        for item in data.get("results", []):
            issues.append(Issue(
                file=_rel(root, item.get("filename", "")),
                line=item.get("line_number", 0),
                severity=_bandit_severity(item.get("issue_severity", "")),
                category="security",
                message=item.get("issue_text", ""),
                tool=self.name,
                rule_id=item.get("test_id", ""),
                code_snippet=(item.get("code") or "").strip()[:200],
            ))
        return issues


def _bandit_severity(value: str) -> Severity:
    value = (value or "").lower()
    if value in ("high", "medium", "low"):
        return value  # type: ignore[return-value]
    return "medium"


# ---------------------------------------------------------------------------
# ruff (security and performance rule families only)
# ---------------------------------------------------------------------------

class RuffScanner(ExternalScanner):
    name = "ruff"
    extensions = PY_EXTENSIONS

    def build_args(self, files: list[str]) -> list[str]:
        return ["check", "--select", "S,PERF", "--output-format=json", "--no-cache", "--exit-zero"] + files

    def parse(self, root: Path, stdout: str) -> list[Issue]:
        issues: list[Issue] = []
        for item in json.loads(stdout):
            if not isinstance(item, dict):
                continue
            code = item.get("code") or ""
            location = item.get("location") or {}
            performance = code.startswith("PERF")
            issues.append(Issue(
                file=_rel(root, item.get("filename", "")),
                line=location.get("row", 0),
                severity="low" if performance else "medium",
                category="environmental" if performance else "security",
                message=item.get("message", ""),
                tool=self.name,
                rule_id=code,
            ))
        return issues


# ---------------------------------------------------------------------------
# eslint
# ---------------------------------------------------------------------------

class EslintScanner(ExternalScanner):
    name = "eslint"
    extensions = JS_EXTENSIONS

    def command(self, root: Path) -> list[str] | None:
        local = root / "node_modules" / ".bin" / "eslint"
        if local.exists():
            return [str(local)]
        found = shutil.which("eslint")
        return [found] if found else None

    def build_args(self, files: list[str]) -> list[str]:
        return ["--format=json", "--no-error-on-unmatched-pattern"] + files

    def parse(self, root: Path, stdout: str) -> list[Issue]:
        issues: list[Issue] = []
        for file_result in json.loads(stdout):
            if not isinstance(file_result, dict):
                continue
            file_path = _rel(root, file_result.get("filePath", ""))
            for msg in file_result.get("messages", []):
                if not isinstance(msg, dict):
                    continue
                sev = msg.get("severity", 1)
                issues.append(Issue(
                    file=file_path,
                    line=msg.get("line", 0),
                    severity="high" if sev == 2 else "medium",
                    category="security",
                    message=msg.get("message", ""),
                    tool=self.name,
                    rule_id=msg.get("ruleId") or "",
                ))
        return issues


DEFAULT_SCANNERS: tuple[type[ExternalScanner], ...] = (BanditScanner, RuffScanner, EslintScanner)


def default_scanners(timeout: int = _TOOL_TIMEOUT) -> list[ExternalScanner]:
    return [cls(timeout=timeout) for cls in DEFAULT_SCANNERS]


def run_external_scanners(root: Path, files: list[str], scanners: Iterable[ExternalScanner]) -> list[Issue]:
    """Run every scanner over *files*, skipping the ones that fail."""
    issues: list[Issue] = []
    for scanner in scanners:
        try:
            issues.extend(scanner.scan(root, files))
        except ScannerToolUnavailable:
            logger.debug("%s not installed, skipping", scanner.name)
        except ScannerError as exc:
            logger.warning("%s failed, skipping: %s", scanner.name, exc)
    return issues


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _python_tool(tool: str) -> list[str] | None:
    """Locate a Python CLI tool: PATH first, then ``python -m <tool>``."""
    found = shutil.which(tool)
    if found:
        return [found]
    if importlib.util.find_spec(tool) is not None:
        return [sys.executable, "-m", tool]
    return None


def _rel(root: Path, path: str) -> str:
    """Return *path* relative to *root* in posix form, or unchanged if not possible."""
    if not path:
        return path
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = root / candidate
    try:
        return candidate.resolve().relative_to(root.resolve()).as_posix()
    except ValueError:
        return path
