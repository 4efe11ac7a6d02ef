"""Repository monitor: keeps one session's working copy current and scans it.

Lifecycle::

    DISCONNECTED ──connect()──▶ CONNECTED ──▶ IDLE ⇄ SCANNING

The first :meth:`RepositoryMonitor.check_for_changes` after connecting is a
*baseline*: every tracked file is reported as changed, so pre-existing
issues surface on a freshly connected repository.  Later calls are
*incremental* and only report the commit range fetched since the last check.

All git and scanner work is blocking and runs in a worker thread via
``asyncio.to_thread``; the working copy is touched by nothing else.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable

from pydantic import BaseModel, Field

from infra.provisioner import RepoSessionConfig, SessionRepoProvisioner
from lodestar.core.config import Settings
from lodestar.core.logging import get_logger
from lodestar.core.state import utcnow
from lodestar.repository.context import IssueBreakdown, build_context, categorize, order_issues
from lodestar.repository.git import CommitInfo, FileChange, GitClient, GitError, authenticated_url, mask_url
from lodestar.repository.issues import Issue
from lodestar.repository.rules import RULES, PatternRule, scan_text
from lodestar.repository.scanners import ExternalScanner, default_scanners, run_external_scanners

logger = get_logger("repository.monitor")

GitFactory = Callable[[Path, int], GitClient]

# Caps on what a report hands to the model.
_PAYLOAD_COMMITS = 20
_PAYLOAD_FILES = 50
_PAYLOAD_ISSUES = 50
_BINARY_SNIFF_BYTES = 8192


class RepositoryConnectionError(Exception):
    """Clone, fetch or checkout failed.  The poll loop retries on its next tick."""


class MonitorState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    IDLE = "idle"
    SCANNING = "scanning"


class ChangeSet(BaseModel):
    has_changes: bool
    commits: list[CommitInfo] = Field(default_factory=list)
    changed_files: list[str] = Field(default_factory=list)
    commit_range: str = ""
    file_changes: dict[str, FileChange] = Field(default_factory=dict)
    is_first_run: bool = False

    def summary(self) -> dict[str, Any]:
        """Compact description for the ``repositoryChangesDetected`` event."""
        return {
            "analysisType": "baseline" if self.is_first_run else "incremental",
            "commitRange": self.commit_range,
            "commitCount": len(self.commits),
            "fileCount": len(self.changed_files),
            "files": self.changed_files[:20],
        }


class RepositoryReport(BaseModel):
    """Everything one analysis produced, ready to hand to the repository stage."""

    session_id: str
    repo_url: str
    branch: str
    change_set: ChangeSet
    issues: list[Issue] = Field(default_factory=list)
    breakdown: IssueBreakdown = Field(default_factory=IssueBreakdown)
    generated_at: str = Field(default_factory=lambda: utcnow().isoformat())

    def to_payload(self) -> dict[str, Any]:
        cs = self.change_set
        return {
            "repository": self.repo_url,
            "branch": self.branch,
            "analysisType": "baseline" if cs.is_first_run else "incremental",
            "commitRange": cs.commit_range,
            "commits": [
                {"sha": c.sha[:8], "author": c.author, "date": c.date, "message": c.message}
                for c in cs.commits[:_PAYLOAD_COMMITS]
            ],
            "changedFiles": cs.changed_files[:_PAYLOAD_FILES],
            "changedFileCount": len(cs.changed_files),
            "issueSummary": self.breakdown.model_dump(),
            "issues": [_issue_payload(i) for i in self.issues[:_PAYLOAD_ISSUES]],
            "omittedIssues": max(0, len(self.issues) - _PAYLOAD_ISSUES),
        }


def _issue_payload(issue: Issue) -> dict[str, Any]:
    context = "\n".join(
        f"{'>' if cl.is_issue_line else ' '} {cl.line_number}: {cl.content}"
        for cl in issue.context_lines
    )
    entry: dict[str, Any] = {
        "file": issue.file,
        "line": issue.line,
        "severity": issue.severity,
        "category": issue.category,
        "message": issue.message,
        "tool": issue.tool,
        "context": context or issue.code_snippet,
    }
    if issue.change_info is not None:
        entry["fileChanges"] = issue.change_info.changes
    return entry


class RepositoryMonitor:
    """Connects, diffs and scans the working copy owned by one session."""

    def __init__(
        self,
        session_id: str,
        provisioner: SessionRepoProvisioner,
        settings: Settings,
        scanners: Iterable[ExternalScanner] | None = None,
        rules: Iterable[PatternRule] = RULES,
        git_factory: GitFactory | None = None,
    ) -> None:
        self.session_id = session_id
        self.provisioner = provisioner
        self.settings = settings
        self.scanners = list(scanners) if scanners is not None else default_scanners(settings.scanner_timeout_seconds)
        self.rules = tuple(rules)
        self._git_factory: GitFactory = git_factory or (lambda path, timeout: GitClient(path, timeout))
        self.state = MonitorState.DISCONNECTED
        self._git: GitClient | None = None
        self._config: RepoSessionConfig | None = None
        self._last_commit: str | None = None
        self._baseline_done = False

    @property
    def connected(self) -> bool:
        return self.state is not MonitorState.DISCONNECTED

    @property
    def config(self) -> RepoSessionConfig | None:
        return self._config

    @property
    def repo_path(self) -> Path | None:
        return Path(self._config.repo_path) if self._config else None

    # ── Connection ────────────────────────────────────────────────────

    async def connect(self, overrides: dict[str, Any] | None = None) -> RepoSessionConfig:
        """Clone or refresh the session's working copy.

        Raises:
            RepositorySafetyViolation: the derived path is unsafe (never caught here).
            RepositoryConnectionError: no URL configured, or git failed.
        """
        config = self.provisioner.set_config(self.session_id, overrides)
        if not config.repo_url.strip():
            raise RepositoryConnectionError("No repository URL configured")

        path = self.provisioner.ensure_safe(Path(config.repo_path))
        await asyncio.to_thread(self._connect_sync, config, path)

        self._config = config
        self._last_commit = None
        self._baseline_done = False
        self.state = MonitorState.IDLE
        logger.info("Session %s connected to %s (%s)", self.session_id, mask_url(config.repo_url), config.target_branch)
        return config

    def _connect_sync(self, config: RepoSessionConfig, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)
        git = self._git_factory(path, self.settings.git_timeout_seconds)
        url = authenticated_url(config.repo_url, config.username, config.token)
        branch = config.target_branch

        try:
            if git.is_repository():
                git.set_remote_url(url)
                git.discard_local_changes()
                git.fetch()
                git.checkout(branch)
                git.pull(branch)
            else:
                if any(path.iterdir()):
                    raise RepositoryConnectionError(f"{path} exists and is not a git repository")
                git.clone(url, branch)
        except GitError as exc:
            self.state = MonitorState.DISCONNECTED
            raise RepositoryConnectionError(str(exc)) from exc

        self._git = git
        self.state = MonitorState.CONNECTED

    def _require_git(self) -> GitClient:
        if self._git is None or self._config is None:
            raise RepositoryConnectionError("Repository monitor is not connected")
        return self._git

    # ── Change detection ──────────────────────────────────────────────

    async def check_for_changes(self, is_first_run: bool | None = None) -> ChangeSet:
        """Fetch and diff against the last checked commit.

        A first run always reports ``has_changes=True`` with the full tracked
        file set, even when the remote has nothing new.
        """
        git = self._require_git()
        first = (not self._baseline_done) if is_first_run is None else is_first_run
        change_set = await asyncio.to_thread(self._check_sync, git, first)
        self._baseline_done = True
        return change_set

    def _check_sync(self, git: GitClient, first: bool) -> ChangeSet:
        assert self._config is not None
        branch = self._config.target_branch
        try:
            git.fetch()
            local = git.rev_parse("HEAD")
            remote = git.rev_parse(f"origin/{branch}")

            if first:
                if local != remote:
                    git.checkout(branch)
                files = git.tracked_files()
                change_set = ChangeSet(
                    has_changes=True,
                    commits=git.log(remote, limit=10),
                    changed_files=files,
                    commit_range=remote,
                    is_first_run=True,
                )
            else:
                base = self._last_commit or local
                if base == remote:
                    return ChangeSet(has_changes=False, commit_range=f"{base}..{remote}")
                commit_range = f"{base}..{remote}"
                commits = git.log(commit_range)
                file_changes = {fc.path: fc for fc in git.diff_numstat(commit_range)}
                git.checkout(branch)
                change_set = ChangeSet(
                    has_changes=bool(commits or file_changes),
                    commits=commits,
                    changed_files=sorted(file_changes),
                    commit_range=commit_range,
                    file_changes=file_changes,
                )
        except GitError as exc:
            raise RepositoryConnectionError(str(exc)) from exc

        self._last_commit = remote
        self.provisioner.update_last_scan(self.session_id, remote)
        logger.info(
            "Session %s: %s check, %d commit(s), %d file(s)",
            self.session_id, "baseline" if first else "incremental",
            len(change_set.commits), len(change_set.changed_files),
        )
        return change_set

    # ── Scanning ──────────────────────────────────────────────────────

    async def scan(self, changed_files: list[str]) -> list[Issue]:
        """Pattern rules plus every available external tool, in file-then-line order."""
        root = self.repo_path
        if root is None:
            raise RepositoryConnectionError("Repository monitor is not connected")
        self.state = MonitorState.SCANNING
        try:
            return await asyncio.to_thread(self._scan_sync, root, changed_files)
        finally:
            self.state = MonitorState.IDLE

    def _scan_sync(self, root: Path, changed_files: list[str]) -> list[Issue]:
        resolved_root = root.resolve()
        present: list[str] = []
        issues: list[Issue] = []

        for rel in changed_files:
            path = (root / rel).resolve()
            if resolved_root not in path.parents:
                logger.warning("Skipping %s: outside the working copy", rel)
                continue
            if not path.is_file():
                continue  # deleted in this range
            text = _read_text(path)
            if text is None:
                continue
            present.append(rel)
            issues.extend(scan_text(rel, text, self.rules))

        if present:
            issues.extend(run_external_scanners(root, present, self.scanners))
        return order_issues(issues)

    def build_context(self, issues: list[Issue], change_set: ChangeSet | None = None) -> list[Issue]:
        root = self.repo_path
        if root is None:
            return order_issues(issues)
        changes = change_set.file_changes if change_set else None
        return build_context(issues, root, changes, radius=self.settings.context_radius)

    async def analyze(self, change_set: ChangeSet) -> RepositoryReport:
        assert self._config is not None
        issues = await self.scan(change_set.changed_files)
        issues = self.build_context(issues, change_set)
        return RepositoryReport(
            session_id=self.session_id,
            repo_url=mask_url(self._config.repo_url),
            branch=self._config.target_branch,
            change_set=change_set,
            issues=issues,
            breakdown=categorize(issues),
        )

    async def collect(self, is_first_run: bool | None = None) -> RepositoryReport | None:
        """Check for changes and analyse them; ``None`` when nothing changed."""
        change_set = await self.check_for_changes(is_first_run)
        if not change_set.has_changes:
            return None
        return await self.analyze(change_set)

    def cleanup(self) -> None:
        """Forget the session's config and schedule its directory for removal."""
        self.provisioner.clear_config(self.session_id)
        self._git = None
        self._config = None
        self.state = MonitorState.DISCONNECTED


def _read_text(path: Path) -> str | None:
    try:
        with path.open("rb") as fh:
            if b"\x00" in fh.read(_BINARY_SNIFF_BYTES):
                return None
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.debug("Cannot read %s: %s", path, exc)
        return None
