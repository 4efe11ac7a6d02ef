"""Tests for RepositoryMonitor against a real local 'origin' repository."""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from unittest.mock import AsyncMock

import pytest

from infra.provisioner import RepositoryDefaults, SessionRepoProvisioner
from lodestar.core.config import Settings
from lodestar.core.events import EventBus, EventCategory
from lodestar.core.orchestrator import WorkflowOrchestrator
from lodestar.core.state import WorkflowOptions
from lodestar.repository.monitor import (
    ChangeSet,
    MonitorState,
    RepositoryConnectionError,
    RepositoryMonitor,
    RepositoryReport,
)

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


def _git(cwd, *args):
    subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@test", *args],
        cwd=str(cwd), capture_output=True, check=True,
    )


@pytest.fixture
def origin(tmp_path):
    seed = tmp_path / "seed"
    seed.mkdir()
    _git(seed, "init")
    _git(seed, "checkout", "-b", "main")
    (seed / "README.md").write_text("# Project\n")
    (seed / "app.py").write_text("def main():\n    return 1\n")
    _git(seed, "add", "-A")
    _git(seed, "commit", "-m", "initial")
    bare = tmp_path / "origin.git"
    _git(tmp_path, "clone", "--bare", str(seed), str(bare))
    _git(seed, "remote", "add", "origin", str(bare))
    return bare, seed


async def _wait_pending(orch, sid: str, stage: str) -> None:
    for _ in range(1000):
        if orch.gate.is_pending(sid, stage):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{stage} never became pending")


def _push(seed, files: dict[str, str], message: str) -> None:
    for name, content in files.items():
        (seed / name).write_text(content)
    _git(seed, "add", "-A")
    _git(seed, "commit", "-m", message)
    _git(seed, "push", "origin", "main")


@pytest.fixture
def provisioner(tmp_path):
    app = tmp_path / "app"
    app.mkdir()
    defaults = RepositoryDefaults(repositories_root=str(tmp_path / "repos"), cleanup_delay_seconds=60)
    return SessionRepoProvisioner(defaults, app_root=app)


@pytest.fixture
def monitor(provisioner):
    return RepositoryMonitor("sess-1", provisioner, Settings(_env_file=None), scanners=[])


class TestConnect:
    @pytest.mark.asyncio
    async def test_clone_into_session_directory(self, monitor, provisioner, origin):
        bare, _ = origin
        config = await monitor.connect({"repo_url": str(bare)})
        assert monitor.state is MonitorState.IDLE
        assert config.repo_path == str(provisioner.get_repo_path("sess-1"))
        assert (provisioner.get_repo_path("sess-1") / "app.py").exists()

    @pytest.mark.asyncio
    async def test_missing_url(self, monitor):
        with pytest.raises(RepositoryConnectionError):
            await monitor.connect()
        assert monitor.connected is False

    @pytest.mark.asyncio
    async def test_bad_url(self, monitor, tmp_path):
        with pytest.raises(RepositoryConnectionError):
            await monitor.connect({"repo_url": str(tmp_path / "nowhere.git")})
        assert monitor.state is MonitorState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_refreshes_existing_copy(self, monitor, origin):
        bare, seed = origin
        await monitor.connect({"repo_url": str(bare)})
        await monitor.check_for_changes()
        _push(seed, {"extra.py": "x = 1\n"}, "extra")

        await monitor.connect({"repo_url": str(bare)})
        assert (monitor.repo_path / "extra.py").exists()
        change_set = await monitor.check_for_changes()
        assert change_set.is_first_run is True

    @pytest.mark.asyncio
    async def test_check_before_connect(self, monitor):
        with pytest.raises(RepositoryConnectionError):
            await monitor.check_for_changes()


class TestChangeDetection:
    @pytest.mark.asyncio
    async def test_first_run_reports_everything(self, monitor, origin):
        bare, _ = origin
        await monitor.connect({"repo_url": str(bare)})
        change_set = await monitor.check_for_changes()
        assert change_set.has_changes is True
        assert change_set.is_first_run is True
        assert sorted(change_set.changed_files) == ["README.md", "app.py"]
        assert [c.message for c in change_set.commits] == ["initial"]

    @pytest.mark.asyncio
    async def test_second_run_without_commits_reports_nothing(self, monitor, origin):
        bare, _ = origin
        await monitor.connect({"repo_url": str(bare)})
        await monitor.check_for_changes()
        change_set = await monitor.check_for_changes()
        assert change_set.has_changes is False
        assert change_set.is_first_run is False

    @pytest.mark.asyncio
    async def test_incremental_run_reports_new_commit(self, monitor, provisioner, origin):
        bare, seed = origin
        await monitor.connect({"repo_url": str(bare)})
        await monitor.check_for_changes()

        _push(seed, {"config.js": "const a = 1;\n"}, "add config")
        change_set = await monitor.check_for_changes()

        assert change_set.has_changes is True
        assert change_set.changed_files == ["config.js"]
        assert [c.message for c in change_set.commits] == ["add config"]
        assert change_set.file_changes["config.js"].insertions == 1
        assert (monitor.repo_path / "config.js").exists()
        assert provisioner.get_config("sess-1").last_scan_commit == change_set.commit_range.split("..")[1]

    @pytest.mark.asyncio
    async def test_forced_first_run(self, monitor, origin):
        bare, _ = origin
        await monitor.connect({"repo_url": str(bare)})
        await monitor.check_for_changes()
        change_set = await monitor.check_for_changes(is_first_run=True)
        assert change_set.has_changes is True
        assert change_set.is_first_run is True


class TestAnalysis:
    @pytest.mark.asyncio
    async def test_new_password_reported_with_context(self, monitor, origin):
        bare, seed = origin
        await monitor.connect({"repo_url": str(bare)})
        await monitor.check_for_changes()
        _push(seed, {"config.js": "// settings\nconst password = \"hunter2\";\nexport default {};\n"}, "creds")

        report = await monitor.collect()

        assert isinstance(report, RepositoryReport)
        assert monitor.state is MonitorState.IDLE
        assert len(report.issues) == 1
        issue = report.issues[0]
        assert (issue.file, issue.line, issue.severity, issue.category) == ("config.js", 2, "high", "security")
        assert [c.line_number for c in issue.context_lines] == [1, 2, 3]
        assert issue.change_info is not None and issue.change_info.insertions == 3
        assert report.breakdown.by_severity["high"] == 1

        payload = report.to_payload()
        assert payload["analysisType"] == "incremental"
        assert payload["changedFiles"] == ["config.js"]
        assert payload["issues"][0]["fileChanges"] == 3
        assert "> 2:" in payload["issues"][0]["context"]
        assert payload["omittedIssues"] == 0

    @pytest.mark.asyncio
    async def test_collect_returns_none_when_unchanged(self, monitor, origin):
        bare, _ = origin
        await monitor.connect({"repo_url": str(bare)})
        await monitor.collect()
        assert await monitor.collect() is None

    @pytest.mark.asyncio
    async def test_scan_skips_binary_missing_and_escaping_paths(self, monitor, origin):
        bare, _ = origin
        await monitor.connect({"repo_url": str(bare)})
        root = monitor.repo_path
        (root / "blob.bin").write_bytes(b"password = 'x'\x00\x01")
        (root / "ok.py").write_text("password = 'x'\n")

        issues = await monitor.scan(["blob.bin", "ok.py", "gone.py", "../../etc/passwd"])

        assert [i.file for i in issues] == ["ok.py"]


class TestCleanup:
    @pytest.mark.asyncio
    async def test_cleanup_forgets_config(self, monitor, provisioner, origin):
        bare, _ = origin
        await monitor.connect({"repo_url": str(bare)})
        monitor.cleanup()
        assert monitor.state is MonitorState.DISCONNECTED
        assert provisioner.has_valid_config("sess-1") is False
        assert provisioner.get_repo_path("sess-1") in provisioner.pending_cleanups


class TestChangeSetSummary:
    def test_summary(self):
        cs = ChangeSet(has_changes=True, changed_files=[f"f{i}" for i in range(30)],
                       commit_range="a..b")
        summary = cs.summary()
        assert summary["analysisType"] == "incremental"
        assert summary["fileCount"] == 30
        assert len(summary["files"]) == 20


class TestPollDuringReview:
    """The poll loop and the pipeline share one working copy."""

    @pytest.mark.asyncio
    async def test_commits_pushed_while_baseline_is_in_review_are_analysed(self, provisioner, origin):
        bare, seed = origin
        bus = EventBus()
        generate = AsyncMock(return_value="reviewed")
        orch = WorkflowOrchestrator(
            settings=Settings(_env_file=None, health_interval_seconds=3600),
            events=bus,
            generate=generate,
            supervisor_generate=AsyncMock(return_value="All stages nominal"),
            provisioner=provisioner,
            monitor_factory=lambda sid: RepositoryMonitor(sid, provisioner, Settings(_env_file=None),
                                                          scanners=[]),
        )
        options = WorkflowOptions(stages=["explanation"], repository_enabled=True, approval_mode="all",
                                  repository={"repo_url": str(bare)})
        run = asyncio.create_task(orch.run_workflow({}, options, session_id="s1"))
        await _wait_pending(orch, "s1", "repositoryAnalysis")

        _push(seed, {"config.py": 'password = "hunter2"\n'}, "add config")
        assert await orch.poll_repository_once("s1") is None
        assert bus.events(EventCategory.REPOSITORY_CHANGES_DETECTED) == []

        orch.gate.resolve("s1", "repositoryAnalysis")
        await _wait_pending(orch, "s1", "explanation")
        poll = asyncio.create_task(orch.poll_repository_once("s1"))
        await _wait_pending(orch, "s1", "repositoryAnalysis")

        detected = bus.events(EventCategory.REPOSITORY_CHANGES_DETECTED)
        assert len(detected) == 1
        assert detected[0].data["changeSummary"]["files"] == ["config.py"]
        payload = generate.await_args_list[-1].args[1]
        assert payload["analysisType"] == "incremental"
        assert [(i["file"], i["severity"]) for i in payload["issues"]] == [("config.py", "high")]

        orch.gate.resolve("s1", "repositoryAnalysis")
        assert (await asyncio.wait_for(poll, timeout=10)).stage_name == "repositoryAnalysis"
        orch.gate.resolve("s1", "explanation")
        outcome = await asyncio.wait_for(run, timeout=10)
        assert [r.stage_name for r in outcome.history] == [
            "repositoryAnalysis", "explanation", "repositoryAnalysis", "summary",
        ]
