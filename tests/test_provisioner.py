"""Tests for SessionRepoProvisioner: path safety, config merging, eviction, deferred cleanup."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from infra.provisioner import (
    RepositoryDefaults,
    RepositorySafetyViolation,
    SessionRepoProvisioner,
    load_repository_defaults,
    sanitize_session_id,
)


@pytest.fixture
def app_root(tmp_path):
    root = tmp_path / "app"
    root.mkdir()
    return root


def _defaults(tmp_path: Path, **overrides) -> RepositoryDefaults:
    values = dict(
        repo_url="https://example.com/org/project.git",
        target_branch="main",
        username="bot",
        token="s3cret",
        repositories_root=str(tmp_path / "repos"),
        cleanup_delay_seconds=0.05,
        max_concurrent_sessions=3,
    )
    values.update(overrides)
    return RepositoryDefaults(**values)


@pytest.fixture
def prov(tmp_path, app_root):
    return SessionRepoProvisioner(_defaults(tmp_path), app_root=app_root)


def _wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestRootValidation:
    def test_root_inside_app_refused(self, tmp_path, app_root):
        with pytest.raises(RepositorySafetyViolation):
            SessionRepoProvisioner(_defaults(tmp_path, repositories_root=str(app_root / "repos")),
                                   app_root=app_root)

    def test_root_equal_to_app_refused(self, tmp_path, app_root):
        with pytest.raises(RepositorySafetyViolation):
            SessionRepoProvisioner(_defaults(tmp_path, repositories_root=str(app_root)), app_root=app_root)

    def test_root_containing_app_refused(self, tmp_path, app_root):
        with pytest.raises(RepositorySafetyViolation):
            SessionRepoProvisioner(_defaults(tmp_path, repositories_root=str(tmp_path)), app_root=app_root)


class TestRepoPath:
    def test_deterministic(self, prov):
        assert prov.get_repo_path("abc") == prov.get_repo_path("abc")

    def test_inside_root(self, prov):
        path = prov.get_repo_path("abc")
        assert prov.root in path.parents

    @pytest.mark.parametrize("session_id", [
        "../../",
        "../../../etc",
        "..",
        "/absolute/path",
        "a/../../b",
        "",
        "..\\..\\windows",
        "app",
    ])
    def test_adversarial_ids_stay_sandboxed(self, prov, app_root, session_id):
        path = prov.get_repo_path(session_id)
        assert prov.root in path.parents
        assert path != app_root
        assert app_root not in path.parents
        assert not str(path).startswith(str(app_root) + "/")

    def test_distinct_ids_do_not_collide(self, prov):
        assert prov.get_repo_path("a/b") != prov.get_repo_path("a_b")

    def test_sanitize_keeps_clean_ids(self):
        assert sanitize_session_id("3f2a9c") == "3f2a9c"

    def test_ensure_safe_rejects_outside_root(self, prov, tmp_path):
        with pytest.raises(RepositorySafetyViolation):
            prov.ensure_safe(tmp_path / "elsewhere")


class TestConfig:
    def test_get_config_defaults_without_credentials(self, prov):
        config = prov.get_config(None)
        assert config.session_id == "default"
        assert config.repo_url == "https://example.com/org/project.git"
        assert config.username == ""
        assert config.token == ""

    def test_unknown_session_gets_the_default_repository(self, prov):
        config = prov.get_config("never-provisioned")
        assert config.session_id == "default"
        assert config.repo_path == str(prov.get_repo_path("default"))
        assert prov.has_valid_config("never-provisioned") is False

    def test_set_config_merges_onto_defaults(self, prov):
        config = prov.set_config("s1", {"repoUrl": "https://example.com/other.git"})
        assert config.repo_url == "https://example.com/other.git"
        assert config.target_branch == "main"
        assert config.token == "s3cret"
        assert prov.has_valid_config("s1") is True

    def test_repo_path_never_user_settable(self, prov):
        config = prov.set_config("s1", {"repo_path": "/tmp/evil", "repoPath": "/tmp/evil"})
        assert config.repo_path == str(prov.get_repo_path("s1"))

    def test_set_config_merges_onto_existing(self, prov):
        prov.set_config("s1", {"target_branch": "develop"})
        config = prov.set_config("s1", {"username": "someone"})
        assert config.target_branch == "develop"
        assert config.username == "someone"

    def test_update_last_scan(self, prov):
        prov.set_config("s1")
        prov.update_last_scan("s1", "abc123")
        config = prov.get_config("s1")
        assert config.last_scan_commit == "abc123"
        assert config.last_scan_at is not None

    def test_all_sessions_masks_tokens(self, prov):
        prov.set_config("s1")
        sessions = prov.all_sessions()
        assert sessions[0]["token"] == "********"

    def test_has_valid_config_requires_url(self, tmp_path, app_root):
        prov = SessionRepoProvisioner(_defaults(tmp_path, repo_url=""), app_root=app_root)
        prov.set_config("s1")
        assert prov.has_valid_config("s1") is False


class TestCapacity:
    def test_oldest_session_evicted(self, prov):
        prov._schedule_removal = MagicMock()
        for sid in ("s1", "s2", "s3"):
            prov.set_config(sid)
            time.sleep(0.001)

        config = prov.set_config("s4")

        remaining = {c["session_id"] for c in prov.all_sessions()}
        assert remaining == {"s2", "s3", "s4"}
        assert config.session_id == "s4"
        prov._schedule_removal.assert_called_once_with(prov.get_repo_path("s1"))

    def test_updating_existing_session_does_not_evict(self, prov):
        prov._schedule_removal = MagicMock()
        for sid in ("s1", "s2", "s3"):
            prov.set_config(sid)
        prov.set_config("s2", {"target_branch": "dev"})
        assert len(prov.all_sessions()) == 3
        prov._schedule_removal.assert_not_called()

    def test_detached_provisioner_leaves_sessions_alone(self, prov):
        prov._schedule_removal = MagicMock()
        for sid in ("s1", "s2", "s3"):
            prov.set_config(sid)

        scratch = prov.detached()
        scratch.set_config("scratch")

        assert scratch.root == prov.root
        assert {c["session_id"] for c in prov.all_sessions()} == {"s1", "s2", "s3"}
        assert [c["session_id"] for c in scratch.all_sessions()] == ["scratch"]
        prov._schedule_removal.assert_not_called()


class TestCleanup:
    def test_clear_config_removes_entry_now_and_directory_later(self, prov):
        prov.set_config("s1")
        path = prov.get_repo_path("s1")
        path.mkdir(parents=True)
        (path / "file.txt").write_text("x")

        assert prov.clear_config("s1") is True
        assert prov.has_valid_config("s1") is False
        assert path.exists()
        assert _wait_until(lambda: not path.exists())

    def test_reprovisioned_session_keeps_its_new_directory(self, tmp_path, app_root):
        prov = SessionRepoProvisioner(_defaults(tmp_path, cleanup_delay_seconds=0.3), app_root=app_root)
        prov.set_config("s1")
        path = prov.get_repo_path("s1")
        path.mkdir(parents=True)
        prov.clear_config("s1")
        assert prov.pending_cleanups == [path]

        prov.set_config("s1")
        (path / "fresh.txt").write_text("new working copy")

        assert prov.pending_cleanups == []
        time.sleep(prov.defaults.cleanup_delay_seconds + 0.2)
        assert (path / "fresh.txt").exists()

    def test_removal_skips_directory_of_live_session(self, prov):
        prov.set_config("s1")
        path = prov.get_repo_path("s1")
        path.mkdir(parents=True)
        prov._remove(path)
        assert path.exists()

    def test_clear_unknown_session_returns_false(self, prov):
        assert prov.clear_config("ghost") is False

    def test_flush_cleanups_removes_immediately(self, tmp_path, app_root):
        prov = SessionRepoProvisioner(_defaults(tmp_path, cleanup_delay_seconds=60), app_root=app_root)
        prov.set_config("s1")
        path = prov.get_repo_path("s1")
        path.mkdir(parents=True)
        prov.clear_config("s1")
        assert prov.pending_cleanups == [path]

        prov.flush_cleanups()
        assert not path.exists()
        assert prov.pending_cleanups == []

    def test_removal_failure_is_logged_not_raised(self, prov):
        path = prov.get_repo_path("s1")
        path.mkdir(parents=True)
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("infra.provisioner.shutil.rmtree", MagicMock(side_effect=OSError("busy")))
            prov._remove(path)
        assert path.exists()


class TestLoadDefaults:
    def _settings(self, **kw):
        settings = MagicMock()
        settings.repo_url = "https://example.com/env.git"
        settings.target_branch = "main"
        settings.repo_username = ""
        settings.repo_token = ""
        settings.repository_poll_interval_seconds = 60.0
        settings.repositories_root = "/tmp/lodestar-repos"
        settings.cleanup_delay_seconds = 5.0
        settings.max_concurrent_sessions = 10
        settings.repository_defaults_path = ""
        for key, value in kw.items():
            setattr(settings, key, value)
        return settings

    def test_env_only(self):
        defaults = load_repository_defaults(self._settings())
        assert defaults.repo_url == "https://example.com/env.git"
        assert defaults.max_concurrent_sessions == 10

    def test_yaml_overlay(self, tmp_path):
        yaml_file = tmp_path / "repos.yaml"
        yaml_file.write_text(
            "default_settings:\n"
            "  repo_url: https://example.com/yaml.git\n"
            "  target_branch: develop\n"
            "  scan_interval: 30\n"
            "repos_directory: /tmp/yaml-repos\n"
            "cleanup_delay: 1\n"
            "max_concurrent_sessions: 4\n"
        )
        defaults = load_repository_defaults(self._settings(repository_defaults_path=str(yaml_file)))
        assert defaults.repo_url == "https://example.com/yaml.git"
        assert defaults.target_branch == "develop"
        assert defaults.scan_interval_seconds == 30.0
        assert defaults.repositories_root == "/tmp/yaml-repos"
        assert defaults.cleanup_delay_seconds == 1.0
        assert defaults.max_concurrent_sessions == 4

    def test_missing_yaml_falls_back(self, tmp_path):
        defaults = load_repository_defaults(self._settings(repository_defaults_path=str(tmp_path / "none.yaml")))
        assert defaults.repo_url == "https://example.com/env.git"

    def test_invalid_yaml_raises(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("default_settings: [unclosed\n")
        with pytest.raises(ValueError):
            load_repository_defaults(self._settings(repository_defaults_path=str(bad)))
