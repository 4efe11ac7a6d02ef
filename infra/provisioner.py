"""Per-session repository provisioning.

Each session that enables repository analysis gets its own working copy::

    ~/.lodestar/repositories/          ← REPOSITORIES_ROOT
      session-3f2a.../                 ← one directory per session
      session-9c1b.../

:class:`SessionRepoProvisioner` owns the session → config map.  It derives
every working-copy path itself (callers never supply one), refuses any path
that would land inside the application's own source tree, caps the number of
provisioned sessions (evicting the oldest), and deletes directories on a
delay so a scan that just finished is never racing its own cleanup.

Default settings come from the environment and may be overridden by a YAML
file (``REPOSITORY_DEFAULTS_PATH``)::

    default_settings:
      repo_url: https://github.com/org/project
      target_branch: main
      scan_interval: 60
    repos_directory: ~/.lodestar/repositories
    cleanup_delay: 5
    max_concurrent_sessions: 10
"""

from __future__ import annotations

import hashlib
import re
import shutil
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from lodestar.core.config import Settings
from lodestar.core.logging import get_logger
from lodestar.core.state import utcnow

logger = get_logger("infra.provisioner")

# Directory holding the ``lodestar`` and ``infra`` packages.
APP_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_REPOSITORY_ID = "default"

_SETTABLE_FIELDS = {"repo_url", "target_branch", "username", "token"}
_FIELD_ALIASES = {"repoUrl": "repo_url", "targetBranch": "target_branch", "branch": "target_branch"}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RepositorySafetyViolation(Exception):
    """A repository path would escape the repositories root or touch the app's own tree."""


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


class RepositoryDefaults(BaseModel):
    repo_url: str = ""
    target_branch: str = "main"
    username: str = ""
    token: str = ""
    scan_interval_seconds: float = 60.0
    repositories_root: str = "~/.lodestar/repositories"
    cleanup_delay_seconds: float = 5.0
    max_concurrent_sessions: int = 10


class RepoSessionConfig(BaseModel):
    session_id: str
    repo_url: str = ""
    target_branch: str = "main"
    username: str = ""
    token: str = ""
    repo_path: str
    created_at: datetime = Field(default_factory=utcnow)
    last_modified: datetime = Field(default_factory=utcnow)
    last_scan_commit: str | None = None
    last_scan_at: datetime | None = None

    def masked(self) -> dict[str, Any]:
        """Serialisable view with the token hidden."""
        data = self.model_dump(mode="json")
        if data.get("token"):
            data["token"] = "********"
        return data


def load_repository_defaults(settings: Settings) -> RepositoryDefaults:
    """Build defaults from settings, overlaid with the YAML file if one is configured."""
    defaults = RepositoryDefaults(
        repo_url=settings.repo_url,
        target_branch=settings.target_branch,
        username=settings.repo_username,
        token=settings.repo_token,
        scan_interval_seconds=settings.repository_poll_interval_seconds,
        repositories_root=settings.repositories_root,
        cleanup_delay_seconds=settings.cleanup_delay_seconds,
        max_concurrent_sessions=settings.max_concurrent_sessions,
    )
    if not settings.repository_defaults_path:
        return defaults

    path = Path(settings.repository_defaults_path).expanduser()
    if not path.exists():
        logger.warning("Repository defaults file %s not found, using environment settings", path)
        return defaults

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    update: dict[str, Any] = {}
    section = raw.get("default_settings") or {}
    for key in ("repo_url", "target_branch", "username", "token"):
        if section.get(key):
            update[key] = str(section[key])
    if section.get("scan_interval"):
        update["scan_interval_seconds"] = float(section["scan_interval"])
    if raw.get("repos_directory"):
        update["repositories_root"] = str(raw["repos_directory"])
    if raw.get("cleanup_delay") is not None:
        update["cleanup_delay_seconds"] = float(raw["cleanup_delay"])
    if raw.get("max_concurrent_sessions"):
        update["max_concurrent_sessions"] = int(raw["max_concurrent_sessions"])

    logger.info("Loaded repository defaults from %s", path)
    return defaults.model_copy(update=update)


def sanitize_session_id(session_id: str) -> str:
    """Turn any session id into a safe, deterministic directory-name fragment.

    Anything outside ``[A-Za-z0-9_-]`` is replaced; when that changed the id,
    a short hash of the original is appended so distinct ids stay distinct.
    """
    cleaned = re.sub(r"[^A-Za-z0-9_-]", "_", session_id or "")[:64].strip("_-")
    if cleaned == session_id and cleaned:
        return cleaned
    digest = hashlib.sha256((session_id or "").encode("utf-8")).hexdigest()[:12]
    return f"{cleaned}-{digest}" if cleaned else digest


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------


class SessionRepoProvisioner:
    """Maps session ids to isolated working-copy directories and configs.

    Raises:
        RepositorySafetyViolation: at construction, if the repositories root
            overlaps the application's own source tree.
    """

    def __init__(self, defaults: RepositoryDefaults, app_root: Path = APP_ROOT) -> None:
        self.defaults = defaults
        self._app_root = app_root.resolve()
        self._root = Path(defaults.repositories_root).expanduser().resolve()
        self._check_root(self._root)
        self._lock = threading.Lock()
        self._configs: dict[str, RepoSessionConfig] = {}
        self._timers: dict[Path, threading.Timer] = {}

    @property
    def root(self) -> Path:
        return self._root

    @property
    def scan_interval(self) -> float:
        return self.defaults.scan_interval_seconds

    # ── Path safety ───────────────────────────────────────────────────

    def _check_root(self, root: Path) -> None:
        if root == self._app_root or self._app_root in root.parents:
            raise RepositorySafetyViolation(
                f"Repositories root {root} is inside the application directory {self._app_root}"
            )
        if root in self._app_root.parents:
            raise RepositorySafetyViolation(
                f"Repositories root {root} contains the application directory {self._app_root}"
            )

    def ensure_safe(self, path: Path) -> Path:
        """Resolve *path* and verify it is a strict child of the repositories root.

        Raises:
            RepositorySafetyViolation: if it is not, or if it overlaps the
                application's own tree.
        """
        resolved = path.expanduser().resolve()
        self._check_root(resolved)
        if self._root not in resolved.parents:
            raise RepositorySafetyViolation(
                f"Repository path {resolved} is outside the repositories root {self._root}"
            )
        return resolved

    def get_repo_path(self, session_id: str) -> Path:
        return self.ensure_safe(self._root / f"session-{sanitize_session_id(session_id)}")

    # ── Config map ────────────────────────────────────────────────────

    def get_config(self, session_id: str | None) -> RepoSessionConfig:
        """The session's config, or a credential-free copy of the defaults.

        The defaults copy always belongs to the ``default`` repository id, so
        an unknown *session_id* never gets a path of its own from here.
        """
        with self._lock:
            existing = self._configs.get(session_id) if session_id else None
            if existing is not None:
                return existing.model_copy()
        return RepoSessionConfig(
            session_id=DEFAULT_REPOSITORY_ID,
            repo_url=self.defaults.repo_url,
            target_branch=self.defaults.target_branch,
            repo_path=str(self.get_repo_path(DEFAULT_REPOSITORY_ID)),
        )

    def set_config(self, session_id: str, overrides: dict[str, Any] | None = None) -> RepoSessionConfig:
        """Merge *overrides* onto the session's config (or the defaults) and store it.

        ``repo_path`` is always recomputed from *session_id*.  Admitting a new
        session beyond ``max_concurrent_sessions`` evicts the oldest one.
        A removal still pending for the same directory is cancelled.
        """
        update = self._normalise_overrides(overrides or {})
        path = self.get_repo_path(session_id)
        repo_path = str(path)
        evicted: RepoSessionConfig | None = None

        with self._lock:
            # The directory is about to be reused; a removal scheduled by an
            # earlier clear_config must not delete the new working copy.
            stale_removal = self._timers.pop(path, None)
            existing = self._configs.get(session_id)
            if existing is None:
                if len(self._configs) >= self.defaults.max_concurrent_sessions:
                    oldest = min(self._configs.values(), key=lambda c: c.created_at)
                    evicted = self._configs.pop(oldest.session_id)
                base = RepoSessionConfig(
                    session_id=session_id,
                    repo_url=self.defaults.repo_url,
                    target_branch=self.defaults.target_branch,
                    username=self.defaults.username,
                    token=self.defaults.token,
                    repo_path=repo_path,
                )
            else:
                base = existing
            config = base.model_copy(update={**update, "repo_path": repo_path, "last_modified": utcnow()})
            self._configs[session_id] = config

        if stale_removal is not None:
            stale_removal.cancel()
            logger.info("Cancelled pending removal of %s; session %s is back", path, session_id)
        if evicted is not None:
            logger.warning(
                "Session capacity (%d) reached; evicting oldest session %s",
                self.defaults.max_concurrent_sessions, evicted.session_id,
            )
            self._schedule_removal(Path(evicted.repo_path))
        return config.model_copy()

    def clear_config(self, session_id: str) -> bool:
        """Drop the session's config now and delete its directory after a delay."""
        with self._lock:
            config = self._configs.pop(session_id, None)
        path = Path(config.repo_path) if config else self.get_repo_path(session_id)
        self._schedule_removal(path)
        return config is not None

    def has_valid_config(self, session_id: str) -> bool:
        with self._lock:
            config = self._configs.get(session_id)
            return config is not None and bool(config.repo_url.strip())

    def update_last_scan(self, session_id: str, commit: str) -> None:
        with self._lock:
            config = self._configs.get(session_id)
            if config is None:
                return
            now = utcnow()
            self._configs[session_id] = config.model_copy(
                update={"last_scan_commit": commit, "last_scan_at": now, "last_modified": now}
            )

    def all_sessions(self) -> list[dict[str, Any]]:
        with self._lock:
            return [c.masked() for c in self._configs.values()]

    def detached(self) -> "SessionRepoProvisioner":
        """A provisioner over the same root with an empty config map.

        Sessions admitted to it never count against, or evict, this one's.
        """
        return SessionRepoProvisioner(self.defaults, app_root=self._app_root)

    # ── Deferred deletion ─────────────────────────────────────────────

    @property
    def pending_cleanups(self) -> list[Path]:
        with self._lock:
            return list(self._timers)

    def _schedule_removal(self, path: Path) -> None:
        target = self.ensure_safe(path)
        timer = threading.Timer(self.defaults.cleanup_delay_seconds, self._remove, args=(target,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(target, None)
            self._timers[target] = timer
        if previous is not None:
            previous.cancel()
        timer.start()
        logger.info("Scheduled removal of %s in %.1fs", target, self.defaults.cleanup_delay_seconds)

    def _remove(self, path: Path) -> None:
        with self._lock:
            self._timers.pop(path, None)
            in_use = any(Path(c.repo_path) == path for c in self._configs.values())
        if in_use:
            logger.info("Not removing %s: a live session uses it again", path)
            return
        try:
            self.ensure_safe(path)
            if path.exists():
                shutil.rmtree(path)
                logger.info("Removed repository directory %s", path)
        except (OSError, RepositorySafetyViolation) as exc:
            logger.error("Failed to remove repository directory %s: %s", path, exc)

    def flush_cleanups(self) -> None:
        """Run every scheduled deletion now (shutdown)."""
        with self._lock:
            pending = list(self._timers.items())
            self._timers.clear()
        for path, timer in pending:
            timer.cancel()
            self._remove(path)

    @staticmethod
    def _normalise_overrides(overrides: dict[str, Any]) -> dict[str, Any]:
        update: dict[str, Any] = {}
        for key, value in overrides.items():
            name = _FIELD_ALIASES.get(key, key)
            if name not in _SETTABLE_FIELDS:
                if name in ("repo_path", "repoPath"):
                    logger.warning("Ignoring caller-supplied repository path")
                continue
            if value is None:
                continue
            update[name] = str(value).strip()
        return update
