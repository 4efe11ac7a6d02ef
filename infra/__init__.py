"""Lodestar infrastructure layer: per-session repository provisioning.

Every working copy a session clones lives under one repositories root and is
handed out by :class:`~infra.provisioner.SessionRepoProvisioner`.

Quick start::

    from infra.provisioner import SessionRepoProvisioner, load_repository_defaults

    provisioner = SessionRepoProvisioner(load_repository_defaults(get_settings()))
    config = provisioner.set_config("3f2a...", {"repo_url": "https://github.com/org/project"})
    config.repo_path   # ~/.lodestar/repositories/session-3f2a...
"""

from infra.provisioner import (
    RepoSessionConfig,
    RepositoryDefaults,
    RepositorySafetyViolation,
    SessionRepoProvisioner,
    load_repository_defaults,
    sanitize_session_id,
)

__all__ = [
    "RepoSessionConfig",
    "RepositoryDefaults",
    "RepositorySafetyViolation",
    "SessionRepoProvisioner",
    "load_repository_defaults",
    "sanitize_session_id",
]
