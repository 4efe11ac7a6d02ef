"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration for lodestar. Reads from .env automatically."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # LLM API keys (only required for the providers you actually use)
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    ollama_base_url: str = "http://localhost:11434"

    # Model identifiers, prefix determines the provider:
    #   "ollama:<model>"      → local Ollama  (e.g. "ollama:llama3.1:70b")
    #   "claude-*" / "claude" → Anthropic API
    #   anything else         → OpenAI API    (e.g. "gpt-4o", "gpt-4o-mini")
    stage_model: str = "gpt-4o-mini"
    supervisor_model: str = "gpt-4o-mini"
    stage_temperature: float = 0.7

    # ── Pipeline ──────────────────────────────────────────────────────
    # Anything shown to a human is capped at this many words.
    stage_word_cap: int = 250

    # "all"    → every stage waits for a human decision
    # "none"   → no stage waits
    # "subset" → only the stages listed in APPROVAL_STAGES wait
    approval_mode: str = "all"
    approval_stages: str = ""

    health_interval_seconds: float = 10.0
    repository_poll_interval_seconds: float = 60.0

    @property
    def approval_stage_names(self) -> list[str]:
        if not self.approval_stages:
            return []
        return [s.strip() for s in self.approval_stages.split(",") if s.strip()]

    # ── Repository analysis ───────────────────────────────────────────
    # Every session gets its own working copy below this directory.  It must
    # never sit inside the application's own source tree.
    repositories_root: str = "~/.lodestar/repositories"

    @field_validator("repositories_root")
    @classmethod
    def _resolve_repositories_root(cls, value: str) -> str:
        if value:
            return str(Path(value).expanduser().resolve())
        return value

    # Optional YAML file with default repository settings (see
    # infra.provisioner.load_repository_defaults for the schema).
    repository_defaults_path: str = ""

    repo_url: str = ""
    target_branch: str = "main"
    repo_username: str = ""
    repo_token: str = ""

    max_concurrent_sessions: int = 10
    cleanup_delay_seconds: float = 5.0
    context_radius: int = 5
    scanner_timeout_seconds: int = 60
    git_timeout_seconds: int = 300

    # ── Web transport ─────────────────────────────────────────────────
    web_host: str = "127.0.0.1"
    web_port: int = 8420
    # Every request must carry "Authorization: Bearer <token>"; when this is
    # set, the token must equal it.
    api_token: str = ""

    # ── Input feed ────────────────────────────────────────────────────
    feed_api_base: str = "https://www.googleapis.com/youtube/v3"
    feed_timeout_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_file: str = "logs/lodestar.log"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Singleton accessor."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
