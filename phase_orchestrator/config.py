"""
Configuration management for the phase orchestrator.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Phase Orchestrator")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # API (read-only status panel)
    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=8000)

    # Storage
    state_dir: Path = Field(
        default=Path(".orchestrator"),
        description="Directory holding the default database and trace folders.",
    )
    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL. Defaults to a SQLite file inside state_dir.",
    )
    work_dir: Path = Field(
        default=Path("."),
        description="Repository checkout the agents and gates operate on.",
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console", description="console or json")

    # Handoff
    secret_key: str = Field(
        default="change-me",
        description="HMAC key used to sign handoff certificates.",
    )

    # Controller
    cancel_policy: str = Field(
        default="retry",
        description="What a cancelled advance records: 'retry' or 'fail'.",
    )
    agent_timeout_seconds: int = Field(default=1800)
    gate_timeout_seconds: int = Field(default=900)

    # Issue intake
    backlog_path: Path = Field(default=Path("docs/issues/backlog.yaml"))
    spec_dir: Path = Field(default=Path("docs/specs"))

    # Quality gate commands (empty string = gate not registered)
    gate_typecheck_command: str = Field(default="npm run type-check")
    gate_lint_command: str = Field(default="npm run lint")
    gate_accessibility_command: str = Field(default="")
    gate_build_command: str = Field(default="npm run build")

    # Agent commands (empty string = step skipped)
    tests_command: str = Field(default="")
    impl_command: str = Field(default="")
    diff_command: str = Field(default="git diff HEAD")
    qa_command: str = Field(default="npm test")
    security_command: str = Field(default="npm audit --audit-level=high")
    pr_command: str = Field(default="gh pr create --fill")
    branch_command: str = Field(default="git rev-parse --abbrev-ref HEAD")
    merge_command: str = Field(default="gh pr merge {pr_url} --squash --delete-branch")
    head_command: str = Field(default="git rev-parse HEAD")

    def resolved_database_url(self) -> str:
        """Database URL, falling back to a SQLite file in state_dir."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{(self.state_dir / 'orchestrator.db').resolve()}"

    def trace_root_uri(self) -> str:
        """Base URI for per-workflow trace folders."""
        return (self.state_dir / "traces").resolve().as_uri()


@lru_cache()
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
