"""Application configuration."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestrator settings."""

    # Shared coordination directory (status, handoffs, cycle logs)
    shared_dir: Path = Path("shared")

    # Repository and agent workspaces
    project_root: Path = Path(".")
    worktrees_dir: Path = Path(".worktrees")
    agents_file: Path = Path("agents.yaml")

    # Dependency gate
    poll_interval: float = 30.0  # seconds
    poll_backoff: float = 1.5
    max_poll_interval: float = 120.0
    max_dependency_wait: float = 3600.0

    # Cycle execution
    test_timeout: float = 600.0
    execution_timeout: float = 3600.0
    heartbeat_interval: float = 60.0
    stale_after: float = 300.0  # heartbeat age that marks an agent stale
    commit_retry_delay: float = 1.0
    restart_exit_code: int = 75
    executor_command: str = "claude --dangerously-skip-permissions"

    # Final integration
    integration_branch: str = "main"
    integration_summary_path: str = "INTEGRATION_SUMMARY.json"

    # Logging
    log_level: str = "INFO"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CONVERGENCE_",
        case_sensitive=False
    )


# Global settings instance
settings = Settings()
