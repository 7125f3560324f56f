"""Application configuration with environment variable support."""

import json
import logging
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import TypeAdapter
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.repository import RepositoryConfig

logger = logging.getLogger(__name__)

BackendName = Literal["claude", "gemini", "codex", "cursor", "opencode"]


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    Priority: ENV > .env.local > .env > defaults
    .env.local is gitignored for local overrides
    """

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Service configuration
    PROJECT_NAME: str = "Edge Orchestrator"
    STATE_DIR: str = str(Path.home() / ".edge-orchestrator" / "state")
    REPOSITORIES_FILE: Optional[str] = None
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Session retention
    SESSION_RETENTION_HOURS: int = 24
    CLEANUP_INTERVAL_SECONDS: int = 3600
    SNAPSHOT_INTERVAL_SECONDS: int = 60

    # Agent backends
    DEFAULT_BACKEND: BackendName = "claude"
    PERMISSION_MODE: Literal[
        "acceptEdits", "bypassPermissions", "default", "plan"
    ] = "bypassPermissions"
    CLAUDE_PATH: str = "claude"
    GEMINI_PATH: str = "gemini"
    CODEX_PATH: str = "codex"
    CURSOR_PATH: str = "cursor-agent"
    OPENCODE_URL: str = "http://127.0.0.1:4096"
    BACKEND_STARTUP_TIMEOUT: float = 30.0
    DEFAULT_ALLOWED_TOOLS: List[str] = ["Read", "Write", "Edit", "Bash", "Glob", "Grep"]

    @property
    def retention_ms(self) -> int:
        return self.SESSION_RETENTION_HOURS * 60 * 60 * 1000

    @property
    def state_db_path(self) -> Path:
        return Path(self.STATE_DIR) / "edge-worker-state.db"


def load_repositories(path: str | Path) -> List[RepositoryConfig]:
    """
    Load repository configuration from a JSON file.

    Accepts either a bare list of repositories or an object with a
    ``repositories`` key. Inactive repositories are skipped.
    """
    raw = json.loads(Path(path).read_text())
    items = raw.get("repositories", []) if isinstance(raw, dict) else raw

    repositories = TypeAdapter(List[RepositoryConfig]).validate_python(items)
    active = [repo for repo in repositories if repo.is_active]

    skipped = len(repositories) - len(active)
    if skipped:
        logger.info(f"Skipped {skipped} inactive repository config(s) from {path}")
    logger.info(f"Loaded {len(active)} repository config(s) from {path}")
    return active


# Global settings instance
settings = Settings()
