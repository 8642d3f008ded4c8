"""Runtime settings for FlowDoc, read from the environment."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DATA_DIR = "~/.flowdoc"
DEFAULT_TOOL_TIMEOUT = 60.0
DEFAULT_API_TIMEOUT = 30.0


def _env_log_level(name: str, default: str) -> str:
    level = os.environ.get(name, default).upper()
    if level not in logging.getLevelNamesMapping():
        raise ValueError(f"{name} must be a logging level name, got {level!r}")
    return level


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass
class Settings:
    """Process-wide settings.

    Attributes:
        data_dir: Root directory for the cache database and logs.
        db_path: SQLite file backing the knowledge store.
        log_level: Level name for the flowdoc logger.
        tool_timeout: Seconds a single tool handler may run.
        api_url: Base URL of the automation platform (None disables platform tools).
        api_key: API key sent as X-N8N-API-KEY.
        api_timeout: Seconds for each outbound platform call.
    """

    data_dir: Path = field(default_factory=lambda: Path(os.path.expanduser(DEFAULT_DATA_DIR)))
    db_path: Path | None = None
    log_level: str = "INFO"
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    api_url: str | None = None
    api_key: str = ""
    api_timeout: float = DEFAULT_API_TIMEOUT

    def __post_init__(self):
        if self.db_path is None:
            self.db_path = self.data_dir / "nodes.db"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def platform_configured(self) -> bool:
        return bool(self.api_url)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from FLOWDOC_* and N8N_* environment variables."""
        data_dir = Path(os.path.expanduser(os.environ.get("FLOWDOC_DATA_DIR", DEFAULT_DATA_DIR)))
        db_path = os.environ.get("FLOWDOC_DB_PATH")
        return cls(
            data_dir=data_dir,
            db_path=Path(os.path.expanduser(db_path)) if db_path else None,
            log_level=_env_log_level("FLOWDOC_LOG_LEVEL", "INFO"),
            tool_timeout=_env_float("FLOWDOC_TOOL_TIMEOUT", DEFAULT_TOOL_TIMEOUT),
            api_url=os.environ.get("N8N_API_URL") or None,
            api_key=os.environ.get("N8N_API_KEY", ""),
            api_timeout=_env_float("N8N_API_TIMEOUT", DEFAULT_API_TIMEOUT),
        )
