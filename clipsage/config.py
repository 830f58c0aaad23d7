"""Environment-driven settings for ClipSage."""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Runtime settings. Defaults match a local Ollama setup."""

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".clipsage")

    # Monitor
    poll_interval: float = 0.5
    queue_size: int = 256
    max_content_chars: int = 100_000
    capture_initial: bool = True

    # Pipeline
    dedup_window: int = 1
    summary_timeout: float = 5.0
    tag_timeout: float = 5.0
    embed_timeout: float = 5.0

    # Query
    query_embed_timeout: float = 0.2
    page_size: int = 50
    min_similarity: float = 0.55
    query_cache_ttl: int = 600

    # Capabilities
    embedding_model: Optional[str] = "ollama/nomic-embed-text"
    embedding_dim: int = 768
    chat_model: Optional[str] = None
    api_base: Optional[str] = None
    auto_detect: bool = True

    # Cache
    cache_url: Optional[str] = None

    # Retention
    retention_days: Optional[float] = None
    max_clips: Optional[int] = None
    retention_every: int = 100

    # Store maintenance
    compact_every: int = 100
    compact_cleanup_after: float = 300.0

    shutdown_grace: float = 5.0
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "lancedb"


_ENV_FIELDS = {
    "CLIPSAGE_DATA_DIR": "data_dir",
    "CLIPSAGE_POLL_INTERVAL": "poll_interval",
    "CLIPSAGE_QUEUE_SIZE": "queue_size",
    "CLIPSAGE_MAX_CONTENT_CHARS": "max_content_chars",
    "CLIPSAGE_CAPTURE_INITIAL": "capture_initial",
    "CLIPSAGE_DEDUP_WINDOW": "dedup_window",
    "CLIPSAGE_SUMMARY_TIMEOUT": "summary_timeout",
    "CLIPSAGE_TAG_TIMEOUT": "tag_timeout",
    "CLIPSAGE_EMBED_TIMEOUT": "embed_timeout",
    "CLIPSAGE_QUERY_EMBED_TIMEOUT": "query_embed_timeout",
    "CLIPSAGE_PAGE_SIZE": "page_size",
    "CLIPSAGE_MIN_SIMILARITY": "min_similarity",
    "CLIPSAGE_QUERY_CACHE_TTL": "query_cache_ttl",
    "CLIPSAGE_EMBEDDING_MODEL": "embedding_model",
    "CLIPSAGE_EMBEDDING_DIM": "embedding_dim",
    "CLIPSAGE_CHAT_MODEL": "chat_model",
    "CLIPSAGE_API_BASE": "api_base",
    "CLIPSAGE_AUTO_DETECT": "auto_detect",
    "CLIPSAGE_CACHE_URL": "cache_url",
    "CLIPSAGE_RETENTION_DAYS": "retention_days",
    "CLIPSAGE_MAX_CLIPS": "max_clips",
    "CLIPSAGE_RETENTION_EVERY": "retention_every",
    "CLIPSAGE_COMPACT_EVERY": "compact_every",
    "CLIPSAGE_COMPACT_CLEANUP_AFTER": "compact_cleanup_after",
    "CLIPSAGE_SHUTDOWN_GRACE": "shutdown_grace",
    "CLIPSAGE_LOG_LEVEL": "log_level",
}


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build settings from the environment, reading a .env file first if present."""
    load_dotenv(env_file)

    values = {}
    for env_name, field_name in _ENV_FIELDS.items():
        raw = os.getenv(env_name)
        if raw is None:
            continue
        raw = raw.strip()
        # Empty string switches an optional setting off
        values[field_name] = raw if raw else None

    # pydantic coerces "0.5", "true", "~/x" style strings into the field types
    values = {k: v for k, v in values.items() if v is not None or _is_optional(k)}
    if "data_dir" in values:
        values["data_dir"] = Path(values["data_dir"]).expanduser()
    return Settings(**values)


def _is_optional(field_name: str) -> bool:
    field = Settings.model_fields[field_name]
    return field.default is None or field_name in ("embedding_model",)
