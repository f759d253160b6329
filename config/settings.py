"""
Configuration loader for the album review service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./album_reviews.db"         # postgresql:// | mysql:// | sqlite://
    store_backend: str = "sql"                         # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    review_queue: str = "reviewQueue"
    dead_letter_queue: str = ""         # defaults to "<review_queue>.dlq"
    consumer_group: str = "review-consumers"
    consumer_name: str = ""             # random per process when empty
    max_attempts: int = 5               # 0 = requeue forever
    retry_backoff_base: float = 1.0     # seconds, doubled per attempt
    retry_backoff_max: float = 60.0
    delayed_promote_interval: float = 1.0
    publish_timeout_seconds: float = 5.0
    persist_timeout_seconds: float = 30.0
    block_ms: int = 2000
    claim_idle_ms: int = 60000          # reclaim deliveries left pending by dead consumers
    embedded_consumer: bool = True      # run a consumer inside the API process

    @property
    def dlq_name(self) -> str:
        return self.dead_letter_queue or f"{self.review_queue}.dlq"


@dataclass
class Settings:
    app_name: str = "AlbumReviews"
    debug: bool = False
    port: int = 8080
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "REVIEWS_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))
        settings.port = int(raw.get("port", settings.port))

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "queue" in raw:
            q = raw["queue"]
            defaults = QueueConfig()
            settings.queue = QueueConfig(
                backend=q.get("backend", defaults.backend),
                redis_url=q.get("redis_url", defaults.redis_url),
                review_queue=q.get("review_queue", defaults.review_queue),
                dead_letter_queue=q.get("dead_letter_queue", defaults.dead_letter_queue),
                consumer_group=q.get("consumer_group", defaults.consumer_group),
                consumer_name=q.get("consumer_name", defaults.consumer_name),
                max_attempts=int(q.get("max_attempts", defaults.max_attempts)),
                retry_backoff_base=float(q.get("retry_backoff_base", defaults.retry_backoff_base)),
                retry_backoff_max=float(q.get("retry_backoff_max", defaults.retry_backoff_max)),
                delayed_promote_interval=float(
                    q.get("delayed_promote_interval", defaults.delayed_promote_interval)
                ),
                publish_timeout_seconds=float(
                    q.get("publish_timeout_seconds", defaults.publish_timeout_seconds)
                ),
                persist_timeout_seconds=float(
                    q.get("persist_timeout_seconds", defaults.persist_timeout_seconds)
                ),
                block_ms=int(q.get("block_ms", defaults.block_ms)),
                claim_idle_ms=int(q.get("claim_idle_ms", defaults.claim_idle_ms)),
                embedded_consumer=_as_bool(q.get("embedded_consumer", defaults.embedded_consumer)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
