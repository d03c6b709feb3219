from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel


class PollConfig(BaseModel):
    interval_s: float = 10
    max_concurrency: int = 4
    stale_after_failures: int = 6
    rate_limit_backoff_s: float = 30


class ExchangeConfig(BaseModel):
    base_url: str = "https://api.hyperliquid.xyz"
    request_timeout_s: int = 30
    retry_max: int = 2


class TelegramConfig(BaseModel):
    bot_token: Optional[str] = None
    dry_run: bool = False
    request_timeout_s: int = 15
    long_poll_timeout_s: int = 30
    retry_max: int = 3


class StorageConfig(BaseModel):
    db_path: str = "data/hyperliquid_tracker.sqlite"


class RegistryConfig(BaseModel):
    max_wallets_per_user: int = 10


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "bot.log"


class AppConfig(BaseModel):
    poll: PollConfig = PollConfig()
    exchange: ExchangeConfig = ExchangeConfig()
    telegram: TelegramConfig = TelegramConfig()
    storage: StorageConfig = StorageConfig()
    registry: RegistryConfig = RegistryConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: str | Path, environ: Dict[str, str] | None = None) -> AppConfig:
    data: Dict[str, Any] = {}
    config_path = Path(path)
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
            if isinstance(loaded, dict):
                data = loaded
    config = AppConfig(**data)

    env = os.environ if environ is None else environ
    token = env.get("TELEGRAM_BOT_TOKEN")
    if token:
        config.telegram.bot_token = token
    db_path = env.get("TRACKER_DB_PATH")
    if db_path:
        config.storage.db_path = db_path

    if config.poll.interval_s <= 0:
        raise ValueError("poll.interval_s must be positive")
    if config.poll.max_concurrency < 1:
        raise ValueError("poll.max_concurrency must be at least 1")
    return config
