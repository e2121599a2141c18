"""Application settings, read once from the environment (and ``.env``)."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

ENV_PREFIX = "PERPSIM_"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


@dataclass(frozen=True)
class Settings:
    app_name: str = field(default_factory=lambda: _env("APP_NAME", "perpsim"))
    app_host: str = field(default_factory=lambda: _env("APP_HOST", "127.0.0.1"))
    app_port: int = field(default_factory=lambda: int(_env("APP_PORT", "8000")))
    log_level: str = field(default_factory=lambda: _env("LOG_LEVEL", "INFO").upper())
    db_path: Path = field(default_factory=lambda: Path(_env("DB_PATH", "data/perpsim.db")))
    # Empty disables bearer auth for local use.
    api_key: str = field(default_factory=lambda: _env("API_KEY", ""))
    data_dir: Path = field(default_factory=lambda: Path(_env("DATA_DIR", "data")))
    hyperliquid_url: str = field(default_factory=lambda: _env("HYPERLIQUID_URL", "https://api.hyperliquid.xyz"))
    default_symbol: str = field(default_factory=lambda: _env("DEFAULT_SYMBOL", "BTC"))
    default_timeframe: str = field(default_factory=lambda: _env("DEFAULT_TIMEFRAME", "15m"))

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.db_path}"


settings = Settings()
