from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

DEFAULT_POSTGRES_PORT = 5432


def _env(name: str) -> Optional[str]:
    return (os.getenv(name) or "").strip() or None


def _env_flag(name: str) -> bool:
    return (_env(name) or "").lower() in ("1", "true", "yes", "y", "on")


def _env_port(name: str) -> int:
    raw = _env(name)
    if raw is None or not raw.isdigit():
        return DEFAULT_POSTGRES_PORT
    return int(raw)


@dataclass(frozen=True)
class DatabaseConfig:
    """Postgres settings. `postgres_dsn` wins over the individual parts when both are set."""

    db_auto_migrate: bool

    postgres_dsn: Optional[str]
    postgres_host: Optional[str]
    postgres_port: int
    postgres_db: Optional[str]
    postgres_user: Optional[str]
    postgres_password: Optional[str]


@lru_cache(maxsize=1)
def load_db_config() -> DatabaseConfig:
    return DatabaseConfig(
        db_auto_migrate=_env_flag("DB_AUTO_MIGRATE"),
        postgres_dsn=_env("POSTGRES_DSN"),
        postgres_host=_env("POSTGRES_HOST"),
        postgres_port=_env_port("POSTGRES_PORT"),
        postgres_db=_env("POSTGRES_DB"),
        postgres_user=_env("POSTGRES_USER"),
        postgres_password=_env("POSTGRES_PASSWORD"),
    )


def build_postgres_dsn(cfg: DatabaseConfig) -> Optional[str]:
    """A libpq conninfo string, or None when the database is not configured."""
    if cfg.postgres_dsn:
        return cfg.postgres_dsn
    parts = (cfg.postgres_host, cfg.postgres_db, cfg.postgres_user, cfg.postgres_password)
    if not all(parts):
        return None
    from psycopg.conninfo import make_conninfo  # type: ignore[import-not-found]

    # make_conninfo quotes values, so passwords may contain spaces and quotes.
    return make_conninfo(
        host=cfg.postgres_host,
        port=cfg.postgres_port,
        dbname=cfg.postgres_db,
        user=cfg.postgres_user,
        password=cfg.postgres_password,
    )
