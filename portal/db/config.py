from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True)
class DatabaseConfig:
    db_auto_migrate: bool

    # Postgres connection (either a URL or parts)
    database_url: Optional[str]
    postgres_host: Optional[str]
    postgres_port: int
    postgres_db: Optional[str]
    postgres_user: Optional[str]
    postgres_password: Optional[str]


@lru_cache(maxsize=1)
def load_database_config() -> DatabaseConfig:
    url = (os.getenv("DATABASE_URL") or "").strip() or None
    port_raw = (os.getenv("POSTGRES_PORT") or "").strip() or "5432"
    try:
        port = int(port_raw)
    except ValueError:
        port = 5432

    return DatabaseConfig(
        db_auto_migrate=_env_bool("DB_AUTO_MIGRATE", False),
        database_url=url,
        postgres_host=(os.getenv("POSTGRES_HOST") or "").strip() or None,
        postgres_port=port,
        postgres_db=(os.getenv("POSTGRES_DB") or "").strip() or None,
        postgres_user=(os.getenv("POSTGRES_USER") or "").strip() or None,
        postgres_password=(os.getenv("POSTGRES_PASSWORD") or "").strip() or None,
    )


def build_postgres_dsn(cfg: DatabaseConfig) -> Optional[str]:
    if cfg.database_url:
        return cfg.database_url
    if not (cfg.postgres_host and cfg.postgres_db and cfg.postgres_user and cfg.postgres_password):
        return None
    # make_conninfo quotes/escapes special characters in passwords.
    from psycopg.conninfo import make_conninfo

    return make_conninfo(
        host=cfg.postgres_host,
        port=cfg.postgres_port,
        dbname=cfg.postgres_db,
        user=cfg.postgres_user,
        password=cfg.postgres_password,
    )
