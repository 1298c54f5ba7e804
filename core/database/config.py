"""
Database configuration: reads DATABASE_URL / DATABASE_DIR from settings
and returns a SQLAlchemy engine for the requested logical database.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool


def get_database_url(
    db_name: str,
    db_dir: Optional[Path] = None,
) -> str:
    """
    Resolve the database URL for the given logical name.

    Args:
        db_name: logical name, e.g. "chapter_pipeline".
                 For SQLite this becomes ``<db_dir>/<db_name>.db``.
        db_dir:  directory for database files.  Defaults to settings.database_dir.

    An explicit ``settings.database_url`` always wins.
    """
    from config.settings import settings

    if settings.database_url:
        return settings.database_url

    if db_dir is None:
        db_dir = settings.database_dir

    db_dir = Path(db_dir)
    db_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_dir / f'{db_name}.db'}"


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Factory: return a SQLAlchemy engine for a database URL.

    SQLite engines are made usable from the threadpool, and the special
    in-memory URL shares one connection so every session sees the same data.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(url, echo=echo, pool_pre_ping=True)
