"""Helpers for database targets: URL normalisation and safe display."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import ArgumentError

_MEMORY_DATABASES = frozenset({"", ":memory:"})


def _sqlite_url_for(path: Path) -> str:
    return f"sqlite:///{path.resolve()}"


def _anchor_sqlite(url: URL) -> URL:
    database = url.database or ""
    if database in _MEMORY_DATABASES:
        return url
    db_path = Path(database)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    return url.set(database=str(db_path.resolve()))


def normalize_database_url(target: str | Path) -> str:
    """Turn a URL or filesystem path into an absolute database URL.

    Bare paths become SQLite URLs and relative SQLite databases are anchored
    at the working directory, so every worker sharing a checkout opens the
    same file. Non-SQLite URLs pass through unchanged.
    """

    if isinstance(target, Path):
        return _sqlite_url_for(target)

    raw = str(target).strip()
    if not raw:
        raise ValueError("database target cannot be empty")
    if "://" not in raw:
        return _sqlite_url_for(Path(raw))

    url = make_url(raw)
    if not url.drivername.startswith("sqlite"):
        return raw
    return _anchor_sqlite(url).render_as_string(hide_password=False)


def is_sqlite_url(url: str) -> bool:
    return make_url(url).drivername.startswith("sqlite")


def redact_database_url(target: str | Path) -> str:
    """Database URL with any password masked, for logs and CLI output."""

    try:
        return make_url(normalize_database_url(target)).render_as_string(hide_password=True)
    except (ArgumentError, ValueError):
        return "<invalid database url>"


__all__ = ["is_sqlite_url", "normalize_database_url", "redact_database_url"]
