"""Helpers for dealing with database URL formats."""

from __future__ import annotations

from collections.abc import Mapping

from psycopg import conninfo as psycopg_conninfo
from sqlalchemy.engine import URL, make_url

_LIBPQ_KEYS = ("host", "port", "dbname", "user", "password")


def _coerce_port(value: str | int | None) -> int | None:
    if value in (None, ""):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid PostgreSQL port value: {value!r}") from exc


def _normalize_drivername(drivername: str | None) -> str:
    if not drivername or drivername in {"postgresql", "postgres"}:
        return "postgresql+psycopg"
    return drivername


def _url_from_libpq(mapping: Mapping[str, str]) -> URL:
    query = {k: v for k, v in mapping.items() if k not in _LIBPQ_KEYS}
    port = _coerce_port(mapping.get("port")) if "port" in mapping else None
    return URL.create(
        drivername="postgresql+psycopg",
        username=mapping.get("user") or None,
        password=mapping.get("password") or None,
        host=mapping.get("host") or None,
        port=port,
        database=mapping.get("dbname") or None,
        query=query,
    )


def normalize_database_url(raw_url: str) -> str:
    """Return a SQLAlchemy URL, routing PostgreSQL through ``psycopg``.

    SQLite URLs are returned untouched. PostgreSQL may be given either as a
    URL (``postgresql://...``) or as a libpq keyword DSN
    (``host=... dbname=...``).
    """

    raw = raw_url.strip()
    if not raw:
        raise ValueError("database URL must be a non-empty string")

    if "://" in raw:
        url = make_url(raw)
        if not url.drivername.startswith("postgres"):
            return raw
        url = url.set(drivername=_normalize_drivername(url.drivername))
        return url.render_as_string(hide_password=False)

    mapping = psycopg_conninfo.conninfo_to_dict(raw)
    return _url_from_libpq(mapping).render_as_string(hide_password=False)


def is_sqlite_url(url: str) -> bool:
    return url == ":memory:" or url.startswith("sqlite")


__all__ = ["is_sqlite_url", "normalize_database_url"]
