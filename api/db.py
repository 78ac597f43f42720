# api/db.py
import os
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Optional, Set

import psycopg2
import psycopg2.extras
from psycopg2 import pool
from psycopg2.extensions import parse_dsn
from dotenv import load_dotenv

from rules.sources import ConfigError

# Load .env once at import
load_dotenv()

logger = logging.getLogger(__name__)

# Roles that only carry a public key. Row-level security would silently drop
# their writes, so the pollers refuse to run with them.
ANON_ROLES = {"anon", "authenticated"}

TITLE_LIMIT = 500
DESCRIPTION_LIMIT = 2000


class CredentialError(Exception):
    """A database credential exists but is not privileged enough to write."""


# -----------------------------
# Postgres connection handling
# -----------------------------

def _ensure_ssl_param(url: str, sslmode: str) -> str:
    # Append sslmode to a DSN URL unless it already carries one.
    if "sslmode=" in url:
        return url
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}sslmode={sslmode}"

def _build_dsn() -> str | None:
    """
    Build a DSN from env. Prefers DATABASE_URL / EXTERNAL_DATABASE_URL.
    Falls back to discrete POSTGRES_* / PG* variables.
    Returns None if not enough info to connect.
    """
    dsn = (os.getenv("DATABASE_URL") or os.getenv("EXTERNAL_DATABASE_URL") or "").strip()
    if dsn:
        sslmode = os.getenv("PGSSLMODE", "require")
        return _ensure_ssl_param(dsn, sslmode)

    host = os.getenv("POSTGRES_HOST") or os.getenv("PGHOST") or "localhost"
    port = os.getenv("POSTGRES_PORT") or os.getenv("PGPORT") or "5432"
    user = os.getenv("POSTGRES_USER") or os.getenv("PGUSER") or os.getenv("DB_USER")
    password = os.getenv("POSTGRES_PASSWORD") or os.getenv("PGPASSWORD") or os.getenv("DB_PASSWORD") or ""
    dbname = os.getenv("POSTGRES_DB") or os.getenv("PGDATABASE") or os.getenv("DB_NAME")

    if not (user and dbname):
        return None

    # Default SSL: disable for localhost, require otherwise
    default_ssl = "disable" if host in {"localhost", "127.0.0.1"} else "require"
    sslmode = os.getenv("PGSSLMODE", default_ssl)

    auth = f"{user}:{password}@" if password else f"{user}@"
    base = f"postgresql://{auth}{host}:{port}/{dbname}"
    return _ensure_ssl_param(base, sslmode)

def credential_level(dsn: str | None) -> str:
    """'none', 'anon' or 'service', judged by the role the DSN logs in as."""
    if not dsn:
        return "none"
    try:
        user = parse_dsn(dsn).get("user") or ""
    except psycopg2.ProgrammingError:
        return "none"
    return "anon" if user.lower() in ANON_ROLES else "service"

def require_write_access() -> str:
    """
    DSN for a role that can write, or raise:
      ConfigError      no database configured (HTTP 500)
      CredentialError  only a public-level role configured (HTTP 403)
    """
    if os.getenv("DISABLE_DB") == "1":
        raise ConfigError("Database disabled (DISABLE_DB=1)")
    dsn = _build_dsn()
    level = credential_level(dsn)
    if level == "none":
        raise ConfigError("Database not configured. Set DATABASE_URL (preferred) or POSTGRES_* / PG* env vars.")
    if level == "anon":
        raise CredentialError("Service-role database credential required; refusing to run with a public-level role")
    return dsn

# Created on first use so the app can boot even if the DB is not ready.
pg_pool: pool.SimpleConnectionPool | None = None

def _get_pool() -> pool.SimpleConnectionPool:
    global pg_pool
    if pg_pool is None:
        dsn = require_write_access()
        pg_pool = pool.SimpleConnectionPool(
            minconn=1,
            maxconn=int(os.getenv("DB_MAX_CONNECTIONS", "10")),
            dsn=dsn,
        )
        logger.info("[DB] Connection pool ready")
    return pg_pool

@contextmanager
def conn():
    """Pooled DB connection context manager. Commits on success."""
    p = _get_pool()
    connection = p.getconn()
    try:
        yield connection
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        p.putconn(connection)


# -----------------------------
# Instrument store
# -----------------------------

class InstrumentStore:
    """Every read and write the pollers make against the shared tables."""

    def __init__(self, connect=conn):
        self._conn = connect

    def jurisdiction_ids(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        with self._conn() as c, c.cursor() as cur:
            cur.execute("SELECT id, code, name FROM jurisdiction")
            for jid, code, name in cur.fetchall():
                if code:
                    out[code.upper()] = jid
                if name == "Federal Government":
                    out["FEDERAL"] = jid
        return out

    def existing_external_ids(self, sources: Iterable[str]) -> Set[str]:
        with self._conn() as c, c.cursor() as cur:
            cur.execute(
                "SELECT external_id FROM instrument WHERE source = ANY(%s) AND external_id IS NOT NULL",
                (list(sources),),
            )
            return {r[0] for r in cur.fetchall()}

    def latest_effective_date(self, sources: Iterable[str]) -> Optional[str]:
        with self._conn() as c, c.cursor() as cur:
            cur.execute("SELECT max(effective_date) FROM instrument WHERE source = ANY(%s)", (list(sources),))
            r = cur.fetchone()
        if not r or r[0] is None:
            return None
        return r[0].isoformat() if hasattr(r[0], "isoformat") else str(r[0])

    def upsert_instrument(self, record: Dict[str, Any]) -> None:
        with self._conn() as c, c.cursor() as cur:
            cur.execute(
                """
                INSERT INTO instrument(external_id, title, description, effective_date, jurisdiction_id,
                                       source, url, category, sub_category, metadata, updated_at)
                VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,now())
                ON CONFLICT (external_id) DO UPDATE
                SET title=EXCLUDED.title, description=EXCLUDED.description,
                    effective_date=EXCLUDED.effective_date, jurisdiction_id=EXCLUDED.jurisdiction_id,
                    source=EXCLUDED.source, url=EXCLUDED.url, category=EXCLUDED.category,
                    sub_category=EXCLUDED.sub_category, metadata=EXCLUDED.metadata, updated_at=now()
                """,
                (
                    record["external_id"],
                    (record.get("title") or "")[:TITLE_LIMIT],
                    (record.get("description") or "")[:DESCRIPTION_LIMIT],
                    record["effective_date"],
                    record["jurisdiction_id"],
                    record["source"],
                    record.get("url"),
                    record.get("category"),
                    record.get("sub_category"),
                    psycopg2.extras.Json(record.get("metadata") or {}),
                ),
            )

    def insert_run_log(self, source: str, status: str, records_fetched: int, metadata: Dict[str, Any]) -> None:
        with self._conn() as c, c.cursor() as cur:
            cur.execute(
                "INSERT INTO ingestion_log(source, status, records_fetched, metadata) VALUES (%s,%s,%s,%s)",
                (source, status, records_fetched, psycopg2.extras.Json(metadata)),
            )

    def upsert_progress(self, session_id: str, source_name: str, status: str,
                        records_fetched: int = 0, metadata: Optional[Dict[str, Any]] = None) -> None:
        done = status in ("completed", "error")
        with self._conn() as c, c.cursor() as cur:
            cur.execute(
                """
                INSERT INTO data_population_progress(session_id, source_name, status, records_fetched,
                                                     started_at, completed_at, metadata)
                VALUES (%s,%s,%s,%s,now(), CASE WHEN %s THEN now() END, %s)
                ON CONFLICT (session_id, source_name) DO UPDATE
                SET status=EXCLUDED.status, records_fetched=EXCLUDED.records_fetched,
                    completed_at=COALESCE(EXCLUDED.completed_at, data_population_progress.completed_at),
                    metadata=EXCLUDED.metadata
                """,
                (session_id, source_name, status, records_fetched, done, psycopg2.extras.Json(metadata or {})),
            )
