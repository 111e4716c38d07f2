"""
SQL migrations for the storefront schema.

Files in `migrations/` are named `NNNN_<slug>.sql` and applied in order, each in
its own transaction. Applied versions and their SHA-256 are recorded in
`schema_migrations`; editing an applied file is an error, not a silent re-run.
"""

from __future__ import annotations

import hashlib
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from storefront.db.config import DatabaseConfig, build_postgres_dsn, load_db_config

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
MIGRATION_FILE_RE = re.compile(r"^(?P<number>\d{4})_[a-z0-9_]+\.sql$")

# Postgres advisory lock (bigint) held while migrating; replicas starting together queue on it.
MIGRATION_LOCK_KEY = 731964205871

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version text PRIMARY KEY,
  checksum text NOT NULL,
  applied_at timestamptz NOT NULL DEFAULT now()
)
"""


class MigrationChecksumError(RuntimeError):
    """An already-applied migration file was modified."""


@dataclass(frozen=True)
class Migration:
    version: str
    checksum: str
    sql: str

    @classmethod
    def from_file(cls, path: Path) -> "Migration":
        raw = path.read_bytes()
        return cls(version=path.stem, checksum=hashlib.sha256(raw).hexdigest(), sql=raw.decode("utf-8"))


def load_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    """Read migration files in version order. Misnamed or duplicate-numbered files are rejected."""
    if not directory.is_dir():
        return []
    seen: Dict[str, str] = {}
    out: List[Migration] = []
    for path in sorted(p for p in directory.iterdir() if p.suffix == ".sql"):
        m = MIGRATION_FILE_RE.match(path.name)
        if m is None:
            raise ValueError(f"Bad migration file name: {path.name}")
        number = m.group("number")
        if number in seen:
            raise ValueError(f"Duplicate migration number {number}: {seen[number]}, {path.name}")
        seen[number] = path.name
        out.append(Migration.from_file(path))
    return out


def pending_migrations(migrations: Iterable[Migration], applied: Dict[str, str]) -> List[Migration]:
    """
    Migrations not yet in `applied` (version -> checksum).

    Raises:
        MigrationChecksumError: If an applied migration's file no longer matches
    """
    todo: List[Migration] = []
    for mig in migrations:
        recorded = applied.get(mig.version)
        if recorded is None:
            todo.append(mig)
        elif recorded != mig.checksum:
            raise MigrationChecksumError(
                f"Migration checksum mismatch for {mig.version}: db={recorded[:12]} file={mig.checksum[:12]}"
            )
    return todo


def _connect(dsn: str):
    import psycopg  # type: ignore[import-not-found]

    return psycopg.connect(dsn)


@contextmanager
def _migration_lock(conn) -> Iterator[None]:
    conn.execute("SELECT pg_advisory_lock(%s)", (MIGRATION_LOCK_KEY,))
    try:
        yield
    finally:
        conn.execute("SELECT pg_advisory_unlock(%s)", (MIGRATION_LOCK_KEY,))


def apply_migrations(*, dsn: str, migrations: Optional[Iterable[Migration]] = None) -> Tuple[int, List[str]]:
    """Apply everything pending. Returns (applied_count, applied_versions)."""
    migs = list(migrations) if migrations is not None else load_migrations()
    done: List[str] = []

    with _connect(dsn) as conn, _migration_lock(conn):
        conn.execute(_CREATE_LEDGER)
        applied = {str(v): str(c) for v, c in conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()}
        for mig in pending_migrations(migs, applied):
            with conn.transaction():
                conn.execute(mig.sql)
                conn.execute(
                    "INSERT INTO schema_migrations (version, checksum) VALUES (%s, %s)",
                    (mig.version, mig.checksum),
                )
            logger.info("Applied migration %s", mig.version)
            done.append(mig.version)

    return len(done), done


def maybe_auto_migrate(cfg: Optional[DatabaseConfig] = None) -> Tuple[bool, str]:
    """
    Startup hook: migrate only when DB_AUTO_MIGRATE is on and Postgres is configured.

    Returns (did_attempt, message); failures are reported in the message, not raised.
    """
    cfg = cfg or load_db_config()
    if not cfg.db_auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    dsn = build_postgres_dsn(cfg)
    if not dsn:
        return False, "Postgres DSN not configured"
    try:
        count, versions = apply_migrations(dsn=dsn)
    except Exception as e:
        return True, f"Migration failed: {e}"
    if count:
        return True, f"Applied {count} migration(s): {', '.join(versions)}"
    return True, "No pending migrations"
