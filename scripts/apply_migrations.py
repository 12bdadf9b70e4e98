"""Apply forward-only SQL migrations from backend/placetalk/infra/migrations."""

from __future__ import annotations

import logging
import pathlib
import sys
import time

import psycopg2

BACKEND_ROOT = pathlib.Path(__file__).resolve().parent.parent / "backend"
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from placetalk.settings import is_true, settings  # noqa: E402

logger = logging.getLogger("placetalk.migrations")

MIGRATIONS_DIR = BACKEND_ROOT / "placetalk" / "infra" / "migrations"


def _with_sslmode_require(dsn: str) -> str:
    # psycopg2/libpq supports sslmode=require as a query param for URL DSNs.
    if "sslmode=" in dsn:
        return dsn
    joiner = "&" if "?" in dsn else "?"
    return f"{dsn}{joiner}sslmode=require"


def _dsn() -> str:
    dsn = settings.postgres_url
    if is_true(settings.postgres_ssl):
        dsn = _with_sslmode_require(dsn)
    return dsn


def wait_for_db(dsn: str, retries: int = 30, delay: int = 2) -> psycopg2.extensions.connection:
    for attempt in range(retries):
        try:
            return psycopg2.connect(dsn)
        except psycopg2.OperationalError as e:
            if "starting up" in str(e) or "Connection refused" in str(e):
                logger.info("database starting up, retrying in %ss (%s/%s)", delay, attempt + 1, retries)
                time.sleep(delay)
            else:
                raise
    raise SystemExit("Could not connect to database after multiple retries")


def pending(paths: list[pathlib.Path], applied: set[str]) -> list[pathlib.Path]:
    return [path for path in paths if path.name.split("_", 1)[0] not in applied]


def main() -> None:
    logging.basicConfig(level=settings.obs_log_level, format="%(asctime)s %(levelname)s %(message)s")
    paths = sorted(MIGRATIONS_DIR.glob("*.sql"))
    if not paths:
        raise SystemExit("no migration files found")

    conn = wait_for_db(_dsn())
    try:
        conn.autocommit = True
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version TEXT PRIMARY KEY,
                    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            cur.execute("SELECT version FROM schema_migrations")
            applied = {row[0] for row in cur.fetchall()}

            for path in pending(paths, applied):
                version = path.name.split("_", 1)[0]
                try:
                    cur.execute(path.read_text())
                    cur.execute("INSERT INTO schema_migrations (version) VALUES (%s)", (version,))
                except psycopg2.Error:
                    logger.exception("failed applying %s", path.name)
                    raise
                logger.info("applied %s", path.name)
    finally:
        conn.close()


if __name__ == "__main__":
    main()
