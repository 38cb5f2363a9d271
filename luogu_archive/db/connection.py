import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).parent / "migrations"


def get_connection(db_path: str) -> sqlite3.Connection:
    """
    Open a SQLite connection for one unit of work.

    Repositories are called from worker threads via asyncio.to_thread, so
    every call opens its own connection; WAL lets readers proceed while the
    scheduler writes job state.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def _applied_migrations(conn: sqlite3.Connection) -> set[str]:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _schema_migrations (
            filename TEXT PRIMARY KEY,
            applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.commit()
    return {row["filename"] for row in conn.execute("SELECT filename FROM _schema_migrations")}


def run_migrations(db_path: str) -> list[str]:
    """Apply pending files from db/migrations in name order. Returns the files applied."""
    conn = get_connection(db_path)
    applied_now: list[str] = []
    try:
        already = _applied_migrations(conn)
        pending = [p for p in sorted(_MIGRATIONS_DIR.glob("*.sql")) if p.name not in already]
        for path in pending:
            logger.info("[db] applying migration | file=%s", path.name)
            try:
                conn.executescript(path.read_text(encoding="utf-8"))
            except sqlite3.Error:
                logger.exception("[db] migration failed | file=%s | db=%s", path.name, db_path)
                raise
            conn.execute("INSERT INTO _schema_migrations (filename) VALUES (?)", (path.name,))
            conn.commit()
            applied_now.append(path.name)
        if not pending:
            logger.debug("[db] schema up to date | db=%s", db_path)
    finally:
        conn.close()
    return applied_now
