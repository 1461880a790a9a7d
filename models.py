"""
SQLite result cache for HomeAccess analyses.

Lightweight, write-once design. No ORM, just raw sqlite3.
One row per listing URL; a row is never updated in place, it simply
expires after the TTL and is replaced by the next analysis.
"""

import sqlite3
import os
import json
import hashlib
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("HOMEACCESS_DB_PATH", "homeaccess.db")
DEFAULT_TTL_HOURS = float(os.environ.get("RESULT_CACHE_TTL_HOURS", "24"))
DEFAULT_MAX_ENTRIES = int(os.environ.get("RESULT_CACHE_MAX_ENTRIES", "1000"))


def _get_db(db_path: Optional[str] = None):
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(db_path or DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db(db_path: Optional[str] = None):
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db(db_path)
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS analysis_results (
            cache_key    TEXT PRIMARY KEY,
            url          TEXT NOT NULL,
            created_at   TEXT NOT NULL,
            overall      REAL,
            result_json  TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_results_created ON analysis_results(created_at);
    """)
    conn.commit()
    conn.close()


def cache_key(url: str) -> str:
    """Deterministic key for a listing URL (query string and fragment ignored)."""
    normalized = url.strip().split("#", 1)[0].split("?", 1)[0].rstrip("/").lower()
    return hashlib.sha256(normalized.encode()).hexdigest()


def _is_expired(created_str: Optional[str], ttl: timedelta) -> bool:
    if not created_str:
        return True
    try:
        created = datetime.fromisoformat(created_str)
    except (ValueError, TypeError):
        return True
    # Handle naive timestamps by assuming UTC
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - created > ttl


class ResultCache:
    """Bounded TTL cache of serialised analysis results keyed by URL.

    Injected into analyze_url() by the web app; the CLI runs without one.
    Cache errors are logged and never break an evaluation.
    """

    def __init__(self, db_path: Optional[str] = None,
                 ttl_hours: float = DEFAULT_TTL_HOURS,
                 max_entries: int = DEFAULT_MAX_ENTRIES):
        if ttl_hours <= 0:
            raise ValueError("ttl_hours must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.db_path = db_path or DB_PATH
        self.ttl = timedelta(hours=ttl_hours)
        self.max_entries = max_entries
        init_db(self.db_path)

    def get(self, url: str) -> Optional[Dict[str, Any]]:
        """Cached result for *url* if present and younger than the TTL, else None."""
        conn = None
        try:
            conn = _get_db(self.db_path)
            row = conn.execute(
                "SELECT result_json, created_at FROM analysis_results WHERE cache_key = ?",
                (cache_key(url),),
            ).fetchone()
        except sqlite3.Error:
            logger.warning("Result cache lookup failed", exc_info=True)
            return None
        finally:
            if conn is not None:
                conn.close()

        if not row or _is_expired(row["created_at"], self.ttl):
            return None
        try:
            return json.loads(row["result_json"])
        except (json.JSONDecodeError, TypeError) as e:
            logger.error("Corrupted result_json for %s: %s", url, e)
            return None

    def put(self, url: str, result: Dict[str, Any]) -> bool:
        """Store *result* once.  Returns False if a live entry already exists.

        Expired rows for the same key are removed first so a fresh analysis
        can take their place; a live row is never overwritten.
        """
        key = cache_key(url)
        now = datetime.now(timezone.utc)
        cutoff = (now - self.ttl).isoformat()
        overall = (result.get("analysis") or {}).get("overall")
        conn = None
        try:
            conn = _get_db(self.db_path)
            conn.execute(
                "DELETE FROM analysis_results WHERE created_at < ?", (cutoff,),
            )
            cur = conn.execute(
                """INSERT OR IGNORE INTO analysis_results
                   (cache_key, url, created_at, overall, result_json)
                   VALUES (?, ?, ?, ?, ?)""",
                (key, url, now.isoformat(), overall, json.dumps(result, default=str)),
            )
            inserted = cur.rowcount == 1
            self._evict(conn)
            conn.commit()
        except sqlite3.Error:
            logger.warning("Result cache write failed", exc_info=True)
            return False
        finally:
            if conn is not None:
                conn.close()
        return inserted

    def _evict(self, conn) -> None:
        """Drop the oldest rows beyond max_entries."""
        conn.execute(
            """DELETE FROM analysis_results WHERE cache_key IN (
                   SELECT cache_key FROM analysis_results
                   ORDER BY created_at DESC
                   LIMIT -1 OFFSET ?
               )""",
            (self.max_entries,),
        )

    def __len__(self) -> int:
        conn = _get_db(self.db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM analysis_results").fetchone()[0]
        finally:
            conn.close()
