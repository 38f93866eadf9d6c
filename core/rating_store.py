import sqlite3
import os
import logging
from typing import Dict, Optional, List
from threading import Lock

from core.records import RatingCacheEntry, now_millis

logger = logging.getLogger(__name__)

STORE_DIRNAME = "pickshot"
LEGACY_STORE_DIRNAME = "photo-selector"
STORE_FILENAME = "ratings.db"

# Columns added after the first schema generation. Each is applied with
# ALTER TABLE when missing, so upgrades are additive and re-runnable.
_ADDITIVE_COLUMNS = {
    "source_modified_at": "INTEGER",
}


class RatingStoreOpenError(RuntimeError):
    """The ratings database could not be opened. Fatal at startup."""


def _entry_from_row(row) -> RatingCacheEntry:
    rating, updated_at, source_modified_at = row
    return RatingCacheEntry(
        rating=rating,
        updated_at=updated_at,
        source_modified_at=source_modified_at if isinstance(source_modified_at, int) else None,
    )


def resolve_store_path(data_dir: str) -> str:
    """Return the ratings database path under *data_dir*.

    An existing legacy-named store is adopted in place when the current one
    has never been created.
    """
    current = os.path.join(data_dir, STORE_DIRNAME, STORE_FILENAME)
    legacy = os.path.join(data_dir, LEGACY_STORE_DIRNAME, STORE_FILENAME)
    if os.path.exists(current) or not os.path.exists(legacy):
        return current
    logger.info(f"Adopting legacy ratings store at {legacy}")
    return legacy


class RatingStore:
    """
    Durable photo id -> (rating, updated_at, source_modified_at) table.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = Lock()
        self.conn: Optional[sqlite3.Connection] = None

    def open(self) -> None:
        """Connects and brings the schema up to date. Safe to call on a current store."""
        logger.info(f"Opening RatingStore at {self.db_path}")
        try:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except (sqlite3.Error, OSError) as e:
            raise RatingStoreOpenError(f"Cannot open ratings database at {self.db_path}: {e}") from e

        try:
            self._init_database(conn)
        except sqlite3.Error as e:
            conn.close()
            raise RatingStoreOpenError(f"Cannot initialize ratings database at {self.db_path}: {e}") from e

        with self._lock:
            self.conn = conn

    def _init_database(self, conn: sqlite3.Connection) -> None:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS ratings (
                id TEXT PRIMARY KEY,
                rating INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        ''')

        cursor.execute("PRAGMA table_info(ratings)")
        existing = {row[1] for row in cursor.fetchall()}
        for column, column_type in _ADDITIVE_COLUMNS.items():
            if column not in existing:
                logger.info(f"Migrating ratings table: adding column {column}")
                cursor.execute(f"ALTER TABLE ratings ADD COLUMN {column} {column_type}")

        conn.commit()
        logger.info(f"Ratings database initialized: {self.db_path}")

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise RuntimeError("RatingStore has not been opened. Call open() first.")
        return self.conn

    def get_all(self) -> Dict[str, RatingCacheEntry]:
        with self._lock:
            cursor = self._require_conn().cursor()
            cursor.execute('SELECT id, rating, updated_at, source_modified_at FROM ratings')
            rows = cursor.fetchall()
        return {row[0]: _entry_from_row(row[1:]) for row in rows}

    def get(self, photo_id: str) -> Optional[RatingCacheEntry]:
        with self._lock:
            cursor = self._require_conn().cursor()
            cursor.execute(
                'SELECT rating, updated_at, source_modified_at FROM ratings WHERE id = ?',
                (photo_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return _entry_from_row(row)

    def upsert(self, photo_id: str, rating: int, source_modified_at: Optional[int] = None) -> None:
        """Inserts or fully replaces the entry for *photo_id* in one statement."""
        if not isinstance(rating, int) or not 0 <= rating <= 5:
            raise ValueError(f"rating must be an integer 0-5, got {rating!r}")

        with self._lock:
            conn = self._require_conn()
            with conn:
                conn.execute('''
                    INSERT INTO ratings (id, rating, updated_at, source_modified_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET
                        rating = excluded.rating,
                        updated_at = excluded.updated_at,
                        source_modified_at = excluded.source_modified_at
                ''', (photo_id, rating, now_millis(), source_modified_at))
        logger.debug(f"Stored rating {rating} for {os.path.basename(photo_id)}")

    def upsert_if_unchanged(self, photo_id: str, expected: Optional[RatingCacheEntry],
                            rating: int, source_modified_at: Optional[int] = None) -> bool:
        """Like upsert, but only while the stored entry still equals *expected*
        (None: no entry may exist). Returns False and writes nothing otherwise."""
        if not isinstance(rating, int) or not 0 <= rating <= 5:
            raise ValueError(f"rating must be an integer 0-5, got {rating!r}")

        with self._lock:
            conn = self._require_conn()
            with conn:
                row = conn.execute(
                    'SELECT rating, updated_at, source_modified_at FROM ratings WHERE id = ?',
                    (photo_id,),
                ).fetchone()
                current = _entry_from_row(row) if row is not None else None
                if current != expected:
                    logger.debug(f"Rating for {os.path.basename(photo_id)} changed underneath; not overwriting")
                    return False
                conn.execute('''
                    INSERT INTO ratings (id, rating, updated_at, source_modified_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET
                        rating = excluded.rating,
                        updated_at = excluded.updated_at,
                        source_modified_at = excluded.source_modified_at
                ''', (photo_id, rating, now_millis(), source_modified_at))
        logger.debug(f"Stored rating {rating} for {os.path.basename(photo_id)}")
        return True

    def delete(self, photo_id: str) -> None:
        self.delete_many([photo_id])

    def delete_many(self, photo_ids: List[str]) -> None:
        if not photo_ids:
            return
        with self._lock:
            conn = self._require_conn()
            with conn:
                placeholders = ",".join("?" for _ in photo_ids)
                cursor = conn.execute(f"DELETE FROM ratings WHERE id IN ({placeholders})", list(photo_ids))
        logger.debug(f"Deleted {cursor.rowcount} rating(s) for {len(photo_ids)} id(s)")

    def rename_id(self, old_id: str, new_id: str) -> bool:
        """Repoints an entry to *new_id*, keeping its rating and timestamps.

        Returns True if an entry was moved.
        """
        if old_id == new_id:
            return False
        with self._lock:
            conn = self._require_conn()
            with conn:
                exists = conn.execute('SELECT 1 FROM ratings WHERE id = ?', (old_id,)).fetchone()
                if not exists:
                    return False
                conn.execute('DELETE FROM ratings WHERE id = ?', (new_id,))
                conn.execute('UPDATE ratings SET id = ? WHERE id = ?', (new_id, old_id))
        logger.info(f"Repointed rating from {old_id} to {new_id}")
        return True

    def close(self):
        """Closes the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.info(f"Ratings database connection closed: {self.db_path}")


# Global store instance
_rating_store: Optional[RatingStore] = None
_rating_store_lock = Lock()


def get_rating_store(db_path: str) -> RatingStore:
    """Gets (or lazily creates and opens) the process-wide rating store."""
    global _rating_store
    if _rating_store is None:
        with _rating_store_lock:
            if _rating_store is None:
                store = RatingStore(db_path)
                store.open()
                _rating_store = store
    return _rating_store
