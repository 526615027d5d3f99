import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Union

from . import config
from .errors import MetadataCorrupt


logger = logging.getLogger("bookvault.storage")

FILES_KEY = "files"

Record = Dict[str, Any]

# Rows written by the earlier JavaScript deployment used camelCase keys.
LEGACY_FIELD_NAMES = {
    "b2FileName": "object_name",
    "filename": "display_name",
    "originalName": "original_name",
    "contentType": "content_type",
    "uploadedAt": "uploaded_at",
    "coverB2Name": "cover_object_name",
    "coverContentType": "cover_content_type",
}


def normalize_record(raw: Record) -> Record:
    record = dict(raw)
    for legacy_key, key in LEGACY_FIELD_NAMES.items():
        if legacy_key in record:
            value = record.pop(legacy_key)
            record.setdefault(key, value)
    return record


def is_ready(record: Record) -> bool:
    """Rows without a ``ready`` field predate the commit step and count as ready."""

    return record.get("ready", True) is True


@contextmanager
def get_db(db_path: Union[str, Path]) -> Generator[sqlite3.Connection, None, None]:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


class FileRepository:
    """Metadata store holding the whole file list under a single key.

    Readers get a snapshot; writers go through :meth:`atomic_update`, which
    serialises read-modify-write cycles with an immediate SQLite transaction.
    """

    def __init__(self, db_path: Union[str, Path, None] = None, key: str = FILES_KEY) -> None:
        self.db_path = Path(db_path) if db_path is not None else config.DB_PATH
        self.key = key
        self.init_db()

    def init_db(self) -> None:
        with get_db(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            conn.commit()

    def _load(self, conn: sqlite3.Connection, strict: bool = False) -> List[Record]:
        """Decode the stored list.

        A value that is not a JSON list reads as empty unless *strict* is set,
        in which case :class:`MetadataCorrupt` is raised so nothing overwrites it.
        """

        row = conn.execute("SELECT value FROM kv WHERE key = ?", (self.key,)).fetchone()
        if row is None:
            return []
        try:
            payload = json.loads(row["value"])
        except (TypeError, ValueError) as error:
            logger.error("metadata_decode_failed key=%s error=%s", self.key, error)
            if strict:
                raise MetadataCorrupt("Stored file list is not valid JSON") from error
            return []
        if not isinstance(payload, list):
            logger.error("metadata_not_a_list key=%s type=%s", self.key, type(payload).__name__)
            if strict:
                raise MetadataCorrupt("Stored file list is not a list")
            return []
        return [normalize_record(item) for item in payload if isinstance(item, dict)]

    def _store(self, conn: sqlite3.Connection, records: List[Record]) -> None:
        conn.execute(
            """
            INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (self.key, json.dumps(records), time.time()),
        )

    def list_records(self) -> List[Record]:
        with get_db(self.db_path) as conn:
            return self._load(conn)

    def get_record(self, file_id: str) -> Optional[Record]:
        for record in self.list_records():
            if record.get("id") == file_id:
                return record
        return None

    def atomic_update(self, mutate: Callable[[List[Record]], List[Record]]) -> List[Record]:
        """Apply *mutate* to a fresh copy of the list and persist the result.

        Exceptions raised by *mutate* roll the transaction back and propagate.
        """

        with get_db(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            records = self._load(conn, strict=True)
            updated = mutate(records)
            self._store(conn, updated)
            conn.commit()
        return updated

    def replace_all(self, records: List[Record]) -> None:
        self.atomic_update(lambda _current: list(records))

    def ping(self) -> int:
        with get_db(self.db_path) as conn:
            conn.execute("SELECT 1").fetchone()
            return len(self._load(conn, strict=True))
