"""Database persistence of the tiered telemetry store.

Provides the concrete SQLite backend and the `Database` singleton that dispatches to the
backend selected by `config.database.provider`.

Write-then-delete of a compaction batch happens in one SQLite transaction. The transaction
is guarded by the number of deleted raw rows and bounded by a deadline enforced through the
SQLite progress handler.
"""

from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence

from loguru import logger

from iotstore.core.coreabc import SingletonMixin
from iotstore.core.databaseabc import (
    DatabaseABC,
    DatabaseBackendABC,
    DatabaseConflictError,
    DatabaseTimestamp,
    db_timestamp,
)
from iotstore.core.records import Bucket, Checkpoint, RawStats, Sample
from iotstore.utils.datetimeutil import DateTime, utc_now

# Number of SQLite virtual machine instructions in between deadline checks
PROGRESS_HANDLER_INSTRUCTIONS = 1000

SQLITE_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS samples (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device_id TEXT NOT NULL,
        datastream_id TEXT NOT NULL,
        value REAL NOT NULL,
        payload TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_samples_created_at ON samples(created_at)",
    """
    CREATE INDEX IF NOT EXISTS idx_samples_device_datastream_time
        ON samples(device_id, datastream_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS samples_compacted (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device_id TEXT NOT NULL,
        datastream_id TEXT NOT NULL,
        avg_value REAL NOT NULL,
        min_value REAL NOT NULL,
        max_value REAL NOT NULL,
        sample_count INTEGER NOT NULL,
        time_bucket TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (device_id, datastream_id, time_bucket)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_samples_compacted_device_datastream_bucket
        ON samples_compacted(device_id, datastream_id, time_bucket)
    """,
    "CREATE INDEX IF NOT EXISTS idx_samples_compacted_bucket ON samples_compacted(time_bucket)",
    """
    CREATE TABLE IF NOT EXISTS compaction_state (
        id INTEGER PRIMARY KEY DEFAULT 1,
        last_check_time TEXT,
        last_compression_time TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CONSTRAINT single_row CHECK (id = 1)
    )
    """,
)

SAMPLE_COLUMNS = "id, device_id, datastream_id, value, payload, created_at"
BUCKET_COLUMNS = (
    "device_id, datastream_id, avg_value, min_value, max_value, sample_count, "
    "time_bucket, created_at"
)

MERGE_BUCKET_SQL = f"""
    INSERT INTO samples_compacted ({BUCKET_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (device_id, datastream_id, time_bucket) DO UPDATE SET
        avg_value = (samples_compacted.avg_value * samples_compacted.sample_count
                     + excluded.avg_value * excluded.sample_count)
                    / (samples_compacted.sample_count + excluded.sample_count),
        min_value = MIN(samples_compacted.min_value, excluded.min_value),
        max_value = MAX(samples_compacted.max_value, excluded.max_value),
        sample_count = samples_compacted.sample_count + excluded.sample_count,
        created_at = excluded.created_at
"""


def _range_clause(
    column: str, start: Optional[DateTime], end: Optional[DateTime]
) -> tuple[list[str], list[str]]:
    """SQL conditions and parameters selecting `column` in `[start, end)`."""
    conditions: list[str] = []
    params: list[str] = []
    if start is not None:
        conditions.append(f"{column} >= ?")
        params.append(DatabaseTimestamp.from_datetime(start))
    if end is not None:
        conditions.append(f"{column} < ?")
        params.append(DatabaseTimestamp.from_datetime(end))
    return conditions, params


def _where(conditions: list[str]) -> str:
    return f"WHERE {' AND '.join(conditions)}" if conditions else ""


def _sample_from_row(row: sqlite3.Row) -> Sample:
    return Sample(
        id=row["id"],
        device_id=row["device_id"],
        datastream_id=row["datastream_id"],
        value=row["value"],
        payload=json.loads(row["payload"]) if row["payload"] else {},
        created_at=DatabaseTimestamp(row["created_at"]).to_datetime(),
    )


def _bucket_from_row(row: sqlite3.Row) -> Bucket:
    return Bucket(
        device_id=row["device_id"],
        datastream_id=row["datastream_id"],
        avg_value=row["avg_value"],
        min_value=row["min_value"],
        max_value=row["max_value"],
        sample_count=row["sample_count"],
        time_bucket=DatabaseTimestamp(row["time_bucket"]).to_datetime(),
        created_at=DatabaseTimestamp(row["created_at"]).to_datetime(),
    )


class SQLiteDatabase(DatabaseBackendABC):
    """SQLite implementation of the telemetry database."""

    db_file: Optional[Path]
    conn: Optional[sqlite3.Connection]

    def __init__(self, **kwargs: Any) -> None:
        """Initialize SQLite backend."""
        super().__init__()
        sqlite_file = self.config.database.sqlite_file
        self.db_file = None if sqlite_file == ":memory:" else self.storage_path / sqlite_file
        self.conn = None

    def provider_id(self) -> str:
        """Return the unique identifier for the database provider."""
        return "SQLite"

    def open(self) -> None:
        """Open SQLite connection and create the tables."""
        if self.db_file is None:
            database = ":memory:"
        else:
            self.db_file.parent.mkdir(parents=True, exist_ok=True)
            database = str(self.db_file)

        self.conn = sqlite3.connect(
            database,
            timeout=self.config.database.busy_timeout_sec,
            isolation_level=None,  # autocommit, transactions are explicit
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        if self.db_file is not None:
            self.conn.execute("PRAGMA journal_mode=WAL")
        for statement in SQLITE_SCHEMA:
            self.conn.execute(statement)

        self.connection = self.conn
        self._is_open = True
        logger.debug("Opened SQLite at {}", database)

    def close(self) -> None:
        """Close SQLite connection."""
        if self.conn is not None:
            with self.lock:
                self.conn.close()
            self.conn = None
            self.connection = None
            self._is_open = False
            logger.debug("Closed SQLite at {}", self.db_file or ":memory:")

    def _connection(self) -> sqlite3.Connection:
        if not isinstance(self.conn, sqlite3.Connection):
            raise RuntimeError("Database not open")
        return self.conn

    @contextmanager
    def _transaction(self, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        """Run statements in one write transaction, rolled back on any error.

        Args:
            timeout: Deadline of the transaction [s]. Statements still running at the deadline
                are interrupted and raise `sqlite3.OperationalError`.
        """
        conn = self._connection()
        with self.lock:
            if timeout is not None:
                deadline = time.monotonic() + timeout
                conn.set_progress_handler(
                    lambda: int(time.monotonic() > deadline), PROGRESS_HANDLER_INSTRUCTIONS
                )
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                # The rollback itself must not be interrupted.
                conn.set_progress_handler(None, 0)
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                if timeout is not None:
                    conn.set_progress_handler(None, 0)

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        conn = self._connection()
        with self.lock:
            return conn.execute(sql, params).fetchall()

    # Raw tier

    def insert_sample(
        self,
        device_id: str,
        datastream_id: str,
        value: float,
        payload: Optional[dict[str, Any]],
        created_at: DateTime,
    ) -> Sample:
        """Append a sample to the raw tier."""
        sample = Sample(
            device_id=device_id,
            datastream_id=datastream_id,
            value=value,
            payload=payload or {},
            created_at=created_at,
        )
        conn = self._connection()
        with self.lock:
            cursor = conn.execute(
                "INSERT INTO samples (device_id, datastream_id, value, payload, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    sample.device_id,
                    sample.datastream_id,
                    sample.value,
                    json.dumps(sample.payload, default=str),
                    DatabaseTimestamp.from_datetime(sample.created_at),
                ),
            )
        sample.id = cursor.lastrowid
        return sample

    def select_samples(
        self,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
        limit: Optional[int] = None,
    ) -> list[Sample]:
        """Select raw samples of all devices in `[start, end)`, oldest first."""
        conditions, params = _range_clause("created_at", start, end)
        sql = f"SELECT {SAMPLE_COLUMNS} FROM samples {_where(conditions)} ORDER BY created_at, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_sample_from_row(row) for row in self._fetchall(sql, params)]

    def query_samples(
        self,
        device_ids: Sequence[str],
        datastream_id: str,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
        limit: Optional[int] = None,
    ) -> list[Sample]:
        """Select raw samples of a datastream of the given devices in `[start, end)`."""
        if not device_ids:
            return []
        conditions, range_params = _range_clause("created_at", start, end)
        conditions = [
            f"device_id IN ({', '.join('?' for _ in device_ids)})",
            "datastream_id = ?",
            *conditions,
        ]
        params: list[Any] = [*device_ids, datastream_id, *range_params]
        sql = f"SELECT {SAMPLE_COLUMNS} FROM samples {_where(conditions)} ORDER BY created_at, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_sample_from_row(row) for row in self._fetchall(sql, params)]

    def latest_samples(self, limit: int = 100, device_id: Optional[str] = None) -> list[Sample]:
        """Latest raw samples, newest first, optionally of one device only."""
        sql = f"SELECT {SAMPLE_COLUMNS} FROM samples"
        params: list[Any] = []
        if device_id is not None:
            sql += " WHERE device_id = ?"
            params.append(device_id)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return [_sample_from_row(row) for row in self._fetchall(sql, params)]

    def count_samples(
        self, start: Optional[DateTime] = None, end: Optional[DateTime] = None
    ) -> int:
        """Number of raw samples in `[start, end)`."""
        conditions, params = _range_clause("created_at", start, end)
        rows = self._fetchall(f"SELECT COUNT(*) FROM samples {_where(conditions)}", params)
        return int(rows[0][0])

    def sample_stats(self) -> RawStats:
        """Summary of the raw tier."""
        row = self._fetchall(
            "SELECT COUNT(*), COUNT(DISTINCT device_id), COUNT(DISTINCT datastream_id), "
            "MAX(created_at) FROM samples"
        )[0]
        return RawStats(
            total_records=row[0],
            unique_devices=row[1],
            unique_datastreams=row[2],
            latest_timestamp=DatabaseTimestamp(row[3]).to_datetime() if row[3] else None,
        )

    # Compacted tier

    def merge_buckets(
        self,
        buckets: Iterable[Bucket],
        sample_ids: Sequence[int],
        timeout: Optional[float] = None,
    ) -> tuple[int, int]:
        """Upsert buckets and delete the aggregated raw samples in one transaction."""
        written_at = DatabaseTimestamp.from_datetime(utc_now())
        rows = [
            (
                bucket.device_id,
                bucket.datastream_id,
                bucket.avg_value,
                bucket.min_value,
                bucket.max_value,
                bucket.sample_count,
                DatabaseTimestamp.from_datetime(bucket.time_bucket),
                written_at,
            )
            for bucket in buckets
        ]
        if not rows and not sample_ids:
            return 0, 0

        with self._transaction(timeout) as conn:
            conn.executemany(MERGE_BUCKET_SQL, rows)
            deleted = 0
            if sample_ids:
                cursor = conn.executemany(
                    "DELETE FROM samples WHERE id = ?", [(sample_id,) for sample_id in sample_ids]
                )
                deleted = cursor.rowcount
            if deleted != len(sample_ids):
                raise DatabaseConflictError(
                    f"Deleted {deleted} of {len(sample_ids)} compacted raw samples."
                )
        return len(rows), deleted

    def query_buckets(
        self,
        device_ids: Sequence[str],
        datastream_id: str,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
        limit: Optional[int] = None,
    ) -> list[Bucket]:
        """Select buckets with `time_bucket` in `[start, end)`, oldest first."""
        if not device_ids:
            return []
        conditions, range_params = _range_clause("time_bucket", start, end)
        conditions = [
            f"device_id IN ({', '.join('?' for _ in device_ids)})",
            "datastream_id = ?",
            *conditions,
        ]
        params: list[Any] = [*device_ids, datastream_id, *range_params]
        sql = (
            f"SELECT {BUCKET_COLUMNS} FROM samples_compacted {_where(conditions)} "
            "ORDER BY time_bucket, device_id"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_bucket_from_row(row) for row in self._fetchall(sql, params)]

    def count_buckets(
        self, start: Optional[DateTime] = None, end: Optional[DateTime] = None
    ) -> int:
        """Number of buckets with `time_bucket` in `[start, end)`."""
        conditions, params = _range_clause("time_bucket", start, end)
        rows = self._fetchall(
            f"SELECT COUNT(*) FROM samples_compacted {_where(conditions)}", params
        )
        return int(rows[0][0])

    # Compaction checkpoint

    def get_checkpoint(self) -> Optional[Checkpoint]:
        """Load the compaction checkpoint, None if there is none yet."""
        rows = self._fetchall(
            "SELECT last_check_time, last_compression_time, created_at, updated_at "
            "FROM compaction_state WHERE id = 1"
        )
        if not rows:
            return None
        return Checkpoint(
            **{
                key: DatabaseTimestamp(rows[0][key]).to_datetime() if rows[0][key] else None
                for key in rows[0].keys()
            }
        )

    def set_checkpoint(
        self,
        last_check_time: DateTime,
        last_compression_time: Optional[DateTime] = None,
    ) -> Checkpoint:
        """Create or update the compaction checkpoint."""
        now = DatabaseTimestamp.from_datetime(utc_now())
        conn = self._connection()
        with self.lock:
            conn.execute(
                """
                INSERT INTO compaction_state
                    (id, last_check_time, last_compression_time, created_at, updated_at)
                VALUES (1, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    last_check_time = excluded.last_check_time,
                    last_compression_time = COALESCE(
                        excluded.last_compression_time, compaction_state.last_compression_time
                    ),
                    updated_at = excluded.updated_at
                """,
                (
                    db_timestamp(last_check_time),
                    db_timestamp(last_compression_time),
                    now,
                    now,
                ),
            )
        checkpoint = self.get_checkpoint()
        if checkpoint is None:
            raise RuntimeError("Compaction checkpoint not stored")
        return checkpoint


class Database(DatabaseABC, SingletonMixin):
    """Generic telemetry database.

    Dispatches all operations to the backend given by `config.database.provider`. The backend
    is opened on first use.
    """

    _db: Optional[DatabaseBackendABC] = None

    @classmethod
    def reset_instance(cls) -> None:
        """Resets the singleton instance, forcing it to be recreated on next access."""
        with cls._lock:
            if cls in cls._instances:
                # Close current database backend
                instance = cls._instances[cls]
                if instance._db is not None:
                    instance._db.close()
                    instance._db = None
                del cls._instances[cls]
                logger.debug(f"{cls.__name__} singleton instance has been reset.")

    def __init__(self) -> None:
        """Initialize database."""
        if hasattr(self, "_initialized"):
            return
        self._db = None
        super().__init__()

    def _setup_db(self) -> None:
        """Setup database."""
        provider_id = self.config.database.provider
        if provider_id == "SQLite":
            database: DatabaseBackendABC = SQLiteDatabase()
        else:
            raise RuntimeError(f"Invalid database provider '{provider_id}'")
        if self._db is not None:
            self._db.close()
        self._db = database

    def _database(self) -> DatabaseBackendABC:
        """Get database."""
        provider_id = self.config.database.provider
        if self._db is None or self._db.provider_id() != provider_id:
            # No database or configuration does not match
            self._setup_db()
            if self._db is None:
                raise RuntimeError("Database not configured")

        if not self._db.is_open:
            self._db.open()

        return self._db

    def provider_id(self) -> str:
        """Return the unique identifier for the database provider."""
        return self._database().provider_id()

    @property
    def is_open(self) -> bool:
        """Return whether the database connection is open."""
        return self._db is not None and self._db.is_open

    @property
    def storage_path(self) -> Path:
        """Storage path for the database."""
        return self._database().storage_path

    # Lifecycle

    def open(self) -> None:
        """Open database connection."""
        self._database()

    def close(self) -> None:
        """Close the database connection and cleanup resources."""
        if self._db is not None:
            self._db.close()

    # Raw tier

    def insert_sample(
        self,
        device_id: str,
        datastream_id: str,
        value: float,
        payload: Optional[dict[str, Any]],
        created_at: DateTime,
    ) -> Sample:
        """Append a sample to the raw tier."""
        return self._database().insert_sample(
            device_id, datastream_id, value, payload, created_at
        )

    def select_samples(
        self,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
        limit: Optional[int] = None,
    ) -> list[Sample]:
        """Select raw samples of all devices in `[start, end)`, oldest first."""
        return self._database().select_samples(start, end, limit)

    def query_samples(
        self,
        device_ids: Sequence[str],
        datastream_id: str,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
        limit: Optional[int] = None,
    ) -> list[Sample]:
        """Select raw samples of a datastream of the given devices in `[start, end)`."""
        return self._database().query_samples(device_ids, datastream_id, start, end, limit)

    def latest_samples(self, limit: int = 100, device_id: Optional[str] = None) -> list[Sample]:
        """Latest raw samples, newest first, optionally of one device only."""
        return self._database().latest_samples(limit, device_id)

    def count_samples(
        self, start: Optional[DateTime] = None, end: Optional[DateTime] = None
    ) -> int:
        """Number of raw samples in `[start, end)`."""
        return self._database().count_samples(start, end)

    def sample_stats(self) -> RawStats:
        """Summary of the raw tier."""
        return self._database().sample_stats()

    # Compacted tier

    def merge_buckets(
        self,
        buckets: Iterable[Bucket],
        sample_ids: Sequence[int],
        timeout: Optional[float] = None,
    ) -> tuple[int, int]:
        """Upsert buckets and delete the aggregated raw samples in one transaction."""
        return self._database().merge_buckets(buckets, sample_ids, timeout)

    def query_buckets(
        self,
        device_ids: Sequence[str],
        datastream_id: str,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
        limit: Optional[int] = None,
    ) -> list[Bucket]:
        """Select buckets with `time_bucket` in `[start, end)`, oldest first."""
        return self._database().query_buckets(device_ids, datastream_id, start, end, limit)

    def count_buckets(
        self, start: Optional[DateTime] = None, end: Optional[DateTime] = None
    ) -> int:
        """Number of buckets with `time_bucket` in `[start, end)`."""
        return self._database().count_buckets(start, end)

    # Compaction checkpoint

    def get_checkpoint(self) -> Optional[Checkpoint]:
        """Load the compaction checkpoint, None if there is none yet."""
        return self._database().get_checkpoint()

    def set_checkpoint(
        self,
        last_check_time: DateTime,
        last_compression_time: Optional[DateTime] = None,
    ) -> Checkpoint:
        """Create or update the compaction checkpoint."""
        return self._database().set_checkpoint(last_check_time, last_compression_time)


def get_database() -> Database:
    """Gets the telemetry database."""
    return Database()
