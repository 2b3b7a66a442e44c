"""Abstract database interface of the tiered telemetry store.

The database holds three tables:

- the raw tier (`samples`), append-only device samples,
- the compacted tier (`samples_compacted`), one aggregate per device, datastream and bucket,
- the compaction checkpoint (`compaction_state`), a single row shared by all compaction attempts.

All time ranges are half-open `[start, end)`. `None` bounds are unbounded.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Optional, Sequence

from iotstore.core.coreabc import ConfigMixin
from iotstore.core.records import Bucket, Checkpoint, RawStats, Sample
from iotstore.utils.datetimeutil import DateTime, to_datetime


class DatabaseConflictError(RuntimeError):
    """The raw rows of a compaction batch were already removed by a concurrent run."""


class DatabaseTimestamp(str):
    """ISO8601 UTC datetime string used as database timestamp.

    Must always be in UTC, with microsecond resolution, and lexicographically sortable.

    Example:
        "2024-10-27T12:34:56.000000Z" # 2024-10-27 12:34:56
    """

    __slots__ = ()

    @classmethod
    def from_datetime(cls, dt: Any) -> "DatabaseTimestamp":
        return cls(to_datetime(dt, in_timezone="UTC").format("YYYY-MM-DDTHH:mm:ss.SSSSSS[Z]"))

    def to_datetime(self) -> DateTime:
        return to_datetime(str(self), in_timezone="UTC")


def db_timestamp(dt: Optional[Any]) -> Optional[DatabaseTimestamp]:
    """Convert an optional date input to a database timestamp."""
    if dt is None:
        return None
    return DatabaseTimestamp.from_datetime(dt)


class DatabaseABC(ABC, ConfigMixin):
    """Abstract base class for the telemetry database."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Return whether the database connection is open."""
        raise NotImplementedError

    @property
    def storage_path(self) -> Path:
        """Storage path for the database."""
        return self.config.general.data_folder_path

    # Lifecycle

    @abstractmethod
    def provider_id(self) -> str:
        """Return the unique identifier for the database provider.

        To be implemented by derived classes.
        """
        raise NotImplementedError

    @abstractmethod
    def open(self) -> None:
        """Open database connection and create the tables if necessary.

        Raises:
            RuntimeError: If the database cannot be opened.
        """
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        """Close the database connection and cleanup resources."""
        raise NotImplementedError

    # Raw tier

    @abstractmethod
    def insert_sample(
        self,
        device_id: str,
        datastream_id: str,
        value: float,
        payload: Optional[dict[str, Any]],
        created_at: DateTime,
    ) -> Sample:
        """Append a sample to the raw tier.

        Returns:
            Sample: The stored sample including its row id.
        """
        raise NotImplementedError

    @abstractmethod
    def select_samples(
        self,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
        limit: Optional[int] = None,
    ) -> list[Sample]:
        """Select raw samples of all devices in `[start, end)`, oldest first."""
        raise NotImplementedError

    @abstractmethod
    def query_samples(
        self,
        device_ids: Sequence[str],
        datastream_id: str,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
        limit: Optional[int] = None,
    ) -> list[Sample]:
        """Select raw samples of a datastream of the given devices in `[start, end)`.

        Ordered oldest first, at most `limit` samples.
        """
        raise NotImplementedError

    @abstractmethod
    def latest_samples(self, limit: int = 100, device_id: Optional[str] = None) -> list[Sample]:
        """Latest raw samples, newest first, optionally of one device only."""
        raise NotImplementedError

    @abstractmethod
    def count_samples(
        self, start: Optional[DateTime] = None, end: Optional[DateTime] = None
    ) -> int:
        """Number of raw samples in `[start, end)`."""
        raise NotImplementedError

    @abstractmethod
    def sample_stats(self) -> RawStats:
        """Summary of the raw tier."""
        raise NotImplementedError

    # Compacted tier

    @abstractmethod
    def merge_buckets(
        self,
        buckets: Iterable[Bucket],
        sample_ids: Sequence[int],
        timeout: Optional[float] = None,
    ) -> tuple[int, int]:
        """Upsert buckets and delete the aggregated raw samples in one transaction.

        A bucket that already exists is combined with the new one: count weighted average,
        minimum of minima, maximum of maxima and summed counts.

        Args:
            buckets: Buckets aggregated from the raw samples given by `sample_ids`.
            sample_ids: Row ids of the aggregated raw samples.
            timeout: Deadline of the transaction [s]. None means no deadline.

        Returns:
            tuple[int, int]: Number of buckets written and raw samples deleted.

        Raises:
            DatabaseConflictError: If not all raw samples could be deleted. The transaction
                was rolled back.
            sqlite3.Error: On store errors, including an exceeded deadline. The transaction
                was rolled back.
        """
        raise NotImplementedError

    @abstractmethod
    def query_buckets(
        self,
        device_ids: Sequence[str],
        datastream_id: str,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
        limit: Optional[int] = None,
    ) -> list[Bucket]:
        """Select buckets with `time_bucket` in `[start, end)`, oldest first, at most `limit`."""
        raise NotImplementedError

    @abstractmethod
    def count_buckets(
        self, start: Optional[DateTime] = None, end: Optional[DateTime] = None
    ) -> int:
        """Number of buckets with `time_bucket` in `[start, end)`."""
        raise NotImplementedError

    # Compaction checkpoint

    @abstractmethod
    def get_checkpoint(self) -> Optional[Checkpoint]:
        """Load the compaction checkpoint, None if there is none yet."""
        raise NotImplementedError

    @abstractmethod
    def set_checkpoint(
        self,
        last_check_time: DateTime,
        last_compression_time: Optional[DateTime] = None,
    ) -> Checkpoint:
        """Create or update the compaction checkpoint.

        `last_compression_time` is kept unchanged if None is given.
        """
        raise NotImplementedError


class DatabaseBackendABC(DatabaseABC):
    """Abstract base class for database backends.

    Backend instances are owned by the `Database` singleton.
    """

    connection: Any
    lock: Lock
    _is_open: bool

    def __init__(self, **kwargs: Any) -> None:
        """Initialize the DatabaseBackendABC base.

        Args:
            **kwargs: Backend-specific options (ignored by base).
        """
        self.connection = None
        self.lock = Lock()
        self._is_open = False

    @property
    def is_open(self) -> bool:
        """Return whether the database connection is open."""
        return self._is_open
