"""Compaction of raw samples into fixed-width buckets.

Raw samples older than the compaction delay are grouped per device, datastream and bucket,
aggregated to count, mean, minimum and maximum, and moved to the compacted tier. Bucket
upsert and raw delete happen in one transaction, so no raw sample is ever deleted without
its bucket.

Compaction attempts are gated by the compaction checkpoint: at most one attempt per
`compaction.interval_sec`. The gate is cooperative, not a lock. Two concurrent attempts may
both pass the gate; the loser finds its raw rows already deleted and rolls back.
"""

from typing import Any, Optional, Sequence

import pandas as pd
from loguru import logger

from iotstore.core.coreabc import ConfigMixin, DatabaseMixin
from iotstore.core.databaseabc import DatabaseConflictError, DatabaseTimestamp
from iotstore.core.pydantic import PydanticBaseModel, UtcDateTime
from iotstore.core.records import Bucket, Sample
from iotstore.core.timebucket import bucket_of
from iotstore.utils.datetimeutil import DateTime, to_datetime, utc_now

# Rewind of the checkpoint by a manual compression request
MANUAL_COMPRESS_REWIND_SEC = 60 * 60


class CompactionResult(PydanticBaseModel):
    """Result of one compaction run."""

    start: Optional[UtcDateTime] = None
    end: UtcDateTime
    rows_read: int = 0
    buckets_written: int = 0
    rows_deleted: int = 0
    superseded: bool = False


class MaintenanceResult(PydanticBaseModel):
    """Result of a compaction check or forced compaction."""

    compressed: bool = False
    compressed_rows: int = 0
    deleted_rows: int = 0
    error: Optional[str] = None


class CompressionStats(PydanticBaseModel):
    """Compaction status."""

    original_records: int
    compressed_records: int
    last_compression_time: Optional[UtcDateTime] = None
    next_compression_time: Optional[UtcDateTime] = None


def aggregate_samples(samples: Sequence[Sample], width_minutes: int) -> list[Bucket]:
    """Aggregate raw samples per device, datastream and bucket.

    Args:
        samples: Raw samples to aggregate.
        width_minutes: Bucket width in minutes.

    Returns:
        list[Bucket]: One bucket per group, ordered by device, datastream and bucket start.
    """
    if not samples:
        return []

    frame = pd.DataFrame(
        {
            "device_id": [sample.device_id for sample in samples],
            "datastream_id": [sample.datastream_id for sample in samples],
            "value": [sample.value for sample in samples],
            # Sortable UTC strings keep pandas away from timezone handling
            "time_bucket": [
                DatabaseTimestamp.from_datetime(bucket_of(sample.created_at, width_minutes))
                for sample in samples
            ],
        }
    )
    grouped = frame.groupby(["device_id", "datastream_id", "time_bucket"], sort=True)["value"].agg(
        ["mean", "min", "max", "count"]
    )
    return [
        Bucket(
            device_id=device_id,
            datastream_id=datastream_id,
            avg_value=float(row["mean"]),
            min_value=float(row["min"]),
            max_value=float(row["max"]),
            sample_count=int(row["count"]),
            time_bucket=DatabaseTimestamp(time_bucket).to_datetime(),
        )
        for (device_id, datastream_id, time_bucket), row in grouped.iterrows()
    ]


class Compactor(ConfigMixin, DatabaseMixin):
    """Moves aged raw samples into the compacted tier."""

    def compact_samples(self, samples: Sequence[Sample]) -> tuple[int, int]:
        """Aggregate samples into buckets and delete them from the raw tier in one transaction.

        Returns:
            tuple[int, int]: Number of buckets written and raw samples deleted.

        Raises:
            DatabaseConflictError: If a concurrent run already compacted some of the samples.
        """
        if not samples:
            return 0, 0
        buckets = aggregate_samples(samples, self.config.compaction.bucket_minutes)
        return self.database.merge_buckets(
            buckets,
            [sample.id for sample in samples],
            timeout=self.config.compaction.batch_timeout_sec,
        )

    def compact(self, before: Any, unbounded: bool = False) -> CompactionResult:
        """Compact raw samples written before `before`.

        The window starts `compaction.lookback_sec` before `before`, unless the lookback is
        disabled in the configuration or `unbounded` is requested.

        Args:
            before: Exclusive end of the compaction window.
            unbounded: Compact all raw samples before `before`.

        Returns:
            CompactionResult: Window and counts. A run that lost against a concurrent run is
            reported as superseded with zero counts.

        Raises:
            sqlite3.Error: On store errors. Nothing was written or deleted.
        """
        end = to_datetime(before, in_timezone="UTC")
        lookback_sec = self.config.compaction.lookback_sec
        start = None if unbounded or lookback_sec is None else end.subtract(seconds=lookback_sec)

        samples = self.database.select_samples(start, end)
        result = CompactionResult(start=start, end=end, rows_read=len(samples))
        if not samples:
            logger.debug(f"No raw samples to compact in [{start}, {end}).")
            return result

        try:
            result.buckets_written, result.rows_deleted = self.compact_samples(samples)
        except DatabaseConflictError as e:
            logger.info(f"Compaction of [{start}, {end}) superseded by concurrent run: {e}")
            result.superseded = True
            return result

        logger.info(
            f"Compacted {result.rows_deleted} raw samples into {result.buckets_written} buckets "
            f"in [{start}, {end})."
        )
        return result

    # Gate

    def should_compact(self, now: Optional[Any] = None) -> bool:
        """Whether a gated compaction attempt is due.

        True if there is no checkpoint yet or the last check is at least
        `compaction.interval_sec` ago.
        """
        now = utc_now() if now is None else to_datetime(now, in_timezone="UTC")
        checkpoint = self.database.get_checkpoint()
        if checkpoint is None or checkpoint.last_check_time is None:
            return True
        elapsed = now - checkpoint.last_check_time
        return elapsed.total_seconds() >= self.config.compaction.interval_sec

    def mark_compacted(self, now: Optional[Any] = None, compressed: bool = False) -> None:
        """Advance the checkpoint to `now`.

        `last_compression_time` is only advanced if the attempt compacted samples.
        """
        now = utc_now() if now is None else to_datetime(now, in_timezone="UTC")
        self.database.set_checkpoint(now, now if compressed else None)

    def check_and_compact(
        self, now: Optional[Any] = None, force: bool = False
    ) -> MaintenanceResult:
        """Gate check, compaction of samples older than the delay, checkpoint update.

        Never raises. Errors are logged and returned; the checkpoint is not advanced so the
        attempt is repeated on the next check.

        Args:
            now: Time of the check, defaults to the current time.
            force: Bypass the gate.
        """
        try:
            now = utc_now() if now is None else to_datetime(now, in_timezone="UTC")
            if not force and not self.should_compact(now):
                return MaintenanceResult()

            before = now.subtract(seconds=self.config.compaction.delay_sec)
            result = self.compact(before)
            compressed = result.rows_deleted > 0
            self.mark_compacted(now, compressed=compressed)
            return MaintenanceResult(
                compressed=compressed,
                compressed_rows=result.buckets_written,
                deleted_rows=result.rows_deleted,
            )
        except Exception as e:
            logger.exception(f"Compaction check failed: {e}")
            return MaintenanceResult(error=str(e))

    def manual_compress(self, now: Optional[Any] = None) -> MaintenanceResult:
        """Rewind the checkpoint and run a gated compaction check."""
        now = utc_now() if now is None else to_datetime(now, in_timezone="UTC")
        rewind_sec = max(MANUAL_COMPRESS_REWIND_SEC, self.config.compaction.interval_sec)
        self.database.set_checkpoint(now.subtract(seconds=rewind_sec))
        return self.check_and_compact(now)

    def compression_stats(self, now: Optional[Any] = None) -> CompressionStats:
        """Record counts of both tiers and the compaction schedule."""
        now = utc_now() if now is None else to_datetime(now, in_timezone="UTC")
        checkpoint = self.database.get_checkpoint()
        next_time: DateTime = now
        last_compression_time = None
        if checkpoint is not None:
            last_compression_time = checkpoint.last_compression_time
            if checkpoint.last_check_time is not None:
                next_time = checkpoint.last_check_time.add(
                    seconds=self.config.compaction.interval_sec
                )
        return CompressionStats(
            original_records=self.database.count_samples(),
            compressed_records=self.database.count_buckets(),
            last_compression_time=last_compression_time,
            next_compression_time=next_time,
        )
