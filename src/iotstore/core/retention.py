"""Retention sweep of the raw tier.

Raw samples older than the retention cutoff are folded into the compacted tier in bounded
batches. Each batch is aggregated, merged into its buckets and deleted in one transaction,
so a deleted raw sample is always represented in a bucket.
"""

import time
from typing import Any, Callable, Optional

from loguru import logger

from iotstore.core.compaction import Compactor, MaintenanceResult
from iotstore.core.coreabc import ConfigMixin, DatabaseMixin
from iotstore.core.databaseabc import DatabaseConflictError
from iotstore.core.pydantic import PydanticBaseModel, UtcDateTime
from iotstore.utils.datetimeutil import DateTime, to_datetime, utc_now


class SweepResult(PydanticBaseModel):
    """Result of one retention sweep."""

    cutoff: UtcDateTime
    rows_deleted: int = 0
    buckets_written: int = 0
    batches: int = 0


class CleanupResult(MaintenanceResult):
    """Result of a retention sweep at the configured retention threshold.

    `compressed_rows` counts the buckets written, `deleted_rows` the raw samples removed.
    """

    success: bool
    batches: int = 0
    original_records_before_cleanup: Optional[int] = None
    original_records_after_cleanup: Optional[int] = None
    compressed_records: Optional[int] = None
    cleanup_threshold: UtcDateTime


class TierCounts(PydanticBaseModel):
    """Record counts of one tier."""

    last_hour: int
    last_day: int
    last_week: int
    total: int


class DistributionStats(PydanticBaseModel):
    """Record counts of both tiers."""

    original: TierCounts
    compressed: TierCounts
    cleanup_threshold: UtcDateTime


class RetentionSweep(ConfigMixin, DatabaseMixin):
    """Folds raw samples older than the retention cutoff into buckets, batch by batch.

    Args:
        compactor: Compactor used to aggregate and merge a batch.
        sleep: Pause function between batches.
    """

    def __init__(
        self,
        compactor: Optional[Compactor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.compactor = compactor or Compactor()
        self._sleep = sleep

    def cleanup_threshold(self, now: Optional[Any] = None) -> DateTime:
        """Retention cutoff: raw samples written before are swept."""
        now = utc_now() if now is None else to_datetime(now, in_timezone="UTC")
        return now.subtract(seconds=self.config.retention.keep_raw_hours * 3600)

    def cleanup_older_than(
        self,
        cutoff: Any,
        batch_size: Optional[int] = None,
        max_batches: Optional[int] = None,
    ) -> SweepResult:
        """Sweep raw samples written before `cutoff` in batches, oldest first.

        Stops when a batch returns fewer samples than `batch_size` or after `max_batches`.

        Args:
            cutoff: Exclusive upper bound of the swept samples.
            batch_size: Samples per transaction, defaults to `retention.batch_size`.
            max_batches: Maximum number of batches, defaults to `retention.max_batches`.

        Raises:
            ValueError: On invalid arguments.
            sqlite3.Error: On store errors. Batches committed before stay committed.
        """
        cutoff = to_datetime(cutoff, in_timezone="UTC")
        if cutoff.timestamp() < 0:
            raise ValueError(f"Cleanup cutoff {cutoff} is before the epoch.")
        batch_size = self.config.retention.batch_size if batch_size is None else batch_size
        max_batches = self.config.retention.max_batches if max_batches is None else max_batches
        if batch_size < 1 or max_batches < 1:
            raise ValueError(f"Invalid batch size {batch_size} or batch count {max_batches}.")

        result = SweepResult(cutoff=cutoff)
        for batch_no in range(max_batches):
            if batch_no > 0 and self.config.retention.batch_pause_sec > 0:
                self._sleep(self.config.retention.batch_pause_sec)

            samples = self.database.select_samples(end=cutoff, limit=batch_size)
            if not samples:
                break
            try:
                buckets_written, rows_deleted = self.compactor.compact_samples(samples)
            except DatabaseConflictError as e:
                # Another run took part of the batch, read the batch again
                logger.info(f"Cleanup batch superseded by concurrent run: {e}")
                continue
            result.batches += 1
            result.buckets_written += buckets_written
            result.rows_deleted += rows_deleted
            logger.debug(
                f"Cleanup batch {result.batches}: {rows_deleted} raw samples folded into "
                f"{buckets_written} buckets."
            )
            if len(samples) < batch_size:
                break
        else:
            remaining = self.database.count_samples(end=cutoff)
            if remaining:
                logger.warning(
                    f"Cleanup stopped after {max_batches} batches, "
                    f"{remaining} raw samples before {cutoff} remain."
                )

        if result.rows_deleted:
            logger.info(
                f"Cleanup removed {result.rows_deleted} raw samples before {cutoff} "
                f"in {result.batches} batches."
            )
        return result

    def perform_cleanup(self, now: Optional[Any] = None) -> CleanupResult:
        """Sweep raw samples older than `retention.keep_raw_hours`.

        Never raises. Errors are logged and returned.
        """
        threshold = self.cleanup_threshold(now)
        try:
            before = self.database.count_samples()
            sweep = self.cleanup_older_than(threshold)
            return CleanupResult(
                success=True,
                compressed=sweep.rows_deleted > 0,
                compressed_rows=sweep.buckets_written,
                deleted_rows=sweep.rows_deleted,
                batches=sweep.batches,
                original_records_before_cleanup=before,
                original_records_after_cleanup=self.database.count_samples(),
                compressed_records=self.database.count_buckets(),
                cleanup_threshold=threshold,
            )
        except Exception as e:
            logger.exception(f"Cleanup failed: {e}")
            return CleanupResult(success=False, cleanup_threshold=threshold, error=str(e))

    def should_cleanup(self, now: Optional[Any] = None) -> bool:
        """Whether raw samples older than the retention threshold exist."""
        return self.database.count_samples(end=self.cleanup_threshold(now)) > 0

    def distribution_stats(self, now: Optional[Any] = None) -> DistributionStats:
        """Record counts of both tiers for the last hour, day, week and in total."""
        now = utc_now() if now is None else to_datetime(now, in_timezone="UTC")
        since = {
            "last_hour": now.subtract(hours=1),
            "last_day": now.subtract(days=1),
            "last_week": now.subtract(weeks=1),
        }
        original = TierCounts(
            **{key: self.database.count_samples(start=start) for key, start in since.items()},
            total=self.database.count_samples(),
        )
        compressed = TierCounts(
            **{key: self.database.count_buckets(start=start) for key, start in since.items()},
            total=self.database.count_buckets(),
        )
        return DistributionStats(
            original=original,
            compressed=compressed,
            cleanup_threshold=self.cleanup_threshold(now),
        )
