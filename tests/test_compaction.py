"""Tests for compaction of raw samples into buckets and the compaction gate."""

import sqlite3
from unittest.mock import patch

import pytest

from iotstore.core.compaction import MANUAL_COMPRESS_REWIND_SEC, Compactor, aggregate_samples
from iotstore.core.databaseabc import DatabaseConflictError
from iotstore.core.records import Sample


@pytest.fixture
def compactor() -> Compactor:
    return Compactor()


def bucket_rows(database):
    """Snapshot of all buckets as comparable tuples."""
    return [
        (
            b.device_id,
            b.datastream_id,
            b.time_bucket,
            b.sample_count,
            b.avg_value,
            b.min_value,
            b.max_value,
        )
        for b in database.query_buckets(["dev-1", "dev-2"], "temperature")
    ]


class TestAggregateSamples:
    def test_empty(self):
        assert aggregate_samples([], 5) == []

    def test_groups_per_device_datastream_bucket(self, base_time):
        samples = [
            Sample(
                device_id=device,
                datastream_id="temperature",
                value=value,
                created_at=base_time.add(minutes=minute),
            )
            for device, minute, value in [
                ("dev-2", 7, 10.0),
                ("dev-1", 7, 1.0),
                ("dev-1", 8, 2.0),
                ("dev-1", 9, 6.0),
                ("dev-1", 12, 4.0),
            ]
        ]
        buckets = aggregate_samples(samples, 5)
        assert [(b.device_id, b.time_bucket.minute, b.sample_count) for b in buckets] == [
            ("dev-1", 5, 3),
            ("dev-1", 10, 1),
            ("dev-2", 5, 1),
        ]
        first = buckets[0]
        assert first.avg_value == pytest.approx(3.0)
        assert first.min_value == 1.0
        assert first.max_value == 6.0
        assert first.time_bucket == base_time.add(minutes=5)

    def test_hour_width(self, base_time):
        samples = [
            Sample(
                device_id="dev-1",
                datastream_id="temperature",
                value=float(minute),
                created_at=base_time.add(minutes=minute),
            )
            for minute in range(0, 120, 10)
        ]
        buckets = aggregate_samples(samples, 60)
        assert [b.sample_count for b in buckets] == [6, 6]
        assert buckets[1].time_bucket == base_time.add(hours=1)


class TestCompact:
    def test_scenario_single_bucket(self, compactor, database_iot, insert_sample, base_time):
        """Samples at :07, :08, :09 compact into the 10:05 bucket, :12 stays raw."""
        values = {7: 20.0, 8: 21.0, 9: 25.0, 12: 30.0}
        for minute, value in values.items():
            insert_sample(base_time.add(minutes=minute), value=value)

        result = compactor.compact(base_time.add(minutes=10))

        assert result.rows_read == 3
        assert result.rows_deleted == 3
        assert result.buckets_written == 1
        assert result.start == base_time.add(minutes=10).subtract(hours=1)
        assert not result.superseded

        buckets = database_iot.query_buckets(["dev-1"], "temperature")
        assert len(buckets) == 1
        assert buckets[0].time_bucket == base_time.add(minutes=5)
        assert buckets[0].sample_count == 3
        assert buckets[0].avg_value == pytest.approx((20.0 + 21.0 + 25.0) / 3)
        assert buckets[0].min_value == 20.0
        assert buckets[0].max_value == 25.0

        remaining = database_iot.select_samples()
        assert [s.value for s in remaining] == [30.0]

    def test_lookback_window(self, compactor, database_iot, insert_sample, base_time):
        insert_sample(base_time.subtract(hours=2))
        insert_sample(base_time.add(minutes=1))
        result = compactor.compact(base_time.add(minutes=30))
        assert result.rows_deleted == 1
        assert database_iot.count_samples() == 1

    def test_unbounded(self, compactor, database_iot, insert_sample, base_time, config_iot):
        insert_sample(base_time.subtract(days=2))
        insert_sample(base_time.add(minutes=1))
        assert compactor.compact(base_time.add(minutes=30), unbounded=True).rows_deleted == 2

        insert_sample(base_time.subtract(days=3))
        config_iot.merge_settings_from_dict({"compaction": {"lookback_sec": None}})
        result = compactor.compact(base_time.add(minutes=30))
        assert result.start is None
        assert result.rows_deleted == 1

    def test_idempotent(self, compactor, database_iot, insert_sample, base_time):
        """Compacting the same window twice leaves the buckets unchanged."""
        for second in range(0, 1800, 45):
            insert_sample(base_time.add(seconds=second), value=second % 7)
        before = base_time.add(minutes=30)

        first = compactor.compact(before)
        snapshot = bucket_rows(database_iot)
        second = compactor.compact(before)

        assert first.rows_deleted == 40
        assert second.rows_read == 0
        assert second.rows_deleted == 0
        assert bucket_rows(database_iot) == snapshot

    def test_conservation(self, compactor, database_iot, insert_sample, base_time):
        """Bucket aggregates equal the aggregates of the raw samples in the bucket."""
        raw: dict = {}
        for second in range(0, 1800, 13):
            value = float((second * 37) % 101)
            sample = insert_sample(base_time.add(seconds=second), value=value)
            raw.setdefault(sample.created_at.minute // 5, []).append(value)

        compactor.compact(base_time.add(minutes=30))

        buckets = database_iot.query_buckets(["dev-1"], "temperature")
        assert len(buckets) == len(raw)
        for bucket in buckets:
            values = raw[bucket.time_bucket.minute // 5]
            assert bucket.sample_count == len(values)
            assert bucket.avg_value == pytest.approx(sum(values) / len(values))
            assert bucket.min_value == min(values)
            assert bucket.max_value == max(values)

    def test_two_pass_equals_single_pass(self, compactor, database_iot, insert_sample, base_time):
        """A bucket compacted in two passes equals the single pass aggregate."""
        values = [3.0, 5.0, 11.0, 1.0]
        for second, value in zip((60, 120, 180, 240), values):
            insert_sample(base_time.add(seconds=second), value=value)
        compactor.compact(base_time.add(seconds=150))
        compactor.compact(base_time.add(minutes=5))

        buckets = database_iot.query_buckets(["dev-1"], "temperature")
        assert len(buckets) == 1
        assert buckets[0].sample_count == 4
        assert buckets[0].avg_value == pytest.approx(sum(values) / 4)
        assert buckets[0].min_value == 1.0
        assert buckets[0].max_value == 11.0

    def test_no_premature_deletion(self, compactor, database_iot, insert_sample, base_time):
        """Every sample is represented in one of the tiers after compaction."""
        total = 0
        for second in range(0, 3600, 30):
            insert_sample(base_time.add(seconds=second))
            total += 1
        compactor.compact(base_time.add(minutes=35))
        buckets = database_iot.query_buckets(["dev-1"], "temperature")
        compacted = sum(bucket.sample_count for bucket in buckets)
        assert compacted + database_iot.count_samples() == total
        # Nothing at or after the boundary was touched
        assert database_iot.count_samples(start=base_time.add(minutes=35)) == 50

    def test_superseded(self, compactor, database_iot, insert_sample, base_time):
        """A run that lost against a concurrent run rolls back and changes nothing."""
        for minute in (1, 2, 3):
            insert_sample(base_time.add(minutes=minute))
        stale = database_iot.select_samples()

        compactor.compact(base_time.add(minutes=30))
        snapshot = bucket_rows(database_iot)

        with patch.object(database_iot, "select_samples", return_value=stale):
            result = compactor.compact(base_time.add(minutes=30))
        assert result.superseded
        assert result.rows_deleted == 0
        assert bucket_rows(database_iot) == snapshot

        with pytest.raises(DatabaseConflictError):
            compactor.compact_samples(stale)

    def test_store_error_keeps_raw(self, compactor, database_iot, insert_sample, base_time):
        insert_sample(base_time)
        with patch.object(
            database_iot, "merge_buckets", side_effect=sqlite3.OperationalError("interrupted")
        ):
            with pytest.raises(sqlite3.OperationalError):
                compactor.compact(base_time.add(minutes=30))
        assert database_iot.count_samples() == 1
        assert database_iot.count_buckets() == 0


class TestGate:
    def test_should_compact_without_checkpoint(self, compactor, base_time):
        assert compactor.should_compact(base_time)

    def test_should_compact_interval(self, compactor, base_time, config_iot):
        compactor.mark_compacted(base_time)
        interval = config_iot.compaction.interval_sec
        assert not compactor.should_compact(base_time)
        assert not compactor.should_compact(base_time.add(seconds=interval - 1))
        assert compactor.should_compact(base_time.add(seconds=interval))

    def test_mark_compacted(self, compactor, database_iot, base_time):
        compactor.mark_compacted(base_time, compressed=True)
        compactor.mark_compacted(base_time.add(hours=1))
        checkpoint = database_iot.get_checkpoint()
        assert checkpoint.last_check_time == base_time.add(hours=1)
        assert checkpoint.last_compression_time == base_time

    def test_check_and_compact(self, compactor, database_iot, insert_sample, base_time):
        now = base_time.add(hours=1)
        for minute in (7, 8, 9, 40):
            insert_sample(base_time.add(minutes=minute))

        result = compactor.check_and_compact(now)
        assert result.compressed
        assert result.compressed_rows == 1
        assert result.deleted_rows == 3
        assert result.error is None
        checkpoint = database_iot.get_checkpoint()
        assert checkpoint.last_check_time == now
        assert checkpoint.last_compression_time == now

        # Gated until the interval elapsed
        insert_sample(base_time.add(minutes=10))
        assert compactor.check_and_compact(now.add(minutes=1)).deleted_rows == 0
        assert database_iot.count_samples() == 2

    def test_check_and_compact_empty_advances_gate(self, compactor, database_iot, base_time):
        result = compactor.check_and_compact(base_time)
        assert not result.compressed
        checkpoint = database_iot.get_checkpoint()
        assert checkpoint.last_check_time == base_time
        assert checkpoint.last_compression_time is None

    def test_check_and_compact_force(self, compactor, database_iot, insert_sample, base_time):
        now = base_time.add(hours=1)
        compactor.mark_compacted(now)
        insert_sample(base_time.add(minutes=5))
        assert compactor.check_and_compact(now).deleted_rows == 0
        assert compactor.check_and_compact(now, force=True).deleted_rows == 1

    def test_check_and_compact_error(self, compactor, database_iot, insert_sample, base_time):
        """Errors are returned, not raised, and the checkpoint is not advanced."""
        insert_sample(base_time)
        with patch.object(
            database_iot,
            "merge_buckets",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            result = compactor.check_and_compact(base_time.add(hours=1))
        assert result.error == "database is locked"
        assert not result.compressed
        assert database_iot.get_checkpoint() is None
        assert database_iot.count_samples() == 1

        # Retried on the next check
        assert compactor.check_and_compact(base_time.add(hours=1)).deleted_rows == 1

    def test_manual_compress(self, compactor, database_iot, insert_sample, base_time):
        now = base_time.add(hours=1)
        compactor.mark_compacted(now)
        insert_sample(base_time.add(minutes=5))

        result = compactor.manual_compress(now)
        assert result.deleted_rows == 1
        assert database_iot.get_checkpoint().last_check_time == now
        assert MANUAL_COMPRESS_REWIND_SEC == 3600

    def test_compression_stats(self, compactor, insert_sample, base_time, config_iot):
        now = base_time.add(hours=1)
        stats = compactor.compression_stats(now)
        assert stats.original_records == 0
        assert stats.last_compression_time is None
        assert stats.next_compression_time == now

        insert_sample(base_time.add(minutes=5))
        insert_sample(base_time.add(minutes=50))
        compactor.check_and_compact(now)
        stats = compactor.compression_stats(now)
        assert stats.original_records == 1
        assert stats.compressed_records == 1
        assert stats.last_compression_time == now
        assert stats.next_compression_time == now.add(seconds=config_iot.compaction.interval_sec)
