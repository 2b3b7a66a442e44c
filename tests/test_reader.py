"""Tests for the tier-aware smart reader."""

import sqlite3
from unittest.mock import patch

import pytest

from iotstore.core.compaction import Compactor
from iotstore.core.reader import (
    DataPoint,
    DataSource,
    SmartReader,
    StoreQueryError,
    downsample_samples,
    merge_points,
)
from iotstore.core.records import Sample


@pytest.fixture
def reader() -> SmartReader:
    return SmartReader()


@pytest.fixture
def scenario(insert_sample, base_time):
    """Samples at :07, :08, :09 compacted into the 10:05 bucket, raw sample at :12."""
    for minute, value in ((7, 1.0), (8, 2.0), (9, 6.0), (12, 4.0)):
        insert_sample(base_time.add(minutes=minute), value=value, payload={"deviceName": "Lab"})
    Compactor().compact(base_time.add(minutes=10))
    return base_time


def query(reader, start, end, now, devices=("dev-1",), **kwargs):
    return reader.query(list(devices), "temperature", start, end, now=now, **kwargs)


def point(created_at, source=DataSource.ORIGINAL, device="dev-1", value=1.0):
    return DataPoint(
        device_id=device,
        datastream_id="temperature",
        value=value,
        created_at=created_at,
        data_source=source,
    )


class TestClassify:
    def test_boundary(self, reader, base_time, config_iot):
        now = base_time.add(hours=1)
        assert reader.compression_boundary(now) == now.subtract(
            seconds=config_iot.compaction.delay_sec
        )

    def test_classify(self, reader, base_time):
        now = base_time.add(minutes=40)  # boundary 10:10
        assert reader.classify(base_time.add(minutes=10), now, now) == DataSource.ORIGINAL
        assert reader.classify(base_time.add(minutes=15), now, now) == DataSource.ORIGINAL
        assert reader.classify(base_time, base_time.add(minutes=9), now) == DataSource.COMPRESSED
        assert reader.classify(base_time, base_time.add(minutes=20), now) == DataSource.MIXED
        assert reader.classify(base_time, base_time.add(minutes=10), now) == DataSource.MIXED

    def test_data_source_info(self, reader, base_time):
        now = base_time.add(minutes=40)
        info = reader.data_source_info(base_time, base_time.add(minutes=5), now)
        assert info["data_source"] == "compressed"
        assert info["compression_boundary"] == base_time.add(minutes=10)
        assert info["delay_sec"] == 1800


class TestQuery:
    def test_mixed_scenario(self, reader, scenario):
        """Range [10:00, 10:20) at boundary 10:10 merges bucket 10:05 and raw sample 10:12."""
        base_time = scenario
        points = query(reader, base_time, base_time.add(minutes=20), now=base_time.add(minutes=40))
        assert [(p.created_at, p.data_source) for p in points] == [
            (base_time.add(minutes=5), "compressed"),
            (base_time.add(minutes=12), "original"),
        ]
        assert points[0].sample_count == 3
        assert points[0].value == pytest.approx(3.0)
        assert points[0].min_value == 1.0
        assert points[0].max_value == 6.0
        assert points[1].value == 4.0
        assert points[1].device_name == "Lab"

    def test_mixed_interval_combines_boundary_bucket(self, reader, insert_sample, base_time):
        """The bucket holding the boundary aggregates its compacted and raw samples."""
        for minute in (10, 11):
            insert_sample(base_time.add(minutes=minute), value=1.0)
        Compactor().compact(base_time.add(minutes=12))
        for minute in (13, 14):
            insert_sample(base_time.add(minutes=minute), value=9.0)

        now = base_time.add(minutes=42)  # boundary 10:12
        points = query(reader, base_time, base_time.add(minutes=20), now, interval="5m")

        assert [(p.created_at, p.data_source) for p in points] == [
            (base_time.add(minutes=10), "mixed")
        ]
        assert points[0].sample_count == 4
        assert points[0].value == pytest.approx(5.0)
        assert points[0].min_value == 1.0
        assert points[0].max_value == 9.0

    def test_hot_range(self, reader, scenario):
        base_time = scenario
        now = base_time.add(minutes=30)
        points = query(reader, base_time.add(minutes=10), base_time.add(minutes=20), now)
        assert [p.data_source for p in points] == ["original"]

    def test_cold_range(self, reader, scenario):
        base_time = scenario
        points = query(reader, base_time, base_time.add(minutes=10), now=base_time.add(hours=2))
        assert [(p.created_at, p.data_source) for p in points] == [
            (base_time.add(minutes=5), "compressed")
        ]

    def test_cold_range_falls_back_to_raw(self, reader, insert_sample, base_time):
        insert_sample(base_time.add(minutes=1), value=5.0)
        points = query(reader, base_time, base_time.add(minutes=10), now=base_time.add(hours=2))
        assert [(p.value, p.data_source) for p in points] == [(5.0, "original")]

    def test_ascending_order_multiple_devices(self, reader, insert_sample, base_time):
        for second in range(0, 3600, 50):
            insert_sample(base_time.add(seconds=second), device_id=f"dev-{second % 3}")
        Compactor().compact(base_time.add(minutes=30))

        devices = ("dev-0", "dev-1", "dev-2")
        now = base_time.add(minutes=55)
        points = query(reader, base_time, base_time.add(hours=1), now, devices=devices)
        timestamps = [p.created_at for p in points]
        assert timestamps == sorted(timestamps)
        assert {p.data_source for p in points} == {"compressed", "original"}

    def test_limit_per_device(self, reader, insert_sample, base_time):
        for minute in range(10):
            insert_sample(base_time.add(minutes=minute), value=minute, device_id="dev-1")
            insert_sample(base_time.add(minutes=minute), value=minute, device_id="dev-2")
        end = base_time.add(hours=1)
        points = query(reader, base_time, end, base_time, devices=("dev-1", "dev-2"), limit=2)
        assert len(points) == 4
        # Oldest rows
        assert [p.value for p in points] == [0, 0, 1, 1]

    def test_interval(self, reader, insert_sample, base_time):
        for minute, value in ((1, 1.0), (2, 3.0), (6, 10.0), (61, 7.0)):
            insert_sample(base_time.add(minutes=minute), value=value)

        points = query(reader, base_time, base_time.add(hours=2), interval="5m", now=base_time)
        assert [(p.created_at.minute, p.value, p.sample_count) for p in points] == [
            (0, 2.0, 2),
            (5, 10.0, 1),
            (0, 7.0, 1),
        ]

        hourly = query(reader, base_time, base_time.add(hours=2), interval="1h", now=base_time)
        assert [p.sample_count for p in hourly] == [3, 1]
        assert hourly[0].value == pytest.approx(14.0 / 3)

    def test_empty_range(self, reader, insert_sample, base_time):
        insert_sample(base_time)
        assert reader.query(["dev-1"], "temperature", base_time, base_time, now=base_time) == []

    def test_compressed_failure_retries_raw(self, reader, database_iot, scenario):
        base_time = scenario
        with patch.object(
            database_iot, "query_buckets", side_effect=sqlite3.OperationalError("interrupted")
        ):
            points = query(reader, base_time, base_time.add(minutes=20), base_time.add(minutes=40))
        # Only the raw tier is left
        assert [p.data_source for p in points] == ["original"]

    def test_raw_failure_raises(self, reader, database_iot, base_time):
        with patch.object(
            database_iot, "query_samples", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            with pytest.raises(StoreQueryError, match="disk I/O error"):
                reader.query(
                    ["dev-1"], "temperature", base_time, base_time.add(minutes=20), now=base_time
                )

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"devices": []},
            {"devices": "dev-1"},
            {"devices": ["dev-1", ""]},
            {"datastream": ""},
            {"start": "2024-01-01T11:00:00Z"},
            {"interval": "7m"},
            {"interval": "often"},
            {"limit": 0},
            {"start": "yesterday"},
        ],
    )
    def test_invalid_arguments(self, reader, kwargs):
        args = {
            "devices": ["dev-1"],
            "datastream": "temperature",
            "start": "2024-01-01T10:00:00Z",
            "end": "2024-01-01T10:30:00Z",
        }
        args.update(kwargs)
        with pytest.raises(ValueError):
            reader.query(**args)


class TestMergePoints:
    def test_dedupe_first_tier_wins(self, base_time):
        cold = [point(base_time, DataSource.COMPRESSED, value=1.0)]
        hot = [
            point(base_time, DataSource.ORIGINAL, value=2.0),
            point(base_time.add(minutes=1), DataSource.ORIGINAL, value=3.0),
        ]
        merged = merge_points(cold, hot)
        assert [(p.value, p.data_source) for p in merged] == [
            (1.0, "compressed"),
            (3.0, "original"),
        ]

    def test_combine_aggregates(self, base_time):
        cold = point(base_time, DataSource.COMPRESSED, value=2.0).model_copy(
            update={"sample_count": 3, "min_value": 1.0, "max_value": 4.0}
        )
        hot = point(base_time, DataSource.ORIGINAL, value=6.0).model_copy(
            update={"sample_count": 1, "min_value": 6.0, "max_value": 6.0, "device_name": "Lab"}
        )
        merged = merge_points([cold], [hot])
        assert len(merged) == 1
        assert merged[0].data_source == "mixed"
        assert merged[0].value == pytest.approx(3.0)
        assert merged[0].sample_count == 4
        assert (merged[0].min_value, merged[0].max_value) == (1.0, 6.0)
        assert merged[0].device_name == "Lab"

    def test_sorted(self, base_time):
        merged = merge_points(
            [point(base_time.add(minutes=2)), point(base_time, device="dev-2")],
            [point(base_time, device="dev-1")],
        )
        assert [(p.created_at.minute, p.device_id) for p in merged] == [
            (0, "dev-1"),
            (0, "dev-2"),
            (2, "dev-1"),
        ]


class TestDownsample:
    def test_empty(self):
        assert downsample_samples([], 5) == []

    def test_device_name(self, base_time):
        samples = [
            Sample(
                device_id="dev-1",
                datastream_id="temperature",
                value=1.0,
                created_at=base_time,
                payload={"deviceName": "Lab"},
            ),
            Sample(device_id="dev-2", datastream_id="temperature", value=2.0, created_at=base_time),
        ]
        points = downsample_samples(samples, 15)
        assert [(p.device_id, p.device_name) for p in points] == [("dev-1", "Lab"), ("dev-2", None)]
        assert all(p.time_bucket == base_time for p in points)
