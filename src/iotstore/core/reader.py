"""Tier-aware reading of telemetry data.

The smart reader selects the tier(s) covering a requested time range relative to the
compaction boundary (`now - compaction.delay_sec`):

- original: the range starts at or after the boundary, read the raw tier.
- compressed: the range ends before the boundary, read the compacted tier. An empty result
  falls back to the raw tier for the same range.
- mixed: read the compacted tier before and the raw tier after the boundary and merge.

Any tier failure is retried once against the raw tier for the full range.
"""

from enum import Enum
from typing import Any, Iterable, Optional, Sequence, Union

import pandas as pd
from loguru import logger
from pydantic import Field

from iotstore.core.coreabc import ConfigMixin, DatabaseMixin
from iotstore.core.databaseabc import DatabaseTimestamp
from iotstore.core.pydantic import PydanticBaseModel, UtcDateTime
from iotstore.core.records import Bucket, Sample
from iotstore.core.timebucket import bucket_of, parse_interval
from iotstore.utils.datetimeutil import DateTime, to_datetime, utc_now


class DataSource(str, Enum):
    ORIGINAL = "original"
    COMPRESSED = "compressed"
    MIXED = "mixed"


class StoreQueryError(RuntimeError):
    """A query failed on the selected tier and on the raw tier retry."""


class DataPoint(PydanticBaseModel):
    """Telemetry value returned to readers."""

    device_id: str
    datastream_id: str
    value: float
    created_at: UtcDateTime = Field(description="Sample time or bucket start (UTC).")
    time_bucket: Optional[UtcDateTime] = None
    device_name: Optional[str] = None
    data_source: DataSource
    sample_count: Optional[int] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    @classmethod
    def from_sample(cls, sample: Sample) -> "DataPoint":
        return cls(
            device_id=sample.device_id,
            datastream_id=sample.datastream_id,
            value=sample.value,
            created_at=sample.created_at,
            device_name=sample.device_name,
            data_source=DataSource.ORIGINAL,
        )

    @classmethod
    def from_bucket(cls, bucket: Bucket) -> "DataPoint":
        return cls(
            device_id=bucket.device_id,
            datastream_id=bucket.datastream_id,
            value=bucket.avg_value,
            created_at=bucket.time_bucket,
            time_bucket=bucket.time_bucket,
            data_source=DataSource.COMPRESSED,
            sample_count=bucket.sample_count,
            min_value=bucket.min_value,
            max_value=bucket.max_value,
        )


def combine_points(first: DataPoint, second: DataPoint) -> DataPoint:
    """Combine two aggregates of the same device, datastream and bucket.

    The value is the mean of both weighted by their sample counts.
    """
    first_count = first.sample_count or 1
    second_count = second.sample_count or 1
    count = first_count + second_count
    return first.model_copy(
        update={
            "value": (first.value * first_count + second.value * second_count) / count,
            "sample_count": count,
            "min_value": min(
                first.value if first.min_value is None else first.min_value,
                second.value if second.min_value is None else second.min_value,
            ),
            "max_value": max(
                first.value if first.max_value is None else first.max_value,
                second.value if second.max_value is None else second.max_value,
            ),
            "device_name": first.device_name or second.device_name,
            "data_source": DataSource.MIXED,
        }
    )


def merge_points(*tiers: Iterable[DataPoint]) -> list[DataPoint]:
    """Merge data points of several tiers ascending by time.

    Aggregates of different tiers for the same device, datastream and bucket are combined.
    Other points with the same device, datastream and timestamp are kept once; the earlier
    tier wins.
    """
    merged: dict[tuple[str, str, DateTime], DataPoint] = {}
    for points in tiers:
        for point in points:
            key = (point.device_id, point.datastream_id, point.created_at)
            existing = merged.get(key)
            if existing is None:
                merged[key] = point
            elif (
                existing.data_source != point.data_source
                and existing.sample_count is not None
                and point.sample_count is not None
            ):
                merged[key] = combine_points(existing, point)
    return sorted(merged.values(), key=lambda point: (point.created_at, point.device_id))


def downsample_samples(samples: Sequence[Sample], width_minutes: int) -> list[DataPoint]:
    """Average raw samples per device, datastream and bucket of `width_minutes`."""
    if not samples:
        return []
    frame = pd.DataFrame(
        {
            "device_id": [sample.device_id for sample in samples],
            "datastream_id": [sample.datastream_id for sample in samples],
            "time_bucket": [
                DatabaseTimestamp.from_datetime(bucket_of(sample.created_at, width_minutes))
                for sample in samples
            ],
            "value": [sample.value for sample in samples],
            "device_name": [sample.device_name for sample in samples],
        }
    )
    grouped = (
        frame.groupby(["time_bucket", "device_id", "datastream_id"], sort=True)
        .agg(
            value=("value", "mean"),
            min_value=("value", "min"),
            max_value=("value", "max"),
            sample_count=("value", "count"),
            device_name=("device_name", "first"),
        )
        .reset_index()
    )
    points = []
    for row in grouped.itertuples(index=False):
        time_bucket = DatabaseTimestamp(row.time_bucket).to_datetime()
        points.append(
            DataPoint(
                device_id=row.device_id,
                datastream_id=row.datastream_id,
                value=float(row.value),
                created_at=time_bucket,
                time_bucket=time_bucket,
                device_name=None if pd.isna(row.device_name) else row.device_name,
                data_source=DataSource.ORIGINAL,
                sample_count=int(row.sample_count),
                min_value=float(row.min_value),
                max_value=float(row.max_value),
            )
        )
    return points


class SmartReader(ConfigMixin, DatabaseMixin):
    """Reads telemetry data from the tier(s) covering the requested range."""

    def compression_boundary(self, now: Optional[Any] = None) -> DateTime:
        """Time before which raw samples are eligible for compaction."""
        now = utc_now() if now is None else to_datetime(now, in_timezone="UTC")
        return now.subtract(seconds=self.config.compaction.delay_sec)

    def classify(self, start: Any, end: Any, now: Optional[Any] = None) -> DataSource:
        """Select the data source for the range `[start, end)`."""
        start = to_datetime(start, in_timezone="UTC")
        end = to_datetime(end, in_timezone="UTC")
        boundary = self.compression_boundary(now)
        if start >= boundary:
            return DataSource.ORIGINAL
        if end < boundary:
            return DataSource.COMPRESSED
        return DataSource.MIXED

    def data_source_info(
        self, start: Any, end: Any, now: Optional[Any] = None
    ) -> dict[str, Any]:
        """Describe the data source selected for a range."""
        boundary = self.compression_boundary(now)
        return {
            "data_source": self.classify(start, end, now).value,
            "compression_boundary": boundary,
            "delay_sec": self.config.compaction.delay_sec,
        }

    def query(
        self,
        devices: Sequence[str],
        datastream: str,
        start: Any,
        end: Any,
        limit: int = 1000,
        interval: Optional[Union[str, int]] = None,
        now: Optional[Any] = None,
    ) -> list[DataPoint]:
        """Query a datastream of the given devices in `[start, end)`.

        Args:
            devices: Device ids.
            datastream: Datastream id.
            start: Range start (inclusive).
            end: Range end (exclusive).
            limit: Maximum number of points per device and tier.
            interval: Optional interval ("1m", "5m", "1h", ...) to average raw samples.
            now: Reference time of the tier selection, defaults to the current time.

        Returns:
            list[DataPoint]: Data points ascending by time.

        Raises:
            ValueError: On invalid arguments.
            StoreQueryError: If the selected tier and the raw tier retry fail.
        """
        if isinstance(devices, str) or not devices:
            raise ValueError("At least one device id is required.")
        if not all(isinstance(device, str) and device for device in devices):
            raise ValueError(f"Invalid device ids: {devices}")
        if not isinstance(datastream, str) or not datastream:
            raise ValueError("Datastream id is required.")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValueError(f"Invalid limit: {limit}")
        start = to_datetime(start, in_timezone="UTC")
        end = to_datetime(end, in_timezone="UTC")
        if start > end:
            raise ValueError(f"Range start {start} is after range end {end}.")
        width = parse_interval(interval)
        devices = list(devices)
        row_limit = limit * len(devices)

        boundary = self.compression_boundary(now)
        source = self.classify(start, end, now)
        logger.debug(f"Query {datastream} of {devices} in [{start}, {end}) from {source.value}.")
        try:
            if source == DataSource.ORIGINAL:
                return self._query_original(devices, datastream, start, end, row_limit, width)
            if source == DataSource.COMPRESSED:
                points = self._query_compressed(devices, datastream, start, end, row_limit)
                if not points:
                    logger.debug("Compacted tier empty for range, reading raw tier.")
                    return self._query_original(
                        devices, datastream, start, end, row_limit, width
                    )
                return points
            return merge_points(
                self._query_compressed(devices, datastream, start, boundary, row_limit),
                self._query_original(devices, datastream, boundary, end, row_limit, width),
            )
        except Exception as e:
            logger.warning(f"Query from {source.value} failed, retrying raw tier: {e}")
            try:
                return self._query_original(devices, datastream, start, end, row_limit, width)
            except Exception as retry_error:
                raise StoreQueryError(
                    f"Query of {datastream} in [{start}, {end}) failed: {retry_error}"
                ) from retry_error

    def _query_original(
        self,
        devices: list[str],
        datastream: str,
        start: DateTime,
        end: DateTime,
        row_limit: int,
        width: Optional[int],
    ) -> list[DataPoint]:
        if width is None:
            samples = self.database.query_samples(devices, datastream, start, end, row_limit)
            return [DataPoint.from_sample(sample) for sample in samples]
        samples = self.database.query_samples(devices, datastream, start, end)
        return downsample_samples(samples, width)[:row_limit]

    def _query_compressed(
        self,
        devices: list[str],
        datastream: str,
        start: DateTime,
        end: DateTime,
        row_limit: int,
    ) -> list[DataPoint]:
        buckets = self.database.query_buckets(devices, datastream, start, end, row_limit)
        return [DataPoint.from_bucket(bucket) for bucket in buckets]
