"""Telemetry records stored in the raw and compacted tiers."""

from typing import Any, Optional

from pydantic import Field, computed_field

from iotstore.core.pydantic import PydanticBaseModel, UtcDateTime


class Sample(PydanticBaseModel):
    """A raw telemetry sample of the hot tier.

    Samples are immutable once written. `created_at` is the write time of the sample.
    """

    id: Optional[int] = Field(default=None, description="Database row id.")
    device_id: str = Field(min_length=1, description="Device identifier.")
    datastream_id: str = Field(min_length=1, description="Datastream identifier.")
    value: float = Field(allow_inf_nan=False, description="Sample value.")
    payload: dict[str, Any] = Field(
        default_factory=dict, description="Opaque sample attributes, e.g. 'deviceName'."
    )
    created_at: UtcDateTime = Field(description="Write time of the sample (UTC).")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def device_name(self) -> Optional[str]:
        """Device name given by the payload."""
        name = self.payload.get("deviceName")
        return None if name is None else str(name)


class Bucket(PydanticBaseModel):
    """Aggregate of the samples of one device datastream in one fixed-width time bucket."""

    device_id: str
    datastream_id: str
    avg_value: float
    min_value: float
    max_value: float
    sample_count: int = Field(ge=1)
    time_bucket: UtcDateTime = Field(description="Start of the bucket interval (UTC).")
    created_at: Optional[UtcDateTime] = Field(
        default=None, description="Write time of the bucket row (UTC)."
    )


class Checkpoint(PydanticBaseModel):
    """Compaction checkpoint shared by all compaction attempts."""

    last_check_time: Optional[UtcDateTime] = None
    last_compression_time: Optional[UtcDateTime] = None
    created_at: Optional[UtcDateTime] = None
    updated_at: Optional[UtcDateTime] = None


class RawStats(PydanticBaseModel):
    """Summary of the raw tier."""

    total_records: int = 0
    unique_devices: int = 0
    unique_datastreams: int = 0
    latest_timestamp: Optional[UtcDateTime] = None
