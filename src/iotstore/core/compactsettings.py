"""Settings for compaction.

Kept in an extra module to avoid cyclic dependencies on package import.
"""

from typing import Optional

from pydantic import Field, field_validator

from iotstore.config.configabc import SettingsBaseModel
from iotstore.core.timebucket import validate_bucket_width


class CompactionCommonSettings(SettingsBaseModel):
    """Compaction Configuration.

    Raw samples older than `delay_sec` are aggregated into fixed-width buckets of
    `bucket_minutes`. Compaction attempts are gated to at most one per `interval_sec`.
    """

    enabled: bool = Field(
        default=True,
        description="Trigger a gated compaction check after each appended sample.",
    )

    interval_sec: int = Field(
        default=30 * 60,
        ge=1,
        description="Minimum interval between two gated compaction attempts [s].",
        examples=[1800],
    )

    delay_sec: int = Field(
        default=30 * 60,
        ge=0,
        description="Age of raw samples before they become eligible for compaction [s]. "
        "Should exceed the ingestion latency.",
        examples=[1800],
    )

    lookback_sec: Optional[int] = Field(
        default=60 * 60,
        ge=1,
        description="Window before the compaction boundary that one compaction run covers [s]. "
        "None means unbounded.",
        examples=[3600, None],
    )

    bucket_minutes: int = Field(
        default=5,
        description="Width of the compaction buckets [min].",
        examples=[5, 15, 60],
    )

    batch_timeout_sec: float = Field(
        default=30.0,
        gt=0,
        description="Deadline for a single compaction or cleanup transaction [s].",
        examples=[30.0],
    )

    @field_validator("bucket_minutes", mode="after")
    @classmethod
    def validate_bucket_minutes(cls, value: int) -> int:
        """Ensure the bucket width yields hour or day anchored buckets."""
        validate_bucket_width(value)
        return value
