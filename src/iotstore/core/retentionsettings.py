"""Settings for the retention sweep.

Kept in an extra module to avoid cyclic dependencies on package import.
"""

from pydantic import Field

from iotstore.config.configabc import SettingsBaseModel


class RetentionCommonSettings(SettingsBaseModel):
    """Retention Configuration."""

    keep_raw_hours: float = Field(
        default=1.0,
        ge=0,
        description="Hours raw samples are kept before the retention sweep "
        "folds them into buckets.",
        examples=[1.0],
    )

    batch_size: int = Field(
        default=1000,
        ge=1,
        description="Number of raw samples processed per cleanup transaction.",
        examples=[1000],
    )

    max_batches: int = Field(
        default=100,
        ge=1,
        description="Maximum number of batches processed by one cleanup run.",
        examples=[100],
    )

    batch_pause_sec: float = Field(
        default=0.1,
        ge=0,
        description="Pause between two cleanup batches [s].",
        examples=[0.1],
    )
