"""Settings for caching.

Kept in an extra module to avoid cyclic dependencies on package import.
"""

from pydantic import Field

from iotstore.config.configabc import SettingsBaseModel


class CacheCommonSettings(SettingsBaseModel):
    """Query Result Cache Configuration."""

    enabled: bool = Field(
        default=True,
        description="Cache query results in memory.",
    )

    ttl_sec: float = Field(
        default=5 * 60,
        gt=0,
        description="Time to live of cached query results [s].",
        examples=[300],
    )
