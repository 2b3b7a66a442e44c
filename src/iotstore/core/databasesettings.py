"""Settings for the telemetry database.

Kept in an extra module to avoid cyclic dependencies on package import.
"""

from typing import List

from pydantic import Field, computed_field, field_validator

from iotstore.config.configabc import SettingsBaseModel

# Valid database providers
database_providers: List[str] = ["SQLite"]


class DatabaseCommonSettings(SettingsBaseModel):
    """Configuration model for database settings."""

    provider: str = Field(
        default="SQLite",
        description="Database provider id of provider to be used.",
        examples=["SQLite"],
    )

    sqlite_file: str = Field(
        default="iotstore.sqlite3",
        description="SQLite database file name, relative to the data folder path. "
        "Use ':memory:' for a transient in-memory database.",
        examples=["iotstore.sqlite3", ":memory:"],
    )

    busy_timeout_sec: float = Field(
        default=5.0,
        ge=0,
        description="Time to wait for a locked database before failing [s].",
        examples=[5.0],
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def providers(self) -> List[str]:
        """Return available database provider ids."""
        return database_providers

    @field_validator("provider", mode="after")
    @classmethod
    def validate_provider(cls, value: str) -> str:
        """Validate provider is in allowed list.

        Raises:
            ValueError: if provider is not in the allowed list.
        """
        if value in database_providers:
            return value
        raise ValueError(
            f"Provider '{value}' is not a valid database provider: {database_providers}."
        )
