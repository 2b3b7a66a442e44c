"""Settings for logging.

Kept in an extra module to avoid cyclic dependencies on package import.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, computed_field, field_validator

from iotstore.config.configabc import SettingsBaseModel
from iotstore.core.logabc import LOGGING_LEVELS


class LoggingCommonSettings(SettingsBaseModel):
    """Logging Configuration."""

    console_level: Optional[str] = Field(
        default=None,
        description="Logging level when logging to console.",
        examples=LOGGING_LEVELS,
    )

    file_level: Optional[str] = Field(
        default=None,
        description="Logging level when logging to file.",
        examples=LOGGING_LEVELS,
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def file_path(self) -> Optional[Path]:
        """Computed log file path based on data folder path."""
        # Config may not be fully set up
        general = getattr(SettingsBaseModel.config, "general", None)
        if general is None or general.data_folder_path is None:
            return None
        return general.data_folder_path / "iotstore.log"

    # Validators
    @field_validator("console_level", "file_level", mode="after")
    @classmethod
    def validate_level(cls, value: Optional[str]) -> Optional[str]:
        """Validate logging level string."""
        if value is None:
            # Nothing to set
            return None
        level = value.upper()
        if level == "NONE":
            return None
        if level not in LOGGING_LEVELS:
            raise ValueError(f"Logging level {value} not supported")
        return level
