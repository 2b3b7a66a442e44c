"""Abstract and base classes for configuration."""

from typing import Any, ClassVar

from iotstore.core.pydantic import PydanticBaseModel


class SettingsBaseModel(PydanticBaseModel):
    """Base model class for all settings configurations."""

    # Set by ConfigIoT on setup to give settings access to the full configuration.
    config: ClassVar[Any] = None
