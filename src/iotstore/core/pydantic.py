"""Pydantic base models with pendulum datetime support.

This module extends Pydantic's functionality to handle `pendulum.DateTime` fields, offering
seamless serialization and deserialization into ISO 8601 format. All telemetry timestamps
are normalized to UTC on validation.

Key Features:
- `UtcDateTime`: annotated field type that accepts any date input understood by
  `to_datetime` and stores a timezone-aware UTC `pendulum.DateTime`.
- JSON serialization of datetimes as ISO 8601 strings.
- `merge_models` to merge partial settings into an existing model.
"""

import json
from copy import deepcopy
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, PlainSerializer

from iotstore.utils.datetimeutil import DateTime, to_datetime


def _validate_utc_datetime(value: Any) -> Any:
    if value is None:
        return value
    return to_datetime(value, in_timezone="UTC")


UtcDateTime = Annotated[
    DateTime,
    BeforeValidator(_validate_utc_datetime),
    PlainSerializer(lambda dt: dt.to_iso8601_string(), return_type=str, when_used="json"),
]
"""Timezone-aware UTC `pendulum.DateTime` field type."""


def merge_models(source: BaseModel, update_dict: dict[str, Any]) -> dict[str, Any]:
    """Merge a Pydantic model instance with an update dictionary.

    Values in update_dict (including None) override source values.
    Nested dictionaries are merged recursively.
    Lists in update_dict replace source lists entirely.

    Args:
        source (BaseModel): Pydantic model instance serving as the source.
        update_dict (dict[str, Any]): Dictionary with updates to apply.

    Returns:
        dict[str, Any]: Merged dictionary representing combined model data.
    """

    def deep_merge(source_data: Any, update_data: Any) -> Any:
        if isinstance(source_data, dict) and isinstance(update_data, dict):
            merged = dict(source_data)
            for key, update_value in update_data.items():
                if key in merged:
                    merged[key] = deep_merge(merged[key], update_value)
                else:
                    merged[key] = update_value
            return merged

        return update_data

    source_dict = source.model_dump(exclude_unset=True)
    return deep_merge(source_dict, deepcopy(update_dict))


class PydanticBaseModel(BaseModel):
    """Base model with pendulum datetime support."""

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        use_enum_values=True,
        validate_assignment=True,
    )

    def model_dump_json(self, *args: Any, indent: Optional[int] = None, **kwargs: Any) -> str:
        data = self.model_dump(*args, mode="json", **kwargs)
        return json.dumps(data, indent=indent, default=str)
