"""Base schemas: UTC serialization for responses, frozen config models."""

from datetime import datetime
from typing import Any, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    SerializerFunctionWrapHandler,
    ValidationError,
    field_serializer,
)

from camhub.exceptions import ConfigurationError
from camhub.utils.timezone import to_utc_isoformat


def serialize_datetime(dt: datetime) -> str:
    """ISO 8601 in UTC with a ``Z`` suffix. Naive values are taken as UTC."""
    return to_utc_isoformat(dt)


class UTCBaseModel(BaseModel):
    """API response base. Datetime fields render through ``serialize_datetime``
    in both ``model_dump`` and JSON output."""

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("*", mode="wrap")
    def _utc_datetimes(self, value: Any, handler: SerializerFunctionWrapHandler) -> Any:
        if isinstance(value, datetime):
            return serialize_datetime(value)
        return handler(value)


class FrozenConfig(BaseModel):
    """Immutable configuration model that rejects unknown fields."""

    model_config = ConfigDict(frozen=True, extra="forbid", use_enum_values=False)


ConfigT = TypeVar("ConfigT", bound=FrozenConfig)


def merge_config(base: ConfigT, **changes: Any) -> ConfigT:
    """Return a copy of ``base`` with ``changes`` applied and validated.

    Raises:
        ConfigurationError: If a change names an unknown field or fails
            validation.
    """
    model = type(base)
    unknown = set(changes) - set(model.model_fields)
    if unknown:
        raise ConfigurationError(
            f"Unknown {model.__name__} field(s): {', '.join(sorted(unknown))}"
        )
    data = base.model_dump()
    data.update(changes)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {model.__name__}: {e}") from e
