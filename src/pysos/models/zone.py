"""Alert zone models."""

from __future__ import annotations

from typing import Any

from pydantic import Field, field_validator

from pysos.models._base import SosBaseModel

DEFAULT_RADIUS_METERS = 1000.0
MIN_RADIUS_METERS = 1.0
MAX_RADIUS_METERS = 50_000.0
MAX_MESSAGE_LENGTH = 200
MAX_LABEL_LENGTH = 100


class ZoneDraft(SosBaseModel):
    """Authority input for a new zone (validated, not yet registered)."""

    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)
    radius_meters: float = Field(default=DEFAULT_RADIUS_METERS, ge=MIN_RADIUS_METERS, le=MAX_RADIUS_METERS)
    message: str | None = Field(default=None, max_length=MAX_MESSAGE_LENGTH)
    label: str | None = Field(default=None, max_length=MAX_LABEL_LENGTH)

    @field_validator("message", "label", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value


class Zone(ZoneDraft):
    """A registered circular geofence.

    Parameters
    ----------
    id : str
        Unique, opaque identifier.
    created_at : int
        Epoch milliseconds at registration.
    """

    id: str = Field(min_length=1)
    created_at: int = Field(ge=0)
