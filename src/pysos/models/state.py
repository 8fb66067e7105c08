"""SOS activation state model and broadcast-name helpers."""

from __future__ import annotations

import re
from enum import StrEnum

from pydantic import Field, model_validator

from pysos.models._base import SosBaseModel
from pysos.models.location import LOCATION_PRECISION, Location

_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")
_MAX_SIGNAL_NAME_LENGTH = 20


class SosStatus(StrEnum):
    """Controller status as shown to the subject."""

    INACTIVE = "inactive"
    ACTIVATING = "activating"
    ACTIVE = "active"
    ERROR = "error"
    UNSUPPORTED = "unsupported"


class ActivationSource(StrEnum):
    """Who started (or currently maintains) the SOS."""

    MANUAL = "manual"
    CENTRAL = "central"


class SosState(SosBaseModel):
    """Persisted SOS state (one per device).

    Parameters
    ----------
    is_active : bool
        Whether an SOS is in force.
    location : Location or None
        Last known fix. Required while active.
    subject_name_for_signal : str
        Sanitized name used in the broadcast.
    advertised_name : str
        ``SOS_<name>_<lat>_<lon>``.
    message : str
        Distress message currently in force.
    activation_timestamp : int
        Epoch milliseconds of the first activation. Preserved across
        rebroadcasts, source switches and resumes.
    activation_source : ActivationSource or None
        ``manual`` or ``central``.
    triggering_zone_id : str or None
        Zone that forced the activation. Set iff the source is ``central``.
    version : int
        Store write version this record was committed under.
    """

    is_active: bool = False
    location: Location | None = None
    subject_name_for_signal: str = ""
    advertised_name: str = ""
    message: str = ""
    activation_timestamp: int = Field(default=0, ge=0)
    activation_source: ActivationSource | None = None
    triggering_zone_id: str | None = None
    version: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_invariants(self) -> SosState:
        if self.is_active and self.location is None:
            raise ValueError("an active SOS state requires a location")
        if self.activation_source == ActivationSource.CENTRAL and not self.triggering_zone_id:
            raise ValueError("a central activation requires triggeringZoneId")
        if self.triggering_zone_id is not None and self.activation_source != ActivationSource.CENTRAL:
            raise ValueError("triggeringZoneId is only valid for central activations")
        return self

    @property
    def is_central(self) -> bool:
        return self.activation_source == ActivationSource.CENTRAL


def sanitize_signal_name(name: str | None, default: str = "User") -> str:
    """Reduce a display name to something safe inside an advertised name.

    Whitespace runs become ``_``, anything outside ``[A-Za-z0-9_-]`` is
    dropped, and the result is capped at 20 characters.
    """
    if not name:
        return default
    collapsed = "_".join(name.split())
    cleaned = _NAME_UNSAFE.sub("", collapsed).strip("_-")
    cleaned = cleaned[:_MAX_SIGNAL_NAME_LENGTH]
    return cleaned or default


def format_coordinate(value: float) -> str:
    """Shortest decimal form of a rounded coordinate (``34.05``, ``-118.2437``, ``12``)."""
    text = f"{round(value, LOCATION_PRECISION):.{LOCATION_PRECISION}f}".rstrip("0").rstrip(".")
    if text in ("-0", ""):
        return "0"
    return text


def build_advertised_name(signal_name: str, location: Location) -> str:
    return f"SOS_{signal_name}_{format_coordinate(location.lat)}_{format_coordinate(location.lon)}"
