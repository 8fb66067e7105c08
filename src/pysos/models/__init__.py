"""Pydantic models for pysos records."""

from pysos.models._base import SosBaseModel
from pysos.models.location import LOCATION_PRECISION, Location
from pysos.models.profile import SubjectProfile
from pysos.models.signal import ResponderStatus, SignalRecord, proximity_label
from pysos.models.state import (
    ActivationSource,
    SosState,
    SosStatus,
    build_advertised_name,
    format_coordinate,
    sanitize_signal_name,
)
from pysos.models.zone import (
    DEFAULT_RADIUS_METERS,
    MAX_LABEL_LENGTH,
    MAX_MESSAGE_LENGTH,
    MAX_RADIUS_METERS,
    MIN_RADIUS_METERS,
    Zone,
    ZoneDraft,
)

__all__ = [
    "DEFAULT_RADIUS_METERS",
    "LOCATION_PRECISION",
    "MAX_LABEL_LENGTH",
    "MAX_MESSAGE_LENGTH",
    "MAX_RADIUS_METERS",
    "MIN_RADIUS_METERS",
    "ActivationSource",
    "Location",
    "ResponderStatus",
    "SignalRecord",
    "SosBaseModel",
    "SosState",
    "SosStatus",
    "SubjectProfile",
    "Zone",
    "ZoneDraft",
    "build_advertised_name",
    "format_coordinate",
    "proximity_label",
    "sanitize_signal_name",
]
