"""pysos - Persistent SOS state with cross-context sync and geofenced area alerts."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pysos")
except PackageNotFoundError:
    __version__ = "0+local"
from pysos.config import SosConfig
from pysos.context import SosContext
from pysos.controller import ReconcileAction, SosStateController
from pysos.exceptions import (
    CapabilityUnavailableError,
    LocationDeniedError,
    LocationError,
    LocationTimeoutError,
    SosConfigError,
    SosError,
    StaleWriteError,
    StorageError,
    StorageParseError,
    StorageWriteError,
)
from pysos.geofence import EARTH_RADIUS_METERS, haversine_meters, match_zone, zone_contains
from pysos.location import LocationProvider, StaticLocationProvider
from pysos.models import (
    ActivationSource,
    Location,
    ResponderStatus,
    SignalRecord,
    SosState,
    SosStatus,
    SubjectProfile,
    Zone,
)
from pysos.publisher import SignalPublisher
from pysos.registry import AlertRegistry
from pysos.state.events import EventBus
from pysos.state.storage import StorageArea, StorageHub
from pysos.state.store import SharedStateStore
from pysos.sync import SyncBridge

__all__ = [
    "EARTH_RADIUS_METERS",
    "ActivationSource",
    "AlertRegistry",
    "CapabilityUnavailableError",
    "EventBus",
    "Location",
    "LocationDeniedError",
    "LocationError",
    "LocationProvider",
    "LocationTimeoutError",
    "ReconcileAction",
    "ResponderStatus",
    "SharedStateStore",
    "SignalPublisher",
    "SignalRecord",
    "SosConfig",
    "SosConfigError",
    "SosContext",
    "SosError",
    "SosState",
    "SosStateController",
    "SosStatus",
    "StaleWriteError",
    "StaticLocationProvider",
    "StorageArea",
    "StorageError",
    "StorageHub",
    "StorageParseError",
    "StorageWriteError",
    "SubjectProfile",
    "SyncBridge",
    "Zone",
    "__version__",
    "haversine_meters",
    "match_zone",
    "zone_contains",
]
