"""Mass-alert zone registry."""

from __future__ import annotations

import logging
import secrets

from pysos._clock import Clock, now_ms
from pysos.exceptions import StorageWriteError
from pysos.models.zone import DEFAULT_RADIUS_METERS, Zone, ZoneDraft
from pysos.state.events import EventBus, LogChannel, ZoneChangeKind, ZonesChanged
from pysos.state.store import SharedStateStore

_logger = logging.getLogger(__name__)


class AlertRegistry:
    """Owns the authority-defined zones.

    The collection lives in the durable store and is always rewritten as a
    whole, so other contexts never observe a partial update. New zones are
    prepended: storage order (used for geofence evaluation) is newest first,
    which is independent from the display order of :meth:`list_zones`.
    """

    def __init__(self, store: SharedStateStore, bus: EventBus, *, clock: Clock = now_ms) -> None:
        self._store = store
        self._bus = bus
        self._clock = clock

    def zones(self) -> list[Zone]:
        """Zones in evaluation (storage) order."""
        return self._store.load_zones()

    def list_zones(self) -> list[Zone]:
        """Zones for display, newest first by ``created_at``."""
        return sorted(self.zones(), key=lambda zone: zone.created_at, reverse=True)

    def get(self, zone_id: str) -> Zone | None:
        return next((zone for zone in self.zones() if zone.id == zone_id), None)

    def create(
        self,
        *,
        lat: float,
        lon: float,
        radius_meters: float = DEFAULT_RADIUS_METERS,
        message: str | None = None,
        label: str | None = None,
    ) -> Zone:
        """Validate, register and persist a new zone.

        Raises ``pydantic.ValidationError`` for out-of-range input and
        :class:`~pysos.exceptions.StorageWriteError` when the store refuses
        the write (the registry is then unchanged).
        """
        draft = ZoneDraft(lat=lat, lon=lon, radius_meters=radius_meters, message=message, label=label)
        created_at = self._clock()
        created: list[Zone] = []

        def _prepend(zones: list[Zone]) -> list[Zone]:
            created[:] = [Zone(**draft.model_dump(), id=self._new_id(created_at, zones), created_at=created_at)]
            return [*created, *zones]

        try:
            self._store.update_zones(_prepend)
        except StorageWriteError:
            self._bus.log("Mass Alert Manager: Error creating alert - storage issue.", channel=LogChannel.RESPONDER)
            raise
        zone = created[0]

        _logger.info("Created zone %s at (%s, %s) r=%gm", zone.id, zone.lat, zone.lon, zone.radius_meters)
        region = f" Region: {zone.label}." if zone.label else ""
        self._bus.log(
            f"Mass Alert Manager: Created alert ID {zone.id} for LAT {zone.lat}, LON {zone.lon}, "
            f'Radius {zone.radius_meters:g}m.{region} Message: "{zone.message or "None"}"',
            channel=LogChannel.RESPONDER,
        )
        self._bus.publish(ZonesChanged(kind=ZoneChangeKind.CREATED, zone_id=zone.id))
        return zone

    def remove(self, zone_id: str) -> Zone | None:
        """Remove a zone; returns it, or ``None`` if it was not registered.

        Publishes :class:`~pysos.state.events.ZonesChanged`, which drives the
        controller's cascading-removal rule.
        """
        removed: list[Zone] = []

        def _without(zones: list[Zone]) -> list[Zone]:
            removed[:] = [zone for zone in zones if zone.id == zone_id]
            return [zone for zone in zones if zone.id != zone_id]

        self._store.update_zones(_without)
        if not removed:
            _logger.debug("Zone %s not registered; nothing to remove", zone_id)
            return None
        target = removed[0]

        _logger.info("Removed zone %s", zone_id)
        self._bus.log(
            f"Mass Alert Manager: Stopped alert ID {zone_id} "
            f"(LAT {target.lat}, LON {target.lon}, Radius {target.radius_meters:g}m).",
            channel=LogChannel.RESPONDER,
        )
        self._bus.publish(ZonesChanged(kind=ZoneChangeKind.REMOVED, zone_id=zone_id))
        return target

    @staticmethod
    def _new_id(created_at: int, existing: list[Zone]) -> str:
        taken = {zone.id for zone in existing}
        while True:
            candidate = f"zone_{created_at}_{secrets.token_hex(3)}"
            if candidate not in taken:
                return candidate
