"""Location capability boundary."""

from __future__ import annotations

import asyncio
from typing import Protocol, runtime_checkable

from pysos.exceptions import CapabilityUnavailableError, LocationDeniedError, LocationTimeoutError
from pysos.models.location import Location


@runtime_checkable
class LocationProvider(Protocol):
    """Source of location fixes.

    ``available`` is ``False`` when the device has no location capability
    at all. ``get_location`` raises
    :class:`~pysos.exceptions.LocationDeniedError` when a fix is refused.
    """

    @property
    def available(self) -> bool: ...

    async def get_location(self) -> Location: ...


class StaticLocationProvider:
    """In-memory provider with a settable position.

    Used by tests and the simulation script to stand in for a device.
    """

    def __init__(
        self,
        location: Location | None = None,
        *,
        available: bool = True,
        delay: float = 0.0,
    ) -> None:
        self._location = location
        self._available = available
        self._delay = delay
        self._denied_reason: str | None = None
        self.requests = 0

    @property
    def available(self) -> bool:
        return self._available

    @available.setter
    def available(self, value: bool) -> None:
        self._available = value

    @property
    def location(self) -> Location | None:
        return self._location

    def move_to(self, lat: float, lon: float) -> None:
        self._location = Location(lat=lat, lon=lon)

    def deny(self, reason: str = "User denied Geolocation") -> None:
        self._denied_reason = reason

    def allow(self) -> None:
        self._denied_reason = None

    def set_delay(self, delay: float) -> None:
        self._delay = delay

    async def get_location(self) -> Location:
        self.requests += 1
        if self._delay > 0:
            await asyncio.sleep(self._delay)
        if not self._available:
            raise CapabilityUnavailableError("Location capability is not available on this device.")
        if self._denied_reason is not None:
            raise LocationDeniedError(f"Geolocation error: {self._denied_reason}.")
        if self._location is None:
            raise LocationDeniedError("Geolocation error: position unavailable.")
        return self._location


async def acquire_location(provider: LocationProvider, *, timeout: float) -> Location:
    """Get one fix, bounded by *timeout* seconds, rounded to 4 decimals."""
    if not provider.available:
        raise CapabilityUnavailableError("Location capability is not available on this device.")
    try:
        location = await asyncio.wait_for(provider.get_location(), timeout)
    except TimeoutError as exc:
        raise LocationTimeoutError(f"Location request timed out after {timeout:g}s.", timeout=timeout) from exc
    return location.rounded()
