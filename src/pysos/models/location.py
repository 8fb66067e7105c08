"""Geographic point model."""

from __future__ import annotations

from pydantic import Field

from pysos.models._base import SosBaseModel

#: Fixes are rounded to this many decimals (~11 m), like the device reports them.
LOCATION_PRECISION = 4


class Location(SosBaseModel):
    """A point in decimal degrees.

    Parameters
    ----------
    lat : float
        Latitude in ``[-90, 90]``.
    lon : float
        Longitude in ``[-180, 180]``.
    """

    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)

    def rounded(self, precision: int = LOCATION_PRECISION) -> Location:
        return Location(lat=round(self.lat, precision), lon=round(self.lon, precision))
