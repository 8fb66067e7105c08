"""Responder-facing signal record."""

from __future__ import annotations

from enum import StrEnum

from pysos.models._base import SosBaseModel


class ResponderStatus(StrEnum):
    """Triage status a responder assigns to a received signal."""

    PENDING = "Pending"
    LOCATED = "Located"
    IN_PROGRESS = "Assistance In Progress"
    RESCUED = "Rescued"
    NO_RESPONSE = "No Response"
    FALSE_ALARM = "False Alarm"


def proximity_label(rssi: int | None) -> str:
    """Coarse distance wording for a signal strength in dBm."""
    if rssi is None:
        return "Unknown"
    if rssi > -60:
        return "Very Close"
    if rssi > -75:
        return "Close"
    if rssi > -90:
        return "Medium"
    return "Far"


class SignalRecord(SosBaseModel):
    """Read-only projection of the SOS state, rewritten on every broadcast.

    Parameters
    ----------
    id : str
        ``sos_<activationTimestamp>``: stable for one activation.
    advertised_name : str
        Name the subject advertises.
    display_name : str
        Human-readable subject name.
    lat, lon : float
        Broadcast position.
    signal_quality : int
        Synthetic RSSI in dBm.
    timestamp : int
        Epoch milliseconds of this broadcast.
    status : ResponderStatus
        Responder triage status, preserved across rebroadcasts.
    """

    id: str
    advertised_name: str
    display_name: str
    lat: float
    lon: float
    signal_quality: int
    timestamp: int
    status: ResponderStatus = ResponderStatus.PENDING

    @property
    def proximity(self) -> str:
        return proximity_label(self.signal_quality)
