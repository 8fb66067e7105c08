"""Responder-facing signal projection."""

from __future__ import annotations

import logging
import random

from pysos._clock import Clock, now_ms
from pysos.models.signal import ResponderStatus, SignalRecord
from pysos.models.state import SosState
from pysos.state.events import EventBus, LogChannel, SignalPublished
from pysos.state.store import SharedStateStore

_logger = logging.getLogger(__name__)


class SignalPublisher:
    """Turns the SOS state into the ``currentSignal`` record.

    The record's id is derived from the activation timestamp, so the triage
    status a responder assigned survives every rebroadcast of the same
    activation and resets to ``Pending`` for a new one.
    """

    def __init__(
        self,
        store: SharedStateStore,
        bus: EventBus | None = None,
        *,
        quality_range: tuple[int, int] = (-90, -50),
        clock: Clock = now_ms,
        rng: random.Random | None = None,
    ) -> None:
        low, high = quality_range
        if low > high:
            raise ValueError("quality_range must be (low, high)")
        self._store = store
        self._bus = bus
        self._quality_range = (low, high)
        self._clock = clock
        self._rng = rng or random.Random()
        self._last_record: SignalRecord | None = None

    @property
    def last_record(self) -> SignalRecord | None:
        return self._last_record

    @staticmethod
    def signal_id(state: SosState) -> str:
        return f"sos_{state.activation_timestamp}"

    def publish(self, state: SosState, *, display_name: str | None = None) -> SignalRecord:
        """Write a fresh record for an active *state*."""
        if not state.is_active or state.location is None:
            raise ValueError("Cannot publish a signal for an inactive SOS state")

        signal_id = self.signal_id(state)
        previous = self._store.load_signal()
        status = previous.status if previous is not None and previous.id == signal_id else ResponderStatus.PENDING

        record = SignalRecord(
            id=signal_id,
            advertised_name=state.advertised_name,
            display_name=display_name or state.subject_name_for_signal,
            lat=state.location.lat,
            lon=state.location.lon,
            signal_quality=self._rng.randint(*self._quality_range),
            timestamp=self._clock(),
            status=status,
        )
        self._store.save_signal(record)
        self._last_record = record
        _logger.debug("Published signal %s (%s, %d dBm)", record.id, record.advertised_name, record.signal_quality)
        if self._bus is not None:
            self._bus.publish(SignalPublished(record=record))
        return record

    def clear(self) -> None:
        self._store.clear_signal()
        self._last_record = None
        if self._bus is not None:
            self._bus.publish(SignalPublished(record=None))

    def forget(self, *, announce: bool = False) -> None:
        """Drop the local copy of a record that is already gone from the store.

        With *announce* the removal is published on the bus, as :meth:`clear`
        does, for callers that removed the record themselves.
        """
        self._last_record = None
        if announce and self._bus is not None:
            self._bus.publish(SignalPublished(record=None))

    def current(self) -> SignalRecord | None:
        return self._store.load_signal()

    def update_status(self, signal_id: str, status: ResponderStatus | str) -> SignalRecord | None:
        """Record a responder's triage status on the current signal.

        Returns ``None`` when the current signal is not *signal_id*.
        """
        new_status = ResponderStatus(status)
        record = self._store.load_signal()
        if record is None or record.id != signal_id:
            return None
        updated = record.model_copy(update={"status": new_status})
        self._store.save_signal(updated)
        if self._last_record is not None and self._last_record.id == signal_id:
            self._last_record = updated
        if self._bus is not None:
            self._bus.log(f"Responder: Updated status for {signal_id} to {new_status.value}.", channel=LogChannel.RESPONDER)
        return updated
