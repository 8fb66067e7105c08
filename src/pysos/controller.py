"""SOS activation state machine.

Statuses::

    inactive --activate--> activating --fix--> active --deactivate--> inactive
                               |
                               +--location failure--> error --activate--> activating
    (no location capability at an attempt) --> unsupported

Two timers run per context:

* the rebroadcast loop (only while active) refreshes the location, the
  advertised name, the persisted state and the responder signal;
* the reconciliation loop (always) checks zone membership and may force an
  activation, promote a manual SOS to central, switch the triggering zone,
  or demote a central SOS back to manual. It never deactivates; only the
  removal of the triggering zone does (see :meth:`handle_zone_removed`).

Every persisted write is a compare-and-set on the store's write version.
Losing a race means adopting whatever is stored.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import StrEnum

from pysos._clock import Clock, now_ms
from pysos.config import SosConfig
from pysos.exceptions import CapabilityUnavailableError, LocationError, StaleWriteError, StorageWriteError
from pysos.geofence import match_zone
from pysos.location import LocationProvider, acquire_location
from pysos.models.location import Location
from pysos.models.profile import SubjectProfile
from pysos.models.state import (
    ActivationSource,
    SosState,
    SosStatus,
    build_advertised_name,
    format_coordinate,
    sanitize_signal_name,
)
from pysos.publisher import SignalPublisher
from pysos.registry import AlertRegistry
from pysos.state.events import EventBus, SosStatusChanged
from pysos.state.store import SharedStateStore

_logger = logging.getLogger(__name__)


class ReconcileAction(StrEnum):
    """Outcome of one reconciliation cycle."""

    SKIPPED = "skipped"
    NONE = "none"
    ACTIVATED = "activated"
    PROMOTED = "promoted"
    SWITCHED = "switched"
    DEMOTED = "demoted"


class SosStateController:
    """Owns the subject's SOS state for one execution context."""

    def __init__(
        self,
        config: SosConfig,
        store: SharedStateStore,
        registry: AlertRegistry,
        publisher: SignalPublisher,
        location_provider: LocationProvider,
        *,
        bus: EventBus | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._config = config
        self._store = store
        self._registry = registry
        self._publisher = publisher
        self._location = location_provider
        self._bus = bus if bus is not None else EventBus()
        self._clock = clock

        self._status = SosStatus.INACTIVE
        self._state: SosState | None = None
        self._version = 0
        self._last_location: Location | None = None
        self._last_error: str | None = None
        # Bumped whenever a pending activation must be abandoned.
        self._attempt = 0
        self._rebroadcast_task: asyncio.Task[None] | None = None
        self._reconcile_task: asyncio.Task[None] | None = None
        self._reconcile_lock = asyncio.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def status(self) -> SosStatus:
        return self._status

    @property
    def state(self) -> SosState | None:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._status == SosStatus.ACTIVE

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def last_location(self) -> Location | None:
        return self._last_location

    @property
    def rebroadcasting(self) -> bool:
        task = self._rebroadcast_task
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Recover a persisted SOS and start the reconciliation loop.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        self._closed = False
        self._version = self._store.sos_version()
        persisted = self._store.load_sos_state()
        if persisted is not None and persisted.is_active:
            _logger.info("Resuming persisted SOS activated at %d", persisted.activation_timestamp)
            self.resume(persisted)
        if self._reconcile_task is None or self._reconcile_task.done():
            self._reconcile_task = loop.create_task(self._reconcile_loop(), name="pysos-reconcile")

    async def close(self) -> None:
        """Stop both timers. The persisted state is left as it is."""
        self._closed = True
        self._attempt += 1
        tasks = [task for task in (self._rebroadcast_task, self._reconcile_task) if task is not None]
        self._rebroadcast_task = None
        self._reconcile_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Activation / deactivation
    # ------------------------------------------------------------------

    async def activate(
        self,
        source: ActivationSource | str = ActivationSource.MANUAL,
        override_message: str | None = None,
        *,
        zone_id: str | None = None,
    ) -> SosStatus:
        """Start an SOS; returns the resulting status.

        A no-op while ``active`` or ``activating``. Location failures end in
        ``error`` (or ``unsupported`` without capability) rather than
        raising. :class:`~pysos.exceptions.StorageWriteError` propagates and
        leaves the status as it was before the call.
        """
        return await self._activate(ActivationSource(source), override_message, zone_id=zone_id)

    async def _activate(
        self,
        source: ActivationSource,
        override_message: str | None,
        *,
        zone_id: str | None,
        location: Location | None = None,
    ) -> SosStatus:
        if self._status in (SosStatus.ACTIVE, SosStatus.ACTIVATING):
            return self._status
        if source == ActivationSource.CENTRAL and not zone_id:
            raise ValueError("a central activation requires zone_id")

        previous = self._status
        if not self._location.available:
            self._mark_unsupported("Location capability is not available on this device.")
            return self._status

        self._attempt += 1
        attempt = self._attempt
        self._last_error = None
        self._set_status(SosStatus.ACTIVATING)

        if location is None:
            try:
                location = await acquire_location(self._location, timeout=self._config.location_timeout)
            except CapabilityUnavailableError as exc:
                if attempt == self._attempt:
                    self._mark_unsupported(str(exc))
                return self._status
            except LocationError as exc:
                if attempt == self._attempt:
                    self._fail_activation(str(exc))
                return self._status

        if attempt != self._attempt or self._status != SosStatus.ACTIVATING:
            _logger.debug("Activation attempt %d superseded", attempt)
            return self._status

        self._last_location = location
        profile = self._store.load_profile()
        message = self._compose_message(source, override_message, profile)
        state = self._compose_state(
            location,
            message=message,
            source=source,
            zone_id=zone_id,
            activation_timestamp=self._clock(),
            profile=profile,
        )
        try:
            committed = self._store.commit_sos_state(state, expected_version=self._version)
        except StaleWriteError as exc:
            _logger.info("Activation lost a write race (%s); adopting stored state", exc)
            self._adopt_persisted()
            if self._status == SosStatus.ACTIVATING:
                self._set_status(SosStatus.INACTIVE)
            return self._status
        except StorageWriteError:
            self._set_status(previous)
            raise

        self._state = committed
        self._version = committed.version
        self._set_status(SosStatus.ACTIVE)
        self._publish_signal(committed, profile)
        self._start_rebroadcast()

        _logger.info("SOS active (%s) as %s", source.value, committed.advertised_name)
        self._bus.log(
            f"SOS activated ({source.value}): broadcasting LAT {format_coordinate(location.lat)}, "
            f"LON {format_coordinate(location.lon)}."
        )
        return self._status

    def deactivate(self) -> None:
        """Stop the SOS everywhere. Idempotent; no writes while inactive.

        :class:`~pysos.exceptions.StorageWriteError` propagates and leaves
        the in-memory state untouched.
        """
        if self._status == SosStatus.INACTIVE:
            return
        self._version = self._store.clear_sos_state(include_signal=True)
        self._attempt += 1
        self._publisher.forget(announce=True)
        self._stop_local()
        _logger.info("SOS deactivated")
        self._bus.log("SOS deactivated: broadcast and alerts stopped.")

    def resume(self, state: SosState) -> None:
        """Re-enter ``active`` from a persisted state, keeping every field."""
        if not state.is_active or state.location is None:
            raise ValueError("Cannot resume an inactive SOS state")
        was_active = self._status == SosStatus.ACTIVE
        self._attempt += 1
        self._state = state
        self._version = self._store.sos_version()
        self._last_location = state.location
        self._last_error = None
        self._set_status(SosStatus.ACTIVE)
        if not was_active or not self.rebroadcasting:
            self._start_rebroadcast()

    def sync_from_store(self, state: SosState | None) -> None:
        """Adopt the durable truth written by another context. Never writes."""
        self._version = self._store.sos_version()
        if state is not None and state.is_active:
            self.resume(state)
            return
        if self._status != SosStatus.ACTIVE:
            # Nothing to stop; a pending activation commits against the new version.
            return
        self._publisher.forget()
        self._stop_local()
        _logger.info("SOS cleared by another context")
        self._bus.log("SOS deactivated from another window.")

    # ------------------------------------------------------------------
    # Zone removal
    # ------------------------------------------------------------------

    def handle_zone_removed(self, zone_id: str) -> bool:
        """Clear a central SOS whose triggering zone was removed.

        Returns ``True`` when the SOS was cleared.
        """
        state = self._state
        if state is None or not state.is_central or state.triggering_zone_id != zone_id:
            return False
        _logger.info("Triggering zone %s removed; clearing central SOS", zone_id)
        self.deactivate()
        self._bus.log(f"Area alert {zone_id} was stopped; central SOS cleared.")
        return True

    def handle_zones_changed(self) -> bool:
        """Apply the cascading rule after an unspecified zone change."""
        state = self._state
        if state is None or not state.is_central or state.triggering_zone_id is None:
            return False
        if self._registry.get(state.triggering_zone_id) is not None:
            return False
        return self.handle_zone_removed(state.triggering_zone_id)

    # ------------------------------------------------------------------
    # Rebroadcast
    # ------------------------------------------------------------------

    async def rebroadcast_once(self) -> SosState | None:
        """Refresh the persisted state and the signal; ``None`` when not active."""
        if self._status != SosStatus.ACTIVE or self._state is None:
            return None
        location = await self._try_location()
        if self._status != SosStatus.ACTIVE or self._state is None:
            return None
        if location is None:
            location = self._state.location
        else:
            self._last_location = location
        if location is None:
            return None
        state = self._state
        return self._rewrite(
            location,
            message=state.message,
            source=state.activation_source or ActivationSource.MANUAL,
            zone_id=state.triggering_zone_id,
        )

    async def _rebroadcast_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.rebroadcast_interval)
            try:
                await self.rebroadcast_once()
            except StorageWriteError:
                _logger.warning("Rebroadcast write failed; retrying next tick", exc_info=True)
            except Exception:
                _logger.warning("Rebroadcast failed", exc_info=True)

    def _start_rebroadcast(self) -> None:
        if self._closed:
            return
        self._cancel_rebroadcast()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _logger.debug("No running event loop; rebroadcast timer not started")
            return
        self._rebroadcast_task = loop.create_task(self._rebroadcast_loop(), name="pysos-rebroadcast")

    def _cancel_rebroadcast(self) -> None:
        task = self._rebroadcast_task
        self._rebroadcast_task = None
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Geofence reconciliation
    # ------------------------------------------------------------------

    async def reconcile_once(self) -> ReconcileAction:
        """Run one reconciliation cycle now."""
        async with self._reconcile_lock:
            return await self._reconcile()

    async def _reconcile(self) -> ReconcileAction:
        if self._status == SosStatus.ACTIVATING:
            return ReconcileAction.SKIPPED
        location = await self._try_location()
        if location is None or self._status == SosStatus.ACTIVATING:
            return ReconcileAction.SKIPPED
        self._last_location = location

        zone = match_zone(location, self._registry.zones())
        state = self._state

        if self._status != SosStatus.ACTIVE or state is None:
            if zone is None:
                return ReconcileAction.NONE
            _logger.info("Subject inside zone %s; forcing SOS activation", zone.id)
            self._bus.log(f"Area alert {zone.id}: you are inside an alert zone, SOS activated centrally.")
            await self._activate(ActivationSource.CENTRAL, zone.message, zone_id=zone.id, location=location)
            return ReconcileAction.ACTIVATED if self.is_active else ReconcileAction.SKIPPED

        if zone is not None:
            if state.is_central and state.triggering_zone_id == zone.id:
                return ReconcileAction.NONE
            action = ReconcileAction.SWITCHED if state.is_central else ReconcileAction.PROMOTED
            committed = self._rewrite(
                location,
                message=zone.message or self._config.central_default_message,
                source=ActivationSource.CENTRAL,
                zone_id=zone.id,
            )
            if committed is None:
                return ReconcileAction.SKIPPED
            _logger.info("SOS now maintained by zone %s (%s)", zone.id, action.value)
            self._bus.log(f"Area alert {zone.id} now maintains your SOS.")
            return action

        if state.is_central:
            committed = self._rewrite(
                location,
                message=self._manual_message(self._store.load_profile()),
                source=ActivationSource.MANUAL,
                zone_id=None,
            )
            if committed is None:
                return ReconcileAction.SKIPPED
            _logger.info("Subject left zone %s; SOS reverted to manual", state.triggering_zone_id)
            self._bus.log("You left the alert zone; your SOS stays active as a manual SOS.")
            return ReconcileAction.DEMOTED

        return ReconcileAction.NONE

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.reconcile_interval)
            try:
                await self.reconcile_once()
            except StorageWriteError:
                _logger.warning("Reconciliation write failed; retrying next tick", exc_info=True)
            except Exception:
                _logger.warning("Reconciliation failed", exc_info=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _set_status(self, status: SosStatus, reason: str | None = None) -> None:
        previous = self._status
        self._status = status
        if previous != status:
            _logger.debug("SOS status %s -> %s", previous.value, status.value)
            self._bus.publish(SosStatusChanged(previous=previous, current=status, reason=reason))

    def _mark_unsupported(self, reason: str) -> None:
        self._last_error = reason
        self._set_status(SosStatus.UNSUPPORTED, reason)
        _logger.warning("SOS unsupported: %s", reason)
        self._bus.log(f"SOS activation failed: {reason}")

    def _fail_activation(self, reason: str) -> None:
        self._last_error = reason
        self._state = None
        try:
            self._version = self._store.clear_sos_state(include_signal=True)
            self._publisher.forget(announce=True)
        except StorageWriteError:
            _logger.warning("Could not clear persisted SOS after a failed activation", exc_info=True)
        self._set_status(SosStatus.ERROR, reason)
        _logger.warning("SOS activation failed: %s", reason)
        self._bus.log(f"SOS activation failed: {reason}")

    def _stop_local(self) -> None:
        self._cancel_rebroadcast()
        self._state = None
        self._set_status(SosStatus.INACTIVE)

    def _adopt_persisted(self) -> None:
        self.sync_from_store(self._store.load_sos_state())

    async def _try_location(self) -> Location | None:
        try:
            return await acquire_location(self._location, timeout=self._config.location_timeout)
        except (CapabilityUnavailableError, LocationError) as exc:
            _logger.debug("No location fix this cycle: %s", exc)
            return None

    def _manual_message(self, profile: SubjectProfile) -> str:
        custom = (profile.custom_sos_message or "").strip()
        return custom or self._config.default_message

    def _compose_message(
        self,
        source: ActivationSource,
        override_message: str | None,
        profile: SubjectProfile,
    ) -> str:
        if source == ActivationSource.CENTRAL:
            override = (override_message or "").strip()
            return override or self._config.central_default_message
        return self._manual_message(profile)

    def _compose_state(
        self,
        location: Location,
        *,
        message: str,
        source: ActivationSource,
        zone_id: str | None,
        activation_timestamp: int,
        profile: SubjectProfile,
    ) -> SosState:
        signal_name = sanitize_signal_name(profile.name, self._config.default_subject_name)
        return SosState(
            is_active=True,
            location=location,
            subject_name_for_signal=signal_name,
            advertised_name=build_advertised_name(signal_name, location),
            message=message,
            activation_timestamp=activation_timestamp,
            activation_source=source,
            triggering_zone_id=zone_id if source == ActivationSource.CENTRAL else None,
            version=self._version,
        )

    def _rewrite(
        self,
        location: Location,
        *,
        message: str,
        source: ActivationSource,
        zone_id: str | None,
    ) -> SosState | None:
        """Commit an updated active state, keeping the activation timestamp.

        Returns ``None`` when the write race was lost (the stored state has
        been adopted instead).
        """
        if self._state is None:
            return None
        profile = self._store.load_profile()
        state = self._compose_state(
            location,
            message=message,
            source=source,
            zone_id=zone_id,
            activation_timestamp=self._state.activation_timestamp,
            profile=profile,
        )
        try:
            committed = self._store.commit_sos_state(state, expected_version=self._version)
        except StaleWriteError as exc:
            _logger.info("Rebroadcast lost a write race (%s); adopting stored state", exc)
            self._adopt_persisted()
            return None
        self._state = committed
        self._version = committed.version
        self._publish_signal(committed, profile)
        return committed

    def _publish_signal(self, state: SosState, profile: SubjectProfile) -> None:
        display_name = (profile.name or "").strip() or self._config.default_subject_name
        try:
            self._publisher.publish(state, display_name=display_name)
        except StorageWriteError:
            _logger.warning("Signal record write failed; it will be refreshed on the next rebroadcast", exc_info=True)
