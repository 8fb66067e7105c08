from __future__ import annotations

import asyncio
import math
import random
from typing import Any

import pytest

from pysos.config import SosConfig
from pysos.context import SosContext
from pysos.controller import ReconcileAction, SosStateController
from pysos.exceptions import StorageWriteError
from pysos.geofence import EARTH_RADIUS_METERS
from pysos.location import StaticLocationProvider
from pysos.models import ActivationSource, Location, SosState, SosStatus, SubjectProfile
from pysos.publisher import SignalPublisher
from pysos.registry import AlertRegistry
from pysos.state.events import EventBus, SosStatusChanged
from pysos.state.storage import StorageChange, StorageHub
from pysos.state.store import SharedStateStore

# Positions stay on the 4-decimal grid fixes are rounded to.
HOME = Location(lat=40.7128, lon=-74.006)


class _Clock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def _config(**overrides: Any) -> SosConfig:
    values: dict[str, Any] = {"rebroadcast_interval": 3600.0, "reconcile_interval": 3600.0, "location_timeout": 1.0}
    values.update(overrides)
    return SosConfig(**values)


def _north_of(point: Location, meters: float) -> float:
    return point.lat + math.degrees(meters / EARTH_RADIUS_METERS)


def _context(
    hub: StorageHub | None = None,
    provider: StaticLocationProvider | None = None,
    *,
    clock: _Clock | None = None,
    **overrides: Any,
) -> SosContext:
    return SosContext(
        _config(**overrides),
        hub or StorageHub(),
        provider if provider is not None else StaticLocationProvider(HOME),
        context_id="subject",
        clock=clock or _Clock(),
        rng=random.Random(3),
    )


def _observe(hub: StorageHub) -> list[StorageChange]:
    seen: list[StorageChange] = []
    hub.area("observer").subscribe(seen.append)
    return seen


# ----------------------------------------------------------------------
# Manual activation
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_manual_activation_persists_state_and_signal() -> None:
    clock = _Clock()
    async with _context(clock=clock) as ctx:
        ctx.store.save_profile(SubjectProfile(name="Ana Lopez"))

        status = await ctx.controller.activate()

        assert status == SosStatus.ACTIVE
        state = ctx.store.load_sos_state()
        assert state is not None
        assert state == ctx.controller.state
        assert state.advertised_name == "SOS_Ana_Lopez_40.7128_-74.006"
        assert state.subject_name_for_signal == "Ana_Lopez"
        assert state.message == "SOS! I need urgent help."
        assert state.activation_source == ActivationSource.MANUAL
        assert state.triggering_zone_id is None
        assert state.activation_timestamp == clock.now
        assert state.version == ctx.store.sos_version() == 1

        signal = ctx.publisher.current()
        assert signal is not None
        assert signal.id == f"sos_{clock.now}"
        assert signal.display_name == "Ana Lopez"
        assert ctx.controller.rebroadcasting


@pytest.mark.asyncio
async def test_manual_activation_uses_profile_message() -> None:
    async with _context() as ctx:
        ctx.store.save_profile(SubjectProfile(name="Ana", custom_sos_message="  Diabetic, need insulin "))

        await ctx.controller.activate()

        assert ctx.controller.state is not None
        assert ctx.controller.state.message == "Diabetic, need insulin"


@pytest.mark.asyncio
async def test_activate_is_noop_while_active() -> None:
    clock = _Clock()
    async with _context(clock=clock) as ctx:
        await ctx.controller.activate()
        first = ctx.controller.state
        clock.advance(5_000)

        assert await ctx.controller.activate() == SosStatus.ACTIVE
        assert ctx.controller.state == first


@pytest.mark.asyncio
async def test_central_activation_requires_zone() -> None:
    async with _context() as ctx:
        with pytest.raises(ValueError):
            await ctx.controller.activate(ActivationSource.CENTRAL)


@pytest.mark.asyncio
async def test_status_changes_are_published() -> None:
    async with _context() as ctx:
        changes: list[SosStatusChanged] = []
        ctx.bus.subscribe(SosStatusChanged, changes.append)

        await ctx.controller.activate()
        ctx.controller.deactivate()

        assert [(c.previous, c.current) for c in changes] == [
            (SosStatus.INACTIVE, SosStatus.ACTIVATING),
            (SosStatus.ACTIVATING, SosStatus.ACTIVE),
            (SosStatus.ACTIVE, SosStatus.INACTIVE),
        ]


# ----------------------------------------------------------------------
# Location failures
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_no_capability_is_unsupported_and_writes_nothing() -> None:
    hub = StorageHub()
    async with _context(hub, StaticLocationProvider(HOME, available=False)) as ctx:
        status = await ctx.controller.activate()

        assert status == SosStatus.UNSUPPORTED
        assert ctx.controller.last_error is not None
        assert hub.keys() == []


@pytest.mark.asyncio
async def test_denied_location_is_error_and_persists_nothing() -> None:
    hub = StorageHub()
    provider = StaticLocationProvider(HOME)
    provider.deny()
    async with _context(hub, provider) as ctx:
        status = await ctx.controller.activate()

        assert status == SosStatus.ERROR
        assert ctx.controller.last_error == "Geolocation error: User denied Geolocation."
        assert ctx.store.load_sos_state() is None
        assert ctx.publisher.current() is None

        provider.allow()
        assert await ctx.controller.activate() == SosStatus.ACTIVE
        assert ctx.controller.last_error is None


@pytest.mark.asyncio
async def test_location_timeout_is_error() -> None:
    provider = StaticLocationProvider(HOME, delay=1.0)
    async with _context(provider=provider, location_timeout=0.05) as ctx:
        status = await ctx.controller.activate()

        assert status == SosStatus.ERROR
        assert ctx.controller.last_error is not None
        assert "timed out" in ctx.controller.last_error
        assert ctx.store.load_sos_state() is None


@pytest.mark.asyncio
async def test_deactivate_while_activating_aborts_attempt() -> None:
    provider = StaticLocationProvider(HOME, delay=0.05)
    async with _context(provider=provider) as ctx:
        pending = asyncio.create_task(ctx.controller.activate())
        await asyncio.sleep(0)
        assert ctx.controller.status == SosStatus.ACTIVATING

        ctx.controller.deactivate()

        assert await pending == SosStatus.INACTIVE
        assert ctx.store.load_sos_state() is None
        assert not ctx.controller.rebroadcasting


@pytest.mark.asyncio
async def test_storage_failure_during_activation_restores_status() -> None:
    hub = StorageHub(quota_bytes=64)
    async with _context(hub) as ctx:
        with pytest.raises(StorageWriteError):
            await ctx.controller.activate()

        assert ctx.controller.status == SosStatus.INACTIVE
        assert ctx.controller.state is None
        assert hub.keys() == []


# ----------------------------------------------------------------------
# Deactivation and resume
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_deactivate_clears_everything_and_is_idempotent() -> None:
    hub = StorageHub()
    async with _context(hub) as ctx:
        await ctx.controller.activate()
        ctx.controller.deactivate()

        assert ctx.controller.status == SosStatus.INACTIVE
        assert ctx.controller.state is None
        assert ctx.store.load_sos_state() is None
        assert ctx.publisher.current() is None
        assert not ctx.controller.rebroadcasting

        seen = _observe(hub)
        ctx.controller.deactivate()
        assert seen == []


@pytest.mark.asyncio
async def test_refused_signal_removal_keeps_sos_active(monkeypatch: pytest.MonkeyPatch) -> None:
    hub = StorageHub()
    async with _context(hub) as ctx:
        await ctx.controller.activate()
        update = hub.update

        def refuse_signal_removal(build: Any, *, origin: str) -> list[StorageChange]:
            def checked(current: Any) -> Any:
                changes = build(current)
                if "pysos:currentSignal" in changes and changes["pysos:currentSignal"] is None:
                    raise StorageWriteError("refused", key="pysos:currentSignal")
                return changes

            return update(checked, origin=origin)

        monkeypatch.setattr(hub, "update", refuse_signal_removal)

        with pytest.raises(StorageWriteError):
            ctx.controller.deactivate()

        assert ctx.controller.status == SosStatus.ACTIVE
        assert ctx.controller.rebroadcasting
        assert ctx.store.load_sos_state() == ctx.controller.state
        assert ctx.publisher.current() is not None


@pytest.mark.asyncio
async def test_deactivate_clears_state_and_signal_in_one_commit(monkeypatch: pytest.MonkeyPatch) -> None:
    hub = StorageHub()
    async with _context(hub) as ctx:
        await ctx.controller.activate()
        commits: list[list[StorageChange]] = []
        update = hub.update

        def recording(build: Any, *, origin: str) -> list[StorageChange]:
            applied = update(build, origin=origin)
            commits.append(applied)
            return applied

        monkeypatch.setattr(hub, "update", recording)

        ctx.controller.deactivate()

        assert len(commits) == 1
        assert {change.key for change in commits[0]} == {
            "pysos:sosState",
            "pysos:sosStateVersion",
            "pysos:currentSignal",
        }


@pytest.mark.asyncio
async def test_no_writes_while_inactive() -> None:
    hub = StorageHub()
    async with _context(hub) as ctx:
        seen = _observe(hub)

        assert await ctx.controller.reconcile_once() == ReconcileAction.NONE
        assert await ctx.controller.rebroadcast_once() is None
        ctx.controller.deactivate()

        assert seen == []


@pytest.mark.asyncio
async def test_resume_after_restart_preserves_activation_timestamp() -> None:
    hub = StorageHub()
    clock = _Clock()
    async with _context(hub, clock=clock) as first:
        await first.controller.activate()
        activated_at = clock.now
    clock.advance(60_000)

    provider = StaticLocationProvider(Location(lat=40.7138, lon=-74.006))
    async with _context(hub, provider, clock=clock) as second:
        assert second.controller.status == SosStatus.ACTIVE
        assert second.controller.state is not None
        assert second.controller.state.activation_timestamp == activated_at
        assert second.controller.rebroadcasting

        refreshed = await second.controller.rebroadcast_once()

        assert refreshed is not None
        assert refreshed.activation_timestamp == activated_at
        assert refreshed.advertised_name == "SOS_User_40.7138_-74.006"
        assert refreshed.version == 2
        signal = second.publisher.current()
        assert signal is not None
        assert signal.id == f"sos_{activated_at}"
        assert signal.timestamp == clock.now


@pytest.mark.asyncio
async def test_resume_rejects_inactive_state() -> None:
    async with _context() as ctx:
        with pytest.raises(ValueError):
            ctx.controller.resume(SosState())


@pytest.mark.asyncio
async def test_rebroadcast_falls_back_to_last_known_location() -> None:
    provider = StaticLocationProvider(HOME)
    async with _context(provider=provider) as ctx:
        await ctx.controller.activate()
        provider.deny()

        refreshed = await ctx.controller.rebroadcast_once()

        assert refreshed is not None
        assert refreshed.location == HOME
        assert ctx.controller.status == SosStatus.ACTIVE


@pytest.mark.asyncio
async def test_rebroadcast_loop_refreshes_location() -> None:
    provider = StaticLocationProvider(HOME)
    async with _context(provider=provider, rebroadcast_interval=0.01) as ctx:
        await ctx.controller.activate()
        provider.move_to(40.72, -74.01)

        for _ in range(200):
            state = ctx.store.load_sos_state()
            if state is not None and state.location == Location(lat=40.72, lon=-74.01):
                break
            await asyncio.sleep(0.01)

        state = ctx.store.load_sos_state()
        assert state is not None
        assert state.advertised_name == "SOS_User_40.72_-74.01"


# ----------------------------------------------------------------------
# Geofence reconciliation
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_entering_zone_activates_centrally_with_zone_message() -> None:
    async with _context() as ctx:
        zone = ctx.registry.create(lat=_north_of(HOME, 999.0), lon=HOME.lon, radius_meters=1000, message="Flood")
        await ctx.bridge.drain()

        state = ctx.controller.state
        assert ctx.controller.status == SosStatus.ACTIVE
        assert state is not None
        assert state.activation_source == ActivationSource.CENTRAL
        assert state.triggering_zone_id == zone.id
        assert state.message == "Flood"


@pytest.mark.asyncio
async def test_zone_without_message_uses_central_default() -> None:
    async with _context() as ctx:
        ctx.registry.create(lat=HOME.lat, lon=HOME.lon, radius_meters=50)
        await ctx.bridge.drain()

        assert ctx.controller.state is not None
        assert ctx.controller.state.message == "Area SOS alert: emergency declared in your area."


@pytest.mark.asyncio
async def test_zone_just_out_of_reach_does_nothing() -> None:
    async with _context() as ctx:
        ctx.registry.create(lat=_north_of(HOME, 1001.0), lon=HOME.lon, radius_meters=1000)
        await ctx.bridge.drain()

        assert ctx.controller.status == SosStatus.INACTIVE
        assert await ctx.controller.reconcile_once() == ReconcileAction.NONE


@pytest.mark.asyncio
async def test_first_zone_in_storage_order_wins() -> None:
    clock = _Clock()
    async with _context(clock=clock) as ctx:
        ctx.registry.create(lat=HOME.lat, lon=HOME.lon, radius_meters=100, message="older")
        clock.advance(1)
        newer = ctx.registry.create(lat=_north_of(HOME, 400.0), lon=HOME.lon, radius_meters=500, message="newer")
        await ctx.bridge.drain()

        assert ctx.controller.state is not None
        assert ctx.controller.state.triggering_zone_id == newer.id
        assert ctx.controller.state.message == "newer"


@pytest.mark.asyncio
async def test_manual_sos_promoted_to_central_keeps_timestamp() -> None:
    clock = _Clock()
    async with _context(clock=clock) as ctx:
        await ctx.controller.activate()
        activated_at = clock.now
        clock.advance(10_000)

        zone = ctx.registry.create(lat=HOME.lat, lon=HOME.lon, radius_meters=200, message="Evacuate")
        await ctx.bridge.drain()

        state = ctx.controller.state
        assert state is not None
        assert state.activation_source == ActivationSource.CENTRAL
        assert state.triggering_zone_id == zone.id
        assert state.activation_timestamp == activated_at
        assert state.message == "Evacuate"
        assert await ctx.controller.reconcile_once() == ReconcileAction.NONE


@pytest.mark.asyncio
async def test_switches_to_new_first_matching_zone() -> None:
    clock = _Clock()
    async with _context(clock=clock) as ctx:
        ctx.registry.create(lat=HOME.lat, lon=HOME.lon, radius_meters=200, message="first")
        await ctx.bridge.drain()
        clock.advance(1)

        second = ctx.registry.create(lat=HOME.lat, lon=HOME.lon, radius_meters=300, message="second")
        assert await ctx.controller.reconcile_once() == ReconcileAction.SWITCHED

        assert ctx.controller.state is not None
        assert ctx.controller.state.triggering_zone_id == second.id
        await ctx.bridge.drain()


@pytest.mark.asyncio
async def test_leaving_zone_demotes_to_manual() -> None:
    provider = StaticLocationProvider(HOME)
    async with _context(provider=provider) as ctx:
        ctx.store.save_profile(SubjectProfile(custom_sos_message="Broken leg"))
        ctx.registry.create(lat=HOME.lat, lon=HOME.lon, radius_meters=200, message="Evacuate")
        await ctx.bridge.drain()
        provider.move_to(41.0, -74.006)

        assert await ctx.controller.reconcile_once() == ReconcileAction.DEMOTED

        state = ctx.controller.state
        assert ctx.controller.status == SosStatus.ACTIVE
        assert state is not None
        assert state.activation_source == ActivationSource.MANUAL
        assert state.triggering_zone_id is None
        assert state.message == "Broken leg"
        assert state.location == Location(lat=41.0, lon=-74.006)


@pytest.mark.asyncio
async def test_removing_triggering_zone_clears_sos_immediately() -> None:
    hub = StorageHub()
    async with _context(hub) as ctx:
        zone = ctx.registry.create(lat=HOME.lat, lon=HOME.lon, radius_meters=200)
        await ctx.bridge.drain()
        assert ctx.controller.is_active

        ctx.registry.remove(zone.id)

        # No reconciliation has run yet.
        assert ctx.controller.status == SosStatus.INACTIVE
        assert ctx.store.load_sos_state() is None
        assert ctx.publisher.current() is None
        await ctx.bridge.drain()
        assert ctx.controller.status == SosStatus.INACTIVE


@pytest.mark.asyncio
async def test_removing_other_zone_keeps_central_sos() -> None:
    async with _context() as ctx:
        trigger = ctx.registry.create(lat=HOME.lat, lon=HOME.lon, radius_meters=200)
        await ctx.bridge.drain()
        other = ctx.registry.create(lat=10.0, lon=10.0, radius_meters=200)
        await ctx.bridge.drain()

        ctx.registry.remove(other.id)
        await ctx.bridge.drain()

        assert ctx.controller.is_active
        assert ctx.controller.state is not None
        assert ctx.controller.state.triggering_zone_id == trigger.id


@pytest.mark.asyncio
async def test_manual_sos_not_cleared_by_zone_removal() -> None:
    async with _context() as ctx:
        await ctx.controller.activate()
        zone = ctx.registry.create(lat=10.0, lon=10.0, radius_meters=200)

        assert not ctx.controller.handle_zone_removed(zone.id)
        ctx.registry.remove(zone.id)
        await ctx.bridge.drain()

        assert ctx.controller.is_active


@pytest.mark.asyncio
async def test_reconcile_loop_activates_for_preexisting_zone() -> None:
    hub = StorageHub()
    seed = AlertRegistry(SharedStateStore(hub.area("authority")), EventBus())
    seed.create(lat=HOME.lat, lon=HOME.lon, radius_meters=100)

    async with _context(hub, reconcile_interval=0.01) as ctx:
        for _ in range(200):
            if ctx.controller.is_active:
                break
            await asyncio.sleep(0.01)

        assert ctx.controller.is_active
        assert ctx.controller.state is not None
        assert ctx.controller.state.is_central


@pytest.mark.asyncio
async def test_reconcile_skips_cycle_without_location() -> None:
    provider = StaticLocationProvider(HOME)
    async with _context(provider=provider) as ctx:
        provider.deny()
        assert await ctx.controller.reconcile_once() == ReconcileAction.SKIPPED


# ----------------------------------------------------------------------
# Write races
# ----------------------------------------------------------------------


def _bare_controller(hub: StorageHub, provider: StaticLocationProvider) -> SosStateController:
    # No sync bridge: the controller only learns about other writers by losing a race.
    store = SharedStateStore(hub.area("subject"))
    bus = EventBus()
    return SosStateController(
        _config(),
        store,
        AlertRegistry(store, bus),
        SignalPublisher(store, bus, rng=random.Random(1)),
        provider,
        bus=bus,
    )


def _other_state(timestamp: int = 42) -> SosState:
    return SosState(
        is_active=True,
        location=Location(lat=1.0, lon=2.0),
        subject_name_for_signal="Other",
        advertised_name="SOS_Other_1_2",
        message="other writer",
        activation_timestamp=timestamp,
        activation_source=ActivationSource.MANUAL,
    )


@pytest.mark.asyncio
async def test_lost_activation_race_adopts_stored_state() -> None:
    hub = StorageHub()
    controller = _bare_controller(hub, StaticLocationProvider(HOME))
    other = SharedStateStore(hub.area("other"))
    controller.start()
    try:
        other.commit_sos_state(_other_state(), expected_version=0)

        assert await controller.activate() == SosStatus.ACTIVE

        assert controller.state is not None
        assert controller.state.activation_timestamp == 42
        assert controller.state.message == "other writer"
        stored = other.load_sos_state()
        assert stored is not None
        assert stored.activation_timestamp == 42
        assert other.sos_version() == 1
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_stop_elsewhere_wins_over_rebroadcast() -> None:
    hub = StorageHub()
    controller = _bare_controller(hub, StaticLocationProvider(HOME))
    other = SharedStateStore(hub.area("other"))
    controller.start()
    try:
        await controller.activate()
        other.clear_sos_state()

        assert await controller.rebroadcast_once() is None

        assert controller.status == SosStatus.INACTIVE
        assert other.load_sos_state() is None
        assert not controller.rebroadcasting
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_lost_rebroadcast_race_adopts_newer_state() -> None:
    hub = StorageHub()
    controller = _bare_controller(hub, StaticLocationProvider(HOME))
    other = SharedStateStore(hub.area("other"))
    controller.start()
    try:
        await controller.activate()
        other.commit_sos_state(_other_state(7), expected_version=other.sos_version())

        assert await controller.rebroadcast_once() is None

        assert controller.is_active
        assert controller.state is not None
        assert controller.state.activation_timestamp == 7
        assert controller.state.version == other.sos_version()
    finally:
        await controller.close()
