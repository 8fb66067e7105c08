"""Cross-context synchronization.

The bridge is the only place where durable-store notifications and zone
events are turned into controller calls. It writes nothing itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

from pysos.config import SosConfig
from pysos.controller import SosStateController
from pysos.state.events import (
    EventBus,
    SignalPublished,
    SosStateChangedExternally,
    ZoneChangeKind,
    ZonesChanged,
)
from pysos.state.storage import StorageChange, StorageHub
from pysos.state.store import SharedStateStore, StoreKey

_logger = logging.getLogger(__name__)


class SyncBridge:
    """Wire one context's controller to the other contexts on the device."""

    def __init__(
        self,
        config: SosConfig,
        store: SharedStateStore,
        controller: SosStateController,
        bus: EventBus,
        *,
        hub: StorageHub | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._controller = controller
        self._bus = bus
        self._hub = hub if hub is not None else store.area.hub
        self._unsubscribers: list[Callable[[], None]] = []
        self._poll_task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def started(self) -> bool:
        return bool(self._unsubscribers)

    def start(self) -> None:
        if self.started:
            return
        self._unsubscribers.append(self._store.area.subscribe(self._on_storage_change))
        self._unsubscribers.append(self._bus.subscribe(ZonesChanged, self._on_zones_changed))
        if self._hub.is_file_backed:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(), name="pysos-storage-poll")

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        tasks = list(self._pending)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
            self._poll_task = None
        self._pending.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def drain(self) -> None:
        """Wait for every scheduled off-cycle reconciliation to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_storage_change(self, change: StorageChange) -> None:
        name = self._store.name_for(change.key)
        if name is None:
            return
        _logger.debug("External change to %s (origin=%s)", name.value, change.origin)

        if name == StoreKey.SOS_STATE:
            state = self._store.parse_sos_state(change.new_value)
            self._bus.publish(SosStateChangedExternally(state=state))
            self._controller.sync_from_store(state)
        elif name == StoreKey.ZONE_DEFINITIONS:
            self._bus.publish(ZonesChanged(kind=ZoneChangeKind.EXTERNAL))
        elif name == StoreKey.CURRENT_SIGNAL:
            record = self._store.parse_signal(change.new_value)
            self._bus.publish(SignalPublished(record=record, external=True))

    def _on_zones_changed(self, event: ZonesChanged) -> None:
        if event.kind == ZoneChangeKind.REMOVED and event.zone_id is not None:
            self._controller.handle_zone_removed(event.zone_id)
        else:
            self._controller.handle_zones_changed()
        self._schedule_reconcile()

    def _schedule_reconcile(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _logger.debug("No running event loop; off-cycle reconciliation skipped")
            return
        task = loop.create_task(self._reconcile_now(), name="pysos-reconcile-now")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _reconcile_now(self) -> None:
        try:
            action = await self._controller.reconcile_once()
        except Exception:
            _logger.warning("Off-cycle reconciliation failed", exc_info=True)
            return
        _logger.debug("Off-cycle reconciliation: %s", action.value)

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.storage_poll_interval)
            try:
                self._hub.refresh_from_disk()
            except Exception:
                _logger.warning("Storage poll failed", exc_info=True)
