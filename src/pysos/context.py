"""One execution context: the subject view or a responder console."""

from __future__ import annotations

import logging
import random
from typing import Any

from pysos._clock import Clock, now_ms
from pysos.config import SosConfig
from pysos.controller import SosStateController
from pysos.location import LocationProvider, StaticLocationProvider
from pysos.publisher import SignalPublisher
from pysos.registry import AlertRegistry
from pysos.state.events import EventBus
from pysos.state.storage import StorageHub
from pysos.state.store import SharedStateStore
from pysos.sync import SyncBridge

_logger = logging.getLogger(__name__)


class SosContext:
    """Wires the components of one execution context.

    Usage::

        hub = StorageHub()
        async with SosContext(config, hub, provider) as ctx:
            await ctx.controller.activate()

    Several contexts sharing one :class:`StorageHub` behave like several
    windows of the same application on one device. Without a *hub*, a new one
    is created from ``config.storage_path`` and ``config.storage_quota_bytes``.
    Without a *location_provider*, the context has no location capability
    (a responder console, typically).
    """

    def __init__(
        self,
        config: SosConfig,
        hub: StorageHub | None = None,
        location_provider: LocationProvider | None = None,
        *,
        context_id: str | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._hub = hub if hub is not None else StorageHub(config.storage_path, quota_bytes=config.storage_quota_bytes)
        clock = clock or now_ms
        self._location_provider = (
            location_provider if location_provider is not None else StaticLocationProvider(available=False)
        )

        self._area = self._hub.area(context_id)
        self._bus = EventBus()
        self._store = SharedStateStore(self._area, namespace=config.namespace)
        self._registry = AlertRegistry(self._store, self._bus, clock=clock)
        self._publisher = SignalPublisher(
            self._store,
            self._bus,
            quality_range=(config.signal_quality_min, config.signal_quality_max),
            clock=clock,
            rng=rng,
        )
        self._controller = SosStateController(
            config,
            self._store,
            self._registry,
            self._publisher,
            self._location_provider,
            bus=self._bus,
            clock=clock,
        )
        self._bridge = SyncBridge(config, self._store, self._controller, self._bus, hub=self._hub)
        self._started = False

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def context_id(self) -> str:
        return self._area.context_id

    @property
    def config(self) -> SosConfig:
        return self._config

    @property
    def hub(self) -> StorageHub:
        return self._hub

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def store(self) -> SharedStateStore:
        return self._store

    @property
    def registry(self) -> AlertRegistry:
        return self._registry

    @property
    def publisher(self) -> SignalPublisher:
        return self._publisher

    @property
    def controller(self) -> SosStateController:
        return self._controller

    @property
    def bridge(self) -> SyncBridge:
        return self._bridge

    @property
    def location_provider(self) -> LocationProvider:
        return self._location_provider

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SosContext:
        self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def start(self) -> None:
        """Subscribe to other contexts, then recover any persisted SOS."""
        if self._started:
            return
        self._bridge.start()
        self._controller.start()
        self._started = True
        _logger.debug("Context %s started", self.context_id)

    async def close(self) -> None:
        """Stop timers and detach from the hub. Persisted state is kept."""
        await self._bridge.close()
        await self._controller.close()
        self._area.close()
        self._started = False
        _logger.debug("Context %s closed", self.context_id)
