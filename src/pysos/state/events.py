"""Typed in-context events.

Events never cross execution contexts: other contexts learn about changes
through the durable store. Within a context, every current subscriber of an
event type receives it, best effort.
"""

from __future__ import annotations

import contextlib
import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from pysos.models.signal import SignalRecord
from pysos.models.state import SosState, SosStatus

_logger = logging.getLogger(__name__)


class LogChannel(StrEnum):
    SUBJECT = "subject"
    RESPONDER = "responder"


class ZoneChangeKind(StrEnum):
    CREATED = "created"
    REMOVED = "removed"
    EXTERNAL = "external"


class SosEvent(BaseModel):
    """Base for every bus event."""

    model_config = ConfigDict(frozen=True)

    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ActivityLogged(SosEvent):
    """A line for the activity log panel."""

    message: str
    channel: LogChannel = LogChannel.SUBJECT


class ZonesChanged(SosEvent):
    """The zone collection changed, in this context or another one."""

    kind: ZoneChangeKind
    zone_id: str | None = None


class SosStateChangedExternally(SosEvent):
    """Another context wrote the SOS state (``None`` means it was cleared)."""

    state: SosState | None = None


class SosStatusChanged(SosEvent):
    previous: SosStatus
    current: SosStatus
    reason: str | None = None


class SignalPublished(SosEvent):
    """The current signal record was written (``None`` means it was cleared)."""

    record: SignalRecord | None = None
    external: bool = False


EVENT_TYPES: tuple[type[SosEvent], ...] = (
    ActivityLogged,
    ZonesChanged,
    SosStateChangedExternally,
    SosStatusChanged,
    SignalPublished,
)

E = TypeVar("E", bound=SosEvent)


class EventBus:
    """Synchronous fan-out of typed events inside one execution context."""

    def __init__(self) -> None:
        self._handlers: defaultdict[type[SosEvent], list[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register *handler* for *event_type*. Returns an unsubscribe callable."""
        if event_type not in EVENT_TYPES:
            raise TypeError(f"Unknown event type: {event_type.__name__}")
        handlers = self._handlers[event_type]
        handlers.append(handler)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: SosEvent) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                handler(event)
            except Exception:
                _logger.warning("Event handler failed for %s", type(event).__name__, exc_info=True)

    def log(self, message: str, *, channel: LogChannel = LogChannel.SUBJECT) -> None:
        self.publish(ActivityLogged(message=message, channel=channel))
