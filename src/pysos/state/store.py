"""Typed access to the shared SOS records.

This is the only component that serializes records into the durable store.
It persists; it does not notify. Change notification is the storage hub's
job, and turning notifications into controller calls is the sync bridge's.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import TypeVar

from pydantic import TypeAdapter, ValidationError

from pysos.exceptions import StaleWriteError, StorageParseError, StorageWriteError
from pysos.models._base import SosBaseModel
from pysos.models.profile import SubjectProfile
from pysos.models.signal import SignalRecord
from pysos.models.state import SosState
from pysos.models.zone import Zone
from pysos.state.policy import next_version, parse_version, should_accept_write
from pysos.state.storage import StorageArea

_logger = logging.getLogger(__name__)

M = TypeVar("M", bound=SosBaseModel)
T = TypeVar("T")

_ZONE_LIST = TypeAdapter(list[Zone])


class StoreKey(StrEnum):
    SOS_STATE = "sosState"
    SOS_STATE_VERSION = "sosStateVersion"
    CURRENT_SIGNAL = "currentSignal"
    ZONE_DEFINITIONS = "zoneDefinitions"
    SUBJECT_PROFILE = "subjectProfile"


class SharedStateStore:
    """Typed read/write API over one context's storage area.

    Corrupt records are never trusted: they are logged, removed from the
    store and read as absent.
    """

    def __init__(self, area: StorageArea, *, namespace: str = "pysos") -> None:
        self._area = area
        self._namespace = namespace

    @property
    def area(self) -> StorageArea:
        return self._area

    def key(self, name: StoreKey) -> str:
        return f"{self._namespace}:{name.value}"

    def name_for(self, raw_key: str) -> StoreKey | None:
        """Reverse of :meth:`key`; ``None`` for keys outside this namespace."""
        prefix = f"{self._namespace}:"
        if not raw_key.startswith(prefix):
            return None
        try:
            return StoreKey(raw_key[len(prefix) :])
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    def _decode(self, name: StoreKey, decode: Callable[[str], T], raw: str) -> T:
        try:
            return decode(raw)
        except ValidationError as exc:
            raise StorageParseError(
                f"Corrupt {name.value} record ({exc.error_count()} validation error(s))",
                key=self.key(name),
            ) from exc

    def _parse(self, name: StoreKey, model_cls: type[M], raw: str | None) -> M | None:
        if raw is None:
            return None
        try:
            return self._decode(name, model_cls.from_json, raw)
        except StorageParseError as exc:
            self._discard(name, exc)
            return None

    def _discard(self, name: StoreKey, exc: StorageParseError) -> None:
        _logger.warning("Discarding %s: %s", exc.key, exc)
        try:
            self._area.remove(self.key(name))
        except StorageWriteError:
            _logger.debug("Could not remove corrupt %s record", name.value, exc_info=True)

    # ------------------------------------------------------------------
    # SOS state
    # ------------------------------------------------------------------

    def load_sos_state(self) -> SosState | None:
        return self._parse(StoreKey.SOS_STATE, SosState, self._area.get(self.key(StoreKey.SOS_STATE)))

    def parse_sos_state(self, raw: str | None) -> SosState | None:
        """Parse a raw value seen in a change notification."""
        return self._parse(StoreKey.SOS_STATE, SosState, raw)

    def sos_version(self) -> int:
        return parse_version(self._area.get(self.key(StoreKey.SOS_STATE_VERSION)))

    def commit_sos_state(self, state: SosState, *, expected_version: int) -> SosState:
        """Write *state* if nobody else committed since *expected_version*.

        The version check runs against the freshest stored version, inside
        the same commit as the write. Returns the committed record (carrying
        its new version). Raises :class:`~pysos.exceptions.StaleWriteError`
        when the race was lost and :class:`~pysos.exceptions.StorageWriteError`
        when the store refuses the write.
        """
        state_key = self.key(StoreKey.SOS_STATE)
        version_key = self.key(StoreKey.SOS_STATE_VERSION)
        committed = state

        def _build(current: Mapping[str, str]) -> dict[str, str | None]:
            nonlocal committed
            persisted = parse_version(current.get(version_key))
            if not should_accept_write(persisted_version=persisted, expected_version=expected_version):
                raise StaleWriteError(
                    f"SOS state changed underneath this writer (expected v{expected_version}, found v{persisted})",
                    key=state_key,
                    expected_version=expected_version,
                    actual_version=persisted,
                )
            version = next_version(persisted)
            committed = state.model_copy(update={"version": version})
            return {state_key: committed.to_json(), version_key: str(version)}

        self._area.update(_build)
        return committed

    def clear_sos_state(self, *, include_signal: bool = False) -> int:
        """Remove the SOS state unconditionally; returns the resulting version.

        With *include_signal* the current signal record is removed in the
        same commit, so both go or neither does. Nothing is written when
        there is nothing to remove.
        """
        state_key = self.key(StoreKey.SOS_STATE)
        version_key = self.key(StoreKey.SOS_STATE_VERSION)
        signal_key = self.key(StoreKey.CURRENT_SIGNAL)
        version = 0

        def _build(current: Mapping[str, str]) -> dict[str, str | None]:
            nonlocal version
            version = parse_version(current.get(version_key))
            changes: dict[str, str | None] = {}
            if include_signal and signal_key in current:
                changes[signal_key] = None
            if state_key in current:
                version = next_version(version)
                changes[state_key] = None
                changes[version_key] = str(version)
            return changes

        self._area.update(_build)
        return version

    # ------------------------------------------------------------------
    # Signal record
    # ------------------------------------------------------------------

    def load_signal(self) -> SignalRecord | None:
        return self._parse(StoreKey.CURRENT_SIGNAL, SignalRecord, self._area.get(self.key(StoreKey.CURRENT_SIGNAL)))

    def parse_signal(self, raw: str | None) -> SignalRecord | None:
        return self._parse(StoreKey.CURRENT_SIGNAL, SignalRecord, raw)

    def save_signal(self, record: SignalRecord) -> None:
        self._area.set(self.key(StoreKey.CURRENT_SIGNAL), record.to_json())

    def clear_signal(self) -> None:
        self._area.remove(self.key(StoreKey.CURRENT_SIGNAL))

    # ------------------------------------------------------------------
    # Zones
    # ------------------------------------------------------------------

    def load_zones(self) -> list[Zone]:
        """Zones in storage (evaluation) order."""
        raw = self._area.get(self.key(StoreKey.ZONE_DEFINITIONS))
        if raw is None:
            return []
        try:
            return self._decode(StoreKey.ZONE_DEFINITIONS, _ZONE_LIST.validate_json, raw)
        except StorageParseError as exc:
            self._discard(StoreKey.ZONE_DEFINITIONS, exc)
            return []

    def save_zones(self, zones: list[Zone]) -> None:
        """Replace the whole collection in a single write."""
        self._area.set(self.key(StoreKey.ZONE_DEFINITIONS), _dump_zones(zones))

    def update_zones(self, mutate: Callable[[list[Zone]], list[Zone]]) -> list[Zone]:
        """Rewrite the collection from its freshest stored value.

        *mutate* gets the zones currently stored and returns the new
        collection. A corrupt stored collection is handed over as empty.
        Nothing is written when *mutate* returns an equal list.
        """
        key = self.key(StoreKey.ZONE_DEFINITIONS)
        updated: list[Zone] = []

        def _build(current: Mapping[str, str]) -> dict[str, str | None]:
            nonlocal updated
            raw = current.get(key)
            zones: list[Zone] = []
            if raw is not None:
                try:
                    zones = self._decode(StoreKey.ZONE_DEFINITIONS, _ZONE_LIST.validate_json, raw)
                except StorageParseError as exc:
                    _logger.warning("Replacing %s: %s", exc.key, exc)
            updated = mutate(list(zones))
            if updated == zones:
                return {}
            return {key: _dump_zones(updated)}

        self._area.update(_build)
        return updated

    # ------------------------------------------------------------------
    # Subject profile (owned by the profile form; read-only to the core)
    # ------------------------------------------------------------------

    def load_profile(self) -> SubjectProfile:
        profile = self._parse(
            StoreKey.SUBJECT_PROFILE,
            SubjectProfile,
            self._area.get(self.key(StoreKey.SUBJECT_PROFILE)),
        )
        return profile if profile is not None else SubjectProfile()

    def save_profile(self, profile: SubjectProfile) -> None:
        self._area.set(self.key(StoreKey.SUBJECT_PROFILE), profile.to_json())


def _dump_zones(zones: list[Zone]) -> str:
    return _ZONE_LIST.dump_json(zones, by_alias=True).decode("utf-8")
