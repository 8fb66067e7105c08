"""Device-level key/value storage shared by execution contexts.

A :class:`StorageHub` plays the role of the single durable store on a device.
Each execution context (a tab, a panel, a process-local console) talks to it
through its own :class:`StorageArea`. A write made through one area is
announced to the listeners of every *other* area, never to the writer
itself, so a context has to update its own in-memory view directly.

When the hub is backed by a JSON file, every commit holds an advisory lock
on a sibling lock file, re-reads the file, applies its changes on top of what
is on disk and replaces the file atomically (write to a temporary sibling,
then ``os.replace``). A reader never sees a partially written store and a
writer never overwrites keys it has not seen. Writes made by another process
are picked up by :meth:`StorageHub.refresh_from_disk`, or by the next commit,
and announced to every area with the origin :data:`EXTERNAL_ORIGIN`.

The lock uses ``fcntl`` and is skipped on platforms without it.
"""

from __future__ import annotations

import contextlib
import itertools
import json
import logging
import os
import tempfile
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None  # type: ignore[assignment]

from pysos.exceptions import StorageWriteError

_logger = logging.getLogger(__name__)

#: Origin reported for changes detected on disk (another process wrote them).
EXTERNAL_ORIGIN = "external"


@dataclass(frozen=True, slots=True)
class StorageChange:
    """One key changed by a commit."""

    key: str
    old_value: str | None
    new_value: str | None
    origin: str


StorageListener = Callable[[StorageChange], None]


class StorageHub:
    """The durable store shared by every context on a device.

    Parameters
    ----------
    path
        Optional JSON file persisting the store across process restarts.
    quota_bytes
        Optional size limit (sum of key and value lengths). A commit that
        would exceed it raises :class:`~pysos.exceptions.StorageWriteError`
        and changes nothing.
    """

    def __init__(self, path: str | os.PathLike[str] | None = None, *, quota_bytes: int | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._quota_bytes = quota_bytes
        self._data: dict[str, str] = {}
        self._areas: list[StorageArea] = []
        self._ids = itertools.count(1)
        self._disk_signature: tuple[int, int] | None = None
        if self._path is not None:
            self._data = self._load_file()

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def is_file_backed(self) -> bool:
        return self._path is not None

    def area(self, context_id: str | None = None) -> StorageArea:
        """Open a view for a new execution context."""
        if context_id is None:
            context_id = f"context-{next(self._ids)}"
        if context_id == EXTERNAL_ORIGIN or any(a.context_id == context_id for a in self._areas):
            raise ValueError(f"context id already in use: {context_id!r}")
        area = StorageArea(self, context_id)
        self._areas.append(area)
        return area

    def _detach(self, area: StorageArea) -> None:
        with contextlib.suppress(ValueError):
            self._areas.remove(area)

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def keys(self) -> list[str]:
        return list(self._data)

    def size_bytes(self) -> int:
        return _size_of(self._data)

    def commit(self, changes: Mapping[str, str | None], *, origin: str) -> list[StorageChange]:
        """Apply *changes* all at once (``None`` removes a key).

        Keys whose value does not actually change are skipped; a commit in
        which nothing changes performs no write and notifies nobody.
        """
        return self.update(lambda _current: changes, origin=origin)

    def update(
        self,
        build: Callable[[Mapping[str, str]], Mapping[str, str | None]],
        *,
        origin: str,
    ) -> list[StorageChange]:
        """Compute changes from the current contents and commit them atomically.

        *build* receives the freshest contents (re-read from the backing file
        under the lock) and returns the changes to apply. Anything it raises
        aborts the commit and propagates. External changes found while
        re-reading are announced before the committed ones.
        """
        external: list[StorageChange] = []
        applied: list[StorageChange] = []
        try:
            with self._file_lock():
                if self._path is not None:
                    external = self._reload()
                applied = self._apply(build(self._data), origin=origin)
        finally:
            self._notify(external)
        self._notify(applied)
        return applied

    def refresh_from_disk(self) -> list[StorageChange]:
        """Pick up writes another process made to the backing file."""
        if self._path is None:
            return []
        if self._current_signature() == self._disk_signature:
            return []
        changes = self._reload()
        self._notify(changes)
        return changes

    def _apply(self, changes: Mapping[str, str | None], *, origin: str) -> list[StorageChange]:
        updated = dict(self._data)
        applied: list[StorageChange] = []
        for key, value in changes.items():
            old = updated.get(key)
            if old == value:
                continue
            if value is None:
                updated.pop(key, None)
            else:
                updated[key] = value
            applied.append(StorageChange(key=key, old_value=old, new_value=value, origin=origin))
        if not applied:
            return []

        first_key = applied[0].key
        if self._quota_bytes is not None:
            size = _size_of(updated)
            if size > self._quota_bytes and size > _size_of(self._data):
                raise StorageWriteError(
                    f"Storage quota exceeded ({size} > {self._quota_bytes} bytes)",
                    key=first_key,
                )
        if self._path is not None:
            self._write_file(updated, key=first_key)
        self._data = updated
        return applied

    def _reload(self) -> list[StorageChange]:
        disk = self._load_file()
        changes: list[StorageChange] = []
        for key in sorted(set(self._data) | set(disk)):
            old = self._data.get(key)
            new = disk.get(key)
            if old != new:
                changes.append(StorageChange(key=key, old_value=old, new_value=new, origin=EXTERNAL_ORIGIN))
        self._data = disk
        if changes:
            _logger.debug("Detected %d external storage change(s) in %s", len(changes), self._path)
        return changes

    def _notify(self, changes: list[StorageChange]) -> None:
        for area in list(self._areas):
            for change in changes:
                if change.origin == area.context_id:
                    continue
                area._dispatch(change)  # noqa: SLF001

    # ------------------------------------------------------------------
    # File persistence
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _file_lock(self) -> Iterator[None]:
        if self._path is None or fcntl is None:
            yield
            return
        lock_path = self._path.with_name(f".{self._path.name}.lock")
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            fh = open(lock_path, "a+b")  # noqa: SIM115
        except OSError as exc:
            raise StorageWriteError(f"Could not open storage lock {lock_path}: {exc}") from exc
        with fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _current_signature(self) -> tuple[int, int] | None:
        if self._path is None:
            return None
        try:
            stat = self._path.stat()
        except FileNotFoundError:
            return None
        return (stat.st_mtime_ns, stat.st_size)

    def _load_file(self) -> dict[str, str]:
        if self._path is None:
            return {}
        self._disk_signature = self._current_signature()
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError:
            _logger.warning("Could not read storage file %s; starting empty", self._path, exc_info=True)
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            _logger.warning("Discarding corrupt storage file %s", self._path)
            return {}
        if not isinstance(data, dict):
            _logger.warning("Discarding storage file %s: top level is not an object", self._path)
            return {}
        return {str(key): value for key, value in data.items() if isinstance(value, str)}

    def _write_file(self, data: dict[str, str], *, key: str) -> None:
        if self._path is None:
            return
        tmp_name: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self._path.parent,
                prefix=f".{self._path.name}.",
                suffix=".tmp",
                delete=False,
            ) as fh:
                tmp_name = fh.name
                json.dump(data, fh, separators=(",", ":"))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except OSError as exc:
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
            raise StorageWriteError(f"Could not write storage file {self._path}: {exc}", key=key) from exc
        self._disk_signature = self._current_signature()


class StorageArea:
    """One execution context's view of a :class:`StorageHub`."""

    def __init__(self, hub: StorageHub, context_id: str) -> None:
        self._hub = hub
        self.context_id = context_id
        self._listeners: list[StorageListener] = []
        self._closed = False

    @property
    def hub(self) -> StorageHub:
        return self._hub

    def get(self, key: str) -> str | None:
        return self._hub.get(key)

    def set(self, key: str, value: str) -> None:
        self.write_many({key: value})

    def remove(self, key: str) -> None:
        self.write_many({key: None})

    def write_many(self, changes: Mapping[str, str | None]) -> list[StorageChange]:
        if self._closed:
            raise StorageWriteError(f"Storage area {self.context_id!r} is closed")
        return self._hub.commit(changes, origin=self.context_id)

    def update(self, build: Callable[[Mapping[str, str]], Mapping[str, str | None]]) -> list[StorageChange]:
        """Commit the changes *build* derives from the freshest contents."""
        if self._closed:
            raise StorageWriteError(f"Storage area {self.context_id!r} is closed")
        return self._hub.update(build, origin=self.context_id)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        """Listen for changes made by *other* contexts. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def _dispatch(self, change: StorageChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                _logger.warning("Storage listener failed for key=%s", change.key, exc_info=True)

    def close(self) -> None:
        self._closed = True
        self._listeners.clear()
        self._hub._detach(self)  # noqa: SLF001


def _size_of(data: Mapping[str, str]) -> int:
    return sum(len(key) + len(value) for key, value in data.items())
