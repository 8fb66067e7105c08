"""Deterministic write policy for the shared SOS state.

Two contexts may write the SOS state at nearly the same time (a manual stop
racing an automatic zone activation). Every SOS state commit therefore
carries the write version the writer last observed:

- A commit is accepted only if that version still matches the persisted one;
  otherwise the writer lost the race and must adopt what is stored.
- Clears are unconditional and bump the version too, so an explicit stop
  invalidates any in-flight activation that started from an older version.
"""

from __future__ import annotations


def should_accept_write(*, persisted_version: int, expected_version: int) -> bool:
    return persisted_version == expected_version


def next_version(persisted_version: int) -> int:
    return persisted_version + 1


def parse_version(raw: str | None) -> int:
    """Stored version counter; anything unreadable counts as ``0``."""
    if raw is None:
        return 0
    try:
        value = int(raw)
    except ValueError:
        return 0
    return value if value >= 0 else 0
