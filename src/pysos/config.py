"""Runtime configuration for pysos."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pysos.exceptions import SosConfigError

#: Roughly what browsers grant a single origin for local storage.
DEFAULT_STORAGE_QUOTA_BYTES = 5 * 1024 * 1024


@dataclasses.dataclass(frozen=True)
class SosConfig:
    """Context configuration.

    Parameters
    ----------
    namespace : str
        Prefix for every durable store key (``<namespace>:<key>``), so the
        SOS records never collide with unrelated application data.
    storage_path : str or None
        JSON file backing the durable store. ``None`` keeps the store in
        memory only (contexts must then share one process).
    storage_quota_bytes : int or None
        Maximum total size of keys and values. Writes that would exceed it
        raise :class:`~pysos.exceptions.StorageWriteError`. ``None`` disables
        the check.
    storage_poll_interval : float
        Seconds between checks of ``storage_path`` for writes made by other
        processes.
    rebroadcast_interval : float
        Seconds between rebroadcasts while an SOS is active.
    reconcile_interval : float
        Seconds between geofence reconciliation cycles.
    location_timeout : float
        Upper bound in seconds for a single location fix.
    default_message : str
        Distress message used when the subject has no custom message.
    central_default_message : str
        Distress message used when a zone forces activation without a
        message of its own.
    default_subject_name : str
        Broadcast name used when the subject profile has no usable name.
    signal_quality_min : int
        Lower bound (dBm) of the synthetic signal quality.
    signal_quality_max : int
        Upper bound (dBm) of the synthetic signal quality.
    """

    namespace: str = "pysos"
    storage_path: str | None = None
    storage_quota_bytes: int | None = DEFAULT_STORAGE_QUOTA_BYTES
    storage_poll_interval: float = 1.0
    rebroadcast_interval: float = 30.0
    reconcile_interval: float = 10.0
    location_timeout: float = 8.0
    default_message: str = "SOS! I need urgent help."
    central_default_message: str = "Area SOS alert: emergency declared in your area."
    default_subject_name: str = "User"
    signal_quality_min: int = -90
    signal_quality_max: int = -50

    def __post_init__(self) -> None:
        if not self.namespace.strip():
            raise SosConfigError("namespace must be non-empty")
        for name in ("storage_poll_interval", "rebroadcast_interval", "reconcile_interval", "location_timeout"):
            if getattr(self, name) <= 0:
                raise SosConfigError(f"{name} must be positive")
        if self.storage_quota_bytes is not None and self.storage_quota_bytes <= 0:
            raise SosConfigError("storage_quota_bytes must be positive or None")
        if self.signal_quality_min > self.signal_quality_max:
            raise SosConfigError("signal_quality_min must not exceed signal_quality_max")

    @classmethod
    def from_env(cls, **overrides: Any) -> SosConfig:
        """Create configuration from ``SOS_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "SOS_NAMESPACE": "namespace",
            "SOS_STORAGE_PATH": "storage_path",
            "SOS_DEFAULT_MESSAGE": "default_message",
            "SOS_CENTRAL_DEFAULT_MESSAGE": "central_default_message",
            "SOS_DEFAULT_SUBJECT_NAME": "default_subject_name",
        }
        _ENV_FLOAT_MAP = {
            "SOS_STORAGE_POLL_INTERVAL": "storage_poll_interval",
            "SOS_REBROADCAST_INTERVAL": "rebroadcast_interval",
            "SOS_RECONCILE_INTERVAL": "reconcile_interval",
            "SOS_LOCATION_TIMEOUT": "location_timeout",
        }
        _ENV_INT_MAP = {
            "SOS_STORAGE_QUOTA_BYTES": "storage_quota_bytes",
            "SOS_SIGNAL_QUALITY_MIN": "signal_quality_min",
            "SOS_SIGNAL_QUALITY_MAX": "signal_quality_max",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val
        try:
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = float(val)
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = int(val)
        except ValueError as exc:
            raise SosConfigError(f"Invalid numeric environment value: {exc}") from exc

        # An empty path means "memory only", same as unset.
        if config_kwargs.get("storage_path") == "":
            config_kwargs["storage_path"] = None

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
