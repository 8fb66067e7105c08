#!/usr/bin/env python3
"""Simulate a subject and a responder console sharing one device store.

The subject context has a location; the responder context has none. The
script walks through a manual SOS, an area alert that promotes it, the
removal of that alert (which clears the SOS in every context) and an
automatic activation when the subject walks into a new zone.

Usage
-----
::

    python scripts/simulate_contexts.py
    python scripts/simulate_contexts.py --storage-path /tmp/pysos.json -v

Options::

    --storage-path FILE   Back the shared store with FILE (default: memory)
    --lat / --lon         Subject start position
    --name NAME           Subject profile name
    --json                Print the final store contents as JSON
    --verbose, -v         Enable debug logging
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pysos import SosConfig, SosContext, StaticLocationProvider, StorageHub, SubjectProfile  # noqa: E402
from pysos.models import Location  # noqa: E402
from pysos.state.events import ActivityLogged, SosStatusChanged  # noqa: E402


def _section(title: str) -> str:
    return f"\n{'=' * 60}\n  {title}\n{'=' * 60}"


def _attach_printer(ctx: SosContext, label: str) -> None:
    def _on_log(event: ActivityLogged) -> None:
        print(f"  [{label}/{event.channel.value}] {event.message}")

    def _on_status(event: SosStatusChanged) -> None:
        print(f"  [{label}] status {event.previous.value} -> {event.current.value}")

    ctx.bus.subscribe(ActivityLogged, _on_log)
    ctx.bus.subscribe(SosStatusChanged, _on_status)


def _show(ctx: SosContext, label: str) -> None:
    state = ctx.controller.state
    name = state.advertised_name if state else "-"
    source = state.activation_source.value if state and state.activation_source else "-"
    print(f"  {label:<9}: status={ctx.controller.status.value} source={source} name={name}")


async def main() -> None:
    parser = argparse.ArgumentParser(
        description="Walk two pysos contexts through the SOS and area-alert flows.",
    )
    parser.add_argument("--storage-path", help="Back the shared store with FILE (default: memory)")
    parser.add_argument("--lat", type=float, default=40.7128, help="Subject start latitude")
    parser.add_argument("--lon", type=float, default=-74.006, help="Subject start longitude")
    parser.add_argument("--name", default="Ana Lopez", help="Subject profile name")
    parser.add_argument("--json", action="store_true", dest="json_mode", help="Print final store as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    # Long intervals: every cycle below is driven explicitly.
    config = SosConfig.from_env(
        storage_path=args.storage_path,
        rebroadcast_interval=3600.0,
        reconcile_interval=3600.0,
    )
    hub = StorageHub(config.storage_path, quota_bytes=config.storage_quota_bytes)
    provider = StaticLocationProvider(Location(lat=args.lat, lon=args.lon))

    async with (
        SosContext(config, hub, provider, context_id="subject") as subject,
        SosContext(config, hub, context_id="responder") as responder,
    ):
        _attach_printer(subject, "subject")
        _attach_printer(responder, "responder")
        subject.store.save_profile(SubjectProfile(name=args.name))

        print(_section("Manual SOS"))
        await subject.controller.activate()
        _show(subject, "subject")
        _show(responder, "responder")
        signal = responder.publisher.current()
        if signal is not None:
            print(f"  responder sees {signal.display_name} ({signal.proximity}, {signal.signal_quality} dBm)")
            responder.publisher.update_status(signal.id, "Located")

        print(_section("Area alert over the subject"))
        zone = responder.registry.create(
            lat=args.lat, lon=args.lon, radius_meters=500, message="Flooding: move to high ground.", label="Downtown"
        )
        await subject.bridge.drain()
        _show(subject, "subject")

        print(_section("Alert removed"))
        responder.registry.remove(zone.id)
        await subject.bridge.drain()
        _show(subject, "subject")
        _show(responder, "responder")

        print(_section("Subject walks into a new zone"))
        far = responder.registry.create(lat=args.lat + 0.05, lon=args.lon, radius_meters=1000)
        provider.move_to(args.lat + 0.05, args.lon)
        await subject.controller.reconcile_once()
        _show(subject, "subject")
        _show(responder, "responder")
        responder.registry.remove(far.id)
        await subject.bridge.drain()

        if args.json_mode:
            dump = {key: json.loads(hub.get(key) or "null") for key in hub.keys()}
            print(json.dumps(dump, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    asyncio.run(main())
