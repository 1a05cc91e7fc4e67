#!/usr/bin/env python3
"""Run the fleet monitor against the configured provider and MongoDB.

Usage
-----
Set environment variables and run::

    export FLEET_PROVIDER_CLIENT_ID="..."
    export FLEET_PROVIDER_CLIENT_SECRET="..."
    export FLEET_MONGO_URI="mongodb://localhost:27017"
    python scripts/run_monitor.py

Options::

    --vin VIN            Only monitor this vehicle (repeatable)
    --missed-trips       Print missed trip candidates and exit
    --verbose, -v        Enable debug logging
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal

from fleetstate import FleetConfig, FleetEvent, FleetMonitor


def _print_event(event: FleetEvent) -> None:
    print(json.dumps(event.to_document(), default=str, ensure_ascii=False))


async def main() -> None:
    parser = argparse.ArgumentParser(description="Track vehicle state, trips and parking from live telemetry.")
    parser.add_argument("--vin", action="append", default=[], help="Only monitor this vehicle (repeatable)")
    parser.add_argument("--missed-trips", action="store_true", help="Print missed trip candidates and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    overrides = {"vehicle_ids": tuple(args.vin)} if args.vin else {}
    config = FleetConfig.from_env(**overrides)

    async with FleetMonitor(config) as monitor:
        if args.missed_trips:
            await monitor.discover_vehicles()
            for vehicle_id, candidates in (await monitor.find_missed_trips()).items():
                for candidate in candidates:
                    print(vehicle_id, json.dumps(candidate.to_document(), default=str))
            return

        monitor.events.subscribe(_print_event)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop.set)
        await monitor.run(stop)


if __name__ == "__main__":
    asyncio.run(main())
