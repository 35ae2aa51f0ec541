import argparse
import asyncio
import json
import logging
import sys
from typing import Dict

from fleet_telemetry import config, server
from fleet_telemetry.event_store import EventStore
from fleet_telemetry.reconciler import CounterReconciler

log = logging.getLogger("FleetTelemetry")


def load_levels(path: str) -> Dict[int, int]:
    """
    Load the XP table: a JSON object mapping level to the XP needed to
    complete it, e.g. {"1": 100, "2": 250}.
    """
    with open(path) as f:
        raw = json.load(f)
    return {int(level): int(xp) for level, xp in raw.items()}


async def reconcile_once(db_path: str) -> int:
    store = EventStore(db_path)
    try:
        if not await store.connect():
            return 1
        counters = await CounterReconciler(store).reconcile()
        log.info(f"Reconciled counters: {counters}")
        return 0
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Fleet Telemetry - live gold/XP rates, event log and history for a bot fleet",
        epilog="""
Examples:
  # Serve the dashboard stream on the default port
  %(prog)s --levels levels.json

  # Custom database and port
  %(prog)s --db /var/lib/fleet/telemetry.db --port 9000

  # Reconcile persisted counters with the death log and exit
  %(prog)s --reconcile --db /var/lib/fleet/telemetry.db
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--host', default=config.SERVER_HOST, help="Interface to listen on.")
    parser.add_argument('--port', type=int, default=config.SERVER_PORT, help="Port to listen on.")
    parser.add_argument('--db', default=config.DATABASE_FILE, help="Path to the SQLite event store.")
    parser.add_argument('--levels', metavar='PATH', help="JSON file with the XP required per level.")
    parser.add_argument('--reconcile', action='store_true',
                        help="ONE-SHOT MODE: reconcile dashboard counters and exit.")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    if args.reconcile:
        sys.exit(asyncio.run(reconcile_once(args.db)))

    levels = None
    if args.levels:
        try:
            levels = load_levels(args.levels)
        except (OSError, ValueError, AttributeError) as e:
            log.critical(f"Could not load XP table from '{args.levels}': {e}")
            sys.exit(1)

    server.run_server(db_path=args.db, host=args.host, port=args.port, levels=levels)


if __name__ == "__main__":
    main()
