import asyncio
import logging

from .config import (BROADCAST_INTERVAL_SECONDS, DB_PRUNE_INTERVAL_MINUTES, HEARTBEAT_LOG_INTERVAL_SECONDS,
                     SNAPSHOT_INTERVAL_SECONDS)

log = logging.getLogger("FleetTelemetry.Tasks")


async def snapshot_task(app):
    """Samples gold and XP, updating the rate windows and history."""
    log.info("Snapshot task started.")
    aggregator = app["aggregator"]
    while True:
        await asyncio.sleep(SNAPSHOT_INTERVAL_SECONDS)
        try:
            aggregator.take_snapshot()
        except Exception:
            log.error("Error in snapshot task:", exc_info=True)


async def broadcast_task(app):
    log.info("Broadcast task started.")
    hub = app["hub"]
    while True:
        await asyncio.sleep(BROADCAST_INTERVAL_SECONDS)
        try:
            await hub.broadcast_update()
        except Exception:
            log.error("Error in broadcast task:", exc_info=True)


async def database_pruner_task(app):
    log.info("Database pruner task started.")
    store = app["store"]
    while True:
        try:
            removed = await store.prune_expired()
            if removed and any(removed.values()):
                log.debug(f"Prune pass removed: {removed}")
        except Exception:
            log.error("Error in database pruner task:", exc_info=True)
        await asyncio.sleep(60 * DB_PRUNE_INTERVAL_MINUTES)


async def debug_logger_task(app):
    log.info("Debug heartbeat task started.")
    aggregator = app["aggregator"]
    hub = app["hub"]
    while True:
        await asyncio.sleep(HEARTBEAT_LOG_INTERVAL_SECONDS)
        log.info(
            f"[HEARTBEAT] Clients: {len(hub.open_connections())}/{len(hub.connections)}, "
            f"Agents: {len(aggregator.agents)}, Gold samples: {len(aggregator.rates.gold)}, "
            f"XP samples: {len(aggregator.rates.xp)}, Kills: {aggregator.kills}, Deaths: {aggregator.deaths}, "
            f"Items: {aggregator.items_looted}, Ready: {aggregator.ready}"
        )


async def start_background_tasks(app):
    log.info("Application startup: starting background tasks.")
    await app["aggregator"].start()
    app["tasks"] = [
        asyncio.create_task(snapshot_task(app)),
        asyncio.create_task(broadcast_task(app)),
        asyncio.create_task(database_pruner_task(app)),
        asyncio.create_task(debug_logger_task(app)),
    ]


async def cleanup_background_tasks(app):
    """Flush counters, close observers, stop timers, release the store. Each step runs regardless."""
    log.warning("Application cleanup started.")
    try:
        await app["aggregator"].stop()
        log.info("Dashboard counters flushed.")
    except Exception:
        log.error("Failed to flush dashboard counters on shutdown:", exc_info=True)
    finally:
        try:
            await app["hub"].close_all()
        except Exception:
            log.error("Failed to close WebSocket connections:", exc_info=True)
        finally:
            try:
                for task in app.get("tasks", []):
                    task.cancel()
                await asyncio.gather(*app.get("tasks", []), return_exceptions=True)
                log.info("Asyncio background tasks cancelled.")
            finally:
                app["store"].close()
                log.info("Event store closed.")
