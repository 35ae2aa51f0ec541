import logging
from typing import Iterable, Mapping, Optional

from aiohttp import web

from .agents import AgentState
from .aggregator import TelemetryAggregator
from .config import DATABASE_FILE, SERVER_HOST, SERVER_PORT, WEBSOCKET_PATH
from .event_store import EventStore
from .hub import BroadcastHub
from .tasks import cleanup_background_tasks, start_background_tasks

log = logging.getLogger("FleetTelemetry.Server")


async def handle_health(request):
    aggregator = request.app["aggregator"]
    return web.json_response({
        "ready": aggregator.ready,
        "clients": len(request.app["hub"].open_connections()),
        "agents": len(aggregator.agents),
    })


def create_app(aggregator: TelemetryAggregator, hub: Optional[BroadcastHub] = None) -> web.Application:
    """Wire an aggregator and its hub into an aiohttp application with startup/cleanup hooks."""
    app = web.Application()
    app["store"] = aggregator.store
    app["aggregator"] = aggregator
    app["hub"] = hub or BroadcastHub(aggregator)

    app.on_startup.append(start_background_tasks)
    app.on_cleanup.append(cleanup_background_tasks)
    app.router.add_get(WEBSOCKET_PATH, app["hub"].websocket_handler)
    app.router.add_get("/health", handle_health)
    return app


def run_server(db_path: str = DATABASE_FILE, host: str = SERVER_HOST, port: int = SERVER_PORT,
               levels: Optional[Mapping[int, int]] = None, agents: Iterable[AgentState] = ()):
    store = EventStore(db_path)
    aggregator = TelemetryAggregator(store, levels=levels)
    aggregator.set_agents(agents)
    app = create_app(aggregator)

    log.info(f"Server starting on ws://{host}:{port}{WEBSOCKET_PATH}")
    log.info(f"Event store: {db_path}")
    web.run_app(app, host=host, port=port)
