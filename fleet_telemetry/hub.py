"""
Broadcast Hub

Tracks observer connections and fans telemetry out to them over aiohttp
WebSockets. The hub only reads and serializes; all telemetry state belongs to
the aggregator.
"""

import asyncio
import enum
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from aiohttp import web

from .config import (DEFAULT_PAGE_LIMIT, FULL_ERRORS_LIMIT, FULL_EVENTS_LIMIT, FULL_HISTORY_LIMIT,
                     MAX_PAGE_LIMIT, WEBSOCKET_HEARTBEAT_SECONDS)
from .websocket_utils import robust_broadcast, safe_send_json

log = logging.getLogger("FleetTelemetry.Hub")

LOG_TYPES = ('events', 'errors', 'goldHistory', 'xpHistory')


class ConnectionState(enum.Enum):
    CONNECTING = 'connecting'
    OPEN = 'open'
    CLOSED = 'closed'


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class BroadcastHub:
    def __init__(self, aggregator):
        self.aggregator = aggregator
        self.connections: Dict[Any, ConnectionState] = {}
        aggregator.subscribe(self.broadcast)

    def open_connections(self) -> List[Any]:
        return [ws for ws, state in self.connections.items() if state is ConnectionState.OPEN]

    async def broadcast(self, payload: Dict[str, Any]) -> int:
        """Push a message to every OPEN connection."""
        return await robust_broadcast(self.open_connections(), payload)

    # --- Message builders ---

    async def build_full(self) -> Dict[str, Any]:
        agg = self.aggregator
        stats, events, errors, gold_history, xp_history, bosses, respawns = await asyncio.gather(
            agg.get_dashboard_stats(),
            agg.recent_events(FULL_EVENTS_LIMIT),
            agg.recent_errors(FULL_ERRORS_LIMIT),
            agg.gold_history_page(FULL_HISTORY_LIMIT),
            agg.xp_history_page(FULL_HISTORY_LIMIT),
            agg.special_monsters(),
            agg.upcoming_respawns(),
        )
        return {
            'type': 'full',
            'characters': agg.get_character_stats(),
            'stats': stats.to_payload(),
            'events': events,
            'errors': errors,
            'goldHistory': gold_history,
            'xpHistory': xp_history,
            'bosses': bosses,
            'respawns': respawns,
        }

    async def build_update(self) -> Dict[str, Any]:
        stats = await self.aggregator.get_dashboard_stats()
        return {
            'type': 'update',
            'characters': self.aggregator.get_character_stats(),
            'stats': stats.to_payload(),
        }

    async def broadcast_update(self) -> int:
        """Send the periodic update. Does nothing while no connection is OPEN."""
        if not self.open_connections():
            return 0
        return await self.broadcast(await self.build_update())

    async def load_more(self, log_type: str, offset: int = 0, limit: int = DEFAULT_PAGE_LIMIT,
                        event_filter=None) -> Dict[str, Any]:
        offset = max(0, offset)
        limit = max(1, min(limit, MAX_PAGE_LIMIT))
        agg = self.aggregator

        if log_type == 'events':
            if isinstance(event_filter, str):
                event_filter = [event_filter]
            elif not isinstance(event_filter, list):
                event_filter = None
            data = await agg.recent_events(limit, offset, event_types=event_filter or None)
        elif log_type == 'errors':
            data = await agg.recent_errors(limit, offset)
        elif log_type == 'goldHistory':
            data = await agg.gold_history_page(limit, offset)
        elif log_type == 'xpHistory':
            data = await agg.xp_history_page(limit, offset)
        else:
            log.warning(f"Client requested unknown log type '{log_type}'")
            data = []

        return {'type': 'moreData', 'logType': log_type, 'data': data, 'offset': offset,
                'hasMore': len(data) == limit}

    # --- Connection handling ---

    async def handle_message(self, ws, raw: str):
        data = json.loads(raw)
        if not isinstance(data, dict):
            return
        msg_type = data.get('type')
        if msg_type == 'loadMore':
            reply = await self.load_more(
                data.get('logType'),
                offset=_as_int(data.get('offset'), 0),
                limit=_as_int(data.get('limit'), DEFAULT_PAGE_LIMIT),
                event_filter=data.get('filter'),
            )
            await safe_send_json(ws, reply)
        else:
            log.debug(f"Ignoring client message of type '{msg_type}'")

    async def websocket_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=WEBSOCKET_HEARTBEAT_SECONDS)
        await ws.prepare(request)
        self.connections[ws] = ConnectionState.CONNECTING
        log.info(f"WebSocket client connected. Total clients: {len(self.connections)}")

        try:
            if not await safe_send_json(ws, await self.build_full()):
                return ws
            self.connections[ws] = ConnectionState.OPEN

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        await self.handle_message(ws, msg.data)
                    except json.JSONDecodeError:
                        log.warning(f"Received invalid JSON from client: {msg.data!r}")
                    except Exception:
                        log.error("Error processing client message:", exc_info=True)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    log.debug(f"WebSocket connection closed with exception {ws.exception()}")
        finally:
            self.connections.pop(ws, None)
            log.info(f"WebSocket client disconnected. Total clients: {len(self.connections)}")
        return ws

    async def close_all(self, message: Optional[bytes] = b'Server shutdown'):
        self.aggregator.unsubscribe(self.broadcast)
        sockets = list(self.connections)
        for ws in sockets:
            self.connections[ws] = ConnectionState.CLOSED
        await asyncio.gather(*(ws.close(code=aiohttp.WSCloseCode.GOING_AWAY, message=message) for ws in sockets),
                             return_exceptions=True)
        self.connections.clear()
        if sockets:
            log.info(f"Closed {len(sockets)} WebSocket connection(s).")
