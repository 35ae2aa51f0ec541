import asyncio
import json
import logging
from typing import Any, Dict, Iterable

import aiohttp


log = logging.getLogger("FleetTelemetry.WebsocketUtils")

# Disconnect races that are part of normal operation
_CLOSING_ERRORS = (ConnectionResetError,
                   aiohttp.client_exceptions.ClientConnectionResetError,
                   RuntimeError)


async def safe_send_str(ws, text: str) -> bool:
    """
    Send an already-serialized message, treating a closing connection as normal.

    Returns:
        bool: True if sent, False if the connection was closed or closing
    """
    try:
        if ws.closed:
            return False
        await ws.send_str(text)
        return True
    except _CLOSING_ERRORS as e:
        log.debug(f"Could not send to client (connection closing): {type(e).__name__}")
        return False
    except Exception as e:
        log.warning(f"Unexpected error sending WebSocket message: {e}", exc_info=True)
        return False


async def safe_send_json(ws, payload: Dict[str, Any]) -> bool:
    return await safe_send_str(ws, json.dumps(payload))


async def robust_broadcast(websockets: Iterable, payload: Dict[str, Any]) -> int:
    """
    Sends one payload to every given connection. The payload is serialized once;
    a failing recipient never prevents delivery to the others.

    Returns the number of recipients that received the message.
    """
    recipients = list(websockets)
    if not recipients:
        return 0

    text = json.dumps(payload)
    results = await asyncio.gather(*(safe_send_str(ws, text) for ws in recipients), return_exceptions=True)

    successful = sum(1 for r in results if r is True)
    if successful < len(results):
        log.debug(f"Broadcast '{payload.get('type')}': {successful}/{len(results)} clients received message")
    return successful
