import asyncio
import logging
from typing import Dict, Optional

import httpx

logger = logging.getLogger("translator.gateway.traffic")

# ======================================================
# Tunables
# ======================================================

QUEUE_MAX_SIZE = 1000        # Max events kept in memory
SEND_TIMEOUT = 0.3           # Hard timeout per request (seconds)
MAX_CONNECTIONS = 20
KEEPALIVE_CONNECTIONS = 5

# ======================================================
# Internal State
# ======================================================

_event_queue: Optional[asyncio.Queue] = None
_worker_task: Optional[asyncio.Task] = None
_http_client: Optional[httpx.AsyncClient] = None
_sink_url: Optional[str] = None
_sink_headers: Dict[str, str] = {}


# ======================================================
# Background Worker
# ======================================================

async def _traffic_worker():
    """
    Drains the event queue forever.

    - never raises out of the loop
    - never blocks the request path
    """
    logger.info("Traffic worker started")

    while True:
        event = await _event_queue.get()
        try:
            await _http_client.post(_sink_url, json=event, headers=_sink_headers)
        except Exception as e:
            # Sink failure must NOT affect request handling
            logger.debug(f"Traffic send failed (dropped): {e}")
        finally:
            _event_queue.task_done()


# ======================================================
# Lifecycle
# ======================================================

def start_traffic_logger(sink_url: Optional[str], secret: Optional[str] = None) -> None:
    """
    Must be called ONCE after the event loop is running.
    """
    global _event_queue, _worker_task, _http_client, _sink_url, _sink_headers

    if _worker_task is not None:
        return

    if not sink_url:
        logger.info("Traffic events disabled: EVENT_SINK_URL not set")
        return

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.error("Traffic logger start attempted without running event loop")
        return

    _sink_url = sink_url
    _sink_headers = {"x-event-secret": secret} if secret else {}
    _event_queue = asyncio.Queue(maxsize=QUEUE_MAX_SIZE)
    _http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(SEND_TIMEOUT),
        limits=httpx.Limits(
            max_connections=MAX_CONNECTIONS,
            max_keepalive_connections=KEEPALIVE_CONNECTIONS,
        ),
    )
    _worker_task = loop.create_task(_traffic_worker())

    logger.info(f"Traffic logger initialized (sink: {sink_url})")


async def shutdown_traffic_logger() -> None:
    """
    Graceful shutdown (best-effort).
    """
    global _worker_task, _http_client, _event_queue

    if _worker_task is not None:
        _worker_task.cancel()
        try:
            await _worker_task
        except asyncio.CancelledError:
            pass
        _worker_task = None

    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None

    _event_queue = None
    logger.info("Traffic logger shut down")


def is_logger_ready() -> bool:
    return _worker_task is not None


# ======================================================
# Public API
# ======================================================

def emit_traffic_event(event: Dict) -> None:
    """
    Fire-and-forget emission.

    - zero await
    - bounded memory: drops under pressure
    - sink can be down or unset
    """
    if _event_queue is None:
        return

    try:
        _event_queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.debug("Traffic queue full, dropping event")
