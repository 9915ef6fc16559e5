"""
HTTP API handlers for Headphone Party
SSE event stream + sync mutations + snapshot reads
"""
import json
import logging
from aiohttp import web

from .errors import InvalidRequest, InvalidValue
from .gateway import SyncGateway
from .utils import get_local_ips

logger = logging.getLogger("headphone_party")

GATEWAY = web.AppKey("gateway", SyncGateway)
PARTY_NAME = web.AppKey("party_name", str)

NO_STORE = {"Cache-Control": "no-store"}


def json_response(data: dict, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, headers=NO_STORE)


def json_error(message: str, status: int = 400) -> web.Response:
    return json_response({"ok": False, "error": message}, status=status)

# ============================================================
# SERVER-SENT EVENTS
# ============================================================

async def api_events(request: web.Request) -> web.StreamResponse:
    """SSE endpoint: first event is the current state, then every change"""
    gateway = request.app[GATEWAY]

    response = web.StreamResponse(
        status=200,
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "Access-Control-Allow-Origin": "*",
        },
    )
    await response.prepare(request)

    channel = await gateway.subscribe(response)
    try:
        await channel.wait_closed()
    finally:
        gateway.unsubscribe(channel)

    return response

# ============================================================
# STATE
# ============================================================

async def api_state(request: web.Request) -> web.Response:
    """Point-in-time snapshot"""
    snapshot = request.app[GATEWAY].read_snapshot()
    return json_response(snapshot.to_wire())


async def api_info(request: web.Request) -> web.Response:
    """Party name, LAN addresses and the headline state"""
    snapshot = request.app[GATEWAY].read_snapshot()
    return json_response({
        "name": request.app[PARTY_NAME],
        "localIPs": get_local_ips(),
        "bpm": snapshot.tempo_bpm,
        "beatTimestamp": snapshot.beat_origin_ms,
        "hostConnected": snapshot.host_connected,
    })

# ============================================================
# SYNC MUTATIONS
# ============================================================

async def api_sync(request: web.Request) -> web.Response:
    """Apply a sync-update / sync-clear / host-status message"""
    body = await request.text()
    try:
        message = json.loads(body or "{}")
    except ValueError:
        return json_error("Invalid JSON body")

    try:
        snapshot = await request.app[GATEWAY].mutate(message)
    except InvalidValue as e:
        logger.warning(f"Rejected sync message from {request.remote}: {e}")
        return json_error(str(e))
    except InvalidRequest as e:
        logger.warning(f"Malformed sync message from {request.remote}: {e}")
        return json_error(str(e))

    return json_response({"ok": True, "state": snapshot.to_wire()})


def setup_routes(app: web.Application) -> None:
    app.router.add_get("/api/info", api_info)
    app.router.add_get("/api/state", api_state)
    app.router.add_get("/api/events", api_events)
    app.router.add_post("/api/sync", api_sync)
