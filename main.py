#!/usr/bin/env python3
"""
Headphone Party - Sync Server Entry Point
SSE fan-out + tempo/host state + rate limiting
"""
import logging
import os
import time
from collections import defaultdict
from typing import Callable, Optional

from aiohttp import web

from party.api import GATEWAY, PARTY_NAME, json_error, setup_routes
from party.broadcaster import Broadcaster
from party.gateway import SyncGateway
from party.state import StateStore
from party.utils import get_local_ip

logging.basicConfig(
    level=os.environ.get("PARTY_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("headphone_party")

PARTY_NAME_DEFAULT = os.environ.get("PARTY_NAME", "Headphone Party")
KEEPALIVE_SECONDS = float(os.environ.get("PARTY_KEEPALIVE_SECONDS", 15))
WRITE_TIMEOUT = float(os.environ.get("PARTY_WRITE_TIMEOUT", 5))
RATE_LIMIT_PER_MINUTE = int(os.environ.get("PARTY_RATE_LIMIT", 100))
RATE_LIMIT_WINDOW = 60

# Reject sync bodies over 1 MB
MAX_BODY_BYTES = 1024 * 1024


def prune_rate_limit_store(rate_limit_store: dict, now: float) -> None:
    """Drop timestamps outside the window, and IPs left with none"""
    for ip in list(rate_limit_store):
        recent = [t for t in rate_limit_store[ip] if now - t < RATE_LIMIT_WINDOW]
        if recent:
            rate_limit_store[ip] = recent
        else:
            del rate_limit_store[ip]


def make_rate_limit_middleware(limit: int, clock: Callable[[], float] = time.time):
    """Simple rate limiting: `limit` API requests per minute per IP"""
    rate_limit_store = defaultdict(list)
    last_prune = clock()

    @web.middleware
    async def rate_limit_middleware(request, handler):
        nonlocal last_prune
        path = request.path

        # The event stream is one long request per guest
        if limit <= 0 or not path.startswith("/api/") or path == "/api/events":
            return await handler(request)

        ip = request.remote
        now = clock()

        # Clean old entries
        if now - last_prune >= RATE_LIMIT_WINDOW:
            prune_rate_limit_store(rate_limit_store, now)
            last_prune = now
        rate_limit_store[ip] = [t for t in rate_limit_store[ip] if now - t < RATE_LIMIT_WINDOW]

        if len(rate_limit_store[ip]) >= limit:
            logger.warning(f"Rate limit exceeded for {ip}")
            return json_error("Rate limit exceeded", status=429)

        rate_limit_store[ip].append(now)
        return await handler(request)

    return rate_limit_middleware


async def close_streams(app: web.Application) -> None:
    """Release every guest stream so shutdown does not wait on them"""
    await app[GATEWAY].close()


def create_app(
    store: Optional[StateStore] = None,
    party_name: str = PARTY_NAME_DEFAULT,
    keepalive_interval: float = KEEPALIVE_SECONDS,
    write_timeout: Optional[float] = WRITE_TIMEOUT,
    rate_limit: int = RATE_LIMIT_PER_MINUTE,
) -> web.Application:
    """Create and configure the aiohttp application"""
    app = web.Application(
        middlewares=[make_rate_limit_middleware(rate_limit)],
        client_max_size=MAX_BODY_BYTES,
    )

    store = store or StateStore()
    broadcaster = Broadcaster(
        store.snapshot,
        keepalive_interval=keepalive_interval,
        write_timeout=write_timeout,
    )
    app[GATEWAY] = SyncGateway(store, broadcaster)
    app[PARTY_NAME] = party_name

    setup_routes(app)
    app.on_shutdown.append(close_streams)

    logger.info("🎧 Headphone Party sync server ready • SSE enabled")
    return app


def main():
    app = create_app()
    port = int(os.environ.get("PORT", 4173))
    host = os.environ.get("SERVER_HOST", "0.0.0.0")
    local_ip = get_local_ip()

    logger.info(f"🚀 Starting server on {host}:{port}")
    logger.info(f"💡 Guests join at: http://{local_ip}:{port}")

    web.run_app(app, host=host, port=port)

if __name__ == "__main__":
    main()
