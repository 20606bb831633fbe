"""FastAPI routes for the UMA telemetry REST and WebSocket API."""

import json
import logging
import time

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from uma.hub.core import TelemetryHub
from uma.hub.errors import CacheMiss, UnknownResource

logger = logging.getLogger(__name__)


class InvalidateRequest(BaseModel):
    prefix: str
    refresh: bool = False


def _miss_response(e: CacheMiss) -> JSONResponse:
    content = {"key": e.key, "error": "cache_miss", "last_error": e.last_error}
    if e.entry is not None and e.entry.has_value:
        content["entry"] = e.entry.to_dict()
    return JSONResponse(status_code=503, content=content)


def _register_telemetry_routes(router: APIRouter, hub: TelemetryHub) -> None:
    """Register point-read and refresh endpoints on the router."""

    @router.get("/api/telemetry")
    async def list_telemetry():
        """All cached values, stale ones included, without refreshing."""
        entries = [entry.to_dict() for entry in hub.list_entries()]
        return {"count": len(entries), "entries": entries}

    @router.get("/api/telemetry/{key}")
    async def get_telemetry(key: str, timeout: float | None = None):
        """Point read; refreshes synchronously only past hard TTL."""
        try:
            entry = await hub.query(key, timeout=timeout)
        except UnknownResource:
            raise HTTPException(status_code=404, detail=f"Resource '{key}' not found") from None
        except CacheMiss as e:
            return _miss_response(e)
        return entry.to_dict()

    @router.post("/api/telemetry/{key}/refresh")
    async def refresh_telemetry(key: str):
        """Probe now, regardless of TTL."""
        try:
            entry = await hub.refresh(key)
        except UnknownResource:
            raise HTTPException(status_code=404, detail=f"Resource '{key}' not found") from None
        return entry.to_dict()

    @router.post("/api/invalidate")
    async def invalidate_telemetry(body: InvalidateRequest):
        """Expire cached values by key prefix; the next read probes again."""
        if not body.prefix:
            raise HTTPException(status_code=400, detail="prefix must not be empty")
        keys = await hub.invalidate(body.prefix, refresh=body.refresh)
        return {"prefix": body.prefix, "count": len(keys), "invalidated": keys}


def _register_utility_routes(router: APIRouter, hub: TelemetryHub) -> None:
    """Register stats and introspection endpoints on the router."""

    @router.get("/api/stats")
    async def get_stats():
        return hub.stats()

    @router.get("/api/probes")
    async def list_probes():
        probes = []
        for key in hub.collector.keys():
            reg = hub.collector.get_registration(key)
            if reg is not None:
                probes.append(reg.info())
        return {"probes": probes}

    @router.get("/api/subscriptions")
    async def list_subscriptions():
        return {"subscriptions": hub.events.list_subscriptions()}


def create_api(hub: TelemetryHub) -> FastAPI:
    """Create FastAPI application with hub routes.

    Args:
        hub: TelemetryHub instance

    Returns:
        FastAPI application
    """
    from uma import __version__

    app = FastAPI(
        title="UMA",
        description="REST and WebSocket API for the UMA telemetry hub",
        version=__version__,
    )

    # --- Request timing middleware ---
    @app.middleware("http")
    async def request_timing_middleware(request: Request, call_next):
        hub._request_count += 1
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start
        if elapsed > 1.0:
            logger.warning(f"{request.method} {request.url.path} took {elapsed:.2f}s")
        else:
            logger.debug(f"{request.method} {request.url.path} took {elapsed:.3f}s")
        return response

    router = APIRouter()

    @app.get("/")
    async def root():
        """API root - health check."""
        return {"status": "ok", "service": "UMA"}

    @app.get("/health")
    async def health():
        """Detailed health check with probe status and uptime."""
        try:
            health_data = await hub.health_check()
            return JSONResponse(content=health_data)
        except Exception:
            logger.exception("Health check failed")
            return JSONResponse(status_code=500, content={"status": "error", "error": "Health check failed"})

    _register_telemetry_routes(router, hub)
    _register_utility_routes(router, hub)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint for change events.

        Initial topics may be given as ``?topics=docker.events,ups.status``;
        more are added with ``{"type": "subscribe", "topics": [...]}``.
        """
        raw_topics = websocket.query_params.get("topics", "")
        topics = [t.strip() for t in raw_topics.split(",") if t.strip()]

        async def close_transport(code: int, reason: str):
            await websocket.close(code=code, reason=reason)

        await websocket.accept()
        conn = hub.registry.open(websocket.send_json, close=close_transport)

        try:
            await conn.send({"type": "connected", "id": conn.id, "topics": sorted(topics)})
        except Exception as e:
            hub.registry.fail(conn, f"handshake failed: {e}")
            return
        hub.registry.activate(conn, topics)

        client_gone = False
        try:
            while not conn.closed:
                try:
                    data = await websocket.receive_text()
                    if conn.closed:
                        break
                    message = json.loads(data)
                    if not isinstance(message, dict):
                        raise json.JSONDecodeError("expected an object", data, 0)
                    reply = await hub.registry.handle_message(conn, message)
                    await conn.send(reply)
                except WebSocketDisconnect:
                    client_gone = True
                    break
                except json.JSONDecodeError:
                    await conn.send({"type": "error", "message": "Invalid JSON"})
                except Exception as e:
                    logger.error(f"WebSocket error: {e}")
                    client_gone = True
                    break
        finally:
            await hub.registry.close(conn.id, "disconnected", disconnect=False)

        # Server-side close: unsubscribe-all, or the hub ended the subscription
        if not client_gone:
            await conn.disconnect()

    app.include_router(router)

    return app
