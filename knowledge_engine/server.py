"""Async HTTP surface for the knowledge engine.

Uses aiohttp's AppRunner/TCPSite for non-blocking start/stop. The
engine is stored on the application (``app[ENGINE_KEY]``) so handlers
and tests share one explicitly constructed instance.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web

from knowledge_engine.config import settings
from knowledge_engine.errors import KnowledgeEngineError, StorageError, ValidationError

if TYPE_CHECKING:
    from knowledge_engine.engine import KnowledgeEngine

logger = logging.getLogger(__name__)

ENGINE_KEY: web.AppKey[KnowledgeEngine] = web.AppKey("engine")


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("invalid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


@web.middleware
async def _error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map engine errors onto HTTP statuses."""
    try:
        return await handler(request)
    except ValidationError as exc:
        return _error(str(exc), 400)
    except StorageError:
        logger.exception("Storage failure on %s", request.path)
        return _error("knowledge store unavailable", 503)
    except KnowledgeEngineError:
        logger.exception("Engine failure on %s", request.path)
        return _error("request failed", 500)


async def _handle_search(request: web.Request) -> web.Response:
    """POST /knowledge/search"""
    engine = request.app[ENGINE_KEY]
    response = await engine.search(await _json_body(request))
    return web.json_response(response.model_dump(mode="json", by_alias=True))


async def _handle_stats(request: web.Request) -> web.Response:
    """GET /knowledge/stats?ownerId="""
    engine = request.app[ENGINE_KEY]
    stats = await engine.stats(request.query.get("ownerId", ""))
    return web.json_response(stats)


async def _handle_budget(request: web.Request) -> web.Response:
    """GET /knowledge/budget?ownerId="""
    engine = request.app[ENGINE_KEY]
    state = await engine.budget(request.query.get("ownerId", ""))
    return web.json_response(state.model_dump(mode="json"))


async def _handle_add_record(request: web.Request) -> web.Response:
    """POST /knowledge/records — store a manual note or file excerpt."""
    engine = request.app[ENGINE_KEY]
    record = await engine.add_record(await _json_body(request))
    body = record.model_dump(mode="json", exclude={"embedding"})
    body["hasEmbedding"] = record.has_embedding
    return web.json_response(body, status=201)


async def _handle_extract(request: web.Request) -> web.Response:
    """POST /knowledge/extract — fire-and-forget extraction for a finished turn."""
    engine = request.app[ENGINE_KEY]
    engine.schedule_extraction(await _json_body(request))
    return web.json_response({"ok": True, "scheduled": True}, status=202)


async def _health(request: web.Request) -> web.Response:
    """GET /health — basic liveness check."""
    return web.json_response({"status": "ok"})


def create_web_app(engine: KnowledgeEngine) -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application(middlewares=[_error_middleware])
    app[ENGINE_KEY] = engine
    app.router.add_get("/health", _health)
    app.router.add_post("/knowledge/search", _handle_search)
    app.router.add_get("/knowledge/stats", _handle_stats)
    app.router.add_get("/knowledge/budget", _handle_budget)
    app.router.add_post("/knowledge/records", _handle_add_record)
    app.router.add_post("/knowledge/extract", _handle_extract)
    return app


class KnowledgeServer:
    """Manages the aiohttp server and engine lifecycle."""

    def __init__(
        self,
        engine: KnowledgeEngine,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        self.engine = engine
        self.host = host or settings.server_host
        self.port = port or settings.server_port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start the engine and begin listening."""
        await self.engine.start()
        self._runner = web.AppRunner(create_web_app(self.engine))
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Knowledge server listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Shut down the server, then the engine."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        await self.engine.close()
        logger.info("Knowledge server stopped")
