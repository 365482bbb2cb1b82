from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Sequence

from aiohttp import web

from paymaster.common import guarded_call, log_event
from paymaster.relay import RelayError, RelayPipeline, decode_transaction
from paymaster.relay.types import REJECT_MALFORMED_REQUEST

Healthcheck = Callable[[], Awaitable[None]]

PIPELINE_KEY = web.AppKey("pipeline", RelayPipeline)
LOGGER_KEY = web.AppKey("logger", logging.Logger)
HEALTHCHECKS_KEY = web.AppKey("healthchecks", tuple)
CORS_ORIGIN_KEY = web.AppKey("cors_origin", str)

CORS_METHODS = "GET, POST, OPTIONS"
CORS_HEADERS = "Content-Type"


def _error(message: str) -> web.Response:
    return web.json_response({"status": "error", "message": message}, status=400)


async def _read_payload(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


@web.middleware
async def cors_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    origin = request.app[CORS_ORIGIN_KEY]
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=204)
    else:
        response = await handler(request)
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Methods"] = CORS_METHODS
    response.headers["Access-Control-Allow-Headers"] = CORS_HEADERS
    return response


async def handle_transfer(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    logger = request.app[LOGGER_KEY]
    payload = await _read_payload(request)

    try:
        transaction = decode_transaction(payload.get("transaction"))
        outcome = await pipeline.relay(transaction, payload)
    except RelayError as error:
        if error.kind == REJECT_MALFORMED_REQUEST:
            log_event(
                logger,
                level="info",
                event="relay_rejected",
                message="Relay request rejected",
                stage="decode",
                kind=error.kind,
                detail=error.detail,
            )
        return _error(str(error))
    except Exception as error:
        log_event(
            logger,
            level="exception",
            event="relay_unhandled_error",
            message="Relay request failed unexpectedly",
            error=str(error),
        )
        return _error("request rejected")

    return web.json_response({"status": "ok", "signature": outcome.signature})


async def handle_health(request: web.Request) -> web.Response:
    logger = request.app[LOGGER_KEY]
    for check in request.app[HEALTHCHECKS_KEY]:
        healthy = await guarded_call(
            lambda: _passes(check),
            logger=logger,
            event="healthcheck_failed",
            message="Dependency healthcheck failed",
            default=False,
        )
        if not healthy:
            return web.json_response({"status": "error", "message": "unhealthy"}, status=503)
    return web.json_response({"status": "ok"})


async def _passes(check: Healthcheck) -> bool:
    await check()
    return True


def build_app(
    *,
    pipeline: RelayPipeline,
    logger: logging.Logger,
    healthchecks: Sequence[Healthcheck] = (),
    cors_origin: str = "*",
) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app[PIPELINE_KEY] = pipeline
    app[LOGGER_KEY] = logger
    app[HEALTHCHECKS_KEY] = tuple(healthchecks)
    app[CORS_ORIGIN_KEY] = cors_origin
    app.router.add_post("/api/transfer", handle_transfer)
    app.router.add_route("OPTIONS", "/api/transfer", handle_transfer)
    app.router.add_get("/api/health", handle_health)
    return app
