"""HTTP service for the prompt relay.

Thin aiohttp layer in front of :class:`core.scraper.PromptScraper`.  It
authenticates the caller, validates input, resolves the default level URL,
persists the prompt/answer pair and maps every failure to a generic 500.

Usage::

    python main.py --port 5000

Endpoints:
    GET  /health        -- Liveness probe.
    POST /api/scrapper  -- Relay ``{"prompt", "targetUrl"?}``; bearer auth.
    GET  /api/history   -- Caller's recent prompts; bearer auth.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from aiohttp import web

from browser.instance import BrowserManager
from core.auth import SessionTokenSigner
from core.config import RelaySettings
from core.history import PromptHistory
from core.scraper import PromptScraper, ScrapeRequest

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

SETTINGS_KEY = web.AppKey("settings", RelaySettings)
SCRAPER_KEY = web.AppKey("scraper", PromptScraper)
HISTORY_KEY = web.AppKey("history", PromptHistory)
SIGNER_KEY = web.AppKey("signer", SessionTokenSigner)

INTERNAL_ERROR_MESSAGE = (
    "An internal error occurred while processing your request"
)


def _fail(status: int, message: str) -> web.Response:
    return web.json_response(
        {"success": False, "message": message}, status=status,
    )


def _bearer_token(request: web.Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _add_cors_headers(
    response: web.StreamResponse, settings: RelaySettings,
) -> web.StreamResponse:
    response.headers["Access-Control-Allow-Origin"] = settings.frontend_url
    response.headers["Access-Control-Allow-Credentials"] = "true"
    response.headers["Access-Control-Allow-Methods"] = (
        "GET, POST, PUT, DELETE, OPTIONS"
    )
    response.headers["Access-Control-Allow-Headers"] = (
        "Content-Type, Authorization"
    )
    return response


@web.middleware
async def cors_middleware(
    request: web.Request, handler: Handler,
) -> web.StreamResponse:
    """Allow the configured frontend origin, with credentials.

    Raised ``HTTPException`` responses (404, 405, ...) carry the headers
    too, so the browser reports the real status.
    """
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=204)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            _add_cors_headers(e, request.app[SETTINGS_KEY])
            raise
    return _add_cors_headers(response, request.app[SETTINGS_KEY])


@web.middleware
async def auth_middleware(
    request: web.Request, handler: Handler,
) -> web.StreamResponse:
    """Attach ``request["user"]`` for ``/api/*`` routes or reply 401."""
    if not request.path.startswith("/api/"):
        return await handler(request)

    payload = request.app[SIGNER_KEY].verify(_bearer_token(request) or "")
    if payload is None:
        return _fail(401, "Unauthorized")
    request["user"] = payload
    return await handler(request)


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response(
        {"status": "ok", "message": "Server is running"}
    )


async def handle_scrape(request: web.Request) -> web.Response:
    """Relay one prompt for the authenticated caller."""
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}

    prompt = body.get("prompt")
    if not prompt or not isinstance(prompt, str):
        return _fail(400, "Prompt is required")

    settings = request.app[SETTINGS_KEY]
    user_id = str(request["user"]["user_id"])
    target_url = body.get("targetUrl") or settings.gandalf_url

    try:
        answer = await request.app[SCRAPER_KEY].scrape(
            ScrapeRequest(
                target_url=target_url, prompt=prompt, caller_id=user_id,
            )
        )
        await asyncio.to_thread(
            request.app[HISTORY_KEY].record, user_id, prompt, answer,
        )
    except Exception as e:
        logger.error(
            "[ScrapeController] error for user %s: %s",
            user_id, e, exc_info=True,
        )
        return _fail(500, INTERNAL_ERROR_MESSAGE)

    return web.json_response({"success": True, "data": {"answer": answer}})


async def handle_history(request: web.Request) -> web.Response:
    user_id = str(request["user"]["user_id"])
    try:
        limit = max(1, min(int(request.query.get("limit", "20")), 100))
    except ValueError:
        return _fail(400, "limit must be an integer")

    records = await asyncio.to_thread(
        request.app[HISTORY_KEY].recent, user_id, limit,
    )
    return web.json_response({
        "success": True,
        "data": [
            {
                "id": r.id,
                "prompt": r.prompt,
                "response": r.response,
                "createdAt": r.created_at,
            }
            for r in records
        ],
    })


def create_app(
    settings: RelaySettings,
    scraper: PromptScraper,
    history: PromptHistory,
    signer: SessionTokenSigner,
) -> web.Application:
    """Build the aiohttp application.

    The scraper's :class:`BrowserManager` is closed on app cleanup, which
    is the only place the shared local browser is ever shut down.
    """
    app = web.Application(middlewares=[cors_middleware, auth_middleware])
    app[SETTINGS_KEY] = settings
    app[SCRAPER_KEY] = scraper
    app[HISTORY_KEY] = history
    app[SIGNER_KEY] = signer

    app.router.add_get("/health", handle_health)
    app.router.add_post("/api/scrapper", handle_scrape)
    app.router.add_get("/api/history", handle_history)

    async def close_browser(app: web.Application) -> None:
        await app[SCRAPER_KEY].browser_manager.close()

    app.on_cleanup.append(close_browser)
    return app


def build_browser_manager(settings: RelaySettings) -> BrowserManager:
    return BrowserManager(
        headless=settings.headless,
        remote_endpoint=settings.baas_ws_endpoint,
        remote_keepalive_ms=settings.remote_keepalive_ms,
        connect_timeout_ms=settings.remote_connect_timeout_ms,
        blocked_resource_types=settings.blocked_resource_types,
    )


def run_server(settings: RelaySettings) -> None:
    """Wire the relay together and serve until interrupted."""
    scraper = PromptScraper(build_browser_manager(settings), settings)
    history = PromptHistory(settings.history_db_path)
    signer = SessionTokenSigner(
        settings.token_key, ttl_seconds=settings.token_ttl_seconds,
    )
    app = create_app(settings, scraper, history, signer)

    logger.info(
        "Server running on %s:%d (API at /api)",
        settings.host, settings.port,
    )
    web.run_app(app, host=settings.host, port=settings.port, print=None)
