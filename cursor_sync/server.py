"""aiohttp.web front end exposing the sync triggers and status."""

import hmac
import logging
from typing import Optional

from aiohttp import web

from cursor_sync.config import Settings, configure_logging
from cursor_sync.exceptions import CursorSyncError, ValidationError
from cursor_sync.models import SyncResult
from cursor_sync.service import SyncContext, build_context, fetch_leaderboard, reset_data

logger = logging.getLogger(__name__)

CONTEXT_KEY = web.AppKey("sync_context", SyncContext)

CRON_TRIGGER_HEADER = "X-Cron-Trigger"


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _presented_secret(request: web.Request) -> Optional[str]:
    secret = request.headers.get("X-Cron-Secret")
    if secret is not None:
        return secret
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[len("Bearer "):].strip()
    return None


def _has_cron_secret(request: web.Request, settings: Settings) -> bool:
    presented = _presented_secret(request)
    return presented is not None and hmac.compare_digest(presented, settings.cron_secret)


def _api_key_missing(ctx: SyncContext) -> Optional[web.Response]:
    if not ctx.settings.api_key:
        logger.error("API key not configured")
        return _error("API key not configured", 500)
    return None


def _sync_response(result: SyncResult, ctx: SyncContext, **extra) -> web.Response:
    if not result.success:
        return _error(result.error or "Sync failed", 500)
    body = result.to_response()
    body["syncedAt"] = ctx.clock().isoformat()
    body.update(extra)
    return web.json_response(body)


async def cron_sync(request: web.Request) -> web.Response:
    """Scheduled sync. Lock contention and rate limiting answer 200 ``skipped``."""
    ctx = request.app[CONTEXT_KEY]
    settings = ctx.settings

    if settings.cron_secret and not _has_cron_secret(request, settings):
        if CRON_TRIGGER_HEADER not in request.headers:
            return _error("Unauthorized", 401)

    missing = _api_key_missing(ctx)
    if missing is not None:
        return missing

    logger.info("Starting scheduled sync")
    result = await ctx.orchestrator.run_scheduled_sync()
    if result.skipped:
        return web.json_response(result.to_response())
    return _sync_response(result, ctx)


async def sync_status(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT_KEY]
    try:
        status = await ctx.state.get_status()
    except CursorSyncError as e:
        logger.error(f"Failed to read sync status: {e}")
        return _error(str(e), 500)
    return web.json_response(status)


async def refresh(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT_KEY]
    missing = _api_key_missing(ctx)
    if missing is not None:
        return missing

    result = await ctx.orchestrator.run_manual_refresh()
    if result.skipped:
        status = 429 if result.blocked_by == "rate-limit" else 409
        return _error(result.reason, status)
    return _sync_response(result, ctx)


async def backfill(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT_KEY]
    missing = _api_key_missing(ctx)
    if missing is not None:
        return missing

    result = await ctx.orchestrator.run_full_backfill()
    if result.skipped:
        return _error(result.reason, 409)
    if result.precondition_failed:
        return _error(result.error, 400)
    return _sync_response(result, ctx, message="Backfill completed successfully")


async def backfill_complete(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT_KEY]
    missing = _api_key_missing(ctx)
    if missing is not None:
        return missing

    logger.info("Starting complete historical backfill")
    result = await ctx.orchestrator.run_historical_backfill()
    if result.skipped:
        return _error(result.reason, 409)
    if not result.success:
        return _error(result.error or "Historical backfill failed", 500)
    return _sync_response(
        result,
        ctx,
        message="Historical backfill completed successfully",
        dataFrom=result.data_from,
        dataTo=result.data_to,
        stats={
            "individualAchievements": len(result.new_achievements.individual),
            "teamAchievements": len(result.new_achievements.team),
        },
    )


async def clear_all(request: web.Request) -> web.Response:
    """Destructive reset of every synced row and the sync metadata."""
    ctx = request.app[CONTEXT_KEY]
    if ctx.settings.cron_secret and not _has_cron_secret(request, ctx.settings):
        return _error("Unauthorized", 401)

    logger.warning("Clearing all synced data")
    try:
        await reset_data(ctx)
    except CursorSyncError as e:
        logger.error(f"Data cleanup failed: {e}")
        return web.json_response(
            {"error": str(e), "message": "Failed to clear data"}, status=500
        )
    return web.json_response({"success": True, "message": "All data cleared successfully"})


async def leaderboard(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT_KEY]
    missing = _api_key_missing(ctx)
    if missing is not None:
        return missing

    try:
        days = int(request.query.get("days", "7"))
    except ValueError:
        return _error("days must be an integer", 400)

    try:
        entries = await fetch_leaderboard(ctx, days)
    except ValidationError as e:
        return _error(str(e), 400)
    except CursorSyncError as e:
        logger.error(f"Leaderboard fetch failed: {e}")
        return _error(str(e), 502)

    return web.json_response({
        "days": days,
        "entries": [entry.model_dump(mode="json") for entry in entries],
    })


def create_app(ctx: SyncContext) -> web.Application:
    """Application serving the trigger routes over an assembled context."""
    app = web.Application()
    app[CONTEXT_KEY] = ctx
    app.add_routes([
        web.get("/api/cron/sync", cron_sync),
        web.get("/api/sync/status", sync_status),
        web.post("/api/achievements/refresh", refresh),
        web.post("/api/achievements/backfill", backfill),
        web.post("/api/achievements/backfill-complete", backfill_complete),
        web.post("/api/data/clear-all", clear_all),
        web.get("/api/leaderboard", leaderboard),
    ])

    async def _close_context(app: web.Application) -> None:
        await app[CONTEXT_KEY].close()

    app.on_cleanup.append(_close_context)
    return app


async def make_app(settings: Optional[Settings] = None) -> web.Application:
    """Build the context from settings and return the application."""
    ctx = await build_context(settings or Settings())
    return create_app(ctx)


def run_server(settings: Settings, host: str = "0.0.0.0", port: int = 8080) -> None:
    configure_logging(settings.log_level)
    logger.info(f"Serving sync triggers on {host}:{port}")
    web.run_app(make_app(settings), host=host, port=port)
