"""Health check endpoint for the processor API."""

from aiohttp import web

from discubot import __version__


async def handle_health(request: web.Request) -> web.Response:
    """GET /health: liveness, the configured backends and discussion counts by status."""
    orchestrator = request.app["orchestrator"]
    return web.json_response(
        {
            "status": "healthy",
            "version": __version__,
            "storage": request.app.get("storage_backend", "memory"),
            "sourceTypes": orchestrator.adapters.source_types,
            "outputTypes": orchestrator.outputs.output_types,
            "discussions": await orchestrator.store.get_status_counts(),
        }
    )
