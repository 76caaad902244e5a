"""Inbound source webhooks.

``POST /webhooks/{source_type}`` takes the payload exactly as the source
sends it (Slack Events API JSON, Notion comment webhooks, or a Mailgun form
post carrying a Figma notification email) and hands it to the source's
adapter for parsing before the discussion enters the pipeline.
"""

from __future__ import annotations

import time
from typing import Any

from aiohttp import web

from discubot.api.routes.discussions import error_body
from discubot.logging import get_logger
from discubot.processor.errors import (
    DiscussionNotFoundError,
    ProcessingError,
    ValidationError,
    http_status_for,
)
from discubot.processor.orchestrator import ProcessorOrchestrator

log = get_logger("discubot.api.routes.webhooks")

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


async def read_payload(request: web.Request) -> Any:
    """JSON body, or the form fields when the source posts a form."""
    if request.content_type in _FORM_CONTENT_TYPES:
        form = await request.post()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        return await request.json()
    except ValueError:
        return None


async def handle_webhook(request: web.Request) -> web.Response:
    """POST /webhooks/{source_type}: parse and process one source event."""
    started = time.perf_counter()
    orchestrator: ProcessorOrchestrator = request.app["orchestrator"]
    source_type = request.match_info["source_type"]

    payload = await read_payload(request)
    if not isinstance(payload, dict):
        return web.json_response(
            error_body(ValidationError("Webhook body must be a JSON object or form")),
            status=400,
        )

    # Slack confirms the endpoint before sending events
    if source_type == "slack" and payload.get("type") == "url_verification":
        log.info("slack_url_verified")
        return web.json_response({"challenge": payload.get("challenge")})

    try:
        result = await orchestrator.process_event(source_type, payload)
    except (ValidationError, DiscussionNotFoundError, ProcessingError) as e:
        status = http_status_for(e)
        log.info("webhook_rejected", source_type=source_type, status=status, error=str(e))
        return web.json_response(error_body(e), status=status)

    data = result.to_dict()
    data["totalTime"] = round((time.perf_counter() - started) * 1000, 2)
    return web.json_response({"success": True, "data": data})
