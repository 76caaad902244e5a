"""Discussion processing endpoint.

``POST /discussions/process`` accepts three request shapes, selected by
``type``: ``direct`` (process a caller-supplied parsed discussion),
``reprocess`` and ``retry`` (both by ``discussionId``).
"""

from __future__ import annotations

import time
from typing import Any

from aiohttp import web

from discubot.logging import get_logger
from discubot.processor.errors import (
    DiscussionNotFoundError,
    ProcessingError,
    ProcessingStage,
    ValidationError,
    http_status_for,
)
from discubot.processor.models import (
    DiscussionThread,
    ParsedDiscussion,
    ProcessingOptions,
    SourceConfig,
)
from discubot.processor.orchestrator import ProcessingResult, ProcessorOrchestrator

log = get_logger("discubot.api.routes.discussions")

REQUEST_TYPES = ("direct", "reprocess", "retry")


def error_body(exc: Exception) -> dict[str, Any]:
    """JSON body for a classified failure."""
    if isinstance(exc, ValidationError):
        body: dict[str, Any] = {
            "error": str(exc),
            "stage": str(ProcessingStage.VALIDATION),
            "retryable": False,
        }
        if exc.missing_fields:
            body["missingFields"] = list(exc.missing_fields)
            body["context"] = {"missingFields": list(exc.missing_fields)}
        return body
    if isinstance(exc, DiscussionNotFoundError):
        return {"error": str(exc), "context": {"discussionId": exc.discussion_id}}
    if isinstance(exc, ProcessingError):
        return exc.to_dict()
    return {"error": "Internal server error"}


def _flag(options: dict[str, Any], name: str) -> bool:
    value = options.get(name, False)
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a boolean")
    return value


def parse_options(raw: Any) -> ProcessingOptions:
    """Build :class:`ProcessingOptions` from the ``options`` object of a direct request."""
    if raw is None:
        return ProcessingOptions()
    if not isinstance(raw, dict):
        raise ValidationError("options must be an object")

    thread = raw.get("thread")
    config = raw.get("config")
    if thread is not None and not isinstance(thread, dict):
        raise ValidationError("options.thread must be an object")
    if config is not None and not isinstance(config, dict):
        raise ValidationError("options.config must be an object")
    try:
        return ProcessingOptions(
            thread=DiscussionThread.from_dict(thread) if thread else None,
            config=SourceConfig.from_dict(config) if config else None,
            skip_ai=_flag(raw, "skipAI"),
            skip_notion=_flag(raw, "skipNotion"),
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid options: {e}") from e


def _discussion_id(body: dict[str, Any]) -> str:
    discussion_id = body.get("discussionId")
    if not isinstance(discussion_id, str) or not discussion_id.strip():
        raise ValidationError("discussionId is required", missing_fields=["discussionId"])
    return discussion_id


async def _dispatch(orchestrator: ProcessorOrchestrator, body: dict[str, Any]) -> ProcessingResult:
    request_type = body.get("type")
    match request_type:
        case "direct":
            parsed = body.get("parsed")
            if not isinstance(parsed, dict):
                raise ValidationError(
                    "parsed is required",
                    missing_fields=list(ParsedDiscussion.REQUIRED_FIELDS),
                )
            options = parse_options(body.get("options"))
            return await orchestrator.process_direct(parsed, options)
        case "reprocess":
            discussion_id = _discussion_id(body)
            force = _flag(body, "force")
            return await orchestrator.reprocess(discussion_id, force=force)
        case "retry":
            return await orchestrator.retry_failed(_discussion_id(body))
        case _:
            raise ValidationError(
                f"type must be one of: {', '.join(REQUEST_TYPES)}",
                missing_fields=[] if request_type is not None else ["type"],
            )


async def handle_process(request: web.Request) -> web.Response:
    """POST /discussions/process: run a discussion through the pipeline."""
    started = time.perf_counter()
    orchestrator: ProcessorOrchestrator = request.app["orchestrator"]

    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return web.json_response(
            error_body(ValidationError("Request body must be a JSON object")), status=400
        )

    try:
        result = await _dispatch(orchestrator, body)
    except (ValidationError, DiscussionNotFoundError, ProcessingError) as e:
        status = http_status_for(e)
        log.info(
            "process_request_rejected",
            request_type=body.get("type"),
            status=status,
            error=str(e),
        )
        return web.json_response(error_body(e), status=status)

    data = result.to_dict()
    data["totalTime"] = round((time.perf_counter() - started) * 1000, 2)
    return web.json_response({"success": True, "data": data})
