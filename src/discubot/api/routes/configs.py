"""Source configuration checks.

``POST /configs/test-connection`` validates a source config, then checks
that both the source credentials and the Notion integration actually work,
before anyone saves the config into a flow.
"""

from __future__ import annotations

import time
from typing import Any

from aiohttp import web

from discubot.api.routes.discussions import error_body
from discubot.logging import get_logger
from discubot.processor.errors import OutputError, ProcessingError, ValidationError
from discubot.processor.models import SourceConfig
from discubot.processor.orchestrator import ProcessorOrchestrator

log = get_logger("discubot.api.routes.configs")

REQUEST_TYPES = ("config", "id")


async def check_config(
    orchestrator: ProcessorOrchestrator, config: dict[str, Any]
) -> dict[str, Any]:
    """Validate ``config``, then try it against the source and Notion.

    Never raises for a failed connection; failures are reported in the
    returned ``sourceError`` / ``notionError`` fields.
    """
    started = time.perf_counter()
    source_type = config["sourceType"]
    adapter = orchestrator.adapters.get(source_type)
    source_config = SourceConfig.from_dict(config)
    validation = adapter.validate_config(source_config)

    data: dict[str, Any] = {
        "sourceConnected": False,
        "sourceDetails": None,
        "sourceError": None,
        "notionConnected": False,
        "notionDetails": None,
        "notionError": None,
        "validationErrors": list(validation.errors),
        "validationWarnings": list(validation.warnings),
    }

    if not validation.valid:
        data["sourceError"] = "; ".join(validation.errors)
    elif await adapter.test_connection(source_config):
        data["sourceConnected"] = True
        data["sourceDetails"] = {"sourceType": source_type}
    else:
        data["sourceError"] = f"Could not connect to {source_type} with the given token"

    notion_token = config.get("notionToken")
    if not notion_token:
        data["notionError"] = "notionToken is required"
    else:
        output_config = {
            "notionToken": notion_token,
            "databaseId": config.get("notionDatabaseId"),
        }
        try:
            creator = orchestrator.outputs.get("notion")
            data["notionDetails"] = await creator.check_database(output_config)
            data["notionConnected"] = True
        except (OutputError, ProcessingError) as e:
            data["notionError"] = str(e)

    data["testTime"] = round((time.perf_counter() - started) * 1000, 2)
    log.info(
        "config_tested",
        source_type=source_type,
        source_connected=data["sourceConnected"],
        notion_connected=data["notionConnected"],
    )
    return data


def _reject(exc: ValidationError) -> web.Response:
    return web.json_response(error_body(exc), status=400)


async def handle_test_connection(request: web.Request) -> web.Response:
    """POST /configs/test-connection: check credentials before they are saved."""
    orchestrator: ProcessorOrchestrator = request.app["orchestrator"]

    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return _reject(ValidationError("Request body must be a JSON object"))

    request_type = body.get("type")
    if request_type == "id":
        return web.json_response(
            {"error": "Testing a stored config by id is not supported", "retryable": False},
            status=501,
        )
    if request_type != "config":
        return _reject(
            ValidationError(
                f"type must be one of: {', '.join(REQUEST_TYPES)}",
                missing_fields=[] if request_type is not None else ["type"],
            )
        )

    config = body.get("config")
    if not isinstance(config, dict):
        return _reject(ValidationError("config is required", missing_fields=["config"]))
    source_type = config.get("sourceType")
    if not isinstance(source_type, str) or not orchestrator.adapters.has(source_type):
        return _reject(ValidationError(f"Unsupported source type: {source_type}"))

    data = await check_config(orchestrator, config)
    return web.json_response({"success": True, "data": data})
