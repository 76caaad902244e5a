"""Create tasks as pages in a Notion database."""

from __future__ import annotations

import re
from typing import Any

import httpx

from discubot.logging import get_logger
from discubot.outputs.base import TaskContext
from discubot.processor.errors import OutputError
from discubot.processor.models import DetectedTask, OutputTaskRef, parse_datetime
from discubot.processor.retry import RetryOptions, retry_with_backoff

log = get_logger("discubot.outputs.notion")

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_API_VERSION = "2022-06-28"
DEFAULT_TIMEOUT = 30.0
MAX_TEXT_LENGTH = 2000

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)

# AI task attribute -> DetectedTask attribute
_MAPPABLE_FIELDS = {
    "priority": "priority",
    "type": "task_type",
    "assignee": "assignee",
    "dueDate": "due_date",
    "tags": "tags",
    "domain": "domain",
}


def _rich_text(content: str) -> list[dict[str, Any]]:
    return [{"type": "text", "text": {"content": content[:MAX_TEXT_LENGTH]}}]


def format_notion_property(value: Any, property_type: str) -> dict[str, Any] | None:
    """Format a value as a Notion database property of ``property_type``.

    Unknown types fall back to ``rich_text``. Returns None when the value
    cannot be represented (e.g. an empty people list).
    """
    match property_type:
        case "title":
            return {"title": _rich_text(str(value))}
        case "number":
            try:
                return {"number": float(value)}
            except (TypeError, ValueError):
                return {"number": 0}
        case "select":
            return {"select": {"name": str(value)}}
        case "status":
            return {"status": {"name": str(value)}}
        case "multi_select":
            values = value if isinstance(value, list) else [value]
            return {"multi_select": [{"name": str(v)} for v in values]}
        case "date":
            return {"date": {"start": str(value)}}
        case "checkbox":
            return {"checkbox": bool(value)}
        case "url" | "email" | "phone_number":
            return {property_type: str(value)}
        case "people":
            ids = [v for v in (value if isinstance(value, list) else [value]) if v is not None]
            if not ids:
                return None
            return {"people": [{"object": "user", "id": str(i)} for i in ids]}
        case _:
            return {"rich_text": _rich_text(str(value))}


def build_properties(
    task: DetectedTask, field_mapping: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Database properties: the ``Name`` title plus any mapped AI fields."""
    properties: dict[str, Any] = {"Name": format_notion_property(task.title, "title")}

    for ai_field, attr in _MAPPABLE_FIELDS.items():
        mapping = (field_mapping or {}).get(ai_field)
        value = getattr(task, attr)
        if value is None or not isinstance(mapping, dict):
            continue
        notion_property = mapping.get("notionProperty")
        if not notion_property:
            continue
        property_type = mapping.get("propertyType", "select")

        if property_type == "people" and not (isinstance(value, str) and _UUID_RE.match(value)):
            log.debug("assignee_not_a_notion_user", value=value)
            continue
        if property_type in ("select", "multi_select", "status"):
            value_map = mapping.get("valueMap") or {}
            if isinstance(value, list):
                value = [value_map.get(v, v) for v in value]
            else:
                value = value_map.get(value, value)

        formatted = format_notion_property(value, property_type)
        if formatted is not None:
            properties[notion_property] = formatted
    return properties


def build_blocks(task: DetectedTask, context: TaskContext) -> list[dict[str, Any]]:
    """Page body: summary callout, description, action items, context, source link."""
    blocks: list[dict[str, Any]] = []
    if context.summary:
        blocks.append(
            {
                "object": "block",
                "type": "callout",
                "callout": {
                    "icon": {"emoji": "🤖"},
                    "rich_text": _rich_text(f"AI Summary: {context.summary}"),
                },
            }
        )
    if task.description:
        blocks.append(
            {
                "object": "block",
                "type": "paragraph",
                "paragraph": {"rich_text": _rich_text(task.description)},
            }
        )
    if task.action_items:
        blocks.append(
            {
                "object": "block",
                "type": "heading_3",
                "heading_3": {"rich_text": _rich_text("This Task Requires")},
            }
        )
        blocks.extend(
            {
                "object": "block",
                "type": "to_do",
                "to_do": {"checked": False, "rich_text": _rich_text(item)},
            }
            for item in task.action_items
        )
    if context.key_points:
        blocks.append(
            {
                "object": "block",
                "type": "toggle",
                "toggle": {
                    "rich_text": _rich_text("Discussion Context"),
                    "children": [
                        {
                            "object": "block",
                            "type": "bulleted_list_item",
                            "bulleted_list_item": {"rich_text": _rich_text(point)},
                        }
                        for point in context.key_points
                    ],
                },
            }
        )
    if context.source_url:
        label = "View original discussion"
        if context.source_type:
            label = f"{label} ({context.source_type})"
        blocks.append(
            {
                "object": "block",
                "type": "paragraph",
                "paragraph": {
                    "rich_text": [
                        {
                            "type": "text",
                            "text": {"content": label, "link": {"url": context.source_url}},
                        }
                    ]
                },
            }
        )
    return blocks


class NotionTaskCreator:
    """Output task creator for Notion databases.

    ``output_config`` must carry ``notionToken`` and ``databaseId``; an
    optional ``fieldMapping`` maps AI fields onto database properties.
    """

    output_type = "notion"

    def __init__(
        self,
        base_url: str = NOTION_API_BASE,
        timeout: float = DEFAULT_TIMEOUT,
        retry_options: RetryOptions | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._retry_options = retry_options or RetryOptions(max_attempts=3)
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={
                    "Notion-Version": NOTION_API_VERSION,
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _validate_config(self, output_config: dict[str, Any]) -> tuple[str, str]:
        token = output_config.get("notionToken")
        database_id = output_config.get("databaseId")
        if not token:
            raise OutputError(
                "Output config missing notionToken", self.output_type, retryable=False
            )
        if not database_id:
            raise OutputError(
                "Output config missing databaseId", self.output_type, retryable=False
            )
        return str(token), str(database_id)

    async def _post_page(self, token: str, body: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(
                "/pages", json=body, headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.HTTPError as e:
            raise OutputError(f"Notion request failed: {e}", self.output_type) from e
        return self._decode(response)

    async def check_database(self, output_config: dict[str, Any]) -> dict[str, Any]:
        """Confirm the token can read the target database.

        Returns the database id and title. Raises :class:`OutputError` when
        the config is incomplete or Notion refuses the request.
        """
        token, database_id = self._validate_config(output_config)
        client = await self._get_client()
        try:
            response = await client.get(
                f"/databases/{database_id}", headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.HTTPError as e:
            raise OutputError(f"Notion request failed: {e}", self.output_type) from e
        data = self._decode(response)
        title = "".join(part.get("plain_text", "") for part in data.get("title") or [])
        return {"databaseId": data.get("id", database_id), "title": title}

    def _decode(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            try:
                message = response.json().get("message", "")
            except ValueError:
                message = response.text
            raise OutputError(
                f"Notion API returned HTTP {response.status_code}: {message}",
                self.output_type,
                status_code=response.status_code,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        try:
            data: dict[str, Any] = response.json()
        except ValueError as e:
            raise OutputError(
                f"Notion API returned a non-JSON body (HTTP {response.status_code})",
                self.output_type,
                status_code=response.status_code,
                retryable=True,
            ) from e
        return data

    async def create_task(
        self,
        task: DetectedTask,
        output_config: dict[str, Any],
        *,
        context: TaskContext,
    ) -> OutputTaskRef:
        token, database_id = self._validate_config(output_config)
        body = {
            "parent": {"database_id": database_id},
            "properties": build_properties(task, output_config.get("fieldMapping")),
            "children": build_blocks(task, context),
        }

        data = await retry_with_backoff(
            lambda: self._post_page(token, body),
            self._retry_options,
            should_retry=lambda e: isinstance(e, OutputError) and e.retryable,
        )

        page_id = data.get("id")
        if not page_id:
            raise OutputError("Notion response had no page id", self.output_type, retryable=False)
        url = data.get("url") or f"https://notion.so/{str(page_id).replace('-', '')}"

        log.info(
            "notion_task_created",
            page_id=page_id,
            output_id=context.output_id,
            task_index=context.task_index,
        )
        ref = OutputTaskRef(
            output_id=context.output_id,
            output_type=self.output_type,
            task_index=context.task_index,
            task_id=str(page_id),
            url=url,
        )
        created = parse_datetime(data.get("created_time"))
        if created is not None:
            ref.created_at = created
        return ref
