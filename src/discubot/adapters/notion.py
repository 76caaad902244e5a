"""Notion source adapter for page comment discussions."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

import httpx

from discubot.adapters.base import (
    ValidationResult,
    adapter_error_from_http,
    is_retryable_status,
    split_thread_id,
)
from discubot.logging import get_logger
from discubot.processor.errors import AdapterError
from discubot.processor.models import (
    DiscussionStatus,
    DiscussionThread,
    ParsedDiscussion,
    SourceConfig,
    ThreadMessage,
    parse_datetime,
)

log = get_logger("discubot.adapters.notion")

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_API_VERSION = "2022-06-28"
DEFAULT_TIMEOUT = 30.0
DEFAULT_TRIGGER_KEYWORD = "discubot"
TITLE_MAX_LENGTH = 50
DEFAULT_TITLE = "Notion Comment"
_EPOCH = datetime.min.replace(tzinfo=UTC)


def extract_plain_text(rich_text: list[dict[str, Any]] | None) -> str:
    """Concatenate the ``plain_text`` of a Notion rich text array."""
    parts = []
    for item in rich_text or []:
        text = item.get("plain_text")
        if text is None:
            text = (item.get("text") or {}).get("content", "")
        parts.append(text)
    return "".join(parts)


def strip_trigger_keyword(text: str, keyword: str = DEFAULT_TRIGGER_KEYWORD) -> str:
    """Remove ``@keyword`` / ``keyword`` mentions used to summon the bot."""
    pattern = re.compile(rf"@?{re.escape(keyword)}\b[:,]?", re.IGNORECASE)
    return re.sub(r"\s{2,}", " ", pattern.sub("", text)).strip()


def extract_title(text: str) -> str:
    first_line = text.split("\n", 1)[0].strip() if text else ""
    if len(first_line) > TITLE_MAX_LENGTH:
        return first_line[: TITLE_MAX_LENGTH - 3] + "..."
    return first_line or DEFAULT_TITLE


class NotionAdapter:
    """Adapter for Notion ``comment.created`` webhooks."""

    source_type = "notion"

    def __init__(self, base_url: str = NOTION_API_BASE, timeout: float = DEFAULT_TIMEOUT):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"Notion-Version": NOTION_API_VERSION},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        config: SourceConfig,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        thread_id: str | None = None,
    ) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                path,
                params=params,
                json=body,
                headers={"Authorization": f"Bearer {config.api_token}"},
            )
        except httpx.HTTPError as e:
            raise adapter_error_from_http(e, self.source_type, thread_id) from e

        if response.status_code >= 400:
            try:
                message = response.json().get("message", "")
            except ValueError:
                message = response.text
            raise AdapterError(
                f"Notion API returned HTTP {response.status_code}: {message}",
                self.source_type,
                thread_id=thread_id,
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )
        try:
            result: dict[str, Any] = response.json()
        except ValueError as e:
            raise AdapterError(
                f"Notion API returned a non-JSON body (HTTP {response.status_code})",
                self.source_type,
                thread_id=thread_id,
                status_code=response.status_code,
                retryable=True,
            ) from e
        return result

    # ========== Ingest ==========

    async def parse_incoming(self, payload: dict[str, Any]) -> ParsedDiscussion:
        event_type = payload.get("type")
        if event_type != "comment.created":
            raise AdapterError(
                f"Unsupported event type: {event_type} (only 'comment.created' is supported)",
                self.source_type,
            )

        data = payload.get("data") or {}
        parent = data.get("parent") or {}
        comment = data.get("comment") or data
        comment_id = (payload.get("entity") or {}).get("id") or comment.get("id")
        parent_id = parent.get("id") or parent.get("page_id") or data.get("page_id")
        if not comment_id or not parent_id:
            raise AdapterError(
                "Missing required IDs in webhook payload (comment id or parent id)",
                self.source_type,
            )

        workspace_id = payload.get("workspace_id")
        if not workspace_id:
            raise AdapterError(
                "Cannot resolve team: payload has no workspace_id", self.source_type
            )

        discussion_id = comment.get("discussion_id") or data.get("discussion_id") or comment_id
        content = strip_trigger_keyword(extract_plain_text(comment.get("rich_text")))
        if not content:
            raise AdapterError("Comment has no text content", self.source_type)

        author_id = (comment.get("created_by") or {}).get("id") or ""
        created = comment.get("created_time") or payload.get("timestamp")

        return ParsedDiscussion(
            source_type=self.source_type,
            source_thread_id=f"{parent_id}:{discussion_id}",
            source_url=f"https://notion.so/{parent_id.replace('-', '')}",
            team_id=workspace_id,
            author_handle=author_id,
            title=extract_title(content),
            content=content,
            participants=[author_id] if author_id else [],
            timestamp=parse_datetime(created),
            metadata={
                "notionWorkspaceId": workspace_id,
                "commentId": comment_id,
                "discussionId": discussion_id,
                "parentId": parent_id,
                "parentType": parent.get("type", "page"),
            },
        )

    async def fetch_thread(self, thread_id: str, config: SourceConfig) -> DiscussionThread:
        page_id, discussion_id = split_thread_id(thread_id, self.source_type)

        comments: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"block_id": page_id, "page_size": 100}
            if cursor:
                params["start_cursor"] = cursor
            data = await self._request(
                "GET", "/comments", config, params=params, thread_id=thread_id
            )
            comments.extend(
                c for c in data.get("results") or [] if c.get("discussion_id") == discussion_id
            )
            if not data.get("has_more") or not data.get("next_cursor"):
                break
            cursor = data["next_cursor"]

        if not comments:
            raise AdapterError(
                "No comments found for discussion",
                self.source_type,
                thread_id=thread_id,
                status_code=404,
            )

        comments.sort(key=lambda c: parse_datetime(c.get("created_time")) or _EPOCH)
        messages = [
            ThreadMessage(
                id=c.get("id", ""),
                author_handle=(c.get("created_by") or {}).get("id", "unknown"),
                content=extract_plain_text(c.get("rich_text")),
                timestamp=parse_datetime(c.get("created_time")),
            )
            for c in comments
        ]
        participants = list(dict.fromkeys(m.author_handle for m in messages))

        log.debug("notion_thread_fetched", thread_id=thread_id, comments=len(messages))
        return DiscussionThread(
            id=thread_id,
            root_message=messages[0],
            replies=messages[1:],
            participants=participants,
        )

    # ========== Write-back ==========

    async def post_reply(self, thread_id: str, message: str, config: SourceConfig) -> bool:
        try:
            _, discussion_id = split_thread_id(thread_id, self.source_type)
            await self._request(
                "POST",
                "/comments",
                config,
                body={
                    "discussion_id": discussion_id,
                    "rich_text": [{"type": "text", "text": {"content": message[:2000]}}],
                },
                thread_id=thread_id,
            )
        except AdapterError as e:
            log.warning("notion_reply_failed", thread_id=thread_id, error=str(e))
            return False
        return True

    async def update_status(
        self, thread_id: str, status: DiscussionStatus, config: SourceConfig
    ) -> bool:
        # Notion comments carry no reactions or status fields
        log.debug("notion_status_noop", thread_id=thread_id, status=str(status))
        return True

    # ========== Configuration ==========

    def validate_config(self, config: SourceConfig) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        if config.source_type and config.source_type != self.source_type:
            errors.append(f"Config source type {config.source_type!r} is not 'notion'")
        if not config.api_token:
            errors.append("Notion integration token is required")
        elif not config.api_token.startswith(("secret_", "ntn_")):
            warnings.append("Notion token should start with 'secret_' or 'ntn_'")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    async def test_connection(self, config: SourceConfig) -> bool:
        try:
            await self._request("GET", "/users/me", config)
        except AdapterError as e:
            log.warning("notion_connection_test_failed", error=str(e))
            return False
        return True
