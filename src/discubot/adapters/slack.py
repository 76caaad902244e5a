"""Slack source adapter using the Slack Web API over httpx."""

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
)

log = get_logger("discubot.adapters.slack")

SLACK_API_BASE = "https://slack.com/api"
DEFAULT_TIMEOUT = 30.0
REPLIES_PAGE_SIZE = 100
TITLE_MAX_LENGTH = 50
DEFAULT_TITLE = "Slack Message"

STATUS_EMOJI: dict[DiscussionStatus, str] = {
    DiscussionStatus.PENDING: "eyes",
    DiscussionStatus.PROCESSING: "hourglass_flowing_sand",
    DiscussionStatus.ANALYZED: "robot_face",
    DiscussionStatus.COMPLETED: "white_check_mark",
    DiscussionStatus.FAILED: "x",
    DiscussionStatus.RETRYING: "arrows_counterclockwise",
}

_MENTION_RE = re.compile(r"<@([A-Z0-9]+)>")
_RATE_LIMIT_ERRORS = frozenset({"ratelimited", "rate_limited"})
# Reaching one of these clears the in-progress reaction
_FINAL_STATUSES = frozenset({DiscussionStatus.COMPLETED, DiscussionStatus.FAILED})


class SlackAPIError(AdapterError):
    """Slack answered with ``ok: false``."""

    def __init__(self, error_code: str, *, thread_id: str | None = None):
        retryable = error_code in _RATE_LIMIT_ERRORS
        super().__init__(
            f"Slack API error: {error_code}",
            "slack",
            thread_id=thread_id,
            status_code=429 if retryable else None,
            retryable=retryable,
        )
        self.error_code = error_code


def extract_title(text: str) -> str:
    """First line of the message, truncated to 50 characters."""
    first_line = text.split("\n", 1)[0].strip() if text else ""
    if len(first_line) > TITLE_MAX_LENGTH:
        return first_line[: TITLE_MAX_LENGTH - 3] + "..."
    return first_line or DEFAULT_TITLE


def detect_mentions(text: str) -> list[str]:
    """User ids mentioned as ``<@U123>`` in order of first appearance."""
    seen: list[str] = []
    for user_id in _MENTION_RE.findall(text or ""):
        if user_id not in seen:
            seen.append(user_id)
    return seen


def _ts_to_datetime(ts: str | None) -> datetime | None:
    if not ts:
        return None
    try:
        return datetime.fromtimestamp(float(ts), tz=UTC)
    except ValueError:
        return None


class SlackAdapter:
    """Adapter for Slack ``app_mention`` events."""

    source_type = "slack"

    def __init__(self, base_url: str = SLACK_API_BASE, timeout: float = DEFAULT_TIMEOUT):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _call(
        self,
        api_method: str,
        config: SourceConfig,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        thread_id: str | None = None,
    ) -> dict[str, Any]:
        """Call a Slack Web API method and return the decoded body.

        Raises:
            AdapterError: On transport failure or HTTP error status.
            SlackAPIError: When Slack returns ``ok: false``.
        """
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {config.api_token}"}
        try:
            if body is None:
                response = await client.request(
                    "GET", f"/{api_method}", params=params, headers=headers
                )
            else:
                response = await client.request(
                    "POST", f"/{api_method}", json=body, headers=headers
                )
        except httpx.HTTPError as e:
            raise adapter_error_from_http(e, self.source_type, thread_id) from e

        if response.status_code >= 400:
            raise AdapterError(
                f"Slack API returned HTTP {response.status_code}",
                self.source_type,
                thread_id=thread_id,
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )

        try:
            data: dict[str, Any] = response.json()
        except ValueError as e:
            raise AdapterError(
                f"Slack API returned a non-JSON body (HTTP {response.status_code})",
                self.source_type,
                thread_id=thread_id,
                status_code=response.status_code,
                retryable=True,
            ) from e
        if not data.get("ok", False):
            raise SlackAPIError(str(data.get("error", "unknown_error")), thread_id=thread_id)
        return data

    # ========== Ingest ==========

    async def parse_incoming(self, payload: dict[str, Any]) -> ParsedDiscussion:
        if payload.get("type") == "url_verification":
            raise AdapterError(
                "URL verification payloads are not discussions", self.source_type
            )

        event = payload.get("event") or {}
        event_type = event.get("type")
        if event_type != "app_mention":
            raise AdapterError(f"Unsupported Slack event type: {event_type}", self.source_type)

        text = event.get("text")
        channel = event.get("channel")
        user = event.get("user")
        ts = event.get("ts")
        for name, value in (("text", text), ("channel", channel), ("user", user), ("ts", ts)):
            if not value:
                raise AdapterError(f"No {name} found in Slack event", self.source_type)

        slack_team_id = payload.get("team_id") or event.get("team")
        if not slack_team_id:
            raise AdapterError("Cannot resolve team: payload has no team_id", self.source_type)

        thread_ts = event.get("thread_ts") or ts
        participants = [user, *(m for m in detect_mentions(text) if m != user)]

        return ParsedDiscussion(
            source_type=self.source_type,
            source_thread_id=f"{channel}:{thread_ts}",
            source_url=(
                f"https://slack.com/app_redirect?team={slack_team_id}"
                f"&channel={channel}&message_ts={ts}"
            ),
            team_id=slack_team_id,
            author_handle=user,
            title=extract_title(text),
            content=text,
            participants=participants,
            timestamp=_ts_to_datetime(ts),
            metadata={
                "slackTeamId": slack_team_id,
                "channelId": channel,
                "messageTs": ts,
                "threadTs": event.get("thread_ts"),
                "channelType": event.get("channel_type"),
                "eventId": payload.get("event_id"),
            },
        )

    async def fetch_thread(self, thread_id: str, config: SourceConfig) -> DiscussionThread:
        channel, thread_ts = split_thread_id(thread_id, self.source_type)

        # Every page repeats the parent message, so key by ts
        by_ts: dict[str, dict[str, Any]] = {}
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {
                "channel": channel,
                "ts": thread_ts,
                "limit": REPLIES_PAGE_SIZE,
            }
            if cursor:
                params["cursor"] = cursor
            data = await self._call(
                "conversations.replies", config, params=params, thread_id=thread_id
            )
            for m in data.get("messages") or []:
                by_ts.setdefault(str(m.get("ts", "")), m)
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor or not data.get("has_more", True):
                break

        raw = sorted(by_ts.values(), key=lambda m: float(m.get("ts") or 0))
        if not raw:
            raise AdapterError(
                "Thread not found or empty",
                self.source_type,
                thread_id=thread_id,
                status_code=404,
            )

        messages = [
            ThreadMessage(
                id=m.get("ts", ""),
                author_handle=m.get("user") or m.get("bot_id") or "unknown",
                content=m.get("text", ""),
                timestamp=_ts_to_datetime(m.get("ts")),
            )
            for m in raw
        ]

        participants: list[str] = []
        for message in messages:
            if message.author_handle not in participants:
                participants.append(message.author_handle)

        log.debug("slack_thread_fetched", thread_id=thread_id, messages=len(messages))
        return DiscussionThread(
            id=thread_id,
            root_message=messages[0],
            replies=messages[1:],
            participants=participants,
        )

    # ========== Write-back ==========

    async def post_reply(self, thread_id: str, message: str, config: SourceConfig) -> bool:
        try:
            channel, thread_ts = split_thread_id(thread_id, self.source_type)
            await self._call(
                "chat.postMessage",
                config,
                body={"channel": channel, "thread_ts": thread_ts, "text": message},
                thread_id=thread_id,
            )
        except AdapterError as e:
            log.warning("slack_reply_failed", thread_id=thread_id, error=str(e))
            return False
        return True

    async def update_status(
        self, thread_id: str, status: DiscussionStatus, config: SourceConfig
    ) -> bool:
        status = DiscussionStatus(status)
        emoji = STATUS_EMOJI.get(status)
        if emoji is None:
            return False
        try:
            channel, thread_ts = split_thread_id(thread_id, self.source_type)
            await self._call(
                "reactions.add",
                config,
                body={"channel": channel, "timestamp": thread_ts, "name": emoji},
                thread_id=thread_id,
            )
        except SlackAPIError as e:
            if e.error_code != "already_reacted":
                log.warning("slack_reaction_failed", thread_id=thread_id, error=e.error_code)
                return False
        except AdapterError as e:
            log.warning("slack_reaction_failed", thread_id=thread_id, error=str(e))
            return False

        if status in _FINAL_STATUSES:
            await self.remove_reaction(
                thread_id, STATUS_EMOJI[DiscussionStatus.PROCESSING], config
            )
        return True

    async def remove_reaction(self, thread_id: str, emoji: str, config: SourceConfig) -> bool:
        try:
            channel, thread_ts = split_thread_id(thread_id, self.source_type)
            await self._call(
                "reactions.remove",
                config,
                body={"channel": channel, "timestamp": thread_ts, "name": emoji},
                thread_id=thread_id,
            )
        except SlackAPIError as e:
            if e.error_code == "no_reaction":
                return True
            log.debug("slack_reaction_remove_failed", thread_id=thread_id, error=e.error_code)
            return False
        except AdapterError as e:
            log.debug("slack_reaction_remove_failed", thread_id=thread_id, error=str(e))
            return False
        return True

    # ========== Configuration ==========

    def validate_config(self, config: SourceConfig) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        if config.source_type and config.source_type != self.source_type:
            errors.append(f"Config source type {config.source_type!r} is not 'slack'")
        if not config.api_token:
            errors.append("Slack API token is required")
        elif not config.api_token.startswith(("xoxb-", "xoxp-")):
            warnings.append("Slack token should start with 'xoxb-' or 'xoxp-'")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    async def test_connection(self, config: SourceConfig) -> bool:
        try:
            await self._call("auth.test", config, body={})
        except AdapterError as e:
            log.warning("slack_connection_test_failed", error=str(e))
            return False
        return True
