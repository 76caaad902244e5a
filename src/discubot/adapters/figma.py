"""Figma source adapter.

Figma has no outbound webhook for comments, so discussions arrive as the
notification emails Figma sends, forwarded by Mailgun (``recipient``,
``from``, ``subject``, ``body-plain``, ``body-html``, ``stripped-text``,
``timestamp``). The email only identifies the file, so a thread id starts as
``"<file_key>"`` and :meth:`FigmaAdapter.fetch_thread` resolves it to
``"<file_key>:<comment_id>"`` using the REST API.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parseaddr
from typing import Any
from urllib.parse import unquote

import httpx
from bs4 import BeautifulSoup

from discubot.adapters.base import (
    ValidationResult,
    adapter_error_from_http,
    is_retryable_status,
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

log = get_logger("discubot.adapters.figma")

FIGMA_API_BASE = "https://api.figma.com/v1"
FIGMA_FILE_URL = "https://www.figma.com/file/{file_key}"
DEFAULT_TIMEOUT = 30.0
DEFAULT_TEAM_ID = "default"
DEFAULT_TITLE = "Figma Comment"
MIN_TOKEN_LENGTH = 20
MIN_TEXT_LENGTH = 10

STATUS_EMOJI: dict[DiscussionStatus, str] = {
    DiscussionStatus.PENDING: ":eyes:",
    DiscussionStatus.PROCESSING: ":hourglass:",
    DiscussionStatus.ANALYZED: ":robot:",
    DiscussionStatus.COMPLETED: ":white_check_mark:",
    DiscussionStatus.FAILED: ":x:",
    DiscussionStatus.RETRYING: ":arrows_counterclockwise:",
}
_FINAL_STATUSES = frozenset({DiscussionStatus.COMPLETED, DiscussionStatus.FAILED})

_FILE_KEY_PATTERNS = (
    re.compile(r"figma\.com/(?:file|design|proto|board)/([a-zA-Z0-9]+)"),
    re.compile(r"api-cdn\.figma\.com/resize/images/(\d+)/"),
)
_SENDER_KEY_RE = re.compile(r"comments-([a-zA-Z0-9]+)@", re.IGNORECASE)
_HEX_KEY_RE = re.compile(r"\b[a-f0-9]{40}\b")
_URL_RE = re.compile(r"https?://[^\s<>\"')]+")
_HTML_MENTION_RE = re.compile(r"(?<![\w.])@[A-Za-z0-9_]+")
_BOILERPLATE_PREFIXES = ("view in figma", "open in figma", "reply", "unsubscribe", "©")

# Mention formats seen in comment text, most specific first
_BRACKET_MENTION_RE = re.compile(r"@\[([^:\]]+):([^\]]+)\]")
_NAMED_ID_MENTION_RE = re.compile(r"@([\w.' -]+?) \(([\w-]{6,})\)")
_HANDLE_MENTION_RE = re.compile(r"(?<![\w.])@([A-Za-z0-9_.-]+)")


@dataclass
class FigmaEmail:
    """What a Figma notification email tells us about a comment."""

    text: str
    file_key: str | None = None
    file_url: str | None = None
    subject: str = ""
    author: str = ""
    email_type: str = "unknown"
    links: list[str] = field(default_factory=list)
    timestamp: datetime | None = None


def extract_file_key(url: str) -> str | None:
    """File key from a Figma file, design, prototype, board or CDN image URL."""
    for pattern in _FILE_KEY_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def extract_links(html: str) -> list[str]:
    """Absolute links in the email, comment location images first."""
    soup = BeautifulSoup(html, "html.parser")
    priority: list[str] = []
    links: list[str] = []
    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"])
        if href.startswith("http"):
            links.append(href)
    for image in soup.find_all("img", src=True):
        src = str(image["src"])
        if not src.startswith("http") or "figma.com" not in src:
            continue
        if "commentx=" in src and "commenty=" in src:
            priority.append(src)
        else:
            links.append(src)
    return list(dict.fromkeys([*priority, *links]))


def extract_text_from_html(html: str) -> str:
    """Best guess at the comment text inside a notification email body.

    The line carrying an ``@mention`` is the comment in Figma's layout;
    failing that, the first substantial line that is not email chrome.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["style", "script", "head"]):
        tag.decompose()
    lines = [line.strip() for line in soup.get_text("\n").splitlines()]
    lines = [line for line in lines if line]

    for line in lines:
        if _HTML_MENTION_RE.search(line):
            return line
    for line in lines:
        if len(line) >= MIN_TEXT_LENGTH and not line.lower().startswith(_BOILERPLATE_PREFIXES):
            return line
    return ""


def find_file_key(sender: str, links: list[str], html: str) -> str | None:
    """Locate the file key, trying the most reliable places first.

    Order: the ``comments-<key>@`` sender address, decoded
    ``click.figma.com`` tracking links, direct file links, then any
    40-character hex string in the body.
    """
    match = _SENDER_KEY_RE.search(sender or "")
    if match:
        return match.group(1)
    for link in links:
        if "click.figma.com" in link:
            key = extract_file_key(unquote(link))
            if key:
                return key
    for link in links:
        key = extract_file_key(link)
        if key:
            return key
    match = _HEX_KEY_RE.search(html or "")
    return match.group(0) if match else None


def determine_email_type(subject: str) -> str:
    lowered = subject.lower()
    if "comment" in lowered or "mentioned you" in lowered:
        return "comment"
    if "invited" in lowered or "invitation" in lowered or "shared" in lowered:
        return "invitation"
    return "unknown"


def parse_figma_email(payload: dict[str, Any]) -> FigmaEmail:
    """Pull text, file key and sender out of a Mailgun email payload."""
    html = str(payload.get("body-html") or "")
    plain = str(payload.get("stripped-text") or payload.get("body-plain") or "").strip()
    subject = str(payload.get("subject") or "")

    text = plain or (extract_text_from_html(html) if html else "")
    links = extract_links(html) if html else list(dict.fromkeys(_URL_RE.findall(plain)))
    sender = str(payload.get("from") or "")
    file_key = find_file_key(sender, links, html)
    file_url = next(
        (link for link in links if "figma.com" in link and extract_file_key(link) == file_key),
        None,
    )

    name, address = parseaddr(sender)
    author = name.replace("(via Figma)", "").strip() or address

    raw_timestamp = payload.get("timestamp")
    timestamp = None
    if raw_timestamp not in (None, ""):
        try:
            timestamp = datetime.fromtimestamp(float(raw_timestamp), tz=UTC)
        except (TypeError, ValueError):
            timestamp = None

    return FigmaEmail(
        text=text,
        file_key=file_key,
        file_url=file_url,
        subject=subject,
        author=author,
        email_type=determine_email_type(subject),
        links=links,
        timestamp=timestamp,
    )


def team_id_from_recipient(recipient: str | None) -> str:
    """``acme@discubot.example.com`` -> ``acme``."""
    first = (recipient or "").split(",", 1)[0].strip()
    _, address = parseaddr(first)
    local, sep, _ = address.partition("@")
    return local if sep and local else DEFAULT_TEAM_ID


def detect_mentions(text: str) -> list[str]:
    """Mentioned users as ids where the text carries one, else handles."""
    found: list[str] = []
    remaining = text or ""
    for pattern, group in ((_BRACKET_MENTION_RE, 1), (_NAMED_ID_MENTION_RE, 2)):
        found.extend(m.group(group) for m in pattern.finditer(remaining))
        remaining = pattern.sub(" ", remaining)
    found.extend(_HANDLE_MENTION_RE.findall(remaining))
    return list(dict.fromkeys(found))


def _comment_message(comment: dict[str, Any]) -> ThreadMessage:
    user = comment.get("user") or {}
    return ThreadMessage(
        id=str(comment.get("id", "")),
        author_handle=user.get("id") or user.get("handle") or "unknown",
        content=comment.get("message", ""),
        timestamp=parse_datetime(comment.get("created_at")),
    )


def _created_at(comment: dict[str, Any]) -> str:
    return str(comment.get("created_at") or "")


class FigmaAdapter:
    """Adapter for Figma comment threads, ingested from notification emails."""

    source_type = "figma"

    def __init__(self, base_url: str = FIGMA_API_BASE, timeout: float = DEFAULT_TIMEOUT):
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
                headers={"X-Figma-Token": config.api_token},
            )
        except httpx.HTTPError as e:
            raise adapter_error_from_http(e, self.source_type, thread_id) from e

        if response.status_code >= 400:
            try:
                payload = response.json()
                message = payload.get("err") or payload.get("message") or ""
            except ValueError:
                message = response.text
            raise AdapterError(
                f"Figma API returned HTTP {response.status_code}: {message}",
                self.source_type,
                thread_id=thread_id,
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )
        try:
            result: dict[str, Any] = response.json()
        except ValueError as e:
            raise AdapterError(
                f"Figma API returned a non-JSON body (HTTP {response.status_code})",
                self.source_type,
                thread_id=thread_id,
                status_code=response.status_code,
                retryable=True,
            ) from e
        return result

    @staticmethod
    def _split(thread_id: str) -> tuple[str, str | None]:
        file_key, _, comment_id = thread_id.partition(":")
        return file_key, comment_id or None

    # ========== Ingest ==========

    async def parse_incoming(self, payload: dict[str, Any]) -> ParsedDiscussion:
        email = parse_figma_email(payload)
        if not email.file_key:
            raise AdapterError("No Figma file key found in email", self.source_type)
        if not email.text.strip():
            raise AdapterError("No comment text found in email", self.source_type)

        recipient = payload.get("recipient")
        team_id = team_id_from_recipient(recipient)
        author = email.author or "unknown"
        participants = list(dict.fromkeys([author, *detect_mentions(email.text)]))

        return ParsedDiscussion(
            source_type=self.source_type,
            source_thread_id=email.file_key,
            source_url=email.file_url or FIGMA_FILE_URL.format(file_key=email.file_key),
            team_id=team_id,
            author_handle=author,
            title=email.subject or DEFAULT_TITLE,
            content=email.text,
            participants=participants,
            timestamp=email.timestamp,
            metadata={
                "fileKey": email.file_key,
                "emailType": email.email_type,
                "emailSlug": team_id,
                "recipientEmail": recipient,
                "links": email.links,
            },
        )

    async def fetch_thread(self, thread_id: str, config: SourceConfig) -> DiscussionThread:
        """Fetch a comment and its replies.

        ``"<file_key>"`` selects the most recent top-level comment on the
        file; ``"<file_key>:<comment_id>"`` selects that comment. The
        returned thread id is always the resolved ``file_key:comment_id``.
        """
        file_key, comment_id = self._split(thread_id)
        if not file_key:
            raise AdapterError(
                f"Invalid thread id: {thread_id!r}", self.source_type, thread_id=thread_id
            )
        data = await self._request(
            "GET", f"/files/{file_key}/comments", config, thread_id=thread_id
        )
        comments: list[dict[str, Any]] = data.get("comments") or []

        if comment_id is not None:
            root = next((c for c in comments if str(c.get("id")) == comment_id), None)
        else:
            top_level = [c for c in comments if not c.get("parent_id")]
            root = max(top_level, key=_created_at, default=None)
        if root is None:
            raise AdapterError(
                "Comment not found in file",
                self.source_type,
                thread_id=thread_id,
                status_code=404,
            )

        root_id = str(root.get("id"))
        replies = sorted(
            (c for c in comments if str(c.get("parent_id") or "") == root_id),
            key=_created_at,
        )
        messages = [_comment_message(root), *(_comment_message(c) for c in replies)]
        participants = list(dict.fromkeys(m.author_handle for m in messages))

        log.debug(
            "figma_thread_fetched",
            thread_id=thread_id,
            comment_id=root_id,
            replies=len(replies),
        )
        return DiscussionThread(
            id=f"{file_key}:{root_id}",
            root_message=messages[0],
            replies=messages[1:],
            participants=participants,
        )

    # ========== Write-back ==========

    async def post_reply(self, thread_id: str, message: str, config: SourceConfig) -> bool:
        file_key, comment_id = self._split(thread_id)
        if comment_id is None:
            log.warning("figma_reply_without_comment", thread_id=thread_id)
            return False
        try:
            await self._request(
                "POST",
                f"/files/{file_key}/comments",
                config,
                body={"message": message, "comment_id": comment_id},
                thread_id=thread_id,
            )
        except AdapterError as e:
            log.warning("figma_reply_failed", thread_id=thread_id, error=str(e))
            return False
        return True

    async def update_status(
        self, thread_id: str, status: DiscussionStatus, config: SourceConfig
    ) -> bool:
        status = DiscussionStatus(status)
        file_key, comment_id = self._split(thread_id)
        if comment_id is None:
            log.debug("figma_status_without_comment", thread_id=thread_id, status=str(status))
            return False
        try:
            await self._request(
                "POST",
                f"/files/{file_key}/comments/{comment_id}/reactions",
                config,
                body={"emoji": STATUS_EMOJI[status]},
                thread_id=thread_id,
            )
        except AdapterError as e:
            log.warning("figma_reaction_failed", thread_id=thread_id, error=str(e))
            return False

        if status in _FINAL_STATUSES:
            await self.remove_reaction(
                thread_id, STATUS_EMOJI[DiscussionStatus.PROCESSING], config
            )
        return True

    async def remove_reaction(self, thread_id: str, emoji: str, config: SourceConfig) -> bool:
        """Remove a reaction; one that is already gone counts as removed."""
        file_key, comment_id = self._split(thread_id)
        if comment_id is None:
            return False
        if not emoji.startswith(":"):
            emoji = f":{emoji}:"
        try:
            await self._request(
                "DELETE",
                f"/files/{file_key}/comments/{comment_id}/reactions",
                config,
                params={"emoji": emoji},
                thread_id=thread_id,
            )
        except AdapterError as e:
            if e.status_code == 404:
                return True
            log.debug("figma_reaction_remove_failed", thread_id=thread_id, error=str(e))
            return False
        return True

    # ========== Configuration ==========

    def validate_config(self, config: SourceConfig) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        if config.source_type and config.source_type != self.source_type:
            errors.append(f"Config source type {config.source_type!r} is not 'figma'")
        if not config.api_token.strip():
            errors.append("Figma API token is required")
        elif len(config.api_token) < MIN_TOKEN_LENGTH:
            warnings.append("Figma API token appears to be too short")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    async def test_connection(self, config: SourceConfig) -> bool:
        try:
            await self._request("GET", "/me", config)
        except AdapterError as e:
            log.warning("figma_connection_test_failed", error=str(e))
            return False
        return True
