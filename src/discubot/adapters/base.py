"""Source adapter contract.

One adapter per source type normalises that source's payloads into
:class:`ParsedDiscussion` / :class:`DiscussionThread` and performs the
write-backs the pipeline needs. ``SourceConfig`` is always passed in
explicitly, so concurrent discussions with different credentials never
share state through the adapter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from discubot.processor.errors import AdapterError
from discubot.processor.models import (
    DiscussionStatus,
    DiscussionThread,
    ParsedDiscussion,
    SourceConfig,
)


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


@runtime_checkable
class SourceAdapter(Protocol):
    """Capability set every source adapter implements."""

    source_type: str

    async def parse_incoming(self, payload: dict[str, Any]) -> ParsedDiscussion:
        """Normalise a raw inbound payload. Raises AdapterError if unmappable."""
        ...

    async def fetch_thread(self, thread_id: str, config: SourceConfig) -> DiscussionThread:
        """Fetch the full, ordered thread. Pagination is handled internally."""
        ...

    async def post_reply(self, thread_id: str, message: str, config: SourceConfig) -> bool:
        """Post a reply. Returns False instead of raising on failure."""
        ...

    async def update_status(
        self, thread_id: str, status: DiscussionStatus, config: SourceConfig
    ) -> bool:
        """Reflect ``status`` in the source. Returns False instead of raising."""
        ...

    def validate_config(self, config: SourceConfig) -> ValidationResult: ...

    async def test_connection(self, config: SourceConfig) -> bool: ...


def is_retryable_status(status_code: int) -> bool:
    """Server errors and rate limiting are worth retrying."""
    return status_code >= 500 or status_code == 429


def adapter_error_from_http(
    exc: httpx.HTTPError, source_type: str, thread_id: str | None = None
) -> AdapterError:
    """Convert an httpx failure into an :class:`AdapterError`."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return AdapterError(
            f"{source_type} API returned HTTP {status}",
            source_type,
            thread_id=thread_id,
            status_code=status,
            retryable=is_retryable_status(status),
        )
    # Transport level problems (timeouts, resets) are transient
    return AdapterError(
        f"{source_type} API request failed: {exc}",
        source_type,
        thread_id=thread_id,
        retryable=True,
    )


def split_thread_id(thread_id: str, source_type: str) -> tuple[str, str]:
    """Split a ``"<container>:<item>"`` thread id."""
    container, sep, item = thread_id.partition(":")
    if not sep or not container or not item:
        raise AdapterError(
            f"Invalid thread id: {thread_id!r}",
            source_type,
            thread_id=thread_id,
            retryable=False,
        )
    return container, item
