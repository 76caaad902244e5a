"""Resolve source user references to Notion users.

The analysis model reports an assignee the way the discussion mentioned
them: a Slack id (``U123``, ``<@U123>``), a handle (``@alice``), an email
address or a display name. A Notion ``people`` property only accepts Notion
user ids, so the assignee is looked up in the team's mappings before a task
is created.
"""

from __future__ import annotations

import re
from dataclasses import replace

from discubot.logging import get_logger
from discubot.processor.models import DetectedTask, UserMapping
from discubot.processor.storage import UserMappingStore

log = get_logger("discubot.processor.user_mapping")

_SLACK_MENTION_RE = re.compile(r"^<@([A-Z0-9]+)(?:\|[^>]*)?>$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_handle(value: str) -> str:
    """Strip mention markup: ``<@U1|bob>`` -> ``U1``, ``@alice`` -> ``alice``."""
    text = value.strip()
    match = _SLACK_MENTION_RE.match(text)
    if match:
        return match.group(1)
    if _EMAIL_RE.match(text):
        return text
    return text.lstrip("@")


def match_mapping(reference: str, mappings: list[UserMapping]) -> UserMapping | None:
    """Pick the mapping for ``reference``.

    Source user id wins over email, which wins over a case-insensitive
    display name. ``mappings`` is expected highest confidence first, so
    ties resolve to the most confident mapping.
    """
    handle = normalize_handle(reference)
    if not handle:
        return None
    for mapping in mappings:
        if mapping.source_user_id == handle:
            return mapping
    if _EMAIL_RE.match(handle):
        lowered = handle.lower()
        for mapping in mappings:
            if mapping.source_user_email and mapping.source_user_email.lower() == lowered:
                return mapping
    folded = handle.casefold()
    for mapping in mappings:
        if mapping.source_user_name and mapping.source_user_name.casefold() == folded:
            return mapping
    return None


class UserResolver:
    """Replaces task assignees with Notion user ids from a mapping store."""

    def __init__(self, store: UserMappingStore):
        self._store = store

    async def resolve(self, team_id: str, source_type: str, reference: str) -> str | None:
        """Notion user id for ``reference``, or None when nobody is mapped."""
        mappings = await self._store.find_mappings(team_id, source_type)
        mapping = match_mapping(reference, mappings)
        return mapping.notion_user_id if mapping is not None else None

    async def resolve_task(
        self, task: DetectedTask, team_id: str, source_type: str
    ) -> DetectedTask:
        """Copy of ``task`` with a mapped assignee; unchanged when unmapped."""
        if not task.assignee:
            return task
        notion_user_id = await self.resolve(team_id, source_type, task.assignee)
        if notion_user_id is None:
            log.debug(
                "assignee_unmapped",
                team_id=team_id,
                source_type=source_type,
                assignee=task.assignee,
            )
            return task
        return replace(task, assignee=notion_user_id)
