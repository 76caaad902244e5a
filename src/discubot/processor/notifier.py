"""Confirmation replies and status indicators posted back to the source.

Everything here is best-effort: task creation is the effect that matters,
so a failed reply or reaction is recorded and logged but never raised.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from discubot.adapters.base import SourceAdapter
from discubot.logging import get_logger
from discubot.processor.models import DiscussionStatus, OutputTaskRef, SourceConfig

log = get_logger("discubot.processor.notifier")

DEFAULT_PERSONALITY = "professional"


def _numbered(refs: list[OutputTaskRef], fmt: str = "{n}. {url}") -> str:
    return "\n".join(fmt.format(n=i, url=ref.url) for i, ref in enumerate(refs, start=1))


@dataclass(frozen=True)
class Personality:
    """Reply templates for one tone of voice."""

    label: str
    description: str
    no_tasks: str
    single_task: Callable[[str], str]
    multiple_tasks: Callable[[list[OutputTaskRef]], str]


PERSONALITIES: dict[str, Personality] = {
    "professional": Personality(
        label="Professional",
        description="Formal, clear, minimal",
        no_tasks="✅ Discussion processed (no tasks created)",
        single_task=lambda url: f"✅ Task created in Notion\n🔗 {url}",
        multiple_tasks=lambda refs: (
            f"✅ Created {len(refs)} tasks in Notion:\n{_numbered(refs)}"
        ),
    ),
    "friendly": Personality(
        label="Friendly",
        description="Warm, encouraging",
        no_tasks="Got it! 👍 I've noted this discussion, but no specific tasks were needed.",
        single_task=lambda url: f"Nice catch! 🎯 I've logged this as a task for you:\n{url}",
        multiple_tasks=lambda refs: (
            f"Great discussion! 🙌 I've created {len(refs)} tasks:\n{_numbered(refs)}"
        ),
    ),
    "concise": Personality(
        label="Concise",
        description="Ultra-brief",
        no_tasks="✓ Noted",
        single_task=lambda url: f"Done → {url}",
        multiple_tasks=lambda refs: f"{len(refs)} tasks → {' '.join(r.url for r in refs)}",
    ),
    "pirate": Personality(
        label="Pirate",
        description="Arrr!",
        no_tasks="Ahoy! ⚓ I've scanned the horizon but found no treasure (tasks) to log!",
        single_task=lambda url: f"Arrr! ⚓ Task be logged in ye Notion seas!\n🗺️ {url}",
        multiple_tasks=lambda refs: (
            f"Shiver me timbers! ☠️ {len(refs)} treasures have been charted:\n{_numbered(refs)}"
        ),
    ),
    "robot": Personality(
        label="Robot",
        description="Beep boop",
        no_tasks="SCAN_COMPLETE. TASKS_DETECTED: 0. STATUS: ACKNOWLEDGED.",
        single_task=lambda url: f"TASK_CREATED: SUCCESS.\nDATA_LINK: {url}\nSTATUS: OPERATIONAL.",
        multiple_tasks=lambda refs: (
            f"BATCH_PROCESS: COMPLETE.\nTASKS_GENERATED: {len(refs)}\n"
            f"{_numbered(refs, '[{n}] {url}')}\nEND_TRANSMISSION."
        ),
    ),
    "zen": Personality(
        label="Zen",
        description="Calm, mindful",
        no_tasks="🧘 The discussion flows like water. No tasks arise from this moment.",
        single_task=lambda url: f"🧘 A task has found its home. Peace follows action.\n{url}",
        multiple_tasks=lambda refs: (
            f"🧘 {len(refs)} intentions have been set. Each step brings clarity.\n"
            f"{_numbered(refs)}"
        ),
    ),
}


def get_personality(name: str | None) -> Personality:
    """Look up a preset, falling back to the professional one."""
    if name and name in PERSONALITIES:
        return PERSONALITIES[name]
    if name:
        log.debug("unknown_personality", personality=name)
    return PERSONALITIES[DEFAULT_PERSONALITY]


def compose_reply(refs: list[OutputTaskRef], personality: str | None = None) -> str:
    """Build the confirmation message for the created task references."""
    preset = get_personality(personality)
    if not refs:
        return preset.no_tasks
    if len(refs) == 1:
        return preset.single_task(refs[0].url)
    return preset.multiple_tasks(refs)


@dataclass
class NotificationOutcome:
    reply_posted: bool = False
    status_updated: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.reply_posted and self.status_updated


class Notifier:
    """Posts the confirmation reply and final status through the source adapter."""

    def __init__(self, default_personality: str = DEFAULT_PERSONALITY):
        self._default_personality = default_personality

    async def set_status(
        self,
        adapter: SourceAdapter,
        thread_id: str,
        status: DiscussionStatus,
        config: SourceConfig,
    ) -> bool:
        """Best-effort status indicator update."""
        try:
            updated = await adapter.update_status(thread_id, status, config)
        except Exception as e:
            log.warning(
                "status_update_error", thread_id=thread_id, status=str(status), error=str(e)
            )
            return False
        if not updated:
            log.debug("status_update_rejected", thread_id=thread_id, status=str(status))
        return updated

    async def notify(
        self,
        adapter: SourceAdapter,
        thread_id: str,
        refs: list[OutputTaskRef],
        config: SourceConfig,
        *,
        personality: str | None = None,
    ) -> NotificationOutcome:
        """Post the confirmation reply, then mark the thread completed.

        Never raises; failures are returned in the outcome.
        """
        outcome = NotificationOutcome()
        message = compose_reply(refs, personality or self._default_personality)

        try:
            outcome.reply_posted = await adapter.post_reply(thread_id, message, config)
        except Exception as e:
            outcome.errors.append(f"post_reply raised: {e}")
            log.warning("reply_post_error", thread_id=thread_id, error=str(e))
        else:
            if not outcome.reply_posted:
                outcome.errors.append("post_reply returned false")

        outcome.status_updated = await self.set_status(
            adapter, thread_id, DiscussionStatus.COMPLETED, config
        )
        if not outcome.status_updated:
            outcome.errors.append("update_status returned false")

        log.info(
            "notification_sent",
            thread_id=thread_id,
            reply_posted=outcome.reply_posted,
            status_updated=outcome.status_updated,
            task_count=len(refs),
        )
        return outcome
