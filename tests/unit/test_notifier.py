"""Tests for confirmation replies and status indicators."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from discubot.processor.models import DiscussionStatus, OutputTaskRef, SourceConfig
from discubot.processor.notifier import (
    PERSONALITIES,
    Notifier,
    compose_reply,
    get_personality,
)

THREAD_ID = "C123:1700000000.000100"


def _ref(index: int) -> OutputTaskRef:
    return OutputTaskRef(
        output_id="A",
        output_type="notion",
        task_index=index,
        task_id=f"page-{index}",
        url=f"https://notion.so/page{index}",
    )


@pytest.fixture
def adapter():
    adapter = MagicMock()
    adapter.post_reply = AsyncMock(return_value=True)
    adapter.update_status = AsyncMock(return_value=True)
    return adapter


@pytest.fixture
def config():
    return SourceConfig(source_type="slack", api_token="xoxb-test")


class TestComposeReply:
    """Tests for compose_reply."""

    def test_no_tasks(self):
        assert compose_reply([]) == "✅ Discussion processed (no tasks created)"

    def test_single_task(self):
        assert compose_reply([_ref(0)]) == (
            "✅ Task created in Notion\n🔗 https://notion.so/page0"
        )

    def test_multiple_tasks(self):
        assert compose_reply([_ref(0), _ref(1)]) == (
            "✅ Created 2 tasks in Notion:\n"
            "1. https://notion.so/page0\n"
            "2. https://notion.so/page1"
        )

    def test_concise(self):
        assert compose_reply([_ref(0)], "concise") == "Done → https://notion.so/page0"

    def test_unknown_personality_falls_back(self):
        assert get_personality("sarcastic") is PERSONALITIES["professional"]
        assert get_personality(None) is PERSONALITIES["professional"]

    @pytest.mark.parametrize("name", sorted(PERSONALITIES))
    def test_every_preset_lists_all_urls(self, name):
        reply = compose_reply([_ref(0), _ref(1)], name)
        assert "https://notion.so/page0" in reply
        assert "https://notion.so/page1" in reply


class TestNotifier:
    """Tests for Notifier.notify and set_status."""

    @pytest.mark.asyncio
    async def test_posts_reply_then_completes(self, adapter, config):
        outcome = await Notifier().notify(adapter, THREAD_ID, [_ref(0)], config)

        assert outcome.ok is True
        assert outcome.errors == []
        adapter.post_reply.assert_awaited_once_with(
            THREAD_ID, "✅ Task created in Notion\n🔗 https://notion.so/page0", config
        )
        adapter.update_status.assert_awaited_once_with(
            THREAD_ID, DiscussionStatus.COMPLETED, config
        )

    @pytest.mark.asyncio
    async def test_personality_override(self, adapter, config):
        notifier = Notifier(default_personality="robot")
        await notifier.notify(adapter, THREAD_ID, [], config, personality="concise")
        assert adapter.post_reply.await_args.args[1] == "✓ Noted"

    @pytest.mark.asyncio
    async def test_default_personality(self, adapter, config):
        await Notifier(default_personality="concise").notify(adapter, THREAD_ID, [], config)
        assert adapter.post_reply.await_args.args[1] == "✓ Noted"

    @pytest.mark.asyncio
    async def test_reply_false_recorded(self, adapter, config):
        adapter.post_reply.return_value = False
        outcome = await Notifier().notify(adapter, THREAD_ID, [], config)
        assert outcome.reply_posted is False
        assert outcome.status_updated is True
        assert outcome.errors == ["post_reply returned false"]

    @pytest.mark.asyncio
    async def test_exceptions_never_escape(self, adapter, config):
        adapter.post_reply.side_effect = RuntimeError("socket closed")
        adapter.update_status.side_effect = RuntimeError("socket closed")

        outcome = await Notifier().notify(adapter, THREAD_ID, [_ref(0)], config)

        assert outcome.ok is False
        assert outcome.errors == [
            "post_reply raised: socket closed",
            "update_status returned false",
        ]

    @pytest.mark.asyncio
    async def test_set_status(self, adapter, config):
        adapter.update_status.return_value = False
        assert await Notifier().set_status(
            adapter, THREAD_ID, DiscussionStatus.PROCESSING, config
        ) is False
