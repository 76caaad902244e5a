"""Tests for the Notion source adapter."""

from unittest.mock import AsyncMock, patch

import pytest

from discubot.adapters.notion import NotionAdapter, extract_plain_text, strip_trigger_keyword
from discubot.processor.errors import AdapterError
from discubot.processor.models import DiscussionStatus, SourceConfig

THREAD_ID = "abc-123:disc-1"


@pytest.fixture
def adapter():
    return NotionAdapter()


@pytest.fixture
def config():
    return SourceConfig(source_type="notion", api_token="secret_test")


@pytest.fixture
def http():
    client = AsyncMock()
    client.request = AsyncMock()
    return client


def _webhook(**comment_overrides):
    comment = {
        "id": "cm-1",
        "discussion_id": "disc-1",
        "rich_text": [{"plain_text": "@discubot fix the login page"}],
        "created_by": {"id": "user-1"},
        "created_time": "2025-01-01T10:00:00.000Z",
    }
    comment.update(comment_overrides)
    return {
        "type": "comment.created",
        "workspace_id": "W1",
        "entity": {"id": "cm-1"},
        "data": {"parent": {"id": "abc-123", "type": "page"}, "comment": comment},
    }


def _comment(comment_id, created, text, discussion_id="disc-1", author="user-1"):
    return {
        "id": comment_id,
        "discussion_id": discussion_id,
        "created_time": created,
        "created_by": {"id": author},
        "rich_text": [{"plain_text": text}],
    }


class TestHelpers:
    """Tests for rich text helpers."""

    def test_extract_plain_text(self):
        rich = [{"plain_text": "Hello "}, {"text": {"content": "world"}}]
        assert extract_plain_text(rich) == "Hello world"

    def test_extract_plain_text_empty(self):
        assert extract_plain_text(None) == ""

    def test_strip_trigger_keyword(self):
        assert strip_trigger_keyword("@Discubot: please  fix it") == "please fix it"


class TestParseIncoming:
    """Tests for NotionAdapter.parse_incoming."""

    @pytest.mark.asyncio
    async def test_comment_created(self, adapter):
        parsed = await adapter.parse_incoming(_webhook())

        assert parsed.source_type == "notion"
        assert parsed.source_thread_id == THREAD_ID
        assert parsed.team_id == "W1"
        assert parsed.content == "fix the login page"
        assert parsed.title == "fix the login page"
        assert parsed.author_handle == "user-1"
        assert parsed.source_url == "https://notion.so/abc123"
        assert parsed.metadata["notionWorkspaceId"] == "W1"
        assert parsed.timestamp.year == 2025

    @pytest.mark.asyncio
    async def test_discussion_defaults_to_comment_id(self, adapter):
        payload = _webhook()
        del payload["data"]["comment"]["discussion_id"]
        parsed = await adapter.parse_incoming(payload)
        assert parsed.source_thread_id == "abc-123:cm-1"

    @pytest.mark.asyncio
    async def test_unsupported_event(self, adapter):
        with pytest.raises(AdapterError, match="Unsupported event type: page.updated"):
            await adapter.parse_incoming({"type": "page.updated"})

    @pytest.mark.asyncio
    async def test_missing_ids(self, adapter):
        payload = _webhook()
        payload["data"]["parent"] = {}
        with pytest.raises(AdapterError, match="Missing required IDs"):
            await adapter.parse_incoming(payload)

    @pytest.mark.asyncio
    async def test_missing_workspace(self, adapter):
        payload = _webhook()
        del payload["workspace_id"]
        with pytest.raises(AdapterError, match="Cannot resolve team"):
            await adapter.parse_incoming(payload)

    @pytest.mark.asyncio
    async def test_keyword_only_comment_rejected(self, adapter):
        with pytest.raises(AdapterError, match="no text"):
            await adapter.parse_incoming(_webhook(rich_text=[{"plain_text": "@discubot"}]))


class TestFetchThread:
    """Tests for NotionAdapter.fetch_thread."""

    @pytest.mark.asyncio
    async def test_filters_discussion_and_paginates(self, adapter, config, http, mock_response):
        http.request.side_effect = [
            mock_response(
                200,
                {
                    "results": [
                        _comment("c2", "2025-01-01T10:05:00.000Z", "reply", author="user-2"),
                        _comment("x1", "2025-01-01T09:00:00.000Z", "other", discussion_id="d9"),
                    ],
                    "has_more": True,
                    "next_cursor": "cur-2",
                },
            ),
            mock_response(
                200,
                {
                    "results": [_comment("c1", "2025-01-01T10:00:00.000Z", "root")],
                    "has_more": False,
                    "next_cursor": None,
                },
            ),
        ]
        with patch.object(adapter, "_get_client", AsyncMock(return_value=http)):
            thread = await adapter.fetch_thread(THREAD_ID, config)

        assert thread.root_message.id == "c1"
        assert [m.content for m in thread.replies] == ["reply"]
        assert thread.participants == ["user-1", "user-2"]
        second_call = http.request.await_args_list[1]
        assert second_call.kwargs["params"] == {
            "block_id": "abc-123",
            "page_size": 100,
            "start_cursor": "cur-2",
        }

    @pytest.mark.asyncio
    async def test_no_comments_is_404(self, adapter, config, http, mock_response):
        http.request.return_value = mock_response(200, {"results": [], "has_more": False})
        with patch.object(adapter, "_get_client", AsyncMock(return_value=http)):
            with pytest.raises(AdapterError) as exc_info:
                await adapter.fetch_thread(THREAD_ID, config)
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_http_error_carries_message(self, adapter, config, http, mock_response):
        http.request.return_value = mock_response(401, {"message": "API token is invalid."})
        with patch.object(adapter, "_get_client", AsyncMock(return_value=http)):
            with pytest.raises(AdapterError, match="API token is invalid") as exc_info:
                await adapter.fetch_thread(THREAD_ID, config)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_non_json_body_is_retryable(self, adapter, config, http, mock_response):
        response = mock_response(200, text="<html>maintenance</html>")
        response.json.side_effect = ValueError("Expecting value")
        http.request.return_value = response
        with patch.object(adapter, "_get_client", AsyncMock(return_value=http)):
            with pytest.raises(AdapterError, match="non-JSON") as exc_info:
                await adapter.fetch_thread(THREAD_ID, config)
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 200


class TestWriteBack:
    """Tests for replies and status updates."""

    @pytest.mark.asyncio
    async def test_post_reply(self, adapter, config, http, mock_response):
        http.request.return_value = mock_response(200, {"id": "new"})
        with patch.object(adapter, "_get_client", AsyncMock(return_value=http)):
            assert await adapter.post_reply(THREAD_ID, "Task created", config) is True

        call = http.request.await_args
        assert call.args == ("POST", "/comments")
        assert call.kwargs["json"]["discussion_id"] == "disc-1"
        assert call.kwargs["json"]["rich_text"][0]["text"]["content"] == "Task created"

    @pytest.mark.asyncio
    async def test_post_reply_failure(self, adapter, config, http, mock_response):
        http.request.return_value = mock_response(502, {"message": "bad gateway"})
        with patch.object(adapter, "_get_client", AsyncMock(return_value=http)):
            assert await adapter.post_reply(THREAD_ID, "x", config) is False

    @pytest.mark.asyncio
    async def test_update_status_is_noop(self, adapter, config):
        assert await adapter.update_status(THREAD_ID, DiscussionStatus.COMPLETED, config) is True


class TestConfiguration:
    """Tests for validate_config and test_connection."""

    def test_valid(self, adapter, config):
        assert adapter.validate_config(config).valid is True

    def test_missing_token(self, adapter):
        result = adapter.validate_config(SourceConfig(source_type="notion"))
        assert result.to_dict() == {
            "valid": False,
            "errors": ["Notion integration token is required"],
            "warnings": [],
        }

    @pytest.mark.asyncio
    async def test_connection(self, adapter, config, http, mock_response):
        http.request.return_value = mock_response(200, {"object": "user"})
        with patch.object(adapter, "_get_client", AsyncMock(return_value=http)):
            assert await adapter.test_connection(config) is True
        assert http.request.await_args.args == ("GET", "/users/me")
