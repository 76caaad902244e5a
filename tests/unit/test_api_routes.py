"""Tests for the processor API routes."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp.test_utils import TestClient, TestServer

from discubot.api.routes.discussions import error_body, parse_options
from discubot.api.server import ProcessorAPIServer
from discubot.processor.errors import (
    DiscussionNotFoundError,
    InvalidTransitionError,
    ProcessingError,
    OutputError,
    ProcessingStage,
    ValidationError,
)
from discubot.adapters.base import ValidationResult
from discubot.processor.models import Discussion, DiscussionStatus, OutputTaskRef
from discubot.processor.orchestrator import ProcessingResult


@pytest.fixture
def result(analysis_factory):
    discussion = Discussion(
        id="disc-1",
        source_type="slack",
        source_thread_id="C123:1700000000.000100",
        source_url="https://slack.com",
        team_id="T1",
        author_handle="U1",
        title="Fix the button",
        content="fix it",
        status=DiscussionStatus.COMPLETED,
        attempts=1,
        output_tasks=[
            OutputTaskRef(
                output_id="A",
                output_type="notion",
                task_index=0,
                task_id="page-1",
                url="https://notion.so/page1",
            )
        ],
    )
    return ProcessingResult(
        discussion=discussion,
        analysis=analysis_factory("frontend"),
        processing_time_ms=42.0,
    )


@pytest.fixture
def orchestrator(result):
    orchestrator = MagicMock()
    orchestrator.process_direct = AsyncMock(return_value=result)
    orchestrator.reprocess = AsyncMock(return_value=result)
    orchestrator.retry_failed = AsyncMock(return_value=result)
    orchestrator.process_event = AsyncMock(return_value=result)
    orchestrator.adapters.source_types = ["notion", "slack"]
    orchestrator.outputs.output_types = ["notion"]
    orchestrator.store.get_status_counts = AsyncMock(return_value={"completed": 2, "failed": 1})
    return orchestrator


@pytest.fixture
def app(orchestrator):
    return ProcessorAPIServer(orchestrator, port=0, storage_backend="postgres").create_app()


class TestHealth:
    """Tests for GET /health."""

    @pytest.mark.asyncio
    async def test_health(self, app):
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            body = await resp.json()
        assert body["status"] == "healthy"
        assert body["storage"] == "postgres"
        assert body["sourceTypes"] == ["notion", "slack"]
        assert body["outputTypes"] == ["notion"]
        assert body["discussions"] == {"completed": 2, "failed": 1}


class TestProcessEndpoint:
    """Tests for POST /discussions/process."""

    @pytest.mark.asyncio
    async def test_direct_success(self, app, orchestrator, parsed_payload):
        request = {
            "type": "direct",
            "parsed": parsed_payload,
            "options": {"skipNotion": True, "config": {"sourceType": "slack", "apiToken": "x"}},
        }
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/discussions/process", json=request)
            assert resp.status == 200
            body = await resp.json()

        assert body["success"] is True
        data = body["data"]
        assert data["discussionId"] == "disc-1"
        assert data["status"] == "completed"
        assert data["aiAnalysis"]["summary"] == "Two things to do"
        assert data["notionTasks"] == [
            {"taskId": "page-1", "url": "https://notion.so/page1", "outputId": "A"}
        ]
        assert data["processingTime"] == 42.0
        assert "totalTime" in data

        parsed, options = orchestrator.process_direct.await_args.args
        assert parsed == parsed_payload
        assert options.skip_notion is True
        assert options.config.api_token == "x"

    @pytest.mark.asyncio
    async def test_reprocess_and_retry(self, app, orchestrator):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post(
                "/discussions/process",
                json={"type": "reprocess", "discussionId": "disc-1", "force": True},
            )
            assert resp.status == 200
            resp = await client.post(
                "/discussions/process", json={"type": "retry", "discussionId": "disc-1"}
            )
            assert resp.status == 200
        orchestrator.reprocess.assert_awaited_once_with("disc-1", force=True)
        orchestrator.retry_failed.assert_awaited_once_with("disc-1")

    @pytest.mark.asyncio
    async def test_body_must_be_object(self, app):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/discussions/process", data="not json")
            assert resp.status == 400
            body = await resp.json()
        assert body["stage"] == "validation"
        assert body["retryable"] is False

    @pytest.mark.asyncio
    async def test_invalid_type(self, app):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/discussions/process", json={"type": "webhook"})
            assert resp.status == 400
            body = await resp.json()
        assert "direct, reprocess, retry" in body["error"]

    @pytest.mark.asyncio
    async def test_missing_parsed(self, app):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/discussions/process", json={"type": "direct"})
            assert resp.status == 400
            body = await resp.json()
        assert body["missingFields"][0] == "sourceType"

    @pytest.mark.asyncio
    async def test_missing_discussion_id(self, app):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/discussions/process", json={"type": "retry"})
            assert resp.status == 400
            body = await resp.json()
        assert body["missingFields"] == ["discussionId"]

    @pytest.mark.asyncio
    async def test_non_boolean_flag(self, app, parsed_payload):
        request = {"type": "direct", "parsed": parsed_payload, "options": {"skipAI": "yes"}}
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/discussions/process", json=request)
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_validation_error_from_orchestrator(self, app, orchestrator, parsed_payload):
        orchestrator.process_direct.side_effect = ValidationError(
            "Missing required fields: content", missing_fields=["content"]
        )
        async with TestClient(TestServer(app)) as client:
            resp = await client.post(
                "/discussions/process", json={"type": "direct", "parsed": parsed_payload}
            )
            assert resp.status == 400
            body = await resp.json()
        assert body["context"] == {"missingFields": ["content"]}

    @pytest.mark.asyncio
    async def test_not_found(self, app, orchestrator):
        orchestrator.retry_failed.side_effect = DiscussionNotFoundError("nope")
        async with TestClient(TestServer(app)) as client:
            resp = await client.post(
                "/discussions/process", json={"type": "retry", "discussionId": "nope"}
            )
            assert resp.status == 404
            body = await resp.json()
        assert body["context"] == {"discussionId": "nope"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("retryable", "status"), [(True, 503), (False, 422)])
    async def test_processing_error_status(self, app, orchestrator, retryable, status):
        orchestrator.retry_failed.side_effect = ProcessingError(
            "Notion API returned HTTP 503",
            ProcessingStage.TASK_CREATION,
            context={"outputId": "B"},
            retryable=retryable,
        )
        async with TestClient(TestServer(app)) as client:
            resp = await client.post(
                "/discussions/process", json={"type": "retry", "discussionId": "disc-1"}
            )
            assert resp.status == status
            body = await resp.json()
        assert body == {
            "error": "Notion API returned HTTP 503",
            "stage": "task_creation",
            "context": {"outputId": "B"},
            "retryable": retryable,
        }

    @pytest.mark.asyncio
    async def test_unexpected_error_is_500(self, app, orchestrator):
        orchestrator.reprocess.side_effect = RuntimeError("kaboom")
        async with TestClient(TestServer(app)) as client:
            resp = await client.post(
                "/discussions/process", json={"type": "reprocess", "discussionId": "disc-1"}
            )
            assert resp.status == 500
            body = await resp.json()
        assert body == {"error": "Internal server error"}


class TestHelpers:
    """Tests for request parsing helpers."""

    def test_parse_options_defaults(self):
        options = parse_options(None)
        assert options.skip_ai is False
        assert options.thread is None

    def test_parse_options_thread(self, thread_factory):
        options = parse_options({"thread": thread_factory().to_dict(), "skipAI": True})
        assert options.skip_ai is True
        assert options.thread.participants == ["U1", "U2"]

    def test_parse_options_rejects_non_object(self):
        with pytest.raises(ValidationError):
            parse_options(["skipAI"])

    def test_error_body_for_transition(self):
        body = error_body(InvalidTransitionError("completed", "retrying", "disc-1"))
        assert body["retryable"] is False
        assert body["stage"] == "validation"
        assert body["context"] == {"from": "completed", "to": "retrying", "discussionId": "disc-1"}


class TestWebhookEndpoint:
    """Tests for POST /webhooks/{source_type}."""

    @pytest.mark.asyncio
    async def test_slack_url_verification(self, app, orchestrator):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post(
                "/webhooks/slack",
                json={"type": "url_verification", "challenge": "3eZbrw1aBm2rZgRNFdxV"},
            )
            assert resp.status == 200
            body = await resp.json()
        assert body == {"challenge": "3eZbrw1aBm2rZgRNFdxV"}
        orchestrator.process_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slack_event_dispatched(self, app, orchestrator):
        event = {
            "type": "event_callback",
            "team_id": "T1",
            "event": {"type": "app_mention", "text": "<@UBOT> fix it", "channel": "C123"},
        }
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/webhooks/slack", json=event)
            assert resp.status == 200
            body = await resp.json()

        assert body["success"] is True
        assert body["data"]["discussionId"] == "disc-1"
        assert "totalTime" in body["data"]
        orchestrator.process_event.assert_awaited_once_with("slack", event)

    @pytest.mark.asyncio
    async def test_notion_comment_dispatched(self, app, orchestrator):
        event = {"type": "comment.created", "workspace_id": "W1", "data": {}}
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/webhooks/notion", json=event)
            assert resp.status == 200
        orchestrator.process_event.assert_awaited_once_with("notion", event)

    @pytest.mark.asyncio
    async def test_mailgun_form_dispatched(self, app, orchestrator):
        form = {"recipient": "acme@discubot.example.com", "subject": "Alice commented"}
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/webhooks/figma", data=form)
            assert resp.status == 200
        orchestrator.process_event.assert_awaited_once_with("figma", form)

    @pytest.mark.asyncio
    async def test_unparseable_event_is_400(self, app, orchestrator):
        orchestrator.process_event.side_effect = ValidationError(
            "Could not parse slack payload: Unsupported Slack event type: message"
        )
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/webhooks/slack", json={"event": {"type": "message"}})
            assert resp.status == 400
            body = await resp.json()
        assert body["stage"] == "validation"
        assert "Unsupported Slack event type" in body["error"]

    @pytest.mark.asyncio
    async def test_non_object_body_is_400(self, app, orchestrator):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/webhooks/notion", json=["nope"])
            assert resp.status == 400
        orchestrator.process_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retryable_failure_is_503(self, app, orchestrator):
        orchestrator.process_event.side_effect = ProcessingError(
            "Slack API returned HTTP 503", ProcessingStage.THREAD_BUILDING, retryable=True
        )
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/webhooks/slack", json={"type": "event_callback"})
            assert resp.status == 503


class TestConfigTestConnection:
    """Tests for POST /configs/test-connection."""

    @pytest.fixture
    def source_adapter(self, orchestrator):
        adapter = MagicMock()
        adapter.validate_config.return_value = ValidationResult(
            valid=True, warnings=["Slack token should start with 'xoxb-' or 'xoxp-'"]
        )
        adapter.test_connection = AsyncMock(return_value=True)
        orchestrator.adapters.has.side_effect = lambda source_type: source_type == "slack"
        orchestrator.adapters.get.return_value = adapter
        return adapter

    @pytest.fixture
    def notion_creator(self, orchestrator):
        creator = MagicMock()
        creator.check_database = AsyncMock(
            return_value={"databaseId": "db-1", "title": "Tasks"}
        )
        orchestrator.outputs.get.return_value = creator
        return creator

    @staticmethod
    def _request(**config):
        return {
            "type": "config",
            "config": {
                "sourceType": "slack",
                "apiToken": "token-123",
                "notionToken": "secret_x",
                "notionDatabaseId": "db-1",
                **config,
            },
        }

    @pytest.mark.asyncio
    async def test_both_connected(self, app, source_adapter, notion_creator):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/configs/test-connection", json=self._request())
            assert resp.status == 200
            body = await resp.json()

        data = body["data"]
        assert body["success"] is True
        assert data["sourceConnected"] is True
        assert data["notionConnected"] is True
        assert data["notionDetails"] == {"databaseId": "db-1", "title": "Tasks"}
        assert data["validationErrors"] == []
        assert data["validationWarnings"] == ["Slack token should start with 'xoxb-' or 'xoxp-'"]
        assert data["testTime"] >= 0
        (source_config,) = source_adapter.test_connection.await_args.args
        assert source_config.api_token == "token-123"
        notion_creator.check_database.assert_awaited_once_with(
            {"notionToken": "secret_x", "databaseId": "db-1"}
        )

    @pytest.mark.asyncio
    async def test_invalid_config_skips_connection(self, app, source_adapter, notion_creator):
        source_adapter.validate_config.return_value = ValidationResult(
            valid=False, errors=["Slack API token is required"]
        )
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/configs/test-connection", json=self._request(apiToken=""))
            data = (await resp.json())["data"]

        assert data["sourceConnected"] is False
        assert data["sourceError"] == "Slack API token is required"
        source_adapter.test_connection.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notion_failure_reported(self, app, source_adapter, notion_creator):
        notion_creator.check_database.side_effect = OutputError(
            "Notion API returned HTTP 401: API token is invalid.", "notion", status_code=401
        )
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/configs/test-connection", json=self._request())
            assert resp.status == 200
            data = (await resp.json())["data"]

        assert data["sourceConnected"] is True
        assert data["notionConnected"] is False
        assert "API token is invalid" in data["notionError"]

    @pytest.mark.asyncio
    async def test_missing_type_is_400(self, app):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/configs/test-connection", json={"config": {}})
            assert resp.status == 400
            body = await resp.json()
        assert body["missingFields"] == ["type"]

    @pytest.mark.asyncio
    async def test_stored_config_by_id_not_implemented(self, app):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post(
                "/configs/test-connection", json={"type": "id", "configId": "cfg-1"}
            )
            assert resp.status == 501

    @pytest.mark.asyncio
    async def test_unknown_source_type_is_400(self, app, source_adapter):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post(
                "/configs/test-connection", json=self._request(sourceType="linear")
            )
            assert resp.status == 400
            body = await resp.json()
        assert "Unsupported source type: linear" in body["error"]
