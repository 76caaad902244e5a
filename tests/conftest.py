"""Pytest fixtures for Discubot tests."""

import os
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from discubot.processor.models import (
    AIAnalysisResult,
    DetectedTask,
    DiscussionThread,
    Flow,
    FlowInput,
    FlowOutput,
    TaskDetectionResult,
    ThreadMessage,
)


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any settings are read."""
    os.environ.setdefault("ENVIRONMENT", "test")
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-placeholder")

    from discubot.config import get_settings

    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def parsed_payload() -> dict[str, Any]:
    """A valid ``parsed`` object for a direct processing request."""
    return {
        "sourceType": "slack",
        "sourceThreadId": "C123:1700000000.000100",
        "sourceUrl": (
            "https://slack.com/app_redirect?team=T1&channel=C123&message_ts=1700000000.000100"
        ),
        "teamId": "T1",
        "authorHandle": "U1",
        "title": "Fix the button",
        "content": "@bot fix the button AND update the docs",
        "participants": ["U1"],
        "metadata": {"slackTeamId": "T1", "channelId": "C123"},
    }


def make_output(
    output_id: str,
    *,
    domains: list[str] | None = None,
    is_default: bool = False,
    output_type: str = "notion",
    offset: int = 0,
    active: bool = True,
) -> FlowOutput:
    return FlowOutput(
        id=output_id,
        flow_id="flow-1",
        output_type=output_type,
        name=output_id,
        domain_filter=domains or [],
        is_default=is_default,
        output_config={"notionToken": "secret_x", "databaseId": f"db-{output_id}"},
        active=active,
        created_at=datetime(2025, 1, 1, tzinfo=UTC) + timedelta(seconds=offset),
    )


def make_flow(
    outputs: list[FlowOutput] | None = None,
    *,
    ai_enabled: bool = True,
    active: bool = True,
    domains: list[str] | None = None,
    personality: str | None = None,
) -> Flow:
    flow_input = FlowInput(
        id="input-1",
        flow_id="flow-1",
        source_type="slack",
        team_id="T1",
        api_token="xoxb-test",
        source_metadata={"slackTeamId": "T1"},
    )
    return Flow(
        id="flow-1",
        name="Product",
        team_id="T1",
        ai_enabled=ai_enabled,
        available_domains=domains if domains is not None else ["frontend", "docs"],
        reply_personality=personality,
        active=active,
        inputs=[flow_input],
        outputs=outputs
        if outputs is not None
        else [make_output("A", domains=["frontend"]), make_output("B", is_default=True, offset=1)],
    )


def make_thread(thread_id: str = "C123:1700000000.000100") -> DiscussionThread:
    return DiscussionThread(
        id=thread_id,
        root_message=ThreadMessage(
            id="1700000000.000100",
            author_handle="U1",
            content="@bot fix the button AND update the docs",
        ),
        replies=[ThreadMessage(id="1700000001.000100", author_handle="U2", content="+1")],
        participants=["U1", "U2"],
    )


def make_analysis(*domains: str | None, cached: bool = False) -> AIAnalysisResult:
    tasks = [
        DetectedTask(title=f"Task {i}", description=f"Do thing {i}", domain=domain)
        for i, domain in enumerate(domains, start=1)
    ]
    return AIAnalysisResult(
        summary="Two things to do",
        key_points=["button", "docs"],
        task_detection=TaskDetectionResult(is_multi_task=len(tasks) > 1, tasks=tasks),
        processing_time_ms=12.5,
        cached=cached,
    )


@pytest.fixture
def output_factory():
    """Factory for ``FlowOutput`` records."""
    return make_output


@pytest.fixture
def flow_factory():
    """Factory for a Slack flow; defaults to outputs A{frontend} and B{default}."""
    return make_flow


@pytest.fixture
def thread_factory():
    """Factory for a two-message Slack thread."""
    return make_thread


@pytest.fixture
def analysis_factory():
    """Factory for an analysis with one task per given domain."""
    return make_analysis


@pytest.fixture
def mock_response():
    """Create a mock httpx.Response."""

    def _create(status_code: int = 200, json_data: Any = None, text: str = ""):
        response = MagicMock(spec=httpx.Response)
        response.status_code = status_code
        response.text = text
        response.json.return_value = json_data if json_data is not None else {}
        return response

    return _create
