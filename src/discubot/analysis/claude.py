"""Anthropic Claude implementation of the analysis provider."""

from __future__ import annotations

import json
import re
from typing import Any

import anthropic

from discubot.analysis import prompts
from discubot.logging import get_logger
from discubot.processor.errors import ProcessingError, ProcessingStage
from discubot.processor.models import (
    AIAnalysisOptions,
    DetectedTask,
    SummaryResult,
    TaskDetectionResult,
)
from discubot.processor.retry import RetryOptions, retry_with_backoff

log = get_logger("discubot.analysis.claude")

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

# Transient failures worth another attempt
_RETRYABLE_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
    TimeoutError,
)


def extract_json(text: str) -> dict[str, Any]:
    """Pull the outermost JSON object out of a model response.

    Raises:
        ValueError: If no parseable JSON object is present.
    """
    match = _JSON_OBJECT_RE.search(text or "")
    if not match:
        raise ValueError("no JSON object in model response")
    try:
        data = json.loads(match.group())
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON in model response: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("model response JSON is not an object")
    return data


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def parse_tasks(data: dict[str, Any]) -> TaskDetectionResult:
    """Build a :class:`TaskDetectionResult`, skipping malformed task entries."""
    tasks: list[DetectedTask] = []
    for raw in data.get("tasks") or []:
        if not isinstance(raw, dict):
            continue
        try:
            tags = raw.get("tags")
            tasks.append(
                DetectedTask(
                    title=str(raw.get("title") or "").strip(),
                    description=str(raw.get("description") or ""),
                    action_items=[str(a) for a in raw.get("actionItems") or []],
                    priority=_optional_str(raw.get("priority")),
                    task_type=_optional_str(raw.get("type")),
                    assignee=_optional_str(raw.get("assignee")),
                    due_date=_optional_str(raw.get("dueDate")),
                    tags=[str(t) for t in tags] if isinstance(tags, list) else None,
                    domain=_optional_str(raw.get("domain")),
                )
            )
        except ValueError:
            log.debug("detected_task_skipped", raw=str(raw)[:200])

    confidence = data.get("confidence")
    return TaskDetectionResult(
        is_multi_task=bool(data.get("isMultiTask", False)),
        tasks=tasks,
        confidence=float(confidence) if isinstance(confidence, int | float) else None,
    )


class ClaudeAnalysisProvider:
    """Summarise and detect tasks with the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str = DEFAULT_MODEL,
        summary_max_tokens: int = 1024,
        task_max_tokens: int = 2048,
        timeout: float = 30.0,
        retry_options: RetryOptions | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        if client is None and not api_key:
            raise ValueError("An Anthropic API key is required for Claude analysis")
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        self._summary_max_tokens = summary_max_tokens
        self._task_max_tokens = task_max_tokens
        self._retry_options = retry_options or RetryOptions(max_attempts=3, timeout=timeout)

    async def _complete(self, system: str, prompt: str, max_tokens: int) -> str:
        async def _call() -> str:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
            return "".join(
                block.text for block in response.content if getattr(block, "type", "") == "text"
            )

        try:
            return await retry_with_backoff(
                _call,
                self._retry_options,
                should_retry=lambda e: isinstance(e, _RETRYABLE_ERRORS),
            )
        except TimeoutError:
            raise
        except anthropic.APIStatusError as e:
            raise ProcessingError(
                f"Claude API error: {e.message}",
                ProcessingStage.AI_ANALYSIS,
                context={"statusCode": e.status_code, "model": self._model},
                retryable=e.status_code >= 500 or e.status_code == 429,
            ) from e
        except anthropic.APIError as e:
            raise ProcessingError(
                f"Claude API request failed: {e}",
                ProcessingStage.AI_ANALYSIS,
                context={"model": self._model},
                retryable=True,
            ) from e

    async def summarize(self, text: str, options: AIAnalysisOptions) -> SummaryResult:
        prompt = prompts.build_summary_prompt(
            text,
            source_type=options.source_type,
            custom_prompt=options.custom_summary_prompt,
            available_domains=options.available_domains,
        )
        raw = await self._complete(prompts.SUMMARY_SYSTEM, prompt, self._summary_max_tokens)
        data = extract_json(raw)
        return SummaryResult(
            summary=str(data.get("summary") or "").strip(),
            key_points=[str(p) for p in data.get("keyPoints") or []],
        )

    async def detect_tasks(
        self, text: str, options: AIAnalysisOptions, max_tasks: int
    ) -> TaskDetectionResult:
        prompt = prompts.build_task_prompt(
            text,
            max_tasks=max_tasks,
            custom_prompt=options.custom_task_prompt,
            available_domains=options.available_domains,
        )
        raw = await self._complete(prompts.TASK_SYSTEM, prompt, self._task_max_tokens)
        return parse_tasks(extract_json(raw))
