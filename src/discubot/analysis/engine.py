"""AI analysis engine: summary plus task detection behind a result cache."""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from typing import Protocol

from discubot.analysis.cache import DEFAULT_CACHE_TTL, AnalysisCache
from discubot.logging import get_logger
from discubot.processor.errors import ProcessingError, ProcessingStage
from discubot.processor.models import (
    AIAnalysisOptions,
    AIAnalysisResult,
    DetectedTask,
    SummaryResult,
    TaskDetectionResult,
)

log = get_logger("discubot.analysis.engine")

DEFAULT_MAX_TASKS = 5


class AnalysisProvider(Protocol):
    """The two model capabilities the engine needs."""

    async def summarize(self, text: str, options: AIAnalysisOptions) -> SummaryResult: ...

    async def detect_tasks(
        self, text: str, options: AIAnalysisOptions, max_tasks: int
    ) -> TaskDetectionResult: ...


def normalize_text(text: str) -> str:
    """Collapse whitespace so formatting-only differences share a cache entry."""
    return " ".join(text.split())


def sanitize_domains(tasks: list[DetectedTask], available_domains: list[str]) -> list[DetectedTask]:
    """Null out any task domain outside the flow's vocabulary."""
    allowed = set(available_domains)
    for task in tasks:
        if task.domain is not None and task.domain not in allowed:
            log.warning(
                "task_domain_out_of_vocabulary",
                task_title=task.title,
                domain=task.domain,
                available=sorted(allowed),
            )
            task.domain = None
    return tasks


class AnalysisEngine:
    """Produces :class:`AIAnalysisResult` objects, caching by content fingerprint."""

    def __init__(
        self,
        provider: AnalysisProvider,
        cache: AnalysisCache | None = None,
        *,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        default_max_tasks: int = DEFAULT_MAX_TASKS,
    ):
        self._provider = provider
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._default_max_tasks = default_max_tasks

    @property
    def cache(self) -> AnalysisCache | None:
        return self._cache

    def _max_tasks(self, options: AIAnalysisOptions) -> int:
        if options.max_tasks and options.max_tasks > 0:
            return options.max_tasks
        return self._default_max_tasks

    def cache_key(self, text: str, options: AIAnalysisOptions) -> str:
        """Fingerprint of (normalised text, prompt variant, domain vocabulary)."""
        material = {
            "text": normalize_text(text),
            "summaryPrompt": options.custom_summary_prompt or "",
            "taskPrompt": options.custom_task_prompt or "",
            "sourceType": options.source_type or "",
            "maxTasks": self._max_tasks(options),
            "domains": sorted(set(options.available_domains)),
        }
        digest = hashlib.sha256(json.dumps(material, sort_keys=True).encode("utf-8"))
        return f"analysis:{digest.hexdigest()}"

    async def analyze(
        self, text: str, options: AIAnalysisOptions | None = None
    ) -> AIAnalysisResult:
        """Summarise ``text`` and detect tasks in it.

        Args:
            text: Raw discussion text.
            options: Prompt overrides, domain vocabulary and cache control.

        Returns:
            The analysis. ``cached`` is True when served from the cache.

        Raises:
            ProcessingError: Stage ``ai_analysis`` when the provider fails.
        """
        opts = options or AIAnalysisOptions()
        key = self.cache_key(text, opts)

        if self._cache is not None and not opts.skip_cache:
            hit = await self._cache.get(key)
            if hit is not None:
                result = AIAnalysisResult.from_dict(hit)
                result.cached = True
                result.processing_time_ms = 0.0
                log.info("analysis_cache_hit", key=key[:24], task_count=result.task_count)
                return result

        max_tasks = self._max_tasks(opts)
        started = time.perf_counter()
        try:
            summary, detection = await asyncio.gather(
                self._provider.summarize(text, opts),
                self._provider.detect_tasks(text, opts, max_tasks),
            )
        except ProcessingError:
            raise
        except TimeoutError as e:
            raise ProcessingError(
                "AI analysis timed out", ProcessingStage.AI_ANALYSIS, retryable=True
            ) from e
        except ValueError as e:
            raise ProcessingError(
                f"AI analysis returned an unusable response: {e}",
                ProcessingStage.AI_ANALYSIS,
                retryable=True,
            ) from e

        tasks = sanitize_domains(detection.tasks[:max_tasks], opts.available_domains)
        result = AIAnalysisResult(
            summary=summary.summary,
            key_points=summary.key_points,
            task_detection=TaskDetectionResult(
                is_multi_task=detection.is_multi_task or len(tasks) > 1,
                tasks=tasks,
                confidence=detection.confidence,
            ),
            processing_time_ms=round((time.perf_counter() - started) * 1000, 2),
            cached=False,
        )

        if self._cache is not None:
            await self._cache.set(key, result.to_dict(), self._cache_ttl)

        log.info(
            "analysis_completed",
            task_count=result.task_count,
            is_multi_task=result.task_detection.is_multi_task,
            processing_time_ms=result.processing_time_ms,
        )
        return result

    async def clear_cache(self) -> None:
        if self._cache is not None:
            await self._cache.clear()


def mock_analysis(title: str, content: str) -> AIAnalysisResult:
    """Canned single-task analysis used when AI is skipped for testing."""
    return AIAnalysisResult(
        summary="Mock summary",
        key_points=["Mock point 1"],
        task_detection=TaskDetectionResult(
            is_multi_task=False,
            tasks=[DetectedTask(title=title or "Untitled discussion", description=content)],
        ),
        processing_time_ms=0.0,
        cached=False,
    )
