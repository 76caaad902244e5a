"""Processor orchestrator: drives one discussion through the pipeline.

Stages run strictly in order for a discussion: flow loading, thread
building, AI analysis, routing, task creation, then notification. Each
attempt first claims the discussion with a conditional status change, so a
concurrent reprocess and retry on the same id cannot both run.

Created output task references are persisted one by one as they succeed,
which lets a retry (or a reprocess without ``force``) skip outputs that
already have a task and only redo the ones that failed.
"""

from __future__ import annotations

import time
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from discubot.adapters.base import SourceAdapter
from discubot.adapters.registry import AdapterRegistry
from discubot.analysis.engine import AnalysisEngine, mock_analysis
from discubot.logging import discussion_context, get_logger
from discubot.outputs.base import OutputRegistry, TaskContext
from discubot.processor.errors import (
    AdapterError,
    DiscussionNotFoundError,
    InvalidTransitionError,
    OutputError,
    ProcessingError,
    ProcessingStage,
    ValidationError,
)
from discubot.processor.models import (
    AIAnalysisOptions,
    AIAnalysisResult,
    Discussion,
    DiscussionStatus,
    DiscussionThread,
    Flow,
    FlowInput,
    OutputTaskRef,
    ParsedDiscussion,
    ProcessingOptions,
    SourceConfig,
    TaskDetectionResult,
)
from discubot.processor.notifier import NotificationOutcome, Notifier
from discubot.processor.retry import RetryOptions, compute_backoff_delay
from discubot.processor.routing import route_tasks
from discubot.processor.state import ensure_transition, is_terminal, predecessors
from discubot.processor.storage import DiscussionStore, FlowStore
from discubot.processor.user_mapping import UserResolver

log = get_logger("discubot.processor.orchestrator")

# Statuses an attempt in flight may be in when it fails
_IN_FLIGHT = predecessors(DiscussionStatus.FAILED)


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class ProcessingResult:
    """Outcome of one successful pipeline attempt."""

    discussion: Discussion
    analysis: AIAnalysisResult
    created_tasks: list[OutputTaskRef] = field(default_factory=list)
    skipped_tasks: list[OutputTaskRef] = field(default_factory=list)
    routing_warnings: list[str] = field(default_factory=list)
    notification: NotificationOutcome = field(default_factory=NotificationOutcome)
    processing_time_ms: float = 0.0
    is_retry: bool = False

    @property
    def output_tasks(self) -> list[OutputTaskRef]:
        """Every task reference on the discussion, this attempt's and earlier ones."""
        return sorted(self.discussion.output_tasks, key=lambda r: (r.task_index, r.created_at))

    def to_dict(self) -> dict[str, Any]:
        return {
            "discussionId": self.discussion.id,
            "status": str(self.discussion.status),
            "aiAnalysis": {
                "summary": self.analysis.summary,
                "keyPoints": list(self.analysis.key_points),
                "taskCount": self.analysis.task_count,
                "isMultiTask": self.analysis.task_detection.is_multi_task,
                "cached": self.analysis.cached,
            },
            "notionTasks": [
                {"taskId": ref.task_id, "url": ref.url, "outputId": ref.output_id}
                for ref in self.output_tasks
            ],
            "processingTime": self.processing_time_ms,
            "notificationErrors": list(self.notification.errors),
        }


@dataclass
class _Attempt:
    """Mutable bookkeeping for one run through the stages."""

    discussion: Discussion
    stage: ProcessingStage = ProcessingStage.FLOW_LOADING
    adapter: SourceAdapter | None = None
    config: SourceConfig | None = None


@contextmanager
def _stage(stage: ProcessingStage) -> Iterator[None]:
    """Re-wrap lower-level failures as a :class:`ProcessingError` for ``stage``."""
    try:
        yield
    except ProcessingError:
        raise
    except AdapterError as e:
        raise ProcessingError.from_adapter_error(e, stage) from e
    except OutputError as e:
        raise ProcessingError(
            str(e), stage, context={"outputType": e.output_type}, retryable=e.retryable
        ) from e
    except httpx.HTTPError as e:
        raise ProcessingError(f"HTTP request failed: {e}", stage, retryable=True) from e


class ProcessorOrchestrator:
    """Runs discussions through the pipeline and owns their status changes."""

    def __init__(
        self,
        store: DiscussionStore,
        flow_store: FlowStore,
        adapters: AdapterRegistry,
        engine: AnalysisEngine,
        outputs: OutputRegistry,
        notifier: Notifier | None = None,
        *,
        retry_options: RetryOptions | None = None,
        max_tasks: int | None = None,
        user_resolver: UserResolver | None = None,
    ):
        self._store = store
        self._flow_store = flow_store
        self._adapters = adapters
        self._engine = engine
        self._outputs = outputs
        self._notifier = notifier or Notifier()
        self._retry_options = retry_options or RetryOptions()
        self._max_tasks = max_tasks
        self._user_resolver = user_resolver

    @property
    def store(self) -> DiscussionStore:
        return self._store

    @property
    def adapters(self) -> AdapterRegistry:
        return self._adapters

    @property
    def outputs(self) -> OutputRegistry:
        return self._outputs

    @property
    def engine(self) -> AnalysisEngine:
        return self._engine

    # ========== Entry points ==========

    async def process_event(
        self,
        source_type: str,
        payload: dict[str, Any],
        options: ProcessingOptions | None = None,
    ) -> ProcessingResult:
        """Parse a raw source webhook with its adapter, then process it.

        Raises:
            ValidationError: No adapter handles ``source_type``, or the
                adapter rejected the payload as not being a discussion.
        """
        if not self._adapters.has(source_type):
            raise ValidationError(f"Unsupported source type: {source_type}")
        adapter = self._adapters.get(source_type)
        try:
            parsed = await adapter.parse_incoming(payload)
        except AdapterError as e:
            raise ValidationError(f"Could not parse {source_type} payload: {e}") from e
        return await self.process_direct(parsed, options)

    async def process_direct(
        self,
        parsed: ParsedDiscussion | dict[str, Any],
        options: ProcessingOptions | None = None,
    ) -> ProcessingResult:
        """Create a discussion from ``parsed`` and run a fresh first attempt.

        Raises:
            ValidationError: If required fields are missing. No record is
                created in that case.
            ProcessingError: A stage failed; the record is left ``failed``.
        """
        started = time.perf_counter()
        data = parsed.to_dict() if isinstance(parsed, ParsedDiscussion) else parsed
        missing = ParsedDiscussion.missing_fields(data)
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}", missing_fields=missing
            )
        if not isinstance(parsed, ParsedDiscussion):
            try:
                parsed = ParsedDiscussion.from_dict(data)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid discussion payload: {e}") from e

        discussion = Discussion.from_parsed(
            parsed, max_attempts=self._retry_options.max_attempts
        )
        discussion = await self._store.create(discussion)
        log.info(
            "discussion_received",
            discussion_id=discussion.id,
            source_type=discussion.source_type,
            thread_id=discussion.source_thread_id,
        )

        claimed = await self._claim(discussion, [DiscussionStatus.PENDING])
        return await self._run(claimed, options or ProcessingOptions(), started=started)

    async def reprocess(self, discussion_id: str, *, force: bool = False) -> ProcessingResult:
        """Re-run the full pipeline for an existing discussion.

        Outputs that already hold a task for the same task index are skipped
        unless ``force`` is set. The retry back-off window does not apply,
        but the attempt limit does.
        """
        started = time.perf_counter()
        discussion = await self._require(discussion_id)

        if discussion.status == DiscussionStatus.COMPLETED:
            raise InvalidTransitionError(
                str(discussion.status), str(DiscussionStatus.PROCESSING), discussion_id
            )
        self._check_attempts_left(discussion)

        if discussion.status == DiscussionStatus.PENDING:
            claimed = await self._claim(discussion, [DiscussionStatus.PENDING])
        elif discussion.status == DiscussionStatus.FAILED:
            claimed = await self._claim_from_failed(discussion)
        else:
            raise self._busy_error(discussion)

        log.info("discussion_reprocessing", discussion_id=discussion_id, force=force)
        return await self._run(
            claimed,
            ProcessingOptions(force=force),
            started=started,
            is_retry=True,
        )

    async def retry_failed(self, discussion_id: str) -> ProcessingResult:
        """Retry a failed discussion once its back-off window has passed.

        Stored thread and analysis are reused, and outputs that already
        hold a task are skipped, so only the failed work is redone.

        Raises:
            ProcessingError: Non-retryable once attempts are exhausted;
                retryable (with ``retryAfter`` seconds) inside the back-off
                window, or while another attempt holds the discussion.
        """
        started = time.perf_counter()
        discussion = await self._require(discussion_id)

        if discussion.status in _IN_FLIGHT:
            raise self._busy_error(discussion)
        if discussion.status != DiscussionStatus.FAILED:
            raise InvalidTransitionError(
                str(discussion.status), str(DiscussionStatus.RETRYING), discussion_id
            )
        self._check_attempts_left(discussion)

        delay = compute_backoff_delay(discussion.attempts, self._retry_options)
        if discussion.last_attempt_at is not None and delay > 0:
            ready_at = discussion.last_attempt_at + timedelta(seconds=delay)
            remaining = (ready_at - _now()).total_seconds()
            if remaining > 0:
                raise ProcessingError(
                    "Retry requested before the back-off window elapsed",
                    ProcessingStage.RETRY,
                    context={
                        "discussionId": discussion_id,
                        "retryAfter": round(remaining, 3),
                        "attempts": discussion.attempts,
                    },
                    retryable=True,
                )

        claimed = await self._claim_from_failed(discussion)
        log.info(
            "discussion_retrying",
            discussion_id=discussion_id,
            attempt=claimed.attempts,
            max_attempts=claimed.max_attempts,
        )
        return await self._run(
            claimed,
            ProcessingOptions(),
            started=started,
            is_retry=True,
            reuse_stored=True,
        )

    # ========== Claiming ==========

    async def _require(self, discussion_id: str) -> Discussion:
        discussion = await self._store.get(discussion_id)
        if discussion is None:
            raise DiscussionNotFoundError(discussion_id)
        return discussion

    def _check_attempts_left(self, discussion: Discussion) -> None:
        if discussion.is_exhausted:
            raise ProcessingError(
                f"Maximum attempts reached ({discussion.attempts}/{discussion.max_attempts})",
                ProcessingStage.RETRY,
                context={
                    "discussionId": discussion.id,
                    "attempts": discussion.attempts,
                    "maxAttempts": discussion.max_attempts,
                },
                retryable=False,
            )

    @staticmethod
    def _busy_error(discussion: Discussion) -> ProcessingError:
        return ProcessingError(
            "Discussion is already being processed",
            ProcessingStage.VALIDATION,
            context={"discussionId": discussion.id, "status": str(discussion.status)},
            retryable=True,
        )

    async def _claim(
        self, discussion: Discussion, expected: list[DiscussionStatus]
    ) -> Discussion:
        """Atomically start an attempt: ``expected -> processing``, counting it."""
        claimed = await self._store.compare_and_set_status(
            discussion.id,
            expected,
            DiscussionStatus.PROCESSING,
            increment_attempts=True,
            last_attempt_at=_now(),
        )
        if claimed is None:
            current = await self._require(discussion.id)
            raise self._busy_error(current)
        return claimed

    async def _claim_from_failed(self, discussion: Discussion) -> Discussion:
        retrying = await self._store.compare_and_set_status(
            discussion.id, [DiscussionStatus.FAILED], DiscussionStatus.RETRYING
        )
        if retrying is None:
            current = await self._require(discussion.id)
            raise self._busy_error(current)
        return await self._claim(retrying, [DiscussionStatus.RETRYING])

    async def _transition(
        self, attempt: _Attempt, target: DiscussionStatus, **fields: Any
    ) -> Discussion:
        current = attempt.discussion
        ensure_transition(current.status, target, current.id)
        updated = await self._store.compare_and_set_status(
            current.id, [current.status], target, **fields
        )
        if updated is None:
            raise ProcessingError(
                "Discussion status changed during processing",
                attempt.stage,
                context={"discussionId": current.id, "expected": str(current.status)},
                retryable=True,
            )
        attempt.discussion = updated
        return updated

    # ========== Pipeline ==========

    async def _run(
        self,
        discussion: Discussion,
        options: ProcessingOptions,
        *,
        started: float,
        is_retry: bool = False,
        reuse_stored: bool = False,
    ) -> ProcessingResult:
        attempt = _Attempt(discussion=discussion)
        with discussion_context(
            discussion.id, source_type=discussion.source_type, attempt=discussion.attempts
        ):
            try:
                return await self._execute(
                    attempt,
                    options,
                    started=started,
                    is_retry=is_retry,
                    reuse_stored=reuse_stored,
                )
            except Exception as e:
                error = await self._fail(attempt, e)
                if error is e:
                    raise
                raise error from e

    async def _execute(
        self,
        attempt: _Attempt,
        options: ProcessingOptions,
        *,
        started: float,
        is_retry: bool,
        reuse_stored: bool,
    ) -> ProcessingResult:
        discussion = attempt.discussion

        # Flow loading
        attempt.stage = ProcessingStage.FLOW_LOADING
        flow, flow_input = await self._load_flow(discussion)
        attempt.adapter = self._adapters.get(discussion.source_type)
        attempt.config = options.config or flow_input.source_config()
        discussion = await self._store.update(
            discussion.id, flow_id=flow.id, flow_input_id=flow_input.id
        )
        attempt.discussion = discussion
        await self._notifier.set_status(
            attempt.adapter,
            discussion.source_thread_id,
            DiscussionStatus.PROCESSING,
            attempt.config,
        )

        # Thread building
        attempt.stage = ProcessingStage.THREAD_BUILDING
        thread = await self._build_thread(attempt, options, reuse_stored=reuse_stored)

        # AI analysis
        attempt.stage = ProcessingStage.AI_ANALYSIS
        analysis = await self._analyze(attempt, flow, thread, options, reuse_stored=reuse_stored)
        await self._transition(attempt, DiscussionStatus.ANALYZED, ai_analysis=analysis)

        # Routing and task creation
        created: list[OutputTaskRef] = []
        skipped: list[OutputTaskRef] = []
        warnings: list[str] = []
        if options.skip_notion:
            log.info("task_creation_skipped", discussion_id=discussion.id, reason="skip_notion")
        elif not flow.ai_enabled:
            log.info("task_creation_skipped", discussion_id=discussion.id, reason="ai_disabled")
        elif analysis.tasks:
            created, skipped, warnings = await self._create_tasks(
                attempt, flow, analysis, force=options.force
            )

        # Notification
        attempt.stage = ProcessingStage.NOTIFICATION
        refs = sorted(attempt.discussion.output_tasks, key=lambda r: (r.task_index, r.created_at))
        outcome = await self._notifier.notify(
            attempt.adapter,
            attempt.discussion.source_thread_id,
            refs,
            attempt.config,
            personality=flow.reply_personality,
        )

        completed = await self._transition(
            attempt,
            DiscussionStatus.COMPLETED,
            completed_at=_now(),
            notification_errors=outcome.errors,
            error=None,
            error_stack=None,
            failed_stage=None,
            retryable=None,
        )
        processing_time_ms = round((time.perf_counter() - started) * 1000, 2)
        log.info(
            "discussion_completed",
            discussion_id=completed.id,
            task_count=analysis.task_count,
            created=len(created),
            skipped=len(skipped),
            attempts=completed.attempts,
            processing_time_ms=processing_time_ms,
        )
        return ProcessingResult(
            discussion=completed,
            analysis=analysis,
            created_tasks=created,
            skipped_tasks=skipped,
            routing_warnings=warnings,
            notification=outcome,
            processing_time_ms=processing_time_ms,
            is_retry=is_retry,
        )

    async def _load_flow(self, discussion: Discussion) -> tuple[Flow, FlowInput]:
        found: tuple[Flow, FlowInput] | None = None
        if discussion.flow_id:
            flow = await self._flow_store.get_flow(discussion.flow_id)
            if flow is not None:
                flow_input = next(
                    (i for i in flow.inputs if i.id == discussion.flow_input_id), None
                )
                if flow_input is not None:
                    found = (flow, flow_input)
        if found is None:
            found = await self._flow_store.find_flow_for(discussion.to_parsed())
        if found is None:
            raise ProcessingError(
                f"No flow configured for {discussion.source_type} team {discussion.team_id}",
                ProcessingStage.FLOW_LOADING,
                context={"sourceType": discussion.source_type, "teamId": discussion.team_id},
                retryable=False,
            )

        flow, flow_input = found
        if not flow.active:
            raise ProcessingError(
                f"Flow {flow.id} is inactive",
                ProcessingStage.FLOW_LOADING,
                context={"flowId": flow.id},
                retryable=False,
            )
        log.debug("flow_loaded", discussion_id=discussion.id, flow_id=flow.id)
        return flow, flow_input

    async def _build_thread(
        self, attempt: _Attempt, options: ProcessingOptions, *, reuse_stored: bool
    ) -> DiscussionThread:
        discussion = attempt.discussion
        if options.thread is not None:
            thread = options.thread
        elif reuse_stored and discussion.thread_data is not None:
            log.debug("thread_reused", discussion_id=discussion.id)
            return discussion.thread_data
        else:
            if attempt.adapter is None or attempt.config is None:
                raise ProcessingError(
                    "No source adapter resolved for thread fetch",
                    ProcessingStage.THREAD_BUILDING,
                    context={"discussionId": discussion.id},
                    retryable=False,
                )
            with _stage(ProcessingStage.THREAD_BUILDING):
                thread = await attempt.adapter.fetch_thread(
                    discussion.source_thread_id, attempt.config
                )

        fields: dict[str, Any] = {
            "thread_data": thread,
            "participants": list(
                dict.fromkeys([*discussion.participants, *thread.participants])
            ),
        }
        # The adapter narrowed the id (e.g. a Figma file key to one comment)
        refined = thread.id != discussion.source_thread_id and thread.id.startswith(
            f"{discussion.source_thread_id}:"
        )
        if refined:
            fields["source_thread_id"] = thread.id
        attempt.discussion = await self._store.update(discussion.id, **fields)
        if refined and attempt.adapter is not None and attempt.config is not None:
            log.info(
                "thread_id_refined",
                discussion_id=discussion.id,
                thread_id=thread.id,
            )
            await self._notifier.set_status(
                attempt.adapter, thread.id, DiscussionStatus.PROCESSING, attempt.config
            )
        log.debug(
            "thread_built",
            discussion_id=discussion.id,
            message_count=len(thread.messages),
        )
        return thread

    async def _analyze(
        self,
        attempt: _Attempt,
        flow: Flow,
        thread: DiscussionThread,
        options: ProcessingOptions,
        *,
        reuse_stored: bool,
    ) -> AIAnalysisResult:
        discussion = attempt.discussion
        if reuse_stored and discussion.ai_analysis is not None:
            log.debug("analysis_reused", discussion_id=discussion.id)
            return discussion.ai_analysis
        if options.skip_ai:
            return mock_analysis(discussion.title, discussion.content)
        if not flow.ai_enabled:
            return AIAnalysisResult(
                summary=discussion.title,
                key_points=[],
                task_detection=TaskDetectionResult(is_multi_task=False, tasks=[]),
            )

        analysis_options = AIAnalysisOptions(
            custom_summary_prompt=flow.custom_summary_prompt,
            custom_task_prompt=flow.custom_task_prompt,
            source_type=discussion.source_type,
            max_tasks=self._max_tasks,
            available_domains=list(flow.available_domains),
        )
        with _stage(ProcessingStage.AI_ANALYSIS):
            return await self._engine.analyze(thread.to_text(), analysis_options)

    async def _create_tasks(
        self,
        attempt: _Attempt,
        flow: Flow,
        analysis: AIAnalysisResult,
        *,
        force: bool,
    ) -> tuple[list[OutputTaskRef], list[OutputTaskRef], list[str]]:
        attempt.stage = ProcessingStage.ROUTING
        routing = route_tasks(analysis.tasks, flow.active_outputs)

        attempt.stage = ProcessingStage.TASK_CREATION
        discussion = attempt.discussion
        created: list[OutputTaskRef] = []
        skipped: list[OutputTaskRef] = []
        failures: list[ProcessingError] = []

        for routed in routing.routed:
            for output in routed.outputs:
                existing = discussion.find_output_task(output.id, routed.task_index)
                if existing is not None and not force:
                    skipped.append(existing)
                    log.debug(
                        "output_task_exists",
                        discussion_id=discussion.id,
                        output_id=output.id,
                        task_index=routed.task_index,
                    )
                    continue

                context = TaskContext(
                    output_id=output.id,
                    task_index=routed.task_index,
                    summary=analysis.summary,
                    key_points=list(analysis.key_points),
                    source_url=discussion.source_url,
                    source_type=discussion.source_type,
                    participants=list(discussion.participants),
                )
                try:
                    creator = self._outputs.get(output.output_type)
                    task = routed.task
                    if self._user_resolver is not None:
                        task = await self._user_resolver.resolve_task(
                            task, discussion.team_id, discussion.source_type
                        )
                    ref = await creator.create_task(
                        task, output.output_config, context=context
                    )
                except OutputError as e:
                    failures.append(
                        ProcessingError.from_output_error(
                            e,
                            ProcessingStage.TASK_CREATION,
                            task_index=routed.task_index,
                            output_id=output.id,
                        )
                    )
                    log.warning(
                        "output_task_failed",
                        discussion_id=discussion.id,
                        output_id=output.id,
                        task_index=routed.task_index,
                        retryable=e.retryable,
                        error=str(e),
                    )
                    continue
                except ProcessingError as e:
                    failures.append(e)
                    continue

                attempt.discussion = await self._store.add_output_task(discussion.id, ref)
                created.append(ref)

        if failures:
            first = failures[0]
            first.context.setdefault("failedCount", len(failures))
            first.context.setdefault("createdCount", len(created))
            raise first
        return created, skipped, routing.warnings

    # ========== Failure handling ==========

    async def _fail(self, attempt: _Attempt, exc: Exception) -> Exception:
        """Persist the failure and move the discussion to ``failed``.

        Returns the exception the caller should see: a retryable error on a
        discussion with no attempts left is surfaced as non-retryable.
        """
        discussion = attempt.discussion
        if isinstance(exc, ProcessingError):
            stage = exc.stage
            message = exc.message
            retryable = exc.retryable
        else:
            stage = attempt.stage
            message = str(exc) or type(exc).__name__
            retryable = False

        exhausted = is_terminal(
            DiscussionStatus.FAILED,
            attempts=discussion.attempts,
            max_attempts=discussion.max_attempts,
        )
        surfaced: Exception = exc
        if isinstance(exc, ProcessingError) and retryable and exhausted:
            retryable = False
            surfaced = ProcessingError(
                f"{message} (maximum attempts reached)",
                stage,
                context={
                    **exc.context,
                    "attempts": discussion.attempts,
                    "maxAttempts": discussion.max_attempts,
                },
                retryable=False,
            )

        fields = {
            "error": message,
            "error_stack": "".join(traceback.format_exception(exc)),
            "failed_stage": str(stage),
            "retryable": retryable,
        }
        try:
            failed = await self._store.compare_and_set_status(
                discussion.id, list(_IN_FLIGHT), DiscussionStatus.FAILED, **fields
            )
            if failed is None:
                await self._store.update(discussion.id, **fields)
        except Exception:
            log.exception("failure_persist_error", discussion_id=discussion.id)

        log.error(
            "discussion_failed",
            discussion_id=discussion.id,
            stage=str(stage),
            retryable=retryable,
            attempts=discussion.attempts,
            error=message,
        )

        if attempt.adapter is not None and attempt.config is not None:
            await self._notifier.set_status(
                attempt.adapter,
                discussion.source_thread_id,
                DiscussionStatus.FAILED,
                attempt.config,
            )
        return surfaced
