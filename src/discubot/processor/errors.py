"""Error taxonomy for the processing pipeline.

``ProcessingError`` is the primary error type: every stage re-wraps the
adapter, provider and destination failures it sees into one, stamped with
its own stage name, so callers can tell which stage failed and whether a
retry is worthwhile without reading tracebacks.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ProcessingStage(StrEnum):
    """Pipeline stages, in execution order."""

    VALIDATION = "validation"
    FLOW_LOADING = "flow_loading"
    THREAD_BUILDING = "thread_building"
    AI_ANALYSIS = "ai_analysis"
    ROUTING = "routing"
    TASK_CREATION = "task_creation"
    NOTIFICATION = "notification"
    RETRY = "retry"
    UNKNOWN = "unknown"


class DiscubotError(Exception):
    """Base exception for Discubot errors."""


class ValidationError(DiscubotError):
    """Malformed request. Never retried."""

    def __init__(self, message: str, missing_fields: list[str] | None = None):
        super().__init__(message)
        self.missing_fields = missing_fields or []


class AdapterError(DiscubotError):
    """Failure talking to a source system."""

    def __init__(
        self,
        message: str,
        source_type: str,
        *,
        thread_id: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.source_type = source_type
        self.thread_id = thread_id
        self.status_code = status_code
        self.retryable = retryable

    @property
    def context(self) -> dict[str, Any]:
        ctx: dict[str, Any] = {"sourceType": self.source_type}
        if self.thread_id is not None:
            ctx["threadId"] = self.thread_id
        if self.status_code is not None:
            ctx["statusCode"] = self.status_code
        return ctx


class OutputError(DiscubotError):
    """Failure creating a task in a destination system."""

    def __init__(
        self,
        message: str,
        output_type: str,
        *,
        status_code: int | None = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.output_type = output_type
        self.status_code = status_code
        self.retryable = retryable


class ProcessingError(DiscubotError):
    """A pipeline stage failed."""

    def __init__(
        self,
        message: str,
        stage: ProcessingStage | str,
        *,
        context: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.stage = ProcessingStage(stage)
        self.context = context or {}
        self.retryable = retryable

    @classmethod
    def from_adapter_error(cls, err: AdapterError, stage: ProcessingStage) -> ProcessingError:
        return cls(str(err), stage, context=err.context, retryable=err.retryable)

    @classmethod
    def from_output_error(
        cls,
        err: OutputError,
        stage: ProcessingStage,
        *,
        task_index: int,
        output_id: str,
    ) -> ProcessingError:
        context: dict[str, Any] = {
            "outputType": err.output_type,
            "outputId": output_id,
            "taskIndex": task_index,
        }
        if err.status_code is not None:
            context["statusCode"] = err.status_code
        return cls(str(err), stage, context=context, retryable=err.retryable)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "stage": str(self.stage),
            "context": self.context,
            "retryable": self.retryable,
        }


class InvalidTransitionError(ProcessingError):
    """An illegal status change was attempted."""

    def __init__(self, current: str, target: str, discussion_id: str | None = None):
        context: dict[str, Any] = {"from": current, "to": target}
        if discussion_id is not None:
            context["discussionId"] = discussion_id
        super().__init__(
            f"Invalid status transition: {current} -> {target}",
            ProcessingStage.VALIDATION,
            context=context,
            retryable=False,
        )
        self.current = current
        self.target = target


class DiscussionNotFoundError(DiscubotError):
    """No discussion exists with the requested id."""

    def __init__(self, discussion_id: str):
        super().__init__(f"Discussion not found: {discussion_id}")
        self.discussion_id = discussion_id


def http_status_for(exc: BaseException) -> int:
    """Map an exception to the HTTP status the API returns for it."""
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, DiscussionNotFoundError):
        return 404
    if isinstance(exc, ProcessingError):
        return 503 if exc.retryable else 422
    return 500
