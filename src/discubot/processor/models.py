"""Data model for the discussion processing pipeline.

A discussion flows through states:
PENDING -> PROCESSING -> ANALYZED -> COMPLETED, with FAILED reachable from
PROCESSING or ANALYZED and RETRYING as the way back from FAILED.

All ``to_dict`` / ``from_dict`` pairs use the camelCase names of the HTTP
surface so records can be exchanged with the API and stored as JSON.
Optional fields left as ``None`` mean "absent", which is kept distinct from
an empty string or ``False``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4


def _now() -> datetime:
    return datetime.now(UTC)


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO timestamp (or pass through a datetime)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class DiscussionStatus(StrEnum):
    """Lifecycle states for a persisted discussion."""

    PENDING = "pending"
    PROCESSING = "processing"
    ANALYZED = "analyzed"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


# ---------------------------------------------------------------------------
# Flow configuration
# ---------------------------------------------------------------------------


@dataclass
class SourceConfig:
    """Credentials and routing metadata handed to a source adapter call."""

    source_type: str
    api_token: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceType": self.source_type,
            "apiToken": self.api_token,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceConfig:
        return cls(
            source_type=data.get("sourceType", ""),
            api_token=data.get("apiToken", ""),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class FlowInput:
    """One source binding under a flow."""

    id: str
    flow_id: str
    source_type: str
    team_id: str = ""
    name: str = ""
    api_token: str = ""
    source_metadata: dict[str, Any] = field(default_factory=dict)
    active: bool = True
    created_at: datetime = field(default_factory=_now)

    def matches(self, parsed: ParsedDiscussion) -> bool:
        """Check whether an inbound discussion belongs to this input.

        Source type and team must agree, and every identity key declared in
        ``source_metadata`` (for example ``slackTeamId``) must equal the value
        the adapter put into the discussion metadata.
        """
        if not self.active or self.source_type != parsed.source_type:
            return False
        if self.team_id and self.team_id != parsed.team_id:
            return False
        return all(parsed.metadata.get(key) == value for key, value in self.source_metadata.items())

    def source_config(self) -> SourceConfig:
        return SourceConfig(
            source_type=self.source_type,
            api_token=self.api_token,
            metadata=dict(self.source_metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "flowId": self.flow_id,
            "sourceType": self.source_type,
            "teamId": self.team_id,
            "name": self.name,
            "apiToken": self.api_token,
            "sourceMetadata": dict(self.source_metadata),
            "active": self.active,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlowInput:
        return cls(
            id=str(data.get("id") or uuid4()),
            flow_id=str(data.get("flowId", "")),
            source_type=data.get("sourceType", ""),
            team_id=data.get("teamId", ""),
            name=data.get("name", ""),
            api_token=data.get("apiToken", ""),
            source_metadata=dict(data.get("sourceMetadata") or {}),
            active=bool(data.get("active", True)),
            created_at=parse_datetime(data.get("createdAt")) or _now(),
        )


@dataclass
class FlowOutput:
    """One destination binding under a flow."""

    id: str
    flow_id: str
    output_type: str
    name: str = ""
    domain_filter: list[str] = field(default_factory=list)
    is_default: bool = False
    output_config: dict[str, Any] = field(default_factory=dict)
    active: bool = True
    created_at: datetime = field(default_factory=_now)

    def accepts(self, domain: str | None) -> bool:
        """True when ``domain`` is listed in this output's domain filter."""
        return domain is not None and domain in self.domain_filter

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "flowId": self.flow_id,
            "outputType": self.output_type,
            "name": self.name,
            "domainFilter": list(self.domain_filter),
            "isDefault": self.is_default,
            "outputConfig": dict(self.output_config),
            "active": self.active,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlowOutput:
        return cls(
            id=str(data.get("id") or uuid4()),
            flow_id=str(data.get("flowId", "")),
            output_type=data.get("outputType", ""),
            name=data.get("name", ""),
            domain_filter=list(data.get("domainFilter") or []),
            is_default=bool(data.get("isDefault", False)),
            output_config=dict(data.get("outputConfig") or {}),
            active=bool(data.get("active", True)),
            created_at=parse_datetime(data.get("createdAt")) or _now(),
        )


@dataclass
class Flow:
    """Named configuration owning inputs and outputs plus shared AI settings."""

    id: str
    name: str
    team_id: str = ""
    ai_enabled: bool = True
    custom_summary_prompt: str | None = None
    custom_task_prompt: str | None = None
    available_domains: list[str] = field(default_factory=list)
    reply_personality: str | None = None
    active: bool = True
    inputs: list[FlowInput] = field(default_factory=list)
    outputs: list[FlowOutput] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)

    @property
    def active_outputs(self) -> list[FlowOutput]:
        """Active outputs in creation order (stable for equal timestamps)."""
        return sorted((o for o in self.outputs if o.active), key=lambda o: o.created_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "teamId": self.team_id,
            "aiEnabled": self.ai_enabled,
            "customSummaryPrompt": self.custom_summary_prompt,
            "customTaskPrompt": self.custom_task_prompt,
            "availableDomains": list(self.available_domains),
            "replyPersonality": self.reply_personality,
            "active": self.active,
            "inputs": [i.to_dict() for i in self.inputs],
            "outputs": [o.to_dict() for o in self.outputs],
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Flow:
        return cls(
            id=str(data.get("id") or uuid4()),
            name=data.get("name", ""),
            team_id=data.get("teamId", ""),
            ai_enabled=bool(data.get("aiEnabled", True)),
            custom_summary_prompt=data.get("customSummaryPrompt"),
            custom_task_prompt=data.get("customTaskPrompt"),
            available_domains=list(data.get("availableDomains") or []),
            reply_personality=data.get("replyPersonality"),
            active=bool(data.get("active", True)),
            inputs=[FlowInput.from_dict(i) for i in data.get("inputs") or []],
            outputs=[FlowOutput.from_dict(o) for o in data.get("outputs") or []],
            created_at=parse_datetime(data.get("createdAt")) or _now(),
        )


@dataclass
class UserMapping:
    """Links a source user (Slack id, Figma handle, ...) to a Notion user id."""

    team_id: str
    source_type: str
    source_user_id: str
    notion_user_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    source_user_email: str | None = None
    source_user_name: str | None = None
    mapping_type: str = "manual"
    confidence: float = 1.0
    active: bool = True
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "teamId": self.team_id,
            "sourceType": self.source_type,
            "sourceUserId": self.source_user_id,
            "sourceUserEmail": self.source_user_email,
            "sourceUserName": self.source_user_name,
            "notionUserId": self.notion_user_id,
            "mappingType": self.mapping_type,
            "confidence": self.confidence,
            "active": self.active,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserMapping:
        return cls(
            id=str(data.get("id") or uuid4()),
            team_id=data.get("teamId", ""),
            source_type=data.get("sourceType", ""),
            source_user_id=str(data.get("sourceUserId", "")),
            notion_user_id=str(data.get("notionUserId", "")),
            source_user_email=data.get("sourceUserEmail"),
            source_user_name=data.get("sourceUserName"),
            mapping_type=data.get("mappingType", "manual"),
            confidence=float(data.get("confidence", 1.0)),
            active=bool(data.get("active", True)),
            created_at=parse_datetime(data.get("createdAt")) or _now(),
        )


# ---------------------------------------------------------------------------
# Inbound discussion shapes
# ---------------------------------------------------------------------------


@dataclass
class ParsedDiscussion:
    """Source-agnostic shape an adapter produces from a raw payload."""

    REQUIRED_FIELDS = (
        "sourceType",
        "sourceThreadId",
        "sourceUrl",
        "teamId",
        "authorHandle",
        "title",
        "content",
    )

    source_type: str
    source_thread_id: str
    source_url: str
    team_id: str
    author_handle: str
    title: str
    content: str
    participants: list[str] = field(default_factory=list)
    timestamp: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def missing_fields(cls, data: dict[str, Any]) -> list[str]:
        """Return the required wire fields that are absent or blank in ``data``."""
        missing = []
        for name in cls.REQUIRED_FIELDS:
            value = data.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceType": self.source_type,
            "sourceThreadId": self.source_thread_id,
            "sourceUrl": self.source_url,
            "teamId": self.team_id,
            "authorHandle": self.author_handle,
            "title": self.title,
            "content": self.content,
            "participants": list(self.participants),
            "timestamp": _iso(self.timestamp),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParsedDiscussion:
        return cls(
            source_type=data["sourceType"],
            source_thread_id=data["sourceThreadId"],
            source_url=data["sourceUrl"],
            team_id=data["teamId"],
            author_handle=data["authorHandle"],
            title=data["title"],
            content=data["content"],
            participants=list(data.get("participants") or []),
            timestamp=parse_datetime(data.get("timestamp")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ThreadMessage:
    """A single message within a discussion thread."""

    id: str
    author_handle: str
    content: str
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "authorHandle": self.author_handle,
            "content": self.content,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThreadMessage:
        return cls(
            id=str(data.get("id", "")),
            author_handle=data.get("authorHandle", ""),
            content=data.get("content", ""),
            timestamp=parse_datetime(data.get("timestamp")),
        )


@dataclass
class DiscussionThread:
    """Root message plus ordered replies and the participant list."""

    id: str
    root_message: ThreadMessage
    replies: list[ThreadMessage] = field(default_factory=list)
    participants: list[str] = field(default_factory=list)

    @property
    def messages(self) -> list[ThreadMessage]:
        return [self.root_message, *self.replies]

    def to_text(self) -> str:
        """Flatten the thread into ``author: content`` lines for analysis."""
        return "\n\n".join(f"{m.author_handle}: {m.content}" for m in self.messages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rootMessage": self.root_message.to_dict(),
            "replies": [r.to_dict() for r in self.replies],
            "participants": list(self.participants),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiscussionThread:
        return cls(
            id=str(data.get("id", "")),
            root_message=ThreadMessage.from_dict(data.get("rootMessage") or {}),
            replies=[ThreadMessage.from_dict(r) for r in data.get("replies") or []],
            participants=list(data.get("participants") or []),
        )


# ---------------------------------------------------------------------------
# Analysis results
# ---------------------------------------------------------------------------


@dataclass
class DetectedTask:
    """An actionable item extracted from a discussion.

    Optional attributes are ``None`` when the model did not provide them.
    """

    title: str
    description: str = ""
    action_items: list[str] = field(default_factory=list)
    priority: str | None = None
    task_type: str | None = None
    assignee: str | None = None
    due_date: str | None = None
    tags: list[str] | None = None
    domain: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.title, str) or not self.title.strip():
            raise ValueError("DetectedTask.title must be a non-empty string")

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "actionItems": list(self.action_items),
            "priority": self.priority,
            "type": self.task_type,
            "assignee": self.assignee,
            "dueDate": self.due_date,
            "tags": list(self.tags) if self.tags is not None else None,
            "domain": self.domain,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DetectedTask:
        tags = data.get("tags")
        return cls(
            title=data.get("title", ""),
            description=data.get("description") or "",
            action_items=[str(a) for a in data.get("actionItems") or []],
            priority=data.get("priority"),
            task_type=data.get("type"),
            assignee=data.get("assignee"),
            due_date=data.get("dueDate"),
            tags=[str(t) for t in tags] if isinstance(tags, list) else None,
            domain=data.get("domain"),
        )


@dataclass
class TaskDetectionResult:
    is_multi_task: bool
    tasks: list[DetectedTask] = field(default_factory=list)
    confidence: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "isMultiTask": self.is_multi_task,
            "tasks": [t.to_dict() for t in self.tasks],
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskDetectionResult:
        return cls(
            is_multi_task=bool(data.get("isMultiTask", False)),
            tasks=[DetectedTask.from_dict(t) for t in data.get("tasks") or []],
            confidence=data.get("confidence"),
        )


@dataclass
class SummaryResult:
    summary: str
    key_points: list[str] = field(default_factory=list)


@dataclass
class AIAnalysisResult:
    """Summary and detected tasks for one discussion."""

    summary: str
    key_points: list[str]
    task_detection: TaskDetectionResult
    processing_time_ms: float = 0.0
    cached: bool = False

    @property
    def tasks(self) -> list[DetectedTask]:
        return self.task_detection.tasks

    @property
    def task_count(self) -> int:
        return len(self.task_detection.tasks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "keyPoints": list(self.key_points),
            "taskDetection": self.task_detection.to_dict(),
            "processingTime": self.processing_time_ms,
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AIAnalysisResult:
        return cls(
            summary=data.get("summary", ""),
            key_points=list(data.get("keyPoints") or []),
            task_detection=TaskDetectionResult.from_dict(data.get("taskDetection") or {}),
            processing_time_ms=float(data.get("processingTime", 0.0)),
            cached=bool(data.get("cached", False)),
        )


@dataclass
class AIAnalysisOptions:
    """Per-call knobs for the analysis engine."""

    skip_cache: bool = False
    custom_summary_prompt: str | None = None
    custom_task_prompt: str | None = None
    source_type: str | None = None
    max_tasks: int | None = None
    available_domains: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Persisted discussion
# ---------------------------------------------------------------------------


@dataclass
class OutputTaskRef:
    """Reference to a task created in a destination system."""

    output_id: str
    output_type: str
    task_index: int
    task_id: str
    url: str
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outputId": self.output_id,
            "outputType": self.output_type,
            "taskIndex": self.task_index,
            "id": self.task_id,
            "url": self.url,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OutputTaskRef:
        return cls(
            output_id=str(data.get("outputId", "")),
            output_type=data.get("outputType", ""),
            task_index=int(data.get("taskIndex", 0)),
            task_id=str(data.get("id", "")),
            url=data.get("url", ""),
            created_at=parse_datetime(data.get("createdAt")) or _now(),
        )


@dataclass
class Discussion:
    """Durable record tracking the processing of one inbound discussion."""

    source_type: str
    source_thread_id: str
    source_url: str
    team_id: str
    author_handle: str
    title: str
    content: str
    id: str = field(default_factory=lambda: str(uuid4()))
    participants: list[str] = field(default_factory=list)
    timestamp: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    flow_id: str | None = None
    flow_input_id: str | None = None
    status: DiscussionStatus = DiscussionStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    error: str | None = None
    error_stack: str | None = None
    failed_stage: str | None = None
    retryable: bool | None = None
    thread_data: DiscussionThread | None = None
    ai_analysis: AIAnalysisResult | None = None
    output_tasks: list[OutputTaskRef] = field(default_factory=list)
    notification_errors: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    last_attempt_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        self.status = DiscussionStatus(self.status)
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_parsed(cls, parsed: ParsedDiscussion, *, max_attempts: int = 3) -> Discussion:
        return cls(
            source_type=parsed.source_type,
            source_thread_id=parsed.source_thread_id,
            source_url=parsed.source_url,
            team_id=parsed.team_id,
            author_handle=parsed.author_handle,
            title=parsed.title,
            content=parsed.content,
            participants=list(parsed.participants),
            timestamp=parsed.timestamp,
            metadata=dict(parsed.metadata),
            max_attempts=max_attempts,
        )

    def to_parsed(self) -> ParsedDiscussion:
        return ParsedDiscussion(
            source_type=self.source_type,
            source_thread_id=self.source_thread_id,
            source_url=self.source_url,
            team_id=self.team_id,
            author_handle=self.author_handle,
            title=self.title,
            content=self.content,
            participants=list(self.participants),
            timestamp=self.timestamp,
            metadata=dict(self.metadata),
        )

    @property
    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def find_output_task(self, output_id: str, task_index: int) -> OutputTaskRef | None:
        for ref in self.output_tasks:
            if ref.output_id == output_id and ref.task_index == task_index:
                return ref
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            **self.to_parsed().to_dict(),
            "flowId": self.flow_id,
            "flowInputId": self.flow_input_id,
            "status": str(self.status),
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "error": self.error,
            "errorStack": self.error_stack,
            "failedStage": self.failed_stage,
            "retryable": self.retryable,
            "threadData": self.thread_data.to_dict() if self.thread_data else None,
            "aiAnalysis": self.ai_analysis.to_dict() if self.ai_analysis else None,
            "outputTasks": [r.to_dict() for r in self.output_tasks],
            "notificationErrors": list(self.notification_errors),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "lastAttemptAt": _iso(self.last_attempt_at),
            "completedAt": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Discussion:
        parsed = ParsedDiscussion.from_dict(data)
        thread = data.get("threadData")
        analysis = data.get("aiAnalysis")
        return cls(
            id=str(data.get("id") or uuid4()),
            source_type=parsed.source_type,
            source_thread_id=parsed.source_thread_id,
            source_url=parsed.source_url,
            team_id=parsed.team_id,
            author_handle=parsed.author_handle,
            title=parsed.title,
            content=parsed.content,
            participants=parsed.participants,
            timestamp=parsed.timestamp,
            metadata=parsed.metadata,
            flow_id=data.get("flowId"),
            flow_input_id=data.get("flowInputId"),
            status=DiscussionStatus(data.get("status", DiscussionStatus.PENDING)),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("maxAttempts", 3)),
            error=data.get("error"),
            error_stack=data.get("errorStack"),
            failed_stage=data.get("failedStage"),
            retryable=data.get("retryable"),
            thread_data=DiscussionThread.from_dict(thread) if thread else None,
            ai_analysis=AIAnalysisResult.from_dict(analysis) if analysis else None,
            output_tasks=[OutputTaskRef.from_dict(r) for r in data.get("outputTasks") or []],
            notification_errors=list(data.get("notificationErrors") or []),
            created_at=parse_datetime(data.get("createdAt")) or _now(),
            updated_at=parse_datetime(data.get("updatedAt")) or _now(),
            last_attempt_at=parse_datetime(data.get("lastAttemptAt")),
            completed_at=parse_datetime(data.get("completedAt")),
        )


@dataclass
class ProcessingOptions:
    """Caller-supplied knobs for a processing run."""

    thread: DiscussionThread | None = None
    config: SourceConfig | None = None
    skip_ai: bool = False
    skip_notion: bool = False
    force: bool = False
