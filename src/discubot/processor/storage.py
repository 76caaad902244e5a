"""Persistence for discussions, flow configuration and user mappings.

Two interchangeable backends implement the same protocols:

* ``Postgres*`` stores on an ``asyncpg.Pool``, with JSONB columns for the
  nested records and a conditional ``UPDATE`` for status changes.
* ``InMemory*`` stores for development without a database and for tests.

``compare_and_set_status`` is the only way a pipeline attempt claims a
discussion, which keeps at most one attempt in flight per discussion id.
"""

from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Protocol

import asyncpg  # type: ignore[import-not-found,import-untyped]

from discubot.logging import get_logger
from discubot.processor.errors import DiscussionNotFoundError
from discubot.processor.models import (
    AIAnalysisResult,
    Discussion,
    DiscussionStatus,
    DiscussionThread,
    Flow,
    FlowInput,
    FlowOutput,
    OutputTaskRef,
    ParsedDiscussion,
    UserMapping,
)

log = get_logger("discubot.processor.storage")

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS discussion_flows (
    id                      TEXT         PRIMARY KEY,
    name                    TEXT         NOT NULL,
    team_id                 TEXT         NOT NULL DEFAULT '',
    ai_enabled              BOOLEAN      NOT NULL DEFAULT TRUE,
    custom_summary_prompt   TEXT,
    custom_task_prompt      TEXT,
    available_domains       JSONB        NOT NULL DEFAULT '[]'::jsonb,
    reply_personality       TEXT,
    active                  BOOLEAN      NOT NULL DEFAULT TRUE,
    created_at              TIMESTAMPTZ  NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS discussion_flow_inputs (
    id                  TEXT         PRIMARY KEY,
    flow_id             TEXT         NOT NULL,
    source_type         TEXT         NOT NULL,
    team_id             TEXT         NOT NULL DEFAULT '',
    name                TEXT         NOT NULL DEFAULT '',
    api_token           TEXT         NOT NULL DEFAULT '',
    source_metadata     JSONB        NOT NULL DEFAULT '{}'::jsonb,
    active              BOOLEAN      NOT NULL DEFAULT TRUE,
    created_at          TIMESTAMPTZ  NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_flow_inputs_source
    ON discussion_flow_inputs (source_type, team_id);

CREATE TABLE IF NOT EXISTS discussion_flow_outputs (
    id                  TEXT         PRIMARY KEY,
    flow_id             TEXT         NOT NULL,
    output_type         TEXT         NOT NULL,
    name                TEXT         NOT NULL DEFAULT '',
    domain_filter       JSONB        NOT NULL DEFAULT '[]'::jsonb,
    is_default          BOOLEAN      NOT NULL DEFAULT FALSE,
    output_config       JSONB        NOT NULL DEFAULT '{}'::jsonb,
    active              BOOLEAN      NOT NULL DEFAULT TRUE,
    created_at          TIMESTAMPTZ  NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_flow_outputs_flow
    ON discussion_flow_outputs (flow_id);

CREATE TABLE IF NOT EXISTS discussions (
    id                  TEXT         PRIMARY KEY,
    source_type         TEXT         NOT NULL,
    source_thread_id    TEXT         NOT NULL,
    source_url          TEXT         NOT NULL,
    team_id             TEXT         NOT NULL,
    author_handle       TEXT         NOT NULL,
    title               TEXT         NOT NULL,
    content             TEXT         NOT NULL,
    participants        JSONB        NOT NULL DEFAULT '[]'::jsonb,
    source_timestamp    TIMESTAMPTZ,
    metadata            JSONB        NOT NULL DEFAULT '{}'::jsonb,
    flow_id             TEXT,
    flow_input_id       TEXT,
    status              TEXT         NOT NULL DEFAULT 'pending',
    attempts            INT          NOT NULL DEFAULT 0,
    max_attempts        INT          NOT NULL DEFAULT 3,
    error               TEXT,
    error_stack         TEXT,
    failed_stage        TEXT,
    retryable           BOOLEAN,
    thread_data         JSONB,
    ai_analysis         JSONB,
    output_tasks        JSONB        NOT NULL DEFAULT '[]'::jsonb,
    notification_errors JSONB        NOT NULL DEFAULT '[]'::jsonb,
    created_at          TIMESTAMPTZ  NOT NULL DEFAULT now(),
    updated_at          TIMESTAMPTZ  NOT NULL DEFAULT now(),
    last_attempt_at     TIMESTAMPTZ,
    completed_at        TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_discussions_status
    ON discussions (status);
CREATE INDEX IF NOT EXISTS idx_discussions_thread
    ON discussions (source_type, source_thread_id);

CREATE TABLE IF NOT EXISTS user_mappings (
    id                  TEXT         PRIMARY KEY,
    team_id             TEXT         NOT NULL,
    source_type         TEXT         NOT NULL,
    source_user_id      TEXT         NOT NULL,
    source_user_email   TEXT,
    source_user_name    TEXT,
    notion_user_id      TEXT         NOT NULL,
    mapping_type        TEXT         NOT NULL DEFAULT 'manual',
    confidence          REAL         NOT NULL DEFAULT 1.0,
    active              BOOLEAN      NOT NULL DEFAULT TRUE,
    created_at          TIMESTAMPTZ  NOT NULL DEFAULT now(),
    UNIQUE (team_id, source_type, source_user_id)
);
"""


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class DiscussionStore(Protocol):
    """Durable discussion records.

    Field keyword arguments use the :class:`Discussion` attribute names.
    """

    async def create(self, discussion: Discussion) -> Discussion: ...

    async def get(self, discussion_id: str) -> Discussion | None: ...

    async def update(self, discussion_id: str, **fields: Any) -> Discussion: ...

    async def compare_and_set_status(
        self,
        discussion_id: str,
        expected: Iterable[DiscussionStatus],
        new: DiscussionStatus,
        *,
        increment_attempts: bool = False,
        **fields: Any,
    ) -> Discussion | None:
        """Atomically move to ``new`` if the current status is in ``expected``.

        Returns the updated record, or None when the status did not match.
        """
        ...

    async def add_output_task(self, discussion_id: str, ref: OutputTaskRef) -> Discussion: ...

    async def get_status_counts(self) -> dict[str, int]: ...


class FlowStore(Protocol):
    """Read access to flow configuration."""

    async def get_flow(self, flow_id: str) -> Flow | None: ...

    async def find_flow_for(self, parsed: ParsedDiscussion) -> tuple[Flow, FlowInput] | None: ...


class UserMappingStore(Protocol):
    """Lookup of source users to Notion users, scoped by team and source type."""

    async def save_mapping(self, mapping: UserMapping) -> UserMapping: ...

    async def find_mappings(self, team_id: str, source_type: str) -> list[UserMapping]:
        """Active mappings for one team and source, highest confidence first."""
        ...


def _merge_output_task(refs: list[OutputTaskRef], ref: OutputTaskRef) -> list[OutputTaskRef]:
    """Replace the ref for the same (output, task index) or append it."""
    merged = [
        r for r in refs if not (r.output_id == ref.output_id and r.task_index == ref.task_index)
    ]
    merged.append(ref)
    return merged


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryDiscussionStore:
    """Dict-backed store. Records are copied in and out like a database would."""

    def __init__(self) -> None:
        self._records: dict[str, Discussion] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def _require(self, discussion_id: str) -> Discussion:
        record = self._records.get(discussion_id)
        if record is None:
            raise DiscussionNotFoundError(discussion_id)
        return record

    @staticmethod
    def _apply(record: Discussion, fields: dict[str, Any]) -> None:
        for name, value in fields.items():
            if not hasattr(record, name):
                raise AttributeError(f"Discussion has no field {name!r}")
            setattr(record, name, value)
        record.updated_at = _now()

    async def create(self, discussion: Discussion) -> Discussion:
        async with self._lock:
            if discussion.id in self._records:
                raise ValueError(f"Discussion already exists: {discussion.id}")
            self._records[discussion.id] = copy.deepcopy(discussion)
        log.debug("discussion_created", discussion_id=discussion.id)
        return copy.deepcopy(discussion)

    async def get(self, discussion_id: str) -> Discussion | None:
        record = self._records.get(discussion_id)
        return copy.deepcopy(record) if record is not None else None

    async def update(self, discussion_id: str, **fields: Any) -> Discussion:
        async with self._lock:
            record = self._require(discussion_id)
            self._apply(record, fields)
            return copy.deepcopy(record)

    async def compare_and_set_status(
        self,
        discussion_id: str,
        expected: Iterable[DiscussionStatus],
        new: DiscussionStatus,
        *,
        increment_attempts: bool = False,
        **fields: Any,
    ) -> Discussion | None:
        allowed = {DiscussionStatus(s) for s in expected}
        async with self._lock:
            record = self._require(discussion_id)
            if record.status not in allowed:
                return None
            record.status = DiscussionStatus(new)
            if increment_attempts:
                record.attempts += 1
            self._apply(record, fields)
            return copy.deepcopy(record)

    async def add_output_task(self, discussion_id: str, ref: OutputTaskRef) -> Discussion:
        async with self._lock:
            record = self._require(discussion_id)
            record.output_tasks = _merge_output_task(record.output_tasks, copy.deepcopy(ref))
            record.updated_at = _now()
            return copy.deepcopy(record)

    async def get_status_counts(self) -> dict[str, int]:
        """Return discussion counts grouped by status."""
        counts: dict[str, int] = {}
        for record in self._records.values():
            counts[str(record.status)] = counts.get(str(record.status), 0) + 1
        return counts


class InMemoryFlowStore:
    """Flow configuration held in memory; seeded with :meth:`save_flow`."""

    def __init__(self, flows: Iterable[Flow] | None = None) -> None:
        self._flows: dict[str, Flow] = {}
        self._inputs: list[FlowInput] = []
        for flow in flows or []:
            self._store(flow)

    def _store(self, flow: Flow) -> None:
        self._flows[flow.id] = copy.deepcopy(flow)
        self._inputs = [i for i in self._inputs if i.flow_id != flow.id]
        self._inputs.extend(copy.deepcopy(i) for i in flow.inputs)

    async def save_flow(self, flow: Flow) -> Flow:
        self._store(flow)
        return flow

    async def add_input(self, flow_input: FlowInput) -> None:
        """Register an input on its own, possibly without a flow."""
        self._inputs.append(copy.deepcopy(flow_input))

    async def get_flow(self, flow_id: str) -> Flow | None:
        flow = self._flows.get(flow_id)
        return copy.deepcopy(flow) if flow is not None else None

    async def find_flow_for(self, parsed: ParsedDiscussion) -> tuple[Flow, FlowInput] | None:
        for flow_input in sorted(self._inputs, key=lambda i: i.created_at):
            if not flow_input.matches(parsed):
                continue
            flow = self._flows.get(flow_input.flow_id)
            if flow is None:
                log.warning(
                    "orphaned_flow_input", input_id=flow_input.id, flow_id=flow_input.flow_id
                )
                continue
            return copy.deepcopy(flow), copy.deepcopy(flow_input)
        return None


class InMemoryUserMappingStore:
    """User mappings keyed by ``(team_id, source_type, source_user_id)``."""

    def __init__(self, mappings: Iterable[UserMapping] | None = None) -> None:
        self._mappings: dict[tuple[str, str, str], UserMapping] = {}
        for mapping in mappings or []:
            self._put(mapping)

    def _put(self, mapping: UserMapping) -> None:
        key = (mapping.team_id, mapping.source_type, mapping.source_user_id)
        self._mappings[key] = copy.deepcopy(mapping)

    async def save_mapping(self, mapping: UserMapping) -> UserMapping:
        self._put(mapping)
        return mapping

    async def find_mappings(self, team_id: str, source_type: str) -> list[UserMapping]:
        found = [
            copy.deepcopy(m)
            for (team, source, _), m in self._mappings.items()
            if team == team_id and source == source_type and m.active
        ]
        return sorted(found, key=lambda m: m.confidence, reverse=True)


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------


def _json(value: Any) -> Any:
    """JSONB columns come back as text unless a codec is registered."""
    return json.loads(value) if isinstance(value, str) else value


def _dump_thread(value: DiscussionThread | None) -> str | None:
    return json.dumps(value.to_dict()) if value is not None else None


def _dump_analysis(value: AIAnalysisResult | None) -> str | None:
    return json.dumps(value.to_dict()) if value is not None else None


def _dump_refs(value: list[OutputTaskRef]) -> str:
    return json.dumps([r.to_dict() for r in value])


# Discussion attribute -> (column, encoder, is_jsonb)
_DISCUSSION_COLUMNS: dict[str, tuple[str, Any, bool]] = {
    "source_type": ("source_type", None, False),
    "source_thread_id": ("source_thread_id", None, False),
    "source_url": ("source_url", None, False),
    "team_id": ("team_id", None, False),
    "author_handle": ("author_handle", None, False),
    "title": ("title", None, False),
    "content": ("content", None, False),
    "participants": ("participants", json.dumps, True),
    "timestamp": ("source_timestamp", None, False),
    "metadata": ("metadata", json.dumps, True),
    "flow_id": ("flow_id", None, False),
    "flow_input_id": ("flow_input_id", None, False),
    "status": ("status", str, False),
    "attempts": ("attempts", None, False),
    "max_attempts": ("max_attempts", None, False),
    "error": ("error", None, False),
    "error_stack": ("error_stack", None, False),
    "failed_stage": ("failed_stage", lambda v: str(v) if v is not None else None, False),
    "retryable": ("retryable", None, False),
    "thread_data": ("thread_data", _dump_thread, True),
    "ai_analysis": ("ai_analysis", _dump_analysis, True),
    "output_tasks": ("output_tasks", _dump_refs, True),
    "notification_errors": ("notification_errors", json.dumps, True),
    "created_at": ("created_at", None, False),
    "updated_at": ("updated_at", None, False),
    "last_attempt_at": ("last_attempt_at", None, False),
    "completed_at": ("completed_at", None, False),
}


def _encode(name: str, value: Any) -> tuple[str, Any, bool]:
    try:
        column, encoder, is_jsonb = _DISCUSSION_COLUMNS[name]
    except KeyError:
        raise AttributeError(f"Discussion has no field {name!r}") from None
    return column, encoder(value) if encoder is not None else value, is_jsonb


def _set_clause(fields: dict[str, Any], start: int) -> tuple[list[str], list[Any]]:
    """Build ``col = $n`` assignments for ``fields`` starting at parameter ``start``."""
    assignments: list[str] = []
    params: list[Any] = []
    for offset, (name, value) in enumerate(fields.items()):
        column, encoded, is_jsonb = _encode(name, value)
        cast = "::jsonb" if is_jsonb else ""
        assignments.append(f"{column} = ${start + offset}{cast}")
        params.append(encoded)
    return assignments, params


def _row_to_discussion(row: asyncpg.Record) -> Discussion:
    """Convert an ``asyncpg.Record`` to a :class:`Discussion`."""
    thread = _json(row["thread_data"])
    analysis = _json(row["ai_analysis"])
    return Discussion(
        id=row["id"],
        source_type=row["source_type"],
        source_thread_id=row["source_thread_id"],
        source_url=row["source_url"],
        team_id=row["team_id"],
        author_handle=row["author_handle"],
        title=row["title"],
        content=row["content"],
        participants=list(_json(row["participants"]) or []),
        timestamp=row["source_timestamp"],
        metadata=dict(_json(row["metadata"]) or {}),
        flow_id=row["flow_id"],
        flow_input_id=row["flow_input_id"],
        status=DiscussionStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error=row["error"],
        error_stack=row["error_stack"],
        failed_stage=row["failed_stage"],
        retryable=row["retryable"],
        thread_data=DiscussionThread.from_dict(thread) if thread else None,
        ai_analysis=AIAnalysisResult.from_dict(analysis) if analysis else None,
        output_tasks=[OutputTaskRef.from_dict(r) for r in _json(row["output_tasks"]) or []],
        notification_errors=list(_json(row["notification_errors"]) or []),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_attempt_at=row["last_attempt_at"],
        completed_at=row["completed_at"],
    )


def _row_to_input(row: asyncpg.Record) -> FlowInput:
    return FlowInput(
        id=row["id"],
        flow_id=row["flow_id"],
        source_type=row["source_type"],
        team_id=row["team_id"],
        name=row["name"],
        api_token=row["api_token"],
        source_metadata=dict(_json(row["source_metadata"]) or {}),
        active=row["active"],
        created_at=row["created_at"],
    )


def _row_to_output(row: asyncpg.Record) -> FlowOutput:
    return FlowOutput(
        id=row["id"],
        flow_id=row["flow_id"],
        output_type=row["output_type"],
        name=row["name"],
        domain_filter=list(_json(row["domain_filter"]) or []),
        is_default=row["is_default"],
        output_config=dict(_json(row["output_config"]) or {}),
        active=row["active"],
        created_at=row["created_at"],
    )


class _PostgresBase:
    """Pool ownership and schema creation shared by the SQL stores."""

    def __init__(self, dsn: str | None = None, pool: asyncpg.Pool | None = None) -> None:
        if dsn is None and pool is None:
            raise ValueError("Either dsn or pool must be provided")
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = pool
        self._owns_pool = pool is None

    @property
    def _db(self) -> asyncpg.Pool:
        """Return the connection pool, raising if not yet initialised."""
        if self._pool is None:
            raise RuntimeError("Storage not initialized; call initialize() first")
        return self._pool

    @property
    def pool(self) -> asyncpg.Pool | None:
        return self._pool

    async def initialize(self) -> None:
        """Create connection pool (if needed) and tables."""
        if self._pool is None:
            if self._dsn is None:
                raise RuntimeError("Cannot initialize without dsn or pool")
            self._pool = await asyncpg.create_pool(dsn=self._dsn)
            log.info("storage_pool_created")
        async with self._db.acquire() as conn:
            await conn.execute(_SCHEMA_SQL)
        log.info("storage_initialized", store=type(self).__name__)

    async def close(self) -> None:
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
            self._pool = None


class PostgresDiscussionStore(_PostgresBase):
    """PostgreSQL storage backend for discussion records."""

    async def create(self, discussion: Discussion) -> Discussion:
        fields = {name: getattr(discussion, name) for name in _DISCUSSION_COLUMNS}
        columns: list[str] = ["id"]
        placeholders: list[str] = ["$1"]
        params: list[Any] = [discussion.id]
        for index, (name, value) in enumerate(fields.items(), start=2):
            column, encoded, is_jsonb = _encode(name, value)
            columns.append(column)
            placeholders.append(f"${index}::jsonb" if is_jsonb else f"${index}")
            params.append(encoded)

        query = (
            f"INSERT INTO discussions ({', '.join(columns)}) "
            f"VALUES ({', '.join(placeholders)}) RETURNING *"
        )
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(query, *params)
        log.debug("discussion_created", discussion_id=discussion.id)
        return _row_to_discussion(row)

    async def get(self, discussion_id: str) -> Discussion | None:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM discussions WHERE id = $1", discussion_id)
        return _row_to_discussion(row) if row is not None else None

    async def update(self, discussion_id: str, **fields: Any) -> Discussion:
        fields["updated_at"] = _now()
        assignments, params = _set_clause(fields, start=2)
        query = f"UPDATE discussions SET {', '.join(assignments)} WHERE id = $1 RETURNING *"
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(query, discussion_id, *params)
        if row is None:
            raise DiscussionNotFoundError(discussion_id)
        return _row_to_discussion(row)

    async def compare_and_set_status(
        self,
        discussion_id: str,
        expected: Iterable[DiscussionStatus],
        new: DiscussionStatus,
        *,
        increment_attempts: bool = False,
        **fields: Any,
    ) -> Discussion | None:
        fields["status"] = DiscussionStatus(new)
        fields["updated_at"] = _now()
        assignments, params = _set_clause(fields, start=3)
        if increment_attempts:
            assignments.append("attempts = attempts + 1")
        query = (
            f"UPDATE discussions SET {', '.join(assignments)} "
            "WHERE id = $1 AND status = ANY($2::text[]) RETURNING *"
        )
        expected_values = [str(DiscussionStatus(s)) for s in expected]

        async with self._db.acquire() as conn:
            row = await conn.fetchrow(query, discussion_id, expected_values, *params)
            if row is None:
                exists = await conn.fetchval(
                    "SELECT 1 FROM discussions WHERE id = $1", discussion_id
                )
                if not exists:
                    raise DiscussionNotFoundError(discussion_id)
                return None
        return _row_to_discussion(row)

    async def add_output_task(self, discussion_id: str, ref: OutputTaskRef) -> Discussion:
        async with self._db.acquire() as conn, conn.transaction():
            current = await conn.fetchval(
                "SELECT output_tasks FROM discussions WHERE id = $1 FOR UPDATE",
                discussion_id,
            )
            if current is None:
                raise DiscussionNotFoundError(discussion_id)
            refs = [OutputTaskRef.from_dict(r) for r in _json(current) or []]
            row = await conn.fetchrow(
                """
                UPDATE discussions
                SET output_tasks = $2::jsonb, updated_at = $3
                WHERE id = $1
                RETURNING *
                """,
                discussion_id,
                _dump_refs(_merge_output_task(refs, ref)),
                _now(),
            )
        return _row_to_discussion(row)

    async def get_status_counts(self) -> dict[str, int]:
        """Return discussion counts grouped by status."""
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS cnt FROM discussions GROUP BY status"
            )
        return {row["status"]: row["cnt"] for row in rows}


class PostgresFlowStore(_PostgresBase):
    """PostgreSQL storage backend for flows, inputs and outputs."""

    async def save_flow(self, flow: Flow) -> Flow:
        """Upsert a flow and replace its inputs and outputs."""
        async with self._db.acquire() as conn, conn.transaction():
            await conn.execute(
                """
                INSERT INTO discussion_flows
                    (id, name, team_id, ai_enabled, custom_summary_prompt,
                     custom_task_prompt, available_domains, reply_personality,
                     active, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    team_id = EXCLUDED.team_id,
                    ai_enabled = EXCLUDED.ai_enabled,
                    custom_summary_prompt = EXCLUDED.custom_summary_prompt,
                    custom_task_prompt = EXCLUDED.custom_task_prompt,
                    available_domains = EXCLUDED.available_domains,
                    reply_personality = EXCLUDED.reply_personality,
                    active = EXCLUDED.active
                """,
                flow.id,
                flow.name,
                flow.team_id,
                flow.ai_enabled,
                flow.custom_summary_prompt,
                flow.custom_task_prompt,
                json.dumps(flow.available_domains),
                flow.reply_personality,
                flow.active,
                flow.created_at,
            )
            await conn.execute("DELETE FROM discussion_flow_inputs WHERE flow_id = $1", flow.id)
            await conn.execute("DELETE FROM discussion_flow_outputs WHERE flow_id = $1", flow.id)
            for i in flow.inputs:
                await conn.execute(
                    """
                    INSERT INTO discussion_flow_inputs
                        (id, flow_id, source_type, team_id, name, api_token,
                         source_metadata, active, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9)
                    """,
                    i.id,
                    flow.id,
                    i.source_type,
                    i.team_id,
                    i.name,
                    i.api_token,
                    json.dumps(i.source_metadata),
                    i.active,
                    i.created_at,
                )
            for o in flow.outputs:
                await conn.execute(
                    """
                    INSERT INTO discussion_flow_outputs
                        (id, flow_id, output_type, name, domain_filter, is_default,
                         output_config, active, created_at)
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7::jsonb, $8, $9)
                    """,
                    o.id,
                    flow.id,
                    o.output_type,
                    o.name,
                    json.dumps(o.domain_filter),
                    o.is_default,
                    json.dumps(o.output_config),
                    o.active,
                    o.created_at,
                )
        log.info("flow_saved", flow_id=flow.id, inputs=len(flow.inputs), outputs=len(flow.outputs))
        return flow

    async def get_flow(self, flow_id: str) -> Flow | None:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM discussion_flows WHERE id = $1", flow_id)
            if row is None:
                return None
            input_rows = await conn.fetch(
                "SELECT * FROM discussion_flow_inputs WHERE flow_id = $1 ORDER BY created_at",
                flow_id,
            )
            output_rows = await conn.fetch(
                "SELECT * FROM discussion_flow_outputs WHERE flow_id = $1 ORDER BY created_at",
                flow_id,
            )
        return Flow(
            id=row["id"],
            name=row["name"],
            team_id=row["team_id"],
            ai_enabled=row["ai_enabled"],
            custom_summary_prompt=row["custom_summary_prompt"],
            custom_task_prompt=row["custom_task_prompt"],
            available_domains=list(_json(row["available_domains"]) or []),
            reply_personality=row["reply_personality"],
            active=row["active"],
            inputs=[_row_to_input(r) for r in input_rows],
            outputs=[_row_to_output(r) for r in output_rows],
            created_at=row["created_at"],
        )

    async def find_flow_for(self, parsed: ParsedDiscussion) -> tuple[Flow, FlowInput] | None:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM discussion_flow_inputs
                WHERE source_type = $1 AND active AND (team_id = '' OR team_id = $2)
                ORDER BY created_at
                """,
                parsed.source_type,
                parsed.team_id,
            )
        for row in rows:
            flow_input = _row_to_input(row)
            if not flow_input.matches(parsed):
                continue
            flow = await self.get_flow(flow_input.flow_id)
            if flow is None:
                log.warning(
                    "orphaned_flow_input", input_id=flow_input.id, flow_id=flow_input.flow_id
                )
                continue
            return flow, flow_input
        return None


def _row_to_mapping(row: asyncpg.Record) -> UserMapping:
    return UserMapping(
        id=row["id"],
        team_id=row["team_id"],
        source_type=row["source_type"],
        source_user_id=row["source_user_id"],
        notion_user_id=row["notion_user_id"],
        source_user_email=row["source_user_email"],
        source_user_name=row["source_user_name"],
        mapping_type=row["mapping_type"],
        confidence=row["confidence"],
        active=row["active"],
        created_at=row["created_at"],
    )


class PostgresUserMappingStore(_PostgresBase):
    """PostgreSQL storage backend for user mappings."""

    async def save_mapping(self, mapping: UserMapping) -> UserMapping:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO user_mappings
                    (id, team_id, source_type, source_user_id, source_user_email,
                     source_user_name, notion_user_id, mapping_type, confidence,
                     active, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                ON CONFLICT (team_id, source_type, source_user_id) DO UPDATE SET
                    source_user_email = EXCLUDED.source_user_email,
                    source_user_name = EXCLUDED.source_user_name,
                    notion_user_id = EXCLUDED.notion_user_id,
                    mapping_type = EXCLUDED.mapping_type,
                    confidence = EXCLUDED.confidence,
                    active = EXCLUDED.active
                RETURNING *
                """,
                mapping.id,
                mapping.team_id,
                mapping.source_type,
                mapping.source_user_id,
                mapping.source_user_email,
                mapping.source_user_name,
                mapping.notion_user_id,
                mapping.mapping_type,
                mapping.confidence,
                mapping.active,
                mapping.created_at,
            )
        return _row_to_mapping(row)

    async def find_mappings(self, team_id: str, source_type: str) -> list[UserMapping]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM user_mappings
                WHERE team_id = $1 AND source_type = $2 AND active
                ORDER BY confidence DESC, created_at
                """,
                team_id,
                source_type,
            )
        return [_row_to_mapping(r) for r in rows]
