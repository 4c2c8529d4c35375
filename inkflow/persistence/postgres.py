"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from typing import Any, Optional

import asyncpg

from ..errors import ApprovalError
from ..state_machine import ExecutionStatus
from .models import (
    TERMINAL_STEP_STATUSES,
    ApprovalDecision,
    ApprovalRequest,
    ApprovalResponse,
    ApprovalStatus,
    ExecutionRecord,
    StepRecord,
    WorkflowRecord,
    utcnow,
)
from .repository import WorkflowRepository
from .serialization import (
    APPROVAL_REQUESTS,
    APPROVAL_RESPONSES,
    EXECUTIONS,
    STEP_RECORDS,
    WORKFLOWS,
    TableSpec,
    decode_row,
    decode_rows,
    encode_changes,
    encode_record,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        definition JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS executions (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        document_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL,
        current_step_index INTEGER NOT NULL,
        context JSONB NOT NULL,
        error_message TEXT,
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS step_records (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        step_index INTEGER NOT NULL,
        step_type TEXT NOT NULL,
        status TEXT NOT NULL,
        result JSONB,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approval_requests (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        step_record_id TEXT,
        step_id TEXT NOT NULL,
        approvers JSONB NOT NULL,
        mode TEXT NOT NULL,
        status TEXT NOT NULL,
        required_approvals INTEGER NOT NULL,
        current_approvals INTEGER NOT NULL DEFAULT 0,
        current_rejections INTEGER NOT NULL DEFAULT 0,
        expires_at TIMESTAMPTZ,
        escalation_user_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        resolved_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approval_responses (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        request_id TEXT NOT NULL,
        approver_id TEXT NOT NULL,
        decision TEXT NOT NULL,
        comment TEXT,
        responded_at TIMESTAMPTZ NOT NULL,
        UNIQUE (request_id, approver_id)
    )
    """,
)


def _placeholders(count: int, start: int = 1) -> str:
    return ", ".join(f"${i}" for i in range(start, start + count))


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist engine state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in _SCHEMA:
            await conn.execute(statement)

    # ------------------------------------------------------------------
    async def _insert(self, spec: TableSpec, record: Any, upsert: bool = False) -> None:
        row = encode_record(spec, record, native_datetimes=True)
        query = (
            f"INSERT INTO {spec.name} ({', '.join(row)}) "
            f"VALUES ({_placeholders(len(row))})"
        )
        if upsert:
            updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in row if c != "id")
            query += f" ON CONFLICT (id) DO UPDATE SET {updates}"
        conn = await self._connect()
        try:
            await conn.execute(query, *row.values())
        finally:
            await conn.close()

    async def _get(self, spec: TableSpec, record_id: str) -> Any:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT * FROM {spec.name} WHERE id = $1", record_id
            )
        finally:
            await conn.close()
        return decode_row(spec, row) if row else None

    async def _fetch(self, spec: TableSpec, query: str, *params: Any) -> list:
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return decode_rows(spec, rows)

    async def _update(
        self, spec: TableSpec, changes: dict[str, Any], where: str, *params: Any
    ) -> bool:
        encoded = encode_changes(spec, changes, native_datetimes=True)
        assignments = ", ".join(
            f"{column} = ${i}" for i, column in enumerate(encoded, start=1)
        )
        offset = len(encoded)
        # renumber the WHERE placeholders after the SET values
        for i in range(len(params), 0, -1):
            where = where.replace(f"${i}", f"${i + offset}")
        conn = await self._connect()
        try:
            status = await conn.execute(
                f"UPDATE {spec.name} SET {assignments} WHERE {where}",
                *encoded.values(),
                *params,
            )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return int(status.split()[-1]) > 0

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowRecord) -> None:
        await self._insert(WORKFLOWS, workflow, upsert=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        return await self._get(WORKFLOWS, workflow_id)

    async def list_workflows(self) -> list[WorkflowRecord]:
        return await self._fetch(WORKFLOWS, "SELECT * FROM workflows ORDER BY created_at")

    # ------------------------------------------------------------------
    async def create_execution(self, execution: ExecutionRecord) -> None:
        await self._insert(EXECUTIONS, execution)

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        return await self._get(EXECUTIONS, execution_id)

    async def update_execution(
        self,
        execution_id: str,
        expected_status: Optional[ExecutionStatus] = None,
        **changes: Any,
    ) -> bool:
        changes.setdefault("updated_at", utcnow())
        if expected_status is None:
            return await self._update(EXECUTIONS, changes, "id = $1", execution_id)
        return await self._update(
            EXECUTIONS,
            changes,
            "id = $1 AND status = $2",
            execution_id,
            ExecutionStatus(expected_status).value,
        )

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[ExecutionRecord]:
        if status is None:
            return await self._fetch(
                EXECUTIONS, "SELECT * FROM executions ORDER BY started_at"
            )
        return await self._fetch(
            EXECUTIONS,
            "SELECT * FROM executions WHERE status = $1 ORDER BY started_at",
            ExecutionStatus(status).value,
        )

    # ------------------------------------------------------------------
    async def create_step_record(self, record: StepRecord) -> None:
        await self._insert(STEP_RECORDS, record)

    async def update_step_record(self, record_id: str, **changes: Any) -> bool:
        terminal = [s.value for s in TERMINAL_STEP_STATUSES]
        return await self._update(
            STEP_RECORDS,
            changes,
            "id = $1 AND NOT (status = ANY($2::text[]))",
            record_id,
            terminal,
        )

    async def get_step_record(self, record_id: str) -> StepRecord | None:
        return await self._get(STEP_RECORDS, record_id)

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        return await self._fetch(
            STEP_RECORDS,
            "SELECT * FROM step_records WHERE execution_id = $1 ORDER BY seq",
            execution_id,
        )

    # ------------------------------------------------------------------
    async def create_approval_request(self, request: ApprovalRequest) -> None:
        await self._insert(APPROVAL_REQUESTS, request)

    async def get_approval_request(self, request_id: str) -> ApprovalRequest | None:
        return await self._get(APPROVAL_REQUESTS, request_id)

    async def list_approval_requests(
        self, execution_id: Optional[str] = None
    ) -> list[ApprovalRequest]:
        if execution_id is None:
            return await self._fetch(
                APPROVAL_REQUESTS, "SELECT * FROM approval_requests ORDER BY seq"
            )
        return await self._fetch(
            APPROVAL_REQUESTS,
            "SELECT * FROM approval_requests WHERE execution_id = $1 ORDER BY seq",
            execution_id,
        )

    async def add_approval_response(self, response: ApprovalResponse) -> ApprovalRequest:
        counter = (
            "current_approvals"
            if response.decision == ApprovalDecision.APPROVED
            else "current_rejections"
        )
        row = encode_record(APPROVAL_RESPONSES, response, native_datetimes=True)
        conn = await self._connect()
        try:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "SELECT status FROM approval_requests WHERE id = $1 FOR UPDATE",
                    response.request_id,
                )
                if current is None:
                    raise ApprovalError(
                        f"Approval request {response.request_id} not found"
                    )
                if current["status"] != ApprovalStatus.PENDING.value:
                    raise ApprovalError(
                        f"Approval request {response.request_id} is already "
                        f"{current['status']}"
                    )
                try:
                    await conn.execute(
                        f"INSERT INTO approval_responses ({', '.join(row)}) "
                        f"VALUES ({_placeholders(len(row))})",
                        *row.values(),
                    )
                except asyncpg.UniqueViolationError as exc:
                    raise ApprovalError(
                        f"Approver {response.approver_id} already responded to "
                        f"request {response.request_id}"
                    ) from exc
                updated = await conn.fetchrow(
                    f"UPDATE approval_requests SET {counter} = {counter} + 1 "
                    "WHERE id = $1 RETURNING *",
                    response.request_id,
                )
        finally:
            await conn.close()
        return decode_row(APPROVAL_REQUESTS, updated)

    async def resolve_approval_request(
        self, request_id: str, status: ApprovalStatus
    ) -> bool:
        return await self._update(
            APPROVAL_REQUESTS,
            {"status": ApprovalStatus(status), "resolved_at": utcnow()},
            "id = $1 AND status = $2",
            request_id,
            ApprovalStatus.PENDING.value,
        )

    async def list_approval_responses(self, request_id: str) -> list[ApprovalResponse]:
        return await self._fetch(
            APPROVAL_RESPONSES,
            "SELECT * FROM approval_responses WHERE request_id = $1 ORDER BY seq",
            request_id,
        )
