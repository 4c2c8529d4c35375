"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

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
        definition TEXT NOT NULL,
        created_at TEXT NOT NULL
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
        context TEXT NOT NULL,
        error_message TEXT,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS step_records (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        step_index INTEGER NOT NULL,
        step_type TEXT NOT NULL,
        status TEXT NOT NULL,
        result TEXT,
        error_message TEXT,
        created_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approval_requests (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        step_record_id TEXT,
        step_id TEXT NOT NULL,
        approvers TEXT NOT NULL,
        mode TEXT NOT NULL,
        status TEXT NOT NULL,
        required_approvals INTEGER NOT NULL,
        current_approvals INTEGER NOT NULL DEFAULT 0,
        current_rejections INTEGER NOT NULL DEFAULT 0,
        expires_at TEXT,
        escalation_user_id TEXT,
        created_at TEXT NOT NULL,
        resolved_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approval_responses (
        id TEXT PRIMARY KEY,
        request_id TEXT NOT NULL,
        approver_id TEXT NOT NULL,
        decision TEXT NOT NULL,
        comment TEXT,
        responded_at TEXT NOT NULL,
        UNIQUE (request_id, approver_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS step_records_execution_idx ON step_records (execution_id)",
    "CREATE INDEX IF NOT EXISTS approval_requests_execution_idx ON approval_requests (execution_id)",
)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist engine state using SQLite.

    A single connection in autocommit mode is shared across worker threads;
    ``_lock`` serialises access and multi-statement writes open explicit
    transactions.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            for statement in _SCHEMA:
                cur.execute(statement)

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    async def _insert(self, spec: TableSpec, record: Any, replace: bool = False) -> None:
        row = encode_record(spec, record)
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        placeholders = ", ".join("?" for _ in row)
        await asyncio.to_thread(
            self._execute,
            f"{verb} INTO {spec.name} ({', '.join(row)}) VALUES ({placeholders})",
            *row.values(),
        )

    async def _get(self, spec: TableSpec, record_id: str) -> Any:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT * FROM {spec.name} WHERE id = ?", record_id
        )
        return decode_row(spec, row) if row else None

    def _update_sql(self, spec: TableSpec, changes: dict[str, Any]) -> tuple[str, list]:
        encoded = encode_changes(spec, changes)
        assignments = ", ".join(f"{column} = ?" for column in encoded)
        return f"UPDATE {spec.name} SET {assignments}", list(encoded.values())

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: WorkflowRecord) -> None:
        await self._insert(WORKFLOWS, workflow, replace=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        return await self._get(WORKFLOWS, workflow_id)

    async def list_workflows(self) -> list[WorkflowRecord]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM workflows ORDER BY created_at"
        )
        return decode_rows(WORKFLOWS, rows)

    # ------------------------------------------------------------------
    # Executions
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
        query, params = self._update_sql(EXECUTIONS, changes)
        query += " WHERE id = ?"
        params.append(execution_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(ExecutionStatus(expected_status).value)
        updated = await asyncio.to_thread(self._execute, query, *params)
        return updated > 0

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[ExecutionRecord]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM executions ORDER BY started_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM executions WHERE status = ? ORDER BY started_at",
                ExecutionStatus(status).value,
            )
        return decode_rows(EXECUTIONS, rows)

    # ------------------------------------------------------------------
    # Step records
    async def create_step_record(self, record: StepRecord) -> None:
        await self._insert(STEP_RECORDS, record)

    async def update_step_record(self, record_id: str, **changes: Any) -> bool:
        query, params = self._update_sql(STEP_RECORDS, changes)
        terminal = [s.value for s in TERMINAL_STEP_STATUSES]
        query += f" WHERE id = ? AND status NOT IN ({', '.join('?' for _ in terminal)})"
        params.extend([record_id, *terminal])
        updated = await asyncio.to_thread(self._execute, query, *params)
        return updated > 0

    async def get_step_record(self, record_id: str) -> StepRecord | None:
        return await self._get(STEP_RECORDS, record_id)

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_records WHERE execution_id = ? ORDER BY rowid",
            execution_id,
        )
        return decode_rows(STEP_RECORDS, rows)

    # ------------------------------------------------------------------
    # Approvals
    async def create_approval_request(self, request: ApprovalRequest) -> None:
        await self._insert(APPROVAL_REQUESTS, request)

    async def get_approval_request(self, request_id: str) -> ApprovalRequest | None:
        return await self._get(APPROVAL_REQUESTS, request_id)

    async def list_approval_requests(
        self, execution_id: Optional[str] = None
    ) -> list[ApprovalRequest]:
        if execution_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM approval_requests ORDER BY rowid"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM approval_requests WHERE execution_id = ? ORDER BY rowid",
                execution_id,
            )
        return decode_rows(APPROVAL_REQUESTS, rows)

    def _add_response_sync(self, response: ApprovalResponse) -> sqlite3.Row:
        counter = (
            "current_approvals"
            if response.decision == ApprovalDecision.APPROVED
            else "current_rejections"
        )
        row = encode_record(APPROVAL_RESPONSES, response)
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute(
                    "SELECT status FROM approval_requests WHERE id = ?",
                    (response.request_id,),
                )
                current = cur.fetchone()
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
                    cur.execute(
                        f"INSERT INTO approval_responses ({', '.join(row)}) "
                        f"VALUES ({', '.join('?' for _ in row)})",
                        tuple(row.values()),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ApprovalError(
                        f"Approver {response.approver_id} already responded to "
                        f"request {response.request_id}"
                    ) from exc
                cur.execute(
                    f"UPDATE approval_requests SET {counter} = {counter} + 1 WHERE id = ?",
                    (response.request_id,),
                )
                cur.execute(
                    "SELECT * FROM approval_requests WHERE id = ?",
                    (response.request_id,),
                )
                updated = cur.fetchone()
                cur.execute("COMMIT")
                return updated
            except BaseException:
                cur.execute("ROLLBACK")
                raise

    async def add_approval_response(self, response: ApprovalResponse) -> ApprovalRequest:
        row = await asyncio.to_thread(self._add_response_sync, response)
        return decode_row(APPROVAL_REQUESTS, row)

    async def resolve_approval_request(
        self, request_id: str, status: ApprovalStatus
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE approval_requests SET status = ?, resolved_at = ? "
            "WHERE id = ? AND status = ?",
            ApprovalStatus(status).value,
            utcnow().isoformat(),
            request_id,
            ApprovalStatus.PENDING.value,
        )
        return updated > 0

    async def list_approval_responses(self, request_id: str) -> list[ApprovalResponse]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM approval_responses WHERE request_id = ? ORDER BY rowid",
            request_id,
        )
        return decode_rows(APPROVAL_RESPONSES, rows)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
