"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from ..contracts import ExecutionStatus, StepLogStatus, TriggerType, Workflow, utcnow
from ..exceptions import ExecutionNotFoundError, InvalidTransitionError
from .models import Execution, StepLog, WorkflowAnalytics
from .repository import WorkflowRepository

_WORKFLOW_COLUMNS = (
    "id, user_id, name, description, enabled, status, trigger_spec, steps, "
    "total_runs, successful_runs, last_run_at, created_at"
)
_EXECUTION_COLUMNS = (
    "id, workflow_id, trigger_type, status, trigger_data, subscriber_email, "
    "started_at, completed_at, heartbeat_at, error, test_mode"
)
_STEP_LOG_COLUMNS = (
    "id, execution_id, step_id, step_order, step_type, status, input, output, "
    "error, attempts, started_at, completed_at"
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat(timespec="microseconds") if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflows and executions using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                name TEXT NOT NULL,
                description TEXT,
                enabled INTEGER NOT NULL,
                status TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_spec TEXT NOT NULL,
                steps TEXT NOT NULL,
                total_runs INTEGER NOT NULL DEFAULT 0,
                successful_runs INTEGER NOT NULL DEFAULT 0,
                last_run_at TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                trigger_type TEXT,
                status TEXT NOT NULL,
                trigger_data TEXT,
                subscriber_email TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                heartbeat_at TEXT NOT NULL,
                error TEXT,
                test_mode INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_logs (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                step_type TEXT NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflows_trigger ON workflows (trigger_type)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_step_logs_execution ON step_logs (execution_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    # Calls arrive from worker threads; one connection, one statement at a time.
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
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

    @staticmethod
    def _row_to_workflow(row: sqlite3.Row) -> Workflow:
        return Workflow(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            enabled=bool(row["enabled"]),
            status=row["status"],
            trigger=json.loads(row["trigger_spec"]),
            steps=json.loads(row["steps"]),
            total_runs=row["total_runs"],
            successful_runs=row["successful_runs"],
            last_run_at=row["last_run_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            trigger_type=row["trigger_type"],
            status=row["status"],
            trigger_data=json.loads(row["trigger_data"]) if row["trigger_data"] else {},
            subscriber_email=row["subscriber_email"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            heartbeat_at=row["heartbeat_at"],
            error=row["error"],
            test_mode=bool(row["test_mode"]),
        )

    @staticmethod
    def _row_to_step_log(row: sqlite3.Row) -> StepLog:
        return StepLog(
            id=row["id"],
            execution_id=row["execution_id"],
            step_id=row["step_id"],
            step_order=row["step_order"],
            step_type=row["step_type"],
            status=row["status"],
            input=json.loads(row["input"]) if row["input"] else {},
            output=json.loads(row["output"]) if row["output"] else None,
            error=row["error"],
            attempts=row["attempts"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (
                id, user_id, name, description, enabled, status, trigger_type,
                trigger_spec, steps, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                user_id = excluded.user_id,
                name = excluded.name,
                description = excluded.description,
                enabled = excluded.enabled,
                status = excluded.status,
                trigger_type = excluded.trigger_type,
                trigger_spec = excluded.trigger_spec,
                steps = excluded.steps
            """,
            workflow.id,
            workflow.user_id,
            workflow.name,
            workflow.description,
            int(workflow.enabled),
            workflow.status.value,
            workflow.trigger.trigger_type.value,
            workflow.trigger.model_dump_json(),
            json.dumps([s.model_dump(mode="json") for s in workflow.steps]),
            _ts(workflow.created_at),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = ?",
            workflow_id,
        )
        return self._row_to_workflow(row) if row else None

    async def list_workflows(self) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows ORDER BY created_at",
        )
        return [self._row_to_workflow(r) for r in rows]

    async def find_workflows_for_trigger(
        self, trigger_type: TriggerType
    ) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_WORKFLOW_COLUMNS} FROM workflows
            WHERE enabled = 1 AND status = 'ACTIVE' AND trigger_type = ?
            """,
            TriggerType(trigger_type).value,
        )
        return [self._row_to_workflow(r) for r in rows]

    async def record_run(
        self, workflow_id: str, successful: bool, ran_at: datetime | None = None
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflows
            SET total_runs = total_runs + 1,
                successful_runs = successful_runs + ?,
                last_run_at = ?
            WHERE id = ?
            """,
            1 if successful else 0,
            _ts(ran_at or utcnow()),
            workflow_id,
        )

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: Execution) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO executions ({_EXECUTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            execution.id,
            execution.workflow_id,
            execution.trigger_type,
            execution.status.value,
            json.dumps(execution.trigger_data, default=str),
            execution.subscriber_email,
            _ts(execution.started_at),
            _ts(execution.completed_at),
            _ts(execution.heartbeat_at),
            execution.error,
            int(execution.test_mode),
        )

    async def get_execution(self, execution_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = ?",
            execution_id,
        )
        return self._row_to_execution(row) if row else None

    async def list_executions(self, workflow_id: str | None = None) -> list[Execution]:
        if workflow_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_EXECUTION_COLUMNS} FROM executions ORDER BY started_at",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE workflow_id = ? ORDER BY started_at",
                workflow_id,
            )
        return [self._row_to_execution(r) for r in rows]

    async def touch_execution(self, execution_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE executions SET heartbeat_at = ? WHERE id = ? AND status = 'RUNNING'",
            _ts(utcnow()),
            execution_id,
        )

    async def finalize_execution(
        self, execution_id: str, status: ExecutionStatus, error: str | None = None
    ) -> Execution:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE executions SET status = ?, error = ?, completed_at = ?
            WHERE id = ? AND status = 'RUNNING'
            """,
            ExecutionStatus(status).value,
            error,
            _ts(utcnow()),
            execution_id,
        )
        execution = await self.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        if not updated:
            raise InvalidTransitionError(
                f"Execution {execution_id} is already {execution.status.value}"
            )
        return execution

    async def list_stale_executions(self, older_than: datetime) -> list[Execution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_EXECUTION_COLUMNS} FROM executions
            WHERE status = 'RUNNING' AND heartbeat_at < ?
            ORDER BY started_at
            """,
            _ts(older_than),
        )
        return [self._row_to_execution(r) for r in rows]

    # ------------------------------------------------------------------
    # Step logs
    async def create_step_log(self, step_log: StepLog) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO step_logs ({_STEP_LOG_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            step_log.id,
            step_log.execution_id,
            step_log.step_id,
            step_log.step_order,
            step_log.step_type,
            step_log.status.value,
            json.dumps(step_log.input, default=str),
            json.dumps(step_log.output, default=str) if step_log.output is not None else None,
            step_log.error,
            step_log.attempts,
            _ts(step_log.started_at),
            _ts(step_log.completed_at),
        )

    async def complete_step_log(
        self, step_log_id: str, output: dict, attempts: int = 1
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_logs SET status = ?, output = ?, attempts = ?, completed_at = ?
            WHERE id = ? AND status = 'RUNNING'
            """,
            StepLogStatus.COMPLETED.value,
            json.dumps(output or {}, default=str),
            attempts,
            _ts(utcnow()),
            step_log_id,
        )

    async def fail_step_log(self, step_log_id: str, error: str, attempts: int = 1) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_logs SET status = ?, error = ?, attempts = ?, completed_at = ?
            WHERE id = ? AND status = 'RUNNING'
            """,
            StepLogStatus.FAILED.value,
            error,
            attempts,
            _ts(utcnow()),
            step_log_id,
        )

    async def list_step_logs(self, execution_id: str) -> list[StepLog]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_STEP_LOG_COLUMNS} FROM step_logs
            WHERE execution_id = ? ORDER BY step_order, started_at
            """,
            execution_id,
        )
        return [self._row_to_step_log(r) for r in rows]

    async def get_workflow_analytics(self, workflow_id: str) -> WorkflowAnalytics | None:
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            return None
        return WorkflowAnalytics.from_executions(
            workflow, await self.list_executions(workflow_id)
        )
