"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg

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


def _json(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflows and executions using PostgreSQL."""

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
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                name TEXT NOT NULL,
                description TEXT,
                enabled BOOLEAN NOT NULL,
                status TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_spec JSONB NOT NULL,
                steps JSONB NOT NULL,
                total_runs INTEGER NOT NULL DEFAULT 0,
                successful_runs INTEGER NOT NULL DEFAULT 0,
                last_run_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                trigger_type TEXT,
                status TEXT NOT NULL,
                trigger_data JSONB,
                subscriber_email TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                heartbeat_at TIMESTAMPTZ NOT NULL,
                error TEXT,
                test_mode BOOLEAN NOT NULL DEFAULT FALSE
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_logs (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                step_type TEXT NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                output JSONB,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ
            )
            """
        )

    @staticmethod
    def _row_to_workflow(r: asyncpg.Record) -> Workflow:
        return Workflow(
            id=r["id"],
            user_id=r["user_id"],
            name=r["name"],
            description=r["description"],
            enabled=r["enabled"],
            status=r["status"],
            trigger=_json(r["trigger_spec"]),
            steps=_json(r["steps"]),
            total_runs=r["total_runs"],
            successful_runs=r["successful_runs"],
            last_run_at=r["last_run_at"],
            created_at=r["created_at"],
        )

    @staticmethod
    def _row_to_execution(r: asyncpg.Record) -> Execution:
        return Execution(
            id=r["id"],
            workflow_id=r["workflow_id"],
            trigger_type=r["trigger_type"],
            status=r["status"],
            trigger_data=_json(r["trigger_data"]) or {},
            subscriber_email=r["subscriber_email"],
            started_at=r["started_at"],
            completed_at=r["completed_at"],
            heartbeat_at=r["heartbeat_at"],
            error=r["error"],
            test_mode=r["test_mode"],
        )

    @staticmethod
    def _row_to_step_log(r: asyncpg.Record) -> StepLog:
        return StepLog(
            id=r["id"],
            execution_id=r["execution_id"],
            step_id=r["step_id"],
            step_order=r["step_order"],
            step_type=r["step_type"],
            status=r["status"],
            input=_json(r["input"]) or {},
            output=_json(r["output"]),
            error=r["error"],
            attempts=r["attempts"],
            started_at=r["started_at"],
            completed_at=r["completed_at"],
        )

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflows (
                    id, user_id, name, description, enabled, status, trigger_type,
                    trigger_spec, steps, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (id) DO UPDATE SET
                    user_id = EXCLUDED.user_id,
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    enabled = EXCLUDED.enabled,
                    status = EXCLUDED.status,
                    trigger_type = EXCLUDED.trigger_type,
                    trigger_spec = EXCLUDED.trigger_spec,
                    steps = EXCLUDED.steps
                """,
                workflow.id,
                workflow.user_id,
                workflow.name,
                workflow.description,
                workflow.enabled,
                workflow.status.value,
                workflow.trigger.trigger_type.value,
                workflow.trigger.model_dump_json(),
                json.dumps([s.model_dump(mode="json") for s in workflow.steps]),
                workflow.created_at,
            )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        return self._row_to_workflow(row) if row else None

    async def list_workflows(self) -> list[Workflow]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows ORDER BY created_at"
            )
        finally:
            await conn.close()
        return [self._row_to_workflow(r) for r in rows]

    async def find_workflows_for_trigger(
        self, trigger_type: TriggerType
    ) -> list[Workflow]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_WORKFLOW_COLUMNS} FROM workflows
                WHERE enabled AND status = 'ACTIVE' AND trigger_type = $1
                """,
                TriggerType(trigger_type).value,
            )
        finally:
            await conn.close()
        return [self._row_to_workflow(r) for r in rows]

    async def record_run(
        self, workflow_id: str, successful: bool, ran_at: datetime | None = None
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE workflows
                SET total_runs = total_runs + 1,
                    successful_runs = successful_runs + $2,
                    last_run_at = $3
                WHERE id = $1
                """,
                workflow_id,
                1 if successful else 0,
                ran_at or utcnow(),
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: Execution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"""
                INSERT INTO executions ({_EXECUTION_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                """,
                execution.id,
                execution.workflow_id,
                execution.trigger_type,
                execution.status.value,
                json.dumps(execution.trigger_data, default=str),
                execution.subscriber_email,
                execution.started_at,
                execution.completed_at,
                execution.heartbeat_at,
                execution.error,
                execution.test_mode,
            )
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> Execution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        return self._row_to_execution(row) if row else None

    async def list_executions(self, workflow_id: str | None = None) -> list[Execution]:
        conn = await self._connect()
        try:
            if workflow_id is None:
                rows = await conn.fetch(
                    f"SELECT {_EXECUTION_COLUMNS} FROM executions ORDER BY started_at"
                )
            else:
                rows = await conn.fetch(
                    f"""
                    SELECT {_EXECUTION_COLUMNS} FROM executions
                    WHERE workflow_id = $1 ORDER BY started_at
                    """,
                    workflow_id,
                )
        finally:
            await conn.close()
        return [self._row_to_execution(r) for r in rows]

    async def touch_execution(self, execution_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE executions SET heartbeat_at = $1 WHERE id = $2 AND status = 'RUNNING'",
                utcnow(),
                execution_id,
            )
        finally:
            await conn.close()

    async def finalize_execution(
        self, execution_id: str, status: ExecutionStatus, error: str | None = None
    ) -> Execution:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE executions SET status = $1, error = $2, completed_at = $3
                WHERE id = $4 AND status = 'RUNNING'
                RETURNING {_EXECUTION_COLUMNS}
                """,
                ExecutionStatus(status).value,
                error,
                utcnow(),
                execution_id,
            )
        finally:
            await conn.close()
        if row is not None:
            return self._row_to_execution(row)
        current = await self.get_execution(execution_id)
        if current is None:
            raise ExecutionNotFoundError(execution_id)
        raise InvalidTransitionError(
            f"Execution {execution_id} is already {current.status.value}"
        )

    async def list_stale_executions(self, older_than: datetime) -> list[Execution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_EXECUTION_COLUMNS} FROM executions
                WHERE status = 'RUNNING' AND heartbeat_at < $1
                ORDER BY started_at
                """,
                older_than,
            )
        finally:
            await conn.close()
        return [self._row_to_execution(r) for r in rows]

    # ------------------------------------------------------------------
    # Step logs
    async def create_step_log(self, step_log: StepLog) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"""
                INSERT INTO step_logs ({_STEP_LOG_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                step_log.id,
                step_log.execution_id,
                step_log.step_id,
                step_log.step_order,
                step_log.step_type,
                step_log.status.value,
                json.dumps(step_log.input, default=str),
                json.dumps(step_log.output, default=str)
                if step_log.output is not None
                else None,
                step_log.error,
                step_log.attempts,
                step_log.started_at,
                step_log.completed_at,
            )
        finally:
            await conn.close()

    async def complete_step_log(
        self, step_log_id: str, output: dict, attempts: int = 1
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE step_logs SET status = $1, output = $2, attempts = $3, completed_at = $4
                WHERE id = $5 AND status = 'RUNNING'
                """,
                StepLogStatus.COMPLETED.value,
                json.dumps(output or {}, default=str),
                attempts,
                utcnow(),
                step_log_id,
            )
        finally:
            await conn.close()

    async def fail_step_log(self, step_log_id: str, error: str, attempts: int = 1) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE step_logs SET status = $1, error = $2, attempts = $3, completed_at = $4
                WHERE id = $5 AND status = 'RUNNING'
                """,
                StepLogStatus.FAILED.value,
                error,
                attempts,
                utcnow(),
                step_log_id,
            )
        finally:
            await conn.close()

    async def list_step_logs(self, execution_id: str) -> list[StepLog]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_STEP_LOG_COLUMNS} FROM step_logs
                WHERE execution_id = $1 ORDER BY step_order, started_at
                """,
                execution_id,
            )
        finally:
            await conn.close()
        return [self._row_to_step_log(r) for r in rows]

    async def get_workflow_analytics(self, workflow_id: str) -> WorkflowAnalytics | None:
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            return None
        return WorkflowAnalytics.from_executions(
            workflow, await self.list_executions(workflow_id)
        )
