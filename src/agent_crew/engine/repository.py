"""Persistent work queue, runner registry and activity log backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_crew.engine.errors import ConfigurationError
from agent_crew.engine.models import (
    PRIORITY_RANK,
    TERMINAL_TASK_STATUSES,
    TERMINAL_TEAM_RUN_STATUSES,
    AgentCreate,
    AgentExecutionView,
    AgentView,
    BillingModel,
    CustomToolCreate,
    CustomToolView,
    DelegationStatus,
    DelegationView,
    ExecutionStatus,
    FailureClass,
    MessageType,
    OutputRouteCreate,
    OutputRouteView,
    RecoverySummary,
    RunnerStatus,
    RunnerView,
    TaskCreate,
    TaskDetails,
    TaskPriority,
    TaskStatus,
    TaskView,
    TeamCreate,
    TeamMessageView,
    TeamMessageWrite,
    TeamMode,
    TeamRunCreate,
    TeamRunDetails,
    TeamRunStatus,
    TeamRunView,
    TeamView,
    TokenUsage,
    UsageRecordWrite,
    WebhookDeliveryWrite,
    parse_team_config,
    truncate_message,
)
from agent_crew.storage.alembic_runner import upgrade_head
from agent_crew.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware, utc_now
from agent_crew.storage.sqlmodel_models import (
    Agent,
    AgentExecution,
    CustomTool,
    Delegation,
    OutputRoute,
    ProviderCredential,
    Runner,
    Task,
    Team,
    TeamMessage,
    TeamRun,
    UsageRecord,
    WebhookDelivery,
)

logger = logging.getLogger(__name__)

RUNNER_LOST_ERROR = "Runner lost before completion."
_ACTIVE_TASK_STATUSES = (TaskStatus.DISPATCHED.value, TaskStatus.RUNNING.value)


class EngineRepository:
    """Queue persistence facade shared by runners, executors and the CLI."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Agents, tools, credentials, teams

    def create_agent(self, *, workspace_id: str, payload: AgentCreate) -> AgentView:
        row = Agent(
            id=str(uuid4()),
            workspace_id=workspace_id,
            name=payload.name,
            description=payload.description,
            provider=payload.provider.strip().lower(),
            model=payload.model.strip(),
            system_prompt=payload.system_prompt,
            temperature=payload.temperature,
            tools_json=json.dumps(list(payload.tools)),
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_agent_view(row)

    def get_agent(self, agent_id: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.get(Agent, agent_id)
            return _to_agent_view(row) if row is not None else None

    def get_agents(self, agent_ids: list[str] | tuple[str, ...]) -> dict[str, AgentView]:
        """Load agents by id; missing ids are absent from the result."""

        if not agent_ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(select(Agent).where(col(Agent.id).in_(list(agent_ids)))).all()
        return {row.id: _to_agent_view(row) for row in rows}

    def list_agents(self, *, workspace_id: str) -> list[AgentView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Agent)
                .where(Agent.workspace_id == workspace_id)
                .order_by(col(Agent.created_at).asc()),
            ).all()
        return [_to_agent_view(row) for row in rows]

    def create_custom_tool(
        self,
        *,
        workspace_id: str,
        payload: CustomToolCreate,
    ) -> CustomToolView:
        row = CustomTool(
            id=str(uuid4()),
            workspace_id=workspace_id,
            name=payload.name,
            description=payload.description,
            parameters_json=json.dumps(payload.parameters, ensure_ascii=False),
            webhook_url=payload.webhook_url,
            webhook_headers_json=json.dumps(payload.webhook_headers, ensure_ascii=False),
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_custom_tool_view(row)

    def list_custom_tools(
        self,
        *,
        workspace_id: str,
        tool_ids: list[str] | None = None,
    ) -> list[CustomToolView]:
        with Session(self.engine) as session:
            statement = select(CustomTool).where(CustomTool.workspace_id == workspace_id)
            if tool_ids is not None:
                if not tool_ids:
                    return []
                statement = statement.where(col(CustomTool.id).in_(tool_ids))
            rows = session.exec(statement.order_by(col(CustomTool.name).asc())).all()
        return [_to_custom_tool_view(row) for row in rows]

    def upsert_provider_credential(
        self,
        *,
        workspace_id: str,
        provider: str,
        encrypted_key: str,
    ) -> None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProviderCredential).where(
                    ProviderCredential.workspace_id == workspace_id,
                    ProviderCredential.provider == provider,
                ),
            ).one_or_none()
            if row is None:
                row = ProviderCredential(
                    id=str(uuid4()),
                    workspace_id=workspace_id,
                    provider=provider,
                    encrypted_key=encrypted_key,
                    created_at=utc_now(),
                )
            else:
                row.encrypted_key = encrypted_key
            session.add(row)
            session.commit()

    def get_encrypted_credential(self, *, workspace_id: str, provider: str) -> str | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProviderCredential).where(
                    ProviderCredential.workspace_id == workspace_id,
                    ProviderCredential.provider == provider,
                ),
            ).one_or_none()
            return row.encrypted_key if row is not None else None

    def create_team(self, *, workspace_id: str, payload: TeamCreate) -> TeamView:
        """Create a team after validating its mode-specific config."""

        parse_team_config(payload.mode, payload.config)
        row = Team(
            id=str(uuid4()),
            workspace_id=workspace_id,
            name=payload.name,
            mode=TeamMode(payload.mode).value,
            config_json=json.dumps(payload.config, ensure_ascii=False),
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_team_view(row)

    def get_team(self, team_id: str) -> TeamView | None:
        with Session(self.engine) as session:
            row = session.get(Team, team_id)
            return _to_team_view(row) if row is not None else None

    # Tasks

    def enqueue_task(self, *, workspace_id: str, payload: TaskCreate) -> TaskView:
        """Create a pending task."""

        now = utc_now()
        row = Task(
            id=payload.task_id or str(uuid4()),
            workspace_id=workspace_id,
            title=payload.title,
            description=payload.description,
            status=TaskStatus.PENDING.value,
            priority=TaskPriority(payload.priority).value,
            assigned_agent_id=payload.assigned_agent_id,
            metadata_json=json.dumps(payload.metadata, ensure_ascii=False),
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        workspace_id: str,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(Task)
                .where(Task.workspace_id == workspace_id)
                .order_by(col(Task.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str, workspace_id: str) -> TaskDetails | None:
        """Return task with its execution records."""

        with Session(self.engine) as session:
            task = session.exec(
                select(Task).where(Task.id == task_id, Task.workspace_id == workspace_id),
            ).one_or_none()
            if task is None:
                return None
            executions = session.exec(
                select(AgentExecution)
                .where(AgentExecution.task_id == task_id)
                .order_by(col(AgentExecution.started_at).asc()),
            ).all()
            return TaskDetails(
                task=_to_task_view(task),
                executions=[_to_execution_view(row) for row in executions],
            )

    def claim_next_task(self, *, runner_id: str) -> TaskView | None:
        """Atomically reserve a runner slot and claim the best pending task.

        The slot reservation is the first write of the transaction, so the candidate
        select runs under the SQLite write lock. With no candidate the reservation is
        rolled back.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                if not _reserve_runner_slot(session, runner_id=runner_id):
                    session.rollback()
                    return None

                candidate = session.exec(
                    select(Task)
                    .where(Task.status == TaskStatus.PENDING.value)
                    .order_by(
                        _priority_order(),
                        col(Task.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    session.rollback()
                    return None

                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.id) == candidate.id,
                        col(Task.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.DISPATCHED.value,
                        claimed_by_runner=runner_id,
                        error=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.commit()
                claimed = session.get(Task, candidate.id)
                if claimed is None:
                    raise RuntimeError(f"Claimed task disappeared: {candidate.id}")
                session.refresh(claimed)
                return _to_task_view(claimed)

    def mark_task_running(self, *, task_id: str, runner_id: str) -> bool:
        """Move an owned task from dispatched to running."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.claimed_by_runner) == runner_id,
                    col(Task.status) == TaskStatus.DISPATCHED.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    started_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def update_task_partial_result(self, *, task_id: str, runner_id: str, result: str) -> bool:
        """Store streamed partial output while the task is still running."""

        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.claimed_by_runner) == runner_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                )
                .values(result=result, updated_at=to_db_datetime(utc_now())),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_task(
        self,
        *,
        task_id: str,
        runner_id: str,
        result: str,
        usage: TokenUsage,
    ) -> bool:
        """Mark an owned running task as completed with usage metadata."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return False
            metadata = _load_json_object(row.metadata_json)
            metadata["usage"] = usage.to_dict()
            update_result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.claimed_by_runner) == runner_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    result=result,
                    error=None,
                    metadata_json=json.dumps(metadata, ensure_ascii=False),
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail_task(
        self,
        *,
        task_id: str,
        runner_id: str,
        error: str,
        failure_class: FailureClass | None = None,
    ) -> bool:
        """Mark an owned, non-terminal task as failed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.claimed_by_runner) == runner_id,
                    col(Task.status).in_(_ACTIVE_TASK_STATUSES),
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    error=error,
                    failure_class=failure_class.value if failure_class else None,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def cancel_task(self, *, task_id: str, workspace_id: str) -> TaskView:
        """Cancel a task that has not reached a terminal state."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(Task).where(Task.id == task_id, Task.workspace_id == workspace_id),
            ).one_or_none()
            if row is None:
                raise RuntimeError(f"Task not found: {task_id}")
            previous = TaskStatus(row.status)
            if previous in TERMINAL_TASK_STATUSES:
                raise RuntimeError(f"Task cannot be cancelled from status={row.status}")

            result = session.exec(
                sa_update(Task)
                .where(col(Task.id) == task_id, col(Task.status) == previous.value)
                .values(
                    status=TaskStatus.CANCELLED.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task_status(self, task_id: str) -> TaskStatus | None:
        with Session(self.engine) as session:
            status = session.exec(select(Task.status).where(Task.id == task_id)).one_or_none()
        return TaskStatus(status) if status is not None else None

    # Agent executions

    def open_execution(self, *, task_id: str, agent_id: str, runner_id: str) -> str:
        execution_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                AgentExecution(
                    id=execution_id,
                    task_id=task_id,
                    agent_id=agent_id,
                    runner_id=runner_id,
                    status=ExecutionStatus.RUNNING.value,
                    started_at=utc_now(),
                ),
            )
            session.commit()
        return execution_id

    def complete_execution(self, *, execution_id: str, result: str, usage: TokenUsage) -> bool:
        return self._close_execution(
            execution_id=execution_id,
            values={
                "status": ExecutionStatus.COMPLETED.value,
                "result": result,
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens,
                "cost_estimate_usd": usage.cost_estimate_usd,
            },
        )

    def fail_execution(self, *, execution_id: str, error: str) -> bool:
        return self._close_execution(
            execution_id=execution_id,
            values={"status": ExecutionStatus.FAILED.value, "error": error},
        )

    def _close_execution(self, *, execution_id: str, values: dict[str, Any]) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentExecution)
                .where(
                    col(AgentExecution.id) == execution_id,
                    col(AgentExecution.status) == ExecutionStatus.RUNNING.value,
                )
                .values(completed_at=to_db_datetime(utc_now()), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Team runs

    def create_team_run(self, *, workspace_id: str, payload: TeamRunCreate) -> TeamRunView:
        """Create a pending team run for an existing team."""

        now = utc_now()
        with Session(self.engine) as session:
            team = session.exec(
                select(Team).where(Team.id == payload.team_id, Team.workspace_id == workspace_id),
            ).one_or_none()
            if team is None:
                raise ConfigurationError(f"Team not found: {payload.team_id}")
            row = TeamRun(
                id=payload.run_id or str(uuid4()),
                team_id=team.id,
                workspace_id=workspace_id,
                status=TeamRunStatus.PENDING.value,
                input_task=payload.input_task,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_team_run_view(row)

    def get_team_run(self, run_id: str) -> TeamRunView | None:
        with Session(self.engine) as session:
            row = session.get(TeamRun, run_id)
            return _to_team_run_view(row) if row is not None else None

    def get_team_run_status(self, run_id: str) -> TeamRunStatus | None:
        with Session(self.engine) as session:
            status = session.exec(
                select(TeamRun.status).where(TeamRun.id == run_id),
            ).one_or_none()
        return TeamRunStatus(status) if status is not None else None

    def list_team_runs(
        self,
        *,
        workspace_id: str,
        status: TeamRunStatus | None = None,
        limit: int = 50,
    ) -> list[TeamRunView]:
        with Session(self.engine) as session:
            statement = (
                select(TeamRun)
                .where(TeamRun.workspace_id == workspace_id)
                .order_by(col(TeamRun.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(TeamRun.status == status.value)
            rows = session.exec(statement).all()
        return [_to_team_run_view(row) for row in rows]

    def get_team_run_details(
        self,
        *,
        run_id: str,
        workspace_id: str,
        after_message_id: int | None = None,
    ) -> TeamRunDetails | None:
        """Return run with activity log (optionally only newer entries) and delegations."""

        with Session(self.engine) as session:
            run = session.exec(
                select(TeamRun).where(TeamRun.id == run_id, TeamRun.workspace_id == workspace_id),
            ).one_or_none()
            if run is None:
                return None
            run_view = _to_team_run_view(run)
        return TeamRunDetails(
            run=run_view,
            messages=self.list_team_messages(run_id=run_id, after_id=after_message_id),
            delegations=self.list_delegations(run_id=run_id),
        )

    def claim_next_team_run(self, *, runner_id: str) -> TeamRunView | None:
        """Atomically reserve a runner slot and claim the oldest pending team run."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                if not _reserve_runner_slot(session, runner_id=runner_id):
                    session.rollback()
                    return None

                candidate = session.exec(
                    select(TeamRun)
                    .where(TeamRun.status == TeamRunStatus.PENDING.value)
                    .order_by(col(TeamRun.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    session.rollback()
                    return None

                result = session.exec(
                    sa_update(TeamRun)
                    .where(
                        col(TeamRun.id) == candidate.id,
                        col(TeamRun.status) == TeamRunStatus.PENDING.value,
                    )
                    .values(
                        status=TeamRunStatus.RUNNING.value,
                        claimed_by_runner=runner_id,
                        started_at=to_db_datetime(now),
                        error_message=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.commit()
                claimed = session.get(TeamRun, candidate.id)
                if claimed is None:
                    raise RuntimeError(f"Claimed team run disappeared: {candidate.id}")
                session.refresh(claimed)
                return _to_team_run_view(claimed)

    def update_team_run_progress(  # noqa: PLR0913
        self,
        *,
        run_id: str,
        runner_id: str,
        current_step_idx: int | None = None,
        tokens_total: int | None = None,
        cost_estimate_usd: float | None = None,
        delegation_depth: int | None = None,
    ) -> bool:
        """Write progress fields of an owned running run; values never decrease."""

        values: dict[str, Any] = {"updated_at": to_db_datetime(utc_now())}
        if current_step_idx is not None:
            values["current_step_idx"] = func.max(
                func.coalesce(TeamRun.current_step_idx, -1),
                current_step_idx,
            )
        if tokens_total is not None:
            values["tokens_total"] = func.max(TeamRun.tokens_total, tokens_total)
        if cost_estimate_usd is not None:
            values["cost_estimate_usd"] = func.max(TeamRun.cost_estimate_usd, cost_estimate_usd)
        if delegation_depth is not None:
            values["delegation_depth"] = func.max(TeamRun.delegation_depth, delegation_depth)

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TeamRun)
                .where(
                    col(TeamRun.id) == run_id,
                    col(TeamRun.claimed_by_runner) == runner_id,
                    col(TeamRun.status) == TeamRunStatus.RUNNING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_team_run(  # noqa: PLR0913
        self,
        *,
        run_id: str,
        runner_id: str,
        output: str,
        usage: TokenUsage,
        current_step_idx: int | None = None,
    ) -> bool:
        """Mark an owned running run as completed."""

        values: dict[str, Any] = {
            "status": TeamRunStatus.COMPLETED.value,
            "output": output,
        }
        if current_step_idx is not None:
            values["current_step_idx"] = current_step_idx
        return self._finish_team_run(
            run_id=run_id,
            runner_id=runner_id,
            usage=usage,
            values=values,
        )

    def fail_team_run(
        self,
        *,
        run_id: str,
        runner_id: str,
        error: str,
        usage: TokenUsage,
        failure_class: FailureClass | None = None,
    ) -> bool:
        """Mark an owned running run as failed, keeping partial token and cost totals."""

        return self._finish_team_run(
            run_id=run_id,
            runner_id=runner_id,
            usage=usage,
            values={
                "status": TeamRunStatus.FAILED.value,
                "error_message": error,
                "failure_class": failure_class.value if failure_class else None,
            },
        )

    def _finish_team_run(
        self,
        *,
        run_id: str,
        runner_id: str,
        usage: TokenUsage,
        values: dict[str, Any],
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TeamRun)
                .where(
                    col(TeamRun.id) == run_id,
                    col(TeamRun.claimed_by_runner) == runner_id,
                    col(TeamRun.status) == TeamRunStatus.RUNNING.value,
                )
                .values(
                    tokens_total=func.max(TeamRun.tokens_total, usage.total_tokens),
                    cost_estimate_usd=func.max(
                        TeamRun.cost_estimate_usd,
                        usage.cost_estimate_usd,
                    ),
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def cancel_team_run(self, *, run_id: str, workspace_id: str) -> TeamRunView:
        """Cancel a team run that has not reached a terminal state."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(TeamRun).where(TeamRun.id == run_id, TeamRun.workspace_id == workspace_id),
            ).one_or_none()
            if row is None:
                raise RuntimeError(f"Team run not found: {run_id}")
            previous = TeamRunStatus(row.status)
            if previous in TERMINAL_TEAM_RUN_STATUSES:
                raise RuntimeError(f"Team run cannot be cancelled from status={row.status}")

            result = session.exec(
                sa_update(TeamRun)
                .where(col(TeamRun.id) == run_id, col(TeamRun.status) == previous.value)
                .values(
                    status=TeamRunStatus.CANCELLED.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Team run state changed concurrently while cancelling; "
                    f"please retry command (run_id={run_id}).",
                )
            session.add(
                _message_row(
                    run_id=run_id,
                    message=TeamMessageWrite(
                        message_type=MessageType.SYSTEM,
                        content="Run cancelled by operator.",
                    ),
                ),
            )
            session.commit()
            session.refresh(row)
            return _to_team_run_view(row)

    # Activity log

    def add_team_message(
        self,
        *,
        run_id: str,
        message: TeamMessageWrite,
        runner_id: str | None = None,
    ) -> int | None:
        """Append one activity log entry.

        With `runner_id` the entry is written only while that runner owns the running run;
        otherwise nothing is written and `None` is returned.
        """

        with Session(self.engine) as session:
            if runner_id is not None and not _touch_owned_run(
                session,
                run_id=run_id,
                runner_id=runner_id,
            ):
                session.rollback()
                return None
            row = _message_row(run_id=run_id, message=message)
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.id or 0

    def list_team_messages(
        self,
        *,
        run_id: str,
        after_id: int | None = None,
        message_type: MessageType | None = None,
    ) -> list[TeamMessageView]:
        with Session(self.engine) as session:
            statement = select(TeamMessage).where(TeamMessage.run_id == run_id)
            if after_id is not None:
                statement = statement.where(col(TeamMessage.id) > after_id)
            if message_type is not None:
                statement = statement.where(TeamMessage.message_type == message_type.value)
            rows = session.exec(statement.order_by(col(TeamMessage.id).asc())).all()
        return [_to_message_view(row) for row in rows]

    # Delegations

    def create_delegation(
        self,
        *,
        run_id: str,
        worker_agent_id: str,
        instruction: str,
        runner_id: str | None = None,
    ) -> DelegationView | None:
        row = Delegation(
            id=str(uuid4()),
            run_id=run_id,
            worker_agent_id=worker_agent_id,
            instruction=instruction,
            status=DelegationStatus.RUNNING.value,
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            if runner_id is not None and not _touch_owned_run(
                session,
                run_id=run_id,
                runner_id=runner_id,
            ):
                session.rollback()
                return None
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_delegation_view(row)

    def get_delegation(self, *, delegation_id: str, run_id: str) -> DelegationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Delegation).where(
                    Delegation.id == delegation_id,
                    Delegation.run_id == run_id,
                ),
            ).one_or_none()
            return _to_delegation_view(row) if row is not None else None

    def list_delegations(self, *, run_id: str) -> list[DelegationView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Delegation)
                .where(Delegation.run_id == run_id)
                .order_by(col(Delegation.created_at).asc()),
            ).all()
        return [_to_delegation_view(row) for row in rows]

    def complete_delegation(self, *, delegation_id: str, worker_output: str) -> None:
        self._update_delegation(
            delegation_id,
            status=DelegationStatus.COMPLETED.value,
            worker_output=worker_output,
            completed_at=to_db_datetime(utc_now()),
        )

    def fail_delegation(self, *, delegation_id: str, error: str) -> None:
        self._update_delegation(
            delegation_id,
            status=DelegationStatus.FAILED.value,
            worker_output=f"Error: {error}",
            completed_at=to_db_datetime(utc_now()),
        )

    def request_delegation_revision(self, *, delegation_id: str, feedback: str) -> None:
        """Record revision feedback and bump the revision counter."""

        self._update_delegation(
            delegation_id,
            status=DelegationStatus.REVISION_REQUESTED.value,
            revision_feedback=feedback,
            revision_count=Delegation.revision_count + 1,
        )

    def accept_delegation(self, *, delegation_id: str, quality_score: float) -> None:
        self._update_delegation(
            delegation_id,
            status=DelegationStatus.COMPLETED.value,
            accepted=True,
            quality_score=quality_score,
        )

    def _update_delegation(self, delegation_id: str, **values: Any) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Delegation).where(col(Delegation.id) == delegation_id).values(**values),
            )
            session.commit()

    # Runners

    def register_runner(self, *, instance_name: str, max_concurrency: int) -> RunnerView:
        now = utc_now()
        row = Runner(
            id=str(uuid4()),
            instance_name=instance_name,
            status=RunnerStatus.ACTIVE.value,
            max_concurrency=max_concurrency,
            current_load=0,
            last_heartbeat=now,
            started_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_runner_view(row)

    def heartbeat_runner(self, *, runner_id: str) -> bool:
        """Refresh runner liveness; a runner already marked dead stays dead."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Runner)
                .where(
                    col(Runner.id) == runner_id,
                    col(Runner.status) == RunnerStatus.ACTIVE.value,
                )
                .values(last_heartbeat=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def reactivate_runner(self, *, runner_id: str) -> bool:
        """Bring a runner marked dead back to active with a fresh heartbeat.

        Claims the sweep already requeued stay requeued; in-flight work of this runner
        notices the lost ownership on its next write and releases its slot.
        """

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Runner)
                .where(
                    col(Runner.id) == runner_id,
                    col(Runner.status) == RunnerStatus.DEAD.value,
                )
                .values(
                    status=RunnerStatus.ACTIVE.value,
                    last_heartbeat=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def mark_runner_dead(self, *, runner_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Runner)
                .where(col(Runner.id) == runner_id)
                .values(status=RunnerStatus.DEAD.value),
            )
            session.commit()
            return result.rowcount == 1

    def delete_runner(self, *, runner_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(Runner).where(col(Runner.id) == runner_id))
            session.commit()

    def get_runner(self, runner_id: str) -> RunnerView | None:
        with Session(self.engine) as session:
            row = session.get(Runner, runner_id)
            return _to_runner_view(row) if row is not None else None

    def list_runners(self) -> list[RunnerView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Runner).order_by(col(Runner.started_at).asc())).all()
        return [_to_runner_view(row) for row in rows]

    def release_runner_slot(self, *, runner_id: str) -> None:
        """Return one capacity slot after a unit of work finishes."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(Runner)
                .where(col(Runner.id) == runner_id)
                .values(current_load=func.max(Runner.current_load - 1, 0)),
            )
            session.commit()

    def mark_stale_runners_dead(self, *, dead_after: timedelta) -> int:
        """Mark active runners whose heartbeat is older than `dead_after` as dead."""

        cutoff = to_db_datetime(utc_now() - dead_after)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Runner)
                .where(
                    col(Runner.status) == RunnerStatus.ACTIVE.value,
                    col(Runner.last_heartbeat) < cutoff,
                )
                .values(status=RunnerStatus.DEAD.value),
            )
            session.commit()
            return result.rowcount or 0

    def recover_stale_claims(self) -> RecoverySummary:
        """Requeue work owned by dead or vanished runners.

        Tasks in dispatched/running and team runs in running return to pending with the
        owner cleared. Open execution records of requeued tasks are failed, and requeued
        team runs get a system message counting the recovery. Repeated calls are no-ops.
        """

        summary = RecoverySummary()
        now = utc_now()
        live_runner_ids = select(Runner.id).where(Runner.status == RunnerStatus.ACTIVE.value)
        with Session(self.engine) as session:
            stale_tasks = session.exec(
                select(Task).where(
                    col(Task.status).in_(_ACTIVE_TASK_STATUSES),
                    col(Task.claimed_by_runner).is_not(None),
                    col(Task.claimed_by_runner).not_in(live_runner_ids),
                ),
            ).all()
            for task in stale_tasks:
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.id) == task.id,
                        col(Task.status) == task.status,
                        col(Task.claimed_by_runner) == task.claimed_by_runner,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        claimed_by_runner=None,
                        started_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                summary.tasks_requeued += 1
                failed = session.exec(
                    sa_update(AgentExecution)
                    .where(
                        col(AgentExecution.task_id) == task.id,
                        col(AgentExecution.status) == ExecutionStatus.RUNNING.value,
                    )
                    .values(
                        status=ExecutionStatus.FAILED.value,
                        error=RUNNER_LOST_ERROR,
                        completed_at=to_db_datetime(now),
                    ),
                )
                summary.executions_failed += failed.rowcount or 0
                logger.info(
                    "Requeued task %s from lost runner %s",
                    task.id,
                    task.claimed_by_runner,
                )

            stale_runs = session.exec(
                select(TeamRun).where(
                    TeamRun.status == TeamRunStatus.RUNNING.value,
                    col(TeamRun.claimed_by_runner).is_not(None),
                    col(TeamRun.claimed_by_runner).not_in(live_runner_ids),
                ),
            ).all()
            for run in stale_runs:
                result = session.exec(
                    sa_update(TeamRun)
                    .where(
                        col(TeamRun.id) == run.id,
                        col(TeamRun.status) == TeamRunStatus.RUNNING.value,
                        col(TeamRun.claimed_by_runner) == run.claimed_by_runner,
                    )
                    .values(
                        status=TeamRunStatus.PENDING.value,
                        claimed_by_runner=None,
                        current_step_idx=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                summary.team_runs_requeued += 1
                previous_recoveries = session.exec(
                    select(func.count())
                    .select_from(TeamMessage)
                    .where(
                        TeamMessage.run_id == run.id,
                        TeamMessage.message_type == MessageType.SYSTEM.value,
                        col(TeamMessage.content).startswith("Run requeued after runner loss"),
                    ),
                ).one()
                session.add(
                    _message_row(
                        run_id=run.id,
                        message=TeamMessageWrite(
                            message_type=MessageType.SYSTEM,
                            content=(
                                "Run requeued after runner loss "
                                f"(recovery #{previous_recoveries + 1})."
                            ),
                            metadata={
                                "event": "recovered",
                                "lost_runner_id": run.claimed_by_runner,
                                "recovery_count": previous_recoveries + 1,
                            },
                        ),
                    ),
                )
                logger.info(
                    "Requeued team run %s from lost runner %s",
                    run.id,
                    run.claimed_by_runner,
                )
            session.commit()
        return summary

    # Usage ledger

    def add_usage_record(
        self,
        *,
        record: UsageRecordWrite,
        billing_model: BillingModel,
        cost_usd: float,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                UsageRecord(
                    workspace_id=record.workspace_id,
                    event_type=record.event_type.value,
                    tokens_used=record.usage.total_tokens,
                    cost_usd=cost_usd,
                    agent_id=record.agent_id,
                    task_id=record.task_id,
                    team_run_id=record.team_run_id,
                    provider=record.provider,
                    model=record.model,
                    billing_model=billing_model.value,
                    step_index=record.step_index,
                    step_name=record.step_name,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_usage_records(
        self,
        *,
        task_id: str | None = None,
        team_run_id: str | None = None,
    ) -> list[UsageRecord]:
        with Session(self.engine) as session:
            statement = select(UsageRecord)
            if task_id is not None:
                statement = statement.where(UsageRecord.task_id == task_id)
            if team_run_id is not None:
                statement = statement.where(UsageRecord.team_run_id == team_run_id)
            rows = session.exec(statement.order_by(col(UsageRecord.id).asc())).all()
            for row in rows:
                session.expunge(row)
        return list(rows)

    # Output routes

    def create_output_route(
        self,
        *,
        workspace_id: str,
        payload: OutputRouteCreate,
    ) -> OutputRouteView:
        row = OutputRoute(
            id=str(uuid4()),
            workspace_id=workspace_id,
            name=payload.name,
            url=payload.url,
            secret=payload.secret,
            events_json=json.dumps(list(payload.events)),
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_route_view(row)

    def list_active_routes(self, *, workspace_id: str, event: str) -> list[OutputRouteView]:
        """Active http routes of the workspace subscribed to `event`."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(OutputRoute).where(
                    OutputRoute.workspace_id == workspace_id,
                    OutputRoute.destination_type == "http",
                    col(OutputRoute.is_active).is_(True),
                ),
            ).all()
        routes = [_to_route_view(row) for row in rows]
        return [route for route in routes if event in route.events]

    def add_webhook_delivery(self, delivery: WebhookDeliveryWrite) -> None:
        with Session(self.engine) as session:
            session.add(
                WebhookDelivery(
                    route_id=delivery.route_id,
                    subject_id=delivery.subject_id,
                    event=delivery.event,
                    status=delivery.status,
                    status_code=delivery.status_code,
                    error=delivery.error,
                    attempts=delivery.attempts,
                    payload_json=json.dumps(delivery.payload, ensure_ascii=False, sort_keys=True),
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_webhook_deliveries(self, *, subject_id: str | None = None) -> list[WebhookDelivery]:
        with Session(self.engine) as session:
            statement = select(WebhookDelivery)
            if subject_id is not None:
                statement = statement.where(WebhookDelivery.subject_id == subject_id)
            rows = session.exec(statement.order_by(col(WebhookDelivery.id).asc())).all()
            for row in rows:
                session.expunge(row)
        return list(rows)


def _reserve_runner_slot(session: Session, *, runner_id: str) -> bool:
    result = session.exec(
        sa_update(Runner)
        .where(
            col(Runner.id) == runner_id,
            col(Runner.status) == RunnerStatus.ACTIVE.value,
            col(Runner.current_load) < col(Runner.max_concurrency),
        )
        .values(current_load=Runner.current_load + 1),
    )
    return result.rowcount == 1


def _touch_owned_run(session: Session, *, run_id: str, runner_id: str) -> bool:
    result = session.exec(
        sa_update(TeamRun)
        .where(
            col(TeamRun.id) == run_id,
            col(TeamRun.claimed_by_runner) == runner_id,
            col(TeamRun.status) == TeamRunStatus.RUNNING.value,
        )
        .values(updated_at=to_db_datetime(utc_now())),
    )
    return result.rowcount == 1


def _priority_order() -> Any:
    return case(PRIORITY_RANK, value=col(Task.priority), else_=len(PRIORITY_RANK))


def _message_row(*, run_id: str, message: TeamMessageWrite) -> TeamMessage:
    return TeamMessage(
        run_id=run_id,
        sender_agent_id=message.sender_agent_id,
        receiver_agent_id=message.receiver_agent_id,
        message_type=MessageType(message.message_type).value,
        content=truncate_message(message.content),
        step_idx=message.step_idx,
        tokens_used=message.tokens_used,
        metadata_json=(
            json.dumps(message.metadata, ensure_ascii=False, sort_keys=True)
            if message.metadata
            else None
        ),
        created_at=utc_now(),
    )


def _load_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _load_json_list(raw: str | None) -> list[Any]:
    if not raw:
        return []
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, list) else []


def _to_agent_view(row: Agent) -> AgentView:
    return AgentView(
        id=row.id,
        workspace_id=row.workspace_id,
        name=row.name,
        description=row.description,
        provider=row.provider,
        model=row.model,
        system_prompt=row.system_prompt,
        temperature=row.temperature,
        tools=tuple(str(item) for item in _load_json_list(row.tools_json)),
        created_at=_aware(row.created_at),
    )


def _to_custom_tool_view(row: CustomTool) -> CustomToolView:
    return CustomToolView(
        id=row.id,
        workspace_id=row.workspace_id,
        name=row.name,
        description=row.description,
        parameters=_load_json_object(row.parameters_json),
        webhook_url=row.webhook_url,
        webhook_headers={
            str(key): str(value)
            for key, value in _load_json_object(row.webhook_headers_json).items()
        },
    )


def _to_team_view(row: Team) -> TeamView:
    return TeamView(
        id=row.id,
        workspace_id=row.workspace_id,
        name=row.name,
        mode=TeamMode(row.mode),
        config=_load_json_object(row.config_json),
        created_at=_aware(row.created_at),
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        id=row.id,
        workspace_id=row.workspace_id,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        priority=TaskPriority(row.priority),
        assigned_agent_id=row.assigned_agent_id,
        result=row.result,
        error=row.error,
        metadata=_load_json_object(row.metadata_json),
        claimed_by_runner=row.claimed_by_runner,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        started_at=to_utc_aware(row.started_at),
        completed_at=to_utc_aware(row.completed_at),
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
    )


def _to_execution_view(row: AgentExecution) -> AgentExecutionView:
    return AgentExecutionView(
        id=row.id,
        task_id=row.task_id,
        agent_id=row.agent_id,
        runner_id=row.runner_id,
        status=ExecutionStatus(row.status),
        result=row.result,
        error=row.error,
        usage=TokenUsage(
            prompt_tokens=row.prompt_tokens,
            completion_tokens=row.completion_tokens,
            total_tokens=row.total_tokens,
            cost_estimate_usd=row.cost_estimate_usd,
        ),
        started_at=_aware(row.started_at),
        completed_at=to_utc_aware(row.completed_at),
    )


def _to_team_run_view(row: TeamRun) -> TeamRunView:
    return TeamRunView(
        id=row.id,
        team_id=row.team_id,
        workspace_id=row.workspace_id,
        status=TeamRunStatus(row.status),
        input_task=row.input_task,
        output=row.output,
        current_step_idx=row.current_step_idx,
        delegation_depth=row.delegation_depth,
        tokens_total=row.tokens_total,
        cost_estimate_usd=row.cost_estimate_usd,
        error_message=row.error_message,
        claimed_by_runner=row.claimed_by_runner,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        started_at=to_utc_aware(row.started_at),
        completed_at=to_utc_aware(row.completed_at),
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
    )


def _to_message_view(row: TeamMessage) -> TeamMessageView:
    return TeamMessageView(
        id=row.id or 0,
        run_id=row.run_id,
        sender_agent_id=row.sender_agent_id,
        receiver_agent_id=row.receiver_agent_id,
        message_type=MessageType(row.message_type),
        content=row.content,
        step_idx=row.step_idx,
        tokens_used=row.tokens_used,
        metadata=_load_json_object(row.metadata_json),
        created_at=_aware(row.created_at),
    )


def _to_delegation_view(row: Delegation) -> DelegationView:
    return DelegationView(
        id=row.id,
        run_id=row.run_id,
        worker_agent_id=row.worker_agent_id,
        instruction=row.instruction,
        worker_output=row.worker_output,
        status=DelegationStatus(row.status),
        revision_count=row.revision_count,
        revision_feedback=row.revision_feedback,
        quality_score=row.quality_score,
        accepted=row.accepted,
        created_at=_aware(row.created_at),
        completed_at=to_utc_aware(row.completed_at),
    )


def _to_runner_view(row: Runner) -> RunnerView:
    return RunnerView(
        id=row.id,
        instance_name=row.instance_name,
        status=RunnerStatus(row.status),
        max_concurrency=row.max_concurrency,
        current_load=row.current_load,
        last_heartbeat=_aware(row.last_heartbeat),
        started_at=_aware(row.started_at),
    )


def _to_route_view(row: OutputRoute) -> OutputRouteView:
    return OutputRouteView(
        id=row.id,
        workspace_id=row.workspace_id,
        name=row.name,
        destination_type=row.destination_type,
        url=row.url,
        secret=row.secret,
        events=tuple(str(item) for item in _load_json_list(row.events_json)),
        is_active=row.is_active,
    )


def _aware(value: Any) -> Any:
    aware = to_utc_aware(value)
    if aware is None:
        raise ValueError("Expected non-null datetime column")
    return aware
