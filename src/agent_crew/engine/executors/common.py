"""Shared lifecycle for team run executors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from agent_crew.engine.errors import RunCancelledError
from agent_crew.engine.failure_classifier import describe_failure
from agent_crew.engine.llm import LlmCallResult, LlmCallService
from agent_crew.engine.models import (
    MessageType,
    NotificationEvent,
    TaskStatus,
    TeamConfig,
    TeamMessageWrite,
    TeamRunStatus,
    TeamRunView,
    TeamView,
    TokenUsage,
    UsageEventType,
    UsageRecordWrite,
    parse_team_config,
    truncate_message,
)
from agent_crew.engine.notifications import NotificationOutbox, team_run_payload
from agent_crew.engine.repository import EngineRepository
from agent_crew.engine.usage import UsageLedger

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


@dataclass(slots=True)
class RunState:
    """Per-run mutable state carried through one execution attempt."""

    run: TeamRunView
    team: TeamView
    runner_id: str
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def run_id(self) -> str:
        return self.run.id

    @property
    def workspace_id(self) -> str:
        return self.run.workspace_id


@dataclass(slots=True)
class RunOutcome:
    output: str
    current_step_idx: int | None = None


def ensure_task_active(repository: EngineRepository, task_id: str, *, runner_id: str) -> None:
    """Raise `RunCancelledError` when the task was cancelled or is no longer ours."""

    task = repository.get_task(task_id)
    if task is None:
        raise RunCancelledError(f"Task {task_id} is no longer active (missing).")
    if task.status is TaskStatus.CANCELLED:
        raise RunCancelledError(f"Task {task_id} was cancelled.")
    if task.status not in {TaskStatus.DISPATCHED, TaskStatus.RUNNING}:
        raise RunCancelledError(f"Task {task_id} is no longer active ({task.status.value}).")
    if task.claimed_by_runner != runner_id:
        raise RunCancelledError(
            f"Task {task_id} is now owned by runner {task.claimed_by_runner or '-'}.",
        )


def ensure_run_active(repository: EngineRepository, run_id: str, *, runner_id: str) -> None:
    """Raise `RunCancelledError` when the run was cancelled, requeued or reclaimed."""

    run = repository.get_team_run(run_id)
    if run is None:
        raise RunCancelledError(f"Team run {run_id} is no longer running (missing).")
    if run.status is TeamRunStatus.CANCELLED:
        raise RunCancelledError(f"Team run {run_id} was cancelled.")
    if run.status is not TeamRunStatus.RUNNING:
        raise RunCancelledError(f"Team run {run_id} is no longer running ({run.status.value}).")
    if run.claimed_by_runner != runner_id:
        raise RunCancelledError(
            f"Team run {run_id} is now owned by runner {run.claimed_by_runner or '-'}.",
        )


class TeamRunExecutor:
    """Template for the three team topologies.

    Subclasses implement `_run`; this class owns config parsing, cancellation,
    terminal writes and notifications.
    """

    def __init__(
        self,
        *,
        repository: EngineRepository,
        llm: LlmCallService,
        ledger: UsageLedger,
        outbox: NotificationOutbox | None = None,
    ) -> None:
        self.repository = repository
        self.llm = llm
        self.ledger = ledger
        self.outbox = outbox

    def execute(self, run: TeamRunView, team: TeamView, *, runner_id: str) -> TeamRunStatus:
        """Run to a terminal state and return it."""

        state = RunState(run=run, team=team, runner_id=runner_id)
        logger.info("Starting %s run %s for team %s", team.mode.value, run.id, team.id)
        try:
            config = parse_team_config(team.mode, team.config)
            outcome = self._run(state, config, runner_id=runner_id)
        except RunCancelledError as stop:
            logger.info("Run %s stopped: %s", run.id, stop)
            return self.repository.get_team_run_status(run.id) or TeamRunStatus.CANCELLED
        except Exception as error:  # noqa: BLE001
            report = describe_failure(error)
            logger.warning("Run %s failed: %s", run.id, report.message)
            failed = self.repository.fail_team_run(
                run_id=run.id,
                runner_id=runner_id,
                error=report.message,
                usage=state.usage,
                failure_class=report.failure_class,
            )
            if failed:
                self._notify(state, NotificationEvent.TEAM_RUN_FAILED)
                return TeamRunStatus.FAILED
            return self.repository.get_team_run_status(run.id) or TeamRunStatus.FAILED

        completed = self.repository.complete_team_run(
            run_id=run.id,
            runner_id=runner_id,
            output=outcome.output,
            usage=state.usage,
            current_step_idx=outcome.current_step_idx,
        )
        if not completed:
            logger.info("Run %s was not completed: no longer owned or running", run.id)
            return self.repository.get_team_run_status(run.id) or TeamRunStatus.CANCELLED
        logger.info(
            "Run %s completed (%d tokens, $%.4f)",
            run.id,
            state.usage.total_tokens,
            state.usage.cost_estimate_usd,
        )
        self._notify(state, NotificationEvent.TEAM_RUN_COMPLETED)
        return TeamRunStatus.COMPLETED

    def _run(self, state: RunState, config: TeamConfig, *, runner_id: str) -> RunOutcome:
        raise NotImplementedError

    def check_cancelled(self, state: RunState) -> None:
        ensure_run_active(self.repository, state.run_id, runner_id=state.runner_id)

    def add_message(  # noqa: PLR0913
        self,
        state: RunState,
        message_type: MessageType,
        content: str,
        *,
        sender_agent_id: str | None = None,
        receiver_agent_id: str | None = None,
        step_idx: int | None = None,
        tokens_used: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        message_id = self.repository.add_team_message(
            run_id=state.run_id,
            runner_id=state.runner_id,
            message=TeamMessageWrite(
                message_type=message_type,
                content=truncate_message(content),
                sender_agent_id=sender_agent_id,
                receiver_agent_id=receiver_agent_id,
                step_idx=step_idx,
                tokens_used=tokens_used,
                metadata=metadata or {},
            ),
        )
        if message_id is None:
            raise RunCancelledError(f"Runner {state.runner_id} no longer owns run {state.run_id}.")
        return message_id

    def account(  # noqa: PLR0913
        self,
        state: RunState,
        call: LlmCallResult,
        *,
        agent_id: str,
        step_index: int | None = None,
        step_name: str | None = None,
    ) -> None:
        """Add one call's usage to the run totals and the usage ledger."""

        state.usage.add(call.usage)
        self.ledger.record(
            UsageRecordWrite(
                workspace_id=state.workspace_id,
                event_type=UsageEventType.TEAM_RUN,
                usage=call.usage,
                provider=call.provider,
                model=call.model,
                agent_id=agent_id,
                team_run_id=state.run_id,
                step_index=step_index,
                step_name=step_name,
            ),
        )

    def write_progress(
        self,
        state: RunState,
        *,
        runner_id: str,
        current_step_idx: int | None = None,
        delegation_depth: int | None = None,
    ) -> None:
        written = self.repository.update_team_run_progress(
            run_id=state.run_id,
            runner_id=runner_id,
            current_step_idx=current_step_idx,
            tokens_total=state.usage.total_tokens,
            cost_estimate_usd=state.usage.cost_estimate_usd,
            delegation_depth=delegation_depth,
        )
        if not written:
            raise RunCancelledError(f"Runner {runner_id} no longer owns run {state.run_id}.")

    def _notify(self, state: RunState, event: NotificationEvent) -> None:
        if self.outbox is None:
            return
        run = self.repository.get_team_run(state.run_id) or state.run
        self.outbox.dispatch(
            event,
            team_run_payload(run, team_name=state.team.name, event=event),
            workspace_id=state.workspace_id,
        )
