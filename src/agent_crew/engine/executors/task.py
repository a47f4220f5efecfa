"""Single-agent task execution."""

from __future__ import annotations

import logging
from collections.abc import Callable

import httpx

from agent_crew.config import ToolSettings
from agent_crew.engine.errors import RunCancelledError
from agent_crew.engine.executors.common import DEFAULT_SYSTEM_PROMPT, ensure_task_active
from agent_crew.engine.failure_classifier import describe_failure
from agent_crew.engine.llm import LlmCallRequest, LlmCallService, ResolvedAgent
from agent_crew.engine.models import (
    NotificationEvent,
    TaskStatus,
    TaskView,
    TokenUsage,
    UsageEventType,
    UsageRecordWrite,
)
from agent_crew.engine.notifications import NotificationOutbox, task_payload
from agent_crew.engine.providers.base import ChatCompletion, ChatMessage
from agent_crew.engine.repository import EngineRepository
from agent_crew.engine.throttle import ProgressThrottle
from agent_crew.engine.tools import (
    ToolExecutor,
    custom_tool_ids,
    get_tool_definitions,
    run_tool_loop,
)
from agent_crew.engine.usage import UsageLedger
from agent_crew.http.fetcher import HttpFetcher

logger = logging.getLogger(__name__)

NO_AGENT_ERROR = "Task has no assigned agent."
TOOL_USER_AGENT = "AgentCrew-Agent/1.0"


def build_task_prompt(task: TaskView) -> str:
    return f"Task Title: {task.title}\n\nTask Description:\n{task.description}"


class TaskExecutor:
    """Run one claimed task against its assigned agent."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: EngineRepository,
        llm: LlmCallService,
        ledger: UsageLedger,
        tool_settings: ToolSettings,
        outbox: NotificationOutbox | None = None,
        throttle_factory: Callable[[], ProgressThrottle] = ProgressThrottle,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.repository = repository
        self.llm = llm
        self.ledger = ledger
        self.tool_settings = tool_settings
        self.outbox = outbox
        self.throttle_factory = throttle_factory
        self._transport = transport

    def execute(self, task: TaskView, *, runner_id: str) -> TaskStatus:
        """Run to a terminal state and return it."""

        try:
            ensure_task_active(self.repository, task.id, runner_id=runner_id)
        except RunCancelledError as stop:
            logger.info("Task %s not started: %s", task.id, stop)
            return self._current_status(task.id, TaskStatus.CANCELLED)
        if not self.repository.mark_task_running(task_id=task.id, runner_id=runner_id):
            logger.info("Task %s is no longer dispatched to runner %s", task.id, runner_id)
            return self._current_status(task.id, TaskStatus.CANCELLED)

        if not task.assigned_agent_id:
            failed = self.repository.fail_task(
                task_id=task.id,
                runner_id=runner_id,
                error=NO_AGENT_ERROR,
            )
            if failed:
                self._notify(task.id, agent_name="", event=NotificationEvent.TASK_FAILED)
                return TaskStatus.FAILED
            return self._current_status(task.id, TaskStatus.FAILED)

        execution_id = self.repository.open_execution(
            task_id=task.id,
            agent_id=task.assigned_agent_id,
            runner_id=runner_id,
        )
        resolved: ResolvedAgent | None = None
        try:
            resolved = self.llm.resolve(
                workspace_id=task.workspace_id,
                agent_id=task.assigned_agent_id,
            )
            result, usage = self._run_agent(task, resolved, runner_id=runner_id)
        except RunCancelledError as stop:
            logger.info("Task %s stopped: %s", task.id, stop)
            self.repository.fail_execution(execution_id=execution_id, error=str(stop))
            return self._current_status(task.id, TaskStatus.CANCELLED)
        except Exception as error:  # noqa: BLE001
            return self._fail(
                task,
                runner_id=runner_id,
                execution_id=execution_id,
                resolved=resolved,
                error=error,
            )

        completed = self.repository.complete_task(
            task_id=task.id,
            runner_id=runner_id,
            result=result,
            usage=usage,
        )
        self.repository.complete_execution(execution_id=execution_id, result=result, usage=usage)
        self.ledger.record(
            UsageRecordWrite(
                workspace_id=task.workspace_id,
                event_type=UsageEventType.TASK_EXECUTION,
                usage=usage,
                provider=resolved.provider,
                model=resolved.agent.model,
                agent_id=resolved.agent.id,
                task_id=task.id,
            ),
        )
        if not completed:
            logger.info("Task %s was not completed: no longer owned or running", task.id)
            return self._current_status(task.id, TaskStatus.CANCELLED)
        logger.info(
            "Task %s completed (%d tokens, $%.4f)",
            task.id,
            usage.total_tokens,
            usage.cost_estimate_usd,
        )
        self._notify(
            task.id,
            agent_name=resolved.agent.name,
            event=NotificationEvent.TASK_COMPLETED,
        )
        return TaskStatus.COMPLETED

    def _run_agent(
        self,
        task: TaskView,
        resolved: ResolvedAgent,
        *,
        runner_id: str,
    ) -> tuple[str, TokenUsage]:
        agent = resolved.agent
        system_prompt = agent.system_prompt or DEFAULT_SYSTEM_PROMPT
        user_prompt = build_task_prompt(task)

        custom_tools = (
            self.repository.list_custom_tools(
                workspace_id=task.workspace_id,
                tool_ids=custom_tool_ids(agent.tools),
            )
            if agent.tools
            else []
        )
        tools = get_tool_definitions(agent.tools, custom_tools)
        if tools:
            logger.info("Task %s runs with %d tool(s)", task.id, len(tools))

            def chat(messages: list[ChatMessage], definitions: list[dict]) -> ChatCompletion:
                ensure_task_active(self.repository, task.id, runner_id=runner_id)
                return self.llm.chat(
                    workspace_id=task.workspace_id,
                    agent_id=agent.id,
                    messages=messages,
                    tools=definitions,
                )

            with HttpFetcher(
                timeout_seconds=self.tool_settings.timeout_seconds,
                max_retries=0,
                user_agent=TOOL_USER_AGENT,
                transport=self._transport,
            ) as fetcher:
                outcome = run_tool_loop(
                    chat,
                    system_prompt,
                    user_prompt,
                    tools,
                    ToolExecutor(
                        fetcher=fetcher,
                        custom_tools=custom_tools,
                        code_timeout_seconds=self.tool_settings.code_interpreter_timeout_seconds,
                        grammar_timeout_seconds=self.tool_settings.timeout_seconds,
                    ),
                )
            logger.info(
                "Task %s tool loop finished after %d round(s), %d tool call(s)",
                task.id,
                outcome.rounds,
                outcome.tool_calls_made,
            )
            return outcome.result, outcome.usage

        throttle = self.throttle_factory()

        def on_chunk(accumulated: str) -> None:
            if throttle.should_write():
                self.repository.update_task_partial_result(
                    task_id=task.id,
                    runner_id=runner_id,
                    result=accumulated,
                )

        call = self.llm.call(
            LlmCallRequest(
                workspace_id=task.workspace_id,
                agent_id=agent.id,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                on_chunk=on_chunk,
            ),
        )
        return call.result, call.usage

    def _fail(  # noqa: PLR0913
        self,
        task: TaskView,
        *,
        runner_id: str,
        execution_id: str,
        resolved: ResolvedAgent | None,
        error: Exception,
    ) -> TaskStatus:
        report = describe_failure(
            error,
            model=resolved.agent.model if resolved is not None else None,
        )
        logger.warning("Task %s failed: %s", task.id, report.message)

        failed = self.repository.fail_task(
            task_id=task.id,
            runner_id=runner_id,
            error=report.message,
            failure_class=report.failure_class,
        )
        self.repository.fail_execution(execution_id=execution_id, error=report.message)
        if not failed:
            return self._current_status(task.id, TaskStatus.FAILED)
        self._notify(
            task.id,
            agent_name=resolved.agent.name if resolved is not None else "",
            event=NotificationEvent.TASK_FAILED,
        )
        return TaskStatus.FAILED

    def _current_status(self, task_id: str, default: TaskStatus) -> TaskStatus:
        return self.repository.get_task_status(task_id) or default

    def _notify(self, task_id: str, *, agent_name: str, event: NotificationEvent) -> None:
        if self.outbox is None:
            return
        task = self.repository.get_task(task_id)
        if task is None:
            return
        self.outbox.dispatch(
            event,
            task_payload(task, agent_name=agent_name, event=event),
            workspace_id=task.workspace_id,
        )
