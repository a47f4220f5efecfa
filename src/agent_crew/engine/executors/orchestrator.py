"""Brain/worker orchestration: a bounded tool-calling loop."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from agent_crew.engine.errors import ConfigurationError, RunCancelledError
from agent_crew.engine.executors.brain_protocol import (
    BrainToolCall,
    BrainToolCallStrategy,
    ConversationEntry,
    NativeToolCallStrategy,
    TextToolCallStrategy,
)
from agent_crew.engine.executors.common import (
    DEFAULT_SYSTEM_PROMPT,
    RunOutcome,
    RunState,
    TeamRunExecutor,
)
from agent_crew.engine.llm import LlmCallRequest, LlmCallService, ResolvedAgent
from agent_crew.engine.models import (
    RESULT_PREVIEW_CHARS,
    AgentView,
    DelegationStatus,
    MessageType,
    OrchestratorConfig,
    TeamConfig,
)
from agent_crew.engine.notifications import NotificationOutbox
from agent_crew.engine.repository import EngineRepository
from agent_crew.engine.usage import UsageLedger

logger = logging.getLogger(__name__)

MAX_ORCHESTRATOR_LOOPS = 20
LOOP_EXHAUSTED_OUTPUT = (
    "Orchestrator reached maximum loop count without producing a final answer."
)
OUTPUT_SEPARATOR = "\n\n---\n\n"


def build_brain_system_prompt(workers: list[AgentView], config: OrchestratorConfig) -> str:
    worker_list = "\n".join(
        f'  - Agent "{worker.name}" (ID: {worker.id}): '
        f"{worker.description or 'No description'}"
        for worker in workers
    )
    threshold = f"{config.quality_threshold * 100:g}%"
    return (
        "You are an orchestrator agent managing a team of AI workers. Your job is to:\n\n"
        "1. Analyze the incoming task\n"
        "2. Break it down into subtasks\n"
        "3. Delegate subtasks to the most appropriate worker\n"
        "4. Evaluate each worker's output for quality\n"
        f"5. Request revisions if the quality is below threshold ({threshold})\n"
        "6. Synthesize all accepted results into a final answer\n\n"
        f"AVAILABLE WORKERS:\n{worker_list}\n\n"
        "RULES:\n"
        "- You can delegate to multiple workers sequentially\n"
        f"- Maximum {config.max_delegation_depth} revision rounds per delegation\n"
        "- Always evaluate worker output before accepting\n"
        '- Call "final_answer" when you have a complete, high-quality result\n'
        "- Be specific in your delegation instructions\n"
        "- Provide constructive feedback when requesting revisions\n\n"
        "Use the provided tools to manage the workflow."
    )


def build_revision_prompt(instruction: str, previous_output: str, feedback: str) -> str:
    return (
        f"Original instruction: {instruction}\n\n"
        f"Previous output:\n{previous_output}\n\n"
        f"Revision feedback:\n{feedback}\n\n"
        "Please revise your output based on the feedback above."
    )


@dataclass(slots=True)
class ToolOutcome:
    result: str
    final_output: str | None = None


@dataclass(slots=True)
class _Session:
    """State of one orchestration attempt."""

    state: RunState
    config: OrchestratorConfig
    brain: ResolvedAgent
    workers: dict[str, AgentView]
    loop: int = 0
    delegation_ids: list[str] = field(default_factory=list)


class OrchestratorExecutor(TeamRunExecutor):
    """Brain agent delegates to workers, reviews, and synthesizes the answer."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: EngineRepository,
        llm: LlmCallService,
        ledger: UsageLedger,
        outbox: NotificationOutbox | None = None,
        native_tools: bool | None = None,
        max_loops: int = MAX_ORCHESTRATOR_LOOPS,
    ) -> None:
        super().__init__(repository=repository, llm=llm, ledger=ledger, outbox=outbox)
        self.native_tools = (
            llm.settings.orchestrator_native_tools if native_tools is None else native_tools
        )
        self.max_loops = max_loops

    def strategy_for(self, brain: ResolvedAgent) -> BrainToolCallStrategy:
        if (
            self.native_tools
            and brain.spec.supports_native_tools
            and brain.spec.openai_base_url is not None
        ):
            return NativeToolCallStrategy(self.llm)
        return TextToolCallStrategy(self.llm)

    def _run(self, state: RunState, config: TeamConfig, *, runner_id: str) -> RunOutcome:
        if not isinstance(config, OrchestratorConfig):
            raise ConfigurationError("Orchestrator executor requires an orchestrator team config.")

        found = self.repository.get_agents(config.worker_agent_ids)
        workers = {
            agent_id: found[agent_id] for agent_id in config.worker_agent_ids if agent_id in found
        }
        if not workers:
            raise ConfigurationError("No worker agents found for this orchestrator team")

        brain = self.llm.resolve(workspace_id=state.workspace_id, agent_id=config.brain_agent_id)
        strategy = self.strategy_for(brain)
        session = _Session(state=state, config=config, brain=brain, workers=workers)
        system_prompt = build_brain_system_prompt(list(workers.values()), config)
        history = [ConversationEntry("user", f"Task to orchestrate:\n\n{state.run.input_task}")]
        self.add_message(
            state,
            MessageType.BRAIN,
            f"Orchestrating task: {state.run.input_task}",
            sender_agent_id=brain.agent.id,
        )

        while session.loop < self.max_loops:
            self.check_cancelled(state)
            session.loop += 1

            decision = strategy.decide(brain=brain, system_prompt=system_prompt, history=history)
            self.account(
                state,
                decision.call,
                agent_id=brain.agent.id,
                step_index=session.loop - 1,
                step_name="brain",
            )

            if decision.tool_call is None:
                self.write_progress(state, runner_id=runner_id, delegation_depth=session.loop)
                return RunOutcome(output=decision.content)

            outcome = self._dispatch(session, decision.tool_call)
            history.append(
                ConversationEntry(
                    "assistant",
                    f"[Tool Call: {decision.tool_call.name}] "
                    f"{json.dumps(decision.tool_call.arguments, ensure_ascii=False)}",
                ),
            )
            history.append(ConversationEntry("tool", outcome.result))
            self.write_progress(state, runner_id=runner_id, delegation_depth=session.loop)
            if outcome.final_output is not None:
                return RunOutcome(output=outcome.final_output)

        logger.warning("Run %s reached the orchestrator loop limit", state.run_id)
        completed_outputs = [
            delegation.worker_output
            for delegation in self.repository.list_delegations(run_id=state.run_id)
            if delegation.id in session.delegation_ids
            and delegation.status is DelegationStatus.COMPLETED
            and delegation.worker_output
        ]
        return RunOutcome(output=OUTPUT_SEPARATOR.join(completed_outputs) or LOOP_EXHAUSTED_OUTPUT)

    def _dispatch(self, session: _Session, call: BrainToolCall) -> ToolOutcome:
        self.check_cancelled(session.state)
        if call.missing:
            return ToolOutcome(
                f"Error: Missing required argument(s) for {call.name}: {', '.join(call.missing)}",
            )
        args = call.arguments
        if call.name == "delegate_to_worker":
            return self._delegate(session, str(args["agent_id"]), str(args["instruction"]))
        if call.name == "request_revision":
            return self._request_revision(
                session,
                str(args["delegation_id"]),
                str(args["feedback"]),
            )
        if call.name == "accept_result":
            return self._accept(session, str(args["delegation_id"]))
        if call.name == "final_answer":
            return ToolOutcome("Final answer submitted.", final_output=str(args["output"]))
        return ToolOutcome(f"Unknown tool: {call.name}")

    def _delegate(self, session: _Session, agent_id: str, instruction: str) -> ToolOutcome:
        state = session.state
        worker = session.workers.get(agent_id)
        if worker is None:
            return ToolOutcome(f"Error: Worker agent {agent_id} not found in team.")

        delegation = self.repository.create_delegation(
            run_id=state.run_id,
            worker_agent_id=agent_id,
            instruction=instruction,
            runner_id=state.runner_id,
        )
        if delegation is None:
            raise RunCancelledError(f"Runner {state.runner_id} no longer owns run {state.run_id}.")
        session.delegation_ids.append(delegation.id)
        self.add_message(
            state,
            MessageType.DELEGATION,
            f'Brain delegated to "{worker.name}": {instruction}',
            sender_agent_id=session.brain.agent.id,
            receiver_agent_id=agent_id,
            metadata={"delegation_id": delegation.id},
        )
        try:
            call = self.llm.call(
                LlmCallRequest(
                    workspace_id=state.workspace_id,
                    agent_id=agent_id,
                    system_prompt=worker.system_prompt or DEFAULT_SYSTEM_PROMPT,
                    user_prompt=instruction,
                ),
            )
        except Exception as error:  # noqa: BLE001
            message = str(error) or error.__class__.__name__
            logger.warning(
                "Worker %s failed on delegation %s: %s",
                agent_id,
                delegation.id,
                message,
            )
            self.repository.fail_delegation(delegation_id=delegation.id, error=message)
            return ToolOutcome(f'Error executing worker "{worker.name}": {message}')

        self.account(
            state,
            call,
            agent_id=agent_id,
            step_index=session.loop - 1,
            step_name="worker",
        )
        self.repository.complete_delegation(delegation_id=delegation.id, worker_output=call.result)
        self.add_message(
            state,
            MessageType.WORKER_RESULT,
            f'Worker "{worker.name}" result: {call.result[:RESULT_PREVIEW_CHARS]}...',
            sender_agent_id=agent_id,
            receiver_agent_id=session.brain.agent.id,
            tokens_used=call.usage.total_tokens,
            metadata={"delegation_id": delegation.id},
        )
        return ToolOutcome(
            f'Worker "{worker.name}" completed. Delegation ID: {delegation.id}\n\n'
            f"Result:\n{call.result}",
        )

    def _request_revision(
        self,
        session: _Session,
        delegation_id: str,
        feedback: str,
    ) -> ToolOutcome:
        state = session.state
        delegation = self.repository.get_delegation(
            delegation_id=delegation_id,
            run_id=state.run_id,
        )
        if delegation is None:
            return ToolOutcome(f"Error: Delegation {delegation_id} not found.")

        max_depth = session.config.max_delegation_depth
        if delegation.revision_count >= max_depth:
            return ToolOutcome(
                f"Error: Maximum revision depth ({max_depth}) reached for delegation "
                f"{delegation_id}. Please accept or skip.",
            )

        self.repository.request_delegation_revision(delegation_id=delegation_id, feedback=feedback)
        revision_number = delegation.revision_count + 1
        worker = session.workers.get(delegation.worker_agent_id)
        worker_name = worker.name if worker is not None else "Unknown"
        self.add_message(
            state,
            MessageType.REVISION_REQUEST,
            f'Brain requested revision from "{worker_name}": {feedback}',
            sender_agent_id=session.brain.agent.id,
            receiver_agent_id=delegation.worker_agent_id,
            metadata={"delegation_id": delegation_id, "revision": revision_number},
        )
        try:
            call = self.llm.call(
                LlmCallRequest(
                    workspace_id=state.workspace_id,
                    agent_id=delegation.worker_agent_id,
                    system_prompt=(worker.system_prompt if worker else None)
                    or DEFAULT_SYSTEM_PROMPT,
                    user_prompt=build_revision_prompt(
                        delegation.instruction,
                        delegation.worker_output or "",
                        feedback,
                    ),
                ),
            )
        except Exception as error:  # noqa: BLE001
            message = str(error) or error.__class__.__name__
            logger.warning("Revision of delegation %s failed: %s", delegation_id, message)
            return ToolOutcome(f"Error during revision: {message}")

        self.account(
            state,
            call,
            agent_id=delegation.worker_agent_id,
            step_index=session.loop - 1,
            step_name="worker_revision",
        )
        self.repository.complete_delegation(delegation_id=delegation_id, worker_output=call.result)
        self.add_message(
            state,
            MessageType.WORKER_RESULT,
            f'Worker "{worker_name}" revised result: {call.result[:RESULT_PREVIEW_CHARS]}...',
            sender_agent_id=delegation.worker_agent_id,
            receiver_agent_id=session.brain.agent.id,
            tokens_used=call.usage.total_tokens,
            metadata={"delegation_id": delegation_id, "revision": revision_number},
        )
        return ToolOutcome(
            f'Worker "{worker_name}" revised output (revision {revision_number}). '
            f"Delegation ID: {delegation_id}\n\nRevised Result:\n{call.result}",
        )

    def _accept(self, session: _Session, delegation_id: str) -> ToolOutcome:
        delegation = self.repository.get_delegation(
            delegation_id=delegation_id,
            run_id=session.state.run_id,
        )
        if delegation is None:
            return ToolOutcome(f"Error: Delegation {delegation_id} not found.")
        self.repository.accept_delegation(
            delegation_id=delegation_id,
            quality_score=session.config.quality_threshold,
        )
        self.add_message(
            session.state,
            MessageType.ACCEPTED,
            f"Brain accepted delegation {delegation_id}",
            sender_agent_id=session.brain.agent.id,
            receiver_agent_id=delegation.worker_agent_id,
            metadata={"delegation_id": delegation_id},
        )
        return ToolOutcome(f"Delegation {delegation_id} accepted.")
