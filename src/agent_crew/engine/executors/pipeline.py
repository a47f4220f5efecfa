"""Sequential pipeline execution with per-step failure policies."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from agent_crew.engine.errors import ConfigurationError, PolicyExhaustionError, RunCancelledError
from agent_crew.engine.executors.common import (
    DEFAULT_SYSTEM_PROMPT,
    RunOutcome,
    RunState,
    TeamRunExecutor,
)
from agent_crew.engine.llm import LlmCallRequest, LlmCallResult
from agent_crew.engine.models import (
    AgentView,
    MessageType,
    OnFailure,
    PipelineConfig,
    PipelineStep,
    TeamConfig,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HandoffContext:
    """What a step knows about the run so far."""

    input_task: str
    previous_output: str | None
    step_index: int
    step_name: str
    accumulated_outputs: list[str] = field(default_factory=list)


def build_step_prompt(step: PipelineStep, context: HandoffContext) -> str:
    parts = [f"## Task\n{context.input_task}"]
    if context.previous_output:
        parts.append(
            "## Previous Step Output\n"
            "The previous step in this pipeline produced the following output:\n\n"
            f"{context.previous_output}",
        )
    if step.instructions:
        parts.append(f"## Your Instructions\n{step.instructions}")
    if step.expected_output:
        parts.append(f"## Expected Output Format\n{step.expected_output}")
    if len(context.accumulated_outputs) > 1:
        parts.append(
            "## Pipeline Context\n"
            f"This is step {context.step_index + 1} in a multi-step pipeline. "
            f"{len(context.accumulated_outputs)} previous steps have completed.",
        )
    return "\n\n".join(parts)


class PipelineExecutor(TeamRunExecutor):
    """Run steps in order; each step sees the last successful output."""

    def _run(self, state: RunState, config: TeamConfig, *, runner_id: str) -> RunOutcome:
        if not isinstance(config, PipelineConfig):
            raise ConfigurationError("Pipeline executor requires a pipeline team config.")

        agents = self.repository.get_agents([step.agent_id for step in config.steps])
        accumulated_outputs: list[str] = []
        previous_output: str | None = None

        for index, step in enumerate(config.steps):
            self.check_cancelled(state)
            self.write_progress(state, runner_id=runner_id, current_step_idx=index)

            context = HandoffContext(
                input_task=state.run.input_task,
                previous_output=previous_output if config.auto_handoff else None,
                step_index=index,
                step_name=step.step_name,
                accumulated_outputs=list(accumulated_outputs),
            )
            output = self._execute_step(
                state,
                step=step,
                context=context,
                agent=agents.get(step.agent_id),
                previous_agent_id=config.steps[index - 1].agent_id if index > 0 else None,
            )
            if output is not None:
                accumulated_outputs.append(output)
                previous_output = output
            self.write_progress(state, runner_id=runner_id)

        return RunOutcome(
            output=previous_output or "",
            current_step_idx=len(config.steps) - 1,
        )

    def _execute_step(
        self,
        state: RunState,
        *,
        step: PipelineStep,
        context: HandoffContext,
        agent: AgentView | None,
        previous_agent_id: str | None,
    ) -> str | None:
        """Run one step under its failure policy; None means the step was skipped."""

        index = context.step_index
        max_attempts = step.max_attempts
        for attempt in range(1, max_attempts + 1):
            logger.info(
                "Run %s step %d/%s (attempt %d/%d)",
                state.run_id,
                index + 1,
                step.step_name,
                attempt,
                max_attempts,
            )
            try:
                if attempt == 1 and index > 0:
                    self.add_message(
                        state,
                        MessageType.HANDOFF,
                        f'Handoff to step "{step.step_name}"',
                        sender_agent_id=previous_agent_id,
                        receiver_agent_id=step.agent_id,
                        step_idx=index,
                        metadata={
                            "direction": "forward",
                            "step_index": index,
                            "step_name": step.step_name,
                            "has_previous_output": context.previous_output is not None,
                            "accumulated_outputs": len(context.accumulated_outputs),
                        },
                    )
                self.add_message(
                    state,
                    MessageType.DELEGATION,
                    step.instructions or f"Execute step: {step.step_name}",
                    receiver_agent_id=step.agent_id,
                    step_idx=index,
                    metadata={"step_index": index, "attempt": attempt},
                )
                if agent is None:
                    raise ConfigurationError(f'Agent not found for step "{step.step_name}"')

                call = self.llm.call(
                    LlmCallRequest(
                        workspace_id=state.workspace_id,
                        agent_id=agent.id,
                        system_prompt=agent.system_prompt or DEFAULT_SYSTEM_PROMPT,
                        user_prompt=build_step_prompt(step, context),
                    ),
                )
            except RunCancelledError:
                raise
            except Exception as error:  # noqa: BLE001
                message = str(error) or error.__class__.__name__
                logger.warning(
                    "Run %s step %d failed (attempt %d): %s",
                    state.run_id,
                    index + 1,
                    attempt,
                    message,
                )
                self.add_message(
                    state,
                    MessageType.SYSTEM,
                    f'Step "{step.step_name}" failed '
                    f"(attempt {attempt}/{max_attempts}): {message}",
                    sender_agent_id=step.agent_id,
                    step_idx=index,
                    metadata={"step_index": index, "attempt": attempt, "error": message},
                )
                if attempt < max_attempts:
                    continue
                if step.on_failure is OnFailure.SKIP:
                    self.add_message(
                        state,
                        MessageType.SYSTEM,
                        f'Skipped step "{step.step_name}" due to failure.',
                        step_idx=index,
                        metadata={"step_index": index, "skipped": True},
                    )
                    return None
                raise PolicyExhaustionError(
                    f'Step "{step.step_name}" failed after {attempt} attempt(s): {message}',
                ) from error

            self._record_result(state, step=step, index=index, call=call)
            return call.result
        return None

    def _record_result(
        self,
        state: RunState,
        *,
        step: PipelineStep,
        index: int,
        call: LlmCallResult,
    ) -> None:
        self.add_message(
            state,
            MessageType.RESULT,
            call.result,
            sender_agent_id=step.agent_id,
            step_idx=index,
            tokens_used=call.usage.total_tokens,
            metadata={
                "step_index": index,
                "model": call.model,
                "tokens": call.usage.total_tokens,
                "cost": call.usage.cost_estimate_usd,
            },
        )
        self.account(
            state,
            call,
            agent_id=step.agent_id,
            step_index=index,
            step_name=step.step_name,
        )
