"""Round-based multi-agent discussion."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from agent_crew.engine.errors import ConfigurationError
from agent_crew.engine.executors.common import (
    DEFAULT_SYSTEM_PROMPT,
    RunOutcome,
    RunState,
    TeamRunExecutor,
)
from agent_crew.engine.llm import LlmCallRequest
from agent_crew.engine.models import (
    AgentView,
    CollaborationConfig,
    MessageType,
    SpeakerSelection,
    TeamConfig,
    TerminationCondition,
)

logger = logging.getLogger(__name__)

DISCUSSION_COMPLETE = "DISCUSSION COMPLETE"
NO_DISCUSSION_OUTPUT = "No discussion took place."
SELECTION_SNIPPET_CHARS = 200
THREAD_SEPARATOR = "\n\n---\n\n"
MODERATOR_PROMPT = (
    "You are a discussion moderator. Select the most appropriate next speaker. "
    "Respond with ONLY the agent ID."
)
FACILITATOR_PROMPT = (
    "You are the discussion facilitator. Choose who should speak next. "
    "Respond with ONLY the agent ID."
)


@dataclass(slots=True)
class Contribution:
    agent_id: str
    agent_name: str
    content: str
    turn_index: int


def render_thread(conversation: list[Contribution]) -> str:
    return THREAD_SEPARATOR.join(
        f"**{item.agent_name}** (Turn {item.turn_index + 1}):\n{item.content}"
        for item in conversation
    )


def build_speaker_system_prompt(
    speaker: AgentView,
    participants: list[AgentView],
    config: CollaborationConfig,
) -> str:
    others = "\n".join(
        f"  - {agent.name}: {agent.description or 'No description'}"
        for agent in participants
        if agent.id != speaker.id
    )
    rules = [
        "- Engage constructively with what others have said",
        "- Build on previous points rather than repeating them",
        "- Be concise and focused",
        "- If you agree with the group consensus, include the phrase "
        f'"{config.consensus_phrase}" in your response',
    ]
    if (
        config.termination_condition is TerminationCondition.FACILITATOR_DECISION
        and config.facilitator_agent_id == speaker.id
    ):
        rules.append(
            f'- As the facilitator, you may end the discussion by saying "{DISCUSSION_COMPLETE}" '
            "when consensus is reached",
        )
    return (
        f"{speaker.system_prompt or DEFAULT_SYSTEM_PROMPT}\n\n"
        f"You are participating in a collaborative discussion with other agents:\n{others}\n\n"
        "RULES:\n" + "\n".join(rules)
    )


def build_turn_prompt(
    topic: str,
    conversation: list[Contribution],
    speaker: AgentView,
    turn: int,
    max_turns: int,
) -> str:
    parts = [f"## Discussion Topic\n{topic}"]
    if conversation:
        parts.append(f"## Discussion So Far\n{render_thread(conversation)}")
    else:
        parts.append(
            "## Your Role\nYou are opening the discussion. "
            "Share your initial thoughts on the topic.",
        )
    parts.append(
        "## Your Turn\nIt is now your turn to contribute "
        f"(Turn {turn + 1} of {max_turns}). Respond as {speaker.name}.",
    )
    return "\n\n".join(parts)


def should_terminate(
    config: CollaborationConfig,
    conversation: list[Contribution],
    turn: int,
) -> bool:
    """Termination after `turn`; the last allowed turn always terminates."""

    if turn >= config.max_turns - 1:
        return True
    if config.termination_condition is TerminationCondition.CONSENSUS:
        recent = conversation[-len(config.agent_ids) :]
        if len(recent) < 2:
            return False
        phrase = config.consensus_phrase.lower()
        agreeing = sum(1 for item in recent if phrase in item.content.lower())
        return agreeing >= math.ceil(len(recent) / 2)
    if config.termination_condition is TerminationCondition.FACILITATOR_DECISION:
        for item in reversed(conversation):
            if item.agent_id == config.facilitator_agent_id:
                return DISCUSSION_COMPLETE in item.content
        return False
    return False


def synthesize_output(conversation: list[Contribution]) -> str:
    if not conversation:
        return NO_DISCUSSION_OUTPUT
    last = conversation[-1]
    return (
        "## Collaboration Result\n\n"
        f"### Final Contribution ({last.agent_name})\n{last.content}\n\n"
        f"### Full Discussion Thread ({len(conversation)} turns)\n\n"
        f"{render_thread(conversation)}"
    )


class CollaborationExecutor(TeamRunExecutor):
    """Agents take turns in a shared thread until a termination rule fires."""

    def _run(self, state: RunState, config: TeamConfig, *, runner_id: str) -> RunOutcome:
        if not isinstance(config, CollaborationConfig):
            raise ConfigurationError(
                "Collaboration executor requires a collaboration team config.",
            )
        if len(config.agent_ids) < 2:
            raise ConfigurationError("Collaboration requires at least 2 participating agents")

        found = self.repository.get_agents(config.agent_ids)
        participants = [found[agent_id] for agent_id in config.agent_ids if agent_id in found]
        if len(participants) < 2:
            raise ConfigurationError("Could not load at least 2 participating agents")
        agents = {agent.id: agent for agent in participants}

        self.add_message(
            state,
            MessageType.SYSTEM,
            f"Collaboration started: {state.run.input_task}",
        )

        conversation: list[Contribution] = []
        for turn in range(config.max_turns):
            self.check_cancelled(state)

            speaker_id = self._select_speaker(state, config, agents, conversation, turn)
            speaker = agents.get(speaker_id)
            if speaker is None:
                logger.warning("Speaker %s not found, skipping turn %d", speaker_id, turn)
                continue

            call = self.llm.call(
                LlmCallRequest(
                    workspace_id=state.workspace_id,
                    agent_id=speaker.id,
                    system_prompt=build_speaker_system_prompt(speaker, participants, config),
                    user_prompt=build_turn_prompt(
                        state.run.input_task,
                        conversation,
                        speaker,
                        turn,
                        config.max_turns,
                    ),
                ),
            )
            conversation.append(
                Contribution(
                    agent_id=speaker.id,
                    agent_name=speaker.name,
                    content=call.result,
                    turn_index=turn,
                ),
            )
            self.add_message(
                state,
                MessageType.DISCUSSION,
                call.result,
                sender_agent_id=speaker.id,
                step_idx=turn,
                tokens_used=call.usage.total_tokens,
                metadata={
                    "turn_index": turn,
                    "model": call.model,
                    "tokens": call.usage.total_tokens,
                    "cost": call.usage.cost_estimate_usd,
                },
            )
            self.account(
                state,
                call,
                agent_id=speaker.id,
                step_index=turn,
                step_name=f"Turn {turn + 1}: {speaker.name}",
            )
            self.write_progress(state, runner_id=runner_id, current_step_idx=turn)

            if should_terminate(config, conversation, turn):
                break

        output = synthesize_output(conversation)
        self.add_message(
            state,
            MessageType.SYSTEM,
            f"Collaboration completed after {len(conversation)} turns.",
        )
        return RunOutcome(
            output=output,
            current_step_idx=len(conversation) - 1 if conversation else None,
        )

    def _select_speaker(
        self,
        state: RunState,
        config: CollaborationConfig,
        agents: dict[str, AgentView],
        conversation: list[Contribution],
        turn: int,
    ) -> str:
        round_robin = config.agent_ids[turn % len(config.agent_ids)]

        if config.speaker_selection is SpeakerSelection.LLM_SELECT:
            roster = "\n".join(
                f'  - "{agent.name}" (ID: {agent.id}): {agent.description or "No description"}'
                for agent in agents.values()
            )
            recent = "\n".join(
                f"{item.agent_name}: {item.content[:SELECTION_SNIPPET_CHARS]}"
                for item in conversation[-5:]
            )
            prompt = (
                f"Given the following discussion participants:\n{roster}\n\n"
                "Recent conversation:\n"
                f"{recent or '(No messages yet, this is the opening turn)'}\n\n"
                f"Topic: {state.run.input_task}\n\n"
                "Which agent should speak next? Respond with ONLY the agent ID, nothing else."
            )
            picked = self._ask_for_speaker(
                state,
                selector_id=config.agent_ids[0],
                system_prompt=MODERATOR_PROMPT,
                user_prompt=prompt,
                candidates=list(config.agent_ids),
                turn=turn,
            )
            return picked or round_robin

        if config.speaker_selection is SpeakerSelection.FACILITATOR:
            facilitator_id = config.facilitator_agent_id
            if facilitator_id is None or facilitator_id not in agents:
                return round_robin
            if turn % 2 == 0 and turn > 0:
                others = [agent_id for agent_id in config.agent_ids if agent_id != facilitator_id]
                if not others:
                    return facilitator_id
                roster = "\n".join(
                    f'  - "{agents[agent_id].name}" (ID: {agent_id})'
                    if agent_id in agents
                    else f"  - Unknown (ID: {agent_id})"
                    for agent_id in others
                )
                recent = "\n".join(
                    f"{item.agent_name}: {item.content[:SELECTION_SNIPPET_CHARS]}"
                    for item in conversation[-3:]
                )
                picked = self._ask_for_speaker(
                    state,
                    selector_id=facilitator_id,
                    system_prompt=FACILITATOR_PROMPT,
                    user_prompt=(
                        f"Participants:\n{roster}\n\nRecent:\n{recent}\n\n"
                        "Who should speak next? Respond with ONLY the agent ID."
                    ),
                    candidates=others,
                    turn=turn,
                )
                return picked or others[(turn // 2) % len(others)]
            return facilitator_id

        return round_robin

    def _ask_for_speaker(  # noqa: PLR0913
        self,
        state: RunState,
        *,
        selector_id: str,
        system_prompt: str,
        user_prompt: str,
        candidates: list[str],
        turn: int,
    ) -> str | None:
        """Ask an agent to name the next speaker; None when the answer is unusable."""

        try:
            call = self.llm.call(
                LlmCallRequest(
                    workspace_id=state.workspace_id,
                    agent_id=selector_id,
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                ),
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("Speaker selection failed on turn %d: %s", turn, error)
            return None

        self.account(
            state,
            call,
            agent_id=selector_id,
            step_index=turn,
            step_name="speaker_selection",
        )
        answer = call.result.strip()
        if answer in candidates:
            return answer
        for agent_id in candidates:
            if agent_id in call.result:
                return agent_id
        return None
