"""Multi-round tool-use loop over an OpenAI-compatible chat call."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agent_crew.engine.models import TokenUsage
from agent_crew.engine.providers.base import ChatCompletion, ChatMessage
from agent_crew.engine.tools.executor import ToolExecutor

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 10
MAX_ROUNDS_SENTINEL = "[Tool-use loop reached maximum rounds without final response]"

ChatFn = Callable[[list[ChatMessage], list[dict[str, Any]]], ChatCompletion]


@dataclass(slots=True)
class ToolLoopResult:
    result: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    tool_calls_made: int = 0
    rounds: int = 0


def run_tool_loop(  # noqa: PLR0913
    chat: ChatFn,
    system_prompt: str,
    user_prompt: str,
    tools: list[dict[str, Any]],
    executor: ToolExecutor,
    max_rounds: int = MAX_TOOL_ROUNDS,
) -> ToolLoopResult:
    """Alternate model rounds and tool executions until the model answers without tools."""

    messages: list[ChatMessage] = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]
    usage = TokenUsage()
    tool_calls_made = 0
    last_assistant_content: str | None = None

    for round_index in range(max_rounds):
        completion = chat(messages, tools)
        usage.add(completion.usage)

        if not completion.tool_calls:
            return ToolLoopResult(
                result=completion.content or "",
                usage=usage,
                tool_calls_made=tool_calls_made,
                rounds=round_index + 1,
            )

        last_assistant_content = completion.content
        messages.append(
            {
                "role": "assistant",
                "content": completion.content,
                "tool_calls": [call.to_message_part() for call in completion.tool_calls],
            },
        )
        for tool_call in completion.tool_calls:
            tool_calls_made += 1
            logger.info(
                "Executing tool %s (round %d, call #%d)",
                tool_call.name,
                round_index + 1,
                tool_calls_made,
            )
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": tool_call.id,
                    "content": executor.execute(tool_call),
                },
            )

    logger.warning("Tool-use loop stopped after %d rounds without a final answer", max_rounds)
    return ToolLoopResult(
        result=last_assistant_content or MAX_ROUNDS_SENTINEL,
        usage=usage,
        tool_calls_made=tool_calls_made,
        rounds=max_rounds,
    )
