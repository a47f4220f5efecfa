"""How the orchestrator brain expresses tool calls.

Two strategies share one interface:

- `TextToolCallStrategy` puts the tool menu in the system prompt as JSON and parses the
  free-text reply. Works with every provider.
- `NativeToolCallStrategy` sends the menu as OpenAI-style tool definitions and reads the
  structured tool call. Needs a provider with an OpenAI-compatible chat endpoint.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

from agent_crew.engine.llm import LlmCallRequest, LlmCallResult, LlmCallService, ResolvedAgent

logger = logging.getLogger(__name__)

ORCHESTRATOR_TOOLS: tuple[dict[str, Any], ...] = (
    {
        "name": "delegate_to_worker",
        "description": (
            "Delegate a subtask to a specific worker agent. "
            "The worker will execute and return a result."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "agent_id": {
                    "type": "string",
                    "description": "The ID of the worker agent to delegate to",
                },
                "instruction": {
                    "type": "string",
                    "description": "The specific instruction/subtask for the worker",
                },
            },
            "required": ["agent_id", "instruction"],
        },
    },
    {
        "name": "request_revision",
        "description": (
            "Request a revision from a worker on a previous delegation. "
            "Include feedback on what to improve."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "delegation_id": {
                    "type": "string",
                    "description": "The ID of the delegation to revise",
                },
                "feedback": {
                    "type": "string",
                    "description": "Feedback for the worker on what to improve",
                },
            },
            "required": ["delegation_id", "feedback"],
        },
    },
    {
        "name": "accept_result",
        "description": "Accept a worker delegation result as satisfactory.",
        "parameters": {
            "type": "object",
            "properties": {
                "delegation_id": {
                    "type": "string",
                    "description": "The ID of the delegation to accept",
                },
            },
            "required": ["delegation_id"],
        },
    },
    {
        "name": "final_answer",
        "description": (
            "Submit the final aggregated answer. Call this when all delegations are "
            "complete and you have synthesized the results."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "output": {"type": "string", "description": "The final synthesized output"},
            },
            "required": ["output"],
        },
    },
)

TOOL_NAMES = frozenset(tool["name"] for tool in ORCHESTRATOR_TOOLS)
_REQUIRED_ARGS = {
    tool["name"]: tuple(tool["parameters"]["required"]) for tool in ORCHESTRATOR_TOOLS
}
_FENCED_JSON_RE = re.compile(r"```json\s*(\{[\s\S]*?\})\s*```")


@dataclass(slots=True)
class ConversationEntry:
    role: str
    content: str


@dataclass(slots=True)
class BrainToolCall:
    """A parsed brain tool call; `missing` lists absent required arguments."""

    name: str
    arguments: dict[str, Any]
    missing: tuple[str, ...] = ()


@dataclass(slots=True)
class BrainDecision:
    content: str
    tool_call: BrainToolCall | None
    call: LlmCallResult


class BrainToolCallStrategy(Protocol):
    def decide(
        self,
        *,
        brain: ResolvedAgent,
        system_prompt: str,
        history: list[ConversationEntry],
    ) -> BrainDecision:
        """Ask the brain for its next move."""


def render_conversation(history: list[ConversationEntry]) -> str:
    rendered: list[str] = []
    for entry in history:
        if entry.role == "user":
            rendered.append(f"USER: {entry.content}")
        elif entry.role == "assistant":
            rendered.append(f"ASSISTANT: {entry.content}")
        elif entry.role == "tool":
            rendered.append(f"TOOL RESULT: {entry.content}")
        else:
            rendered.append(entry.content)
    return "\n\n".join(rendered)


def missing_arguments(name: str, arguments: dict[str, Any]) -> tuple[str, ...]:
    return tuple(
        key for key in _REQUIRED_ARGS.get(name, ()) if arguments.get(key) in (None, "")
    )


def parse_tool_call(text: str) -> BrainToolCall | None:
    """Find a tool call in free text; None means the text is a final answer.

    Tries an embedded JSON object naming a known tool, then a fenced ```json block,
    then the slice from the first `{` to the last `}`.
    """

    for candidate in _embedded_objects(text):
        call = _as_tool_call(candidate)
        if call is not None:
            return call

    fenced = _FENCED_JSON_RE.search(text)
    if fenced:
        call = _as_tool_call(_loads_object(fenced.group(1)))
        if call is not None:
            return call

    start = text.find("{")
    end = text.rfind("}")
    if 0 <= start < end:
        return _as_tool_call(_loads_object(text[start : end + 1]))
    return None


def _embedded_objects(text: str) -> list[dict[str, Any]]:
    decoder = json.JSONDecoder()
    objects: list[dict[str, Any]] = []
    index = text.find("{")
    while index != -1:
        try:
            value, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(value, dict):
            objects.append(value)
        index = text.find("{", end)
    return objects


def _loads_object(raw: str) -> dict[str, Any] | None:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _as_tool_call(payload: dict[str, Any] | None) -> BrainToolCall | None:
    if payload is None:
        return None
    name = payload.get("tool") or payload.get("name") or payload.get("function")
    if not isinstance(name, str) or name not in TOOL_NAMES:
        return None
    arguments = payload.get("arguments")
    if arguments is None:
        arguments = payload.get("params")
    if isinstance(arguments, str):
        arguments = _loads_object(arguments)
    if not isinstance(arguments, dict):
        arguments = payload
    return BrainToolCall(
        name=name,
        arguments=arguments,
        missing=missing_arguments(name, arguments),
    )


class TextToolCallStrategy:
    """Tool menu in the prompt, tool call parsed from the reply."""

    def __init__(self, llm: LlmCallService) -> None:
        self._llm = llm

    def decide(
        self,
        *,
        brain: ResolvedAgent,
        system_prompt: str,
        history: list[ConversationEntry],
    ) -> BrainDecision:
        call = self._llm.call(
            LlmCallRequest(
                workspace_id=brain.agent.workspace_id,
                agent_id=brain.agent.id,
                system_prompt=(
                    f"{system_prompt}\n\nAvailable tools:\n"
                    f"{json.dumps(list(ORCHESTRATOR_TOOLS), indent=2)}"
                ),
                user_prompt=render_conversation(history),
            ),
        )
        return BrainDecision(
            content=call.result,
            tool_call=parse_tool_call(call.result),
            call=call,
        )


class NativeToolCallStrategy:
    """Tool menu as native function definitions on the chat endpoint."""

    def __init__(self, llm: LlmCallService) -> None:
        self._llm = llm

    def decide(
        self,
        *,
        brain: ResolvedAgent,
        system_prompt: str,
        history: list[ConversationEntry],
    ) -> BrainDecision:
        completion = self._llm.chat(
            workspace_id=brain.agent.workspace_id,
            agent_id=brain.agent.id,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": render_conversation(history)},
            ],
            tools=[{"type": "function", "function": tool} for tool in ORCHESTRATOR_TOOLS],
        )
        content = completion.content or ""
        call = LlmCallResult(
            result=content,
            usage=completion.usage,
            provider=brain.provider,
            model=brain.agent.model,
        )
        if not completion.tool_calls:
            return BrainDecision(content=content, tool_call=None, call=call)

        first = completion.tool_calls[0]
        arguments = _loads_object(first.arguments)
        if arguments is None:
            logger.warning("Brain returned non-object arguments for %s", first.name)
            arguments = {}
        return BrainDecision(
            content=content,
            tool_call=BrainToolCall(
                name=first.name,
                arguments=arguments,
                missing=missing_arguments(first.name, arguments),
            ),
            call=call,
        )
