"""Agent tools: definitions, execution, and the tool-use loop."""

from agent_crew.engine.tools.definitions import (
    BUILTIN_TOOLS,
    custom_tool_ids,
    get_tool_definitions,
)
from agent_crew.engine.tools.executor import ToolExecutor
from agent_crew.engine.tools.loop import MAX_ROUNDS_SENTINEL, ToolLoopResult, run_tool_loop

__all__ = [
    "BUILTIN_TOOLS",
    "MAX_ROUNDS_SENTINEL",
    "ToolExecutor",
    "ToolLoopResult",
    "custom_tool_ids",
    "get_tool_definitions",
    "run_tool_loop",
]
