"""Built-in tool definitions in OpenAI function-calling format."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from agent_crew.engine.models import CustomToolView

CUSTOM_TOOL_REF_PREFIX = "custom:"
CUSTOM_TOOL_NAME_PREFIX = "custom_"


def _function(
    name: str,
    description: str,
    properties: dict[str, dict[str, str]],
    required: list[str],
) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


BUILTIN_TOOLS: dict[str, dict[str, Any]] = {
    "web_search": _function(
        "web_search",
        "Search the web for current information. Returns relevant text snippets.",
        {"query": {"type": "string", "description": "The search query"}},
        ["query"],
    ),
    "http_request": _function(
        "http_request",
        "Make an HTTP request to a URL. Returns the response body (truncated to 4000 chars).",
        {
            "url": {"type": "string", "description": "The URL to request"},
            "method": {
                "type": "string",
                "description": "HTTP method (GET, POST, PUT, DELETE). Defaults to GET.",
            },
            "body": {
                "type": "string",
                "description": "Request body for POST/PUT requests (JSON string)",
            },
        },
        ["url"],
    ),
    "code_interpreter": _function(
        "code_interpreter",
        "Execute Python code in an isolated interpreter. Returns printed output and errors.",
        {"code": {"type": "string", "description": "Python code to execute"}},
        ["code"],
    ),
    "read_file": _function(
        "read_file",
        "Read the contents of a file from a URL. Returns the file text "
        "(truncated to 8000 chars).",
        {"url": {"type": "string", "description": "URL of the file to read"}},
        ["url"],
    ),
    "grammar_check": _function(
        "grammar_check",
        "Check text for grammar, spelling, and style issues. Returns a list of issues "
        "with suggestions. Supports language auto-detection.",
        {
            "text": {
                "type": "string",
                "description": "The text to check for grammar and spelling issues",
            },
            "language": {
                "type": "string",
                "description": "Language code (e.g. en-US, de-DE, fr). Defaults to auto-detect.",
            },
        },
        ["text"],
    ),
}


def custom_tool_function_name(tool: CustomToolView) -> str:
    return f"{CUSTOM_TOOL_NAME_PREFIX}{tool.name}"


def get_tool_definitions(
    tool_names: Iterable[str],
    custom_tools: Iterable[CustomToolView] = (),
) -> list[dict[str, Any]]:
    """Definitions for the agent's tool names; unknown names are dropped."""

    custom_by_id = {tool.id: tool for tool in custom_tools}
    definitions: list[dict[str, Any]] = []
    for name in tool_names:
        if name.startswith(CUSTOM_TOOL_REF_PREFIX):
            tool = custom_by_id.get(name[len(CUSTOM_TOOL_REF_PREFIX) :])
            if tool is None:
                continue
            definitions.append(
                _function(
                    custom_tool_function_name(tool),
                    tool.description,
                    dict(tool.parameters.get("properties") or {}),
                    list(tool.parameters.get("required") or []),
                ),
            )
            continue
        definition = BUILTIN_TOOLS.get(name)
        if definition is not None:
            definitions.append(definition)
    return definitions


def custom_tool_ids(tool_names: Iterable[str]) -> list[str]:
    """Ids of the `custom:<id>` references among an agent's tools."""

    return [
        name[len(CUSTOM_TOOL_REF_PREFIX) :]
        for name in tool_names
        if name.startswith(CUSTOM_TOOL_REF_PREFIX)
    ]
