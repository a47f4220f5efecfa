"""Built-in and webhook-backed tool implementations.

Every tool returns text for the model. Failures are reported as `Error ...` strings
instead of raised, so one broken tool call never aborts a task.
"""

from __future__ import annotations

import html
import json
import logging
import os
import re
import subprocess
import sys
import tempfile
from collections.abc import Iterable
from typing import Any
from urllib.parse import quote_plus

from agent_crew.engine.errors import ToolError
from agent_crew.engine.models import CustomToolView
from agent_crew.engine.providers.base import ToolCall
from agent_crew.engine.tools import sandbox
from agent_crew.engine.tools.definitions import CUSTOM_TOOL_NAME_PREFIX
from agent_crew.engine.tools.sandbox import SandboxResult
from agent_crew.http.fetcher import HttpFetcher

logger = logging.getLogger(__name__)

SEARCH_URL = "https://html.duckduckgo.com/html/?q={query}"
LANGUAGETOOL_URL = "https://api.languagetool.org/v2/check"
SEARCH_MAX_RESULTS = 5
HTTP_RESPONSE_MAX_CHARS = 4000
READ_FILE_MAX_CHARS = 8000
WEBHOOK_ERROR_MAX_CHARS = 2000
GRAMMAR_MAX_ISSUES = 20
GRAMMAR_MAX_SUGGESTIONS = 3
ALLOWED_HTTP_METHODS = frozenset({"GET", "POST", "PUT", "DELETE"})
_TRUNCATION_MARKER = "\n... (truncated)"
_SNIPPET_RE = re.compile(r'class="result__snippet"[^>]*>([\s\S]*?)</a>')
_TAG_RE = re.compile(r"<[^>]+>")


class ToolExecutor:
    """Dispatch model tool calls to their implementations."""

    def __init__(
        self,
        *,
        fetcher: HttpFetcher,
        custom_tools: Iterable[CustomToolView] = (),
        code_timeout_seconds: float = 10.0,
        grammar_timeout_seconds: float = 15.0,
    ) -> None:
        self._fetcher = fetcher
        self._custom_tools = {tool.name: tool for tool in custom_tools}
        self._code_timeout_seconds = code_timeout_seconds
        self._grammar_timeout_seconds = grammar_timeout_seconds

    def execute(self, tool_call: ToolCall) -> str:
        """Run one tool call and return its text result."""

        name = tool_call.name
        try:
            args = json.loads(tool_call.arguments or "{}")
        except json.JSONDecodeError:
            return f"Error: Invalid JSON arguments: {tool_call.arguments}"
        if not isinstance(args, dict):
            return f"Error: Invalid JSON arguments: {tool_call.arguments}"

        try:
            if name.startswith(CUSTOM_TOOL_NAME_PREFIX):
                tool_name = name[len(CUSTOM_TOOL_NAME_PREFIX) :]
                tool = self._custom_tools.get(tool_name)
                if tool is None:
                    return f'Error: Custom tool "{tool_name}" not found'
                return self._custom_webhook(tool, args)
            if name == "web_search":
                return self._web_search(_require_str(args, "query"))
            if name == "http_request":
                return self._http_request(
                    _require_str(args, "url"),
                    str(args.get("method") or "GET"),
                    args.get("body"),
                )
            if name == "code_interpreter":
                return self._code_interpreter(_require_str(args, "code"))
            if name == "read_file":
                return self._read_file(_require_str(args, "url"))
            if name == "grammar_check":
                return self._grammar_check(
                    _require_str(args, "text"),
                    str(args.get("language") or "auto"),
                )
        except Exception as error:  # noqa: BLE001
            logger.warning("Tool %s failed: %s", name, error)
            return f"Error executing {name}: {error}"
        return f'Error: Unknown tool "{name}"'

    def _web_search(self, query: str) -> str:
        result = self._fetcher.fetch(SEARCH_URL.format(query=quote_plus(query)))
        if not result.is_success:
            if result.status_code == 0:
                raise ToolError(result.error or "request failed")
            return f"Search failed with status {result.status_code}"

        snippets: list[str] = []
        for match in _SNIPPET_RE.finditer(result.content):
            snippet = html.unescape(_TAG_RE.sub("", match.group(1))).strip()
            if snippet:
                snippets.append(snippet)
            if len(snippets) >= SEARCH_MAX_RESULTS:
                break
        if not snippets:
            return f'No search results found for: "{query}"'
        body = "\n\n".join(f"{index}. {snippet}" for index, snippet in enumerate(snippets, 1))
        return f'Search results for "{query}":\n\n{body}'

    def _http_request(self, url: str, method: str, body: object) -> str:
        verb = method.upper()
        if verb not in ALLOWED_HTTP_METHODS:
            raise ToolError(f"Unsupported HTTP method: {method}")
        headers = {"Accept": "application/json, text/plain, */*"}
        content: str | None = None
        if verb in {"POST", "PUT"} and body is not None:
            content = body if isinstance(body, str) else json.dumps(body)
            headers["Content-Type"] = "application/json"
        result = self._fetcher.request(verb, url, content=content, headers=headers)
        if result.status_code == 0:
            raise ToolError(result.error or "request failed")
        return f"{result.status_line}\n\n{_truncate(result.content, HTTP_RESPONSE_MAX_CHARS)}"

    def _code_interpreter(self, code: str) -> str:
        with tempfile.TemporaryDirectory(prefix="agent-crew-code-") as workdir:
            try:
                completed = subprocess.run(  # noqa: S603
                    [sys.executable, "-I", sandbox.__file__, f"{self._code_timeout_seconds:g}"],
                    input=code,
                    check=False,
                    capture_output=True,
                    text=True,
                    timeout=self._code_timeout_seconds,
                    cwd=workdir,
                    env=sandbox_environment(),
                )
            except subprocess.TimeoutExpired:
                return f"Code execution error: timed out after {self._code_timeout_seconds:g}s"

        try:
            outcome = SandboxResult.from_json(completed.stdout)
        except ValueError:
            error_text = completed.stderr.strip() or f"exit code {completed.returncode}"
            outcome = SandboxResult(error=error_text)
        return format_code_result(outcome)

    def _read_file(self, url: str) -> str:
        result = self._fetcher.fetch(url)
        if result.status_code == 0:
            raise ToolError(result.error or "request failed")
        if not result.is_success:
            return f"Failed to read file: {result.status_line}"
        return _truncate(result.content, READ_FILE_MAX_CHARS)

    def _grammar_check(self, text: str, language: str) -> str:
        result = self._fetcher.request(
            "POST",
            LANGUAGETOOL_URL,
            data={"text": text, "language": language, "enabledOnly": "false"},
            headers={"Accept": "application/json"},
            timeout_seconds=self._grammar_timeout_seconds,
        )
        if result.status_code == 0:
            raise ToolError(result.error or "request failed")
        if not result.is_success:
            return f"Grammar check failed: {result.status_line}"
        return format_grammar_report(result.json())

    def _custom_webhook(self, tool: CustomToolView, args: dict[str, Any]) -> str:
        headers = {"Content-Type": "application/json", **tool.webhook_headers}
        result = self._fetcher.request(
            "POST",
            tool.webhook_url,
            content=json.dumps(args),
            headers=headers,
        )
        if result.status_code == 0:
            raise ToolError(result.error or "request failed")
        if not result.is_success:
            return (
                f"Custom tool webhook error: {result.status_line}\n\n"
                f"{result.content[:WEBHOOK_ERROR_MAX_CHARS]}"
            )
        return _truncate(result.content, HTTP_RESPONSE_MAX_CHARS)


def sandbox_environment() -> dict[str, str]:
    """Environment for the sandbox child; nothing from the runner's own environment leaks in."""

    env = {"PATH": os.defpath, "LC_ALL": "C.UTF-8", "PYTHONIOENCODING": "utf-8"}
    if "SYSTEMROOT" in os.environ:
        env["SYSTEMROOT"] = os.environ["SYSTEMROOT"]
    return env


def format_code_result(outcome: SandboxResult) -> str:
    stdout = outcome.stdout.strip()
    if outcome.error:
        if stdout:
            return _truncate(
                f"Console output:\n{stdout}\n\nCode execution error: {outcome.error}",
                HTTP_RESPONSE_MAX_CHARS,
            )
        return _truncate(f"Code execution error: {outcome.error}", HTTP_RESPONSE_MAX_CHARS)
    return _truncate(stdout or "(no output)", HTTP_RESPONSE_MAX_CHARS)


def format_grammar_report(payload: dict[str, Any]) -> str:
    """Render a LanguageTool `/v2/check` response for the model."""

    language_info = payload.get("language") or {}
    language = (language_info.get("detectedLanguage") or {}).get("name") or language_info.get(
        "name",
        "unknown",
    )
    matches = payload.get("matches") or []
    if not matches:
        return (
            "✅ No grammar, spelling, or style issues found. "
            f"Language detected: {language}."
        )

    lines = [f"Found {len(matches)} issue(s) (Language: {language}):\n\n"]
    for index, match in enumerate(matches[:GRAMMAR_MAX_ISSUES], 1):
        category = ((match.get("rule") or {}).get("category") or {}).get("name") or "General"
        context = str((match.get("context") or {}).get("text") or "")
        entry = (
            f'{index}. [{category}] {match.get("message", "")}\n'
            f'   Context: "...{context}..."\n'
        )
        suggestions = [
            str(item.get("value"))
            for item in (match.get("replacements") or [])[:GRAMMAR_MAX_SUGGESTIONS]
            if item.get("value") is not None
        ]
        if suggestions:
            entry += "   Suggestions: " + ", ".join(f'"{value}"' for value in suggestions) + "\n"
        lines.append(entry + "\n")
    if len(matches) > GRAMMAR_MAX_ISSUES:
        lines.append(f"... and {len(matches) - GRAMMAR_MAX_ISSUES} more issues.\n")
    return "".join(lines)


def _require_str(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise ToolError(f'missing required argument "{key}"')
    return value


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + _TRUNCATION_MARKER
