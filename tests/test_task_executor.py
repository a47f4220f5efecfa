from __future__ import annotations

import itertools
import json

import allure
import httpx
import pytest

from agent_crew.config import ToolSettings
from agent_crew.engine.errors import ProviderError
from agent_crew.engine.executors.task import NO_AGENT_ERROR, TaskExecutor, build_task_prompt
from agent_crew.engine.models import (
    CustomToolCreate,
    ExecutionStatus,
    FailureClass,
    TaskCreate,
    TaskStatus,
    TokenUsage,
)
from agent_crew.engine.providers.base import ChatCompletion, ToolCall
from agent_crew.engine.throttle import ProgressThrottle

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Single-Agent Tasks"),
]


def _executor(harness, **kwargs) -> TaskExecutor:
    return TaskExecutor(
        repository=harness.repository,
        llm=harness.llm,
        ledger=harness.ledger,
        tool_settings=ToolSettings(),
        **kwargs,
    )


def _record_partial_writes(harness, monkeypatch: pytest.MonkeyPatch) -> list[str]:
    writes: list[str] = []
    original = harness.repository.update_task_partial_result

    def record(**kwargs) -> bool:
        writes.append(kwargs["result"])
        return original(**kwargs)

    monkeypatch.setattr(harness.repository, "update_task_partial_result", record)
    return writes


def test_throttle_allows_one_write_per_interval() -> None:
    now = [0.0]
    throttle = ProgressThrottle(min_interval_seconds=0.5, clock=lambda: now[0])

    first = throttle.should_write()
    now[0] = 0.2
    too_soon = throttle.should_write()
    now[0] = 0.7
    later = throttle.should_write()
    throttle.reset()

    assert (first, too_soon, later) == (True, False, True)
    assert throttle.should_write() is True


def test_task_completes_with_usage_and_ledger(harness) -> None:
    agent = harness.add_agent("Analyst", system_prompt="You analyze reports.")
    harness.provider.script("model-analyst", "Revenue grew 12%.")
    task = harness.claim_task(agent, title="Q3 report")

    status = _executor(harness).execute(task, runner_id=harness.runner_id)

    assert status is TaskStatus.COMPLETED
    stored = harness.repository.get_task(task.id)
    assert stored.result == "Revenue grew 12%."
    assert stored.metadata["usage"]["total_tokens"] == 150
    call = harness.provider.calls_for("model-analyst")[0]
    assert call.system_prompt == "You analyze reports."
    assert call.user_prompt == build_task_prompt(task)
    assert call.user_prompt.startswith("Task Title: Q3 report\n\nTask Description:\n")

    details = harness.repository.get_task_details(task_id=task.id, workspace_id=task.workspace_id)
    [execution] = details.executions
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.runner_id == harness.runner_id
    assert execution.usage.total_tokens == 150
    [record] = harness.repository.list_usage_records(task_id=task.id)
    assert record.event_type == "task_execution"
    assert record.billing_model == "subscription-quota"
    assert record.cost_usd == 0.0


def test_partial_results_are_throttled(harness, monkeypatch: pytest.MonkeyPatch) -> None:
    agent = harness.add_agent("Analyst")
    harness.provider.script("model-analyst", "one two three four")
    task = harness.claim_task(agent)
    writes = _record_partial_writes(harness, monkeypatch)

    _executor(
        harness,
        throttle_factory=lambda: ProgressThrottle(clock=lambda: 0.0),
    ).execute(task, runner_id=harness.runner_id)

    assert writes == ["one"]


def test_partial_results_flow_when_interval_passes(
    harness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    agent = harness.add_agent("Analyst")
    harness.provider.script("model-analyst", "one two three")
    task = harness.claim_task(agent)
    writes = _record_partial_writes(harness, monkeypatch)
    ticks = itertools.count(step=1.0)

    _executor(
        harness,
        throttle_factory=lambda: ProgressThrottle(clock=lambda: next(ticks)),
    ).execute(task, runner_id=harness.runner_id)

    assert writes == ["one", "one two", "one two three"]
    assert harness.repository.get_task(task.id).result == "one two three"


def test_model_not_found_gets_friendly_error(harness) -> None:
    agent = harness.add_agent("Analyst", model="llama-404")
    harness.provider.script(
        "llama-404",
        ProviderError(
            "ollama API error 404: The model `llama-404` does not exist",
            provider="ollama",
            status_code=404,
        ),
    )
    task = harness.claim_task(agent)

    status = _executor(harness).execute(task, runner_id=harness.runner_id)

    assert status is TaskStatus.FAILED
    error = harness.repository.get_task(task.id).error
    assert error.startswith('Model "llama-404" was not found for provider "ollama".')
    assert harness.repository.get_task(task.id).failure_class is FailureClass.MODEL_NOT_AVAILABLE
    details = harness.repository.get_task_details(task_id=task.id, workspace_id=task.workspace_id)
    assert details.executions[0].status is ExecutionStatus.FAILED
    assert details.executions[0].error == error


def test_provider_failure_class_is_stored_with_guidance(harness) -> None:
    agent = harness.add_agent("Analyst")
    harness.provider.script(
        "model-analyst",
        ProviderError("ollama API error 500: out of memory", provider="ollama", status_code=500),
    )
    task = harness.claim_task(agent)

    _executor(harness).execute(task, runner_id=harness.runner_id)

    stored = harness.repository.get_task(task.id)
    assert stored.failure_class is FailureClass.PROVIDER_TRANSIENT
    assert stored.error == (
        "ollama API error 500: out of memory "
        '(provider "ollama" is temporarily unavailable; retry later)'
    )


def test_non_retryable_provider_errors_are_kept_verbatim(harness) -> None:
    agent = harness.add_agent("Analyst")
    harness.provider.script(
        "model-analyst",
        ProviderError("ollama API error 400: bad prompt", provider="ollama", status_code=400),
    )
    task = harness.claim_task(agent)

    _executor(harness).execute(task, runner_id=harness.runner_id)

    stored = harness.repository.get_task(task.id)
    assert stored.error == "ollama API error 400: bad prompt"
    assert stored.failure_class is FailureClass.NON_RETRYABLE


def test_task_without_agent_fails(harness) -> None:
    task = harness.claim_task(None)

    status = _executor(harness).execute(task, runner_id=harness.runner_id)

    assert status is TaskStatus.FAILED
    assert harness.repository.get_task(task.id).error == NO_AGENT_ERROR
    details = harness.repository.get_task_details(task_id=task.id, workspace_id=task.workspace_id)
    assert details.executions == []


def test_unknown_agent_fails_with_load_error(harness) -> None:
    harness.repository.enqueue_task(
        workspace_id="default",
        payload=TaskCreate(title="Orphan", assigned_agent_id="ghost"),
    )
    task = harness.repository.claim_next_task(runner_id=harness.runner_id)

    status = _executor(harness).execute(task, runner_id=harness.runner_id)

    assert status is TaskStatus.FAILED
    assert harness.repository.get_task(task.id).error == "Failed to load agent ghost: not found"


def test_cancelled_task_is_not_started(harness) -> None:
    agent = harness.add_agent("Analyst")
    task = harness.claim_task(agent)
    harness.repository.cancel_task(task_id=task.id, workspace_id=task.workspace_id)

    status = _executor(harness).execute(task, runner_id=harness.runner_id)

    assert status is TaskStatus.CANCELLED
    assert harness.provider.calls == []


def test_agent_with_tools_runs_tool_loop(harness) -> None:
    agent = harness.add_agent("Researcher", tools=("web_search",))
    usage = TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15)
    harness.provider.script_chat(
        ChatCompletion(
            content=None,
            usage=usage,
            tool_calls=[
                ToolCall(id="call_1", name="web_search", arguments='{"query": "tides"}'),
            ],
        ),
        ChatCompletion(content="Tides happen twice daily.", usage=usage),
    )
    searches: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        searches.append(request)
        return httpx.Response(
            200,
            text='<a class="result__snippet" href="#">Two tides a day</a>',
        )

    task = harness.claim_task(agent)

    status = _executor(harness, transport=httpx.MockTransport(handler)).execute(
        task,
        runner_id=harness.runner_id,
    )

    assert status is TaskStatus.COMPLETED
    stored = harness.repository.get_task(task.id)
    assert stored.result == "Tides happen twice daily."
    assert stored.metadata["usage"]["total_tokens"] == 30
    assert searches[0].headers["User-Agent"] == "AgentCrew-Agent/1.0"
    tool_message = harness.provider.chat_calls[1][-1]
    assert tool_message["role"] == "tool"
    assert "1. Two tides a day" in tool_message["content"]
    assert harness.provider.calls == []


def test_custom_tool_is_offered_and_called(harness) -> None:
    tool = harness.repository.create_custom_tool(
        workspace_id="default",
        payload=CustomToolCreate(
            name="lookup_order",
            webhook_url="https://hooks.example.com/orders",
            parameters={"type": "object", "properties": {"id": {"type": "string"}}},
        ),
    )
    agent = harness.add_agent("Support", tools=(f"custom:{tool.id}",))
    harness.provider.script_chat(
        ChatCompletion(
            content=None,
            usage=TokenUsage(),
            tool_calls=[
                ToolCall(id="c1", name="custom_lookup_order", arguments='{"id": "A-7"}'),
            ],
        ),
        ChatCompletion(content="Order A-7 has shipped.", usage=TokenUsage()),
    )
    posted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "shipped"})

    task = harness.claim_task(agent)

    _executor(harness, transport=httpx.MockTransport(handler)).execute(
        task,
        runner_id=harness.runner_id,
    )

    assert posted == [{"id": "A-7"}]
    assert harness.repository.get_task(task.id).result == "Order A-7 has shipped."


def test_stale_runner_does_not_start_reclaimed_task(harness) -> None:
    task = harness.claim_task(harness.add_agent("Analyst"))
    successor = harness.hand_over_claims()
    assert harness.repository.claim_next_task(runner_id=successor) is not None

    status = _executor(harness).execute(task, runner_id=harness.runner_id)

    assert status is TaskStatus.DISPATCHED
    assert harness.provider.calls == []
    assert harness.repository.get_task(task.id).claimed_by_runner == successor


def test_tool_loop_stops_when_task_is_reclaimed(harness) -> None:
    agent = harness.add_agent("Researcher", tools=("web_search",))
    usage = TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15)
    harness.provider.script_chat(
        ChatCompletion(
            content=None,
            usage=usage,
            tool_calls=[
                ToolCall(id="call_1", name="web_search", arguments='{"query": "tides"}'),
            ],
        ),
        ChatCompletion(content="Written by the stale runner.", usage=usage),
    )
    task = harness.claim_task(agent)
    successor: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        successor.append(harness.hand_over_claims())
        assert harness.repository.claim_next_task(runner_id=successor[0]) is not None
        return httpx.Response(200, text="")

    status = _executor(harness, transport=httpx.MockTransport(handler)).execute(
        task,
        runner_id=harness.runner_id,
    )

    assert status is TaskStatus.DISPATCHED
    assert len(harness.provider.chat_calls) == 1
    stored = harness.repository.get_task(task.id)
    assert stored.claimed_by_runner == successor[0]
    assert stored.result is None
