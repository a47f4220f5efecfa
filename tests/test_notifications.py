from __future__ import annotations

import hashlib
import hmac
import json

import allure
import httpx

from agent_crew.config import NotificationSettings, ToolSettings
from agent_crew.engine.errors import ProviderError
from agent_crew.engine.executors.pipeline import PipelineExecutor
from agent_crew.engine.executors.task import TaskExecutor
from agent_crew.engine.models import NotificationEvent, OutputRouteCreate, TeamMode
from agent_crew.engine.notifications import (
    SIGNATURE_HEADER,
    NotificationOutbox,
    sign_body,
)

pytestmark = [
    allure.epic("Notifications"),
    allure.feature("Webhook Outbox"),
]


class WebhookReceiver:
    def __init__(self, *statuses: int) -> None:
        self.requests: list[httpx.Request] = []
        self._statuses = list(statuses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self._statuses.pop(0) if self._statuses else 200
        return httpx.Response(status, json={"ok": status < 400})

    def payloads(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests]


def _outbox(harness, receiver: WebhookReceiver, sleeps: list[float] | None = None):
    return NotificationOutbox(
        repository=harness.repository,
        settings=NotificationSettings(retry_delay_seconds=1.5),
        transport=httpx.MockTransport(receiver),
        sleep=(sleeps.append if sleeps is not None else lambda _: None),
    )


def _route(harness, *events: str, secret: str | None = None):
    return harness.repository.create_output_route(
        workspace_id="default",
        payload=OutputRouteCreate(
            name="ops",
            url="https://hooks.example.com/agent-crew",
            events=events,
            secret=secret,
        ),
    )


def _run_task(harness, outbox: NotificationOutbox, reply: str | Exception = "All done."):
    agent = harness.add_agent("Analyst")
    harness.provider.script("model-analyst", reply)
    task = harness.claim_task(agent, title="Weekly digest")
    TaskExecutor(
        repository=harness.repository,
        llm=harness.llm,
        ledger=harness.ledger,
        tool_settings=ToolSettings(),
        outbox=outbox,
    ).execute(task, runner_id=harness.runner_id)
    return task


def test_sign_body_is_hmac_sha256() -> None:
    expected = hmac.new(b"secret", b'{"a": 1}', hashlib.sha256).hexdigest()

    assert sign_body("secret", '{"a": 1}') == f"sha256={expected}"


def test_task_completion_is_delivered_with_signature(harness) -> None:
    receiver = WebhookReceiver()
    outbox = _outbox(harness, receiver)
    route = _route(harness, NotificationEvent.TASK_COMPLETED.value, secret="s3cret")

    task = _run_task(harness, outbox)
    assert receiver.requests == []
    assert outbox.drain() == 1

    [request] = receiver.requests
    assert str(request.url) == route.url
    assert request.headers[SIGNATURE_HEADER] == sign_body("s3cret", request.content.decode())
    assert request.headers["User-Agent"] == "AgentCrew-Webhook/1.0"
    [payload] = receiver.payloads()
    assert payload["event"] == "task.completed"
    assert payload["task_id"] == task.id
    assert payload["team_run_id"] is None
    assert payload["task_title"] == "Weekly digest"
    assert payload["agent_name"] == "Analyst"
    assert payload["status"] == "completed"
    assert payload["result_full"] == "All done."

    [delivery] = harness.repository.list_webhook_deliveries(subject_id=task.id)
    assert (delivery.status, delivery.status_code, delivery.attempts) == ("success", 200, 1)


def test_routes_only_receive_subscribed_events(harness) -> None:
    receiver = WebhookReceiver()
    outbox = _outbox(harness, receiver)
    _route(harness, NotificationEvent.TASK_FAILED.value)

    _run_task(harness, outbox)
    outbox.drain()

    assert receiver.requests == []
    assert harness.repository.list_webhook_deliveries() == []


def test_failed_delivery_is_retried_once_then_logged(harness) -> None:
    receiver = WebhookReceiver(500, 502)
    sleeps: list[float] = []
    outbox = _outbox(harness, receiver, sleeps)
    _route(harness, NotificationEvent.TASK_FAILED.value)

    task = _run_task(
        harness,
        outbox,
        ProviderError("ollama API error 500: boom", provider="ollama", status_code=500),
    )
    outbox.drain()

    assert len(receiver.requests) == 2
    assert sleeps == [1.5]
    payload = receiver.payloads()[0]
    assert payload["error"].startswith("ollama API error 500: boom (")
    assert payload["failure_class"] == "provider_transient"
    [delivery] = harness.repository.list_webhook_deliveries(subject_id=task.id)
    assert delivery.status == "failed"
    assert delivery.status_code == 502
    assert delivery.error == "HTTP 502"
    assert delivery.attempts == 2


def test_retry_can_succeed(harness) -> None:
    receiver = WebhookReceiver(503, 200)
    outbox = _outbox(harness, receiver)
    _route(harness, NotificationEvent.TASK_COMPLETED.value)

    task = _run_task(harness, outbox)
    outbox.drain()

    [delivery] = harness.repository.list_webhook_deliveries(subject_id=task.id)
    assert (delivery.status, delivery.attempts) == ("success", 2)


def test_team_run_failure_is_notified(harness) -> None:
    receiver = WebhookReceiver()
    outbox = _outbox(harness, receiver)
    _route(harness, NotificationEvent.TEAM_RUN_FAILED.value)
    team = harness.add_team(
        TeamMode.PIPELINE,
        {"steps": [{"agent_id": "ghost", "step_name": "Haunt"}]},
        name="Night shift",
    )
    run = harness.claim_run(team)

    PipelineExecutor(
        repository=harness.repository,
        llm=harness.llm,
        ledger=harness.ledger,
        outbox=outbox,
    ).execute(run, team, runner_id=harness.runner_id)
    outbox.drain()

    [payload] = receiver.payloads()
    assert payload["event"] == "team_run.failed"
    assert payload["team_run_id"] == run.id
    assert payload["agent_name"] == "Night shift"
    assert payload["status"] == "failed"
    assert "Agent not found" in payload["error"]
    assert payload["failure_class"] is None


def test_background_thread_delivers_before_stop(harness) -> None:
    receiver = WebhookReceiver()
    outbox = _outbox(harness, receiver)
    _route(harness, NotificationEvent.TASK_COMPLETED.value)

    outbox.start()
    task = _run_task(harness, outbox)
    outbox.stop(timeout=10)

    assert receiver.payloads()[0]["task_id"] == task.id
