"""Outbound webhook notifications for task and team run outcomes.

`NotificationOutbox.dispatch` only enqueues. A background thread resolves the
workspace's active `http` output routes, POSTs the JSON payload with an optional
HMAC signature, retries once, and records every final outcome in
`webhook_deliveries`.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError

from agent_crew.config import NotificationSettings
from agent_crew.engine.models import (
    RESULT_PREVIEW_CHARS,
    NotificationEvent,
    OutputRouteView,
    TaskView,
    TeamRunView,
    WebhookDeliveryWrite,
)
from agent_crew.engine.repository import EngineRepository
from agent_crew.http.fetcher import HttpFetcher
from agent_crew.storage.common import utc_now

logger = logging.getLogger(__name__)

WEBHOOK_USER_AGENT = "AgentCrew-Webhook/1.0"
SIGNATURE_HEADER = "X-AgentCrew-Signature"
_STOP = object()


@dataclass(slots=True)
class Notification:
    workspace_id: str
    event: str
    subject_id: str
    payload: dict[str, Any]


@dataclass(slots=True)
class DeliveryOutcome:
    route_id: str
    status: str
    status_code: int | None
    error: str | None
    attempts: int


def task_payload(task: TaskView, *, agent_name: str, event: NotificationEvent) -> dict[str, Any]:
    return {
        "event": event.value,
        "task_id": task.id,
        "team_run_id": None,
        "task_title": task.title,
        "agent_name": agent_name,
        "status": task.status.value,
        "result_preview": task.result[:RESULT_PREVIEW_CHARS] if task.result else None,
        "result_full": task.result,
        "error": task.error,
        "failure_class": task.failure_class.value if task.failure_class else None,
        "timestamp": utc_now().isoformat(),
    }


def team_run_payload(
    run: TeamRunView,
    *,
    team_name: str,
    event: NotificationEvent,
) -> dict[str, Any]:
    return {
        "event": event.value,
        "task_id": None,
        "team_run_id": run.id,
        "task_title": run.input_task,
        "agent_name": team_name,
        "status": run.status.value,
        "result_preview": run.output[:RESULT_PREVIEW_CHARS] if run.output else None,
        "result_full": run.output,
        "error": run.error_message,
        "failure_class": run.failure_class.value if run.failure_class else None,
        "timestamp": utc_now().isoformat(),
    }


def sign_body(secret: str, body: str) -> str:
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class NotificationOutbox:
    """Queue-backed webhook dispatcher; `dispatch` never raises."""

    def __init__(
        self,
        *,
        repository: EngineRepository,
        settings: NotificationSettings,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._fetcher = HttpFetcher(
            timeout_seconds=settings.timeout_seconds,
            max_retries=0,
            user_agent=WEBHOOK_USER_AGENT,
            transport=transport,
        )
        self._sleep = sleep
        self._queue: queue.Queue[Notification | object] = queue.Queue()
        self._thread: threading.Thread | None = None

    def dispatch(
        self,
        event: NotificationEvent | str,
        payload: dict[str, Any],
        *,
        workspace_id: str,
    ) -> None:
        event_name = event.value if isinstance(event, NotificationEvent) else str(event)
        subject_id = payload.get("task_id") or payload.get("team_run_id") or ""
        self._queue.put(
            Notification(
                workspace_id=workspace_id,
                event=event_name,
                subject_id=str(subject_id),
                payload=payload,
            ),
        )

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._worker_loop,
            daemon=True,
            name="agent-crew-notifications",
        )
        self._thread.start()
        logger.info("Notification outbox started")

    def stop(self, timeout: float = 30.0) -> None:
        """Deliver what is queued, then stop the background thread."""

        if self._thread is None:
            self.drain()
            self._fetcher.close()
            return
        self._queue.put(_STOP)
        self._thread.join(timeout=timeout)
        self._thread = None
        self._fetcher.close()
        logger.info("Notification outbox stopped")

    def drain(self) -> int:
        """Deliver every queued notification on the calling thread."""

        processed = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return processed
            if isinstance(item, Notification):
                self._process(item)
                processed += 1

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            if isinstance(item, Notification):
                try:
                    self._process(item)
                except Exception:
                    logger.exception("Notification outbox error")

    def _process(self, notification: Notification) -> list[DeliveryOutcome]:
        try:
            routes = self._repository.list_active_routes(
                workspace_id=notification.workspace_id,
                event=notification.event,
            )
        except SQLAlchemyError as error:
            logger.warning("Failed to load output routes for %s: %s", notification.event, error)
            return []
        return [self.deliver(route, notification) for route in routes]

    def deliver(self, route: OutputRouteView, notification: Notification) -> DeliveryOutcome:
        """POST one payload to one route with retry, then log the outcome."""

        body = json.dumps(notification.payload, ensure_ascii=False)
        headers = {"Content-Type": "application/json"}
        if route.secret:
            headers[SIGNATURE_HEADER] = sign_body(route.secret, body)

        status_code: int | None = None
        last_error: str | None = None
        attempts = 0
        for attempt in range(self._settings.attempts):
            if attempt > 0:
                self._sleep(self._settings.retry_delay_seconds)
            attempts += 1
            result = self._fetcher.request("POST", route.url, content=body, headers=headers)
            if result.status_code:
                status_code = result.status_code
            if result.is_success:
                outcome = DeliveryOutcome(
                    route_id=route.id,
                    status="success",
                    status_code=status_code,
                    error=None,
                    attempts=attempts,
                )
                self._log_delivery(outcome, notification)
                return outcome
            last_error = result.error or f"HTTP {result.status_code}"

        outcome = DeliveryOutcome(
            route_id=route.id,
            status="failed",
            status_code=status_code,
            error=last_error,
            attempts=attempts,
        )
        self._log_delivery(outcome, notification)
        logger.error(
            "Failed to deliver %s to route %r: %s",
            notification.event,
            route.name,
            last_error,
        )
        return outcome

    def _log_delivery(self, outcome: DeliveryOutcome, notification: Notification) -> None:
        try:
            self._repository.add_webhook_delivery(
                WebhookDeliveryWrite(
                    route_id=outcome.route_id,
                    subject_id=notification.subject_id,
                    event=notification.event,
                    status=outcome.status,
                    status_code=outcome.status_code,
                    error=outcome.error,
                    attempts=outcome.attempts,
                    payload=notification.payload,
                ),
            )
        except SQLAlchemyError as error:
            logger.warning(
                "Failed to log webhook delivery for route %s: %s",
                outcome.route_id,
                error,
            )
