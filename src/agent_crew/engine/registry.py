"""Runner registration, heartbeats and stale-claim recovery."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import timedelta

from agent_crew.config import RunnerSettings
from agent_crew.engine.models import RecoverySummary, RunnerView
from agent_crew.engine.repository import EngineRepository

logger = logging.getLogger(__name__)

THREAD_JOIN_TIMEOUT_SECONDS = 15.0


class RunnerRegistry:
    """Keeps this process's Runner row alive and requeues work lost by dead runners.

    `register()` inserts the row and starts two daemon threads: one refreshes the
    heartbeat, one runs `sweep()` periodically. `deregister()` stops both and deletes
    the row so nothing this runner claimed is considered orphaned by a clean shutdown.
    With work still in flight the row is marked dead instead, so the sweep requeues it.
    """

    def __init__(self, *, repository: EngineRepository, settings: RunnerSettings) -> None:
        self.repository = repository
        self.settings = settings
        self.runner: RunnerView | None = None
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def runner_id(self) -> str:
        if self.runner is None:
            raise RuntimeError("Runner is not registered.")
        return self.runner.id

    def register(self, *, start_threads: bool = True) -> RunnerView:
        self.runner = self.repository.register_runner(
            instance_name=self.settings.instance_name,
            max_concurrency=self.settings.max_concurrency,
        )
        logger.info(
            "Registered runner %s (%s, max_concurrency=%d)",
            self.runner.id,
            self.runner.instance_name,
            self.runner.max_concurrency,
        )
        if start_threads:
            self._stop.clear()
            self._start_thread(
                self._heartbeat_once,
                self.settings.heartbeat_interval_seconds,
                name="runner-heartbeat",
            )
            self._start_thread(
                self.sweep,
                self.settings.sweep_interval_seconds,
                name="runner-sweep",
            )
        return self.runner

    def deregister(self, *, work_in_flight: bool = False) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)
        self._threads = []
        if self.runner is None:
            return
        if work_in_flight:
            self.repository.mark_runner_dead(runner_id=self.runner.id)
            logger.warning(
                "Runner %s stopped with work in flight; marked dead for recovery",
                self.runner.id,
            )
        else:
            self.repository.delete_runner(runner_id=self.runner.id)
            logger.info("Deregistered runner %s", self.runner.id)
        self.runner = None

    def sweep(self) -> RecoverySummary:
        """Mark silent runners dead, then requeue their claims. Safe to repeat."""

        marked = self.repository.mark_stale_runners_dead(
            dead_after=timedelta(seconds=self.settings.dead_after_seconds),
        )
        if marked:
            logger.info("Marked %d stale runner(s) dead", marked)
        summary = self.repository.recover_stale_claims()
        summary.runners_marked_dead = marked
        if summary.tasks_requeued or summary.team_runs_requeued:
            logger.info(
                "Recovered %d task(s) and %d team run(s) from lost runners",
                summary.tasks_requeued,
                summary.team_runs_requeued,
            )
        return summary

    def _heartbeat_once(self) -> None:
        if self.runner is None:
            return
        if self.repository.heartbeat_runner(runner_id=self.runner.id):
            return
        if self.repository.reactivate_runner(runner_id=self.runner.id):
            logger.warning("Runner %s was marked dead; reactivated", self.runner.id)
        else:
            logger.warning("Heartbeat for runner %s was not recorded", self.runner.id)

    def _start_thread(self, action: Callable[[], object], interval: float, *, name: str) -> None:
        thread = threading.Thread(
            target=self._periodic,
            args=(action, interval, name),
            daemon=True,
            name=name,
        )
        thread.start()
        self._threads.append(thread)

    def _periodic(self, action: Callable[[], object], interval: float, name: str) -> None:
        while not self._stop.wait(timeout=interval):
            try:
                action()
            except Exception:
                logger.exception("Runner %s thread error", name)
