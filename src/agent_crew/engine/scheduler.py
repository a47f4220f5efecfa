"""Poll loop that claims queued work and runs it on a thread pool."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from agent_crew.config import RunnerSettings
from agent_crew.engine.executors.common import TeamRunExecutor
from agent_crew.engine.executors.task import TaskExecutor
from agent_crew.engine.models import TaskView, TeamMode, TeamRunView, TokenUsage
from agent_crew.engine.repository import EngineRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerPollSummary:
    """Counters for one or more poll cycles."""

    tasks_claimed: int = 0
    team_runs_claimed: int = 0
    idle_polls: int = 0
    cycles: int = 0

    @property
    def claimed(self) -> int:
        return self.tasks_claimed + self.team_runs_claimed

    def add(self, other: SchedulerPollSummary) -> None:
        self.tasks_claimed += other.tasks_claimed
        self.team_runs_claimed += other.team_runs_claimed
        self.idle_polls += other.idle_polls
        self.cycles += other.cycles


class Scheduler:
    """Claims tasks first, then team runs, and dispatches them without blocking the poll."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: EngineRepository,
        runner_id: str,
        task_executor: TaskExecutor,
        team_executors: Mapping[TeamMode, TeamRunExecutor],
        settings: RunnerSettings,
        pool: ThreadPoolExecutor | None = None,
    ) -> None:
        self.repository = repository
        self.runner_id = runner_id
        self.task_executor = task_executor
        self.team_executors = dict(team_executors)
        self.settings = settings
        self._pool = pool or ThreadPoolExecutor(
            max_workers=settings.max_concurrency,
            thread_name_prefix="agent-crew-work",
        )
        self._inflight: set[Future[None]] = set()
        self._inflight_lock = threading.Lock()
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def inflight(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)

    def run_once(self) -> SchedulerPollSummary:
        """One poll cycle: at most one task claim and one team run claim."""

        summary = SchedulerPollSummary(cycles=1)
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        task = self.repository.claim_next_task(runner_id=self.runner_id)
        if task is not None:
            logger.info("Claimed task %s (%s)", task.id, task.priority.value)
            summary.tasks_claimed = 1
            self._submit(self._run_task, task)

        run = self.repository.claim_next_team_run(runner_id=self.runner_id)
        if run is not None:
            logger.info("Claimed team run %s", run.id)
            summary.team_runs_claimed = 1
            self._submit(self._run_team_run, run)

        if summary.claimed == 0:
            summary.idle_polls = 1
        return summary

    def run_loop(
        self,
        *,
        max_cycles: int | None = None,
        max_idle_polls: int | None = None,
    ) -> SchedulerPollSummary:
        """Poll until stopped, `max_cycles` cycles ran, or `max_idle_polls` empty polls in a row.

        In-flight work is drained before returning.
        """

        aggregate = SchedulerPollSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            try:
                while not self._stop_requested:
                    if max_cycles is not None and aggregate.cycles >= max_cycles:
                        break

                    summary = self.run_once()
                    aggregate.add(summary)

                    if summary.claimed:
                        consecutive_idle = 0
                        continue

                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.settings.poll_interval_seconds)
            finally:
                self.drain(timeout=self.settings.graceful_shutdown_seconds)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def drain(self, *, timeout: float | None = None) -> bool:
        """Wait for in-flight work; True when everything finished in time."""

        with self._inflight_lock:
            pending = set(self._inflight)
        if not pending:
            return True
        logger.info("Waiting for %d in-flight unit(s) of work", len(pending))
        _, not_done = wait(pending, timeout=timeout)
        if not_done:
            logger.warning(
                "%d unit(s) of work still running after %.0fs; the sweep will requeue them",
                len(not_done),
                timeout or 0,
            )
        return not not_done

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _submit(self, target: Callable[[Any], None], item: TaskView | TeamRunView) -> None:
        future = self._pool.submit(target, item)
        with self._inflight_lock:
            self._inflight.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[None]) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)

    def _run_task(self, task: TaskView) -> None:
        try:
            status = self.task_executor.execute(task, runner_id=self.runner_id)
            logger.info("Task %s finished with status %s", task.id, status.value)
        except Exception as error:
            logger.exception("Task %s crashed", task.id)
            self.repository.fail_task(
                task_id=task.id,
                runner_id=self.runner_id,
                error=str(error) or error.__class__.__name__,
            )
        finally:
            self.repository.release_runner_slot(runner_id=self.runner_id)

    def _run_team_run(self, run: TeamRunView) -> None:
        try:
            team = self.repository.get_team(run.team_id)
            if team is None:
                self._fail_run(run, f"Team not found: {run.team_id}")
                return
            executor = self.team_executors.get(team.mode)
            if executor is None:
                self._fail_run(run, f"Unsupported team mode: {team.mode.value}")
                return
            status = executor.execute(run, team, runner_id=self.runner_id)
            logger.info("Team run %s finished with status %s", run.id, status.value)
        except Exception as error:
            logger.exception("Team run %s crashed", run.id)
            self._fail_run(run, str(error) or error.__class__.__name__)
        finally:
            self.repository.release_runner_slot(runner_id=self.runner_id)

    def _fail_run(self, run: TeamRunView, error: str) -> None:
        logger.warning("Failing team run %s: %s", run.id, error)
        self.repository.fail_team_run(
            run_id=run.id,
            runner_id=self.runner_id,
            error=error,
            usage=TokenUsage(),
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_signal_name = name
            logger.info("Received %s, finishing in-flight work", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass
