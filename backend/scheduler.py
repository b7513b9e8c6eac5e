# backend/scheduler.py

import itertools
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Callable

from croniter import croniter


@dataclass
class ScheduledTrigger:
    handle: int
    name: str
    task: Callable[[], object]
    next_after: Callable[[float, float], float]
    next_fire: float
    future: Future | None = field(default=None, repr=False)


def cron_next(cron_expression: str, tz: tzinfo) -> Callable[[float, float], float]:
    def next_after(_scheduled: float, now: float) -> float:
        return croniter(cron_expression, datetime.fromtimestamp(now, tz)).get_next(float)
    return next_after


def fixed_rate_next(interval: float) -> Callable[[float, float], float]:
    def next_after(scheduled: float, now: float) -> float:
        following = scheduled + interval
        # Missed periods are skipped, not replayed
        while following <= now:
            following += interval
        return following
    return next_after


class TaskScheduler:
    """
    One timer thread dispatching cron and fixed-rate triggers into a bounded
    worker pool.

    A trigger whose previous run is still in progress is skipped for that
    fire, so a slow task never piles up behind itself.
    """

    def __init__(self, pool_size: int = 10, thread_name_prefix: str = "SpannerScaler", clock=time.time):
        self.pool_size = pool_size
        self.thread_name_prefix = thread_name_prefix
        self.clock = clock
        self._triggers: dict[int, ScheduledTrigger] = {}
        self._handles = itertools.count(1)
        self._condition = threading.Condition()
        self._executor: ThreadPoolExecutor | None = None
        self._thread: threading.Thread | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._condition:
            if self._running:
                return
            self._executor = ThreadPoolExecutor(
                max_workers=self.pool_size, thread_name_prefix=self.thread_name_prefix
            )
            self._running = True
            self._thread = threading.Thread(
                target=self._run, name=f"{self.thread_name_prefix}-timer", daemon=True
            )
            self._thread.start()
        logging.info(f"Task scheduler started with {self.pool_size} worker thread(s)")

    def shutdown(self, wait: bool = True) -> None:
        with self._condition:
            if not self._running:
                return
            self._running = False
            self._triggers.clear()
            self._condition.notify_all()
        if self._thread is not None:
            self._thread.join()
        if self._executor is not None:
            self._executor.shutdown(wait=wait, cancel_futures=True)
        logging.info("Task scheduler stopped")

    def _add(self, name: str, task, next_after, first_fire: float) -> int:
        with self._condition:
            handle = next(self._handles)
            self._triggers[handle] = ScheduledTrigger(handle, name, task, next_after, first_fire)
            self._condition.notify_all()
        return handle

    def schedule_cron(self, cron_expression: str, task, name: str = "", tz: tzinfo = timezone.utc) -> int:
        next_after = cron_next(cron_expression, tz)
        now = self.clock()
        return self._add(name or cron_expression, task, next_after, next_after(now, now))

    def schedule_fixed_rate(self, interval: float, task, name: str = "", initial_delay: float = 0.0) -> int:
        if interval <= 0:
            raise ValueError("interval must be positive")
        return self._add(name or f"every {interval}s", task, fixed_rate_next(interval),
                         self.clock() + initial_delay)

    def cancel(self, handle: int) -> bool:
        with self._condition:
            removed = self._triggers.pop(handle, None) is not None
            self._condition.notify_all()
        return removed

    def trigger_names(self) -> list[str]:
        with self._condition:
            return [t.name for t in self._triggers.values()]

    def _run(self) -> None:
        with self._condition:
            while self._running:
                now = self.clock()
                for trigger in list(self._triggers.values()):
                    if trigger.next_fire <= now:
                        self._fire(trigger, now)

                if self._triggers:
                    delay = min(t.next_fire for t in self._triggers.values()) - self.clock()
                    self._condition.wait(timeout=max(0.0, delay))
                else:
                    self._condition.wait()

    def _fire(self, trigger: ScheduledTrigger, now: float) -> None:
        trigger.next_fire = trigger.next_after(trigger.next_fire, now)
        if trigger.future is not None and not trigger.future.done():
            logging.warning(f"Scheduled task '{trigger.name}' still running, skipping this run")
            return
        trigger.future = self._executor.submit(self._invoke, trigger)

    @staticmethod
    def _invoke(trigger: ScheduledTrigger) -> None:
        try:
            trigger.task()
        except Exception:
            logging.exception(f"Scheduled task '{trigger.name}' failed")
