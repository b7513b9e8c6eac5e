# backend/cron_dispatcher.py

import logging
import threading
from datetime import timezone, tzinfo

from backend.config import CronSchedule, CronScalerConfig
from backend.scheduler import TaskScheduler
from decision.scaling_policy import CronScalingStrategy
from gcp.spanner_controller import ApplyError, SpannerController
from history.models import PersistenceError


class CronScalingTask:
    """Scale an instance to the node count of one cron schedule."""

    def __init__(self, strategy: CronScalingStrategy, schedule: CronSchedule, controller: SpannerController):
        self.strategy = strategy
        self.schedule = schedule
        self.controller = controller

    @property
    def name(self) -> str:
        return f"{self.strategy.instance.name} [{self.schedule.cron_expression}]"

    def run(self):
        action = self.strategy.scaling_recommendation(self.schedule)
        if action is None:
            return None

        try:
            return self.controller.scale_instance(action)
        except ApplyError as e:
            logging.error(f"{self.strategy.instance.name}: Cron scaling to {self.schedule.nodes} nodes failed: {e}")
        except PersistenceError as e:
            logging.error(f"{self.strategy.instance.name}: Cron scaling history not recorded: {e}")
        return None


class CronDispatcher:
    """Registers one recurring trigger per cron schedule per instance."""

    def __init__(self, scheduler: TaskScheduler, controller: SpannerController, tz: tzinfo = timezone.utc):
        self.scheduler = scheduler
        self.controller = controller
        self.tz = tz
        self._handles: list[int] = []
        self._lock = threading.Lock()

    @property
    def scheduled_count(self) -> int:
        return len(self._handles)

    def schedule_cron_scalers(self, cron_scalers: list[CronScalerConfig]) -> int:
        """
        Schedule tasks for each of the cron scaling strategies.

        Any triggers from a previous call are cancelled first.
        """
        with self._lock:
            self._cancel_locked()
            for scaler in cron_scalers:
                strategy = CronScalingStrategy(scaler.instance, scaler.schedules)
                for schedule in strategy.schedules:
                    task = CronScalingTask(strategy, schedule, self.controller)
                    handle = self.scheduler.schedule_cron(schedule.cron_expression, task.run, name=task.name, tz=self.tz)
                    self._handles.append(handle)
                    logging.info(f"Scheduled cron trigger {task.name} -> {schedule.nodes} nodes")
            return len(self._handles)

    def cancel_all(self) -> None:
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        if self._handles:
            logging.info(f"Cancelling {len(self._handles)} cron trigger(s)")
        for handle in self._handles:
            self.scheduler.cancel(handle)
        self._handles = []
