# backend/control_plane.py

import logging

from backend.config import DRY_RUN, AppConfiguration
from backend.cron_dispatcher import CronDispatcher
from backend.scaler import SpannerScaler
from backend.scheduler import TaskScheduler
from decision.rebalance_guard import RebalanceGuard
from gcp.instance_admin import SpannerInstanceAdmin
from gcp.spanner_controller import SpannerController
from history.store import create_store
from metrics.fetch_live_metrics import SpannerMetricsRetriever


class ControlPlane:
    """
    Everything the autoscaler runs, wired once at process start.

    ``start`` starts the worker pool, the cron triggers and the periodic
    check; ``stop`` cancels every trigger and shuts the pool down.
    """

    def __init__(
        self,
        configuration: AppConfiguration,
        store,
        metrics_retriever: SpannerMetricsRetriever | None,
        controller: SpannerController,
        scheduler: TaskScheduler,
    ):
        self.configuration = configuration
        self.store = store
        self.metrics_retriever = metrics_retriever
        self.controller = controller
        self.scheduler = scheduler
        self.scaler = SpannerScaler(configuration, metrics_retriever, store, controller)
        self.cron_dispatcher = CronDispatcher(scheduler, controller, tz=configuration.time_zone)

    @classmethod
    def from_configuration(cls, configuration: AppConfiguration, dry_run: bool = DRY_RUN, instance_admin=None):
        store = create_store(configuration.history_backend, configuration.history_database)

        metrics_retriever = None
        if configuration.monitoring_project_id:
            metrics_retriever = SpannerMetricsRetriever(
                configuration.monitoring_project_id,
                configuration.metric_aggregation_duration,
                timeout=configuration.request_timeout.total_seconds(),
            )

        if instance_admin is None:
            instance_admin = SpannerInstanceAdmin(
                request_timeout=configuration.request_timeout.total_seconds(),
                operation_timeout=configuration.operation_timeout.total_seconds(),
            )

        guard = RebalanceGuard(
            store,
            configuration.scale_up_rebalance_duration,
            configuration.scale_down_rebalance_duration,
        )
        # The lease covers a read, an update and a history write
        lease_duration = configuration.operation_timeout + 2 * configuration.request_timeout
        controller = SpannerController(instance_admin, store, guard, dry_run=dry_run, lease_duration=lease_duration)
        scheduler = TaskScheduler(pool_size=configuration.scaler_thread_pool_size)
        return cls(configuration, store, metrics_retriever, controller, scheduler)

    def start(self) -> None:
        logging.info(f"Starting autoscaler: {self.configuration.model_dump_json()}")
        if self.controller.dry_run:
            logging.info("⚠️  DRY RUN MODE - No actual scaling will be performed")
        self.scheduler.start()
        self.cron_dispatcher.schedule_cron_scalers(self.configuration.cron_scalers)
        self.scaler.schedule(self.scheduler)

    def stop(self) -> None:
        logging.info("Stopping autoscaler")
        self.cron_dispatcher.cancel_all()
        self.scaler.unschedule(self.scheduler)
        self.scheduler.shutdown()
