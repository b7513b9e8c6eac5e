# backend/scaler.py

import logging
import threading
import uuid

from backend.config import AppConfiguration
from backend.scheduler import TaskScheduler
from decision.scaling_policy import BalancedScalingStrategy, PolicyError
from gcp.spanner_controller import ApplyError, ScalingResult, SpannerController
from history.models import (
    InstanceRecord,
    PersistenceError,
    PollingEvent,
    generate_instance_key,
)
from metrics.fetch_live_metrics import InstanceMetrics, MetricsFetchError, SpannerMetricsRetriever


class SpannerScaler:
    """
    Periodic check: pull metrics, record a polling event per instance and
    forward balanced-scaler recommendations to the controller.
    """

    def __init__(
        self,
        configuration: AppConfiguration,
        metrics_retriever: SpannerMetricsRetriever | None,
        store,
        controller: SpannerController,
    ):
        self.configuration = configuration
        self.metrics_retriever = metrics_retriever
        self.store = store
        self.controller = controller
        self.strategies = [BalancedScalingStrategy(s.instance) for s in configuration.balanced_scalers]
        self.cycle_count = 0
        self._cycle_lock = threading.Lock()
        self._handle: int | None = None

    def schedule(self, scheduler: TaskScheduler) -> bool:
        """Register the fixed-rate check. Nothing is scheduled without balanced scalers."""
        # Replaces any check registered earlier
        self.unschedule(scheduler)
        if not self.strategies:
            logging.info("No balanced scalers configured, periodic check disabled")
            return False

        interval = self.configuration.check_interval.total_seconds()
        self._handle = scheduler.schedule_fixed_rate(interval, self.perform_application_check, name="application-check")
        logging.info(f"Periodic check scheduled every {interval:.0f} seconds")
        return True

    def unschedule(self, scheduler: TaskScheduler) -> None:
        if self._handle is not None:
            scheduler.cancel(self._handle)
            self._handle = None

    def log_polling_event(self, metrics: InstanceMetrics) -> None:
        """Persist a polling event, creating the instance record on first sight."""
        instance_key: uuid.UUID = generate_instance_key(metrics.project_id, metrics.instance_id)
        self.store.save_polling_event(
            InstanceRecord(instance_key, metrics.project_id, metrics.instance_id),
            PollingEvent(instance_key, uuid.uuid4(), metrics.timestamp, metrics.to_json()),
        )

    def perform_application_check(self) -> list[ScalingResult]:
        """
        Retrieve Spanner metrics from Cloud Monitoring and act on the
        recommendations of every balanced scaler they match.

        A metrics failure skips the whole cycle; any other failure only skips
        the instance it happened on.
        """
        with self._cycle_lock:
            self.cycle_count += 1
            cycle = self.cycle_count
        logging.info(f"Starting scaling check #{cycle}")

        if self.metrics_retriever is None:
            logging.warning("No monitoring project configured, skipping scaling check")
            return []

        try:
            all_metrics = self.metrics_retriever.latest_metrics()
        except MetricsFetchError as e:
            logging.error(f"Could not retrieve cloud monitoring metrics: {e}")
            return []

        results = []
        for metrics in all_metrics:
            logging.info(f"{metrics.name}: Metrics found for instance ({metrics.to_json()})")
            try:
                self.log_polling_event(metrics)
            except PersistenceError as e:
                logging.error(f"{metrics.name}: Failed to record polling event: {e}")

            for strategy in self.strategies:
                if (strategy.instance.project_id, strategy.instance.instance_id) != (
                    metrics.project_id,
                    metrics.instance_id,
                ):
                    continue
                result = self._scale(strategy, metrics)
                if result is not None:
                    results.append(result)

        logging.info(f"Scaling check #{cycle} completed")
        return results

    def _scale(self, strategy: BalancedScalingStrategy, metrics: InstanceMetrics) -> ScalingResult | None:
        try:
            recommendation = strategy.scaling_recommendation(metrics)
        except PolicyError as e:
            logging.warning(f"Error retrieving recommendations: {e}")
            return None

        logging.info(f"{metrics.name}: Scaler recommendation is {recommendation}.")
        try:
            return self.controller.scale_instance(recommendation)
        except ApplyError as e:
            logging.error(f"{metrics.name}: Scaling failed: {e}")
        except PersistenceError as e:
            logging.error(f"{metrics.name}: Scaling history not recorded: {e}")
        return None
