import sys
import signal
import logging
import threading
import traceback

from backend.config import CONFIG_PATH, DRY_RUN, LOG_FILE, ConfigError, configure_logging, load_configuration
from backend.control_plane import ControlPlane


def run(control_plane: ControlPlane, shutdown_requested: threading.Event) -> None:
    """Run the control plane until shutdown is requested."""
    configuration = control_plane.configuration

    logging.info("=" * 60)
    logging.info("Autoscaler daemon started")
    logging.info(f"Check interval: {configuration.check_interval.total_seconds():.0f} seconds")
    logging.info(f"Balanced scalers: {len(configuration.balanced_scalers)}")
    logging.info(f"Cron scalers: {len(configuration.cron_scalers)}")
    logging.info(f"Dry run mode: {control_plane.controller.dry_run}")
    logging.info("=" * 60)

    control_plane.start()
    try:
        shutdown_requested.wait()
    finally:
        control_plane.stop()

    logging.info("Autoscaler daemon stopped")


def main() -> int:
    configure_logging()

    try:
        configuration = load_configuration(CONFIG_PATH)
    except ConfigError as e:
        logging.error(f"Refusing to start: {e}")
        return 1

    shutdown_requested = threading.Event()

    def signal_handler(sig, frame):
        """Handle shutdown signals gracefully."""
        logging.info("Shutdown signal received, cancelling scheduled work...")
        shutdown_requested.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    print("\n🚀 Spanner autoscaler daemon started")
    print(f"   Config: {CONFIG_PATH}")
    print(f"   Dry run: {DRY_RUN}")
    print(f"   Log file: {LOG_FILE}")
    print("\nPress Ctrl+C to stop\n")

    try:
        run(ControlPlane.from_configuration(configuration), shutdown_requested)
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        logging.error(traceback.format_exc())
        return 1

    print("\n✅ Autoscaler daemon stopped gracefully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
