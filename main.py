#!/usr/bin/env python3
"""
Edge Certificate Renewal - Main Entry Point.

Keeps the TLS certificate of an edge device renewed with acme.sh. Runs either
as a long-lived service (restore state, then renew once a day at a random
time) or as a one-shot run.

Usage:
    # Service mode - restore ACME state, then renew daily
    python main.py --serve

    # Forced renewal inside a running service
    kill -USR1 <pid>

    # One scheduled-style run (only renews when due)
    python main.py --run

    # Forced run (skips subject and expiry checks)
    python main.py --force

    # Restore the ACME state from the newest archive only
    python main.py --restore
"""

import argparse
import signal
import sys
import threading

from edgecert.config_loader import ConfigurationError, load_config
from edgecert.logger import get_logger, setup_logger
from edgecert.notification import NotificationManager, PlatformEventNotifier
from edgecert.platform import PlatformClient
from edgecert.renewal import RenewalCoordinator, RenewalRun, RenewalStatus
from edgecert.scheduler import RenewalScheduler


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2


def parse_arguments(argv=None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Edge certificate renewal with acme.sh",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --serve                  # Restore state and renew daily
  %(prog)s --run                    # Renew now if due
  %(prog)s --force --json-summary   # Renew now regardless of expiry
        """,
    )

    mode_group = parser.add_mutually_exclusive_group(required=True)
    mode_group.add_argument(
        "--serve",
        action="store_true",
        help="Service mode: restore ACME state, then renew once a day at a random time",
    )
    mode_group.add_argument(
        "--run",
        action="store_true",
        help="Run a single renewal that only renews when due",
    )
    mode_group.add_argument(
        "--force",
        action="store_true",
        help="Run a single forced renewal (skips subject and expiry checks)",
    )
    mode_group.add_argument(
        "--restore",
        action="store_true",
        help="Restore the ACME state from the newest archive and exit",
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML configuration file (default: environment variables)",
    )
    parser.add_argument(
        "--at",
        type=str,
        default=None,
        help="Service mode: fixed daily time HH:MM:SS instead of a random one",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    parser.add_argument(
        "--json-summary",
        action="store_true",
        help="Output machine-readable JSON summary of a one-shot run",
    )

    return parser.parse_args(argv)


def build_coordinator(config) -> RenewalCoordinator:
    """Wire platform client, notifications and coordinator together."""
    client = PlatformClient(config.platform, timeout=config.settings.request_timeout_seconds)
    notifications = NotificationManager([
        PlatformEventNotifier(client, config.platform.application_name),
    ])
    return RenewalCoordinator(config, client, notifications=notifications)


def print_run_summary(run: RenewalRun, output_json: bool = False) -> None:
    """Log the outcome of a one-shot run."""
    logger = get_logger()
    logger.section("RENEWAL SUMMARY")
    logger.info(f"  Forced: {run.forced}")
    logger.info(f"  Status: {run.status.value.upper() if run.status else 'UNKNOWN'}")
    logger.info(f"  Message: {run.message}")
    if run.error:
        logger.error(f"  Error: {run.error}")

    if output_json:
        print(run.to_json())


def serve(coordinator: RenewalCoordinator, at_time=None) -> int:
    """
    Restore state, then run the daily schedule until interrupted.

    SIGUSR1 triggers a forced renewal through the same coordinator.
    """
    logger = get_logger()

    # A failed restore only means acme.sh starts without its previous state
    coordinator.restore_state()

    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    scheduler = RenewalScheduler(coordinator, at_time=at_time)

    def _force(signum, frame):
        logger.info(f"Received signal {signum}, starting forced renewal")
        scheduler.request_forced_renewal()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGUSR1, _force)

    scheduler.run_forever(stop_event)
    return EXIT_OK


def main(argv=None) -> int:
    """
    Main entry point.

    Exit Codes:
        0 - Renewal succeeded or was not due (or service stopped cleanly)
        1 - Renewal failed or another renewal was in progress
        2 - Configuration error

    Returns:
        Exit code
    """
    args = parse_arguments(argv)

    logger = setup_logger(
        verbose=args.verbose,
        use_colors=not args.no_color,
    )

    logger.info("Edge Certificate Renewal")
    logger.info("=" * 50)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIGURATION_ERROR

    coordinator = build_coordinator(config)

    try:
        if args.serve:
            return serve(coordinator, at_time=args.at)

        if args.restore:
            restored = coordinator.restore_state()
            logger.info("Restored ACME state" if restored else "Nothing restored")
            return EXIT_OK

        run = coordinator.trigger(forced=args.force)
    finally:
        coordinator.client.close()

    print_run_summary(run, output_json=args.json_summary)

    if isinstance(run.error, ConfigurationError):
        return EXIT_CONFIGURATION_ERROR
    if run.status in (RenewalStatus.SUCCEEDED, RenewalStatus.SKIPPED):
        return EXIT_OK
    return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
