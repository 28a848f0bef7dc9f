"""Standalone consumer process for one or more services.

    python -m evently.worker --service booking-service --service notification-service

Runs the selected services' bus consumers and outbox relays until SIGINT or
SIGTERM, then drains in-flight handlers before exiting.
"""

import argparse
import logging
import signal
import threading

from evently.bootstrap import (
    ALL_SERVICES,
    build_container,
    build_event_bus,
    create_schema,
    register_consumers,
    shutdown,
    start_relays,
)
from evently.infrastructure.config import Settings, configure_logging

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run Evently event consumers")
    parser.add_argument(
        "--service",
        action="append",
        choices=ALL_SERVICES,
        dest="services",
        help="Service whose consumers to run; repeatable. Defaults to all.",
    )
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    services = tuple(args.services or ALL_SERVICES)

    settings = Settings.from_env()
    configure_logging(settings.log_level)

    bus = build_event_bus(settings, client_id="evently-" + "-".join(services))
    container = build_container(settings, bus=bus)
    create_schema(container, services=services, wait=True)

    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("Received signal %s; shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    container.bus.connect()
    register_consumers(container, services=services)
    container.bus.start()
    start_relays(container, services=services)
    logger.info("Worker running. services=%s", ", ".join(services))

    stop_event.wait()
    shutdown(container)


if __name__ == "__main__":
    main()
