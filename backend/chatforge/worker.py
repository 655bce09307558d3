"""Email worker process: ``python -m chatforge.worker``.

Consumes account lifecycle events, hands them to the email dispatcher and
reports each delivery back to the auth service.
"""
from __future__ import annotations

import asyncio
import signal
import sys
from typing import Optional

import structlog

from chatforge.config import settings
from chatforge.errors import BrokerUnavailable
from chatforge.log_config import configure_logging
from chatforge.messaging.broker import MessageBroker
from chatforge.messaging.consumers import AccountEmailConsumer, EmailDispatcher
from chatforge.messaging.topology import EMAIL_SERVICE

logger = structlog.get_logger(__name__)


async def run_worker(
    broker: Optional[MessageBroker] = None,
    dispatcher: Optional[EmailDispatcher] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> int:
    """Run until a shutdown signal or an unrecoverable broker loss; returns the exit code."""
    stop = stop_event or asyncio.Event()
    exit_code = 0

    def on_fatal(exc: BrokerUnavailable) -> None:
        nonlocal exit_code
        logger.critical("Broker lost; stopping worker", error=str(exc))
        exit_code = 1
        stop.set()

    if broker is None:
        broker = MessageBroker(EMAIL_SERVICE, fatal_handler=on_fatal)
    else:
        broker.fatal_handler = on_fatal

    while not stop.is_set():
        try:
            await broker.connect()
            break
        except BrokerUnavailable as exc:
            if broker.config.is_production:
                logger.critical("Broker unavailable at startup", error=str(exc))
                return 1
            logger.warning("Broker unavailable; waiting before next attempt", error=str(exc))
            try:
                await asyncio.wait_for(stop.wait(), timeout=broker.retry_delay)
            except asyncio.TimeoutError:
                pass

    if stop.is_set():
        await broker.disconnect()
        return exit_code

    consumer = AccountEmailConsumer(broker, dispatcher)
    await consumer.start()

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # not supported on this platform or outside the main thread
            pass

    logger.info("Email worker running", environment=settings.environment)
    await stop.wait()

    logger.info("Email worker stopping")
    for sig in installed:
        loop.remove_signal_handler(sig)
    await broker.disconnect()
    return exit_code


def main() -> None:
    configure_logging()
    sys.exit(asyncio.run(run_worker()))


if __name__ == "__main__":
    main()
