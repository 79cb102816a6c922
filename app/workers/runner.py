"""
Long-running delivery worker process.

    python -m app.workers.runner          # loop until SIGINT / SIGTERM
    python -m app.workers.runner --once   # single iteration, then exit

Several processes may run side by side against the same database; the
conditional claim keeps each message with exactly one of them.
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.db.database import create_task_engine, session_maker
from app.workers.delivery_worker import DeliveryWorker, IterationOutcome, WorkerConfig

logger = get_logger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="delivery-worker",
        description="Send queued outbound WhatsApp messages.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="process a single iteration and exit",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="override the log level (default: DEBUG when DEBUG=true, else INFO)",
    )
    return parser.parse_args(argv)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: add_signal_handler לא נתמך, KeyboardInterrupt עוצר את הלולאה
            pass


async def _run(once: bool) -> int:
    engine = create_task_engine()
    worker = DeliveryWorker(session_factory=session_maker(engine), config=WorkerConfig.from_settings())

    try:
        if once:
            outcome = await worker.run_once()
            logger.info("Single iteration finished", extra_data={"outcome": outcome.value})
            return 1 if outcome == IterationOutcome.ERROR else 0

        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        await worker.run_forever(stop_event)
        return 0
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    setup_logging(
        level=args.log_level or ("DEBUG" if settings.DEBUG else "INFO"),
        json_format=not settings.DEBUG,
        app_name=settings.APP_NAME,
    )
    return asyncio.run(_run(args.once))


if __name__ == "__main__":
    sys.exit(main())
