"""Run the outbox dispatcher, extraction worker and maintenance loops without the HTTP server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from src.booksphere.config import load_config
from src.booksphere.dependencies import build_services
from src.booksphere.lifecycle import start_background_tasks, stop_background_tasks
from src.booksphere.logging import configure_logging

logger = logging.getLogger("booksphere.run_worker")


async def run(*, once: bool) -> int:
    config = load_config()
    configure_logging(config.settings.log_level, json_output=config.settings.log_json)
    services = build_services(config)
    loop = asyncio.get_running_loop()
    services.dispatcher.wake.bind(loop)

    if once:
        results = await services.dispatcher.run_once()
        delivered = sum(result.delivered for result in results)
        print(f"dispatch done, tenants={len(results)}, delivered={delivered}", file=sys.stdout)
        return 0

    shutdown_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:  # pragma: no cover - Windows event loop
            pass
    tasks = start_background_tasks(services, shutdown_event)
    logger.info("worker.started", extra={"tasks": [task.get_name() for task in tasks]})
    await shutdown_event.wait()
    await stop_background_tasks(tasks, shutdown_event)
    logger.info("worker.stopped")
    return 0


def parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run background delivery and extraction loops.")
    parser.add_argument("--once", action="store_true", help="Dispatch every tenant once and exit.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(run(once=args.once))
    except Exception as exc:
        print(f"worker failed: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
