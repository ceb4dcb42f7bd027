"""Scheduler service entry point."""

import asyncio
import contextlib
import logging
import signal

from taskscheduler.config import settings
from taskscheduler.scheduler.engine import Scheduler
from taskscheduler.scheduler.executor import ActionExecutor, log_action
from taskscheduler.scheduler.store import TaskStore

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
# APScheduler logs every tick at INFO
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def build_executor() -> ActionExecutor:
    """Executor with the built-in actions registered."""
    executor = ActionExecutor()
    executor.register("log", log_action)
    return executor


async def run() -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    scheduler = Scheduler(TaskStore.get(), build_executor())
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    logger.info("Starting scheduler with database %s", settings.database_path)
    await scheduler.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down; waiting for running tasks...")
        await scheduler.stop(wait=True)


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
