"""Run the marketplace API and the maintenance worker in one process.

Usage: ``python -m api``
"""
import asyncio
import logging
import signal

import uvicorn

from config import settings_conf
from database import init_db, close as db_close
from workers.maintenance import run_worker

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

class UvicornServer:
    """Uvicorn server whose lifetime is driven by the caller.

    Uvicorn normally installs its own SIGINT/SIGTERM handlers; here the
    process shutdown event owns the signals and calls ``stop``.
    """

    def __init__(self, app_path: str = "api:app", host: str = None, port: int = None):
        self.config = uvicorn.Config(
            app_path,
            host=host or settings_conf['api_host'],
            port=port or settings_conf['api_port'],
            log_level="info"
        )
        self.server = uvicorn.Server(self.config)
        self.server.install_signal_handlers = lambda: None

    async def serve(self):
        await self.server.serve()

    def stop(self):
        self.server.should_exit = True

def _watch_signals(shutdown: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt
            signal.signal(sig, lambda *_: shutdown.set())

async def _first_failure(tasks, shutdown: asyncio.Event):
    """Wait until shutdown is requested or one of the tasks exits."""
    stopper = asyncio.create_task(shutdown.wait(), name="shutdown")
    done, _ = await asyncio.wait([stopper, *tasks], return_when=asyncio.FIRST_COMPLETED)
    stopper.cancel()

    for task in done:
        if task is stopper or task.cancelled():
            continue
        if task.exception():
            logger.error(f"{task.get_name()} crashed: {task.exception()}")
        else:
            logger.warning(f"{task.get_name()} exited unexpectedly")

async def main():
    shutdown = asyncio.Event()
    _watch_signals(shutdown)

    logger.info("Preparing database pool and schema")
    await init_db()

    server = UvicornServer()
    tasks = [
        asyncio.create_task(server.serve(), name="api"),
        asyncio.create_task(run_worker(), name="maintenance")
    ]
    logger.info(f"Serving on {server.config.host}:{server.config.port}")

    try:
        await _first_failure(tasks, shutdown)
    finally:
        logger.info("Shutting down")
        server.stop()

        # The worker sleeps between passes, so it is cancelled rather than awaited
        for task in tasks:
            if task.get_name() != "api" and not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await db_close()
        logger.info("Database pool closed")

if __name__ == "__main__":
    try:
        import uvloop
        uvloop.install()
    except ImportError:
        pass

    asyncio.run(main())
