import asyncio
import logging
import sys
import argparse
import signal
import functools
from prizedraws.config import settings
from prizedraws.webapp.app import setup_webapp, start_webapp
from prizedraws.database.db import init_db
from prizedraws.utils.cache import start_cache_cleanup_task
from prizedraws.utils.draw_transitions import schedule_daily_sweep, run_sweep_once

background_tasks = []
shutdown_event = asyncio.Event()


def handle_shutdown_signal(sig, loop):
    """Sets the shutdown flag and cancels every other task."""
    logging.info(f"Received shutdown signal: {sig}")
    shutdown_event.set()
    for task in asyncio.all_tasks(loop=loop):
        if task is not asyncio.current_task(loop=loop):
            task.cancel()


def log_task_result(task: asyncio.Task):
    if task.cancelled():
        return
    if task.exception():
        logging.error(f"Task {task.get_name()} failed: {task.exception()}")


def start_background_task(coro, name: str) -> asyncio.Task:
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(log_task_result)
    background_tasks.append(task)
    logging.info(f"Started background task {name}")
    return task


async def main():
    """Application entry point."""
    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig,
                    functools.partial(handle_shutdown_signal, sig, loop)
                )
            except NotImplementedError:
                logging.info(f"Signal handler for {sig} is not supported on this platform")
    except Exception as e:
        logging.warning(f"Could not set up signal handlers: {e}")

    parser = argparse.ArgumentParser(description="Prize Draws service")
    parser.add_argument("--url", help="Public URL of the API (overrides WEBAPP_PUBLIC_URL)")
    parser.add_argument("--sweep", action="store_true", help="Run one draw transition sweep and exit")
    args = parser.parse_args()

    if args.url:
        settings.WEBAPP_PUBLIC_URL = args.url
        logging.info(f"WEBAPP_PUBLIC_URL overridden from the command line: {args.url}")

    logging.info("Starting Prize Draws service")

    try:
        session_factory = await init_db()

        if args.sweep:
            summary = await run_sweep_once(session_factory)
            logging.info(f"Transition sweep finished: {summary}")
            print(summary)
            return

        app = setup_webapp(session_factory)
        logging.info(f"Public URL: {settings.WEBAPP_PUBLIC_URL}")

        start_background_task(start_cache_cleanup_task(), "cache_cleanup_task")
        start_background_task(schedule_daily_sweep(), "daily_sweep_task")
        start_background_task(start_webapp(app, shutdown_event=shutdown_event), "webapp_task")

        await shutdown_event.wait()

        logging.info("Shutting down all components...")
        await shutdown()

    except asyncio.CancelledError:
        await shutdown()
    except Exception as e:
        logging.error(f"Startup failed: {e}")
        try:
            await shutdown()
        except Exception as shutdown_err:
            logging.error(f"Error during shutdown after a fatal error: {shutdown_err}")
        raise


async def shutdown():
    """Cancels background tasks and waits for them to finish."""
    logging.info("Shutting down application...")

    for task in background_tasks:
        if task and not task.done():
            logging.debug(f"Cancelling task {task.get_name()}")
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except asyncio.TimeoutError:
                logging.warning(f"Timed out cancelling task {task.get_name()}")
            except asyncio.CancelledError:
                logging.debug(f"Task {task.get_name()} cancelled")
            except Exception as e:
                logging.error(f"Error while cancelling task {task.get_name()}: {e}")

    logging.info("All background tasks finished")
    shutdown_event.set()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Forced shutdown")
    except Exception as e:
        logging.error(f"Unhandled exception: {e}")
        sys.exit(1)
