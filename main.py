"""
Main entry point for the dlbridge application.

This script loads the configuration, sets up logging, starts the download
controller and its worker channel, and runs the Tkinter window with the
asyncio loop pumped from the Tk main loop.
"""

import tkinter as tk
import queue
import sys
import logging
import asyncio
from types import TracebackType
from typing import Type

from dlbridge.gui import DlBridgeApp
from dlbridge.logging_config import setup_logging
from dlbridge.config import ConfigManager
from dlbridge.constants import CONFIG_FILE
from dlbridge.channel import SubprocessChannel
from dlbridge.controller import DownloadController


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def main():
    # 1. Load configuration before setting up logging
    gui_queue: queue.Queue = queue.Queue()
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()

    # 2. Use the configured log level for file logging
    setup_logging(gui_queue, config.log_level)

    # 3. Set up global exception handlers
    sys.excepthook = handle_exception
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    loop.set_exception_handler(handle_async_exception)

    # 4. Create the controller and its worker channel
    channel = SubprocessChannel(config.resolved_worker_command(), response_timeout=config.command_timeout)
    controller = DownloadController(channel, config)

    # 5. Create and run the Tkinter application (the View)
    root = tk.Tk()
    DlBridgeApp(root, gui_queue, controller, config, loop)
    try:
        root.mainloop()
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")
    finally:
        loop.run_until_complete(controller.close())
        loop.close()


if __name__ == "__main__":
    main()
