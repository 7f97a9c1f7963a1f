"""
Configures the application's logging setup.

The root logger writes to a per-session file and to a queue drained by the
GUI's log pane.
"""

import sys
import queue
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import LOG_DIR

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'


def rotate_latest_log(log_dir: Path) -> Path:
    """
    Archives the previous session's `latest.log` under its modification time.

    Returns:
        The path of the fresh `latest.log`.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    latest_log_path = log_dir / 'latest.log'
    if latest_log_path.exists():
        try:
            mod_time = latest_log_path.stat().st_mtime
            timestamp_str = datetime.fromtimestamp(mod_time).strftime('%Y-%m-%d_%H-%M-%S')
            latest_log_path.rename(log_dir / f"{timestamp_str}.log")
        except OSError as e:
            print(f"Error rotating log file: {e}", file=sys.stderr)
    return latest_log_path


def setup_logging(gui_queue: Optional[queue.Queue], file_log_level_str: str = 'INFO', log_dir: Path = LOG_DIR):
    """
    Configures the root logger for file and GUI logging.

    Args:
        gui_queue: Receives every record for the GUI log pane; None for headless use.
        file_log_level_str: The minimum level written to the file (e.g. 'INFO').
        log_dir: Where `latest.log` and its archives live.
    """
    latest_log_path = rotate_latest_log(log_dir)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    file_log_level = getattr(logging, file_log_level_str.upper(), logging.INFO)
    file_handler = logging.FileHandler(str(latest_log_path), encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(file_handler)

    if gui_queue is not None:
        queue_handler = logging.handlers.QueueHandler(gui_queue)
        queue_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(queue_handler)

    logging.info("--- Logging initialized ---")
    logging.debug(f"File log level set to: {logging.getLevelName(file_log_level)}")
