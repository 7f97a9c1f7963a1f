"""
Defines application-wide constants, paths, and wire-protocol values.

This module centralizes configuration for paths, progress sentinels and
identifier placeholders, adapting to whether the application is running from
source or as a frozen executable.
"""

import sys
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'dlbridge').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.dlbridge'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'


def resource_path(relative_path: str) -> Path:
    """
    Get absolute path to resource, works for dev and for PyInstaller.

    Args:
        relative_path: The path to the resource relative to the application root.

    Returns:
        An absolute Path object to the resource.
    """
    try:
        # PyInstaller creates a temp folder and stores path in _MEIPASS
        base_path = Path(sys._MEIPASS)  # type: ignore
    except AttributeError:
        base_path = APP_PATH
    return base_path / relative_path

# --- Worker Networking ---
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}
SOCK_READ_TIMEOUT = 60  # seconds without a byte before a stream is abandoned

# --- Progress Sentinels ---
# 0-99 are plain percentages; the values below carry lifecycle meaning.
PROGRESS_FINISHING = 100
PROGRESS_SUCCESS = 101
PROGRESS_PARTIAL = 102

STATUS_PAUSED = 'Paused'
STATUS_RESUMING = 'Resuming'

# Substring of the worker's start response when the transfer waits for a slot.
QUEUED_MARKER = 'queue'

# Values that a sloppy serialization boundary produces in place of a real id.
UNSET_IDENTIFIERS = frozenset({'', 'undefined', 'null', 'None', 'undefined_completion'})

# Keys the status parser knows about; anything else does not count towards a message's weight.
RECOGNIZED_STATUS_KEYS = frozenset({
    'id', 'originalId', 'secondaryId', 'progress', 'status', 'error',
    'completed', 'completionWithoutId', 'success', 'message', 'timestamp', 'originalMessage',
})

# --- Control Appearance ---
TONE_COLORS = {
    'idle': '',
    'busy': '',
    'progress': '#ff5419',
    'success': '#19a352',
    'partial': '#d9a21b',
    'warning': '#e0a800',
    'error': '#d30029',
}

# Markers used by the set-detection heuristic for media URLs.
SET_URL_MARKERS = ('/sets/', '/albums/')
MANIFEST_SUFFIXES = ('.m3u', '.m3u8', '.txt')
