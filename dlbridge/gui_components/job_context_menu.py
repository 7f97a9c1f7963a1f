"""
Defines a context menu for the media rows.
"""

import tkinter as tk
from typing import Callable, Optional


class JobContextMenu(tk.Menu):
    """Context menu for a media row: force a fresh download or drop the row."""

    def __init__(self, master: tk.Misc, force_callback: Callable[[object], None], remove_callback: Callable[[object], None]):
        """
        Initializes the context menu.

        Args:
            master: The parent widget.
            force_callback: Called with the row for the "Force Redownload" action.
            remove_callback: Called with the row for the "Remove Item" action.
        """
        super().__init__(master, tearoff=0)
        self.row: Optional[object] = None
        self.add_command(label="Force Redownload", command=lambda: self._invoke(force_callback))
        self.add_command(label="Remove Item", command=lambda: self._invoke(remove_callback))

    def _invoke(self, callback: Callable[[object], None]):
        if self.row is not None:
            callback(self.row)
        self.row = None

    def show(self, event, row: object, busy: bool):
        """
        Displays the menu for `row` at the cursor's position.

        "Force Redownload" is disabled while the row's download is still running.
        """
        self.row = row
        self.entryconfig("Force Redownload", state='disabled' if busy else 'normal')
        self.post(event.x_root, event.y_root)
