"""
Defines the DownloadControl widget, the per-row button that shows a job's state.
"""

import tkinter as tk
from tkinter import ttk
from typing import Callable, Optional

from ..constants import TONE_COLORS
from ..lifecycle import ControlEffect, idle_effect


class ProgressStrip(tk.Canvas):
    """A thin bar filled to the job's progress in the colour of its tone."""
    def __init__(self, master, *args, **kwargs):
        super().__init__(master, *args, **kwargs)
        self.config(height=6, highlightthickness=0, background='white')
        self.fraction = 0.0
        self.color = ''
        self.bind("<Configure>", self._on_resize)

    def update_fill(self, percent: Optional[float], color: str):
        self.fraction = 0.0 if percent is None else max(0.0, min(percent, 100.0)) / 100
        self.color = color
        self._draw()

    def _draw(self):
        self.delete("all")
        width, height = self.winfo_width(), self.winfo_height()
        if not self.color or self.fraction <= 0 or width <= 1 or height <= 1: return
        self.create_rectangle(0, 0, width * self.fraction, height, fill=self.color, outline=self.color)

    def _on_resize(self, event):
        self._draw()


class DownloadControl(ttk.Frame):
    """
    A download button with a progress strip and a hover tooltip.

    The controller never touches the widgets directly; it only calls
    `render` with the effect of the latest transition.
    """

    def __init__(self, master, on_click: Callable[['DownloadControl'], None], **kwargs):
        """
        Initializes the control.

        Args:
            master: The parent widget.
            on_click: Called with this control when the button is pressed.
        """
        super().__init__(master, **kwargs)
        self.on_click = on_click
        self.effect: ControlEffect = idle_effect()
        self.tooltip_win: Optional[tk.Toplevel] = None

        self.button = ttk.Button(self, width=30, command=lambda: self.on_click(self))
        self.button.pack(fill=tk.X)
        self.strip = ProgressStrip(self)
        self.strip.pack(fill=tk.X, pady=(2, 0))
        self.button.bind("<Enter>", self._show_tooltip)
        self.button.bind("<Leave>", self._hide_tooltip)
        self.render(self.effect)

    def render(self, effect: ControlEffect):
        """Applies a ControlEffect: label, enabled flag, progress fill and tone colour."""
        self.effect = effect
        if not self.winfo_exists(): return
        self.button.config(text=effect.label, state='normal' if effect.enabled else 'disabled')
        self.strip.update_fill(effect.progress, TONE_COLORS.get(effect.tone.value, ''))
        if self.tooltip_win is not None:
            self._hide_tooltip()

    def _show_tooltip(self, event=None):
        if not self.effect.tooltip or self.tooltip_win is not None: return
        x = self.button.winfo_rootx() + 10
        y = self.button.winfo_rooty() + self.button.winfo_height() + 4
        self.tooltip_win = tk.Toplevel(self)
        self.tooltip_win.wm_overrideredirect(True)
        self.tooltip_win.wm_geometry(f"+{x}+{y}")
        ttk.Label(self.tooltip_win, text=self.effect.tooltip, relief=tk.SOLID, borderwidth=1, padding=(4, 2)).pack()

    def _hide_tooltip(self, event=None):
        if self.tooltip_win is not None:
            self.tooltip_win.destroy()
            self.tooltip_win = None
