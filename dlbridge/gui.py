"""The main application class, handling the Tkinter GUI and event loop."""

import tkinter as tk
from tkinter import ttk, messagebox, scrolledtext
import queue
import sys
import urllib.parse
import logging
import asyncio
from typing import List, Optional

from ._version import __version__
from .constants import resource_path
from .controller import DownloadController
from .config import Settings
from .exceptions import DlBridgeError
from .jobs import DownloadRequest, JobState
from .gui_components.download_control import DownloadControl
from .gui_components.job_context_menu import JobContextMenu


class MediaRow(ttk.Frame):
    """One added URL: its description and the control that drives its download."""
    def __init__(self, master, request: DownloadRequest, on_click, **kwargs):
        super().__init__(master, padding=(5, 3), **kwargs)
        self.request = request
        self.columnconfigure(0, weight=1)
        ttk.Label(self, text=self.describe(request), anchor=tk.W).grid(row=0, column=0, sticky=tk.EW, padx=(0, 10))
        self.control = DownloadControl(self, on_click=on_click)
        self.control.grid(row=0, column=1, sticky=tk.E)

    @staticmethod
    def describe(request: DownloadRequest) -> str:
        if request.range_start is None:
            return request.url
        end = request.range_end if request.range_end is not None else 'end'
        return f"{request.url}  [items {request.range_start}-{end}]"


class DlBridgeApp:
    """The main application class, handling the Tkinter GUI and event loop."""
    MAX_LOG_LINES = 2000

    def __init__(self, root: tk.Tk, gui_queue: queue.Queue, controller: DownloadController, config: Settings, loop: asyncio.AbstractEventLoop):
        """
        Initializes the main application GUI.

        Args:
            root: The root Tkinter window.
            gui_queue: The queue the logging QueueHandler feeds.
            controller: The download controller.
            config: The loaded application settings.
            loop: The asyncio event loop, pumped from the Tk main loop.
        """
        self.root = root
        self.root.title(f"dlbridge v{__version__}"); self.root.geometry("820x640")
        self.logger = logging.getLogger(__name__)
        try: self.root.iconbitmap(resource_path('icon.ico'))
        except tk.TclError: self.logger.debug("Could not load 'icon.ico'.")

        self.gui_queue = gui_queue
        self.log_formatter = logging.Formatter('%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s')
        self.controller = controller
        self.config = config
        self.loop = loop
        self.rows: List[MediaRow] = []
        self.is_destroyed = False
        self._last_status = ''

        self.create_widgets()
        self.root.protocol("WM_DELETE_WINDOW", self.on_closing)
        self.loop.create_task(self.startup())
        self.root.after(50, self._run_async_loop)

    async def startup(self):
        try:
            await self.controller.run_startup()
        except DlBridgeError as e:
            self.logger.critical(f"Could not start the download worker: {e}")
            await asyncio.to_thread(messagebox.showerror, "Worker Error", f"Could not start the download worker:\n{e}")

    def on_closing(self):
        """Synchronous wrapper for the async closing logic."""
        self.loop.create_task(self.handle_closing_async())

    def _run_async_loop(self):
        """
        Drives the asyncio event loop and reschedules itself.
        This function is called periodically by the Tkinter main loop.
        """
        if self.is_destroyed:
            return
        self.loop.call_soon(self.loop.stop)
        self.loop.run_forever()
        if self.is_destroyed:
            return
        self.process_log_queue()
        self.refresh_status()
        self.root.after(50, self._run_async_loop)

    async def handle_closing_async(self):
        """Handles the application window closing event."""
        if self.controller.registry.active():
            should_close = await asyncio.to_thread(
                messagebox.askyesno,
                "Confirm Exit",
                "Downloads are in progress. Are you sure you want to exit?"
            )
            if not should_close:
                return
        await self.controller.close()
        self.is_destroyed = True
        self.root.destroy()

    def create_widgets(self):
        """Creates and lays out all the main GUI widgets."""
        main_frame = ttk.Frame(self.root, padding="10"); main_frame.pack(fill=tk.BOTH, expand=True)
        input_frame = ttk.LabelFrame(main_frame, text="Add Media", padding="10"); input_frame.pack(fill=tk.X, pady=5); input_frame.columnconfigure(1, weight=1)
        ttk.Label(input_frame, text="URL:").grid(row=0, column=0, padx=5, pady=5, sticky=tk.W)
        self.url_var = tk.StringVar()
        url_entry = ttk.Entry(input_frame, textvariable=self.url_var); url_entry.grid(row=0, column=1, columnspan=5, padx=5, pady=5, sticky=tk.EW)
        url_entry.bind("<Return>", lambda event: self.add_media())

        ttk.Label(input_frame, text="Set items from:").grid(row=1, column=0, padx=5, pady=5, sticky=tk.W)
        self.range_start_var = tk.StringVar(); self.range_end_var = tk.StringVar()
        ttk.Entry(input_frame, textvariable=self.range_start_var, width=6).grid(row=1, column=1, padx=5, pady=5, sticky=tk.W)
        ttk.Label(input_frame, text="to (blank = last):").grid(row=1, column=2, padx=5, pady=5, sticky=tk.W)
        ttk.Entry(input_frame, textvariable=self.range_end_var, width=6).grid(row=1, column=3, padx=5, pady=5, sticky=tk.W)
        self.add_button = ttk.Button(input_frame, text="Add", command=self.add_media); self.add_button.grid(row=1, column=5, padx=5, pady=5, sticky=tk.E)
        ttk.Label(input_frame, text=f"Saving to: {self.config.download_dir}").grid(row=2, column=0, columnspan=6, padx=5, sticky=tk.W)

        media_frame = ttk.LabelFrame(main_frame, text="Media", padding="5"); media_frame.pack(fill=tk.BOTH, expand=True, pady=5)
        self.rows_canvas = tk.Canvas(media_frame, highlightthickness=0)
        rows_scrollbar = ttk.Scrollbar(media_frame, orient="vertical", command=self.rows_canvas.yview)
        self.rows_canvas.configure(yscrollcommand=rows_scrollbar.set)
        rows_scrollbar.pack(side=tk.RIGHT, fill=tk.Y); self.rows_canvas.pack(side=tk.LEFT, fill=tk.BOTH, expand=True)
        self.rows_frame = ttk.Frame(self.rows_canvas)
        self.rows_window = self.rows_canvas.create_window((0, 0), window=self.rows_frame, anchor=tk.NW)
        self.rows_frame.bind("<Configure>", lambda e: self.rows_canvas.configure(scrollregion=self.rows_canvas.bbox("all")))
        self.rows_canvas.bind("<Configure>", lambda e: self.rows_canvas.itemconfigure(self.rows_window, width=e.width))

        self.row_context_menu = JobContextMenu(
            self.root,
            force_callback=lambda row: self.loop.call_soon(self.force_redownload, row),
            remove_callback=lambda row: self.loop.call_soon(self.remove_row, row),
        )

        log_frame = ttk.LabelFrame(main_frame, text="Log", padding="5"); log_frame.pack(fill=tk.X, pady=5)
        self.log_text = scrolledtext.ScrolledText(log_frame, wrap=tk.WORD, height=10, state='disabled'); self.log_text.pack(fill=tk.X)
        status_bar_frame = ttk.Frame(self.root, relief=tk.SUNKEN); status_bar_frame.pack(side=tk.BOTTOM, fill=tk.X, padx=2, pady=2)
        self.status_label = ttk.Label(status_bar_frame, text="Ready"); self.status_label.pack(side=tk.LEFT, padx=5)

    def _parse_range(self) -> Optional[tuple]:
        """Reads the optional range fields. Returns (start, end), or None after telling the user what is wrong."""
        start_raw, end_raw = self.range_start_var.get().strip(), self.range_end_var.get().strip()
        if not start_raw and not end_raw:
            return (None, None)
        try:
            start = int(start_raw) if start_raw else 1
            end = int(end_raw) if end_raw else None
        except ValueError:
            messagebox.showwarning("Input Error", "Range values must be whole numbers.")
            return None
        if start < 1 or (end is not None and end < start):
            messagebox.showwarning("Input Error", "The range must start at 1 or later and not end before it starts.")
            return None
        return (start, end)

    def add_media(self):
        url = self.url_var.get().strip()
        if not url or not urllib.parse.urlparse(url).scheme:
            messagebox.showwarning("Input Error", "Please enter a valid URL.")
            return
        selected = self._parse_range()
        if selected is None:
            return
        range_start, range_end = selected
        request = DownloadRequest(url, range_start=range_start, range_end=range_end)

        row = MediaRow(self.rows_frame, request, on_click=self.on_control_clicked)
        row.pack(fill=tk.X)
        for widget in (row, *row.winfo_children()):
            widget.bind("<Button-3>", lambda event, r=row: self.show_row_menu(event, r))
            if sys.platform == "darwin": widget.bind("<Button-2>", lambda event, r=row: self.show_row_menu(event, r))
        self.rows.append(row)
        self.url_var.set(''); self.range_start_var.set(''); self.range_end_var.set('')
        self.logger.info(f"Added {request.kind.value} item: {MediaRow.describe(request)}")

    def _row_for(self, control: DownloadControl) -> Optional[MediaRow]:
        return next((row for row in self.rows if row.control is control), None)

    def on_control_clicked(self, control: DownloadControl):
        """Schedules the click inside the event loop, where jobs and timers live."""
        self.loop.call_soon(self._handle_click, control)

    def _handle_click(self, control: DownloadControl):
        row = self._row_for(control)
        if row is None:
            return
        try:
            self.controller.on_control_clicked(control, row.request)
        except DlBridgeError as e:
            self.logger.error(f"Could not start download for {row.request.url}: {e}")

    def show_row_menu(self, event, row: MediaRow):
        job = self.controller.registry.for_control(row.control)
        busy = job is not None and not job.state.is_terminal
        self.row_context_menu.show(event, row, busy)

    def force_redownload(self, row: MediaRow):
        request = DownloadRequest(row.request.url, row.request.range_start, row.request.range_end, force=True)
        try:
            self.controller.start(request, row.control)
        except DlBridgeError as e:
            self.logger.error(f"Could not force redownload of {request.url}: {e}")

    def remove_row(self, row: MediaRow):
        self.controller.forget_control(row.control)
        if row in self.rows:
            self.rows.remove(row)
        row.destroy()

    def refresh_status(self):
        counts = self.controller.state_counts()
        active = sum(n for state, n in counts.items() if state.is_active)
        if active:
            text = (f"Downloading: {active} active, {counts.get(JobState.QUEUED, 0)} queued, "
                    f"{counts.get(JobState.PAUSED, 0)} paused, {counts.get(JobState.DOWNLOADED, 0)} done")
        elif counts:
            text = f"Idle: {counts.get(JobState.DOWNLOADED, 0)} done, {counts.get(JobState.ERROR, 0)} failed"
        else:
            text = "Ready"
        if text != self._last_status:
            self._last_status = text
            self.status_label.config(text=text)

    def process_log_queue(self):
        """Processes log messages from the queue."""
        try:
            while True:
                record = self.gui_queue.get_nowait()
                self.update_log_display(self.log_formatter.format(record))
        except queue.Empty:
            pass

    def update_log_display(self, message: str):
        if self.is_destroyed: return
        self.log_text.config(state='normal')
        self.log_text.insert(tk.END, message + '\n')
        num_lines = int(self.log_text.index('end-1c').split('.')[0])
        if num_lines > self.MAX_LOG_LINES: self.log_text.delete('1.0', f'{num_lines - self.MAX_LOG_LINES + 1}.0')
        self.log_text.see(tk.END)
        self.log_text.config(state='disabled')
