# watcher.py
import asyncio
import logging
import os
from enum import Enum

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from tactical_api.data_processing.scanner import CSV_EXTENSIONS, IMAGE_EXTENSIONS, has_extension

logger = logging.getLogger(__name__)

IMAGE = "image"
CSV = "csv"


class WatchState(Enum):
    IDLE = "idle"
    QUEUING = "queuing"
    FLUSHING = "flushing"


class ArrivalWatcher:
    """Debounces file arrivals in the image and CSV directories.

    Idle -> Queuing on the first event, Queuing -> Flushing when the debounce
    timer fires, Flushing -> Idle (or back to Queuing if more events arrived
    while the flush was running). Only the last queued path of each kind is
    handed to `on_batch(image_path, csv_path)`; earlier ones in the same burst
    are dropped.

    Every method here must run on the event loop; observer threads reach it
    through `loop.call_soon_threadsafe`.
    """

    def __init__(self, on_batch, image_dir, csv_dir, debounce_s=0.1, observer_factory=Observer):
        self.on_batch = on_batch
        self.image_dir = image_dir
        self.csv_dir = csv_dir
        self.debounce_s = debounce_s
        self.observer_factory = observer_factory

        self.state = WatchState.IDLE
        self.queues = {IMAGE: [], CSV: []}
        self.flush_count = 0
        self.dropped_count = 0
        self._timer = None
        self._task = None
        self._observer = None

    def enqueue(self, kind, path):
        self.queues[kind].append(path)
        if self.state is WatchState.IDLE:
            self._schedule_flush()
        # Queuing: timer already pending. Flushing: picked up once the flush ends.

    def _schedule_flush(self):
        self.state = WatchState.QUEUING
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_s, self._start_flush)

    def _start_flush(self):
        self._timer = None
        self._task = asyncio.get_running_loop().create_task(self.flush())

    async def flush(self):
        if self.state is WatchState.FLUSHING:
            return False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        self.state = WatchState.FLUSHING
        images, csvs = self.queues[IMAGE], self.queues[CSV]
        latest_image = images[-1] if images else None
        latest_csv = csvs[-1] if csvs else None
        self.dropped_count += max(len(images) - 1, 0) + max(len(csvs) - 1, 0)
        self.queues = {IMAGE: [], CSV: []}

        try:
            if latest_image or latest_csv:
                await self.on_batch(latest_image, latest_csv)
        except Exception as e:
            logger.error(f"[WATCHER] Error processing batch ({latest_image}, {latest_csv}): {e}")
        finally:
            self.flush_count += 1
            if self.queues[IMAGE] or self.queues[CSV]:
                self._schedule_flush()
            else:
                self.state = WatchState.IDLE
        return True

    async def wait_idle(self):
        """Wait until pending and in-flight flushes are done."""
        while self.state is not WatchState.IDLE:
            if self._task is not None and not self._task.done():
                await self._task
            else:
                await asyncio.sleep(self.debounce_s / 2 or 0.01)

    def start(self, loop):
        self._observer = self.observer_factory()
        self._observer.schedule(_ArrivalHandler(self, IMAGE, IMAGE_EXTENSIONS, loop), self.image_dir, recursive=False)
        self._observer.schedule(_ArrivalHandler(self, CSV, CSV_EXTENSIONS, loop), self.csv_dir, recursive=False)
        self._observer.start()
        logger.info(f"[WATCHER] Watching image directory: {self.image_dir}")
        logger.info(f"[WATCHER] Watching CSV directory: {self.csv_dir}")

    def stop(self):
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("[WATCHER] Stopped")


class _ArrivalHandler(FileSystemEventHandler):
    def __init__(self, watcher, kind, extensions, loop):
        self.watcher = watcher
        self.kind = kind
        self.extensions = extensions
        self.loop = loop

    def on_created(self, event):
        self._dispatch(event.src_path, event.is_directory, "New")

    def on_modified(self, event):
        self._dispatch(event.src_path, event.is_directory, "Changed")

    def on_moved(self, event):
        self._dispatch(event.dest_path, event.is_directory, "New")

    def _dispatch(self, raw_path, is_directory, label):
        if is_directory:
            return
        path = os.path.abspath(os.fsdecode(raw_path))
        name = os.path.basename(path)
        if name.startswith(".") or not has_extension(name, self.extensions):
            return
        logger.info(f"[WATCHER] {label} {self.kind} file: {path}")
        try:
            self.loop.call_soon_threadsafe(self.watcher.enqueue, self.kind, path)
        except RuntimeError as e:
            logger.warning(f"[WATCHER] Event loop unavailable, dropping {path}: {e}")
