# file_ingest.py
import asyncio
import json
import logging
import os

from watchdog.events import FileSystemEventHandler
from watchdog.observers.polling import PollingObserver

from .errors import DashboardError
from .telemetry import parse_telemetry_json
from tactical_api.data_processing.file_io import DEFAULT_IO_TIMEOUT_S, read_text, run_io

logger = logging.getLogger(__name__)

DEFAULT_PAYLOAD = {"lat": 0, "lng": 0, "height": 0}


def _write_default(path):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        json.dump(DEFAULT_PAYLOAD, f, indent=2)


class TeamDronesFilePoller:
    """Re-reads team-drones.json whenever it changes and submits it as one update."""

    def __init__(self, registry, path, timeout=DEFAULT_IO_TIMEOUT_S, observer_factory=PollingObserver):
        self.registry = registry
        self.path = os.path.abspath(path)
        self.timeout = timeout
        self.observer_factory = observer_factory
        self.loop = None
        self._observer = None
        self._tasks = set()

    async def ensure_file(self):
        exists = await run_io(os.path.exists, self.path, timeout=self.timeout, path=self.path)
        if not exists:
            await run_io(_write_default, self.path, timeout=self.timeout, path=self.path)
            logger.info(f"[FILE] Created default telemetry file: {self.path}")
            return True
        return False

    async def reload(self):
        """Read, parse and submit the file; failures are logged and yield False."""
        try:
            text = await read_text(self.path, timeout=self.timeout)
            payload = parse_telemetry_json(text)
        except DashboardError as e:
            logger.warning(f"[FILE] Skipping {self.path}: {e.message}")
            return False
        except UnicodeDecodeError as e:
            logger.warning(f"[FILE] Skipping {self.path}: {e}")
            return False
        return await self.registry.update_entity(payload, source="file")

    def schedule_reload(self):
        task = asyncio.get_running_loop().create_task(self.reload())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def start(self, loop):
        self.loop = loop
        self._observer = self.observer_factory()
        self._observer.schedule(_TelemetryFileHandler(self), os.path.dirname(self.path), recursive=False)
        self._observer.start()
        logger.info(f"[FILE] Watching telemetry file: {self.path}")

    def stop(self):
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None


class _TelemetryFileHandler(FileSystemEventHandler):
    def __init__(self, poller):
        self.poller = poller

    def on_modified(self, event):
        self._dispatch(event.src_path, event.is_directory)

    def on_created(self, event):
        self._dispatch(event.src_path, event.is_directory)

    def on_moved(self, event):
        self._dispatch(event.dest_path, event.is_directory)

    def _dispatch(self, raw_path, is_directory):
        if is_directory or os.path.abspath(os.fsdecode(raw_path)) != self.poller.path:
            return
        try:
            self.poller.loop.call_soon_threadsafe(self.poller.schedule_reload)
        except RuntimeError as e:
            logger.warning(f"[FILE] Event loop unavailable, skipping reload: {e}")
