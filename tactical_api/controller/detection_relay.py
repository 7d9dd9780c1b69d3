# detection_relay.py
import base64
import logging
import os
from datetime import datetime, timezone

from .errors import DashboardError
from .publisher import DETECTION_EVENT
from tactical_api.data_processing.csv_parser import read_csv_file
from tactical_api.data_processing.file_io import DEFAULT_IO_TIMEOUT_S, mime_type_for, read_bytes
from tactical_api.data_processing.scanner import CSV_EXTENSIONS, IMAGE_EXTENSIONS, latest_file

logger = logging.getLogger(__name__)


class DetectionRelay:
    """Turns the newest image/CSV pair into a `drone-data` snapshot and publishes it."""

    def __init__(self, publisher, image_dir, csv_dir, timeout=DEFAULT_IO_TIMEOUT_S, lookup=None):
        self.publisher = publisher
        self.image_dir = image_dir
        self.csv_dir = csv_dir
        self.timeout = timeout
        self.lookup = lookup

    async def read_image_data_uri(self, image_path):
        try:
            content = await read_bytes(image_path, timeout=self.timeout)
        except DashboardError as e:
            logger.warning(f"[RELAY] Cannot read image {image_path}: {e.message}")
            return None
        encoded = base64.b64encode(content).decode("ascii")
        return f"data:{mime_type_for(image_path)};base64,{encoded}"

    async def build_snapshot(self, image_path=None, csv_path=None):
        table = await read_csv_file(csv_path, timeout=self.timeout) if csv_path else None
        image = await self.read_image_data_uri(image_path) if image_path else None
        if table is None and image is None:
            return None

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "csv": table.model_dump() if table is not None else None,
            "image": image,
            "csvPath": os.path.basename(csv_path) if csv_path else None,
            "imagePath": os.path.basename(image_path) if image_path else None,
        }

    async def publish_pair(self, image_path=None, csv_path=None):
        """Flush target for the arrival watcher."""
        if csv_path and self.lookup is not None:
            self.lookup.invalidate()

        snapshot = await self.build_snapshot(image_path, csv_path)
        if snapshot is None:
            logger.info("[RELAY] Nothing readable in batch; no event emitted")
            return None

        await self.publisher.broadcast(DETECTION_EVENT, snapshot)
        logger.info(
            f"[RELAY] Emitted drone data: {snapshot['csvPath'] or 'no CSV'}, "
            f"{snapshot['imagePath'] or 'no image'}"
        )
        return snapshot

    async def snapshot_from_disk(self):
        """Snapshot of the newest image and CSV currently on disk (late-joiner replay)."""
        image_path = await latest_file(self.image_dir, IMAGE_EXTENSIONS, timeout=self.timeout)
        csv_path = await latest_file(self.csv_dir, CSV_EXTENSIONS, timeout=self.timeout)
        if image_path is None and csv_path is None:
            return None
        return await self.build_snapshot(image_path, csv_path)

    async def current_snapshot(self):
        snapshot = self.publisher.latest(DETECTION_EVENT)
        if snapshot is None:
            snapshot = await self.snapshot_from_disk()
            if snapshot is not None:
                self.publisher.remember(DETECTION_EVENT, snapshot)
        return snapshot

    async def publish_latest_from_disk(self):
        """Emit the pair already on disk, as a watcher that reports existing files would."""
        snapshot = await self.snapshot_from_disk()
        if snapshot is None:
            return None
        await self.publisher.broadcast(DETECTION_EVENT, snapshot)
        logger.info(f"[RELAY] Emitted initial drone data: {snapshot['csvPath'] or 'no CSV'}, {snapshot['imagePath'] or 'no image'}")
        return snapshot
