# pairing.py
import logging
import os

from .errors import NotFoundError, StoreIOError
from tactical_api.data_processing.csv_parser import read_csv_file
from tactical_api.data_processing.file_io import DEFAULT_IO_TIMEOUT_S
from tactical_api.data_processing.scanner import CSV_EXTENSIONS, list_artifacts

logger = logging.getLogger(__name__)

IMAGE_NAME_FIELDS = ("image_name", "imageName")


def _strip_prefix(name):
    return os.path.basename(name.replace("\\", "/"))


def row_matches(row, image_filename):
    target = _strip_prefix(image_filename)
    for field in IMAGE_NAME_FIELDS:
        value = (row.get(field) or "").strip()
        if value and (value == image_filename or _strip_prefix(value) == target):
            return True
    return False


class MetadataLookup:
    """Finds the metadata row for an image by scanning every CSV file.

    Cost is linear in the total number of CSV rows. Hits are memoized
    per filename until `invalidate` is called, which the watcher does
    whenever a CSV file appears or changes. Misses are not memoized: a
    matching CSV can land in a directory nobody watches. With
    `memoize=False` every lookup scans.
    """

    def __init__(self, metadata_dirs, timeout=DEFAULT_IO_TIMEOUT_S, memoize=True):
        self.metadata_dirs = list(metadata_dirs)
        self.timeout = timeout
        self.memoize = memoize
        self._memo = {}
        self._generation = 0
        self.scans = 0

    def invalidate(self):
        self._memo.clear()
        self._generation += 1

    async def find_metadata_for_image(self, image_filename):
        key = _strip_prefix(image_filename)
        if self.memoize and key in self._memo:
            return self._memo[key]

        generation = self._generation
        row = await self._scan(image_filename)
        # a CSV may have landed while scanning; don't memoize a stale answer
        if row is not None and self.memoize and generation == self._generation:
            self._memo[key] = row
        return row

    async def _scan(self, image_filename):
        self.scans += 1
        for directory in self.metadata_dirs:
            try:
                names = await list_artifacts(directory, CSV_EXTENSIONS, timeout=self.timeout)
            except (NotFoundError, StoreIOError) as e:
                logger.warning(f"[PAIRING] Skipping metadata dir {directory}: {e.message}")
                continue

            for name in names:
                table = await read_csv_file(os.path.join(directory, name), timeout=self.timeout)
                if table is None:
                    continue
                for row in table.data:
                    if row_matches(row, image_filename):
                        logger.debug(f"[PAIRING] {image_filename} -> {name}")
                        return row
        return None
