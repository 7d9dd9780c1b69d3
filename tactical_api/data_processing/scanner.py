# data_processing/scanner.py
import logging
import os
import re

from tactical_api.controller.errors import DashboardError, NotFoundError
from .file_io import DEFAULT_IO_TIMEOUT_S, run_io

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpeg", ".jpg", ".png", ".gif")
CSV_EXTENSIONS = (".csv",)

_DIGITS = re.compile(r"\d+")


def ordering_key(filename):
    """First run of digits in the name, 0 when there is none.

    Names without digits all share key 0, so their relative order is not
    meaningful.
    """
    match = _DIGITS.search(filename)
    return int(match.group()) if match else 0


def sort_newest_first(filenames):
    return sorted(filenames, key=ordering_key, reverse=True)


def has_extension(filename, extensions):
    return filename.lower().endswith(tuple(extensions))


async def list_artifacts(directory, extensions=IMAGE_EXTENSIONS, timeout=DEFAULT_IO_TIMEOUT_S):
    """Filenames in `directory` with an allowed extension, newest first."""
    if not await run_io(os.path.isdir, directory, timeout=timeout, path=directory):
        raise NotFoundError(f"Directory does not exist: {directory}", path=directory)

    names = await run_io(os.listdir, directory, timeout=timeout, path=directory)
    matching = [n for n in names if not n.startswith(".") and has_extension(n, extensions)]
    logger.debug(f"[SCANNER] {len(matching)} of {len(names)} entries match in {directory}")
    return sort_newest_first(matching)


async def latest_file(directory, extensions=IMAGE_EXTENSIONS, timeout=DEFAULT_IO_TIMEOUT_S):
    """Absolute path of the newest matching file, or None (logged) when unavailable."""
    try:
        names = await list_artifacts(directory, extensions, timeout=timeout)
    except DashboardError as e:
        logger.warning(f"[SCANNER] Cannot list {directory}: {e.message}")
        return None
    if not names:
        return None
    return os.path.join(directory, names[0])
