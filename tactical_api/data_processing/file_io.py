# data_processing/file_io.py
import asyncio
import logging
import os

from tactical_api.controller.errors import NotFoundError, StoreIOError

logger = logging.getLogger(__name__)

DEFAULT_IO_TIMEOUT_S = 5.0

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
}


async def run_io(func, *args, timeout=DEFAULT_IO_TIMEOUT_S, path=None):
    """Run a blocking filesystem call off the event loop, bounded by `timeout`.

    FileNotFoundError becomes NotFoundError, any other OSError (and the
    timeout itself) becomes StoreIOError.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
    except asyncio.TimeoutError:
        raise StoreIOError(f"Filesystem call timed out after {timeout}s", path=path)
    except FileNotFoundError as e:
        raise NotFoundError(f"No such file or directory: {e.filename or path}", path=path)
    except OSError as e:
        raise StoreIOError(str(e), path=path)


def _read_bytes(path):
    with open(path, "rb") as f:
        return f.read()


def _read_text(path):
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _write_bytes(path, content):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(content)
    return path


async def read_bytes(path, timeout=DEFAULT_IO_TIMEOUT_S):
    return await run_io(_read_bytes, path, timeout=timeout, path=path)


async def read_text(path, timeout=DEFAULT_IO_TIMEOUT_S):
    return await run_io(_read_text, path, timeout=timeout, path=path)


async def write_bytes(path, content, timeout=DEFAULT_IO_TIMEOUT_S):
    return await run_io(_write_bytes, path, content, timeout=timeout, path=path)


def is_safe_filename(filename):
    if not filename or filename in (".", ".."):
        return False
    return not (".." in filename or "/" in filename or "\\" in filename)


def mime_type_for(filename):
    ext = os.path.splitext(filename)[1].lower()
    return MIME_TYPES.get(ext, "image/jpeg")
