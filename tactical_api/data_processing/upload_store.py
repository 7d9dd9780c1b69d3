# data_processing/upload_store.py
import os
import time

from .csv_parser import format_csv_record
from .file_io import DEFAULT_IO_TIMEOUT_S, is_safe_filename, write_bytes
from .scanner import IMAGE_EXTENSIONS, has_extension

OPTIONAL_COLUMNS = ("confidence", "label")


def resolve_upload_filename(original, now_ms=None):
    name = os.path.basename((original or "").replace("\\", "/"))
    if is_safe_filename(name) and has_extension(name, IMAGE_EXTENSIONS):
        return name
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"upload_{now_ms}.jpg"


def _present(value):
    return value is not None and str(value).strip() != ""


def _altitude(value):
    text = str(value or "").strip()
    # same sign correction the telemetry registry applies
    if text.startswith("-"):
        try:
            return str(abs(float(text)))
        except ValueError:
            return text
    return text


def build_metadata_record(filename, fields):
    """Metadata row for an uploaded image, or None when no position was supplied."""
    lat = fields.get("lat")
    lng = fields.get("lng") if _present(fields.get("lng")) else fields.get("lon")
    if not (_present(lat) and _present(lng)):
        return None

    record = {
        "image_name": filename,
        "latitude": str(lat).strip(),
        "longitude": str(lng).strip(),
        "altitude": _altitude(fields.get("height")),
        "timestamp": str(fields.get("timestamp") or "").strip(),
    }
    for column in OPTIONAL_COLUMNS:
        if _present(fields.get(column)):
            record[column] = str(fields[column])
    return record


async def store_upload(detected_dir, filename, content, record=None, timeout=DEFAULT_IO_TIMEOUT_S):
    """Persist the image (and its sibling CSV when `record` is given).

    Returns (image_path, csv_path_or_None).
    """
    image_path = os.path.join(detected_dir, filename)
    await write_bytes(image_path, content, timeout=timeout)

    csv_path = None
    if record is not None:
        stem = os.path.splitext(filename)[0]
        csv_path = os.path.join(detected_dir, f"{stem}.csv")
        await write_bytes(csv_path, format_csv_record(record).encode("utf-8"), timeout=timeout)
    return image_path, csv_path
