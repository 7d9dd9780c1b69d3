# data_processing/csv_parser.py
import csv
import io
import logging

from tactical_api.controller.errors import DashboardError, ParseError
from tactical_api.controller.models import CsvTable
from .file_io import DEFAULT_IO_TIMEOUT_S, read_text

logger = logging.getLogger(__name__)


def parse_csv(text):
    """Parse detector metadata into a CsvTable, or None when there is no data row.

    Fields are split on bare commas: quoting is NOT understood, so a value
    containing a comma spills into the following columns. Missing trailing
    fields become "".
    """
    lines = [line.strip() for line in text.strip().splitlines()]
    lines = [line for line in lines if line]
    if len(lines) < 2:
        return None

    headers = [h.strip() for h in lines[0].split(",")]
    rows = []
    for line in lines[1:]:
        values = [v.strip() for v in line.split(",")]
        rows.append({
            header: values[i] if i < len(values) else ""
            for i, header in enumerate(headers)
        })
    return CsvTable(headers=headers, data=rows)


def format_csv_record(record):
    """Header line plus one row, quoting values that contain delimiters or quotes."""
    buffer = io.StringIO()
    writer = csv.DictWriter(
        buffer,
        fieldnames=list(record.keys()),
        quoting=csv.QUOTE_MINIMAL,
        lineterminator="\n",
    )
    writer.writeheader()
    writer.writerow({k: "" if v is None else str(v) for k, v in record.items()})
    return buffer.getvalue()


async def read_csv_file(path, timeout=DEFAULT_IO_TIMEOUT_S):
    """Read and parse one CSV file; unreadable or malformed files yield None."""
    try:
        try:
            text = await read_text(path, timeout=timeout)
        except UnicodeDecodeError as e:
            raise ParseError(f"CSV is not valid UTF-8: {e}", path=path)
        return parse_csv(text)
    except DashboardError as e:
        logger.warning(f"[CSV] Skipping {path}: {e.message}")
        return None
