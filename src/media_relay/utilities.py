from datetime import datetime
import json
import logging
import pytz
from multidict import CIMultiDict

logger = logging.getLogger(__name__)


def get_current_datetime():
    return datetime.now(tz=pytz.UTC)

def iso_timestamp(date=None):
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-05-01T12:00:00.000Z"""
    if date is None:
        date = get_current_datetime()
    date = date.astimezone(pytz.UTC)
    return date.strftime("%Y-%m-%dT%H:%M:%S.") + f"{date.microsecond // 1000:03d}Z"

def parse_headers_param(raw):
    """
    Decode the JSON `headers` query parameter into a case-insensitive header map.
    Returns (headers, error). Anything that is not a JSON object degrades to an
    empty map and the parse error is handed back so the caller can log it.
    """
    headers = CIMultiDict()
    if not raw:
        return headers, None

    try:
        decoded = json.loads(raw)
    except ValueError as err:
        return headers, err

    if not isinstance(decoded, dict):
        return headers, ValueError(f"headers must be a JSON object, got {type(decoded).__name__}")

    for name, value in decoded.items():
        if value is None:
            continue
        headers[str(name)] = value if isinstance(value, str) else str(value)
    return headers, None

def merge_headers(defaults, overrides):
    """Layer `overrides` on top of `defaults`; names compare case-insensitively."""
    merged = CIMultiDict(defaults)
    for name, value in (overrides or {}).items():
        merged[name] = value
    return merged

def format_bytes(size):

    if size is None:
        return "unknown"

    if not isinstance(size, int):
        try:
            size = int(size)
        except ValueError:
            logger.debug(f"unable to format byte size {size!r}")
            return str(size)

    if size >= 1_000_000_000:
        return f"{size / 1_000_000_000:.2f} GB"
    elif size >= 1_000_000:
        return f"{size / 1_000_000:.2f} MB"
    elif size >= 1_000:
        return f"{size / 1_000:.2f} kB"
    else:
        return f"{size} B"
