"""
KitForge ID Utilities
Request ids for tracing and unique object names for rendered outputs.
"""
import time
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_request_id() -> str:
    """
    Generate a unique request ID for tracking one pipeline run.

    Returns:
        Request ID like ``rc-20260101120000-1a2b3c4d``
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    short_uuid = str(uuid.uuid4())[:8]
    return f"rc-{timestamp}-{short_uuid}"


def render_object_name(design_request_id: str, timestamp_ms: Optional[int] = None) -> str:
    """
    Build the output object name for a rendered image.

    Names are keyed by design request and millisecond timestamp so concurrent
    runs never write to the same object.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{design_request_id}-{timestamp_ms}.png"


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
