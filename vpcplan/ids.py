"""
Run ID generation utilities.

Run IDs look like ``r-20240131-142501-k3x9``: creation time to the second plus
a random suffix, so lexical order is chronological order.
"""

import random
import re
import string
from datetime import datetime
from typing import Optional

RUN_ID_PATTERN = re.compile(r"^r-(\d{8})-(\d{6})-([a-z0-9]{4})$")
_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


def new_run_id(now: Optional[datetime] = None) -> str:
    """
    Generate a new run ID.

    Args:
        now: Creation time; defaults to the current local time

    Returns:
        str: Unique run ID
    """
    stamp = (now or datetime.now()).strftime(_TIMESTAMP_FORMAT)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=4))
    return f"r-{stamp}-{suffix}"


def is_valid_run_id(run_id: str) -> bool:
    return bool(RUN_ID_PATTERN.match(run_id or ""))


def run_started_at(run_id: str) -> Optional[datetime]:
    """Creation time encoded in a run ID, or None if the ID is malformed."""
    match = RUN_ID_PATTERN.match(run_id or "")
    if not match:
        return None
    try:
        return datetime.strptime(f"{match.group(1)}-{match.group(2)}", _TIMESTAMP_FORMAT)
    except ValueError:
        return None
