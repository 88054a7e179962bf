"""
Data models for storage layer.

Defines the month keys that index the spend ledger.
"""

import re
from datetime import datetime, timezone
from typing import Optional

MONTH_KEY_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def month_key(moment: Optional[datetime] = None) -> str:
    """Return the UTC calendar month of a moment as ``YYYY-MM``.

    Naive datetimes are taken to be UTC already.

    Args:
        moment: Point in time (defaults to now)

    Returns:
        Month key such as ``2025-09``
    """
    if moment is None:
        moment = datetime.now(timezone.utc)
    elif moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return f"{moment.year:04d}-{moment.month:02d}"


def month_key_from_timestamp(epoch_seconds: float) -> str:
    """Month key for a Unix timestamp in seconds."""
    return month_key(datetime.fromtimestamp(epoch_seconds, tz=timezone.utc))


def is_month_key(value: str) -> bool:
    return bool(MONTH_KEY_PATTERN.match(value))
