"""UTC timezone enforcement.

Sets the TZ environment variable to UTC and provides the single clock used for
every stored timestamp (naive UTC datetimes).
"""

import os
from datetime import datetime, timezone

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
