"""Single time source for the bidding core. Tests patch ``utcnow``."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
