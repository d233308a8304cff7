"""Timestamp normalization at the persistence boundary.

Accepted shapes: ``datetime`` (Firestore's DatetimeWithNanoseconds included),
ISO-8601 strings, and wrapper objects exposing a date-conversion accessor
(``to_datetime()``, protobuf ``ToDatetime()`` or a JS-style ``toDate()``).
Anything else falls back to "now".
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)

DATE_ACCESSORS = ("to_datetime", "ToDatetime", "toDate")


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_datetime(value: Any, now: Callable[[], datetime] | None = None) -> datetime:
    """Convert any accepted timestamp shape into an aware UTC datetime."""
    if isinstance(value, datetime):
        return _utc(value)

    if isinstance(value, str):
        try:
            return _utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            logger.warning("Unparseable timestamp string %r, using now", value)
    elif value is not None:
        for accessor in DATE_ACCESSORS:
            convert = getattr(value, accessor, None)
            if callable(convert):
                try:
                    converted = convert()
                except Exception as e:
                    logger.warning("Timestamp accessor %s failed: %s", accessor, e)
                    break
                if isinstance(converted, datetime):
                    return _utc(converted)
                break

    return _utc((now or (lambda: datetime.now(timezone.utc)))())


def to_iso(value: Any, now: Callable[[], datetime] | None = None) -> str:
    """Canonical serialized form: UTC, millisecond precision, ``Z`` suffix."""
    return to_datetime(value, now).isoformat(timespec="milliseconds").replace("+00:00", "Z")
