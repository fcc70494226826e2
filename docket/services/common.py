import threading
import uuid
from datetime import datetime, timedelta, timezone

from docket.errors import CancelledError, InvalidArgumentError

_NIL_UUID = uuid.UUID(int=0)


def coerce_uuid(value):
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def optional_uuid(value, field: str) -> uuid.UUID | None:
    """Coerce ``value`` to a UUID, treating None, "" and the nil UUID as absent."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        parsed = coerce_uuid(value)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"{field} is not a valid id", {"field": field})
    if parsed == _NIL_UUID:
        return None
    return parsed


def require_uuid(value, field: str) -> uuid.UUID:
    parsed = optional_uuid(value, field)
    if parsed is None:
        raise InvalidArgumentError(f"{field} is required", {"field": field})
    return parsed


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_date_range(
    since: datetime | None, until: datetime | None
) -> tuple[datetime | None, datetime | None]:
    since = as_utc(since) if since is not None else None
    until = as_utc(until) if until is not None else None
    if since is not None and until is not None and since > until:
        raise InvalidArgumentError("since must not be later than until")
    return since, until


class UtcClock:
    """Wall clock that never hands out the same instant twice.

    Ledger keys include the timestamp, so two writes by the same user on the
    same subject within one microsecond would otherwise collide.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last: datetime | None = None

    def _read(self) -> datetime:
        return datetime.now(timezone.utc)

    def now(self) -> datetime:
        with self._lock:
            current = self._read()
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current


class CancellationToken:
    """Cooperative cancellation flag checked by the repository between steps."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("Operation cancelled")
