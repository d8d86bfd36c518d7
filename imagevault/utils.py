import json
from datetime import datetime, timezone


def now_iso():
    return to_iso(datetime.now(timezone.utc))


def to_iso(dt):
    # Millisecond precision keeps created_at ordering stable for rapid inserts.
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_iso(value):
    """Parse an ISO-8601 string (``Z`` suffix allowed); ``None`` when unparseable."""
    if not isinstance(value, str) or not value.strip():
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def timestamp_iso(ts):
    return to_iso(datetime.fromtimestamp(ts, tz=timezone.utc))


def json_dumps(obj):
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def json_loads_or_none(raw):
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


# SQLite INTEGER is a signed 64-bit value.
SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1


def to_int_or_none(value):
    """Coerce to an int SQLite can store; ``None`` when not numeric or out of range."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not SQLITE_INT_MIN <= number <= SQLITE_INT_MAX:
        return None
    return number
