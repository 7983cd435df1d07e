from datetime import datetime, timezone, timedelta
import re

DURATION_UNITS = {"d": 86400, "h": 3600, "m": 60, "s": 1}
DURATION_PART_RE = re.compile(r"(\d+)\s*([dhms])", re.IGNORECASE)


def parse_duration_to_seconds(s: str) -> float:
    """
    Seconds in a duration like '90', '2.5', '45s', '10m' or '1h30m'.

    Unit parts must run largest first, each at most once. A bare number
    means seconds. Negative or malformed input raises ValueError.
    """
    if s is None or not str(s).strip():
        raise ValueError("duration string is empty")
    text = str(s).strip()
    try:
        value = float(text)
    except ValueError:
        value = _sum_unit_parts(text)
    if value < 0:
        raise ValueError("duration must be >= 0 seconds")
    return value


def _sum_unit_parts(text: str) -> int:
    total, pos, last_unit = 0, 0, None
    for part in DURATION_PART_RE.finditer(text):
        gap = text[pos:part.start()]
        unit = DURATION_UNITS[part.group(2).lower()]
        if gap.strip() or (last_unit is not None and unit >= last_unit):
            raise ValueError(f"Invalid duration format: {text!r}")
        total += int(part.group(1)) * unit
        pos, last_unit = part.end(), unit
    if last_unit is None or text[pos:].strip():
        raise ValueError(f"Invalid duration format: {text!r}")
    return total


def _fmt(dt: datetime) -> str:
    # fixed microsecond width keeps stored timestamps lexicographically ordered
    return dt.isoformat(timespec="microseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return _fmt(datetime.now(timezone.utc))


def iso_in_utc_from_seconds_from_now(seconds: float) -> str:
    """The UTC instant `seconds` from now, as stored in `available_at`."""
    return _fmt(datetime.now(timezone.utc) + timedelta(seconds=seconds))
