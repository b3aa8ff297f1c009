"""Date helpers shared by keys, schemas and bookkeeping writes."""
from datetime import date, datetime, timezone
from typing import Union, Optional


def to_ymd(value: Union[str, date, datetime, None]) -> Optional[str]:
    """Normalise a date-ish value to YYYY-MM-DD, None when unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    if text.isdigit():
        # epoch milliseconds
        try:
            return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc).date().isoformat()
        except (OverflowError, OSError, ValueError):
            return None
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        return None


def to_date(value) -> Optional[date]:
    ymd = to_ymd(value)
    return date.fromisoformat(ymd) if ymd else None


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
