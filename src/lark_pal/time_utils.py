from datetime import datetime
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Shanghai"
DEFAULT_TIME_FORMAT = "%Y-%m-%d %H:%M %a"


def get_local_time(ts_ms: int, tz_name: str = DEFAULT_TIMEZONE) -> datetime:
    """Get a datetime object for an epoch-millisecond timestamp in the display timezone."""
    dt = datetime.fromtimestamp(ts_ms / 1000.0, ZoneInfo("UTC"))
    return dt.astimezone(ZoneInfo(tz_name))


def format_local_time(
    ts_ms: int,
    tz_name: str = DEFAULT_TIMEZONE,
    time_format: str = DEFAULT_TIME_FORMAT,
) -> str:
    """Format an epoch-millisecond timestamp into a human-readable label."""
    return get_local_time(ts_ms, tz_name).strftime(time_format)


def days_to_ms(days: float) -> int:
    return int(days * 24 * 3600 * 1000)
