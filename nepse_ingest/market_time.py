"""Exchange clock helpers.

The exchange runs on a fixed UTC+5:45 offset with no daylight saving, so
every date boundary (business date, daily counters, intraday expiry) is
computed against a fixed-offset timezone rather than the host's local time.
"""

import re
from datetime import datetime, time, timedelta, timezone

from config.settings import GlobalConfig, get_config

STATUS_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})\s*(AM|PM)$", re.IGNORECASE)

_DAY_NAMES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def market_timezone(config: GlobalConfig | None = None) -> timezone:
    """Fixed-offset timezone of the exchange."""
    config = config or get_config()
    return timezone(timedelta(minutes=config.market_utc_offset_minutes))


def now_local(config: GlobalConfig | None = None) -> datetime:
    """Current wall-clock time in the exchange timezone."""
    return datetime.now(market_timezone(config))


def today_str(now: datetime) -> str:
    """ISO date (YYYY-MM-DD) of ``now``."""
    return now.date().isoformat()


def seconds_until_end_of_day(now: datetime) -> int:
    """Whole seconds left until 23:59:59.999 of ``now``'s day.

    Returns 0 once that instant has passed; callers skip setting an
    expiry in that case.
    """
    end_of_day = now.replace(hour=23, minute=59, second=59, microsecond=999000)
    return max(int((end_of_day - now).total_seconds()), 0)


def parse_status_time(text: str | None) -> time | None:
    """Parse a 12-hour clock string such as ``"3:45 PM"``.

    Returns:
        The 24-hour ``time`` or None when the text is not a 12-hour clock value.
    """
    if not text:
        return None
    match = STATUS_TIME_PATTERN.match(text.strip())
    if match is None:
        return None

    hour = int(match.group(1))
    minute = int(match.group(2))
    period = match.group(3).upper()
    if hour > 12 or minute > 59:
        return None

    if period == "PM" and hour != 12:
        hour += 12
    if period == "AM" and hour == 12:
        hour = 0
    return time(hour, minute)


def is_status_time_ahead(status_time: str | None, now: datetime) -> bool:
    """True when ``status_time`` is later than ``now``'s hour and minute.

    Such a snapshot is a leftover from a previous business day. Values that
    are not 12-hour clock strings are never considered ahead.
    """
    parsed = parse_status_time(status_time)
    if parsed is None:
        return False
    return (parsed.hour, parsed.minute) > (now.hour, now.minute)


def format_status_time(moment: datetime) -> str:
    """Render ``moment`` as the site's 12-hour clock (``"11:15 AM"``)."""
    hour = moment.hour % 12 or 12
    period = "PM" if moment.hour >= 12 else "AM"
    return f"{hour}:{moment.minute:02d} {period}"


def trading_weekdays(config: GlobalConfig | None = None) -> set[int]:
    """Python weekday numbers (Monday=0) of the configured trading days."""
    config = config or get_config()
    days = {part.strip().lower()[:3] for part in config.trading_days.split(",")}
    return {index for index, name in enumerate(_DAY_NAMES) if name in days}


def is_trading_window(now: datetime, config: GlobalConfig | None = None) -> bool:
    """True on a trading day between the open and close hours."""
    config = config or get_config()
    if now.weekday() not in trading_weekdays(config):
        return False
    return config.market_open_hour <= now.hour < config.market_close_hour
