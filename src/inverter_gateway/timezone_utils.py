"""Inverter-local calendar helpers.

Vendor day totals and SOC curves are keyed by the calendar date at the
inverter site, not the gateway host, so "today" and query dates are
resolved in ``reconcile.timezone``.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from inverter_gateway.errors import InvalidInput

# Offsets for the vendor's markets when the host lacks IANA tzdata (Windows, slim images)
_FIXED_FALLBACKS: dict[str, tzinfo] = {
    "Asia/Ho_Chi_Minh": timezone(timedelta(hours=7)),
    "Asia/Bangkok": timezone(timedelta(hours=7)),
    "Asia/Shanghai": timezone(timedelta(hours=8)),
}


@lru_cache(maxsize=16)
def resolve_timezone(tz_name: str) -> tzinfo:
    """IANA zone, else a known fixed offset, else the host zone, else UTC."""
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        pass

    if tz_name in _FIXED_FALLBACKS:
        return _FIXED_FALLBACKS[tz_name]

    local_tz = datetime.now().astimezone().tzinfo
    return local_tz if local_tz is not None else timezone.utc


def local_today(tz_name: str) -> date:
    """Current calendar date at the inverter site."""
    return datetime.now(resolve_timezone(tz_name)).date()


def parse_query_date(raw: str | None, tz_name: str) -> date:
    """``YYYY-MM-DD`` from a request; missing means today at the site.

    Raises InvalidInput for anything else.
    """
    if not raw:
        return local_today(tz_name)
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise InvalidInput(f"Invalid date {raw!r}, expected YYYY-MM-DD") from None
