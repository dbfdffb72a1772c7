"""Weekend-aware date arithmetic for snoozes, follow-ups and auto-unassign.

All functions take and return timezone-aware datetimes. Weekday checks are
made in the configured local timezone, so "Saturday" means Saturday where the
maintainers live, not in UTC.
"""

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

SATURDAY = 5
SUNDAY = 6

# Auto-unassign budget, in business days
UNASSIGN_BUSINESS_DAYS = 2


def is_weekend(moment: datetime, tz: ZoneInfo) -> bool:
    return moment.astimezone(tz).weekday() in (SATURDAY, SUNDAY)


def roll_to_business_day(moment: datetime, tz: ZoneInfo) -> datetime:
    """Move a Saturday or Sunday to the following Monday, keeping the local time."""
    local = moment.astimezone(tz)
    if local.weekday() == SATURDAY:
        local = local + timedelta(days=2)
    elif local.weekday() == SUNDAY:
        local = local + timedelta(days=1)
    return local.astimezone(timezone.utc)


def next_business_day_noon(now: datetime, tz: ZoneInfo) -> datetime:
    """Default snooze target: tomorrow at local noon, skipping the weekend."""
    tomorrow = (now.astimezone(tz) + timedelta(days=1)).date()
    noon = datetime.combine(tomorrow, time(12, 0), tzinfo=tz)
    return roll_to_business_day(noon, tz)


def add_business_days(start: datetime, days: int, tz: ZoneInfo) -> datetime:
    """Add `days` business days to `start`; Saturdays and Sundays are not counted."""
    current = start.astimezone(tz)
    counted = 0
    while counted < days:
        current = current + timedelta(days=1)
        if current.weekday() not in (SATURDAY, SUNDAY):
            counted += 1
    return current.astimezone(timezone.utc)


def auto_unassign_deadline(
    assigned_on: datetime,
    snoozed_until: datetime | None,
    tz: ZoneInfo,
) -> datetime:
    """Two business days after the later of the assignment and the last snooze."""
    base = assigned_on
    if snoozed_until is not None and snoozed_until > base:
        base = snoozed_until
    return add_business_days(base, UNASSIGN_BUSINESS_DAYS, tz)


def within_grace_window(due: datetime, now: datetime, grace: timedelta) -> bool:
    """True when `due` has passed, but by less than `grace`."""
    if due > now:
        return False
    return now - due < grace
