"""
Occasion Calendar - resolves a rule's occasion type to concrete dates.

Pure functions only. An occasion instance is identified by its key
"<date_type>:<ISO date>", which is what trigger deduplication runs on.
"""

import calendar
from datetime import date

# Fixed-date holidays (month, day)
FIXED_HOLIDAYS: dict[str, tuple[int, int]] = {
    "christmas": (12, 25),
    "valentines": (2, 14),
    "valentines_day": (2, 14),
    "new_years": (1, 1),
    "halloween": (10, 31),
}

# Floating holidays (month, weekday, nth occurrence)
FLOATING_HOLIDAYS: dict[str, tuple[int, int, int]] = {
    "mothers_day": (5, calendar.SUNDAY, 2),
    "fathers_day": (6, calendar.SUNDAY, 3),
    "thanksgiving": (11, calendar.THURSDAY, 4),
}


def nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    """The nth given weekday of a month, e.g. 2nd Sunday of May."""
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    day = 1 + offset + 7 * (n - 1)
    if day > calendar.monthrange(year, month)[1]:
        raise ValueError(f"Month {year}-{month:02d} has no occurrence #{n} of weekday {weekday}")
    return date(year, month, day)


def anniversary_in_year(anchor: date, year: int) -> date:
    """Anchor month/day in the given year. Feb 29 falls back to Feb 28."""
    if anchor.month == 2 and anchor.day == 29 and not calendar.isleap(year):
        return date(year, 2, 28)
    return anchor.replace(year=year)


def is_holiday(date_type: str) -> bool:
    return date_type in FIXED_HOLIDAYS or date_type in FLOATING_HOLIDAYS


def is_schedulable(
    date_type: str, scheduled_date: date | None, occasion_anchor_date: date | None
) -> bool:
    """Whether a rule carries enough information to ever produce an occasion date."""
    return scheduled_date is not None or occasion_anchor_date is not None or is_holiday(date_type)


def occurrence_in_year(
    date_type: str, occasion_anchor_date: date | None, year: int
) -> date | None:
    """The recurring occasion's date in a given year, or None if not computable."""
    if date_type in FIXED_HOLIDAYS:
        month, day = FIXED_HOLIDAYS[date_type]
        return date(year, month, day)
    if date_type in FLOATING_HOLIDAYS:
        month, weekday, n = FLOATING_HOLIDAYS[date_type]
        return nth_weekday(year, month, weekday, n)
    if occasion_anchor_date is not None:
        return anniversary_in_year(occasion_anchor_date, year)
    return None


def next_occurrence(
    date_type: str,
    scheduled_date: date | None,
    occasion_anchor_date: date | None,
    on_or_after: date,
) -> date | None:
    """
    Next occasion date on or after the given day.

    An explicit scheduled_date is a one-off occasion and wins over any
    recurring computation; once it has passed the rule has no next occurrence.
    """
    if scheduled_date is not None:
        return scheduled_date if scheduled_date >= on_or_after else None

    for year in (on_or_after.year, on_or_after.year + 1):
        candidate = occurrence_in_year(date_type, occasion_anchor_date, year)
        if candidate is not None and candidate >= on_or_after:
            return candidate
    return None


def occasion_key(date_type: str, occasion_date: date) -> str:
    """Deduplication key for one occasion instance."""
    return f"{date_type}:{occasion_date.isoformat()}"
