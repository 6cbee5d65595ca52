"""
Follow-up scheduling: due/overdue predicates, recurrence and calendar placement.

All comparisons work on calendar dates. "Today" is computed once per
derivation pass by the caller and passed in.
"""

import calendar as pycalendar
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

from leadtrack.schemas import Lead, RECURRENCE_STATUSES, TERMINAL_STATUSES, TodoStatus

LEADING_INT = re.compile(r"(\d+)")


def local_today(tz=None) -> date:
    if tz is None:
        return date.today()
    return datetime.now(tz).date()


def to_local_date(moment: datetime, tz=None) -> date:
    # Naive timestamps come back from SQLite; they are stored as UTC
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz).date() if tz else moment.astimezone().date()


def is_overdue(lead: Lead, today: date) -> bool:
    return lead.follow_up_date < today and lead.status not in TERMINAL_STATUSES


def is_due(lead: Lead, today: date) -> bool:
    return lead.follow_up_date <= today


def is_suppressed(lead: Lead, today: date) -> bool:
    """Future follow-ups are not actionable yet and stay out of the agent's tabs."""
    return lead.todo == TodoStatus.FOLLOWUP and lead.follow_up_date > today


def every_days(every: Optional[str]) -> Optional[int]:
    """Recurrence interval in days, or None for manual rescheduling."""
    if not every or every.strip().lower() == "manual":
        return None
    match = LEADING_INT.search(every)
    return int(match.group(1)) if match else None


def next_follow_up_date(lead: Lead, from_date: date) -> Optional[date]:
    if lead.status not in RECURRENCE_STATUSES:
        return None
    days = every_days(lead.every)
    if days is None:
        return None
    return from_date + timedelta(days=days)


def count_due(leads: List[Lead], today: date) -> int:
    return sum(1 for lead in leads if is_due(lead, today))


def reschedule_detail(new_date: date, via_calendar: bool = False) -> str:
    detail = f"Rescheduled lead to {new_date.isoformat()}"
    if via_calendar:
        detail += " via calendar drag"
    return detail


def group_by_date(leads: List[Lead]) -> Dict[date, List[Lead]]:
    groups = {}
    for lead in leads:
        groups.setdefault(lead.follow_up_date, []).append(lead)
    return groups


@dataclass
class CalendarDay:
    day: date
    is_today: bool
    leads: List[Lead] = field(default_factory=list)


@dataclass
class CalendarMonth:
    year: int
    month: int
    # Sunday-first weeks; None pads days outside the month
    weeks: List[List[Optional[CalendarDay]]] = field(default_factory=list)

    def day(self, value: date) -> Optional[CalendarDay]:
        for week in self.weeks:
            for cell in week:
                if cell is not None and cell.day == value:
                    return cell
        return None


def calendar_month(leads: List[Lead], year: int, month: int, today: date) -> CalendarMonth:
    groups = group_by_date(leads)
    grid = pycalendar.Calendar(firstweekday=pycalendar.SUNDAY)
    weeks = []
    for week in grid.monthdatescalendar(year, month):
        cells = []
        for value in week:
            if value.month != month:
                cells.append(None)
                continue
            cells.append(CalendarDay(day=value, is_today=value == today, leads=groups.get(value, [])))
        weeks.append(cells)
    return CalendarMonth(year=year, month=month, weeks=weeks)
