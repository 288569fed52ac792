from __future__ import annotations

from datetime import datetime, timedelta

from cadence.calendar_service import CalendarService
from cadence.errors import attempt
from cadence.models import CanonicalEvent, EventFilters


WINDOW_PADDING = timedelta(hours=1)


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    """Half-open overlap: back-to-back windows do not collide."""
    return start < other_end and end > other_start


class ConflictDetector:
    def __init__(self, calendar_service: CalendarService) -> None:
        self.calendar_service = calendar_service

    def check_conflict(
        self,
        target: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
    ) -> CanonicalEvent | None:
        """First non-task event overlapping [start, end), or None. Fetch failures yield None."""
        outcome = attempt("conflict check", self._first_overlap, target, start, end, exclude_id)
        return outcome.value

    def _first_overlap(
        self,
        target: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None,
    ) -> CanonicalEvent | None:
        filters = EventFilters(time_min=start - WINDOW_PADDING, time_max=end + WINDOW_PADDING)
        nearby = self.calendar_service.get_events(filters, target=target, include_tasks=False)
        for item in nearby:
            if item.is_task or (exclude_id and item.id == exclude_id):
                continue
            other_start = item.start_instant()
            other_end = item.end_instant()
            if other_start is None or other_end is None:
                continue
            if overlaps(start, end, other_start, other_end):
                return item
        return None
