"""
Touch Point Schedule
====================
The fixed 13-touch follow-up sequence.
Days are relative to the lead creation date.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


# (touch_point_number, days_from_lead_creation)
TOUCH_POINT_SCHEDULE = (
    (1, 0),     # Initial contact
    (2, 1),
    (3, 3),
    (4, 5),
    (5, 7),
    (6, 10),
    (7, 13),
    (8, 16),
    (9, 19),
    (10, 22),
    (11, 25),
    (12, 27),
    (13, 30),   # Final follow-up
)

MAX_TOUCH_POINTS = 13

_DAYS_BY_TOUCH_POINT = dict(TOUCH_POINT_SCHEDULE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_days_for_touch_point(touch_point_number: int) -> Optional[int]:
    """Days from lead creation for a touch point, or None if out of range."""
    return _DAYS_BY_TOUCH_POINT.get(touch_point_number)


def calculate_next_touch_point_time(
    lead_created_at: datetime,
    current_touch_point_count: int,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    When the next touch point is due.

    `current_touch_point_count` is how many touch points have been completed
    (0-13). Returns None once all 13 are done. Touch point 1 is never
    scheduled in the past: a lead ingested after its creation instant is
    contacted right away.
    """
    next_touch_point = current_touch_point_count + 1
    days = get_days_for_touch_point(next_touch_point)
    if days is None:
        return None

    due_at = lead_created_at + timedelta(days=days)

    if next_touch_point == 1:
        now = now or utcnow()
        return max(now, due_at)

    return due_at


def should_mark_as_lost(touch_point_count: int, has_responded: bool) -> bool:
    """All touch points used up without a customer response."""
    return touch_point_count >= MAX_TOUCH_POINTS and not has_responded


def get_full_schedule() -> list[dict]:
    return [{"touch_point": number, "day": day} for number, day in TOUCH_POINT_SCHEDULE]
