"""
Schedule Utilities
Conflict detection, repeat advancement and time normalization for schedule entries
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from models import ScheduleEntry, ScheduleStatus

logger = logging.getLogger(__name__)

REPEAT_TYPES = ('once', 'daily', 'weekly', 'monthly', 'yearly')

# Fixed-duration offsets; monthly and yearly are not calendar-aware
REPEAT_OFFSETS = {
    'daily': timedelta(days=1),
    'weekly': timedelta(days=7),
    'monthly': timedelta(days=30),
    'yearly': timedelta(days=365),
}


class ScheduleConflict:
    """Represents an overlap between a candidate window and an existing pending entry"""

    def __init__(self, candidate_start: datetime, candidate_end: datetime, existing: ScheduleEntry):
        self.candidate_start = candidate_start
        self.candidate_end = candidate_end
        self.existing = existing

    @property
    def details(self) -> str:
        return (f"Window {self.candidate_start.isoformat()}-{self.candidate_end.isoformat()} overlaps "
                f"schedule {self.existing.id} ({self.existing.scheduled_time.isoformat()}-"
                f"{self.existing.end_time.isoformat()}, {self.existing.target_description})")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'conflicting_schedule_id': self.existing.id,
            'owner_id': self.existing.user_id,
            'device_id': self.existing.device_id,
            'scheduled_time': self.existing.scheduled_time.isoformat(),
            'end_time': self.existing.end_time.isoformat(),
            'details': self.details
        }


def windows_overlap(start1: datetime, duration1_ms: int, start2: datetime, duration2_ms: int) -> bool:
    """
    Check if two half-open windows [start, start + duration) overlap
    Back-to-back windows (one ends exactly when the other begins) do not overlap
    """
    end1 = start1 + timedelta(milliseconds=duration1_ms)
    end2 = start2 + timedelta(milliseconds=duration2_ms)
    return start1 < end2 and end1 > start2


def find_conflict(scheduled_time: datetime, duration_ms: int, user_id: int,
                  exclude_id: Optional[int] = None, device_id: Optional[int] = None,
                  device_scoped: bool = True) -> Optional[ScheduleConflict]:
    """
    Find the first pending entry of the same owner whose window overlaps the candidate

    Args:
        scheduled_time: Candidate start (naive UTC)
        duration_ms: Candidate duration in milliseconds
        user_id: Owner ID
        exclude_id: Entry to ignore (an in-place update's own prior window)
        device_id: Candidate's target device, if any
        device_scoped: Restrict the check to the same device plus owner-wide entries

    Returns:
        ScheduleConflict or None
    """
    query = ScheduleEntry.query.filter(
        ScheduleEntry.user_id == user_id,
        ScheduleEntry.status == ScheduleStatus.PENDING
    )

    if exclude_id is not None:
        query = query.filter(ScheduleEntry.id != exclude_id)

    if device_scoped and device_id is not None:
        query = query.filter(
            (ScheduleEntry.device_id == device_id) | (ScheduleEntry.device_id.is_(None))
        )

    for existing in query.order_by(ScheduleEntry.scheduled_time).all():
        if windows_overlap(scheduled_time, duration_ms, existing.scheduled_time, existing.duration_ms):
            candidate_end = scheduled_time + timedelta(milliseconds=duration_ms)
            return ScheduleConflict(scheduled_time, candidate_end, existing)

    return None


def has_conflict(scheduled_time: datetime, duration_ms: int, user_id: int,
                 exclude_id: Optional[int] = None, device_id: Optional[int] = None,
                 device_scoped: bool = True) -> bool:
    """Boolean form of find_conflict"""
    return find_conflict(scheduled_time, duration_ms, user_id,
                         exclude_id=exclude_id, device_id=device_id,
                         device_scoped=device_scoped) is not None


def next_occurrence(scheduled_time: datetime, repeat_type: str) -> Optional[datetime]:
    """
    Advance a repeating schedule by its fixed offset

    Returns:
        The next instant, or None for one-shot schedules
    """
    offset = REPEAT_OFFSETS.get(repeat_type)
    if offset is None:
        return None
    return scheduled_time + offset


def get_zone(tz_name: Optional[str]):
    """Resolve an IANA timezone name, falling back to UTC"""
    if not tz_name:
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{tz_name}', using UTC")
        return timezone.utc


def is_valid_timezone(tz_name: str) -> bool:
    try:
        ZoneInfo(tz_name)
        return True
    except (ZoneInfoNotFoundError, ValueError):
        return False


def parse_scheduled_time(value: Any, tz_name: Optional[str] = None) -> datetime:
    """
    Normalize a scheduled instant to naive UTC

    Aware values are converted; naive values are interpreted in tz_name.

    Raises:
        ValueError: If the value is missing or not an ISO 8601 timestamp
    """
    if value is None or value == '':
        raise ValueError('Scheduled time is required')

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f'Malformed scheduled time: {value!r}')

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=get_zone(tz_name))

    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(instant: datetime, tz_name: Optional[str]) -> datetime:
    """Convert a naive UTC instant to wall-clock time in tz_name"""
    return instant.replace(tzinfo=timezone.utc).astimezone(get_zone(tz_name))
