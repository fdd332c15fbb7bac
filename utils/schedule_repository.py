"""
Schedule Repository
Durable storage of schedule entries, keyed by owner and optionally device/group
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
import json
import logging

from models import db, ScheduleEntry, ScheduleStatus, utcnow

logger = logging.getLogger(__name__)

# Fields update() is allowed to merge
UPDATABLE_FIELDS = (
    'url', 'display_type', 'title', 'rotation', 'mirror', 'muted', 'thumbnail_url',
    'layout_zones', 'video_format', 'video_resolution', 'video_size_bytes',
    'video_duration_ms', 'scheduled_time', 'timezone', 'duration_ms', 'repeat_type',
    'device_id'
)


class ScheduleRepository:
    """Persistence operations for ScheduleEntry rows"""

    @staticmethod
    def create(user_id: int, scheduled_time: datetime, duration_ms: int, **fields) -> ScheduleEntry:
        """
        Persist a new schedule entry

        Args:
            user_id: Owner ID
            scheduled_time: Absolute start (naive UTC)
            duration_ms: Display duration in milliseconds
            **fields: Any other ScheduleEntry column (status defaults to pending)

        Returns:
            The committed ScheduleEntry
        """
        zones = fields.pop('zones', None)
        if zones is not None:
            fields['layout_zones'] = json.dumps(zones)

        entry = ScheduleEntry(
            user_id=user_id,
            scheduled_time=scheduled_time,
            duration_ms=duration_ms,
            status=fields.pop('status', ScheduleStatus.PENDING),
            **fields
        )
        db.session.add(entry)
        db.session.commit()

        logger.info(f"Schedule created: {entry.id} for owner {user_id} at {scheduled_time.isoformat()}")
        return entry

    @staticmethod
    def get(schedule_id: int, user_id: int) -> Optional[ScheduleEntry]:
        return ScheduleEntry.query.filter_by(id=schedule_id, user_id=user_id).first()

    @staticmethod
    def get_all(user_id: int) -> List[ScheduleEntry]:
        return ScheduleEntry.query.filter_by(user_id=user_id)\
            .order_by(ScheduleEntry.scheduled_time.asc(), ScheduleEntry.id.asc()).all()

    @staticmethod
    def get_for_device(user_id: int, device_id: int) -> List[ScheduleEntry]:
        return ScheduleEntry.query.filter_by(user_id=user_id, device_id=device_id)\
            .order_by(ScheduleEntry.scheduled_time.asc(), ScheduleEntry.id.asc()).all()

    @staticmethod
    def get_for_group(user_id: int, group_id: int) -> List[ScheduleEntry]:
        return ScheduleEntry.query.filter_by(user_id=user_id, group_id=group_id)\
            .order_by(ScheduleEntry.scheduled_time.asc(), ScheduleEntry.id.asc()).all()

    @staticmethod
    def get_pending(user_id: int, device_id: Optional[int] = None,
                    now: Optional[datetime] = None) -> List[ScheduleEntry]:
        """
        Get pending entries that are due (scheduled time <= now), oldest first
        """
        if now is None:
            now = utcnow()

        query = ScheduleEntry.query.filter(
            ScheduleEntry.user_id == user_id,
            ScheduleEntry.status == ScheduleStatus.PENDING,
            ScheduleEntry.scheduled_time <= now
        )
        if device_id is not None:
            query = query.filter(ScheduleEntry.device_id == device_id)

        return query.order_by(ScheduleEntry.scheduled_time.asc(), ScheduleEntry.id.asc()).all()

    @staticmethod
    def update(schedule_id: int, user_id: int, fields: Dict[str, Any]) -> Optional[ScheduleEntry]:
        """
        Merge non-None fields into an entry

        Returns:
            Updated entry, or None when the id/owner pair does not match
        """
        entry = ScheduleEntry.query.filter_by(id=schedule_id, user_id=user_id).first()
        if entry is None:
            return None

        fields = dict(fields)
        if fields.get('zones') is not None:
            fields['layout_zones'] = json.dumps(fields.pop('zones'))

        for name in UPDATABLE_FIELDS:
            value = fields.get(name)
            if value is not None:
                setattr(entry, name, value)

        db.session.commit()
        logger.info(f"Schedule updated: {entry.id}")
        return entry

    @staticmethod
    def update_status(schedule_id: int, status: str) -> Optional[ScheduleEntry]:
        """Set status; entries never leave a terminal status"""
        if status not in ScheduleStatus.ALL:
            raise ValueError(f'Unknown schedule status: {status}')

        entry = db.session.get(ScheduleEntry, schedule_id)
        if entry is None:
            return None

        if entry.status in ScheduleStatus.TERMINAL and entry.status != status:
            logger.warning(f"Refusing status change {entry.status} -> {status} for schedule {schedule_id}")
            return None

        entry.status = status
        db.session.commit()
        return entry

    @staticmethod
    def reschedule(schedule_id: int, new_time: datetime) -> Optional[ScheduleEntry]:
        """Move an entry to a new instant and force it back to pending (repeat advance)"""
        entry = db.session.get(ScheduleEntry, schedule_id)
        if entry is None:
            return None

        entry.scheduled_time = new_time
        entry.status = ScheduleStatus.PENDING
        db.session.commit()
        return entry

    @staticmethod
    def delete(schedule_id: int, user_id: int) -> Optional[Dict[str, Any]]:
        """
        Hard delete an entry

        Returns:
            The deleted row as a dict (for downstream cleanup), or None if not found
        """
        entry = ScheduleEntry.query.filter_by(id=schedule_id, user_id=user_id).first()
        if entry is None:
            return None

        deleted = entry.to_dict()
        db.session.delete(entry)
        db.session.commit()

        logger.info(f"Schedule deleted: {schedule_id}")
        return deleted
