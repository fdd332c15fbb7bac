"""
Dispatch Engine
Resolves content-change decisions to live transport pushes: the periodic
due-schedule sweep, the immediate-display path and the "now showing" state.
"""
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Dict, List, Optional
import json
import logging

from sqlalchemy.exc import SQLAlchemyError

from models import (
    db, CurrentDisplay, Device, DeviceGroup, DisplayHistory, ScheduleEntry,
    ScheduleStatus, utcnow
)
from utils.results import ErrorKind, OperationResult
from utils.schedule_repository import ScheduleRepository
from utils.schedule_utils import next_occurrence
from utils.scheduling import validate_content

logger = logging.getLogger(__name__)

CONTENT_EVENT = 'display-content'
CLEAR_EVENT = 'clear-content'


def _iso(value: datetime) -> str:
    return value.isoformat() + 'Z'


def entry_content(entry: ScheduleEntry) -> Dict[str, Any]:
    """Content fields of a schedule entry, in the shape build_content_message expects"""
    return {
        'display_type': entry.display_type,
        'url': entry.url,
        'title': entry.title,
        'rotation': entry.rotation,
        'mirror': entry.mirror,
        'muted': entry.muted,
        'thumbnail_url': entry.thumbnail_url,
        'zones': entry.zones,
        'duration_ms': entry.duration_ms,
    }


def build_content_message(content: Dict[str, Any], displayed_at: datetime,
                          schedule_id: Optional[int] = None) -> Dict[str, Any]:
    """
    Build the outbound content-change message

    Single items carry url/rotation/mirror/muted; layouts carry their zones.
    clearAt is always displayedAt + duration.
    """
    duration = content.get('duration_ms') or 0
    clear_at = displayed_at + timedelta(milliseconds=duration)

    if content.get('display_type') == 'layout':
        message = {
            'type': 'layout',
            'zones': content.get('zones') or [],
        }
    else:
        message = {
            'type': content.get('display_type') or 'image',
            'url': content.get('url'),
            'rotation': content.get('rotation') or 0,
            'mirror': bool(content.get('mirror')),
            'thumbnailUrl': content.get('thumbnail_url'),
            'muted': bool(content.get('muted')),
        }
        if content.get('title'):
            message['title'] = content['title']

    message['duration'] = duration
    message['displayedAt'] = _iso(displayed_at)
    message['clearAt'] = _iso(clear_at)
    if schedule_id is not None:
        message['scheduleId'] = schedule_id
    return message


def build_clear_message(reason: str, cleared_at: datetime) -> Dict[str, Any]:
    return {'reason': reason, 'clearedAt': _iso(cleared_at)}


class NowShowing:
    """In-memory record of the content last pushed by immediate display"""

    def __init__(self, user_id, message, displayed_at, duration_ms, schedule_id=None):
        self.user_id = user_id
        self.message = message
        self.displayed_at = displayed_at
        self.duration_ms = duration_ms
        self.clear_at = displayed_at + timedelta(milliseconds=duration_ms)
        self.schedule_id = schedule_id

    def is_expired(self, now: datetime) -> bool:
        return now >= self.clear_at

    def __repr__(self):
        return f'<NowShowing owner={self.user_id} clear_at={self.clear_at}>'


class DispatchEngine:
    """
    Periodic and request-driven dispatch over the connection registry

    The now-showing singleton is loaded at startup from the durable snapshot
    and mutated only by immediate display, the sweep's expiry check and
    deletion of the schedule it came from.
    """

    def __init__(self, registry, transport):
        self.registry = registry
        self.transport = transport
        self.current: Optional[NowShowing] = None
        self._current_lock = Lock()

    # ------------------------------------------------------------------
    # Push primitive
    # ------------------------------------------------------------------

    def push_to(self, connections, event, payload) -> int:
        """Fire-and-forget push to each connection; returns successful emits"""
        sent = 0
        for conn in connections:
            if self.transport.push(conn.session_id, event, payload):
                sent += 1
        return sent

    def _connections_for_device(self, device: Optional[Device], user_id: int):
        if device is None:
            return []
        conn = self.registry.lookup_by_serial(device.serial)
        if conn is None or conn.user_id != user_id:
            return []
        return [conn]

    # ------------------------------------------------------------------
    # Immediate display
    # ------------------------------------------------------------------

    def display_now(self, user_id: int, data: Dict[str, Any],
                    device_id: Optional[int] = None, group_id: Optional[int] = None,
                    now: Optional[datetime] = None) -> OperationResult:
        """
        Push content right away to a device, a group, or all of the owner's connected devices

        Fails with an unreachable error when no live session resolves; nothing
        is written in that case.
        """
        content, error = validate_content(data)
        if error:
            return OperationResult.failure(ErrorKind.VALIDATION, error)

        if device_id is not None:
            device = Device.query.filter_by(id=device_id, user_id=user_id).first()
            if device is None:
                return OperationResult.failure(ErrorKind.NOT_FOUND, 'Device not found', device_id=device_id)
            connections = self._connections_for_device(device, user_id)
        elif group_id is not None:
            group = DeviceGroup.query.filter_by(id=group_id, user_id=user_id).first()
            if group is None:
                return OperationResult.failure(ErrorKind.NOT_FOUND, 'Group not found', group_id=group_id)
            connections = []
            for device in group.devices:
                connections.extend(self._connections_for_device(device, user_id))
        else:
            connections = self.registry.all_owned_by(user_id)

        if not connections:
            logger.info(f"Immediate display for owner {user_id}: no displays connected")
            return OperationResult.failure(
                ErrorKind.UNREACHABLE, 'No displays connected',
                device_id=device_id, group_id=group_id
            )

        if now is None:
            now = utcnow()

        message = build_content_message(content, now)
        sent = self.push_to(connections, CONTENT_EVENT, message)
        logger.info(f"Immediate display for owner {user_id}: sent to {sent} of {len(connections)} displays")

        entry = self._record_immediate_entry(user_id, content, now, device_id, group_id)
        schedule_id = entry.id if entry is not None else None
        self._record_history(
            user_id=user_id,
            device_id=device_id,
            schedule_id=schedule_id,
            url=content.get('url'),
            display_type=content['display_type'],
            displayed_at=now,
            duration_ms=content['duration_ms'],
            rotation=content.get('rotation', 0),
            mirror=content.get('mirror', False),
            source='immediate',
            displays_sent=sent
        )

        self.set_current(NowShowing(user_id, message, now, content['duration_ms'], schedule_id=schedule_id))

        return OperationResult.success({
            'displays_sent': sent,
            'content': message,
            'schedule': entry.to_dict() if entry is not None else None
        })

    def _record_immediate_entry(self, user_id, content, now, device_id, group_id) -> Optional[ScheduleEntry]:
        """Completed one-shot entry so immediate and timed display share one ledger"""
        fields = dict(content)
        duration_ms = fields.pop('duration_ms')
        if fields.get('display_type') != 'layout':
            fields.pop('zones', None)
        try:
            return ScheduleRepository.create(
                user_id, now, duration_ms,
                device_id=device_id,
                group_id=group_id,
                repeat_type='once',
                status=ScheduleStatus.COMPLETED,
                **fields
            )
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error recording immediate display for owner {user_id}: {e}")
            return None

    def _record_history(self, **kwargs) -> bool:
        """Write a display-history row; failures are logged and swallowed"""
        try:
            db.session.add(DisplayHistory(**kwargs))
            db.session.commit()
            return True
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error writing display history: {e}")
            return False

    # ------------------------------------------------------------------
    # Periodic sweep
    # ------------------------------------------------------------------

    def run_sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        One pass of the due-schedule scan

        For each owner with at least one connected device, fires that owner's
        due pending entries in ascending scheduled order, then expires the
        now-showing content if its clear time has passed.
        """
        if now is None:
            now = utcnow()

        summary = {'owners': 0, 'fired': 0, 'pushes': 0, 'expired': False}

        for user_id in sorted(self.registry.owner_ids()):
            summary['owners'] += 1
            try:
                due = ScheduleRepository.get_pending(user_id, now=now)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"Error fetching due schedules for owner {user_id}: {e}")
                continue

            for entry in due:
                pushed = self._fire(entry, now)
                if pushed is not None:
                    summary['fired'] += 1
                    summary['pushes'] += pushed

        summary['expired'] = self.expire_current(now)

        if summary['fired']:
            logger.info(f"Sweep fired {summary['fired']} schedules ({summary['pushes']} pushes)")
        return summary

    def _fire(self, entry: ScheduleEntry, now: datetime) -> Optional[int]:
        """Push one due entry and apply its repeat bookkeeping"""
        entry_id = entry.id
        repeat_type = entry.repeat_type
        scheduled_time = entry.scheduled_time

        if entry.device_id is not None:
            connections = self._connections_for_device(entry.device, entry.user_id)
        else:
            connections = self.registry.all_owned_by(entry.user_id)

        message = build_content_message(entry_content(entry), now, schedule_id=entry_id)
        sent = self.push_to(connections, CONTENT_EVENT, message)

        self._record_history(
            user_id=entry.user_id,
            device_id=entry.device_id,
            schedule_id=entry_id,
            url=entry.url,
            display_type=entry.display_type,
            displayed_at=now,
            duration_ms=entry.duration_ms,
            rotation=entry.rotation,
            mirror=entry.mirror,
            source='schedule',
            displays_sent=sent
        )

        try:
            next_time = next_occurrence(scheduled_time, repeat_type)
            if next_time is None:
                ScheduleRepository.update_status(entry_id, ScheduleStatus.COMPLETED)
            else:
                ScheduleRepository.reschedule(entry_id, next_time)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error advancing schedule {entry_id}: {e}")
            return None

        logger.debug(f"Displayed scheduled content: {entry_id} ({repeat_type}) to {sent} displays")
        return sent

    # ------------------------------------------------------------------
    # Now showing
    # ------------------------------------------------------------------

    def set_current(self, showing: NowShowing):
        with self._current_lock:
            self.current = showing
        try:
            snapshot = CurrentDisplay(
                id=1,
                user_id=showing.user_id,
                schedule_id=showing.schedule_id,
                payload=json.dumps(showing.message),
                displayed_at=showing.displayed_at,
                duration_ms=showing.duration_ms,
                clear_at=showing.clear_at
            )
            db.session.merge(snapshot)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error saving current display snapshot: {e}")

    def _clear_current(self, reason: str, now: datetime) -> bool:
        with self._current_lock:
            showing = self.current
            self.current = None
        if showing is None:
            return False

        try:
            CurrentDisplay.query.filter_by(id=1).delete()
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error clearing current display snapshot: {e}")

        self.push_to(self.registry.all_owned_by(showing.user_id), CLEAR_EVENT,
                     build_clear_message(reason, now))
        logger.info(f"Cleared current display for owner {showing.user_id} ({reason})")
        return True

    def expire_current(self, now: Optional[datetime] = None) -> bool:
        """Clear the now-showing content once its clear time has passed"""
        if now is None:
            now = utcnow()
        showing = self.current
        if showing is None or not showing.is_expired(now):
            return False
        return self._clear_current('expired', now)

    def clear_if_showing(self, schedule_id: int, reason: str = 'deleted') -> bool:
        showing = self.current
        if showing is None or showing.schedule_id != schedule_id:
            return False
        return self._clear_current(reason, utcnow())

    def send_current_to(self, connection, now: Optional[datetime] = None) -> bool:
        """Replay unexpired now-showing content to a device that just registered"""
        if now is None:
            now = utcnow()
        showing = self.current
        if showing is None or showing.user_id != connection.user_id or showing.is_expired(now):
            return False
        return self.transport.push(connection.session_id, CONTENT_EVENT, showing.message)

    def load_snapshot(self, now: Optional[datetime] = None) -> Optional[NowShowing]:
        """Restore now-showing state after a restart if it has not expired"""
        if now is None:
            now = utcnow()
        try:
            row = db.session.get(CurrentDisplay, 1)
            if row is None:
                return None
            if row.clear_at <= now:
                db.session.delete(row)
                db.session.commit()
                return None
            showing = NowShowing(row.user_id, json.loads(row.payload), row.displayed_at,
                                 row.duration_ms, schedule_id=row.schedule_id)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error loading current display snapshot: {e}")
            return None

        with self._current_lock:
            self.current = showing
        logger.info(f"Restored current display for owner {showing.user_id} until {showing.clear_at}")
        return showing

    def get_history(self, user_id: int, limit: int = 100) -> List[DisplayHistory]:
        return DisplayHistory.query.filter_by(user_id=user_id)\
            .order_by(DisplayHistory.displayed_at.desc(), DisplayHistory.id.desc()).limit(limit).all()
