"""
Daypart Scheduling
Switches device content by fixed time-of-day windows instead of explicit schedule rows
"""
from datetime import datetime, time
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError

from models import db, DaypartContent, DaypartLog, Device, Media, utcnow
from utils.dispatch import CONTENT_EVENT, build_content_message
from utils.results import ErrorKind, OperationResult
from utils.scheduling import as_bool, parse_duration_ms
from utils.schedule_utils import to_local

logger = logging.getLogger(__name__)

# Four windows covering the whole clock; LATE_NIGHT wraps past midnight
DAYPARTS = {
    'BREAKFAST': {'start': time(6, 0), 'end': time(11, 0), 'name': 'Breakfast'},
    'LUNCH': {'start': time(11, 0), 'end': time(16, 0), 'name': 'Lunch'},
    'DINNER': {'start': time(16, 0), 'end': time(22, 0), 'name': 'Dinner'},
    'LATE_NIGHT': {'start': time(22, 0), 'end': time(6, 0), 'name': 'Late Night'},
}

# Hours at which a window starts, used for boundary-aligned checks
DAYPART_START_HOURS = sorted(d['start'].hour for d in DAYPARTS.values())

DEFAULT_DAYPART_DURATION_MS = 10000


def get_current_daypart(now_local) -> Dict[str, Any]:
    """
    Find the daypart window for a wall-clock time

    Args:
        now_local: datetime or time in the device's local timezone

    Returns:
        Dict with type, name, start and end
    """
    current = now_local.time() if isinstance(now_local, datetime) else now_local
    current = current.replace(second=0, microsecond=0, tzinfo=None)

    for key, daypart in DAYPARTS.items():
        start, end = daypart['start'], daypart['end']
        if start > end:
            matched = current >= start or current < end
        else:
            matched = start <= current < end
        if matched:
            return {'type': key, 'name': daypart['name'],
                    'start': start.strftime('%H:%M'), 'end': end.strftime('%H:%M')}

    return {'type': 'UNKNOWN', 'name': 'Unknown', 'start': '', 'end': ''}


class DaypartEngine:
    """Applies the active daypart's content to every daypart-enabled paired device"""

    def __init__(self, registry, transport):
        self.registry = registry
        self.transport = transport

    def get_devices(self) -> List[Device]:
        return Device.query.filter_by(daypart_enabled=True, is_paired=True)\
            .order_by(Device.id).all()

    def resolve_content(self, device: Device, daypart_type: str) -> Optional[Dict[str, Any]]:
        """
        Content for a device and window by priority, falling back to the owner's default media
        """
        choices = DaypartContent.query.filter_by(device_id=device.id, daypart_type=daypart_type)\
            .order_by(DaypartContent.priority.asc(), DaypartContent.id.asc()).all()
        choice = next((c for c in choices if c.content_url), None)

        if choice is not None:
            return {
                'id': choice.media_id or choice.id,
                'url': choice.content_url,
                'display_type': choice.media.media_type if choice.media else choice.media_type,
                'rotation': choice.rotation,
                'mirror': choice.mirror,
                'duration_ms': choice.duration_ms or DEFAULT_DAYPART_DURATION_MS,
            }

        fallback = Media.query.filter_by(user_id=device.user_id, is_default=True)\
            .order_by(Media.id.asc()).first()
        if fallback is None:
            return None

        return {
            'id': fallback.id,
            'url': fallback.url,
            'display_type': fallback.media_type,
            'rotation': 0,
            'mirror': False,
            'thumbnail_url': fallback.thumbnail_url,
            'duration_ms': fallback.duration_ms or DEFAULT_DAYPART_DURATION_MS,
        }

    def apply_to_device(self, device: Device, daypart: Dict[str, Any], now: datetime) -> bool:
        """
        Push the daypart content to one device and log it

        Returns:
            True if content was resolved (whether or not the device is connected)
        """
        content = self.resolve_content(device, daypart['type'])
        if content is None:
            logger.warning(f"[Daypart] No content found for device {device.id} daypart {daypart['name']}")
            return False

        logger.info(f"[Daypart] Switching device {device.id} to {daypart['name']} content")

        message = build_content_message(content, now)
        message['daypart'] = daypart['name']

        delivered = False
        conn = self.registry.lookup_by_serial(device.serial)
        if conn is not None and conn.user_id == device.user_id:
            delivered = self.transport.push(conn.session_id, CONTENT_EVENT, message)

        try:
            db.session.add(DaypartLog(
                device_id=device.id,
                daypart_type=daypart['type'],
                content_id=content.get('id'),
                content_url=content.get('url'),
                delivered=delivered,
                applied_at=now
            ))
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"[Daypart] Failed to log application for device {device.id}: {e}")

        return True

    def check_and_apply(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Apply the current daypart to all enabled devices

        Each device's window is taken from its own local wall clock.
        """
        if now is None:
            now = utcnow()

        devices = self.get_devices()
        logger.info(f"[Daypart] Found {len(devices)} devices with daypart scheduling enabled")

        applied = 0
        skipped = 0
        for device in devices:
            daypart = get_current_daypart(to_local(now, device.timezone))
            try:
                if self.apply_to_device(device, daypart, now):
                    applied += 1
                else:
                    skipped += 1
            except SQLAlchemyError as e:
                db.session.rollback()
                skipped += 1
                logger.error(f"[Daypart] Failed to apply schedule to device {device.id}: {e}")

        return {'devices': len(devices), 'applied': applied, 'skipped': skipped}


# ============================================================================
# CONFIGURATION OPERATIONS
# ============================================================================

def set_daypart_mode(user, device_id: int, enabled: bool) -> OperationResult:
    """Toggle daypart-driven content for a device"""
    device = Device.query.filter_by(id=device_id, user_id=user.id).first()
    if device is None:
        return OperationResult.failure(ErrorKind.NOT_FOUND, 'Device not found', device_id=device_id)
    if enabled and not user.has_capability('daypart'):
        return OperationResult.failure(ErrorKind.FORBIDDEN, 'Daypart scheduling requires a higher subscription tier')

    device.daypart_enabled = bool(enabled)
    db.session.commit()

    logger.info(f"[Daypart] Device {device.id} daypart mode {'enabled' if enabled else 'disabled'}")
    return OperationResult.success(device)


def set_daypart_content(user, device_id: int, data: Dict[str, Any]) -> OperationResult:
    """Add a content choice for one of a device's daypart windows"""
    device = Device.query.filter_by(id=device_id, user_id=user.id).first()
    if device is None:
        return OperationResult.failure(ErrorKind.NOT_FOUND, 'Device not found', device_id=device_id)

    daypart_type = (data.get('daypart_type') or data.get('daypartType') or '').upper()
    if daypart_type not in DAYPARTS:
        return OperationResult.failure(ErrorKind.VALIDATION, f"Daypart must be one of {', '.join(DAYPARTS)}")

    media = None
    media_id = data.get('media_id', data.get('mediaId'))
    if media_id is not None:
        media = Media.query.filter_by(id=media_id, user_id=user.id).first()
        if media is None:
            return OperationResult.failure(ErrorKind.NOT_FOUND, 'Media not found', media_id=media_id)
    elif not data.get('url'):
        return OperationResult.failure(ErrorKind.VALIDATION, 'Either media_id or url is required')

    try:
        priority = int(data.get('priority', 0))
        rotation = int(data.get('rotation', 0))
    except (TypeError, ValueError):
        return OperationResult.failure(ErrorKind.VALIDATION, 'Priority and rotation must be integers')
    if rotation not in (0, 90, 180, 270):
        return OperationResult.failure(ErrorKind.VALIDATION, 'Rotation must be 0, 90, 180 or 270')

    duration = data.get('duration', data.get('duration_ms'))
    if duration is not None:
        duration, error = parse_duration_ms(duration)
        if error:
            return OperationResult.failure(ErrorKind.VALIDATION, error)

    choice = DaypartContent(
        device_id=device.id,
        daypart_type=daypart_type,
        media_id=media.id if media else None,
        url=None if media else data.get('url'),
        media_type=media.media_type if media else data.get('type', 'image'),
        rotation=rotation,
        mirror=as_bool(data.get('mirror', False)),
        duration_ms=duration,
        priority=priority
    )
    db.session.add(choice)
    db.session.commit()
    return OperationResult.success(choice)


def list_daypart_content(user, device_id: int) -> OperationResult:
    device = Device.query.filter_by(id=device_id, user_id=user.id).first()
    if device is None:
        return OperationResult.failure(ErrorKind.NOT_FOUND, 'Device not found', device_id=device_id)

    rows = DaypartContent.query.filter_by(device_id=device.id)\
        .order_by(DaypartContent.daypart_type, DaypartContent.priority.asc()).all()
    return OperationResult.success(rows)
