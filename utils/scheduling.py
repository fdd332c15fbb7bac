"""
Scheduling Service
Request-facing schedule operations: validation, conflict gating, group fan-out
"""
from typing import Any, Dict, Optional, Tuple
import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db, Device, DeviceGroup, ScheduleStatus
from utils.results import ErrorKind, OperationResult
from utils.schedule_repository import ScheduleRepository
from utils.schedule_utils import REPEAT_TYPES, find_conflict, is_valid_timezone, parse_scheduled_time

logger = logging.getLogger(__name__)

DISPLAY_TYPES = ('image', 'video', 'layout')
ROTATIONS = (0, 90, 180, 270)


def _config(key, default):
    try:
        return current_app.config.get(key, default)
    except RuntimeError:
        return default


def default_duration_ms() -> int:
    return int(_config('DEFAULT_SCHEDULE_DURATION_MS', 60000))


def as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def parse_duration_ms(value) -> Tuple[Optional[int], Optional[str]]:
    """Positive whole milliseconds, or an error message"""
    try:
        duration = int(value)
    except (TypeError, ValueError):
        return None, 'Duration must be a whole number of milliseconds'
    if duration <= 0:
        return None, 'Duration must be positive'
    return duration, None


def validate_content(data: Dict[str, Any], partial: bool = False) -> Tuple[Dict[str, Any], Optional[str]]:
    """
    Normalize the content part of a request into ScheduleEntry column values

    Accepts both the wire names (imageUrl, thumbnailUrl, type, duration) and
    the column names.

    Args:
        data: Request payload
        partial: Only validate the keys that are present (updates)

    Returns:
        (fields, error_message_or_None)
    """
    fields: Dict[str, Any] = {}

    url = data.get('url') or data.get('imageUrl') or data.get('image_url')
    display_type = data.get('display_type') or data.get('type')
    zones = data.get('zones')

    if display_type is not None or not partial:
        display_type = display_type or 'image'
        if display_type not in DISPLAY_TYPES:
            return {}, f"Display type must be one of {', '.join(DISPLAY_TYPES)}"
        fields['display_type'] = display_type

    if display_type == 'layout':
        if not isinstance(zones, list) or not zones:
            return {}, 'Layout content requires a non-empty zones list'
        fields['zones'] = zones
    elif not partial and not url:
        return {}, 'Content URL required'

    if url:
        fields['url'] = url

    if 'rotation' in data and data['rotation'] is not None:
        try:
            rotation = int(data['rotation'])
        except (TypeError, ValueError):
            return {}, 'Rotation must be 0, 90, 180 or 270'
        if rotation not in ROTATIONS:
            return {}, 'Rotation must be 0, 90, 180 or 270'
        fields['rotation'] = rotation
    elif not partial:
        fields['rotation'] = 0

    for key in ('mirror', 'muted'):
        if key in data and data[key] is not None:
            fields[key] = as_bool(data[key])
        elif not partial:
            fields[key] = False

    duration = data.get('duration', data.get('duration_ms'))
    if duration is not None:
        duration, error = parse_duration_ms(duration)
        if error:
            return {}, error
        fields['duration_ms'] = duration
    elif not partial:
        fields['duration_ms'] = default_duration_ms()

    for source, column in (('title', 'title'), ('thumbnailUrl', 'thumbnail_url'),
                           ('thumbnail_url', 'thumbnail_url')):
        if data.get(source) is not None:
            fields[column] = data[source]

    video = data.get('video') or {}
    for source, column in (('format', 'video_format'), ('resolution', 'video_resolution'),
                           ('size_bytes', 'video_size_bytes'), ('duration_ms', 'video_duration_ms')):
        if video.get(source) is not None:
            fields[column] = video[source]

    return fields, None


def _validate_timing(data: Dict[str, Any], tz_name: str, partial: bool) -> Tuple[Dict[str, Any], Optional[str]]:
    fields: Dict[str, Any] = {}

    raw_time = data.get('scheduledTime', data.get('scheduled_time'))
    if raw_time is not None or not partial:
        try:
            fields['scheduled_time'] = parse_scheduled_time(raw_time, tz_name)
        except ValueError as e:
            return {}, str(e) if raw_time is None else f'Malformed scheduled time: {raw_time}'

    repeat = data.get('repeat', data.get('repeat_type'))
    if repeat is not None or not partial:
        repeat = repeat or 'once'
        if repeat not in REPEAT_TYPES:
            return {}, f"Repeat must be one of {', '.join(REPEAT_TYPES)}"
        fields['repeat_type'] = repeat

    return fields, None


def _resolve_timezone(data: Dict[str, Any], device: Optional[Device], owner_tz: Optional[str]) -> Tuple[str, Optional[str]]:
    tz_name = data.get('timezone') or (device.timezone if device else None) or owner_tz or 'UTC'
    if not is_valid_timezone(tz_name):
        return tz_name, f'Unknown timezone: {tz_name}'
    return tz_name, None


def _conflict_failure(conflict) -> OperationResult:
    return OperationResult.failure(
        ErrorKind.CONFLICT,
        'Another item is already scheduled for this time period',
        **conflict.to_dict()
    )


def create_schedule(user, data: Dict[str, Any]) -> OperationResult:
    """
    Create a schedule for one device, for all of the owner's devices, or fan out to a group

    Group fan-out creates one independent row per member device and does not
    run the conflict check.
    """
    device_id = data.get('device_id', data.get('deviceId'))
    group_id = data.get('group_id', data.get('groupId'))

    if device_id is not None and group_id is not None:
        return OperationResult.failure(ErrorKind.VALIDATION, 'Target either a device or a group, not both')

    device = None
    group = None
    if device_id is not None:
        device = Device.query.filter_by(id=device_id, user_id=user.id).first()
        if device is None:
            return OperationResult.failure(ErrorKind.NOT_FOUND, 'Device not found', device_id=device_id)
    elif group_id is not None:
        group = DeviceGroup.query.filter_by(id=group_id, user_id=user.id).first()
        if group is None:
            return OperationResult.failure(ErrorKind.NOT_FOUND, 'Group not found', group_id=group_id)
        if not user.has_capability('group_schedule'):
            return OperationResult.failure(ErrorKind.FORBIDDEN, 'Group scheduling requires a higher subscription tier')

    tz_name, error = _resolve_timezone(data, device, user.timezone)
    if error:
        return OperationResult.failure(ErrorKind.VALIDATION, error)

    content, error = validate_content(data)
    if error:
        return OperationResult.failure(ErrorKind.VALIDATION, error)

    timing, error = _validate_timing(data, tz_name, partial=False)
    if error:
        return OperationResult.failure(ErrorKind.VALIDATION, error)

    fields = dict(content, **timing)
    scheduled_time = fields.pop('scheduled_time')
    duration_ms = fields.pop('duration_ms')

    if group is not None:
        return _fan_out(user, group, scheduled_time, duration_ms, tz_name, fields)

    conflict = find_conflict(
        scheduled_time, duration_ms, user.id,
        device_id=device.id if device else None,
        device_scoped=_config('SCHEDULE_CONFLICT_SCOPE', 'device') == 'device'
    )
    if conflict is not None:
        logger.info(f"Schedule conflict for owner {user.id}: {conflict.details}")
        return _conflict_failure(conflict)

    entry = ScheduleRepository.create(
        user.id, scheduled_time, duration_ms,
        device_id=device.id if device else None,
        timezone=tz_name,
        **fields
    )
    return OperationResult.success(entry)


def _fan_out(user, group, scheduled_time, duration_ms, tz_name, fields) -> OperationResult:
    devices = [d for d in group.devices if d.user_id == user.id]
    if not devices:
        return OperationResult.failure(ErrorKind.VALIDATION, 'Group has no devices', group_id=group.id)

    entries = []
    for device in devices:
        entries.append(ScheduleRepository.create(
            user.id, scheduled_time, duration_ms,
            device_id=device.id,
            group_id=group.id,
            from_group=True,
            timezone=tz_name,
            **fields
        ))

    logger.info(f"Group fan-out: {len(entries)} schedules for group {group.id}")
    return OperationResult.success(entries)


def update_schedule(user, schedule_id: int, data: Dict[str, Any]) -> OperationResult:
    """Update a pending schedule in place, conflict-checked against everything but itself"""
    entry = ScheduleRepository.get(schedule_id, user.id)
    if entry is None:
        return OperationResult.failure(ErrorKind.NOT_FOUND, 'Schedule not found', schedule_id=schedule_id)
    if entry.status != ScheduleStatus.PENDING:
        return OperationResult.failure(ErrorKind.VALIDATION, f'Schedule is {entry.status} and can no longer be changed',
                                       schedule_id=schedule_id, status=entry.status)

    tz_name = data.get('timezone') or entry.timezone
    if not is_valid_timezone(tz_name):
        return OperationResult.failure(ErrorKind.VALIDATION, f'Unknown timezone: {tz_name}')

    content, error = validate_content(data, partial=True)
    if error:
        return OperationResult.failure(ErrorKind.VALIDATION, error)
    timing, error = _validate_timing(data, tz_name, partial=True)
    if error:
        return OperationResult.failure(ErrorKind.VALIDATION, error)

    fields = dict(content, **timing)
    if data.get('timezone'):
        fields['timezone'] = tz_name

    new_time = fields.get('scheduled_time', entry.scheduled_time)
    new_duration = fields.get('duration_ms', entry.duration_ms)

    # Group rows were never conflict-checked on creation, keep them that way
    if not entry.from_group:
        conflict = find_conflict(
            new_time, new_duration, user.id,
            exclude_id=entry.id,
            device_id=entry.device_id,
            device_scoped=_config('SCHEDULE_CONFLICT_SCOPE', 'device') == 'device'
        )
        if conflict is not None:
            return _conflict_failure(conflict)

    updated = ScheduleRepository.update(entry.id, user.id, fields)
    if updated is None:
        return OperationResult.failure(ErrorKind.NOT_FOUND, 'Schedule not found', schedule_id=schedule_id)
    return OperationResult.success(updated)


def cancel_schedule(user, schedule_id: int) -> OperationResult:
    entry = ScheduleRepository.get(schedule_id, user.id)
    if entry is None:
        return OperationResult.failure(ErrorKind.NOT_FOUND, 'Schedule not found', schedule_id=schedule_id)

    updated = ScheduleRepository.update_status(entry.id, ScheduleStatus.CANCELLED)
    if updated is None:
        return OperationResult.failure(ErrorKind.VALIDATION, f'Schedule is {entry.status} and cannot be cancelled',
                                       schedule_id=schedule_id, status=entry.status)
    return OperationResult.success(updated)


def delete_schedule(user, schedule_id: int, dispatch=None) -> OperationResult:
    """
    Hard delete a schedule; clears the screen if it is the content currently showing
    """
    try:
        deleted = ScheduleRepository.delete(schedule_id, user.id)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Error deleting schedule {schedule_id}: {e}")
        return OperationResult.failure(ErrorKind.PERSISTENCE, 'Failed to delete schedule')

    if deleted is None:
        return OperationResult.failure(ErrorKind.NOT_FOUND, 'Schedule not found', schedule_id=schedule_id)

    if dispatch is not None:
        deleted['was_showing'] = dispatch.clear_if_showing(schedule_id, reason='deleted')

    return OperationResult.success(deleted)


def list_schedules(user, device_id: Optional[int] = None, group_id: Optional[int] = None) -> OperationResult:
    if device_id is not None:
        if Device.query.filter_by(id=device_id, user_id=user.id).first() is None:
            return OperationResult.failure(ErrorKind.NOT_FOUND, 'Device not found', device_id=device_id)
        return OperationResult.success(ScheduleRepository.get_for_device(user.id, device_id))

    if group_id is not None:
        if DeviceGroup.query.filter_by(id=group_id, user_id=user.id).first() is None:
            return OperationResult.failure(ErrorKind.NOT_FOUND, 'Group not found', group_id=group_id)
        return OperationResult.success(ScheduleRepository.get_for_group(user.id, group_id))

    return OperationResult.success(ScheduleRepository.get_all(user.id))
