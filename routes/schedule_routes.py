"""
Schedule Routes Blueprint
JSON endpoints for schedules, immediate display and display history
"""
from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user
from app import get_core
from models import Device
from utils.permissions import capability_required, error_response
from utils.scheduling import (
    cancel_schedule, create_schedule, delete_schedule, list_schedules, update_schedule
)
from utils.schedule_repository import ScheduleRepository
from utils.results import ErrorKind, OperationResult

schedule_bp = Blueprint('schedules', __name__)


def _int_arg(name):
    value = request.args.get(name)
    if value is None or value == '':
        return None
    return int(value)


@schedule_bp.route('/schedules', methods=['GET'])
@login_required
def index():
    """List the owner's schedules, optionally for one device or group"""
    try:
        device_id = _int_arg('device_id')
        group_id = _int_arg('group_id')
    except ValueError:
        return error_response(OperationResult.failure(ErrorKind.VALIDATION, 'Ids must be integers'))

    result = list_schedules(current_user, device_id=device_id, group_id=group_id)
    if not result:
        return error_response(result)

    return jsonify({'success': True, 'schedules': [s.to_dict() for s in result.value]})


@schedule_bp.route('/schedules', methods=['POST'])
@login_required
@capability_required('schedule')
def create():
    """Create a schedule for a device, a group, or all of the owner's devices"""
    data = request.get_json(silent=True) or {}
    result = create_schedule(current_user, data)
    if not result:
        return error_response(result)

    entries = result.value if isinstance(result.value, list) else [result.value]
    current_app.logger.info(f'{len(entries)} schedule(s) created by user {current_user.username}')

    if isinstance(result.value, list):
        return jsonify({'success': True, 'schedules': [e.to_dict() for e in entries]}), 201
    return jsonify({'success': True, 'schedule': result.value.to_dict()}), 201


@schedule_bp.route('/schedules/<int:schedule_id>', methods=['GET'])
@login_required
def view(schedule_id):
    entry = ScheduleRepository.get(schedule_id, current_user.id)
    if entry is None:
        return error_response(OperationResult.failure(ErrorKind.NOT_FOUND, 'Schedule not found',
                                                      schedule_id=schedule_id))
    return jsonify({'success': True, 'schedule': entry.to_dict()})


@schedule_bp.route('/schedules/<int:schedule_id>', methods=['PUT', 'PATCH'])
@login_required
def update(schedule_id):
    data = request.get_json(silent=True) or {}
    result = update_schedule(current_user, schedule_id, data)
    if not result:
        return error_response(result)

    current_app.logger.info(f'Schedule updated: {schedule_id} by user {current_user.username}')
    return jsonify({'success': True, 'schedule': result.value.to_dict()})


@schedule_bp.route('/schedules/<int:schedule_id>/cancel', methods=['POST'])
@login_required
def cancel(schedule_id):
    result = cancel_schedule(current_user, schedule_id)
    if not result:
        return error_response(result)

    current_app.logger.info(f'Schedule cancelled: {schedule_id} by user {current_user.username}')
    return jsonify({'success': True, 'schedule': result.value.to_dict()})


@schedule_bp.route('/schedules/<int:schedule_id>', methods=['DELETE'])
@login_required
def delete(schedule_id):
    """Delete a schedule, clearing the screen if it is what is showing"""
    result = delete_schedule(current_user, schedule_id, dispatch=get_core().dispatch)
    if not result:
        return error_response(result)

    current_app.logger.info(f'Schedule deleted: {schedule_id} by user {current_user.username}')
    return jsonify({'success': True, 'schedule': result.value})


@schedule_bp.route('/display-now', methods=['POST'])
@login_required
@capability_required('display_now')
def display_now():
    """
    Push content immediately

    Responds 503 when no targeted display is connected; nothing is recorded then.
    """
    data = request.get_json(silent=True) or {}
    device_id = data.get('device_id', data.get('deviceId'))
    group_id = data.get('group_id', data.get('groupId'))

    result = get_core().dispatch.display_now(current_user.id, data, device_id=device_id, group_id=group_id)
    if not result:
        return error_response(result)

    current_app.logger.info(
        f'Immediate display by user {current_user.username}: {result.value["displays_sent"]} displays'
    )
    return jsonify({
        'success': True,
        'displaysSent': result.value['displays_sent'],
        'content': result.value['content'],
        'schedule': result.value['schedule']
    })


@schedule_bp.route('/display-history', methods=['GET'])
@login_required
def display_history():
    limit = min(request.args.get('limit', 100, type=int), 500)
    rows = get_core().dispatch.get_history(current_user.id, limit=limit)
    return jsonify({'success': True, 'history': [{
        'id': row.id,
        'device_id': row.device_id,
        'schedule_id': row.schedule_id,
        'url': row.url,
        'type': row.display_type,
        'displayed_at': row.displayed_at.isoformat(),
        'duration': row.duration_ms,
        'source': row.source,
        'displays_sent': row.displays_sent
    } for row in rows]})


@schedule_bp.route('/devices', methods=['GET'])
@login_required
def devices():
    """Owner's devices with their live connection state"""
    registry = get_core().registry
    rows = Device.query.filter_by(user_id=current_user.id).order_by(Device.name).all()

    result = []
    for device in rows:
        data = device.to_dict()
        conn = registry.lookup_by_serial(device.serial)
        data['connected'] = conn is not None and conn.user_id == current_user.id
        result.append(data)

    return jsonify({'success': True, 'devices': result, 'connected': sum(1 for d in result if d['connected'])})
