"""
Daypart Routes Blueprint
Toggle daypart mode per device and manage its window content
"""
from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user
from app import get_core
from models import Device, utcnow
from utils.daypart import (
    DAYPARTS, get_current_daypart, list_daypart_content, set_daypart_content, set_daypart_mode
)
from utils.permissions import capability_required, error_response
from utils.results import ErrorKind, OperationResult
from utils.schedule_utils import is_valid_timezone, to_local

daypart_bp = Blueprint('daypart', __name__)


@daypart_bp.route('/current', methods=['GET'])
@login_required
def current():
    """Active daypart window in the requested (or owner's) timezone"""
    tz_name = request.args.get('timezone') or current_user.timezone
    if not is_valid_timezone(tz_name):
        return error_response(OperationResult.failure(ErrorKind.VALIDATION, f'Unknown timezone: {tz_name}'))

    daypart = get_current_daypart(to_local(utcnow(), tz_name))
    return jsonify({'success': True, 'daypart': daypart, 'timezone': tz_name})


@daypart_bp.route('/windows', methods=['GET'])
@login_required
def windows():
    return jsonify({'success': True, 'dayparts': [{
        'type': key,
        'name': daypart['name'],
        'start': daypart['start'].strftime('%H:%M'),
        'end': daypart['end'].strftime('%H:%M')
    } for key, daypart in DAYPARTS.items()]})


@daypart_bp.route('/devices/<int:device_id>/mode', methods=['PUT'])
@login_required
def set_mode(device_id):
    """Enable or disable daypart scheduling for a device"""
    data = request.get_json(silent=True) or {}
    if 'enabled' not in data:
        return error_response(OperationResult.failure(ErrorKind.VALIDATION, 'enabled is required'))

    result = set_daypart_mode(current_user, device_id, bool(data['enabled']))
    if not result:
        return error_response(result)

    current_app.logger.info(
        f'Daypart mode {"enabled" if result.value.daypart_enabled else "disabled"} '
        f'for device {device_id} by user {current_user.username}'
    )
    return jsonify({'success': True, 'device': result.value.to_dict()})


@daypart_bp.route('/devices/<int:device_id>/content', methods=['GET'])
@login_required
def content(device_id):
    result = list_daypart_content(current_user, device_id)
    if not result:
        return error_response(result)
    return jsonify({'success': True, 'content': [row.to_dict() for row in result.value]})


@daypart_bp.route('/devices/<int:device_id>/content', methods=['POST'])
@login_required
@capability_required('daypart')
def add_content(device_id):
    data = request.get_json(silent=True) or {}
    result = set_daypart_content(current_user, device_id, data)
    if not result:
        return error_response(result)
    return jsonify({'success': True, 'content': result.value.to_dict()}), 201


@daypart_bp.route('/devices/<int:device_id>/apply', methods=['POST'])
@login_required
@capability_required('daypart')
def apply_now(device_id):
    """Push the current window's content to one device without waiting for the next check"""
    device = Device.query.filter_by(id=device_id, user_id=current_user.id).first()
    if device is None:
        return error_response(OperationResult.failure(ErrorKind.NOT_FOUND, 'Device not found', device_id=device_id))

    now = utcnow()
    daypart = get_current_daypart(to_local(now, device.timezone))
    applied = get_core().daypart.apply_to_device(device, daypart, now)
    if not applied:
        return error_response(OperationResult.failure(
            ErrorKind.NOT_FOUND, f'No content configured for {daypart["name"]}', daypart=daypart['type']
        ))

    return jsonify({'success': True, 'daypart': daypart})
