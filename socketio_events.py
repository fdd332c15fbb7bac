"""
WebSocket Event Handlers
Device registration, live-broadcast signaling and connection lifecycle
"""
from flask import request
from flask_socketio import emit
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError
from app import socketio, get_core
from models import db, Device, utcnow
import logging

logger = logging.getLogger(__name__)


def _session_id(data):
    """Session ids arrive as ints or numeric strings"""
    value = (data or {}).get('sessionId')
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@socketio.on('connect')
def handle_connect():
    """Devices connect anonymously and identify with register-display"""
    if current_user.is_authenticated:
        logger.info(f'Client connected: {current_user.username} (SID: {request.sid})')
    else:
        logger.info(f'Client connected: {request.sid}')


@socketio.on('register-display')
def handle_register_display(data):
    """
    Bind a device serial to this transport session

    Unknown or unpaired serials are rejected. A repeat registration for the
    same serial supersedes the previous session.
    """
    data = data or {}
    serial = data.get('serial') or data.get('serialNumber')
    if not serial:
        emit('registration-error', {'error': 'Serial number required'})
        return

    device = Device.query.filter_by(serial=serial).first()
    if device is None or not device.can_register:
        logger.warning(f'Registration rejected for serial {serial} (SID: {request.sid})')
        emit('registration-error', {'error': 'Display is not paired', 'serial': serial})
        return

    core = get_core()
    display_name = data.get('displayName') or device.name
    tz_name = data.get('timezone') or device.timezone

    conn, superseded = core.registry.register(
        serial, request.sid, device.user_id, device.id, display_name, tz_name
    )
    if superseded is not None:
        core.live.release_viewer(superseded.session_id)

    try:
        device.last_seen = utcnow()
        if data.get('timezone') and data['timezone'] != device.timezone:
            device.timezone = data['timezone']
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f'Error updating last_seen for device {device.id}: {e}')

    emit('display-registered', {
        'deviceId': device.id,
        'serial': serial,
        'displayName': display_name,
        'superseded': superseded is not None
    })

    core.dispatch.send_current_to(conn)
    core.live.emergency_override(conn)


@socketio.on('disconnect')
def handle_disconnect():
    """Handle client disconnection"""
    core = get_core()
    conn = core.registry.remove_session(request.sid)
    result = core.live.handle_disconnect(request.sid)

    if conn is not None:
        logger.info(f'Display disconnected: {conn.serial} (SID: {request.sid})')
    elif result['ended'] or result['left']:
        logger.info(f'Live client disconnected (SID: {request.sid}): {result}')


# ============================================================================
# LIVE BROADCAST EVENTS
# ============================================================================

@socketio.on('live:start-broadcast')
def handle_start_broadcast(data):
    """Broadcaster announces a durable session it opened over HTTP"""
    if not current_user.is_authenticated:
        emit('live:error', {'error': 'Authentication required'})
        return

    session_id = _session_id(data)
    if session_id is None:
        emit('live:error', {'error': 'Invalid session'})
        return

    get_core().live.start_broadcast(session_id, current_user.id, request.sid)


@socketio.on('live:end-broadcast')
def handle_end_broadcast(data):
    session_id = _session_id(data)
    if session_id is None:
        emit('live:error', {'error': 'Invalid session'})
        return
    get_core().live.end_broadcast(session_id, request.sid)


@socketio.on('live:join-session')
def handle_join_session(data):
    session_id = _session_id(data)
    if session_id is None:
        emit('live:error', {'error': 'Session not found or not active'})
        return
    get_core().live.join_session(session_id, request.sid)


@socketio.on('live:leave-session')
def handle_leave_session(data):
    session_id = _session_id(data)
    if session_id is not None:
        get_core().live.leave_session(session_id, request.sid)


@socketio.on('live:offer')
def handle_offer(data):
    get_core().live.relay_offer(request.sid, data or {})


@socketio.on('live:answer')
def handle_answer(data):
    get_core().live.relay_answer(request.sid, data or {})


@socketio.on('live:ice-candidate')
def handle_ice_candidate(data):
    get_core().live.relay_ice_candidate(request.sid, data or {})


@socketio.on('live:quality-report')
def handle_quality_report(data):
    session_id = _session_id(data)
    if session_id is None or not data.get('quality'):
        return
    get_core().live.report_quality(session_id, request.sid, data['quality'], data.get('stats'))


@socketio.on('live:error-report')
def handle_error_report(data):
    session_id = _session_id(data)
    if session_id is not None:
        get_core().live.report_error(session_id, request.sid, data.get('error'), data.get('context'))


@socketio.on('ping')
def handle_ping():
    """Respond to ping (keep-alive)"""
    emit('pong', {'timestamp': utcnow().isoformat() + 'Z'})
