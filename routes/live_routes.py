"""
Live Session Routes Blueprint
Start/end broadcasts and browse session history and analytics
"""
from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user
from sqlalchemy.exc import SQLAlchemyError
from app import get_core
from models import db
from utils.live_session_db import LiveSessionStore
from utils.permissions import capability_required, error_response
from utils.results import ErrorKind, OperationResult

live_bp = Blueprint('live', __name__)


def _owned_session(session_id):
    """(session, None) or (None, error response)"""
    session = LiveSessionStore.get_session(session_id)
    if session is None:
        return None, error_response(OperationResult.failure(ErrorKind.NOT_FOUND, 'Session not found',
                                                            session_id=session_id))
    if session.user_id != current_user.id:
        return None, error_response(OperationResult.failure(ErrorKind.FORBIDDEN, 'Unauthorized',
                                                            session_id=session_id))
    return session, None


@live_bp.route('/start', methods=['POST'])
@login_required
@capability_required('live_broadcast')
def start():
    """Open a live session; the broadcaster then announces it over Socket.IO"""
    data = request.get_json(silent=True) or {}
    result = get_core().live.open_session(current_user, data)
    if not result:
        return error_response(result)

    session = result.value['session']
    current_app.logger.info(f'Live session {session.id} started by user {current_user.username}')
    return jsonify({
        'success': True,
        'sessionId': session.id,
        'startedAt': session.started_at.isoformat(),
        'status': session.status,
        'emergency': session.emergency,
        'targetedDisplays': result.value['targeted_displays']
    })


@live_bp.route('/<int:session_id>/end', methods=['POST'])
@login_required
def end(session_id):
    result = get_core().live.close_session(current_user, session_id)
    if not result:
        return error_response(result)

    session = result.value
    current_app.logger.info(f'Live session {session_id} ended by user {current_user.username}')
    return jsonify({
        'success': True,
        'sessionId': session.id,
        'endedAt': session.ended_at.isoformat(),
        'duration': session.duration_seconds,
        'viewerCount': session.viewer_count,
        'peakViewerCount': session.peak_viewer_count,
        'recordingUrl': session.recording_url
    })


@live_bp.route('/active', methods=['GET'])
@login_required
def active():
    session = LiveSessionStore.get_active_session(current_user.id)
    if session is None:
        return jsonify({'success': True, 'active': False})

    return jsonify({
        'success': True,
        'active': True,
        'session': session.to_dict(),
        'stats': get_core().live.get_session_stats(session.id)
    })


@live_bp.route('/history', methods=['GET'])
@login_required
def history():
    limit = min(request.args.get('limit', current_app.config['LIVE_HISTORY_PAGE_SIZE'], type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    page = LiveSessionStore.get_session_history(current_user.id, limit=limit, offset=offset)
    return jsonify({
        'success': True,
        'sessions': [s.to_dict() for s in page['sessions']],
        'pagination': {
            'total': page['total'],
            'limit': page['limit'],
            'offset': page['offset'],
            'hasMore': page['has_more']
        }
    })


@live_bp.route('/emergency/active', methods=['GET'])
@login_required
def emergency_active():
    session = LiveSessionStore.get_active_emergency_broadcast(current_user.id)
    return jsonify({
        'success': True,
        'hasEmergency': session is not None,
        'session': session.to_dict() if session else None
    })


@live_bp.route('/<int:session_id>', methods=['GET'])
@login_required
def view(session_id):
    session, error = _owned_session(session_id)
    if error:
        return error

    data = session.to_dict()
    data['target_devices'] = LiveSessionStore.get_targeted_device_ids(session.id)
    data['viewers'] = [v.to_dict() for v in session.viewers]
    return jsonify({'success': True, 'session': data})


@live_bp.route('/<int:session_id>/analytics', methods=['GET'])
@login_required
def analytics(session_id):
    session, error = _owned_session(session_id)
    if error:
        return error

    return jsonify({'success': True, **LiveSessionStore.get_session_analytics(session.id)})


@live_bp.route('/<int:session_id>/recording', methods=['PUT'])
@login_required
def recording(session_id):
    """Attach the recording uploaded to the content store after a broadcast"""
    session, error = _owned_session(session_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    if not data.get('recording_url'):
        return error_response(OperationResult.failure(ErrorKind.VALIDATION, 'recording_url is required'))
    if session.is_active:
        return error_response(OperationResult.failure(ErrorKind.VALIDATION, 'Session is still active',
                                                      session_id=session_id))

    session = LiveSessionStore.update_recording(
        session.id, data['recording_url'], data.get('recording_public_id'), data.get('thumbnail_url')
    )
    return jsonify({'success': True, 'session': session.to_dict()})


@live_bp.route('/<int:session_id>', methods=['DELETE'])
@login_required
def delete(session_id):
    session, error = _owned_session(session_id)
    if error:
        return error

    if session.is_active:
        get_core().live.force_end_session(session.id, reason='Session deleted')

    try:
        LiveSessionStore.delete_session(session.id)
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f'Error deleting live session {session_id}: {e}')
        return error_response(OperationResult.failure(ErrorKind.PERSISTENCE, 'Failed to delete session'))

    current_app.logger.info(f'Live session {session_id} deleted by user {current_user.username}')
    return jsonify({'success': True, 'message': 'Session deleted successfully'})
