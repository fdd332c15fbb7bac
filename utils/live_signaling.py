"""
Live Session Coordinator
Broadcaster/viewer state machine and WebRTC signaling relay over the live transport.

Sessions are tracked durably (LiveSession.status) and in an in-memory active
table keyed by session id. The coordinator relays signaling payloads without
inspecting them; it is not a media server.
"""
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError

from models import db, utcnow
from utils.live_session_db import LiveSessionError, LiveSessionStore
from utils.results import ErrorKind, OperationResult

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TITLE = 'Live Announcement'
DEGRADED_QUALITIES = ('poor', 'fair')


class ActiveBroadcast:
    """In-memory tracking entry for one active session"""

    def __init__(self, session_id, user_id, broadcaster_sid, emergency=False, started_at=None):
        self.session_id = session_id
        self.user_id = user_id
        self.broadcaster_sid = broadcaster_sid
        self.emergency = emergency
        self.started_at = started_at or utcnow()
        # viewer sid -> device id
        self.viewers: Dict[str, int] = {}
        # viewer sid -> LiveSessionViewer row opened by that sid
        self.viewer_rows: Dict[str, int] = {}


class LiveSessionCoordinator:
    """Live broadcast coordination sharing the dispatch connection registry"""

    def __init__(self, registry, transport):
        self.registry = registry
        self.transport = transport
        self.active_sessions: Dict[int, ActiveBroadcast] = {}
        self._lock = Lock()

    def _emit(self, session_id, event, payload) -> bool:
        return self.transport.push(session_id, event, payload)

    def _get_active(self, session_id) -> Optional[ActiveBroadcast]:
        with self._lock:
            return self.active_sessions.get(session_id)

    # ------------------------------------------------------------------
    # Durable lifecycle (request-driven)
    # ------------------------------------------------------------------

    def open_session(self, user, data: Dict[str, Any]) -> OperationResult:
        """
        Create a durable active session for an owner

        Rejects when the owner already has an active session. Explicit target
        ids are filtered to the owner's paired devices; an empty list means
        all of the owner's devices.
        """
        emergency = bool(data.get('emergency', False))
        if not user.has_capability('live_broadcast'):
            return OperationResult.failure(ErrorKind.FORBIDDEN, 'Live broadcasting requires a higher subscription tier')
        if emergency and not user.has_capability('emergency_broadcast'):
            return OperationResult.failure(ErrorKind.FORBIDDEN, 'Emergency broadcasting requires a higher subscription tier')

        existing = LiveSessionStore.get_active_session(user.id)
        if existing is not None:
            return OperationResult.failure(ErrorKind.CONFLICT, 'Active session already exists',
                                           session_id=existing.id)

        requested = data.get('target_devices', data.get('targetDisplays')) or []
        if not isinstance(requested, list):
            return OperationResult.failure(ErrorKind.VALIDATION, 'Target displays must be a list of device ids')

        targets: List[int] = []
        if requested:
            owned = {device.id for device in LiveSessionStore.get_user_devices(user.id)}
            targets = [device_id for device_id in requested if device_id in owned]
            if not targets:
                return OperationResult.failure(ErrorKind.VALIDATION, 'No valid target displays found')

        title = (data.get('title') or '').strip() or DEFAULT_SESSION_TITLE
        try:
            session = LiveSessionStore.create_session(user.id, title, emergency, targets)
        except SQLAlchemyError as e:
            logger.error(f"Error starting live session for owner {user.id}: {e}")
            return OperationResult.failure(ErrorKind.PERSISTENCE, 'Failed to start live session')

        return OperationResult.success({'session': session, 'targeted_displays': len(targets) or 'all'})

    def close_session(self, user, session_id: int) -> OperationResult:
        """Owner-initiated end of an active session, from outside the broadcaster's socket"""
        session = LiveSessionStore.get_session(session_id)
        if session is None:
            return OperationResult.failure(ErrorKind.NOT_FOUND, 'Session not found', session_id=session_id)
        if session.user_id != user.id:
            return OperationResult.failure(ErrorKind.FORBIDDEN, 'Unauthorized', session_id=session_id)
        if session.status != 'active':
            return OperationResult.failure(ErrorKind.VALIDATION, 'Session is not active',
                                           session_id=session_id, status=session.status)

        return self.force_end_session(session_id, reason='Owner ended session')

    # ------------------------------------------------------------------
    # Broadcaster events
    # ------------------------------------------------------------------

    def resolve_target_connections(self, session_id: int, user_id: int):
        """
        Live connections a session reaches right now

        Evaluated fresh on every call: explicit targets if present, otherwise
        every connected device of the owner.
        """
        connections = self.registry.all_owned_by(user_id)
        targeted = set(LiveSessionStore.get_targeted_device_ids(session_id))
        if targeted:
            connections = [conn for conn in connections if conn.device_id in targeted]
        return connections

    def start_broadcast(self, session_id: int, user_id: int, broadcaster_sid) -> OperationResult:
        session = LiveSessionStore.get_session(session_id)
        if session is None or session.user_id != user_id:
            self._emit(broadcaster_sid, 'live:error', {'error': 'Invalid session'})
            return OperationResult.failure(ErrorKind.FORBIDDEN, 'Invalid session', session_id=session_id)
        if session.status != 'active':
            self._emit(broadcaster_sid, 'live:error', {'error': 'Session is not active'})
            return OperationResult.failure(ErrorKind.STALE_SESSION, 'Session is not active', session_id=session_id)

        with self._lock:
            self.active_sessions[session_id] = ActiveBroadcast(
                session_id, user_id, broadcaster_sid,
                emergency=session.emergency, started_at=session.started_at
            )

        message = {
            'sessionId': session.id,
            'title': session.title,
            'userId': session.user_id,
            'emergency': session.emergency,
            'startedAt': session.started_at.isoformat() + 'Z'
        }
        connections = self.resolve_target_connections(session_id, user_id)
        notified = 0
        for conn in connections:
            if self._emit(conn.session_id, 'live:broadcast-started', message):
                notified += 1

        logger.info(f"Broadcast started: session {session_id} by owner {user_id}, notified {notified} displays")
        self._emit(broadcaster_sid, 'live:broadcast-ready', {'sessionId': session_id, 'devicesNotified': notified})
        return OperationResult.success({'devices_notified': notified})

    def end_broadcast(self, session_id: int, broadcaster_sid) -> OperationResult:
        """Only the broadcaster's own transport session may end its broadcast"""
        active = self._get_active(session_id)
        if active is None or active.broadcaster_sid != broadcaster_sid:
            self._emit(broadcaster_sid, 'live:error', {'error': 'Not authorized'})
            return OperationResult.failure(ErrorKind.STALE_SESSION, 'Not authorized', session_id=session_id)

        return self._end(active, 'Broadcaster ended session')

    def force_end_session(self, session_id: int, reason: str = 'Session force ended by system') -> OperationResult:
        active = self._get_active(session_id)
        if active is not None:
            return self._end(active, reason)

        # Durable session without a connected broadcaster
        try:
            session = LiveSessionStore.end_session(session_id, reason=reason)
        except LiveSessionError as e:
            return OperationResult.failure(ErrorKind.STALE_SESSION, str(e), session_id=session_id)
        except SQLAlchemyError as e:
            logger.error(f"Error ending live session {session_id}: {e}")
            return OperationResult.failure(ErrorKind.PERSISTENCE, 'Failed to end live session')
        return OperationResult.success(session)

    def _end(self, active: ActiveBroadcast, reason: str) -> OperationResult:
        with self._lock:
            self.active_sessions.pop(active.session_id, None)
            viewer_sids = list(active.viewers)

        for sid in viewer_sids:
            self._emit(sid, 'live:broadcast-ended', {'sessionId': active.session_id, 'reason': reason})

        try:
            session = LiveSessionStore.end_session(active.session_id, reason=reason)
        except LiveSessionError as e:
            logger.warning(f"Live session {active.session_id} was already ended: {e}")
            return OperationResult.failure(ErrorKind.STALE_SESSION, str(e), session_id=active.session_id)
        except SQLAlchemyError as e:
            logger.error(f"Error ending live session {active.session_id}: {e}")
            return OperationResult.failure(ErrorKind.PERSISTENCE, 'Failed to end live session')

        logger.info(f"Broadcast ended: session {active.session_id} ({reason})")
        return OperationResult.success(session)

    # ------------------------------------------------------------------
    # Viewer events
    # ------------------------------------------------------------------

    def join_session(self, session_id: int, viewer_sid) -> OperationResult:
        active = self._get_active(session_id)
        if active is None:
            self._emit(viewer_sid, 'live:error', {'error': 'Session not found or not active'})
            return OperationResult.failure(ErrorKind.STALE_SESSION, 'Session not found or not active',
                                           session_id=session_id)

        conn = self.registry.lookup_by_session(viewer_sid)
        if conn is None or conn.user_id != active.user_id:
            self._emit(viewer_sid, 'live:error', {'error': 'Display not registered for this session'})
            return OperationResult.failure(ErrorKind.FORBIDDEN, 'Display not registered for this session',
                                           session_id=session_id)

        targeted = LiveSessionStore.get_targeted_device_ids(session_id)
        if targeted and conn.device_id not in targeted:
            self._emit(viewer_sid, 'live:error', {'error': 'Display is not targeted by this session'})
            return OperationResult.failure(ErrorKind.FORBIDDEN, 'Display is not targeted by this session',
                                           session_id=session_id, device_id=conn.device_id)

        with self._lock:
            already_viewing = viewer_sid in active.viewers
            active.viewers[viewer_sid] = conn.device_id

        if already_viewing:
            # Repeat join from the same socket keeps its open row
            viewer_count = len(active.viewers)
            self._emit(viewer_sid, 'live:viewer-ready', {
                'sessionId': session_id,
                'broadcasterId': active.broadcaster_sid
            })
            return OperationResult.success({'viewer_count': viewer_count})

        try:
            result = LiveSessionStore.add_viewer(session_id, conn.device_id)
        except SQLAlchemyError as e:
            with self._lock:
                active.viewers.pop(viewer_sid, None)
            logger.error(f"Error recording viewer {conn.device_id} for session {session_id}: {e}")
            self._emit(viewer_sid, 'live:error', {'error': 'Failed to join session'})
            return OperationResult.failure(ErrorKind.PERSISTENCE, 'Failed to join session')

        with self._lock:
            active.viewer_rows[viewer_sid] = result['viewer'].id

        self._emit(active.broadcaster_sid, 'live:viewer-joined', {
            'sessionId': session_id,
            'displayId': conn.device_id,
            'viewerId': viewer_sid,
            'viewerCount': result['viewer_count']
        })
        self._emit(viewer_sid, 'live:viewer-ready', {
            'sessionId': session_id,
            'broadcasterId': active.broadcaster_sid
        })

        logger.info(f"Viewer joined: device {conn.device_id}, {result['viewer_count']} viewers in session {session_id}")
        return OperationResult.success({'viewer_count': result['viewer_count']})

    def leave_session(self, session_id: int, viewer_sid, reason: Optional[str] = None) -> OperationResult:
        active = self._get_active(session_id)
        if active is None:
            return OperationResult.failure(ErrorKind.STALE_SESSION, 'Session not found or not active',
                                           session_id=session_id)

        with self._lock:
            device_id = active.viewers.pop(viewer_sid, None)
            viewer_row_id = active.viewer_rows.pop(viewer_sid, None)
        if device_id is None:
            return OperationResult.failure(ErrorKind.STALE_SESSION, 'Not viewing this session',
                                           session_id=session_id)

        try:
            result = LiveSessionStore.remove_viewer(session_id, device_id, viewer_id=viewer_row_id)
        except SQLAlchemyError as e:
            logger.error(f"Error removing viewer {device_id} from session {session_id}: {e}")
            return OperationResult.failure(ErrorKind.PERSISTENCE, 'Failed to leave session')

        message = {
            'sessionId': session_id,
            'displayId': device_id,
            'viewerId': viewer_sid,
            'viewerCount': result['viewer_count']
        }
        if reason:
            message['reason'] = reason
        self._emit(active.broadcaster_sid, 'live:viewer-left', message)
        return OperationResult.success({'viewer_count': result['viewer_count']})

    # ------------------------------------------------------------------
    # Signaling relay
    # ------------------------------------------------------------------

    def _relay(self, target_sid, event, payload) -> OperationResult:
        if not target_sid:
            return OperationResult.failure(ErrorKind.VALIDATION, 'Relay target is required', event=event)
        self._emit(target_sid, event, payload)
        return OperationResult.success(target_sid)

    def relay_offer(self, sender_sid, data: Dict[str, Any]) -> OperationResult:
        return self._relay(data.get('viewerId'), 'live:offer', {
            'sessionId': data.get('sessionId'),
            'broadcasterId': sender_sid,
            'offer': data.get('offer')
        })

    def relay_answer(self, sender_sid, data: Dict[str, Any]) -> OperationResult:
        return self._relay(data.get('broadcasterId'), 'live:answer', {
            'sessionId': data.get('sessionId'),
            'viewerId': sender_sid,
            'answer': data.get('answer')
        })

    def relay_ice_candidate(self, sender_sid, data: Dict[str, Any]) -> OperationResult:
        return self._relay(data.get('targetId'), 'live:ice-candidate', {
            'sessionId': data.get('sessionId'),
            'senderId': sender_sid,
            'candidate': data.get('candidate')
        })

    # ------------------------------------------------------------------
    # Quality and error reports
    # ------------------------------------------------------------------

    def report_quality(self, session_id: int, viewer_sid, quality: str, stats=None) -> OperationResult:
        active = self._get_active(session_id)
        device_id = active.viewers.get(viewer_sid) if active is not None else None
        if device_id is None:
            conn = self.registry.lookup_by_session(viewer_sid)
            device_id = conn.device_id if conn is not None else None
        if device_id is None:
            return OperationResult.failure(ErrorKind.STALE_SESSION, 'Unknown viewer', session_id=session_id)

        try:
            LiveSessionStore.update_quality(session_id, device_id, quality)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error updating quality for session {session_id}: {e}")

        if quality in DEGRADED_QUALITIES:
            LiveSessionStore.log_event(session_id, 'quality_degraded',
                                       {'displayId': device_id, 'quality': quality, 'stats': stats})
            if active is not None:
                self._emit(active.broadcaster_sid, 'live:quality-warning',
                           {'displayId': device_id, 'quality': quality, 'stats': stats})

        return OperationResult.success({'device_id': device_id, 'quality': quality})

    def report_error(self, session_id: int, sender_sid, error, context=None) -> bool:
        logger.warning(f"Client reported live error in session {session_id}: {error}")
        return LiveSessionStore.log_event(session_id, 'error',
                                          {'error': error, 'context': context, 'socketId': sender_sid})

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def handle_disconnect(self, sid) -> Dict[str, int]:
        """
        A broadcaster disconnect ends its sessions; a viewer disconnect leaves them
        """
        with self._lock:
            broadcasting = [a for a in self.active_sessions.values() if a.broadcaster_sid == sid]

        ended = 0
        for active in broadcasting:
            logger.info(f"Broadcaster disconnected, ending session {active.session_id}")
            if self._end(active, 'Broadcaster disconnected').ok:
                ended += 1

        left = self.release_viewer(sid, reason='disconnected')

        return {'ended': ended, 'left': left}

    def release_viewer(self, sid, reason: str = 'superseded') -> int:
        """Leave every session a viewer socket has joined; returns how many it left"""
        with self._lock:
            viewing = [a.session_id for a in self.active_sessions.values() if sid in a.viewers]

        left = 0
        for session_id in viewing:
            if self.leave_session(session_id, sid, reason=reason).ok:
                left += 1
        return left

    def emergency_override(self, connection) -> bool:
        """Tell a freshly registered device to join its owner's active emergency broadcast"""
        session = LiveSessionStore.get_active_emergency_broadcast(connection.user_id)
        if session is None:
            return False

        if not LiveSessionStore.get_targeted_device_ids(session.id) or \
                LiveSessionStore.is_device_targeted(session.id, connection.device_id):
            return self._emit(connection.session_id, 'live:emergency-override', {
                'sessionId': session.id,
                'title': session.title,
                'startedAt': session.started_at.isoformat() + 'Z'
            })
        return False

    def get_session_stats(self, session_id: int, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        active = self._get_active(session_id)
        if active is None:
            return None
        if now is None:
            now = utcnow()

        with self._lock:
            viewers = [{'socketId': sid, 'displayId': device_id} for sid, device_id in active.viewers.items()]

        return {
            'sessionId': session_id,
            'broadcaster': active.broadcaster_sid,
            'viewerCount': len(viewers),
            'viewers': viewers,
            'uptime': max(0, int((now - active.started_at).total_seconds()))
        }
