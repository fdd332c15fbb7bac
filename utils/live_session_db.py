"""
Live Session Store
Durable operations for live broadcasts, their targets, viewers and event log
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
import json
import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from models import (
    db, Device, LiveSession, LiveSessionEvent, LiveSessionTarget, LiveSessionViewer, utcnow
)

logger = logging.getLogger(__name__)


class LiveSessionError(Exception):
    """Raised when a durable live-session transition is not possible"""
    pass


class LiveSessionStore:
    """Database helper for live sessions"""

    @staticmethod
    def create_session(user_id: int, title: str, emergency: bool = False,
                       target_device_ids: Optional[List[int]] = None) -> LiveSession:
        """
        Create an active session with its targets and start event in one transaction
        """
        target_device_ids = list(target_device_ids or [])
        try:
            session = LiveSession(user_id=user_id, title=title, emergency=emergency, status='active',
                                  started_at=utcnow())
            db.session.add(session)
            db.session.flush()

            for device_id in target_device_ids:
                db.session.add(LiveSessionTarget(session_id=session.id, device_id=device_id))

            db.session.add(LiveSessionEvent(
                session_id=session.id,
                event_type='started',
                event_data=json.dumps({'title': title, 'emergency': emergency,
                                       'targetDevices': target_device_ids})
            ))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.info(f"Live session created: {session.id} for owner {user_id}"
                    f"{' (emergency)' if emergency else ''}")
        return session

    @staticmethod
    def end_session(session_id: int, reason: Optional[str] = None,
                    now: Optional[datetime] = None) -> LiveSession:
        """
        End an active session, close every open viewer and log the end event atomically

        Raises:
            LiveSessionError: If the session does not exist or already ended
        """
        if now is None:
            now = utcnow()

        session = db.session.get(LiveSession, session_id)
        if session is None or session.status != 'active':
            raise LiveSessionError('Session not found or already ended')

        try:
            session.status = 'ended'
            session.ended_at = now
            session.duration_seconds = max(0, int((now - session.started_at).total_seconds()))
            session.viewer_count = 0

            open_viewers = LiveSessionViewer.query.filter_by(session_id=session_id, left_at=None).all()
            for viewer in open_viewers:
                viewer.finish(now)

            db.session.add(LiveSessionEvent(
                session_id=session_id,
                event_type='ended',
                event_data=json.dumps({'reason': reason}) if reason else None
            ))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.info(f"Live session ended: {session_id}{f' ({reason})' if reason else ''}")
        return session

    @staticmethod
    def get_session(session_id: int) -> Optional[LiveSession]:
        return db.session.get(LiveSession, session_id)

    @staticmethod
    def get_active_session(user_id: int) -> Optional[LiveSession]:
        return LiveSession.query.filter_by(user_id=user_id, status='active')\
            .order_by(LiveSession.started_at.desc(), LiveSession.id.desc()).first()

    @staticmethod
    def get_active_emergency_broadcast(user_id: int) -> Optional[LiveSession]:
        return LiveSession.query.filter_by(user_id=user_id, status='active', emergency=True).first()

    @staticmethod
    def get_session_history(user_id: int, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        query = LiveSession.query.filter_by(user_id=user_id)
        sessions = query.order_by(LiveSession.started_at.desc(), LiveSession.id.desc())\
            .limit(limit).offset(offset).all()
        total = query.count()
        return {
            'sessions': sessions,
            'total': total,
            'limit': limit,
            'offset': offset,
            'has_more': (offset + limit) < total
        }

    @staticmethod
    def _open_viewer_count(session_id: int) -> int:
        return LiveSessionViewer.query.filter_by(session_id=session_id, left_at=None).count()

    @staticmethod
    def add_viewer(session_id: int, device_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Record a join, refresh the viewer and peak counters, log the event"""
        if now is None:
            now = utcnow()
        try:
            viewer = LiveSessionViewer(session_id=session_id, device_id=device_id, joined_at=now)
            db.session.add(viewer)
            db.session.flush()

            count = LiveSessionStore._open_viewer_count(session_id)
            session = db.session.get(LiveSession, session_id)
            session.viewer_count = count
            session.peak_viewer_count = max(session.peak_viewer_count or 0, count)

            db.session.add(LiveSessionEvent(
                session_id=session_id,
                event_type='viewer_joined',
                event_data=json.dumps({'displayId': device_id, 'viewerCount': count})
            ))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        return {'viewer': viewer, 'viewer_count': count}

    @staticmethod
    def remove_viewer(session_id: int, device_id: int, now: Optional[datetime] = None,
                      viewer_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Close a device's open viewing interval and refresh the viewer counter

        With viewer_id only that row is closed, so a device that rejoined from a
        new socket keeps its newer interval open.
        """
        if now is None:
            now = utcnow()
        try:
            query = LiveSessionViewer.query.filter_by(session_id=session_id, device_id=device_id, left_at=None)
            if viewer_id is not None:
                query = query.filter_by(id=viewer_id)
            open_rows = query.all()
            for viewer in open_rows:
                viewer.finish(now)
            db.session.flush()

            count = LiveSessionStore._open_viewer_count(session_id)
            session = db.session.get(LiveSession, session_id)
            if session is not None:
                session.viewer_count = count

            db.session.add(LiveSessionEvent(
                session_id=session_id,
                event_type='viewer_left',
                event_data=json.dumps({'displayId': device_id, 'viewerCount': count})
            ))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        return {'viewer_count': count}

    @staticmethod
    def update_quality(session_id: int, device_id: int, quality: str):
        LiveSessionViewer.query.filter_by(session_id=session_id, device_id=device_id, left_at=None)\
            .update({'connection_quality': quality})
        db.session.commit()

    @staticmethod
    def update_recording(session_id: int, recording_url: str, recording_public_id: Optional[str] = None,
                         thumbnail_url: Optional[str] = None) -> Optional[LiveSession]:
        session = db.session.get(LiveSession, session_id)
        if session is None:
            return None

        session.recording_url = recording_url
        session.recording_public_id = recording_public_id
        session.thumbnail_url = thumbnail_url
        session.status = 'ended'
        db.session.commit()

        LiveSessionStore.log_event(session_id, 'recording_uploaded',
                                   {'recordingUrl': recording_url, 'thumbnailUrl': thumbnail_url})
        return session

    @staticmethod
    def log_event(session_id: int, event_type: str, event_data: Optional[Dict[str, Any]] = None) -> bool:
        """Append to the session event log; failures are logged and swallowed"""
        try:
            db.session.add(LiveSessionEvent(
                session_id=session_id,
                event_type=event_type,
                event_data=json.dumps(event_data) if event_data is not None else None
            ))
            db.session.commit()
            return True
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error logging live session event {event_type} for {session_id}: {e}")
            return False

    @staticmethod
    def get_targeted_device_ids(session_id: int) -> List[int]:
        rows = LiveSessionTarget.query.filter_by(session_id=session_id).all()
        return [row.device_id for row in rows]

    @staticmethod
    def is_device_targeted(session_id: int, device_id: int) -> bool:
        return LiveSessionTarget.query.filter_by(session_id=session_id, device_id=device_id).count() > 0

    @staticmethod
    def get_user_devices(user_id: int) -> List[Device]:
        return Device.query.filter_by(user_id=user_id, is_paired=True).all()

    @staticmethod
    def get_session_analytics(session_id: int) -> Optional[Dict[str, Any]]:
        session = db.session.get(LiveSession, session_id)
        if session is None:
            return None

        viewers = LiveSessionViewer.query.filter_by(session_id=session_id)\
            .order_by(LiveSessionViewer.joined_at).all()
        avg_watch = db.session.query(func.avg(LiveSessionViewer.watch_duration_seconds))\
            .filter(LiveSessionViewer.session_id == session_id,
                    LiveSessionViewer.watch_duration_seconds.isnot(None)).scalar()

        return {
            'session': session.to_dict(),
            'metrics': {
                'total_viewers': len(viewers),
                'peak_viewers': session.peak_viewer_count,
                'average_watch_time': int(round(avg_watch or 0))
            },
            'viewers': [v.to_dict() for v in viewers],
            'timeline': [e.to_dict() for e in session.events]
        }

    @staticmethod
    def delete_session(session_id: int) -> bool:
        session = db.session.get(LiveSession, session_id)
        if session is None:
            return False
        db.session.delete(session)
        db.session.commit()
        return True
