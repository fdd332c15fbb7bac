"""
Push Transport
Outbound message emission to live sessions. Delivery is fire-and-forget:
a push to a disconnected session is dropped by the transport layer.
"""
import logging

logger = logging.getLogger(__name__)


class PushTransport:
    """Capability interface: push(session_id, event, payload) -> bool"""

    def push(self, session_id, event, payload):
        raise NotImplementedError


class SocketIOTransport(PushTransport):
    """Pushes to a single Socket.IO session id"""

    def __init__(self, socketio, namespace='/'):
        self.socketio = socketio
        self.namespace = namespace

    def push(self, session_id, event, payload):
        try:
            self.socketio.emit(event, payload, to=session_id, namespace=self.namespace)
            return True
        except Exception as e:
            logger.error(f"Failed to emit '{event}' to {session_id}: {e}")
            return False
