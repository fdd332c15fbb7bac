"""
Connection Registry
Process-local map from a device's serial to its current live transport session.
Not durable: after a restart devices must re-register before they are reachable.
"""
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Set
import logging

logger = logging.getLogger(__name__)


class ConnectedDevice:
    """A registered device and the transport session it is reachable on"""

    def __init__(self, serial, session_id, user_id, device_id, display_name, timezone_name='UTC',
                 connected_at=None):
        self.serial = serial
        self.session_id = session_id
        self.user_id = user_id
        self.device_id = device_id
        self.display_name = display_name
        self.timezone = timezone_name or 'UTC'
        self.connected_at = connected_at or datetime.now(timezone.utc).replace(tzinfo=None)

    def to_dict(self):
        return {
            'serial': self.serial,
            'session_id': self.session_id,
            'user_id': self.user_id,
            'device_id': self.device_id,
            'display_name': self.display_name,
            'timezone': self.timezone,
            'connected_at': self.connected_at.isoformat()
        }

    def __repr__(self):
        return f'<ConnectedDevice {self.serial} sid={self.session_id}>'


class ConnectionRegistry:
    """
    Single-writer, any-reader registry of live devices

    Writers are the registration and disconnect handlers. Every access goes
    through a lock because Socket.IO handlers and the scheduler run on
    different threads.
    """

    def __init__(self):
        self._devices: Dict[str, ConnectedDevice] = {}
        self._lock = Lock()

    def register(self, serial, session_id, user_id, device_id, display_name, timezone_name='UTC'):
        """
        Upsert the live entry for a serial, superseding any previous session

        Returns:
            (entry, superseded_entry_or_None)
        """
        entry = ConnectedDevice(serial, session_id, user_id, device_id, display_name, timezone_name)
        with self._lock:
            previous = self._devices.get(serial)
            self._devices[serial] = entry

        if previous is not None and previous.session_id != session_id:
            logger.info(f"Device {serial} re-registered: session {previous.session_id} superseded by {session_id}")
        else:
            previous = None
            logger.info(f"Device registered: {serial} (owner {user_id}, session {session_id})")

        return entry, previous

    def lookup_by_serial(self, serial) -> Optional[ConnectedDevice]:
        with self._lock:
            return self._devices.get(serial)

    def lookup_by_session(self, session_id) -> Optional[ConnectedDevice]:
        """Reverse scan for the entry currently bound to a transport session"""
        with self._lock:
            for entry in self._devices.values():
                if entry.session_id == session_id:
                    return entry
        return None

    def remove_session(self, session_id) -> Optional[ConnectedDevice]:
        """
        Drop the entry bound to a disconnected session

        A superseded session no longer owns any entry, so its late disconnect
        leaves the newer registration untouched.
        """
        with self._lock:
            for serial, entry in list(self._devices.items()):
                if entry.session_id == session_id:
                    del self._devices[serial]
                    logger.info(f"Device disconnected: {serial} (session {session_id})")
                    return entry
        return None

    def all_owned_by(self, user_id) -> List[ConnectedDevice]:
        with self._lock:
            return [entry for entry in self._devices.values() if entry.user_id == user_id]

    def owner_ids(self) -> Set[int]:
        with self._lock:
            return {entry.user_id for entry in self._devices.values()}

    def all(self) -> List[ConnectedDevice]:
        with self._lock:
            return list(self._devices.values())

    def clear(self):
        with self._lock:
            self._devices.clear()

    def __len__(self):
        with self._lock:
            return len(self._devices)

    def __contains__(self, serial):
        with self._lock:
            return serial in self._devices
