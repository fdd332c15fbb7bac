"""
Operation Results
Explicit success/failure outcomes returned by the scheduling and live-session core
"""
from typing import Any, Dict, Optional


class ErrorKind:
    """Caller-facing failure categories"""
    VALIDATION = 'validation'
    CONFLICT = 'conflict'
    UNREACHABLE = 'unreachable'
    NOT_FOUND = 'not_found'
    FORBIDDEN = 'forbidden'
    STALE_SESSION = 'stale_session'
    PERSISTENCE = 'persistence'


# HTTP status used by the route layer for each kind
HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UNREACHABLE: 503,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.STALE_SESSION: 410,
    ErrorKind.PERSISTENCE: 500,
}


class OperationResult:
    """Outcome of a core operation: either a value or a (kind, message) pair"""

    def __init__(self, ok: bool, value: Any = None, kind: Optional[str] = None,
                 message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.ok = ok
        self.value = value
        self.kind = kind
        self.message = message
        self.details = details or {}

    @classmethod
    def success(cls, value: Any = None) -> 'OperationResult':
        return cls(True, value=value)

    @classmethod
    def failure(cls, kind: str, message: str, **details) -> 'OperationResult':
        return cls(False, kind=kind, message=message, details=details)

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        return HTTP_STATUS.get(self.kind, 400)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {'success': True}
        return {
            'success': False,
            'error': {
                'kind': self.kind,
                'message': self.message,
                'details': self.details
            }
        }

    def __bool__(self):
        return self.ok

    def __repr__(self):
        if self.ok:
            return '<OperationResult ok>'
        return f'<OperationResult {self.kind}: {self.message}>'
