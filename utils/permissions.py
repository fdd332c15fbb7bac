"""
Permission Decorators and Response Helpers
Capability gating for JSON routes and OperationResult-to-response translation
"""
from functools import wraps
from flask import jsonify
from flask_login import current_user

from utils.results import ErrorKind, OperationResult


def capability_required(capability):
    """
    Decorator to restrict a route to owners whose tier grants a capability
    Usage: @capability_required('daypart')
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return error_response(OperationResult.failure(ErrorKind.FORBIDDEN, 'Authentication required'), 401)

            if not current_user.has_capability(capability):
                return error_response(OperationResult.failure(
                    ErrorKind.FORBIDDEN,
                    'Your subscription tier does not include this feature',
                    capability=capability,
                    tier=current_user.subscription_tier.value
                ))

            return f(*args, **kwargs)
        return decorated_function
    return decorator


def error_response(result: OperationResult, status=None):
    """JSON error body with the status code mapped from the error kind"""
    return jsonify(result.to_dict()), status or result.http_status
