"""
Access decorators for internal (machine-to-machine) endpoints.
"""
import hmac
from functools import wraps

from flask import current_app, request

from app.exceptions import UnauthorizedError


def _bearer_token():
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    return header[len('Bearer '):].strip() or None


def require_internal_key(f):
    """
    Require ``Authorization: Bearer <INTERNAL_API_KEY>``.

    Comparison is constant-time. With no key configured every request is
    rejected.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get('INTERNAL_API_KEY')
        token = _bearer_token()

        if not expected or not token or not hmac.compare_digest(token.encode(), expected.encode()):
            current_app.logger.warning(f"Rejected internal request to {request.path} from {request.remote_addr}")
            raise UnauthorizedError()

        return f(*args, **kwargs)

    return decorated_function
