from flask import current_app, g, request
from flask_login import current_user
from functools import wraps
from crowdfund.errors import AppError, ErrorCode
import time
import logging

logger = logging.getLogger(__name__)

# Exact paths that never require login
LOGIN_WHITELIST = [
    '/api/register',
    '/api/login',
    '/api/admin/login',
    '/api/request-password-reset',
    '/api/reset-password',
    '/api/verify-email',
    '/api/refresh-token',
]

# Prefixes that anyone may read with GET
PUBLIC_BROWSE_PREFIXES = (
    '/api/projects',
    '/api/project-categories',
    '/api/project-tags',
    '/api/posts',
    '/api/comments',
)


def bearer_token():
    header = request.headers.get('Authorization', '')
    if header.lower().startswith('bearer '):
        return header[7:].strip() or None
    return None


def is_public_browse_path(path: str) -> bool:
    if path.startswith('/api/users/') and path.endswith('/posts'):
        return True
    return path.startswith(PUBLIC_BROWSE_PREFIXES)


def load_user_from_request(req):
    """Flask-Login request loader: bearer token -> active user."""
    from crowdfund.services.user_service import get_active_user

    g.auth_error = None
    token = bearer_token()
    if not token:
        return None
    try:
        user_id = current_app.extensions['token_service'].validate(token)
    except AppError as e:
        g.auth_error = e
        return None
    user = get_active_user(user_id)
    if user is None:
        g.auth_error = AppError(ErrorCode.INVALID_TOKEN, 'user no longer exists')
    return user


def setup_auth_middleware(app):

    @app.before_request
    def require_login():
        path = request.path
        method = request.method.upper()

        if method == 'OPTIONS' or not path.startswith('/api/'):
            return None

        # Authentication runs eagerly so its deadline covers token decoding
        # and the user lookup.
        started = time.monotonic()
        authenticated = current_user.is_authenticated
        elapsed = time.monotonic() - started
        if elapsed > app.config['AUTH_TIMEOUT_SECONDS']:
            logger.error(
                "Authentication for %s took %.2fs, aborting", path, elapsed)
            raise AppError(ErrorCode.TIMEOUT, 'authentication timed out')

        if path in LOGIN_WHITELIST:
            return None
        if method in ('GET', 'HEAD') and is_public_browse_path(path):
            return None

        if not authenticated:
            auth_error = g.get('auth_error')
            if auth_error is not None:
                raise auth_error
            raise AppError(ErrorCode.UNAUTHORIZED, 'login required')
        return None


def role_required(*allowed_roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                raise AppError(ErrorCode.UNAUTHORIZED, 'login required')

            if current_user.role.value not in allowed_roles:
                logger.warning(
                    "User %s attempted to access roles %s, current role: %s",
                    current_user.id,
                    allowed_roles,
                    current_user.role.value,
                )
                raise AppError(
                    ErrorCode.FORBIDDEN,
                    'insufficient permissions')

            return f(*args, **kwargs)
        return decorated_function
    return decorator


admin_required = role_required('admin')
