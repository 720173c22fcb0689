"""Application error codes and the JSON error envelope.

Services raise :class:`AppError`; the handlers registered here turn it into
``{"code", "message", "error"}`` with an HTTP status taken from
``STATUS_MAP``. Anything else that escapes a view is logged with its stack
trace and answered with a generic internal error.
"""
from datetime import datetime
from enum import IntEnum
from threading import Lock
from flask import jsonify, request, current_app
from werkzeug.exceptions import HTTPException
from crowdfund.extensions import db
import logging

logger = logging.getLogger(__name__)


class ErrorCode(IntEnum):
    # System (1000-1999)
    INTERNAL = 1000
    DATABASE = 1001
    CACHE = 1002
    TIMEOUT = 1003

    # Authentication (2000-2999)
    UNAUTHORIZED = 2000
    FORBIDDEN = 2001
    INVALID_TOKEN = 2002
    TOKEN_EXPIRED = 2003
    INVALID_CREDENTIALS = 2004

    # Request (3000-3999)
    BAD_REQUEST = 3000
    VALIDATION = 3001
    NOT_FOUND = 3002
    ALREADY_EXISTS = 3003
    CONFLICT = 3004

    # Business (4000-4999)
    USER_NOT_FOUND = 4000
    USER_EXISTS = 4001
    WEAK_PASSWORD = 4002
    PROJECT_NOT_FOUND = 4003
    INSUFFICIENT_FUNDS = 4004
    PROJECT_ENDED = 4005


STATUS_MAP = {
    ErrorCode.INTERNAL: 500,
    ErrorCode.DATABASE: 500,
    ErrorCode.CACHE: 500,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.TOKEN_EXPIRED: 401,
    ErrorCode.INVALID_CREDENTIALS: 401,
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.VALIDATION: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ALREADY_EXISTS: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.USER_EXISTS: 409,
    ErrorCode.WEAK_PASSWORD: 400,
    ErrorCode.PROJECT_NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_FUNDS: 400,
    ErrorCode.PROJECT_ENDED: 400,
}

# Werkzeug status -> error code for aborts raised outside services.
HTTP_CODE_MAP = {
    400: ErrorCode.BAD_REQUEST,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    504: ErrorCode.TIMEOUT,
}


class AppError(Exception):

    def __init__(self, code, message, err=None):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.err = err

    @property
    def status(self):
        return STATUS_MAP.get(self.code, 500)

    def __str__(self):
        if self.err is not None:
            return f'[{int(self.code)}] {self.message}: {self.err}'
        return f'[{int(self.code)}] {self.message}'


class ErrorMonitor:
    """Counts error responses by code and by path."""

    def __init__(self):
        self._lock = Lock()
        self.total_errors = 0
        self.by_code = {}
        self.by_path = {}
        self.last_error_at = None

    def record(self, path, code):
        with self._lock:
            self.total_errors += 1
            self.by_code[code] = self.by_code.get(code, 0) + 1
            self.by_path[path] = self.by_path.get(path, 0) + 1
            self.last_error_at = datetime.utcnow()

    def snapshot(self):
        with self._lock:
            return {
                'total_errors': self.total_errors,
                'errors_by_code': {
                    str(k): v for k, v in self.by_code.items()},
                'errors_by_path': dict(self.by_path),
                'last_error_at': (
                    self.last_error_at.isoformat()
                    if self.last_error_at else None),
            }


def error_response(code, message, err=None, status=None):
    body = {'code': int(code), 'message': message, 'error': None}
    if err is not None and (current_app.debug or current_app.testing):
        body['error'] = str(err)
    return jsonify(body), status or STATUS_MAP.get(code, 500)


def register_error_handlers(app):
    monitor = ErrorMonitor()
    app.extensions['error_monitor'] = monitor

    @app.errorhandler(AppError)
    def handle_app_error(e):
        db.session.rollback()
        if e.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, e)
        else:
            logger.info(
                "%s %s rejected: %s", request.method, request.path, e)
        return error_response(e.code, e.message, e.err, e.status)

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        code = HTTP_CODE_MAP.get(e.code)
        if code is None:
            code = ErrorCode.BAD_REQUEST if e.code < 500 else (
                ErrorCode.INTERNAL)
        return error_response(code, e.description or e.name, status=e.code)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception(
            "Unhandled error on %s %s", request.method, request.path)
        db.session.rollback()
        return error_response(
            ErrorCode.INTERNAL, 'internal server error', e, 500)

    @app.after_request
    def count_errors(response):
        if response.status_code >= 400:
            code = None
            if response.is_json:
                body = response.get_json(silent=True) or {}
                code = body.get('code')
            # Keyed by route pattern so arbitrary 404 paths share one entry.
            rule = request.url_rule.rule if request.url_rule else '<unmatched>'
            monitor.record(rule, code or response.status_code)
        return response

    return monitor
