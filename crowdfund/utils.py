from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from flask import jsonify, request, current_app
from sqlalchemy.exc import OperationalError
from crowdfund.extensions import db
from crowdfund.errors import AppError, ErrorCode
import logging
import re
import time

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
SPECIAL_CHARS = set('!@#$%^&*()_+-=[]{}|;:,.<>?/~`\'"\\')
MAX_AMOUNT = Decimal('9999999999.99')


def success(data=None, message='success', status=200):
    return jsonify({'code': 0, 'data': data, 'message': message}), status


def get_json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise AppError(ErrorCode.BAD_REQUEST, 'request body must be an object')
    return data


def get_page_args():
    page = request.args.get('page', 1, type=int) or 1
    per_page = request.args.get(
        'per_page',
        current_app.config.get('ITEMS_PER_PAGE', 20),
        type=int)
    max_per_page = current_app.config.get('MAX_PER_PAGE', 100)
    return max(page, 1), min(max(per_page or 1, 1), max_per_page)


def paginate_query(query, page=1, per_page=20):
    pagination = query.paginate(
        page=page,
        per_page=per_page,
        error_out=False
    )
    return {
        'items': pagination.items,
        'page': pagination.page,
        'pages': pagination.pages,
        'per_page': pagination.per_page,
        'total': pagination.total,
        'has_next': pagination.has_next,
        'has_prev': pagination.has_prev
    }


def page_payload(result, serializer):
    """Replace model instances in a paginate_query result by their dicts."""
    payload = dict(result)
    payload['items'] = [serializer(item) for item in result['items']]
    return payload


def is_password_strong(password) -> bool:
    if not password or len(password) < 8:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in SPECIAL_CHARS for c in password)
    return has_upper and has_lower and has_digit and has_special


def is_valid_email(email) -> bool:
    return bool(email) and bool(EMAIL_RE.match(email))


def parse_amount(value, field='amount'):
    if value is None or value == '' or isinstance(value, bool):
        raise AppError(ErrorCode.VALIDATION, f'{field} is required')
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise AppError(ErrorCode.VALIDATION, f'{field} must be a number')
    if not amount.is_finite():
        raise AppError(ErrorCode.VALIDATION, f'{field} must be a number')
    try:
        amount = amount.quantize(Decimal('0.01'))
    except InvalidOperation:
        raise AppError(ErrorCode.VALIDATION, f'{field} is out of range')
    # Numeric(12, 2) columns
    if abs(amount) > MAX_AMOUNT:
        raise AppError(
            ErrorCode.VALIDATION, f'{field} cannot exceed {MAX_AMOUNT}')
    return amount


def parse_datetime(value, field='date'):
    if isinstance(value, datetime):
        return value
    if not value:
        raise AppError(ErrorCode.VALIDATION, f'{field} is required')
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise AppError(
            ErrorCode.VALIDATION,
            f'{field} must be an ISO 8601 date')
    # Stored as naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def retry(fn, attempts=3, delay=0.1, retry_on=(OperationalError,)):
    """Call ``fn`` until it succeeds or ``attempts`` run out.

    Only for idempotent writes: the session is rolled back between tries,
    so ``fn`` must rebuild everything it adds.
    """
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            last_error = e
            db.session.rollback()
            logger.warning(
                "Attempt %s/%s failed: %s", attempt, attempts, e)
            if attempt < attempts:
                time.sleep(delay * attempt)
    raise AppError(
        ErrorCode.DATABASE,
        f'operation failed after {attempts} attempts',
        last_error)
