from crowdfund.extensions import db
from crowdfund.models import AuditLog
from flask import has_request_context, request
from sqlalchemy.exc import SQLAlchemyError
import logging
import json

logger = logging.getLogger(__name__)
major_logger = logging.getLogger('major_events')
if not major_logger.handlers:
    handler = logging.FileHandler('major_events.log')
    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s')
    handler.setFormatter(formatter)
    major_logger.addHandler(handler)
    major_logger.setLevel(logging.INFO)
    major_logger.propagate = False

# Money and account events also go to major_events.log
MAJOR_ACTION_PREFIXES = (
    'LOGIN',
    'LOGOUT',
    'REGISTER',
    'PAYMENT_',
    'ORDER_',
    'REFUND_',
    'PROJECT_STATUS',
    'PROJECT_FAILED',
    'USER_ROLE',
    'ACCOUNT_DELETE',
)


def _should_log_major(action: str) -> bool:
    if not action:
        return False
    return action.startswith(MAJOR_ACTION_PREFIXES)


def actor_role_of(user):
    if user is None or not getattr(user, 'is_authenticated', False):
        return 'ANONYMOUS'
    return user.role.value.upper()


def log_audit(
        actor_id=None,
        actor_role='ANONYMOUS',
        action='',
        target_type=None,
        target_id=None,
        payload=None,
        ip=None,
        user_agent=None,
        commit=True):
    """Record an audit entry.

    With ``commit=False`` the row joins the caller's transaction instead of
    being committed on its own.
    """
    path = None
    method = None
    if has_request_context():
        ip = ip or request.remote_addr
        user_agent = user_agent or request.headers.get('User-Agent')
        path = request.path
        method = request.method

    audit = AuditLog(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        target_type=target_type,
        target_id=target_id,
        ip=ip,
        user_agent=user_agent[:500] if user_agent else None
    )
    if payload:
        audit.set_payload(payload)

    db.session.add(audit)
    if commit:
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to log audit: %s", e, exc_info=True)
            db.session.rollback()
            return None

    payload_brief = None
    if payload is not None:
        payload_brief = json.dumps(
            payload, ensure_ascii=False, default=str, separators=(',', ':'))
        if len(payload_brief) > 600:
            payload_brief = payload_brief[:600] + '...'

    logger.info(
        "AUDIT action=%s actor_role=%s actor_id=%s target_type=%s "
        "target_id=%s method=%s path=%s payload=%s",
        action,
        actor_role,
        actor_id,
        target_type,
        target_id,
        method,
        path,
        payload_brief,
    )

    if _should_log_major(action):
        major_logger.info(
            "action=%s actor_role=%s actor_id=%s target_type=%s "
            "target_id=%s method=%s path=%s payload=%s",
            action,
            actor_role,
            actor_id,
            target_type,
            target_id,
            method,
            path,
            payload_brief,
        )
    return audit
