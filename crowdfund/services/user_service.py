from datetime import datetime
from flask import current_app
from sqlalchemy import or_
from crowdfund.extensions import db
from crowdfund.errors import AppError, ErrorCode
from crowdfund.models import User, UserAddress, UserRole
from crowdfund.services.audit_service import log_audit
from crowdfund.services.storage_service import save_image
from crowdfund.utils import is_password_strong, is_valid_email
import logging

logger = logging.getLogger(__name__)

WEAK_PASSWORD_MESSAGE = (
    'password must be at least 8 characters and contain upper and lower '
    'case letters, a digit and a special character'
)

ADDRESS_FIELDS = (
    'receiver_name',
    'phone',
    'province',
    'city',
    'district',
    'detail_address',
)


def token_service():
    return current_app.extensions['token_service']


def email_service():
    return current_app.extensions['email_service']


def storage():
    return current_app.extensions['storage']


def get_active_user(user_id):
    user = db.session.get(User, user_id)
    if user is None or user.deleted_at is not None:
        return None
    return user


def register(username, email, password):
    username = (username or '').strip()
    email = (email or '').strip().lower()

    if not username or not email or not password:
        raise AppError(
            ErrorCode.VALIDATION,
            'username, email and password are required')
    if len(username) > 50:
        raise AppError(ErrorCode.VALIDATION, 'username is too long')
    if not is_valid_email(email):
        raise AppError(ErrorCode.VALIDATION, 'invalid email address')
    if not is_password_strong(password):
        raise AppError(ErrorCode.WEAK_PASSWORD, WEAK_PASSWORD_MESSAGE)

    if User.query.filter_by(username=username).first():
        raise AppError(ErrorCode.USER_EXISTS, 'username already taken')
    if User.query.filter_by(email=email).first():
        raise AppError(ErrorCode.ALREADY_EXISTS, 'email already registered')

    user = User(username=username, email=email, role=UserRole.USER)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()

    log_audit(
        actor_id=user.id,
        actor_role='USER',
        action='REGISTER',
        target_type='USER',
        target_id=user.id,
        payload={'username': username}
    )

    # Delivery failures never undo the registration.
    email_service().send_verification(user.email, user.username)
    logger.info("User registered: %s (id=%s)", username, user.id)
    return user


def authenticate(login, password):
    login = (login or '').strip()
    if not login or not password:
        raise AppError(
            ErrorCode.VALIDATION,
            'username and password are required')

    user = User.query.filter(
        or_(User.username == login, User.email == login.lower())
    ).first()

    if user is None or user.deleted_at is not None or (
            not user.check_password(password)):
        log_audit(
            actor_id=None,
            actor_role='ANONYMOUS',
            action='LOGIN_FAILED',
            target_type='USER',
            target_id=user.id if user else None,
            payload={
                'reason': 'invalid_credentials' if user else 'user_not_found'}
        )
        raise AppError(
            ErrorCode.INVALID_CREDENTIALS,
            'invalid username or password')
    return user


def login(login_name, password, require_admin=False):
    user = authenticate(login_name, password)
    if require_admin and not user.is_admin:
        logger.warning("Non-admin user %s tried admin login", user.id)
        raise AppError(ErrorCode.FORBIDDEN, 'admin privileges required')

    user.last_login_at = datetime.utcnow()
    db.session.commit()
    token = token_service().issue(user.id)

    log_audit(
        actor_id=user.id,
        actor_role=user.role.value.upper(),
        action='LOGIN_ADMIN' if require_admin else 'LOGIN_SUCCESS',
        target_type='USER',
        target_id=user.id,
        payload={'event': 'login_success'}
    )
    return token, user


def logout(user, presented_token):
    token_service().revoke(presented_token)
    log_audit(
        actor_id=user.id,
        actor_role=user.role.value.upper(),
        action='LOGOUT',
        target_type='USER',
        target_id=user.id
    )


def refresh_token(old_token):
    tokens = token_service()
    new_token = tokens.refresh(old_token)
    user_id = tokens.validate(new_token)
    if get_active_user(user_id) is None:
        raise AppError(ErrorCode.USER_NOT_FOUND, 'user not found')
    # The refreshed token replaces the old one.
    tokens.revoke(old_token)
    return new_token


def verify_email(token):
    email = token_service().read_purpose_token(token, 'verify_email')
    user = User.query.filter_by(email=email).first()
    if user is None or user.deleted_at is not None:
        raise AppError(ErrorCode.USER_NOT_FOUND, 'user not found')
    if not user.is_verified:
        user.is_verified = True
        db.session.commit()
        logger.info("Email verified for user %s", user.id)
    return user


def request_password_reset(email):
    email = (email or '').strip().lower()
    if not is_valid_email(email):
        raise AppError(ErrorCode.VALIDATION, 'invalid email address')
    user = User.query.filter_by(email=email).first()
    if user is None or user.deleted_at is not None:
        # Same answer for unknown addresses.
        logger.info("Password reset requested for unknown email")
        return
    email_service().send_password_reset(user.email)


def reset_password(token, new_password):
    email = token_service().read_purpose_token(token, 'reset_password')
    if not is_password_strong(new_password):
        raise AppError(ErrorCode.WEAK_PASSWORD, WEAK_PASSWORD_MESSAGE)
    user = User.query.filter_by(email=email).first()
    if user is None or user.deleted_at is not None:
        raise AppError(ErrorCode.USER_NOT_FOUND, 'user not found')
    user.set_password(new_password)
    db.session.commit()
    log_audit(
        actor_id=user.id,
        actor_role=user.role.value.upper(),
        action='PASSWORD_RESET',
        target_type='USER',
        target_id=user.id
    )
    return user


def update_profile(user, data):
    if 'username' in data:
        username = (data.get('username') or '').strip()
        if not username:
            raise AppError(ErrorCode.VALIDATION, 'username cannot be empty')
        if username != user.username and User.query.filter_by(
                username=username).first():
            raise AppError(ErrorCode.USER_EXISTS, 'username already taken')
        user.username = username

    if 'email' in data:
        email = (data.get('email') or '').strip().lower()
        if not is_valid_email(email):
            raise AppError(ErrorCode.VALIDATION, 'invalid email address')
        if email != user.email:
            if User.query.filter_by(email=email).first():
                raise AppError(
                    ErrorCode.ALREADY_EXISTS,
                    'email already registered')
            user.email = email
            user.is_verified = False
            email_service().send_verification(user.email, user.username)

    if 'bio' in data:
        user.bio = data.get('bio')

    if 'password' in data:
        current_password = data.get('current_password') or ''
        if not user.check_password(current_password):
            raise AppError(
                ErrorCode.INVALID_CREDENTIALS,
                'current password is incorrect')
        if not is_password_strong(data.get('password')):
            raise AppError(ErrorCode.WEAK_PASSWORD, WEAK_PASSWORD_MESSAGE)
        user.set_password(data['password'])

    db.session.commit()
    return user


def upload_avatar(user, file):
    user.avatar_url = save_image(storage(), file, 'avatars', user.id)
    db.session.commit()
    return user


def delete_account(user):
    user.deleted_at = datetime.utcnow()
    db.session.commit()
    log_audit(
        actor_id=user.id,
        actor_role=user.role.value.upper(),
        action='ACCOUNT_DELETE',
        target_type='USER',
        target_id=user.id
    )


# Addresses

def list_addresses(user_id):
    return UserAddress.query.filter_by(user_id=user_id).order_by(
        UserAddress.is_default.desc(),
        UserAddress.created_at.desc()
    ).all()


def get_address(user_id, address_id):
    address = db.session.get(UserAddress, address_id)
    if address is None or address.user_id != user_id:
        raise AppError(ErrorCode.NOT_FOUND, 'address not found')
    return address


def _clean_address_data(data, partial=False):
    values = {}
    for field in ADDRESS_FIELDS:
        if field not in data and partial:
            continue
        value = (data.get(field) or '').strip()
        if not value:
            raise AppError(ErrorCode.VALIDATION, f'{field} cannot be empty')
        values[field] = value
    return values


def _clear_default(user_id, keep_id=None):
    query = UserAddress.query.filter(
        UserAddress.user_id == user_id,
        UserAddress.is_default.is_(True))
    if keep_id is not None:
        query = query.filter(UserAddress.id != keep_id)
    query.update({UserAddress.is_default: False}, synchronize_session=False)


def create_address(user_id, data):
    values = _clean_address_data(data)
    has_any = UserAddress.query.filter_by(user_id=user_id).count() > 0
    make_default = bool(data.get('is_default')) or not has_any

    if make_default:
        _clear_default(user_id)
    address = UserAddress(user_id=user_id, is_default=make_default, **values)
    db.session.add(address)
    db.session.commit()
    return address


def update_address(user_id, address_id, data):
    address = get_address(user_id, address_id)
    for field, value in _clean_address_data(data, partial=True).items():
        setattr(address, field, value)
    if data.get('is_default') and not address.is_default:
        _clear_default(user_id, keep_id=address.id)
        address.is_default = True
    db.session.commit()
    return address


def delete_address(user_id, address_id):
    address = get_address(user_id, address_id)
    was_default = address.is_default
    db.session.delete(address)
    db.session.flush()
    if was_default:
        replacement = UserAddress.query.filter_by(user_id=user_id).order_by(
            UserAddress.created_at.desc(), UserAddress.id.desc()).first()
        if replacement:
            replacement.is_default = True
    db.session.commit()


def set_default_address(user_id, address_id):
    address = get_address(user_id, address_id)
    # Clear and set commit together.
    _clear_default(user_id, keep_id=address.id)
    address.is_default = True
    db.session.commit()
    return address
