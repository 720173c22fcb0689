from flask import Blueprint, request
from flask_login import login_required, current_user
from crowdfund.errors import AppError, ErrorCode
from crowdfund.middleware import bearer_token
from crowdfund.serializers import user_to_dict
from crowdfund.services import user_service
from crowdfund.utils import get_json_body, success
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('auth', __name__)


def _login_payload(token, user):
    return {'token': token, 'user': user_to_dict(user)}


@bp.route('/api/register', methods=['POST'])
def register():
    data = get_json_body()
    user = user_service.register(
        data.get('username'),
        data.get('email'),
        data.get('password'),
    )
    return success(
        user_to_dict(user),
        'registration successful, please verify your email',
        201)


@bp.route('/api/login', methods=['POST'])
def login():
    data = get_json_body()
    token, user = user_service.login(
        data.get('username') or data.get('email'),
        data.get('password'),
    )
    return success(_login_payload(token, user), 'login successful')


@bp.route('/api/admin/login', methods=['POST'])
def admin_login():
    data = get_json_body()
    token, user = user_service.login(
        data.get('username') or data.get('email'),
        data.get('password'),
        require_admin=True,
    )
    return success(_login_payload(token, user), 'login successful')


@bp.route('/api/logout', methods=['POST'])
@login_required
def logout():
    user_service.logout(current_user, bearer_token())
    return success(None, 'logged out')


@bp.route('/api/refresh-token', methods=['POST'])
def refresh_token():
    # Expired tokens are accepted here, so the header may carry one.
    token = bearer_token() or get_json_body().get('token')
    if not token:
        raise AppError(ErrorCode.UNAUTHORIZED, 'token is required')
    new_token = user_service.refresh_token(token)
    return success({'token': new_token}, 'token refreshed')


@bp.route('/api/verify-email', methods=['GET'])
def verify_email():
    token = request.args.get('token')
    if not token:
        raise AppError(ErrorCode.VALIDATION, 'token is required')
    user = user_service.verify_email(token)
    return success(user_to_dict(user), 'email verified')


@bp.route('/api/request-password-reset', methods=['POST'])
def request_password_reset():
    data = get_json_body()
    user_service.request_password_reset(data.get('email'))
    return success(
        None,
        'if the address is registered, a reset link has been sent')


@bp.route('/api/reset-password', methods=['POST'])
def reset_password():
    data = get_json_body()
    token = data.get('token')
    if not token:
        raise AppError(ErrorCode.VALIDATION, 'token is required')
    user_service.reset_password(token, data.get('password'))
    return success(None, 'password has been reset')
