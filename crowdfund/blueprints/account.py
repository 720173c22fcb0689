from flask import Blueprint, request
from flask_login import login_required, current_user
from crowdfund.serializers import address_to_dict, user_to_dict
from crowdfund.services import user_service
from crowdfund.utils import get_json_body, success


bp = Blueprint('account', __name__)


@bp.route('/api/profile', methods=['GET'])
@login_required
def get_profile():
    return success(user_to_dict(current_user))


@bp.route('/api/profile', methods=['PUT'])
@login_required
def update_profile():
    user = user_service.update_profile(current_user, get_json_body())
    return success(user_to_dict(user), 'profile updated')


@bp.route('/api/profile', methods=['DELETE'])
@login_required
def delete_account():
    user_service.delete_account(current_user)
    return success(None, 'account deleted')


@bp.route('/api/profile/avatar', methods=['POST'])
@login_required
def upload_avatar():
    user = user_service.upload_avatar(current_user, request.files.get('avatar'))
    return success(user_to_dict(user), 'avatar updated')


# Shipping addresses

@bp.route('/api/addresses', methods=['GET'])
@login_required
def list_addresses():
    addresses = user_service.list_addresses(current_user.id)
    return success([address_to_dict(a) for a in addresses])


@bp.route('/api/addresses', methods=['POST'])
@login_required
def create_address():
    address = user_service.create_address(current_user.id, get_json_body())
    return success(address_to_dict(address), 'address created', 201)


@bp.route('/api/addresses/<int:address_id>', methods=['PUT'])
@login_required
def update_address(address_id):
    address = user_service.update_address(
        current_user.id, address_id, get_json_body())
    return success(address_to_dict(address), 'address updated')


@bp.route('/api/addresses/<int:address_id>', methods=['DELETE'])
@login_required
def delete_address(address_id):
    user_service.delete_address(current_user.id, address_id)
    return success(None, 'address deleted')


@bp.route('/api/addresses/<int:address_id>/default', methods=['PUT'])
@login_required
def set_default_address(address_id):
    address = user_service.set_default_address(current_user.id, address_id)
    return success(address_to_dict(address), 'default address updated')
