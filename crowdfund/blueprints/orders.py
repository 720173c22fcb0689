from flask import Blueprint
from flask_login import login_required, current_user
from crowdfund.errors import AppError, ErrorCode
from crowdfund.serializers import order_to_dict, refund_request_to_dict
from crowdfund.services import payment_service
from crowdfund.utils import (
    get_json_body,
    get_page_args,
    page_payload,
    paginate_query,
    success,
)
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('orders', __name__)


@bp.route('/api/payments/projects/<int:project_id>', methods=['POST'])
@login_required
def create_payment(project_id):
    data = get_json_body()
    order = payment_service.process_payment(
        current_user.id,
        project_id,
        data.get('amount'),
        data.get('address_id'),
    )
    return success(order_to_dict(order), 'payment created', 201)


@bp.route('/api/orders/<int:order_id>/pay', methods=['POST'])
@login_required
def pay_order(order_id):
    order = payment_service.confirm_payment(order_id, current_user.id)
    return success(order_to_dict(order), 'payment confirmed')


@bp.route('/api/orders', methods=['GET'])
@login_required
def list_orders():
    page, per_page = get_page_args()
    result = paginate_query(
        payment_service.orders_for_user(current_user.id), page, per_page)
    return success(page_payload(result, order_to_dict))


@bp.route('/api/orders/<int:order_id>', methods=['GET'])
@login_required
def get_order(order_id):
    order = payment_service.get_order(order_id, current_user.id)
    if order is None:
        raise AppError(ErrorCode.NOT_FOUND, 'order not found')
    return success(order_to_dict(order))


@bp.route('/api/orders/<int:order_id>/refund', methods=['POST'])
@login_required
def request_refund(order_id):
    refund = payment_service.request_refund(
        order_id, current_user.id, get_json_body().get('reason'))
    return success(refund_request_to_dict(refund), 'refund requested', 201)


@bp.route('/api/orders/<int:order_id>/refund/failed', methods=['POST'])
@login_required
def request_refund_for_failed_project(order_id):
    refund = payment_service.request_refund_for_failed_project(
        order_id, current_user.id)
    return success(refund_request_to_dict(refund), 'refund requested', 201)


@bp.route('/api/refund-requests', methods=['GET'])
@login_required
def list_refund_requests():
    refunds = payment_service.refund_requests_for_user(current_user.id)
    return success([refund_request_to_dict(r) for r in refunds])
