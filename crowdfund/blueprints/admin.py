from flask import Blueprint, request
from flask_login import login_required, current_user
from crowdfund.errors import AppError, ErrorCode
from crowdfund.middleware import role_required
from crowdfund.serializers import (
    audit_to_dict,
    order_to_dict,
    pledger_to_dict,
    project_detail,
    project_summary,
    refund_request_to_dict,
    shipment_to_dict,
    user_admin_dict,
)
from crowdfund.services import admin_service, payment_service, project_service
from crowdfund.services.refund_service import (
    auto_refund_for_failed_project,
    list_refund_requests,
)
from crowdfund.utils import (
    get_json_body,
    get_page_args,
    page_payload,
    paginate_query,
    parse_bool,
    success,
)
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('admin', __name__)


def _required_bool(data, field):
    if field not in data:
        raise AppError(ErrorCode.VALIDATION, f'{field} is required')
    return parse_bool(data.get(field))


# Projects

@bp.route('/api/admin/projects', methods=['GET'])
@login_required
@role_required('admin')
def list_projects():
    page, per_page = get_page_args()
    query = admin_service.list_projects(
        request.args.get('status'), request.args.get('keyword'))
    result = paginate_query(query, page, per_page)
    return success(page_payload(result, project_summary))


@bp.route('/api/admin/projects/<int:project_id>', methods=['GET'])
@login_required
@role_required('admin')
def get_project(project_id):
    project = project_service.get_project_or_404(project_id)
    return success(project_detail(project))


@bp.route('/api/admin/projects/<int:project_id>', methods=['DELETE'])
@login_required
@role_required('admin')
def delete_project(project_id):
    project_service.delete_project(project_id, current_user)
    return success(None, 'project deleted')


@bp.route('/api/admin/projects/<int:project_id>/review', methods=['POST'])
@login_required
@role_required('admin')
def review_project(project_id):
    data = get_json_body()
    project = project_service.review_project(
        project_id,
        _required_bool(data, 'approved'),
        data.get('comment'),
        current_user)
    return success(project_detail(project), 'project reviewed')


@bp.route('/api/admin/projects/<int:project_id>/status', methods=['PUT'])
@login_required
@role_required('admin')
def update_project_status(project_id):
    project = project_service.update_project_status(
        project_id, get_json_body().get('status'), current_user)
    return success(project_detail(project), 'project status updated')


@bp.route('/api/admin/projects/<int:project_id>/pledgers', methods=['GET'])
@login_required
@role_required('admin')
def project_pledgers(project_id):
    pledges = project_service.get_pledgers(project_id)
    return success([pledger_to_dict(p) for p in pledges])


@bp.route('/api/admin/projects/<int:project_id>/auto-refund',
          methods=['POST'])
@login_required
@role_required('admin')
def auto_refund(project_id):
    order_ids = auto_refund_for_failed_project(project_id, current_user)
    return success(
        {'project_id': project_id, 'refunded_order_ids': order_ids},
        f'{len(order_ids)} orders refunded')


# Users

@bp.route('/api/admin/users', methods=['GET'])
@login_required
@role_required('admin')
def list_users():
    page, per_page = get_page_args()
    query = admin_service.list_users(request.args.get('keyword'))
    result = paginate_query(query, page, per_page)
    return success(page_payload(result, user_admin_dict))


@bp.route('/api/admin/users/<int:user_id>/role', methods=['PUT'])
@login_required
@role_required('admin')
def update_user_role(user_id):
    user = admin_service.update_user_role(
        user_id, get_json_body().get('role'), current_user)
    return success(user_admin_dict(user), 'role updated')


# Refunds

@bp.route('/api/admin/refund-requests', methods=['GET'])
@login_required
@role_required('admin')
def refund_requests():
    page, per_page = get_page_args()
    query = list_refund_requests(request.args.get('status'))
    result = paginate_query(query, page, per_page)
    return success(page_payload(result, refund_request_to_dict))


@bp.route('/api/admin/refund-requests/<int:request_id>/process',
          methods=['POST'])
@login_required
@role_required('admin')
def process_refund(request_id):
    data = get_json_body()
    refund = payment_service.process_refund(
        request_id,
        _required_bool(data, 'approved'),
        data.get('comment'),
        current_user)
    return success(refund_request_to_dict(refund), 'refund processed')


# Orders and shipments

@bp.route('/api/admin/orders', methods=['GET'])
@login_required
@role_required('admin')
def list_orders():
    page, per_page = get_page_args()
    query = admin_service.list_orders(
        request.args.get('status'),
        request.args.get('project_id', type=int))
    result = paginate_query(query, page, per_page)
    return success(page_payload(result, order_to_dict))


@bp.route('/api/admin/orders/<int:order_id>/shipment', methods=['POST'])
@login_required
@role_required('admin')
def create_shipment(order_id):
    data = get_json_body()
    shipment = admin_service.create_shipment(
        order_id,
        current_user,
        tracking_number=data.get('tracking_number'),
        carrier=data.get('carrier'),
        estimated_delivery=data.get('estimated_delivery'))
    return success(shipment_to_dict(shipment), 'order shipped', 201)


@bp.route('/api/admin/shipments/<int:shipment_id>/status', methods=['PUT'])
@login_required
@role_required('admin')
def update_shipment_status(shipment_id):
    data = get_json_body()
    shipment = admin_service.update_shipment_status(
        shipment_id,
        data.get('status'),
        current_user,
        tracking_number=data.get('tracking_number'),
        carrier=data.get('carrier'))
    return success(shipment_to_dict(shipment), 'shipment updated')


@bp.route('/api/admin/stats', methods=['GET'])
@login_required
@role_required('admin')
def stats():
    return success(admin_service.system_stats())


@bp.route('/api/admin/audit-logs', methods=['GET'])
@login_required
@role_required('admin')
def audit_logs():
    page, per_page = get_page_args()
    query = admin_service.list_audit_logs(
        request.args.get('action'), request.args.get('target_type'))
    result = paginate_query(query, page, per_page)
    return success(page_payload(result, audit_to_dict))
