from flask import Blueprint, request
from flask_login import login_required, current_user
from crowdfund.errors import AppError, ErrorCode
from crowdfund.middleware import admin_required
from crowdfund.models import ProjectStatus
from crowdfund.serializers import (
    category_to_dict,
    order_to_dict,
    project_comment_to_dict,
    project_detail,
    project_summary,
    project_update_to_dict,
    tag_to_dict,
)
from crowdfund.services import project_service
from crowdfund.services.search_service import parse_filters, search_projects
from crowdfund.utils import (
    get_json_body,
    get_page_args,
    page_payload,
    paginate_query,
    success,
)
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('projects', __name__)


@bp.route('/api/projects', methods=['GET'])
def list_projects():
    status = request.args.get('status')
    if status:
        try:
            status = ProjectStatus(status)
        except ValueError:
            raise AppError(ErrorCode.VALIDATION, f'invalid status: {status}')
    page, per_page = get_page_args()
    result = paginate_query(
        project_service.list_projects(status or None), page, per_page)
    return success(page_payload(result, project_summary))


@bp.route('/api/projects', methods=['POST'])
@login_required
def create_project():
    project = project_service.create_project(current_user, get_json_body())
    return success(project_detail(project), 'project submitted for review', 201)


@bp.route('/api/projects/search', methods=['GET'])
def search():
    filters = parse_filters(request.args)
    page, per_page = get_page_args()
    result = search_projects(filters, page, per_page)
    return success(page_payload(result, project_summary))


@bp.route('/api/projects/images', methods=['POST'])
@login_required
def upload_image():
    url = project_service.upload_project_image(
        current_user, request.files.get('image'))
    return success({'url': url}, 'image uploaded', 201)


@bp.route('/api/projects/<int:project_id>', methods=['GET'])
def get_project(project_id):
    project = project_service.get_project(project_id)
    if project is None:
        raise AppError(ErrorCode.PROJECT_NOT_FOUND, 'project not found')
    return success(project_detail(project))


@bp.route('/api/projects/<int:project_id>', methods=['PUT'])
@login_required
def update_project(project_id):
    project = project_service.update_project(
        project_id, current_user, get_json_body())
    return success(project_detail(project), 'project updated')


@bp.route('/api/projects/<int:project_id>/pledge', methods=['POST'])
@login_required
def pledge(project_id):
    data = get_json_body()
    order = project_service.pledge_to_project(
        current_user.id,
        project_id,
        data.get('amount'),
        data.get('address_id'),
    )
    return success(order_to_dict(order), 'pledge created', 201)


# Categories and tags

@bp.route('/api/project-categories', methods=['GET'])
def list_categories():
    categories = project_service.list_categories()
    return success([category_to_dict(c) for c in categories])


@bp.route('/api/project-categories', methods=['POST'])
@login_required
@admin_required
def create_category():
    category = project_service.create_category(get_json_body().get('name'))
    return success(category_to_dict(category), 'category created', 201)


@bp.route('/api/project-tags', methods=['GET'])
def list_tags():
    return success([tag_to_dict(t) for t in project_service.list_tags()])


@bp.route('/api/project-tags', methods=['POST'])
@login_required
@admin_required
def create_tag():
    tag = project_service.create_tag(get_json_body().get('name'))
    return success(tag_to_dict(tag), 'tag created', 201)


@bp.route('/api/projects/<int:project_id>/tags', methods=['GET'])
def project_tags(project_id):
    tags = project_service.get_project_tags(project_id)
    return success([tag_to_dict(t) for t in tags])


@bp.route('/api/projects/<int:project_id>/tags', methods=['POST'])
@login_required
def add_project_tag(project_id):
    project_service.add_tag_to_project(
        project_id, get_json_body().get('tag_id'), current_user)
    tags = project_service.get_project_tags(project_id)
    return success([tag_to_dict(t) for t in tags], 'tag added', 201)


# Updates and comments

@bp.route('/api/projects/<int:project_id>/updates', methods=['GET'])
def list_updates(project_id):
    updates = project_service.list_updates(project_id)
    return success([project_update_to_dict(u) for u in updates])


@bp.route('/api/projects/<int:project_id>/updates', methods=['POST'])
@login_required
def create_update(project_id):
    data = get_json_body()
    update = project_service.create_update(
        project_id, current_user, data.get('title'), data.get('content'))
    return success(project_update_to_dict(update), 'update posted', 201)


@bp.route('/api/projects/<int:project_id>/comments', methods=['GET'])
def list_comments(project_id):
    comments = project_service.list_comments(project_id)
    return success([project_comment_to_dict(c) for c in comments])


@bp.route('/api/projects/<int:project_id>/comments', methods=['POST'])
@login_required
def create_comment(project_id):
    comment = project_service.create_comment(
        project_id, current_user, get_json_body().get('content'))
    return success(project_comment_to_dict(comment), 'comment posted', 201)
