from flask import Blueprint, request
from flask_login import login_required, current_user
from crowdfund.serializers import comment_to_dict, follow_user_dict
from crowdfund.services import community_service
from crowdfund.utils import (
    get_json_body,
    get_page_args,
    paginate_query,
    success,
)
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('community', __name__)


def _posts_page(query):
    page, per_page = get_page_args()
    result = paginate_query(query, page, per_page)
    result['items'] = community_service.serialize_posts(
        result['items'], current_user)
    return result


def _users_page(query):
    page, per_page = get_page_args()
    result = paginate_query(query, page, per_page)
    users = result['items']
    counts = community_service.follow_counts([u.id for u in users])
    result['items'] = [
        follow_user_dict(u, *counts.get(u.id, (0, 0))) for u in users]
    return result


def _post_input():
    if request.is_json:
        return get_json_body().get('content'), []
    return request.form.get('content'), request.files.getlist('images')


# Posts

@bp.route('/api/posts', methods=['GET'])
def list_posts():
    return success(_posts_page(community_service.list_posts()))


@bp.route('/api/posts', methods=['POST'])
@login_required
def create_post():
    content, files = _post_input()
    post = community_service.create_post(current_user, content, files)
    return success(
        community_service.serialize_post(post, current_user),
        'post created',
        201)


@bp.route('/api/posts/<int:post_id>', methods=['GET'])
def get_post(post_id):
    post = community_service.get_post(post_id)
    return success(community_service.serialize_post(post, current_user))


@bp.route('/api/posts/<int:post_id>', methods=['PUT'])
@login_required
def update_post(post_id):
    post = community_service.update_post(
        post_id, current_user, get_json_body().get('content'))
    return success(
        community_service.serialize_post(post, current_user),
        'post updated')


@bp.route('/api/posts/<int:post_id>', methods=['DELETE'])
@login_required
def delete_post(post_id):
    community_service.delete_post(post_id, current_user)
    return success(None, 'post deleted')


@bp.route('/api/users/<int:user_id>/posts', methods=['GET'])
def user_posts(user_id):
    return success(_posts_page(community_service.user_posts(user_id)))


@bp.route('/api/feed/following', methods=['GET'])
@login_required
def following_feed():
    return success(_posts_page(
        community_service.following_posts(current_user.id)))


@bp.route('/api/feed/followers', methods=['GET'])
@login_required
def followers_feed():
    return success(_posts_page(
        community_service.followers_posts(current_user.id)))


# Comments

@bp.route('/api/posts/<int:post_id>/comments', methods=['GET'])
def list_comments(post_id):
    return success(community_service.list_comments(post_id))


@bp.route('/api/posts/<int:post_id>/comments', methods=['POST'])
@login_required
def create_comment(post_id):
    data = get_json_body()
    comment = community_service.create_comment(
        post_id, current_user, data.get('content'), data.get('parent_id'))
    return success(comment_to_dict(comment, 0), 'comment posted', 201)


@bp.route('/api/comments/<int:comment_id>/replies', methods=['GET'])
def comment_replies(comment_id):
    return success(community_service.get_comment_replies(comment_id))


@bp.route('/api/comments/<int:comment_id>/replies', methods=['POST'])
@login_required
def reply_to_comment(comment_id):
    reply = community_service.reply_to_comment(
        comment_id, current_user, get_json_body().get('content'))
    return success(comment_to_dict(reply, 0), 'reply posted', 201)


@bp.route('/api/comments/<int:comment_id>', methods=['DELETE'])
@login_required
def delete_comment(comment_id):
    community_service.delete_comment(comment_id, current_user)
    return success(None, 'comment deleted')


# Likes

@bp.route('/api/posts/<int:post_id>/like', methods=['POST'])
@login_required
def like_post(post_id):
    count = community_service.like_post(post_id, current_user)
    return success({'post_id': post_id, 'like_count': count, 'is_liked': True})


@bp.route('/api/posts/<int:post_id>/like', methods=['DELETE'])
@login_required
def unlike_post(post_id):
    count = community_service.unlike_post(post_id, current_user)
    return success(
        {'post_id': post_id, 'like_count': count, 'is_liked': False})


# Follows

@bp.route('/api/users/<int:user_id>/follow', methods=['POST'])
@login_required
def follow(user_id):
    community_service.follow_user(current_user, user_id)
    return success(
        community_service.get_follow_status(current_user, user_id),
        'followed')


@bp.route('/api/users/<int:user_id>/follow', methods=['DELETE'])
@login_required
def unfollow(user_id):
    community_service.unfollow_user(current_user, user_id)
    return success(
        community_service.get_follow_status(current_user, user_id),
        'unfollowed')


@bp.route('/api/users/<int:user_id>/followers', methods=['GET'])
@login_required
def followers(user_id):
    return success(_users_page(community_service.followers_of(user_id)))


@bp.route('/api/users/<int:user_id>/following', methods=['GET'])
@login_required
def following(user_id):
    return success(_users_page(community_service.following_of(user_id)))


@bp.route('/api/users/<int:user_id>/follow-status', methods=['GET'])
@login_required
def follow_status(user_id):
    return success(community_service.get_follow_status(current_user, user_id))
