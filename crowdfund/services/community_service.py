from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from crowdfund.extensions import db
from crowdfund.errors import AppError, ErrorCode
from crowdfund.models import (
    Comment,
    Follow,
    Like,
    Post,
    PostImage,
    User,
)
from crowdfund.serializers import comment_to_dict, post_to_dict
from crowdfund.services.storage_service import save_image
import logging

logger = logging.getLogger(__name__)

MAX_POST_IMAGES = 9


def _viewer_id(viewer):
    if viewer is None or not getattr(viewer, 'is_authenticated', False):
        return None
    return viewer.id


def _get_post(post_id):
    post = db.session.get(Post, post_id)
    if post is None:
        raise AppError(ErrorCode.NOT_FOUND, 'post not found')
    return post


def _get_user(user_id):
    user = db.session.get(User, user_id)
    if user is None or user.deleted_at is not None:
        raise AppError(ErrorCode.USER_NOT_FOUND, 'user not found')
    return user


def serialize_posts(posts, viewer=None):
    """Attach like/comment counts and viewer flags, computed on read."""
    if not posts:
        return []
    post_ids = [p.id for p in posts]
    author_ids = {p.user_id for p in posts}

    like_counts = dict(db.session.query(
        Like.post_id, func.count(Like.id)
    ).filter(Like.post_id.in_(post_ids)).group_by(Like.post_id).all())
    comment_counts = dict(db.session.query(
        Comment.post_id, func.count(Comment.id)
    ).filter(Comment.post_id.in_(post_ids)).group_by(Comment.post_id).all())

    liked = set()
    following = set()
    viewer_id = _viewer_id(viewer)
    if viewer_id is not None:
        liked = {
            row[0] for row in db.session.query(Like.post_id).filter(
                Like.user_id == viewer_id,
                Like.post_id.in_(post_ids)).all()}
        following = {
            row[0] for row in db.session.query(Follow.followed_id).filter(
                Follow.follower_id == viewer_id,
                Follow.followed_id.in_(author_ids)).all()}

    return [
        post_to_dict(
            post,
            like_count=like_counts.get(post.id, 0),
            comment_count=comment_counts.get(post.id, 0),
            is_liked=post.id in liked,
            is_following=post.user_id in following)
        for post in posts
    ]


def serialize_post(post, viewer=None):
    return serialize_posts([post], viewer)[0]


# Posts

def create_post(user, content, files=None):
    content = (content or '').strip()
    files = [f for f in files or [] if f and f.filename]
    if not content and not files:
        raise AppError(
            ErrorCode.VALIDATION,
            'a post needs content or at least one image')
    if len(files) > MAX_POST_IMAGES:
        raise AppError(
            ErrorCode.VALIDATION,
            f'at most {MAX_POST_IMAGES} images per post')

    storage = current_app.extensions['storage']
    urls = [save_image(storage, f, 'posts', user.id) for f in files]

    post = Post(user_id=user.id, content=content)
    db.session.add(post)
    db.session.flush()
    for url in urls:
        db.session.add(PostImage(post_id=post.id, image_url=url))
    db.session.commit()
    logger.info("Post %s created by user %s", post.id, user.id)
    return post


def get_post(post_id):
    return _get_post(post_id)


def list_posts():
    return Post.query.order_by(Post.created_at.desc(), Post.id.desc())


def update_post(post_id, user, content):
    post = _get_post(post_id)
    if post.user_id != user.id:
        raise AppError(ErrorCode.FORBIDDEN, 'only the author can edit a post')
    content = (content or '').strip()
    if not content and not post.images:
        raise AppError(ErrorCode.VALIDATION, 'content cannot be empty')
    post.content = content
    db.session.commit()
    return post


def delete_post(post_id, user):
    post = _get_post(post_id)
    if post.user_id != user.id and not user.is_admin:
        raise AppError(
            ErrorCode.FORBIDDEN,
            'only the author can delete a post')
    db.session.delete(post)
    db.session.commit()
    logger.info("Post %s deleted by user %s", post_id, user.id)


def user_posts(user_id):
    _get_user(user_id)
    return Post.query.filter_by(user_id=user_id).order_by(
        Post.created_at.desc(), Post.id.desc())


def following_posts(viewer_id):
    """Posts written by people the viewer follows."""
    followed = db.session.query(Follow.followed_id).filter(
        Follow.follower_id == viewer_id)
    return Post.query.filter(Post.user_id.in_(followed)).order_by(
        Post.created_at.desc(), Post.id.desc())


def followers_posts(viewer_id):
    """Posts written by the viewer's followers."""
    followers = db.session.query(Follow.follower_id).filter(
        Follow.followed_id == viewer_id)
    return Post.query.filter(Post.user_id.in_(followers)).order_by(
        Post.created_at.desc(), Post.id.desc())


# Comments

def create_comment(post_id, user, content, parent_id=None):
    post = _get_post(post_id)
    content = (content or '').strip()
    if not content:
        raise AppError(ErrorCode.VALIDATION, 'content cannot be empty')
    if parent_id is not None:
        parent = db.session.get(Comment, parent_id)
        if parent is None or parent.post_id != post.id:
            raise AppError(ErrorCode.NOT_FOUND, 'parent comment not found')
    comment = Comment(
        post_id=post.id,
        user_id=user.id,
        content=content,
        parent_id=parent_id)
    db.session.add(comment)
    db.session.commit()
    return comment


def reply_to_comment(comment_id, user, content):
    parent = db.session.get(Comment, comment_id)
    if parent is None:
        raise AppError(ErrorCode.NOT_FOUND, 'comment not found')
    return create_comment(parent.post_id, user, content, parent_id=parent.id)


def _reply_counts(comment_ids):
    if not comment_ids:
        return {}
    return dict(db.session.query(
        Comment.parent_id, func.count(Comment.id)
    ).filter(
        Comment.parent_id.in_(comment_ids)
    ).group_by(Comment.parent_id).all())


def list_comments(post_id):
    """Top-level comments with their direct reply counts."""
    _get_post(post_id)
    comments = Comment.query.filter_by(
        post_id=post_id, parent_id=None
    ).order_by(Comment.created_at.asc(), Comment.id.asc()).all()
    counts = _reply_counts([c.id for c in comments])
    return [comment_to_dict(c, counts.get(c.id, 0)) for c in comments]


def get_comment_replies(comment_id):
    """Direct replies only; replies to replies are not walked."""
    if db.session.get(Comment, comment_id) is None:
        raise AppError(ErrorCode.NOT_FOUND, 'comment not found')
    replies = Comment.query.filter_by(parent_id=comment_id).order_by(
        Comment.created_at.asc(), Comment.id.asc()).all()
    counts = _reply_counts([c.id for c in replies])
    return [comment_to_dict(c, counts.get(c.id, 0)) for c in replies]


def delete_comment(comment_id, user):
    comment = db.session.get(Comment, comment_id)
    if comment is None:
        raise AppError(ErrorCode.NOT_FOUND, 'comment not found')
    if comment.user_id != user.id and not user.is_admin:
        raise AppError(
            ErrorCode.FORBIDDEN,
            'only the author can delete a comment')
    db.session.delete(comment)
    db.session.commit()


# Likes

def like_post(post_id, user):
    post = _get_post(post_id)
    if Like.query.filter_by(user_id=user.id, post_id=post.id).first():
        raise AppError(ErrorCode.CONFLICT, 'post already liked')
    db.session.add(Like(user_id=user.id, post_id=post.id))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise AppError(ErrorCode.CONFLICT, 'post already liked')
    return like_count(post.id)


def unlike_post(post_id, user):
    post = _get_post(post_id)
    like = Like.query.filter_by(user_id=user.id, post_id=post.id).first()
    if like is None:
        raise AppError(ErrorCode.NOT_FOUND, 'post has not been liked')
    db.session.delete(like)
    db.session.commit()
    return like_count(post.id)


def like_count(post_id):
    return Like.query.filter_by(post_id=post_id).count()


# Follows

def follow_user(follower, followed_id):
    if follower.id == followed_id:
        raise AppError(ErrorCode.VALIDATION, 'cannot follow yourself')
    followed = _get_user(followed_id)
    if Follow.query.filter_by(
            follower_id=follower.id, followed_id=followed.id).first():
        raise AppError(ErrorCode.CONFLICT, 'already following this user')
    db.session.add(Follow(follower_id=follower.id, followed_id=followed.id))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise AppError(ErrorCode.CONFLICT, 'already following this user')
    logger.info("User %s followed %s", follower.id, followed.id)


def unfollow_user(follower, followed_id):
    follow = Follow.query.filter_by(
        follower_id=follower.id, followed_id=followed_id).first()
    if follow is None:
        raise AppError(ErrorCode.NOT_FOUND, 'not following this user')
    db.session.delete(follow)
    db.session.commit()


def follow_counts(user_ids):
    """user id -> (followers, following)."""
    if not user_ids:
        return {}
    followers = dict(db.session.query(
        Follow.followed_id, func.count(Follow.id)
    ).filter(Follow.followed_id.in_(user_ids)).group_by(
        Follow.followed_id).all())
    following = dict(db.session.query(
        Follow.follower_id, func.count(Follow.id)
    ).filter(Follow.follower_id.in_(user_ids)).group_by(
        Follow.follower_id).all())
    return {
        uid: (followers.get(uid, 0), following.get(uid, 0))
        for uid in user_ids
    }


def followers_of(user_id):
    _get_user(user_id)
    return User.query.join(
        Follow, Follow.follower_id == User.id
    ).filter(
        Follow.followed_id == user_id
    ).order_by(Follow.created_at.desc())


def following_of(user_id):
    _get_user(user_id)
    return User.query.join(
        Follow, Follow.followed_id == User.id
    ).filter(
        Follow.follower_id == user_id
    ).order_by(Follow.created_at.desc())


def get_follow_status(viewer, user_id):
    user = _get_user(user_id)
    counts = follow_counts([user.id])[user.id]
    is_following = Follow.query.filter_by(
        follower_id=viewer.id, followed_id=user.id).first() is not None
    is_followed_by = Follow.query.filter_by(
        follower_id=user.id, followed_id=viewer.id).first() is not None
    return {
        'user_id': user.id,
        'is_following': is_following,
        'is_followed_by': is_followed_by,
        'followers_count': counts[0],
        'following_count': counts[1],
    }
