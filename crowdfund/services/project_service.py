from datetime import datetime
from decimal import Decimal
from flask import current_app
from crowdfund.extensions import db
from crowdfund.errors import AppError, ErrorCode
from crowdfund.models import (
    ImageType,
    Order,
    Pledge,
    Project,
    ProjectCategory,
    ProjectComment,
    ProjectGoal,
    ProjectImage,
    ProjectStatus,
    ProjectTag,
    ProjectTagRelation,
    ProjectUpdate,
)
from crowdfund.services.audit_service import actor_role_of, log_audit
from crowdfund.services.payment_service import process_payment
from crowdfund.services.storage_service import save_image
from crowdfund.utils import parse_amount, parse_datetime, retry
import logging

logger = logging.getLogger(__name__)


def get_project_or_404(project_id):
    project = db.session.get(Project, project_id)
    if project is None:
        raise AppError(ErrorCode.PROJECT_NOT_FOUND, 'project not found')
    return project


def _require_owner_or_admin(project, user):
    if project.creator_id != user.id and not user.is_admin:
        raise AppError(
            ErrorCode.FORBIDDEN,
            'only the project creator can do this')


def _clean_goals(raw_goals):
    if not raw_goals or not isinstance(raw_goals, list):
        raise AppError(
            ErrorCode.VALIDATION,
            'at least one funding goal is required')
    goals = []
    for index, raw in enumerate(raw_goals):
        if not isinstance(raw, dict):
            raise AppError(ErrorCode.VALIDATION, f'goal {index} is invalid')
        amount = parse_amount(raw.get('amount'), f'goals[{index}].amount')
        if amount <= 0:
            raise AppError(
                ErrorCode.VALIDATION,
                f'goals[{index}].amount must be positive')
        goals.append({
            'amount': amount,
            'description': (raw.get('description') or '').strip(),
            'images': [u for u in raw.get('images') or [] if u],
        })
    return sorted(goals, key=lambda g: g['amount'])


def _clean_project_fields(data, partial=False):
    values = {}
    for field in ('title', 'description'):
        if field in data or not partial:
            value = (data.get(field) or '').strip()
            if not value:
                raise AppError(
                    ErrorCode.VALIDATION,
                    f'{field} cannot be empty')
            values[field] = value

    if 'end_date' in data or not partial:
        end_date = parse_datetime(data.get('end_date'), 'end_date')
        if end_date <= datetime.utcnow():
            raise AppError(
                ErrorCode.VALIDATION,
                'end_date must be in the future')
        values['end_date'] = end_date

    if 'min_reward_amount' in data or not partial:
        raw = data.get('min_reward_amount')
        amount = Decimal('0') if raw in (None, '') else parse_amount(
            raw, 'min_reward_amount')
        if amount < 0:
            raise AppError(
                ErrorCode.VALIDATION,
                'min_reward_amount cannot be negative')
        values['min_reward_amount'] = amount

    if 'category_id' in data:
        category_id = data.get('category_id')
        if category_id is not None:
            if db.session.get(ProjectCategory, category_id) is None:
                raise AppError(ErrorCode.NOT_FOUND, 'category not found')
        values['category_id'] = category_id
    return values


def _add_goals(project, goals):
    for goal_data in goals:
        goal = ProjectGoal(
            project_id=project.id,
            amount=goal_data['amount'],
            description=goal_data['description'])
        db.session.add(goal)
        db.session.flush()
        for url in goal_data['images']:
            db.session.add(ProjectImage(
                project_id=project.id,
                goal_id=goal.id,
                image_url=url,
                image_type=ImageType.GOAL))


def _recompute_progress(project):
    total_goal = project.total_goal_amount or Decimal('0')
    if total_goal > 0:
        project.progress = float(
            Decimal(project.total_amount or 0) / total_goal * 100)
    else:
        project.progress = 0


def create_project(creator, data):
    values = _clean_project_fields(data)
    goals = _clean_goals(data.get('goals'))
    main_images = [u for u in data.get('images') or [] if u]
    long_images = [u for u in data.get('long_images') or [] if u]

    def insert():
        project = Project(
            creator_id=creator.id,
            status=ProjectStatus.PENDING_REVIEW,
            total_amount=Decimal('0'),
            total_goal_amount=sum(g['amount'] for g in goals),
            progress=0,
            **values)
        db.session.add(project)
        db.session.flush()

        for index, url in enumerate(main_images):
            db.session.add(ProjectImage(
                project_id=project.id,
                image_url=url,
                is_primary=index == 0,
                image_type=ImageType.MAIN))
        for url in long_images:
            db.session.add(ProjectImage(
                project_id=project.id,
                image_url=url,
                image_type=ImageType.LONG))
        _add_goals(project, goals)
        db.session.commit()
        return project

    project = retry(insert, attempts=3)

    log_audit(
        actor_id=creator.id,
        actor_role=actor_role_of(creator),
        action='PROJECT_CREATE',
        target_type='PROJECT',
        target_id=project.id,
        payload={
            'title': project.title,
            'goals': [float(g['amount']) for g in goals],
        }
    )
    logger.info("Project %s created by user %s", project.id, creator.id)
    return project


def get_project(project_id):
    return db.session.get(Project, project_id)


def update_project(project_id, actor, data):
    project = get_project_or_404(project_id)
    _require_owner_or_admin(project, actor)

    for field, value in _clean_project_fields(data, partial=True).items():
        setattr(project, field, value)

    if 'goals' in data:
        if Order.query.filter_by(project_id=project.id).count():
            raise AppError(
                ErrorCode.CONFLICT,
                'goals cannot change once the project has pledges')
        goals = _clean_goals(data.get('goals'))
        old_goal_ids = [g.id for g in project.goals]
        if old_goal_ids:
            ProjectImage.query.filter(
                ProjectImage.goal_id.in_(old_goal_ids)
            ).delete(synchronize_session=False)
            ProjectGoal.query.filter(
                ProjectGoal.id.in_(old_goal_ids)
            ).delete(synchronize_session=False)
        _add_goals(project, goals)
        project.total_goal_amount = sum(g['amount'] for g in goals)
        _recompute_progress(project)

    db.session.commit()
    logger.info("Project %s updated by user %s", project.id, actor.id)
    return project


def list_projects(status=None):
    query = Project.query
    if status is not None:
        query = query.filter(Project.status == status)
    return query.order_by(Project.created_at.desc(), Project.id.desc())


def pledge_to_project(user_id, project_id, amount, address_id=None):
    return process_payment(user_id, project_id, amount, address_id)


def upload_project_image(user, file):
    storage = current_app.extensions['storage']
    return save_image(storage, file, 'projects', user.id)


# Categories and tags

def create_category(name):
    name = (name or '').strip()
    if not name:
        raise AppError(ErrorCode.VALIDATION, 'name cannot be empty')
    if ProjectCategory.query.filter_by(name=name).first():
        raise AppError(ErrorCode.ALREADY_EXISTS, 'category already exists')
    category = ProjectCategory(name=name)
    db.session.add(category)
    db.session.commit()
    return category


def list_categories():
    return ProjectCategory.query.order_by(ProjectCategory.name).all()


def create_tag(name):
    name = (name or '').strip()
    if not name:
        raise AppError(ErrorCode.VALIDATION, 'name cannot be empty')
    if ProjectTag.query.filter_by(name=name).first():
        raise AppError(ErrorCode.ALREADY_EXISTS, 'tag already exists')
    tag = ProjectTag(name=name)
    db.session.add(tag)
    db.session.commit()
    return tag


def list_tags():
    return ProjectTag.query.order_by(ProjectTag.name).all()


def add_tag_to_project(project_id, tag_id, actor):
    project = get_project_or_404(project_id)
    _require_owner_or_admin(project, actor)
    if tag_id is None or db.session.get(ProjectTag, tag_id) is None:
        raise AppError(ErrorCode.NOT_FOUND, 'tag not found')
    if db.session.get(ProjectTagRelation, (project.id, tag_id)):
        raise AppError(ErrorCode.CONFLICT, 'tag already added to project')
    db.session.add(ProjectTagRelation(project_id=project.id, tag_id=tag_id))
    db.session.commit()


def get_project_tags(project_id):
    return get_project_or_404(project_id).tags.order_by(ProjectTag.name).all()


# Updates and comments

def create_update(project_id, actor, title, content):
    project = get_project_or_404(project_id)
    _require_owner_or_admin(project, actor)
    title = (title or '').strip()
    content = (content or '').strip()
    if not title or not content:
        raise AppError(
            ErrorCode.VALIDATION,
            'title and content cannot be empty')
    update = ProjectUpdate(project_id=project.id, title=title, content=content)
    db.session.add(update)
    db.session.commit()
    return update


def list_updates(project_id):
    get_project_or_404(project_id)
    return ProjectUpdate.query.filter_by(project_id=project_id).order_by(
        ProjectUpdate.created_at.desc(), ProjectUpdate.id.desc()).all()


def create_comment(project_id, user, content):
    project = get_project_or_404(project_id)
    content = (content or '').strip()
    if not content:
        raise AppError(ErrorCode.VALIDATION, 'content cannot be empty')
    comment = ProjectComment(
        project_id=project.id, user_id=user.id, content=content)
    db.session.add(comment)
    db.session.commit()
    return comment


def list_comments(project_id):
    get_project_or_404(project_id)
    return ProjectComment.query.filter_by(project_id=project_id).order_by(
        ProjectComment.created_at.desc(), ProjectComment.id.desc()).all()


# Moderation

def review_project(project_id, approved, comment, admin=None):
    project = get_project_or_404(project_id)
    if project.status != ProjectStatus.PENDING_REVIEW:
        logger.warning(
            "Project %s reviewed while %s", project.id, project.status.value)
        raise AppError(
            ErrorCode.CONFLICT,
            'only projects pending review can be reviewed')

    project.status = (
        ProjectStatus.ACTIVE if approved else ProjectStatus.REJECTED)
    project.review_comment = comment
    log_audit(
        actor_id=admin.id if admin else None,
        actor_role=actor_role_of(admin),
        action='PROJECT_REVIEW',
        target_type='PROJECT',
        target_id=project.id,
        payload={'approved': approved, 'comment': comment},
        commit=False
    )
    db.session.commit()
    logger.info(
        "Project %s reviewed: %s", project.id, project.status.value)
    return project


def update_project_status(project_id, status, admin=None):
    try:
        new_status = ProjectStatus(status)
    except ValueError:
        raise AppError(ErrorCode.VALIDATION, f'invalid status: {status}')

    project = get_project_or_404(project_id)
    old_status = project.status
    project.status = new_status
    log_audit(
        actor_id=admin.id if admin else None,
        actor_role=actor_role_of(admin),
        action='PROJECT_STATUS_UPDATE',
        target_type='PROJECT',
        target_id=project.id,
        payload={'from': old_status.value, 'to': new_status.value},
        commit=False
    )
    db.session.commit()
    return project


def delete_project(project_id, admin=None):
    """Remove a project and everything hanging off it in one transaction."""
    project = get_project_or_404(project_id)
    if Order.query.filter_by(project_id=project.id).count():
        raise AppError(
            ErrorCode.CONFLICT,
            'projects with orders cannot be deleted')

    pid = project.id
    ProjectImage.query.filter_by(project_id=pid).delete(
        synchronize_session=False)
    ProjectGoal.query.filter_by(project_id=pid).delete(
        synchronize_session=False)
    ProjectTagRelation.query.filter_by(project_id=pid).delete(
        synchronize_session=False)
    ProjectUpdate.query.filter_by(project_id=pid).delete(
        synchronize_session=False)
    ProjectComment.query.filter_by(project_id=pid).delete(
        synchronize_session=False)
    db.session.delete(project)
    log_audit(
        actor_id=admin.id if admin else None,
        actor_role=actor_role_of(admin),
        action='PROJECT_DELETE',
        target_type='PROJECT',
        target_id=pid,
        payload={'title': project.title},
        commit=False
    )
    db.session.commit()
    logger.info("Project %s deleted", pid)


def get_pledgers(project_id):
    get_project_or_404(project_id)
    return Pledge.query.filter_by(project_id=project_id).order_by(
        Pledge.created_at.desc(), Pledge.id.desc()).all()

