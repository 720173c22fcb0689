"""Pledges, orders and refund requests.

A pledge, its order and the project's running total are written in one
transaction. The project total is bumped with ``total_amount =
total_amount + :amount`` so concurrent pledges on one project never lose an
update.
"""
from datetime import datetime
from sqlalchemy import Float, case, cast, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from crowdfund.extensions import db
from crowdfund.errors import AppError, ErrorCode
from crowdfund.models import (
    OPEN_ORDER_STATUSES,
    Order,
    OrderStatus,
    Pledge,
    PledgeStatus,
    Project,
    ProjectStatus,
    RefundRequest,
    RefundStatus,
    UserAddress,
)
from crowdfund.services.audit_service import log_audit
from crowdfund.utils import parse_amount
import logging

logger = logging.getLogger(__name__)

USER_REFUND_REASON = 'user requested refund'

# Projects that no longer take pledges.
CLOSED_PROJECT_STATUSES = (
    ProjectStatus.FAILED,
    ProjectStatus.REJECTED,
    ProjectStatus.COMPLETED,
)


def format_order_number(order_id, when=None):
    when = when or datetime.utcnow()
    return f'ORD-{when.year}-{order_id:04d}'


def _progress_expression():
    return case(
        (Project.total_goal_amount > 0,
         cast(Project.total_amount, Float) * 100
         / cast(Project.total_goal_amount, Float)),
        else_=0)


def process_payment(user_id, project_id, amount, address_id=None):
    amount = parse_amount(amount)
    if amount <= 0:
        raise AppError(ErrorCode.VALIDATION, 'amount must be positive')

    project = db.session.get(Project, project_id)
    if project is None:
        raise AppError(ErrorCode.PROJECT_NOT_FOUND, 'project not found')
    if project.end_date <= datetime.utcnow():
        raise AppError(
            ErrorCode.PROJECT_ENDED,
            'project has ended, cannot accept new payments')
    if project.status in CLOSED_PROJECT_STATUSES:
        raise AppError(
            ErrorCode.CONFLICT,
            f'project is {project.status.value}, cannot accept new payments')

    if address_id is not None:
        address = db.session.get(UserAddress, address_id)
        if address is None or address.user_id != user_id:
            raise AppError(ErrorCode.VALIDATION, 'invalid shipping address')

    is_reward = amount >= project.min_reward_amount

    stage = 'create pledge'
    try:
        pledge = Pledge(
            user_id=user_id,
            project_id=project.id,
            amount=amount,
            status=PledgeStatus.PENDING,
            address_id=address_id)
        db.session.add(pledge)
        db.session.flush()

        stage = 'create order'
        order = Order(
            user_id=user_id,
            project_id=project.id,
            pledge_id=pledge.id,
            amount=amount,
            status=OrderStatus.PENDING,
            is_reward=is_reward,
            address_id=address_id)
        db.session.add(order)
        db.session.flush()
        order.order_number = format_order_number(order.id)
        db.session.flush()

        stage = 'update project amount'
        db.session.execute(
            update(Project)
            .where(Project.id == project.id)
            .values(total_amount=Project.total_amount + amount)
            .execution_options(synchronize_session=False))
        db.session.execute(
            update(Project)
            .where(Project.id == project.id)
            .values(progress=_progress_expression())
            .execution_options(synchronize_session=False))

        stage = 'commit'
        log_audit(
            actor_id=user_id,
            actor_role='USER',
            action='PAYMENT_CREATE',
            target_type='ORDER',
            target_id=order.id,
            payload={
                'project_id': project.id,
                'amount': str(amount),
                'is_reward': is_reward,
                'order_number': order.order_number,
            },
            commit=False
        )
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(
            "Payment for project %s by user %s failed at %s: %s",
            project_id, user_id, stage, e)
        raise AppError(ErrorCode.DATABASE, f'{stage} failed', e)

    logger.info(
        "Order %s created: user=%s project=%s amount=%s reward=%s",
        order.order_number, user_id, project_id, amount, is_reward)
    return order


def confirm_payment(order_id, user_id):
    """Mark a pending order as paid (no gateway is involved)."""
    order = db.session.get(Order, order_id)
    if order is None or order.user_id != user_id:
        raise AppError(ErrorCode.NOT_FOUND, 'order not found')
    if order.status != OrderStatus.PENDING:
        raise AppError(
            ErrorCode.CONFLICT,
            f'order is {order.status.value}, cannot be paid')

    order.status = OrderStatus.PAID
    order.paid_at = datetime.utcnow()
    order.pledge.status = PledgeStatus.PAID
    log_audit(
        actor_id=user_id,
        actor_role='USER',
        action='PAYMENT_CONFIRM',
        target_type='ORDER',
        target_id=order.id,
        payload={'amount': str(order.amount)},
        commit=False
    )
    db.session.commit()
    return order


def request_refund(order_id, user_id, reason=None):
    """Open a refund request; only one may be pending per order."""
    order = db.session.get(Order, order_id)
    if order is None:
        raise AppError(ErrorCode.NOT_FOUND, 'order not found')
    if order.user_id != user_id:
        raise AppError(
            ErrorCode.FORBIDDEN,
            'order does not belong to current user')
    if order.status == OrderStatus.REFUNDED:
        raise AppError(ErrorCode.CONFLICT, 'order has already been refunded')

    # Lock the order row so the check and the insert cannot interleave.
    Order.query.filter_by(id=order.id).with_for_update().first()
    existing = RefundRequest.query.filter_by(
        order_id=order.id, status=RefundStatus.PENDING).first()
    if existing:
        raise AppError(
            ErrorCode.CONFLICT,
            'a refund request for this order is already pending')

    refund = RefundRequest(
        order_id=order.id,
        user_id=user_id,
        reason=(reason or '').strip() or USER_REFUND_REASON,
        status=RefundStatus.PENDING)
    db.session.add(refund)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise AppError(
            ErrorCode.CONFLICT,
            'a refund request for this order is already pending')

    log_audit(
        actor_id=user_id,
        actor_role='USER',
        action='REFUND_REQUEST',
        target_type='ORDER',
        target_id=order.id,
        payload={'refund_request_id': refund.id, 'reason': refund.reason},
        commit=False
    )
    db.session.commit()
    return refund


def request_refund_for_failed_project(order_id, user_id):
    return request_refund(order_id, user_id, USER_REFUND_REASON)


def process_refund(request_id, approved, comment, admin=None):
    refund = db.session.get(RefundRequest, request_id)
    if refund is None:
        raise AppError(ErrorCode.NOT_FOUND, 'refund request not found')
    if refund.status != RefundStatus.PENDING:
        raise AppError(
            ErrorCode.CONFLICT,
            f'refund request already {refund.status.value}')

    order = refund.order
    if approved:
        refund.status = RefundStatus.APPROVED
        order.status = OrderStatus.REFUNDED
    else:
        refund.status = RefundStatus.REJECTED
        order.status = OrderStatus.REFUND_REJECTED
    refund.admin_comment = comment

    log_audit(
        actor_id=admin.id if admin else None,
        actor_role='ADMIN' if admin else 'SYSTEM',
        action='REFUND_PROCESS',
        target_type='REFUND_REQUEST',
        target_id=refund.id,
        payload={
            'order_id': order.id,
            'approved': bool(approved),
            'comment': comment,
        },
        commit=False
    )
    db.session.commit()
    logger.info(
        "Refund request %s %s, order %s now %s",
        refund.id, refund.status.value, order.id, order.status.value)
    return refund


def sync_orders_with_project_status(project_id):
    """Move open orders of a failed project to crowdfunding_failed."""
    project = db.session.get(Project, project_id)
    if project is None or project.status != ProjectStatus.FAILED:
        return 0
    result = db.session.execute(
        update(Order)
        .where(
            Order.project_id == project_id,
            Order.status.in_(OPEN_ORDER_STATUSES))
        .values(
            status=OrderStatus.CROWDFUNDING_FAILED,
            updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False))
    db.session.commit()
    if result.rowcount:
        logger.info(
            "Project %s failed: %s orders moved to crowdfunding_failed",
            project_id, result.rowcount)
    return result.rowcount


def _sync_failed_projects_for_user(user_id):
    failed_project_ids = [
        row[0] for row in db.session.query(Order.project_id).join(
            Project, Order.project_id == Project.id
        ).filter(
            Order.user_id == user_id,
            Order.status.in_(OPEN_ORDER_STATUSES),
            Project.status == ProjectStatus.FAILED
        ).distinct().all()
    ]
    for project_id in failed_project_ids:
        sync_orders_with_project_status(project_id)


def orders_for_user(user_id):
    _sync_failed_projects_for_user(user_id)
    return Order.query.filter_by(user_id=user_id).order_by(
        Order.created_at.desc(), Order.id.desc())


def get_order(order_id, user_id):
    """The caller's order, or None when it is missing or someone else's."""
    order = db.session.get(Order, order_id)
    if order is None or order.user_id != user_id:
        return None
    sync_orders_with_project_status(order.project_id)
    return order


def refund_requests_for_user(user_id):
    return RefundRequest.query.filter_by(user_id=user_id).order_by(
        RefundRequest.created_at.desc(), RefundRequest.id.desc()).all()
