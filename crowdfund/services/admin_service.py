from datetime import datetime
from flask import current_app
from sqlalchemy import func, or_
from crowdfund.extensions import db
from crowdfund.errors import AppError, ErrorCode
from crowdfund.models import (
    AuditLog,
    Order,
    OrderStatus,
    Project,
    ProjectStatus,
    Shipment,
    ShipmentStatus,
    User,
    UserRole,
)
from crowdfund.services.audit_service import log_audit
from crowdfund.services.search_service import sanitize_query
from crowdfund.utils import parse_datetime
import logging

logger = logging.getLogger(__name__)

# Allowed forward moves of a shipment.
SHIPMENT_TRANSITIONS = {
    ShipmentStatus.NOT_SHIPPED: (ShipmentStatus.SHIPPED,),
    ShipmentStatus.SHIPPED: (ShipmentStatus.DELIVERED,),
    ShipmentStatus.DELIVERED: (),
}


def list_projects(status=None, keyword=None):
    query = Project.query
    if status:
        try:
            query = query.filter(Project.status == ProjectStatus(status))
        except ValueError:
            raise AppError(ErrorCode.VALIDATION, f'invalid status: {status}')
    keyword = sanitize_query(keyword)
    if keyword:
        query = query.filter(or_(
            Project.title.ilike(f'%{keyword}%'),
            Project.description.ilike(f'%{keyword}%')))
    return query.order_by(Project.created_at.desc(), Project.id.desc())


def list_users(keyword=None):
    query = User.query
    keyword = sanitize_query(keyword)
    if keyword:
        query = query.filter(or_(
            User.username.ilike(f'%{keyword}%'),
            User.email.ilike(f'%{keyword}%')))
    return query.order_by(User.created_at.desc(), User.id.desc())


def update_user_role(user_id, role, admin):
    try:
        new_role = UserRole(role)
    except ValueError:
        raise AppError(ErrorCode.VALIDATION, f'invalid role: {role}')
    user = db.session.get(User, user_id)
    if user is None:
        raise AppError(ErrorCode.USER_NOT_FOUND, 'user not found')
    if user.id == admin.id and new_role != UserRole.ADMIN:
        raise AppError(ErrorCode.CONFLICT, 'cannot remove your own admin role')

    old_role = user.role
    user.role = new_role
    log_audit(
        actor_id=admin.id,
        actor_role='ADMIN',
        action='USER_ROLE_UPDATE',
        target_type='USER',
        target_id=user.id,
        payload={'from': old_role.value, 'to': new_role.value},
        commit=False
    )
    db.session.commit()
    logger.info(
        "Admin %s changed role of user %s to %s",
        admin.id, user.id, new_role.value)
    return user


def list_orders(status=None, project_id=None):
    query = Order.query
    if status:
        try:
            query = query.filter(Order.status == OrderStatus(status))
        except ValueError:
            raise AppError(ErrorCode.VALIDATION, f'invalid status: {status}')
    if project_id:
        query = query.filter(Order.project_id == project_id)
    return query.order_by(Order.created_at.desc(), Order.id.desc())


def create_shipment(order_id, admin, tracking_number=None, carrier=None,
                    estimated_delivery=None):
    order = db.session.get(Order, order_id)
    if order is None:
        raise AppError(ErrorCode.NOT_FOUND, 'order not found')
    if order.status != OrderStatus.PAID:
        raise AppError(
            ErrorCode.CONFLICT,
            f'order is {order.status.value}, only paid orders can ship')
    if order.shipment is not None:
        raise AppError(ErrorCode.CONFLICT, 'order already has a shipment')

    now = datetime.utcnow()
    shipment = Shipment(
        project_id=order.project_id,
        user_id=order.user_id,
        order_id=order.id,
        address_id=order.address_id,
        status=ShipmentStatus.SHIPPED,
        tracking_number=tracking_number,
        carrier=carrier,
        shipped_at=now,
        estimated_delivery=(
            parse_datetime(estimated_delivery, 'estimated_delivery')
            if estimated_delivery else None))
    db.session.add(shipment)
    order.status = OrderStatus.SHIPPED
    db.session.flush()
    log_audit(
        actor_id=admin.id,
        actor_role='ADMIN',
        action='ORDER_SHIP',
        target_type='ORDER',
        target_id=order.id,
        payload={
            'shipment_id': shipment.id,
            'tracking_number': tracking_number,
        },
        commit=False
    )
    db.session.commit()
    return shipment


def update_shipment_status(shipment_id, status, admin,
                           tracking_number=None, carrier=None):
    try:
        new_status = ShipmentStatus(status)
    except ValueError:
        raise AppError(ErrorCode.VALIDATION, f'invalid status: {status}')
    shipment = db.session.get(Shipment, shipment_id)
    if shipment is None:
        raise AppError(ErrorCode.NOT_FOUND, 'shipment not found')
    if new_status not in SHIPMENT_TRANSITIONS[shipment.status]:
        raise AppError(
            ErrorCode.CONFLICT,
            f'cannot move shipment from {shipment.status.value} '
            f'to {new_status.value}')

    now = datetime.utcnow()
    shipment.status = new_status
    if tracking_number:
        shipment.tracking_number = tracking_number
    if carrier:
        shipment.carrier = carrier
    if new_status == ShipmentStatus.SHIPPED:
        shipment.shipped_at = now
        if shipment.order.status == OrderStatus.PAID:
            shipment.order.status = OrderStatus.SHIPPED
    elif new_status == ShipmentStatus.DELIVERED:
        shipment.delivered_at = now

    log_audit(
        actor_id=admin.id,
        actor_role='ADMIN',
        action='ORDER_SHIPMENT_UPDATE',
        target_type='SHIPMENT',
        target_id=shipment.id,
        payload={'status': new_status.value},
        commit=False
    )
    db.session.commit()
    return shipment


def system_stats():
    projects_by_status = {
        status.value: count for status, count in db.session.query(
            Project.status, func.count(Project.id)
        ).group_by(Project.status).all()
    }
    total_pledged = db.session.query(
        func.coalesce(func.sum(Order.amount), 0)
    ).filter(Order.status != OrderStatus.REFUNDED).scalar()

    monitor = current_app.extensions.get('error_monitor')
    return {
        'total_users': User.query.filter(User.deleted_at.is_(None)).count(),
        'total_projects': Project.query.count(),
        'active_projects': projects_by_status.get(
            ProjectStatus.ACTIVE.value, 0),
        'projects_by_status': projects_by_status,
        'total_orders': Order.query.count(),
        'pending_orders': Order.query.filter_by(
            status=OrderStatus.PENDING).count(),
        'total_pledged_amount': float(total_pledged or 0),
        'errors': monitor.snapshot() if monitor else None,
    }


def list_audit_logs(action=None, target_type=None):
    query = AuditLog.query
    if action:
        query = query.filter(AuditLog.action == action.upper())
    if target_type:
        query = query.filter(AuditLog.target_type == target_type.upper())
    return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
