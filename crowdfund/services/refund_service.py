from datetime import datetime
from sqlalchemy.exc import SQLAlchemyError
from crowdfund.extensions import db
from crowdfund.errors import AppError, ErrorCode
from crowdfund.models import (
    Order,
    OrderStatus,
    Project,
    ProjectStatus,
    RefundRequest,
    RefundStatus,
)
from crowdfund.services.audit_service import actor_role_of, log_audit
import logging

logger = logging.getLogger(__name__)

AUTO_REFUND_REASON = 'project failed: automatic refund'
AUTO_REFUND_COMMENT = 'approved automatically after project failure'

# Orders still holding money once a project has failed.
AUTO_REFUND_ORDER_STATUSES = (
    OrderStatus.PENDING,
    OrderStatus.PAID,
    OrderStatus.CROWDFUNDING_FAILED,
)


def auto_refund_for_failed_project(project_id, admin=None):
    """Refund every open order of a failed project, all or nothing."""
    project = db.session.get(Project, project_id)
    if project is None:
        raise AppError(ErrorCode.PROJECT_NOT_FOUND, 'project not found')
    if project.status != ProjectStatus.FAILED:
        raise AppError(
            ErrorCode.CONFLICT,
            'automatic refunds only apply to failed projects')

    orders = Order.query.filter(
        Order.project_id == project_id,
        Order.status.in_(AUTO_REFUND_ORDER_STATUSES)
    ).order_by(Order.id).all()

    refunded = []
    try:
        for order in orders:
            pending = RefundRequest.query.filter_by(
                order_id=order.id, status=RefundStatus.PENDING).first()
            if pending:
                pending.status = RefundStatus.APPROVED
                pending.admin_comment = AUTO_REFUND_COMMENT
            else:
                db.session.add(RefundRequest(
                    order_id=order.id,
                    user_id=order.user_id,
                    reason=AUTO_REFUND_REASON,
                    status=RefundStatus.APPROVED,
                    admin_comment=AUTO_REFUND_COMMENT))
            order.status = OrderStatus.REFUNDED
            order.updated_at = datetime.utcnow()
            db.session.flush()
            refunded.append(order.id)

        log_audit(
            actor_id=admin.id if admin else None,
            actor_role=actor_role_of(admin) if admin else 'SYSTEM',
            action='REFUND_AUTO',
            target_type='PROJECT',
            target_id=project_id,
            payload={'order_ids': refunded},
            commit=False
        )
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(
            "Automatic refund for project %s failed: %s", project_id, e)
        raise AppError(ErrorCode.DATABASE, 'automatic refund failed', e)

    logger.info(
        "Project %s: %s orders refunded automatically",
        project_id, len(refunded))
    return refunded


def list_refund_requests(status=None):
    query = RefundRequest.query
    if status:
        try:
            query = query.filter(RefundRequest.status == RefundStatus(status))
        except ValueError:
            raise AppError(ErrorCode.VALIDATION, f'invalid status: {status}')
    return query.order_by(
        RefundRequest.created_at.desc(), RefundRequest.id.desc())
