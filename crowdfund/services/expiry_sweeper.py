"""Periodic check that fails expired, underfunded projects.

A project fails when its end date has passed and the paid total is below its
lowest goal. The check re-reads the whole project table on every run.
"""
from datetime import datetime
from decimal import Decimal
from threading import Event, Thread
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from crowdfund.extensions import db
from crowdfund.models import (
    TERMINAL_PROJECT_STATUSES,
    Order,
    OrderStatus,
    Project,
    ProjectGoal,
    ProjectStatus,
)
from crowdfund.services.audit_service import log_audit
from crowdfund.services.payment_service import sync_orders_with_project_status
import logging

logger = logging.getLogger(__name__)


def total_paid(project_id) -> Decimal:
    total = db.session.query(
        func.coalesce(func.sum(Order.amount), 0)
    ).filter(
        Order.project_id == project_id,
        Order.status == OrderStatus.PAID
    ).scalar()
    return Decimal(str(total or 0))


def find_expired_projects(now):
    """Expired, still open projects with their lowest goal amount."""
    lowest_goal = db.session.query(
        ProjectGoal.project_id,
        func.min(ProjectGoal.amount).label('min_goal')
    ).group_by(ProjectGoal.project_id).subquery()

    # Projects without goals drop out of the inner join.
    return db.session.query(Project, lowest_goal.c.min_goal).join(
        lowest_goal, lowest_goal.c.project_id == Project.id
    ).filter(
        Project.end_date <= now,
        Project.status.notin_(TERMINAL_PROJECT_STATUSES)
    ).all()


def sweep_expired_projects(now=None):
    now = now or datetime.utcnow()
    failed = []
    for project, min_goal in find_expired_projects(now):
        paid = total_paid(project.id)
        if paid >= Decimal(str(min_goal)):
            continue
        old_status = project.status
        project.status = ProjectStatus.FAILED
        log_audit(
            actor_id=None,
            actor_role='SYSTEM',
            action='PROJECT_FAILED',
            target_type='PROJECT',
            target_id=project.id,
            payload={
                'from': old_status.value,
                'total_paid': str(paid),
                'min_goal': str(min_goal),
            },
            commit=False
        )
        db.session.commit()
        sync_orders_with_project_status(project.id)
        failed.append(project.id)
        logger.info(
            "Project %s failed: paid %s below lowest goal %s",
            project.id, paid, min_goal)
    return failed


class ExpirySweeper:
    """Runs ``sweep_expired_projects`` on a fixed interval in a thread."""

    def __init__(self, app, interval=60):
        self.app = app
        self.interval = interval
        self._stop = Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(
            target=self._run, name='expiry-sweeper', daemon=True)
        self._thread.start()
        logger.info("Expiry sweeper started (every %ss)", self.interval)

    def stop(self, timeout=5):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Expiry sweeper stopped")

    def run_once(self):
        with self.app.app_context():
            try:
                return sweep_expired_projects()
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error("Expiry sweep failed: %s", e, exc_info=True)
                return []

    def _run(self):
        while not self._stop.wait(self.interval):
            self.run_once()
