from datetime import datetime, timedelta
from decimal import Decimal
from conftest import expire_project, pledge
from crowdfund.extensions import db
from crowdfund.models import (
    AuditLog,
    Order,
    OrderStatus,
    Project,
    ProjectStatus,
    RefundRequest,
    RefundStatus,
)
from crowdfund.services.expiry_sweeper import (
    ExpirySweeper,
    sweep_expired_projects,
    total_paid,
)


def _paid_pledge(client, headers, project_id, amount):
    order_id = pledge(
        client, headers, project_id, amount).get_json()['data']['id']
    client.post(f'/api/orders/{order_id}/pay', headers=headers)
    return order_id


def _status(app, project_id):
    with app.app_context():
        return db.session.get(Project, project_id).status


def test_underfunded_expired_project_fails(app, client, make_user,
                                           make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    paid_id = _paid_pledge(client, backer, project_id, 100)
    pending_id = pledge(
        client, backer, project_id, 100).get_json()['data']['id']
    expire_project(app, project_id)

    failed = app.extensions['expiry_sweeper'].run_once()
    assert failed == [project_id]
    assert _status(app, project_id) == ProjectStatus.FAILED

    with app.app_context():
        for order_id in (paid_id, pending_id):
            order = db.session.get(Order, order_id)
            assert order.status == OrderStatus.CROWDFUNDING_FAILED
        audit = AuditLog.query.filter_by(action='PROJECT_FAILED').one()
        assert audit.actor_role == 'SYSTEM'
        assert audit.target_id == project_id


def test_lowest_goal_met_by_paid_orders(app, client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    _paid_pledge(client, backer, project_id, 500)
    expire_project(app, project_id)

    assert app.extensions['expiry_sweeper'].run_once() == []
    assert _status(app, project_id) == ProjectStatus.ACTIVE


def test_unpaid_orders_do_not_count(app, client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    pledge(client, backer, project_id, 800)
    expire_project(app, project_id)

    with app.app_context():
        assert total_paid(project_id) == Decimal('0')
        assert sweep_expired_projects() == [project_id]


def test_running_projects_are_left_alone(app, client, make_user,
                                         make_project):
    _, maker = make_user('maker')
    project_id = make_project(maker)
    with app.app_context():
        assert sweep_expired_projects() == []
    assert _status(app, project_id) == ProjectStatus.ACTIVE


def test_terminal_projects_are_skipped(app, client, make_user, make_project):
    _, maker = make_user('maker')
    completed = make_project(maker, status=ProjectStatus.COMPLETED)
    rejected = make_project(maker, status=ProjectStatus.REJECTED)
    for project_id in (completed, rejected):
        expire_project(app, project_id)

    with app.app_context():
        assert sweep_expired_projects() == []
    assert _status(app, completed) == ProjectStatus.COMPLETED
    assert _status(app, rejected) == ProjectStatus.REJECTED


def test_projects_without_goals_are_skipped(app, make_user):
    user_id, _ = make_user('maker')
    with app.app_context():
        project = Project(
            title='No goals',
            description='x',
            creator_id=user_id,
            status=ProjectStatus.ACTIVE,
            end_date=datetime.utcnow() - timedelta(days=1))
        db.session.add(project)
        db.session.commit()
        project_id = project.id

        assert sweep_expired_projects() == []
        assert db.session.get(
            Project, project_id).status == ProjectStatus.ACTIVE


def test_sweep_uses_given_clock(app, client, make_user, make_project):
    _, maker = make_user('maker')
    project_id = make_project(maker)
    later = datetime.utcnow() + timedelta(days=31)
    with app.app_context():
        assert sweep_expired_projects(now=later) == [project_id]


def test_sweeper_thread_start_and_stop(app):
    sweeper = ExpirySweeper(app, interval=60)
    sweeper.start()
    assert sweeper.running
    sweeper.start()
    sweeper.stop()
    assert not sweeper.running


def test_sweeper_is_not_started_when_disabled(app):
    assert not app.extensions['expiry_sweeper'].running


# Automatic refunds

def test_auto_refund_failed_project(app, client, make_user, make_project,
                                    admin_headers):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    _, other = make_user('other')
    project_id = make_project(maker)
    paid_id = _paid_pledge(client, backer, project_id, 100)
    requested_id = pledge(
        client, other, project_id, 50).get_json()['data']['id']
    client.post(
        f'/api/orders/{requested_id}/refund', json={'reason': 'slow'},
        headers=other)
    expire_project(app, project_id)
    app.extensions['expiry_sweeper'].run_once()

    resp = client.post(
        f'/api/admin/projects/{project_id}/auto-refund',
        headers=admin_headers)
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert sorted(data['refunded_order_ids']) == sorted(
        [paid_id, requested_id])

    with app.app_context():
        for order_id in (paid_id, requested_id):
            assert db.session.get(
                Order, order_id).status == OrderStatus.REFUNDED
            refunds = RefundRequest.query.filter_by(order_id=order_id).all()
            assert len(refunds) == 1
            assert refunds[0].status == RefundStatus.APPROVED
        assert RefundRequest.query.filter_by(
            order_id=requested_id).one().reason == 'slow'

    # Nothing is left to refund on a second run.
    resp = client.post(
        f'/api/admin/projects/{project_id}/auto-refund',
        headers=admin_headers)
    assert resp.get_json()['data']['refunded_order_ids'] == []


def test_auto_refund_requires_failed_project(
        client, make_user, make_project, admin_headers):
    _, maker = make_user('maker')
    project_id = make_project(maker)
    resp = client.post(
        f'/api/admin/projects/{project_id}/auto-refund',
        headers=admin_headers)
    assert resp.status_code == 409
    resp = client.post(
        '/api/admin/projects/999/auto-refund', headers=admin_headers)
    assert resp.status_code == 404
