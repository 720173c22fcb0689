from datetime import datetime
from sqlalchemy.exc import SQLAlchemyError
from conftest import expire_project, pledge
from crowdfund.errors import ErrorCode
from crowdfund.extensions import db
from crowdfund.models import (
    Order,
    OrderStatus,
    Pledge,
    Project,
    ProjectStatus,
    RefundRequest,
)
from crowdfund.services import payment_service
from crowdfund.services.payment_service import format_order_number

ADDRESS = {
    'receiver_name': 'Bob',
    'phone': '5550101',
    'province': 'North',
    'city': 'Springfield',
    'district': 'Center',
    'detail_address': '2 Main Street',
}


def test_pledge_updates_project_total(app, client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)

    resp = pledge(client, backer, project_id, 100)
    assert resp.status_code == 201
    order = resp.get_json()['data']
    assert order['status'] == 'pending'
    assert order['amount'] == 100.0
    assert order['is_reward'] is True

    pledge(client, backer, project_id, 200)
    with app.app_context():
        project = db.session.get(Project, project_id)
        assert float(project.total_amount) == 300.0
        assert round(project.progress, 2) == 20.0
        assert Order.query.filter_by(project_id=project_id).count() == 2


def test_pledge_to_missing_project(client, make_user):
    _, backer = make_user('backer')
    resp = pledge(client, backer, 999, 100)
    assert resp.status_code == 404
    assert resp.get_json()['code'] == ErrorCode.PROJECT_NOT_FOUND


def test_pledge_to_ended_project(app, client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    expire_project(app, project_id)

    resp = pledge(client, backer, project_id, 100)
    assert resp.status_code == 400
    assert resp.get_json()['code'] == ErrorCode.PROJECT_ENDED
    with app.app_context():
        assert Order.query.count() == 0


def test_pledge_to_closed_project(client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    for status in (ProjectStatus.FAILED, ProjectStatus.REJECTED,
                   ProjectStatus.COMPLETED):
        project_id = make_project(maker, status=status)
        resp = pledge(client, backer, project_id, 100)
        assert resp.status_code == 409


def test_pledge_to_project_pending_review(client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker, status=ProjectStatus.PENDING_REVIEW)
    assert pledge(client, backer, project_id, 10).status_code == 201


def test_reward_threshold_is_inclusive(client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)

    at = pledge(client, backer, project_id, 50).get_json()['data']
    below = pledge(client, backer, project_id, 49.99).get_json()['data']
    assert at['is_reward'] is True
    assert below['is_reward'] is False


def test_pledge_amount_must_be_positive(client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    for amount in (0, -5, 'abc', None):
        resp = pledge(client, backer, project_id, amount)
        assert resp.status_code == 400, amount
        assert resp.get_json()['code'] == ErrorCode.VALIDATION


def test_pledge_amount_out_of_range(app, client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    for amount in ('1e30', '1e15', 10000000000, '10000000000.00'):
        resp = pledge(client, backer, project_id, amount)
        assert resp.status_code == 400, amount
        assert resp.get_json()['code'] == ErrorCode.VALIDATION

    resp = pledge(client, backer, project_id, '9999999999.99')
    assert resp.status_code == 201
    with app.app_context():
        assert Order.query.count() == 1


def test_failed_pledge_leaves_nothing_behind(
        app, client, make_user, make_project, monkeypatch):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)

    def broken():
        raise SQLAlchemyError('lock timeout')

    monkeypatch.setattr(payment_service, '_progress_expression', broken)
    resp = pledge(client, backer, project_id, 100)
    assert resp.status_code == 500
    body = resp.get_json()
    assert body['code'] == ErrorCode.DATABASE
    assert body['message'] == 'update project amount failed'

    with app.app_context():
        assert Pledge.query.count() == 0
        assert Order.query.count() == 0
        project = db.session.get(Project, project_id)
        assert float(project.total_amount) == 0.0


def test_pledge_with_address(client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    _, other = make_user('other')
    project_id = make_project(maker)
    address = client.post(
        '/api/addresses', json=ADDRESS, headers=backer).get_json()['data']

    resp = pledge(client, other, project_id, 100, address_id=address['id'])
    assert resp.status_code == 400

    resp = pledge(client, backer, project_id, 100, address_id=address['id'])
    assert resp.status_code == 201
    assert resp.get_json()['data']['address']['id'] == address['id']


def test_pledge_alias_on_project_route(client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    resp = client.post(
        f'/api/projects/{project_id}/pledge', json={'amount': 60},
        headers=backer)
    assert resp.status_code == 201
    assert resp.get_json()['data']['project_id'] == project_id


def test_order_detail(client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    order_id = pledge(client, backer, project_id, 100).get_json()['data']['id']

    resp = client.get(f'/api/orders/{order_id}', headers=backer)
    data = resp.get_json()['data']
    assert data['order_number'] == format_order_number(order_id)
    assert data['order_number'].startswith(f'ORD-{datetime.utcnow().year}-')
    assert data['project_title'] == 'Solar Lamp'
    assert data['project_image'] == 'http://img/a.png'
    assert data['shipping_status'] == 'not_shipped'
    assert data['refund_status'] == 'not_requested'


def test_order_number_format():
    assert format_order_number(7, datetime(2024, 5, 1)) == 'ORD-2024-0007'
    assert format_order_number(12345, datetime(2024, 5, 1)) == \
        'ORD-2024-12345'


def test_orders_are_private(client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    _, other = make_user('other')
    project_id = make_project(maker)
    order_id = pledge(client, backer, project_id, 100).get_json()['data']['id']

    assert client.get(
        f'/api/orders/{order_id}', headers=other).status_code == 404
    listing = client.get('/api/orders', headers=backer).get_json()['data']
    assert [o['id'] for o in listing['items']] == [order_id]
    assert client.get(
        '/api/orders', headers=other).get_json()['data']['total'] == 0


def test_confirm_payment(client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    order_id = pledge(client, backer, project_id, 100).get_json()['data']['id']

    resp = client.post(f'/api/orders/{order_id}/pay', headers=backer)
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['status'] == 'paid'
    assert data['paid_at'] is not None

    resp = client.post(f'/api/orders/{order_id}/pay', headers=backer)
    assert resp.status_code == 409


# Refunds

def test_duplicate_pending_refund_conflicts(app, client, make_user,
                                            make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    order_id = pledge(client, backer, project_id, 100).get_json()['data']['id']

    url = f'/api/orders/{order_id}/refund'
    resp = client.post(url, json={'reason': 'changed my mind'}, headers=backer)
    assert resp.status_code == 201
    assert resp.get_json()['data']['status'] == 'pending'

    resp = client.post(url, json={'reason': 'again'}, headers=backer)
    assert resp.status_code == 409
    assert resp.get_json()['code'] == ErrorCode.CONFLICT
    with app.app_context():
        assert RefundRequest.query.filter_by(order_id=order_id).count() == 1


def test_refund_of_someone_elses_order(client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    _, other = make_user('other')
    project_id = make_project(maker)
    order_id = pledge(client, backer, project_id, 100).get_json()['data']['id']

    resp = client.post(f'/api/orders/{order_id}/refund', headers=other)
    assert resp.status_code == 403
    resp = client.post('/api/orders/999/refund', headers=other)
    assert resp.status_code == 404


def test_default_refund_reason(client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    order_id = pledge(client, backer, project_id, 100).get_json()['data']['id']

    resp = client.post(f'/api/orders/{order_id}/refund/failed', headers=backer)
    assert resp.get_json()['data']['reason'] == 'user requested refund'
    refunds = client.get(
        '/api/refund-requests', headers=backer).get_json()['data']
    assert len(refunds) == 1


def _refund(client, headers, order_id):
    resp = client.post(
        f'/api/orders/{order_id}/refund', json={'reason': 'r'},
        headers=headers)
    return resp.get_json()['data']['id']


def test_approved_refund_marks_order_refunded(
        client, make_user, make_project, admin_headers):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    order_id = pledge(client, backer, project_id, 100).get_json()['data']['id']
    refund_id = _refund(client, backer, order_id)

    resp = client.post(
        f'/api/admin/refund-requests/{refund_id}/process',
        json={'approved': True, 'comment': 'ok'}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.get_json()['data']['status'] == 'approved'

    order = client.get(
        f'/api/orders/{order_id}', headers=backer).get_json()['data']
    assert order['status'] == 'refunded'
    assert order['refund_status'] == 'approved'

    # A decided request cannot be processed twice.
    resp = client.post(
        f'/api/admin/refund-requests/{refund_id}/process',
        json={'approved': False}, headers=admin_headers)
    assert resp.status_code == 409

    # Nor can a refunded order ask again.
    resp = client.post(f'/api/orders/{order_id}/refund', headers=backer)
    assert resp.status_code == 409


def test_rejected_refund(client, make_user, make_project, admin_headers):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    order_id = pledge(client, backer, project_id, 100).get_json()['data']['id']
    refund_id = _refund(client, backer, order_id)

    resp = client.post(
        f'/api/admin/refund-requests/{refund_id}/process',
        json={'approved': False, 'comment': 'shipped already'},
        headers=admin_headers)
    data = resp.get_json()['data']
    assert data['status'] == 'rejected'
    assert data['admin_comment'] == 'shipped already'

    order = client.get(
        f'/api/orders/{order_id}', headers=backer).get_json()['data']
    assert order['status'] == 'refund_rejected'
    assert order['refund_status'] == 'rejected'

    # After a rejection a new request may be opened.
    assert client.post(
        f'/api/orders/{order_id}/refund', headers=backer).status_code == 201


def test_process_refund_requires_decision(
        client, make_user, make_project, admin_headers):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    order_id = pledge(client, backer, project_id, 100).get_json()['data']['id']
    refund_id = _refund(client, backer, order_id)

    resp = client.post(
        f'/api/admin/refund-requests/{refund_id}/process', json={},
        headers=admin_headers)
    assert resp.status_code == 400
    resp = client.post(
        '/api/admin/refund-requests/999/process', json={'approved': True},
        headers=admin_headers)
    assert resp.status_code == 404


def test_admin_lists_refund_requests(
        client, make_user, make_project, admin_headers):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    order_id = pledge(client, backer, project_id, 100).get_json()['data']['id']
    _refund(client, backer, order_id)

    data = client.get(
        '/api/admin/refund-requests?status=pending',
        headers=admin_headers).get_json()['data']
    assert data['total'] == 1
    data = client.get(
        '/api/admin/refund-requests?status=approved',
        headers=admin_headers).get_json()['data']
    assert data['total'] == 0
    assert client.get(
        '/api/admin/refund-requests?status=maybe',
        headers=admin_headers).status_code == 400


def test_orders_follow_failed_project(app, client, make_user, make_project):
    _, maker = make_user('maker')
    _, backer = make_user('backer')
    project_id = make_project(maker)
    order_id = pledge(client, backer, project_id, 100).get_json()['data']['id']

    with app.app_context():
        db.session.get(Project, project_id).status = ProjectStatus.FAILED
        db.session.commit()

    listing = client.get('/api/orders', headers=backer).get_json()['data']
    assert listing['items'][0]['status'] == 'crowdfunding_failed'
    with app.app_context():
        order = db.session.get(Order, order_id)
        assert order.status == OrderStatus.CROWDFUNDING_FAILED
