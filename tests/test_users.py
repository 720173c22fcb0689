from io import BytesIO
import re
from conftest import PASSWORD, auth_headers, login, register
from crowdfund.errors import ErrorCode
from crowdfund.extensions import db
from crowdfund.models import AuditLog, User

ADDRESS = {
    'receiver_name': 'Alice',
    'phone': '5550100',
    'province': 'North',
    'city': 'Springfield',
    'district': 'Center',
    'detail_address': '1 Main Street',
}


def _token_from(message):
    return re.search(r'token=([^"<\s]+)', message['body']).group(1)


def test_register_and_login(client, outbox):
    resp = register(client, 'alice')
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['username'] == 'alice'
    assert data['is_verified'] is False
    assert 'password_hash' not in data

    token = login(client, 'alice')
    profile = client.get('/api/profile', headers=auth_headers(token))
    assert profile.status_code == 200
    assert profile.get_json()['data']['email'] == 'alice@example.com'

    # A verification mail was queued and delivered.
    assert outbox.sent[0]['to'] == 'alice@example.com'


def test_login_with_email(client):
    register(client, 'alice')
    resp = client.post('/api/login', json={
        'username': 'ALICE@example.com', 'password': PASSWORD})
    assert resp.status_code == 200


def test_weak_password_is_rejected_before_any_write(app, client):
    resp = register(client, 'bob', password='short')
    assert resp.status_code == 400
    assert resp.get_json()['code'] == ErrorCode.WEAK_PASSWORD
    with app.app_context():
        assert User.query.count() == 0


def test_duplicate_username_and_email(client):
    register(client, 'alice')
    resp = register(client, 'alice', email='other@example.com')
    assert resp.status_code == 409
    assert resp.get_json()['code'] == ErrorCode.USER_EXISTS

    resp = register(client, 'alice2', email='alice@example.com')
    assert resp.status_code == 409
    assert resp.get_json()['code'] == ErrorCode.ALREADY_EXISTS


def test_bad_credentials(app, client):
    register(client, 'alice')
    resp = client.post(
        '/api/login', json={'username': 'alice', 'password': 'Wrong1!xx'})
    assert resp.status_code == 401
    assert resp.get_json()['code'] == ErrorCode.INVALID_CREDENTIALS
    with app.app_context():
        assert AuditLog.query.filter_by(action='LOGIN_FAILED').count() == 1


def test_registration_survives_mail_failure(app, client, outbox):
    outbox.fail_with = OSError('smtp down')
    resp = register(client, 'alice')
    assert resp.status_code == 201
    with app.app_context():
        assert User.query.filter_by(username='alice').count() == 1
    assert len(app.extensions['email_service'].queue.dead_letters) == 1


def test_protected_route_requires_token(client):
    resp = client.get('/api/profile')
    assert resp.status_code == 401
    assert resp.get_json()['code'] == ErrorCode.UNAUTHORIZED

    resp = client.get('/api/profile', headers=auth_headers('garbage'))
    assert resp.status_code == 401
    assert resp.get_json()['code'] == ErrorCode.INVALID_TOKEN


def test_logout_blacklists_token(client, make_user):
    _, headers = make_user('alice')
    assert client.post('/api/logout', headers=headers).status_code == 200
    resp = client.get('/api/profile', headers=headers)
    assert resp.status_code == 401
    assert resp.get_json()['code'] == ErrorCode.INVALID_TOKEN


def test_refresh_token_replaces_old_token(client, make_user):
    _, headers = make_user('alice')
    resp = client.post('/api/refresh-token', headers=headers)
    assert resp.status_code == 200
    new_token = resp.get_json()['data']['token']

    assert client.get(
        '/api/profile', headers=auth_headers(new_token)).status_code == 200
    assert client.get('/api/profile', headers=headers).status_code == 401


def test_refresh_accepts_expired_token(app, client, make_user):
    user_id, _ = make_user('alice')
    tokens = app.extensions['token_service']
    expired = tokens._encode(
        {'user_id': user_id}, tokens.ttl * -1)
    resp = client.post('/api/refresh-token', json={'token': expired})
    assert resp.status_code == 200


def test_verify_email(client, outbox):
    register(client, 'alice')
    token = _token_from(outbox.sent[0])
    resp = client.get(f'/api/verify-email?token={token}')
    assert resp.status_code == 200
    assert resp.get_json()['data']['is_verified'] is True


def test_password_reset_flow(client, outbox):
    register(client, 'alice')
    resp = client.post(
        '/api/request-password-reset', json={'email': 'alice@example.com'})
    assert resp.status_code == 200
    token = _token_from(outbox.sent[-1])

    resp = client.post('/api/reset-password', json={
        'token': token, 'password': 'N3w-password'})
    assert resp.status_code == 200
    login(client, 'alice', 'N3w-password')


def test_password_reset_for_unknown_email_looks_the_same(client, outbox):
    resp = client.post(
        '/api/request-password-reset', json={'email': 'ghost@example.com'})
    assert resp.status_code == 200
    assert outbox.sent == []


def test_reset_password_requires_strong_password(client, outbox):
    register(client, 'alice')
    client.post(
        '/api/request-password-reset', json={'email': 'alice@example.com'})
    token = _token_from(outbox.sent[-1])
    resp = client.post(
        '/api/reset-password', json={'token': token, 'password': 'weak'})
    assert resp.get_json()['code'] == ErrorCode.WEAK_PASSWORD


def test_admin_login_requires_admin_role(client):
    register(client, 'alice')
    resp = client.post(
        '/api/admin/login', json={'username': 'alice', 'password': PASSWORD})
    assert resp.status_code == 403


def test_update_profile(client, make_user, outbox):
    _, headers = make_user('alice')
    make_user('bob')

    resp = client.put(
        '/api/profile', json={'username': 'bob'}, headers=headers)
    assert resp.get_json()['code'] == ErrorCode.USER_EXISTS

    resp = client.put('/api/profile', json={
        'bio': 'hello', 'email': 'new@example.com'}, headers=headers)
    data = resp.get_json()['data']
    assert data['bio'] == 'hello'
    assert data['email'] == 'new@example.com'
    assert data['is_verified'] is False
    assert outbox.sent[-1]['to'] == 'new@example.com'


def test_change_password_needs_current_password(client, make_user):
    _, headers = make_user('alice')
    resp = client.put('/api/profile', json={
        'password': 'An0ther-pass', 'current_password': 'wrong'},
        headers=headers)
    assert resp.get_json()['code'] == ErrorCode.INVALID_CREDENTIALS

    resp = client.put('/api/profile', json={
        'password': 'An0ther-pass', 'current_password': PASSWORD},
        headers=headers)
    assert resp.status_code == 200
    login(client, 'alice', 'An0ther-pass')


def test_delete_account_is_soft(app, client, make_user):
    user_id, headers = make_user('alice')
    assert client.delete('/api/profile', headers=headers).status_code == 200
    assert client.get('/api/profile', headers=headers).status_code == 401

    resp = client.post(
        '/api/login', json={'username': 'alice', 'password': PASSWORD})
    assert resp.get_json()['code'] == ErrorCode.INVALID_CREDENTIALS
    with app.app_context():
        assert db.session.get(User, user_id).deleted_at is not None


def test_upload_avatar(client, make_user):
    _, headers = make_user('alice')
    resp = client.post(
        '/api/profile/avatar',
        data={'avatar': (BytesIO(b'png-bytes'), 'me.png')},
        headers=headers,
        content_type='multipart/form-data')
    assert resp.status_code == 200
    url = resp.get_json()['data']['avatar_url']
    assert url.startswith('http://testserver/uploads/avatars/')

    served = client.get(url.replace('http://testserver', ''))
    assert served.status_code == 200
    assert served.data == b'png-bytes'


def test_upload_avatar_rejects_other_file_types(client, make_user):
    _, headers = make_user('alice')
    resp = client.post(
        '/api/profile/avatar',
        data={'avatar': (BytesIO(b'#!/bin/sh'), 'run.sh')},
        headers=headers,
        content_type='multipart/form-data')
    assert resp.status_code == 400


# Addresses

def test_first_address_becomes_default(client, make_user):
    _, headers = make_user('alice')
    resp = client.post('/api/addresses', json=ADDRESS, headers=headers)
    assert resp.status_code == 201
    assert resp.get_json()['data']['is_default'] is True

    resp = client.post('/api/addresses', json=ADDRESS, headers=headers)
    assert resp.get_json()['data']['is_default'] is False


def test_single_default_address(client, make_user):
    _, headers = make_user('alice')
    first = client.post(
        '/api/addresses', json=ADDRESS, headers=headers).get_json()['data']
    second = client.post(
        '/api/addresses', json=dict(ADDRESS, is_default=True),
        headers=headers).get_json()['data']

    addresses = client.get(
        '/api/addresses', headers=headers).get_json()['data']
    defaults = [a['id'] for a in addresses if a['is_default']]
    assert defaults == [second['id']]

    client.put(f"/api/addresses/{first['id']}/default", headers=headers)
    addresses = client.get(
        '/api/addresses', headers=headers).get_json()['data']
    defaults = [a['id'] for a in addresses if a['is_default']]
    assert defaults == [first['id']]


def test_deleting_default_address_promotes_another(client, make_user):
    _, headers = make_user('alice')
    first = client.post(
        '/api/addresses', json=ADDRESS, headers=headers).get_json()['data']
    second = client.post(
        '/api/addresses', json=ADDRESS, headers=headers).get_json()['data']

    resp = client.delete(f"/api/addresses/{first['id']}", headers=headers)
    assert resp.status_code == 200
    addresses = client.get(
        '/api/addresses', headers=headers).get_json()['data']
    assert [a['id'] for a in addresses] == [second['id']]
    assert addresses[0]['is_default'] is True


def test_foreign_address_is_not_found(client, make_user):
    _, alice = make_user('alice')
    _, bob = make_user('bob')
    address = client.post(
        '/api/addresses', json=ADDRESS, headers=alice).get_json()['data']

    resp = client.put(
        f"/api/addresses/{address['id']}", json={'city': 'X'}, headers=bob)
    assert resp.status_code == 404
    resp = client.delete(f"/api/addresses/{address['id']}", headers=bob)
    assert resp.status_code == 404


def test_address_requires_fields(client, make_user):
    _, headers = make_user('alice')
    resp = client.post(
        '/api/addresses', json={'receiver_name': 'A'}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()['code'] == ErrorCode.VALIDATION
