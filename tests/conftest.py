from datetime import datetime, timedelta
import pytest
from crowdfund import create_app
from crowdfund.config import TestConfig
from crowdfund.extensions import db
from crowdfund.models import Project, ProjectStatus, User, UserRole

PASSWORD = 'Passw0rd!'


class RecordingTransport:
    """Keeps sent messages in memory; can be told to fail."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    def send(self, to_email, subject, body):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({'to': to_email, 'subject': subject, 'body': body})


@pytest.fixture
def app(tmp_path):
    config = type('LocalTestConfig', (TestConfig,), {
        'LOCAL_STORAGE_PATH': str(tmp_path / 'uploads'),
    })
    app = create_app(config)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def outbox(app):
    transport = RecordingTransport()
    app.extensions['email_service'].queue.transport = transport
    return transport


def auth_headers(token):
    return {'Authorization': f'Bearer {token}'}


def register(client, username, email=None, password=PASSWORD):
    return client.post('/api/register', json={
        'username': username,
        'email': email or f'{username}@example.com',
        'password': password,
    })


def login(client, username, password=PASSWORD):
    resp = client.post(
        '/api/login', json={'username': username, 'password': password})
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()['data']['token']


@pytest.fixture
def make_user(client):
    """Register and log in a user; returns (user_id, headers)."""

    def _make(username):
        resp = register(client, username)
        assert resp.status_code == 201, resp.get_json()
        user_id = resp.get_json()['data']['id']
        return user_id, auth_headers(login(client, username))

    return _make


@pytest.fixture
def admin_headers(app, client):
    with app.app_context():
        admin = User(
            username='root',
            email='root@example.com',
            role=UserRole.ADMIN,
            is_verified=True)
        admin.set_password(PASSWORD)
        db.session.add(admin)
        db.session.commit()
    resp = client.post(
        '/api/admin/login', json={'username': 'root', 'password': PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    return auth_headers(resp.get_json()['data']['token'])


def project_payload(**overrides):
    data = {
        'title': 'Solar Lamp',
        'description': 'A lamp that charges in the sun',
        'end_date': (datetime.utcnow() + timedelta(days=30)).isoformat(),
        'min_reward_amount': 50,
        'goals': [
            {'amount': 1000, 'description': 'first batch'},
            {'amount': 500, 'description': 'prototype'},
        ],
        'images': ['http://img/a.png', 'http://img/b.png'],
        'long_images': ['http://img/long.png'],
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_project(app, client):
    """Create a project through the API and force it into ``status``."""

    def _make(headers, status=ProjectStatus.ACTIVE, **overrides):
        resp = client.post(
            '/api/projects', json=project_payload(**overrides),
            headers=headers)
        assert resp.status_code == 201, resp.get_json()
        project_id = resp.get_json()['data']['id']
        if status != ProjectStatus.PENDING_REVIEW:
            with app.app_context():
                project = db.session.get(Project, project_id)
                project.status = status
                db.session.commit()
        return project_id

    return _make


def expire_project(app, project_id):
    with app.app_context():
        project = db.session.get(Project, project_id)
        project.end_date = datetime.utcnow() - timedelta(minutes=1)
        db.session.commit()


def pledge(client, headers, project_id, amount, **extra):
    body = {'amount': amount}
    body.update(extra)
    return client.post(
        f'/api/payments/projects/{project_id}', json=body, headers=headers)
