import os
import tempfile
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name, default='false'):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or (
        'dev-secret-key-change-in-production'
    )
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or (
        'sqlite:///crowdfund.db'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bearer tokens
    JWT_SECRET = os.environ.get('JWT_SECRET') or SECRET_KEY
    JWT_ALGORITHM = 'HS256'
    TOKEN_TTL_HOURS = int(os.environ.get('TOKEN_TTL_HOURS', '24'))
    # Deadline for the authentication stage of a request.
    AUTH_TIMEOUT_SECONDS = float(os.environ.get('AUTH_TIMEOUT_SECONDS', '5'))

    # Outbound mail. When disabled, messages are written to the log.
    EMAIL_ENABLED = _env_flag('EMAIL_ENABLED')
    SMTP_HOST = os.environ.get('SMTP_HOST', '')
    SMTP_PORT = int(os.environ.get('SMTP_PORT', '465'))
    SMTP_USER = os.environ.get('SMTP_USER', '')
    SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD', '')
    SMTP_SENDER = os.environ.get('SMTP_SENDER') or SMTP_USER
    EMAIL_MAX_ATTEMPTS = int(os.environ.get('EMAIL_MAX_ATTEMPTS', '3'))
    EMAIL_RETRY_DELAY_SECONDS = float(
        os.environ.get('EMAIL_RETRY_DELAY_SECONDS', '2'))
    EMAIL_ASYNC = True

    FRONTEND_URL = os.environ.get('FRONTEND_URL', 'http://localhost:3000')
    BACKEND_URL = os.environ.get('BACKEND_URL', 'http://localhost:5000')

    # Uploaded files (avatars, project and post images)
    LOCAL_STORAGE_PATH = os.environ.get('LOCAL_STORAGE_PATH', 'uploads')
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024

    # Expired project sweep
    SWEEP_ENABLED = _env_flag('SWEEP_ENABLED', 'true')
    SWEEP_INTERVAL_SECONDS = int(os.environ.get('SWEEP_INTERVAL_SECONDS', '60'))

    # Pagination configuration
    ITEMS_PER_PAGE = 20
    MAX_PER_PAGE = 100

    # Seed admin account (init_data.py)
    ADMIN_USERNAME = os.environ.get('ADMIN_USERNAME', 'admin')
    ADMIN_EMAIL = os.environ.get('ADMIN_EMAIL', 'admin@example.com')
    ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD', 'Admin@12345')


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    JWT_SECRET = 'test-secret'
    EMAIL_ENABLED = False
    EMAIL_ASYNC = False
    EMAIL_RETRY_DELAY_SECONDS = 0
    SWEEP_ENABLED = False
    LOCAL_STORAGE_PATH = os.path.join(tempfile.gettempdir(), 'crowdfund-test')
    BACKEND_URL = 'http://testserver'
