from flask import Flask, send_from_directory
from flask_migrate import Migrate
from flask_login import LoginManager
from crowdfund.extensions import db
from crowdfund.config import Config
from crowdfund.errors import register_error_handlers
from crowdfund.middleware import load_user_from_request, setup_auth_middleware
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler('app.log'),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

migrate = Migrate()
login_manager = LoginManager()


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    from crowdfund.models import User

    @login_manager.user_loader
    def load_user(user_id):
        user = db.session.get(User, int(user_id))
        if user is None or user.deleted_at is not None:
            return None
        return user

    # API clients authenticate with a bearer token on every request.
    login_manager.request_loader(load_user_from_request)

    # Services shared across requests
    from crowdfund.services.email_service import EmailService
    from crowdfund.services.expiry_sweeper import ExpirySweeper
    from crowdfund.services.storage_service import LocalStorage
    from crowdfund.services.token_service import TokenBlacklist, TokenService

    tokens = TokenService.from_config(app.config, TokenBlacklist())
    app.extensions['token_service'] = tokens
    app.extensions['email_service'] = EmailService.from_config(
        app.config, tokens)
    app.extensions['storage'] = LocalStorage(
        app.config['LOCAL_STORAGE_PATH'], app.config['BACKEND_URL'])

    register_error_handlers(app)

    # Register blueprints
    from crowdfund.blueprints import (
        account,
        admin,
        auth,
        community,
        orders,
        projects,
    )

    app.register_blueprint(auth.bp, url_prefix='/')
    app.register_blueprint(account.bp, url_prefix='/')
    app.register_blueprint(projects.bp, url_prefix='/')
    app.register_blueprint(orders.bp, url_prefix='/')
    app.register_blueprint(community.bp, url_prefix='/')
    app.register_blueprint(admin.bp, url_prefix='/')

    @app.route('/uploads/<path:filename>', methods=['GET'])
    def uploaded_file(filename):
        return send_from_directory(
            app.extensions['storage'].root, filename)

    # Setup authentication middleware (bearer token on /api routes)
    setup_auth_middleware(app)

    sweeper = ExpirySweeper(app, app.config['SWEEP_INTERVAL_SECONDS'])
    app.extensions['expiry_sweeper'] = sweeper
    if app.config.get('SWEEP_ENABLED'):
        sweeper.start()

    # Note: Database tables are managed via Flask-Migrate
    # Use 'flask db upgrade' to create/update tables

    logger.info("Flask application initialized")
    return app
