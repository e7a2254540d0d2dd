from flask import Flask
from flask_login import LoginManager
from flask_migrate import Migrate
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.exceptions import HTTPException
from quizlead_crm.config import Config
from quizlead_crm.logging_config import setup_logging
from quizlead_crm.models import db, User
from quizlead_crm.errors import CrmError
from quizlead_crm.utils import api_response
import click
import os

migrate = Migrate()


def _database_uri(app):
    """Instance-folder SQLite when no DATABASE_URL is set (/tmp on read-only filesystems)."""
    try:
        os.makedirs(app.instance_path, exist_ok=True)
        return 'sqlite:///' + os.path.join(app.instance_path, 'quizlead.db')
    except OSError:
        return 'sqlite:////tmp/quizlead.db'


def create_app(config_overrides=None):
    app = Flask(__name__, instance_relative_config=True)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    # --- CONFIGURATION ---
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)
    if not app.config.get('SQLALCHEMY_DATABASE_URI'):
        app.config['SQLALCHEMY_DATABASE_URI'] = _database_uri(app)

    if not app.testing:
        setup_logging(app.config['LOG_LEVEL'])

    # --- INITIALIZE EXTENSIONS ---
    db.init_app(app)
    migrate.init_app(app, db)

    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.request_loader
    def load_user_from_request(request):
        # API clients authenticate with the JWT returned at login
        auth_header = request.headers.get('Authorization', '')
        if not auth_header.startswith('Bearer '):
            return None
        from quizlead_crm.services.auth_service import AuthService
        return AuthService.user_from_token(auth_header.split(" ", 1)[1].strip())

    @login_manager.unauthorized_handler
    def unauthorized():
        return api_response(False, error={'code': 'unauthorized', 'message': 'Autenticação necessária.'}, status=401)

    register_error_handlers(app)
    register_blueprints(app)
    register_commands(app)

    with app.app_context():
        db.create_all()
        _bootstrap_admin(app)

    return app


def register_error_handlers(app):
    @app.errorhandler(CrmError)
    def handle_crm_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            app.logger.error(f"{error.code}: {error.message}")
        return api_response(False, error=error.to_dict(), status=error.status_code)

    @app.errorhandler(404)
    def not_found_error(error):
        return api_response(False, error={'code': 'not_found', 'message': 'Recurso não encontrado.'}, status=404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return api_response(False, error={'code': 'method_not_allowed', 'message': 'Método não permitido.'}, status=405)

    @app.errorhandler(500)
    def internal_error(error):
        # Fail-safe rollback
        db.session.rollback()
        original = getattr(error, 'original_exception', None) or error
        app.logger.error(f"Unhandled error: {original!r}", exc_info=original if isinstance(original, BaseException) else None)
        return api_response(False, error={'code': 'internal_error', 'message': 'Erro interno do servidor.'}, status=500)

    @app.errorhandler(HTTPException)
    def http_error(error):
        return api_response(False, error={'code': error.name.lower().replace(' ', '_'), 'message': error.description}, status=error.code)


def register_blueprints(app):
    from quizlead_crm.auth import auth as auth_blueprint
    from quizlead_crm.routes.public import public_bp
    from quizlead_crm.routes.quizzes import quizzes_bp
    from quizlead_crm.routes.leads import leads_bp
    from quizlead_crm.routes.users import users_bp
    from quizlead_crm.routes.templates import templates_bp
    from quizlead_crm.routes.settings import settings_bp
    from quizlead_crm.routes.whatsapp import whatsapp_bp
    from quizlead_crm.routes.dashboard import dashboard_bp
    from quizlead_crm.routes.notifications import notifications_bp
    from quizlead_crm.routes.jobs import jobs_bp

    app.register_blueprint(auth_blueprint)
    app.register_blueprint(public_bp)
    app.register_blueprint(quizzes_bp)
    app.register_blueprint(leads_bp)
    app.register_blueprint(users_bp)
    app.register_blueprint(templates_bp)
    app.register_blueprint(settings_bp)
    app.register_blueprint(whatsapp_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(jobs_bp)


def register_commands(app):
    @app.cli.command('reset-daily-counters')
    def reset_daily_counters_command():
        """Zeroes every user's leads-received-today counter."""
        from quizlead_crm.services.distribution_service import DistributionService
        count = DistributionService.reset_daily_counters()
        click.echo(f"Reset {count} counters.")

    @app.cli.command('run-remarketing')
    def run_remarketing_command():
        """Runs the active remarketing rules once."""
        from quizlead_crm.services.remarketing_service import RemarketingService
        result = RemarketingService.run()
        click.echo(f"Rules: {result['rules']} | sent: {result['sent']} | failed: {result['failed']} | skipped: {result['skipped']}")

    @app.cli.command('seed-demo')
    def seed_demo_command():
        """Creates the demo admin, salespeople, a published quiz and a default template."""
        from quizlead_crm.seed import seed_demo
        summary = seed_demo()
        click.echo(f"Seeded: {summary}")

    @app.cli.command('create-admin')
    @click.option('--name', default='Administrador')
    @click.option('--email', prompt=True)
    @click.option('--phone', prompt=True)
    @click.password_option()
    def create_admin_command(name, email, phone, password):
        from quizlead_crm.services.user_service import UserService
        admin = UserService.create_admin(name, email, password, phone)
        click.echo(f"Admin {admin.email} created (id={admin.id}).")


def _bootstrap_admin(app):
    email = app.config.get('SEED_ADMIN_EMAIL')
    password = app.config.get('SEED_ADMIN_PASSWORD')
    if not email or not password or User.query.first():
        return
    from quizlead_crm.services.user_service import UserService
    UserService.create_admin('Administrador', email, password, app.config['SEED_ADMIN_PHONE'])
    app.logger.info(f"Bootstrap admin created: {email}")
