# chargesync/__init__.py
import logging

import click
from flask import Flask, current_app
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy

from config import Config

db = SQLAlchemy()
login = LoginManager()

ENGINE_EXTENSION = 'chargesync_engine'


def configure_logging(level_name):
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    logging.getLogger('chargesync').setLevel(level)
    # requests/urllib3 log every connection at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_engine():
    """The AutomationEngine bound to the current app."""
    return current_app.extensions[ENGINE_EXTENSION]


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    configure_logging(app.config.get('LOG_LEVEL', 'INFO'))

    db.init_app(app)
    login.init_app(app)

    from chargesync import models  # noqa: F401  (registers models and the user loader)
    from chargesync.automations import AutomationEngine
    from chargesync.routes import bp as automation_bp

    app.extensions[ENGINE_EXTENSION] = AutomationEngine(app.config)
    app.register_blueprint(automation_bp)

    with app.app_context():
        db.create_all()

    @app.cli.command('automation-cycle')
    @click.option('--user-id', type=int, default=None, help='Run for a single user instead of all users.')
    @click.option('--force', is_flag=True, help='Ignore the automation interval gate.')
    def automation_cycle(user_id, force):
        """Run the automation cycle (call from cron or a systemd timer)."""
        engine = get_engine()
        if user_id is not None:
            result = engine.run_cycle(user_id, force=force)
            click.echo(f"User {user_id}: {result['outcome']} {result.get('reason', '')}".rstrip())
        else:
            outcomes = engine.run_due_cycles()
            click.echo(', '.join(f"{key}={count}" for key, count in sorted(outcomes.items())) or 'No users')

    logging.getLogger(__name__).info('ChargeSync started')
    return app
