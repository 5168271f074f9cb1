import os
import json
import atexit
import logging
from logging.handlers import TimedRotatingFileHandler
from flask import Flask


# Handlers installed by configure_logging, replaced when an app is recreated
_log_handlers = []


def configure_logging(app):
    """Configure application logging"""

    # Logs live next to the repository unless LOG_DIR says otherwise
    log_dir = app.config.get('LOG_DIR') or os.path.join(app.config['REPOSITORY_PATH'], 'logs')
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler, one file per day
    file_handler = TimedRotatingFileHandler(
        os.path.join(log_dir, 'chunkvault.log'),
        when='midnight',
        backupCount=30
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    root_logger = logging.getLogger()
    for handler in _log_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _log_handlers[:] = [console_handler, file_handler]

    root_logger.setLevel(log_level)
    for handler in _log_handlers:
        root_logger.addHandler(handler)

    # Flask app logger propagates to the root handlers
    app.logger.setLevel(log_level)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)}, dir: {log_dir})")


def _should_start_scheduler(app) -> bool:
    if not app.config.get('SCHEDULER_ENABLED', False):
        app.logger.info("Scheduler disabled by configuration")
        return False

    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    # Scheduler initialization logic:
    # - Development mode: Only in Flask reloader child process (not parent)
    # - Production mode: Only in designated scheduler worker (SCHEDULER_WORKER=true)
    if is_development:
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
        return is_reloader_child

    app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")
    return is_scheduler_worker


def create_app(config_name=None, with_scheduler=None):
    """
    Flask application factory.

    Args:
        config_name: Key of chunkvault.config.config (defaults to FLASK_ENV or production)
        with_scheduler: Force the scheduler on or off; None decides from configuration
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from chunkvault.config import config
    app.config.from_object(config[config_name])

    # Optional JSON overrides
    config_file = os.environ.get('CHUNKVAULT_CONFIG')
    if config_file:
        app.config.from_file(config_file, load=json.load)

    # Configure logging
    configure_logging(app)

    # Register blueprints
    from chunkvault.routes import snapshot_routes
    app.register_blueprint(snapshot_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # CLI commands
    from chunkvault.cli import register_commands
    register_commands(app)

    # Initialize and start scheduler (only in designated worker or development child process)
    from chunkvault.scheduler import init_scheduler, start_scheduler, stop_scheduler

    should_init_scheduler = _should_start_scheduler(app) if with_scheduler is None else with_scheduler

    if should_init_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
