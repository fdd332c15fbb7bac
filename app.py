"""
SignageCore - Digital signage scheduling and live-dispatch server
Main Flask application entry point
"""
import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, current_app, jsonify
from flask_login import LoginManager
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO

from config import config
from models import db, User
from utils.connection_registry import ConnectionRegistry
from utils.daypart import DaypartEngine
from utils.dispatch import DispatchEngine
from utils.live_signaling import LiveSessionCoordinator
from utils.transport import SocketIOTransport

# Global instances
socketio = SocketIO()


class SignageCore:
    """
    Per-app wiring of the scheduling and live-dispatch core

    The dispatch engine, daypart engine and live coordinator share one
    connection registry and one push transport.
    """

    def __init__(self, transport):
        self.registry = ConnectionRegistry()
        self.transport = transport
        self.dispatch = DispatchEngine(self.registry, transport)
        self.daypart = DaypartEngine(self.registry, transport)
        self.live = LiveSessionCoordinator(self.registry, transport)


def get_core(app=None) -> SignageCore:
    """Core of the given app, or of the current app"""
    return (app or current_app).extensions['signage']


def create_app(config_name=None, transport=None):
    """Application factory pattern"""

    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    config[config_name].init_app(app)

    # Initialize extensions
    db.init_app(app)

    # CORS configuration
    CORS(app, resources={
        r"/api/*": {
            "origins": app.config['CORS_ORIGINS'],
            "methods": ["GET", "POST", "PUT", "PATCH", "DELETE"],
            "allow_headers": ["Content-Type"]
        }
    })

    # Rate limiting
    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[app.config['RATELIMIT_DEFAULT']],
        storage_uri=app.config['RATELIMIT_STORAGE_URL'],
        enabled=app.config['RATELIMIT_ENABLED']
    )

    cors_origins = app.config['CORS_ORIGINS']
    if cors_origins == ['*']:
        cors_origins = '*'
    socketio.init_app(app,
                      cors_allowed_origins=cors_origins,
                      async_mode='threading',
                      logger=app.config['DEBUG'],
                      engineio_logger=app.config['DEBUG'])

    # Login manager
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'error': {
            'kind': 'forbidden', 'message': 'Authentication required', 'details': {}
        }}), 401

    # Setup logging
    setup_logging(app)

    # Scheduling and live-dispatch core
    app.extensions['signage'] = SignageCore(transport or SocketIOTransport(socketio))

    # Register blueprints
    from routes.schedule_routes import schedule_bp
    from routes.daypart_routes import daypart_bp
    from routes.live_routes import live_bp

    app.register_blueprint(schedule_bp, url_prefix='/api')
    app.register_blueprint(daypart_bp, url_prefix='/api/daypart')
    app.register_blueprint(live_bp, url_prefix='/api/live')

    # Import SocketIO event handlers
    import socketio_events  # noqa: F401

    @app.route('/health')
    def health():
        return jsonify({
            'status': 'ok',
            'connected_displays': len(get_core(app).registry)
        })

    # Error handlers
    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'success': False, 'error': {
            'kind': 'not_found', 'message': 'Resource not found', 'details': {}
        }}), 404

    @app.errorhandler(429)
    def rate_limited(error):
        return jsonify({'success': False, 'error': {
            'kind': 'validation', 'message': f'Rate limit exceeded: {error.description}', 'details': {}
        }}), 429

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({'success': False, 'error': {
            'kind': 'persistence', 'message': 'Internal server error', 'details': {}
        }}), 500

    # Store limiter in app for use in blueprints
    app.limiter = limiter  # type: ignore

    # Background sweep and daypart jobs
    if app.config.get('SCHEDULER_ENABLED'):
        from utils.scheduler import init_scheduler, shutdown_scheduler
        init_scheduler(app)

        # Register shutdown handler
        import atexit
        atexit.register(shutdown_scheduler)

    return app


def setup_logging(app):
    """Configure application logging"""

    if not app.debug and not app.testing:
        # Create logs directory if it doesn't exist
        if not os.path.exists(app.config['LOG_FOLDER']):
            os.mkdir(app.config['LOG_FOLDER'])

        # Application log handler
        file_handler = RotatingFileHandler(
            app.config['APP_LOG_FILE'],
            maxBytes=10240000,  # 10MB
            backupCount=10
        )
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(logging.INFO)
        app.logger.addHandler(file_handler)

        # Module loggers (utils.*) share the same handler
        logging.getLogger('utils').addHandler(file_handler)
        logging.getLogger('utils').setLevel(logging.INFO)

        app.logger.setLevel(logging.INFO)
        app.logger.info('SignageCore startup')


if __name__ == '__main__':
    # socketio_events binds to app.socketio, so run through the importable module
    from app import create_app, socketio

    app = create_app()

    # Create database tables if they don't exist
    with app.app_context():
        db.create_all()

    # Run the application with SocketIO
    socketio.run(
        app,
        host=app.config['FLASK_HOST'],
        port=app.config['FLASK_PORT'],
        debug=app.config['DEBUG'],
        allow_unsafe_werkzeug=True
    )
