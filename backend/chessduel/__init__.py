from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
limiter = Limiter(key_func=get_remote_address)
socketio = SocketIO(async_mode=None)


def create_app(config_class=Config, custody=None):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = flask_app.config.get('CORS_ORIGINS') or '*'

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    limiter.init_app(flask_app)
    CORS(flask_app, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from chessduel.errors import ChessDuelError

    @flask_app.errorhandler(ChessDuelError)
    def handle_chessduel_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    import chessduel.models  # noqa: F401  (registers tables)
    from chessduel.services.sessions import EXTENSION_KEY, build_services
    if (flask_app.config.get('PERSISTENCE') or 'sql').lower() == 'sql':
        with flask_app.app_context():
            db.create_all()
    services = build_services(flask_app, socketio, custody=custody)
    flask_app.extensions[EXTENSION_KEY] = services
    services.store.load_all()

    from chessduel.main import main
    flask_app.register_blueprint(main, url_prefix='/api')

    from chessduel.api.sessions import sessions
    flask_app.register_blueprint(sessions, url_prefix='/api/sessions')

    from chessduel.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    services.clock.start(flask_app, socketio)

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates the session and profile tables."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            print('Database has been reset!')

    @click.command('settle-pending')
    def settle_pending_command():
        """Retries settlement for finished sessions that are pending or failed."""
        counts = services.settlement.settle_pending()
        print(', '.join(f"{state}={n}" for state, n in counts.items()))

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(settle_pending_command)

    return flask_app
