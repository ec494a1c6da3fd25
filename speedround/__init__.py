from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from speedround.main import main
    flask_app.register_blueprint(main)

    from speedround.api.attempts import attempts
    flask_app.register_blueprint(attempts, url_prefix='/api/attempts')

    from speedround.api.rounds import rounds
    flask_app.register_blueprint(rounds, url_prefix='/api/rounds')

    from speedround.api.claims import claims
    flask_app.register_blueprint(claims, url_prefix='/api/claims')

    from speedround.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    from speedround.models import AdminUser

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(AdminUser, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return {'error': 'Admin login required'}, 401

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from speedround.models import Round
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            admin = AdminUser(username='admin')
            admin.set_password('password')
            db.session.add(admin)
            db.session.add(Round(name='Demo Round', slug='demo'))

            db.session.commit()
            print('Database has been reset and seeded!')

    @click.command('select-winner')
    @click.argument('round_id', type=int)
    @click.option('--method', default='fastest_time', help='fastest_time or random')
    def select_winner_command(round_id, method):
        """Closes a round and commits its winner."""
        from speedround.api.rounds import build_selector
        from speedround.services.contest.errors import ContestError
        with flask_app.app_context():
            try:
                result = build_selector().select(round_id, method)
            except ContestError as exc:
                raise click.ClickException(str(exc))
            if result.winner is None:
                print(f'Round {round_id}: no eligible winner')
            elif result.created:
                print(f'Round {round_id}: winner attempt {result.winner.id} ({result.winner.total_time:.6f}s)')
            else:
                print(f'Round {round_id}: winner already set (attempt {result.winner.id})')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(select_winner_command)

    return flask_app
