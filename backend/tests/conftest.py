import os
import sys
import pytest

# Ensure the backend root (containing the `chessduel` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from eth_account import Account

from chessduel import create_app, db, socketio
from chessduel.services.sessions import get_services
from chessduel.services.sessions.auth import build_message, sign_message


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    PERSISTENCE = 'sql'
    RATELIMIT_ENABLED = False
    CLOCK_ALLOTMENT_SEC = 600
    CLOCK_TICK_MS = 1000
    MESSAGE_DOMAIN = 'ChessDuel'
    CORS_ORIGINS = '*'
    MAX_CONTENT_LENGTH = 50 * 1024


class Player:
    """A wallet-holding participant that signs requests the way a browser wallet would."""

    def __init__(self, seed: str):
        self.key = '0x' + seed * 32
        self.identity = Account.from_key(self.key).address.lower()

    def sign(self, purpose, timestamp=None, **fields):
        message = build_message('ChessDuel', purpose, fields, timestamp)
        return {'message': message, 'signature': sign_message(message, self.key)}


class RecordingCustody:
    def __init__(self):
        self.calls = []
        self.fail = False

    def _record(self, *call):
        if self.fail:
            raise RuntimeError('custody offline')
        self.calls.append(call)

    def lock(self, ref, identity, amount):
        self._record('lock', ref, identity, amount)

    def release(self, ref, winner):
        self._record('release', ref, winner)

    def refund(self, ref):
        self._record('refund', ref)


@pytest.fixture()
def custody():
    return RecordingCustody()


@pytest.fixture()
def flask_app(custody):
    application = create_app(TestConfig, custody=custody)
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def services(flask_app):
    return get_services(flask_app)


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


@pytest.fixture()
def alice():
    return Player('11')


@pytest.fixture()
def bob():
    return Player('22')


@pytest.fixture()
def carol():
    return Player('33')


def create_session(client, player, wager=0, settlement_ref=None):
    body = player.sign('create session', Wager=wager, SettlementRef=settlement_ref or '')
    body.update({'wager': wager, 'settlement_ref': settlement_ref})
    return client.post('/api/sessions', json=body)


def session_action(client, player, session_id, action, purpose=None):
    body = player.sign(purpose or f"{action} session", SessionId=session_id)
    return client.post(f"/api/sessions/{session_id}/{action}", json=body)


def start_match(client, white, black, **kwargs):
    session_id = create_session(client, white, **kwargs).get_json()['session_id']
    res = session_action(client, black, session_id, 'join')
    assert res.status_code == 200, res.get_json()
    return session_id
