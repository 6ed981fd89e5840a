from functools import wraps

from flask import current_app, request
from flask_socketio import emit, join_room, leave_room

from chessduel import socketio
from chessduel.errors import AuthInvalid, ChessDuelError, Forbidden, ValidationError
from chessduel.services.sessions import get_services
from chessduel.services.sessions.auth import PURPOSE_REGISTER
from chessduel.services.sessions.fanout import identity_room, session_room
from chessduel.services.sessions.types import short, validate_session_id


def _get_sid() -> str:
    return request.sid  # type: ignore


def _session_id(data) -> str:
    value = data.get('session_id')
    if not value:
        raise ValidationError('session_id_required', 'session_id is required')
    return validate_session_id(value)


def _reports_errors(action):
    """Turn domain errors into an ``<action>_error`` event for the caller only."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(data=None):
            # Clients may send a bare session id instead of an object.
            if isinstance(data, str):
                data = {'session_id': data}
            try:
                if data is not None and not isinstance(data, dict):
                    raise ValidationError('invalid_payload', 'Event payload must be an object or a session id')
                return fn(data or {})
            except ChessDuelError as exc:
                payload = {'reason': exc.reason, 'message': exc.message}
                if isinstance(data, dict) and isinstance(data.get('session_id'), str):
                    payload['session_id'] = data['session_id']
                current_app.logger.info(f"[ws-reject] action={action} sid={_get_sid()} reason={exc.reason}")
                emit(f"{action}_error", payload)
        return wrapper
    return decorator


def _caller_identity() -> str:
    identity = get_services().connections.identity(_get_sid())
    if not identity:
        raise AuthInvalid('identity_not_registered', 'Register an identity on this connection first')
    return identity


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_disconnect(*args):
    get_services().connections.drop(_get_sid())


@_reports_errors('register_identity')
def handle_register_identity(data):
    services = get_services()
    identity = services.verifier.verify_payload(data, PURPOSE_REGISTER)
    previous = services.connections.identity(_get_sid())
    if previous and previous != identity:
        leave_room(identity_room(previous))
    services.connections.bind_identity(_get_sid(), identity)
    join_room(identity_room(identity))
    current_app.logger.info(f"[ws-register] sid={_get_sid()} identity={short(identity)}")
    emit('identity_registered', {'identity': identity})


@_reports_errors('join_session')
def handle_join_session(data):
    services = get_services()
    session_id = _session_id(data)
    identity = _caller_identity()
    if services.store.get(session_id).side_of(identity) is None:
        raise Forbidden('not_a_participant', 'Not a player in this session; spectate instead')
    snapshot = services.store.snapshot(session_id)
    previous = services.connections.enter(_get_sid(), session_id)
    if previous:
        leave_room(session_room(previous))
    join_room(session_room(session_id))
    emit('session_snapshot', snapshot)


@_reports_errors('leave_session')
def handle_leave_session(data):
    connections = get_services().connections
    # Without an id, leave the session this socket sits in as a participant.
    session_id = _session_id(data) if data.get('session_id') else connections.session(_get_sid())
    if not session_id:
        raise ValidationError('session_id_required', 'session_id is required')
    connections.leave(_get_sid(), session_id)
    leave_room(session_room(session_id))
    emit('session_left', {'session_id': session_id})


@_reports_errors('spectate_session')
def handle_spectate_session(data):
    services = get_services()
    session_id = _session_id(data)
    snapshot = services.store.snapshot(session_id)
    services.connections.watch(_get_sid(), session_id)
    join_room(session_room(session_id))
    emit('session_snapshot', snapshot)


@_reports_errors('move')
def handle_move(data):
    session_id = _session_id(data)
    get_services().lifecycle.move(
        session_id,
        _caller_identity(),
        data.get('from'),
        data.get('to'),
        data.get('promotion') or 'q',
    )


@_reports_errors('offer_draw')
def handle_offer_draw(data):
    get_services().draws.offer(_session_id(data), _caller_identity())


@_reports_errors('accept_draw')
def handle_accept_draw(data):
    get_services().draws.accept(_session_id(data), _caller_identity())


@_reports_errors('decline_draw')
def handle_decline_draw(data):
    get_services().draws.decline(_session_id(data), _caller_identity())


@_reports_errors('withdraw_draw')
def handle_withdraw_draw(data):
    get_services().draws.withdraw(_session_id(data), _caller_identity())


def handle_ping(data=None):
    emit('pong', data or {})


HANDLERS = {
    'connect': handle_connect,
    'disconnect': handle_disconnect,
    'register_identity': handle_register_identity,
    'join_session': handle_join_session,
    'leave_session': handle_leave_session,
    'spectate_session': handle_spectate_session,
    'move': handle_move,
    'offer_draw': handle_offer_draw,
    'accept_draw': handle_accept_draw,
    'decline_draw': handle_decline_draw,
    'withdraw_draw': handle_withdraw_draw,
    'ping': handle_ping,
}


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    namespaces = ['/ws', '/'] if testing else ['/ws']
    for namespace in namespaces:
        for event, handler in HANDLERS.items():
            socketio.on_event(event, handler, namespace=namespace)
