from flask import Blueprint, jsonify, request

from chessduel.errors import ValidationError
from chessduel.services.sessions import get_services
from chessduel.services.sessions.auth import (
    PURPOSE_CANCEL,
    PURPOSE_CONCEDE,
    PURPOSE_CREATE,
    PURPOSE_JOIN,
    PURPOSE_TIMEOUT,
)
from chessduel.services.sessions.lifecycle import parse_settlement_ref, parse_wager
from chessduel.services.sessions.types import Status, validate_session_id

sessions = Blueprint('sessions', __name__)


def _signed_identity(purpose, session_id=None, **fields):
    data = request.get_json(silent=True) or {}
    expect = dict(fields)
    if session_id is not None:
        expect['SessionId'] = session_id
    return get_services().verifier.verify_payload(data, purpose, expect=expect), data


@sessions.route('', methods=['POST'])
def create_session():
    data = request.get_json(silent=True) or {}
    wager = parse_wager(data.get('wager'))
    ref = parse_settlement_ref(data.get('settlement_ref'))
    identity, _ = _signed_identity(PURPOSE_CREATE, Wager=wager, SettlementRef=ref or '')
    view = get_services().lifecycle.create(identity, wager=wager, settlement_ref=ref)
    return jsonify(view), 201


@sessions.route('', methods=['GET'])
def list_sessions():
    raw = request.args.get('status', Status.WAITING.value)
    if raw not in (Status.WAITING.value, Status.PLAYING.value):
        raise ValidationError('invalid_status', 'status must be waiting or playing')
    return jsonify({'sessions': get_services().lifecycle.list_sessions(Status(raw))})


@sessions.route('/<string:session_id>', methods=['GET'])
def get_session(session_id):
    return jsonify(get_services().store.snapshot(validate_session_id(session_id)))


@sessions.route('/<string:session_id>/join', methods=['POST'])
def join_session(session_id):
    session_id = validate_session_id(session_id)
    identity, _ = _signed_identity(PURPOSE_JOIN, session_id)
    return jsonify(get_services().lifecycle.join(session_id, identity))


@sessions.route('/<string:session_id>/cancel', methods=['POST'])
def cancel_session(session_id):
    session_id = validate_session_id(session_id)
    identity, _ = _signed_identity(PURPOSE_CANCEL, session_id)
    return jsonify(get_services().lifecycle.cancel(session_id, identity))


@sessions.route('/<string:session_id>/concede', methods=['POST'])
def concede_session(session_id):
    session_id = validate_session_id(session_id)
    identity, _ = _signed_identity(PURPOSE_CONCEDE, session_id)
    return jsonify(get_services().lifecycle.concede(session_id, identity))


@sessions.route('/<string:session_id>/timeout', methods=['POST'])
def timeout_session(session_id):
    session_id = validate_session_id(session_id)
    identity, _ = _signed_identity(PURPOSE_TIMEOUT, session_id)
    return jsonify(get_services().lifecycle.timeout(session_id, identity))


@sessions.route('/<string:session_id>/result', methods=['GET'])
def session_result(session_id):
    return jsonify(get_services().store.get(validate_session_id(session_id)).result())
