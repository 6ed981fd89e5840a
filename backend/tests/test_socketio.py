import pytest

from chessduel import socketio
from conftest import create_session, session_action, start_match


def _events(sio, name):
    return [pkt['args'][0] for pkt in sio.get_received('/ws') if pkt['name'] == name]


def _connect_as(flask_app, player, session_id=None):
    sio = socketio.test_client(flask_app, namespace='/ws')
    sio.emit('register_identity', player.sign('register identity'), namespace='/ws')
    if session_id:
        sio.emit('join_session', {'session_id': session_id}, namespace='/ws')
    sio.get_received('/ws')
    return sio


@pytest.fixture()
def match(flask_app, client, alice, bob):
    session_id = start_match(client, alice, bob)
    white = _connect_as(flask_app, alice, session_id)
    black = _connect_as(flask_app, bob, session_id)
    yield session_id, white, black
    white.disconnect(namespace='/ws')
    black.disconnect(namespace='/ws')


def _move(sio, session_id, frm, to, promotion=None):
    sio.emit('move', {'session_id': session_id, 'from': frm, 'to': to, 'promotion': promotion}, namespace='/ws')


def test_socket_connect_and_ping(sio_client):
    assert sio_client.is_connected('/ws')
    sio_client.emit('ping', {'n': 1}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert any(pkt['name'] == 'connected' for pkt in received)
    assert any(pkt['name'] == 'pong' and pkt['args'][0] == {'n': 1} for pkt in received)


def test_register_identity_ack(sio_client, alice):
    sio_client.emit('register_identity', alice.sign('register identity'), namespace='/ws')
    acks = _events(sio_client, 'identity_registered')
    assert acks == [{'identity': alice.identity}]


def test_register_identity_rejects_wrong_purpose(sio_client, alice):
    sio_client.emit('register_identity', alice.sign('join session'), namespace='/ws')
    errors = _events(sio_client, 'register_identity_error')
    assert errors[0]['reason'] == 'purpose_mismatch'


def test_creator_hears_pairing_on_identity_channel(flask_app, client, alice, bob):
    lobby = _connect_as(flask_app, alice)
    session_id = create_session(client, alice).get_json()['session_id']
    session_action(client, bob, session_id, 'join')
    joined = _events(lobby, 'session_joined')
    assert len(joined) == 1
    assert joined[0]['opponent'] == bob.identity
    assert joined[0]['clocks'] == {'white': 600_000, 'black': 600_000}


def _rooms(sio):
    manager = socketio.server.manager
    return set(manager.get_rooms(manager.sid_from_eio_sid(sio.eio_sid, '/ws'), '/ws'))


def test_participant_join_session_sends_snapshot(flask_app, client, alice):
    session_id = create_session(client, alice).get_json()['session_id']
    sio = _connect_as(flask_app, alice)
    sio.emit('join_session', {'session_id': session_id}, namespace='/ws')
    snaps = _events(sio, 'session_snapshot')
    assert snaps[0]['session_id'] == session_id
    assert snaps[0]['status'] == 'waiting'
    assert f'session:{session_id}' in _rooms(sio)


def test_outsider_cannot_join_as_participant(flask_app, client, alice, carol):
    session_id = create_session(client, alice).get_json()['session_id']
    outsider = _connect_as(flask_app, carol)
    outsider.emit('join_session', {'session_id': session_id}, namespace='/ws')
    received = outsider.get_received('/ws')
    assert [p['name'] for p in received] == ['join_session_error']
    assert received[0]['args'][0]['reason'] == 'not_a_participant'
    assert f'session:{session_id}' not in _rooms(outsider)

    anon = socketio.test_client(flask_app, namespace='/ws')
    anon.get_received('/ws')
    anon.emit('join_session', {'session_id': session_id}, namespace='/ws')
    assert _events(anon, 'join_session_error')[0]['reason'] == 'identity_not_registered'


def test_bare_session_id_payloads_are_accepted(flask_app, client, alice, bob):
    session_id = start_match(client, alice, bob)
    sio = _connect_as(flask_app, alice)
    sio.emit('join_session', session_id, namespace='/ws')
    assert _events(sio, 'session_snapshot')[0]['session_id'] == session_id
    sio.emit('offer_draw', session_id, namespace='/ws')
    assert _events(sio, 'draw_offered')[0]['by'] == 'white'


def test_malformed_payloads_report_errors(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('join_session', ['not', 'an', 'object'], namespace='/ws')
    assert _events(sio_client, 'join_session_error')[0]['reason'] == 'invalid_payload'
    sio_client.emit('offer_draw', 'not-a-uuid', namespace='/ws')
    assert _events(sio_client, 'offer_draw_error')[0]['reason'] == 'invalid_session_id'
    sio_client.emit('register_identity', 42, namespace='/ws')
    assert _events(sio_client, 'register_identity_error')[0]['reason'] == 'invalid_payload'
    sio_client.emit('register_identity', 'just a string', namespace='/ws')
    assert _events(sio_client, 'register_identity_error')[0]['reason'] == 'signature_required'


def test_spectate_unknown_session_errors(sio_client):
    sio_client.emit('spectate_session', {'session_id': '3f0c6a1e-8d3b-4c4a-9f2e-5b7a1c2d3e4f'}, namespace='/ws')
    errors = _events(sio_client, 'spectate_session_error')
    assert errors[0]['reason'] == 'session_not_found'


def test_move_reaches_both_sides_once(match, alice):
    session_id, white, black = match
    _move(white, session_id, 'e2', 'e4')
    white_moves = _events(white, 'move')
    black_moves = _events(black, 'move')
    # White sits in both the session room and its identity room; still one delivery.
    assert len(white_moves) == 1
    assert len(black_moves) == 1
    assert black_moves[0]['last_move']['san'] == 'e4'
    assert black_moves[0]['turn'] == 'black'
    assert black_moves[0]['version'] == white_moves[0]['version']


def test_move_out_of_turn_rejected(match):
    session_id, white, black = match
    _move(black, session_id, 'e7', 'e5')
    errors = _events(black, 'move_error')
    assert errors[0]['reason'] == 'not_your_turn'
    assert _events(white, 'move') == []


def test_illegal_move_rejected(match):
    session_id, white, _ = match
    _move(white, session_id, 'e2', 'e5')
    assert _events(white, 'move_error')[0]['reason'] == 'illegal_move'


def test_move_requires_registered_identity(flask_app, match):
    session_id, _, _ = match
    anon = socketio.test_client(flask_app, namespace='/ws')
    anon.get_received('/ws')
    _move(anon, session_id, 'e2', 'e4')
    assert _events(anon, 'move_error')[0]['reason'] == 'identity_not_registered'


def test_checkmate_scenario(match, client):
    session_id, white, black = match
    for sio, frm, to in ((white, 'f2', 'f3'), (black, 'e7', 'e5'), (white, 'g2', 'g4'), (black, 'd8', 'h4')):
        _move(sio, session_id, frm, to)
    last = _events(white, 'move')[-1]
    assert last['status'] == 'finished'
    assert last['outcome'] == 'black'
    assert last['reason'] == 'checkmate'
    _move(white, session_id, 'a2', 'a3')
    assert _events(white, 'move_error')[0]['reason'] == 'not_playing'
    snap = client.get(f'/api/sessions/{session_id}').get_json()
    assert snap['outcome'] == 'black'
    assert snap['moves'] == ['f2f3', 'e7e5', 'g2g4', 'd8h4']


def test_spectator_converges_with_snapshot(flask_app, match, client):
    session_id, white, black = match
    _move(white, session_id, 'e2', 'e4')
    watcher = socketio.test_client(flask_app, namespace='/ws')
    watcher.emit('spectate_session', {'session_id': session_id}, namespace='/ws')
    snapshot = _events(watcher, 'session_snapshot')[0]
    _move(black, session_id, 'c7', 'c5')
    pushed = _events(watcher, 'move')[0]
    pulled = client.get(f'/api/sessions/{session_id}').get_json()
    assert snapshot['version'] < pushed['version'] == pulled['version']
    for key, value in pushed.items():
        assert pulled[key] == value


def test_joining_another_session_leaves_previous_room(flask_app, client, alice, bob):
    first = start_match(client, alice, bob)
    session_action(client, alice, first, 'concede')
    second = create_session(client, alice).get_json()['session_id']
    sio = _connect_as(flask_app, alice, first)
    assert f'session:{first}' in _rooms(sio)
    sio.emit('join_session', {'session_id': second}, namespace='/ws')
    rooms = _rooms(sio)
    assert f'session:{second}' in rooms
    assert f'session:{first}' not in rooms


def test_leave_session(flask_app, client, alice):
    session_id = create_session(client, alice).get_json()['session_id']
    sio = _connect_as(flask_app, alice, session_id)
    sio.emit('leave_session', {'session_id': session_id}, namespace='/ws')
    assert _events(sio, 'session_left') == [{'session_id': session_id}]
    assert f'session:{session_id}' not in _rooms(sio)


def test_leave_session_without_id_leaves_current_room(flask_app, client, alice):
    session_id = create_session(client, alice).get_json()['session_id']
    sio = _connect_as(flask_app, alice, session_id)
    sio.emit('leave_session', namespace='/ws')
    assert _events(sio, 'session_left') == [{'session_id': session_id}]
    assert f'session:{session_id}' not in _rooms(sio)
    sio.emit('leave_session', namespace='/ws')
    assert _events(sio, 'leave_session_error')[0]['reason'] == 'session_id_required'
