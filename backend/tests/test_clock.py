import threading

import pytest

from chessduel.services.sessions.types import Status


@pytest.fixture()
def playing(services, alice, bob):
    created = services.lifecycle.create(alice.identity)
    services.lifecycle.join(created['session_id'], bob.identity)
    return created['session_id']


def test_tick_debits_only_side_to_move(services, playing, alice):
    services.clock.tick()
    clocks = services.store.snapshot(playing)['clocks']
    assert clocks == {'white': 599_000, 'black': 600_000}
    services.lifecycle.move(playing, alice.identity, 'e2', 'e4')
    services.clock.tick()
    clocks = services.store.snapshot(playing)['clocks']
    assert clocks == {'white': 599_000, 'black': 599_000}


def test_waiting_sessions_do_not_tick(services, carol):
    session_id = services.lifecycle.create(carol.identity)['session_id']
    services.clock.tick()
    snap = services.store.snapshot(session_id)
    assert snap['clocks'] == {'white': 0, 'black': 0}
    assert snap['version'] == 1


def test_flag_fall_finishes_session(services, playing):
    session = services.store.get(playing)
    session.white_ms = 1500
    assert services.clock.tick() == []
    assert services.clock.tick() == [playing]
    result = services.store.get(playing).result()
    assert result['outcome'] == 'black'
    assert result['reason'] == 'timeout'
    assert services.store.snapshot(playing)['clocks']['white'] == 0
    # Finished sessions are no longer ticked.
    assert services.clock.tick() == []


def test_client_timeout_after_scheduler_is_noop(services, playing, alice):
    services.store.get(playing).white_ms = 1000
    services.clock.tick()
    version = services.store.snapshot(playing)['version']
    assert services.lifecycle.timeout(playing, alice.identity)['outcome'] == 'black'
    assert services.store.snapshot(playing)['version'] == version


def test_tick_skips_session_with_mutation_in_flight(services, playing):
    lock = services.store.locks.get(playing)
    held = threading.Event()
    release = threading.Event()

    def hold():
        with lock:
            held.set()
            release.wait(5)

    worker = threading.Thread(target=hold)
    worker.start()
    held.wait(5)
    try:
        services.clock.tick()
    finally:
        release.set()
        worker.join(5)
    assert services.store.snapshot(playing)['clocks']['white'] == 600_000


def test_clock_update_goes_to_session_room(flask_app, services, playing):
    from chessduel import socketio
    sio = socketio.test_client(flask_app, namespace='/ws')
    sio.emit('spectate_session', {'session_id': playing}, namespace='/ws')
    sio.get_received('/ws')
    services.clock.tick()
    updates = [p['args'][0] for p in sio.get_received('/ws') if p['name'] == 'clock_update']
    assert updates[0]['clocks']['white'] == 599_000
    assert updates[0]['turn'] == 'white'


def test_scheduler_disabled_in_tests(flask_app, services):
    assert services.clock.running is False
    assert services.store.cached([Status.PLAYING]) == []


def test_clock_update_reaches_identity_channel_without_gaps(flask_app, services, playing, alice):
    from chessduel import socketio
    lobby = socketio.test_client(flask_app, namespace='/ws')
    lobby.emit('register_identity', alice.sign('register identity'), namespace='/ws')
    lobby.get_received('/ws')
    start = services.store.snapshot(playing)['version']
    services.clock.tick()
    services.clock.tick()
    versions = [p['args'][0]['version'] for p in lobby.get_received('/ws') if p['name'] == 'clock_update']
    assert versions == [start + 1, start + 2]
