from chessduel.services.sessions.fanout import ConnectionRegistry, audience, plan
from chessduel.services.sessions.types import CLOCK_KEYS, MOVE_KEYS, UPDATE_KEYS, MatchSession

SESSION_ID = '3f0c6a1e-8d3b-4c4a-9f2e-5b7a1c2d3e4f'
WHITE = '0x' + 'a' * 40
BLACK = '0x' + 'b' * 40


def test_audience_is_session_room_plus_participants():
    session = MatchSession(session_id=SESSION_ID, creator=WHITE)
    assert audience(session) == [f'session:{SESSION_ID}', f'identity:{WHITE}']
    session.opponent = BLACK
    assert audience(session) == [f'session:{SESSION_ID}', f'identity:{WHITE}', f'identity:{BLACK}']


def test_plan_targets_full_audience():
    session = MatchSession(session_id=SESSION_ID, creator=WHITE, opponent=BLACK)
    delivery = plan('move', session, {'x': 1})
    assert delivery.event == 'move'
    assert len(delivery.rooms) == 3


def test_deltas_are_subsets_of_projection():
    session = MatchSession(session_id=SESSION_ID, creator=WHITE, opponent=BLACK, version=4)
    full = session.project()
    for keys in (MOVE_KEYS, UPDATE_KEYS, CLOCK_KEYS):
        delta = session.delta(keys)
        assert delta['version'] == 4
        assert all(full[k] == v for k, v in delta.items())


def test_connection_registry_tracks_one_participant_room():
    registry = ConnectionRegistry()
    registry.bind_identity('sid1', WHITE)
    assert registry.enter('sid1', 'a') is None
    assert registry.enter('sid1', 'b') == 'a'
    assert registry.enter('sid1', 'b') is None
    assert registry.session('sid1') == 'b'
    assert registry.leave('sid1', 'a') is None
    assert registry.leave('sid1', 'b') == 'b'
    assert registry.session('sid1') is None
    registry.watch('sid2', 'a')
    assert len(registry) == 2
    registry.drop('sid1')
    registry.drop('sid2')
    assert len(registry) == 0
