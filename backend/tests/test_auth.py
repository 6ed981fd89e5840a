import pytest

from chessduel.errors import AuthInvalid, AuthStale, ValidationError
from chessduel.services.sessions.auth import (
    PURPOSE_CANCEL,
    PURPOSE_JOIN,
    IdentityVerifier,
    build_message,
    parse_message,
    sign_message,
)

NOW = 1_700_000_000_000
SESSION_ID = '3f0c6a1e-8d3b-4c4a-9f2e-5b7a1c2d3e4f'


@pytest.fixture()
def verifier():
    return IdentityVerifier(domain='ChessDuel', ttl_ms=120_000, skew_ms=60_000, clock=lambda: NOW)


def test_message_format_is_human_readable():
    message = build_message('ChessDuel', PURPOSE_JOIN, {'SessionId': SESSION_ID}, NOW)
    assert message == f"ChessDuel join session\nSessionId: {SESSION_ID}\nTimestamp: {NOW}"
    parsed = parse_message(message, 'ChessDuel')
    assert parsed.purpose == 'join session'
    assert parsed.fields == {'SessionId': SESSION_ID}
    assert parsed.timestamp == NOW


def test_verify_recovers_signer(verifier, alice):
    body = alice.sign(PURPOSE_JOIN, timestamp=NOW, SessionId=SESSION_ID)
    identity = verifier.verify(body['message'], body['signature'], PURPOSE_JOIN, {'SessionId': SESSION_ID})
    assert identity == alice.identity


def test_signature_by_other_key_yields_other_identity(verifier, alice, bob):
    message = build_message('ChessDuel', PURPOSE_JOIN, {'SessionId': SESSION_ID}, NOW)
    assert verifier.verify(message, sign_message(message, bob.key)) == bob.identity != alice.identity


@pytest.mark.parametrize('offset', [-120_001, 60_001])
def test_timestamp_outside_window_is_stale(verifier, alice, offset):
    body = alice.sign(PURPOSE_JOIN, timestamp=NOW + offset, SessionId=SESSION_ID)
    with pytest.raises(AuthStale):
        verifier.verify(body['message'], body['signature'], PURPOSE_JOIN)


@pytest.mark.parametrize('offset', [-120_000, 0, 60_000])
def test_timestamp_inside_window_is_fresh(verifier, alice, offset):
    body = alice.sign(PURPOSE_JOIN, timestamp=NOW + offset, SessionId=SESSION_ID)
    assert verifier.verify(body['message'], body['signature'], PURPOSE_JOIN) == alice.identity


def test_missing_timestamp_is_stale(verifier, alice):
    message = f"ChessDuel join session\nSessionId: {SESSION_ID}"
    with pytest.raises(AuthStale):
        verifier.verify(message, sign_message(message, alice.key))


def test_tampered_message_does_not_recover_signer(verifier, alice):
    body = alice.sign(PURPOSE_JOIN, timestamp=NOW, SessionId=SESSION_ID)
    tampered = body['message'].replace('join', 'cancel')
    identity = None
    try:
        identity = verifier.verify(tampered, body['signature'])
    except AuthInvalid:
        pass
    assert identity != alice.identity


def test_garbage_signature_is_invalid(verifier, alice):
    body = alice.sign(PURPOSE_JOIN, timestamp=NOW, SessionId=SESSION_ID)
    with pytest.raises(AuthInvalid) as exc:
        verifier.verify(body['message'], '0xdeadbeef')
    assert exc.value.reason == 'invalid_signature'


def test_purpose_must_match(verifier, alice):
    body = alice.sign(PURPOSE_JOIN, timestamp=NOW, SessionId=SESSION_ID)
    with pytest.raises(AuthInvalid) as exc:
        verifier.verify(body['message'], body['signature'], PURPOSE_CANCEL)
    assert exc.value.reason == 'purpose_mismatch'


def test_signed_field_must_match_claim(verifier, alice):
    body = alice.sign(PURPOSE_JOIN, timestamp=NOW, SessionId=SESSION_ID)
    other = '0e1d2c3b-4a59-4687-a9b8-c7d6e5f4a3b2'
    with pytest.raises(AuthInvalid) as exc:
        verifier.verify(body['message'], body['signature'], PURPOSE_JOIN, {'SessionId': other})
    assert exc.value.reason == 'field_mismatch'


def test_missing_signature_is_validation_error(verifier):
    with pytest.raises(ValidationError):
        verifier.verify_payload({'message': 'ChessDuel join session'}, PURPOSE_JOIN)
