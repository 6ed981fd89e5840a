"""Python client for the session API.

``SessionMirror`` is the client's copy of one session. It accepts full
snapshots from the REST endpoint and deltas from the push channel in any
order and converges on the newest version it has seen. ``DuelClient`` signs
requests with a local key and can poll a session until it finishes.
"""

import time
from typing import Any, Callable, Dict, Optional

import requests
from eth_account import Account

from chessduel.errors import (
    AuthInvalid,
    AuthStale,
    ChessDuelError,
    Forbidden,
    NotFound,
    StateConflict,
    UpstreamUnavailable,
    ValidationError,
)
from chessduel.services.sessions import auth
from chessduel.services.sessions.types import Status

_ERRORS_BY_KIND = {
    'auth_invalid': AuthInvalid,
    'auth_stale': AuthStale,
    'validation': ValidationError,
    'state_conflict': StateConflict,
    'not_found': NotFound,
    'upstream_unavailable': UpstreamUnavailable,
}

TERMINAL_STATUSES = {s.value for s in Status if s.is_terminal}


class SessionMirror:
    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        self.state: Dict[str, Any] = {}
        self.needs_resync = False

    @property
    def version(self) -> int:
        return int(self.state.get('version') or 0)

    @property
    def status(self) -> Optional[str]:
        return self.state.get('status')

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _accepts(self, payload: Dict[str, Any]) -> bool:
        sid = payload.get('session_id')
        if self.session_id is None:
            self.session_id = sid
        return sid == self.session_id

    def apply_snapshot(self, snapshot: Dict[str, Any]) -> bool:
        """Replace local state with ``snapshot`` unless it is older. Returns True when applied."""
        if not snapshot or not self._accepts(snapshot):
            return False
        if int(snapshot.get('version') or 0) < self.version:
            return False
        self.state = dict(snapshot)
        self.needs_resync = False
        return True

    def apply_delta(self, delta: Dict[str, Any]) -> bool:
        """Merge a push payload. Old or duplicate deltas are ignored."""
        if not delta or not self._accepts(delta):
            return False
        version = int(delta.get('version') or 0)
        if version <= self.version:
            return False
        if not self.state or version > self.version + 1:
            # A push went missing; the merged view may lag until the next snapshot.
            self.needs_resync = True
        merged = dict(self.state)
        merged.update({k: v for k, v in delta.items() if k not in ('by', 'concede')})
        self.state = merged
        return True


class DuelClient:
    def __init__(self, base_url: str, private_key=None, domain: str = 'ChessDuel', timeout: float = 10.0,
                 http: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.private_key = private_key
        self.domain = domain
        self.timeout = timeout
        self.http = http or requests.Session()
        self.identity = Account.from_key(private_key).address.lower() if private_key else None

    # -- transport --
    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            res = self.http.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise UpstreamUnavailable('server_unreachable', str(exc)) from exc
        try:
            body = res.json()
        except ValueError:
            body = {}
        if res.status_code >= 400:
            reason = body.get('error') or f"http_{res.status_code}"
            if res.status_code == 403:
                raise Forbidden(reason, body.get('message'))
            raise _ERRORS_BY_KIND.get(body.get('kind'), ChessDuelError)(reason, body.get('message'))
        return body

    def signed(self, purpose: str, fields: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        if self.private_key is None:
            raise ValueError('a private key is required for signed requests')
        message = auth.build_message(self.domain, purpose, fields)
        return {'message': message, 'signature': auth.sign_message(message, self.private_key)}

    # -- sessions --
    def create(self, wager: int = 0, settlement_ref: Optional[str] = None) -> Dict[str, Any]:
        body = self.signed(auth.PURPOSE_CREATE, {'Wager': wager, 'SettlementRef': settlement_ref or ''})
        body.update({'wager': str(wager), 'settlement_ref': settlement_ref})
        return self._request('POST', '/api/sessions', json=body)

    def _session_action(self, session_id: str, action: str, purpose: str) -> Dict[str, Any]:
        body = self.signed(purpose, {'SessionId': session_id})
        return self._request('POST', f"/api/sessions/{session_id}/{action}", json=body)

    def join(self, session_id: str) -> Dict[str, Any]:
        return self._session_action(session_id, 'join', auth.PURPOSE_JOIN)

    def cancel(self, session_id: str) -> Dict[str, Any]:
        return self._session_action(session_id, 'cancel', auth.PURPOSE_CANCEL)

    def concede(self, session_id: str) -> Dict[str, Any]:
        return self._session_action(session_id, 'concede', auth.PURPOSE_CONCEDE)

    def timeout(self, session_id: str) -> Dict[str, Any]:
        return self._session_action(session_id, 'timeout', auth.PURPOSE_TIMEOUT)

    def snapshot(self, session_id: str) -> Dict[str, Any]:
        return self._request('GET', f"/api/sessions/{session_id}")

    def result(self, session_id: str) -> Dict[str, Any]:
        return self._request('GET', f"/api/sessions/{session_id}/result")

    def list_sessions(self, status: str = 'waiting'):
        return self._request('GET', '/api/sessions', params={'status': status})['sessions']

    def set_username(self, username: str) -> Dict[str, Any]:
        body = self.signed(auth.PURPOSE_USERNAME, {'Username': username.strip()})
        body['username'] = username
        return self._request('POST', '/api/profile', json=body)

    def register_payload(self) -> Dict[str, str]:
        """Signed body for the socket ``register_identity`` event."""
        return self.signed(auth.PURPOSE_REGISTER)

    def poll(self, session_id: str, mirror: Optional[SessionMirror] = None, interval: float = 2.0,
             max_polls: Optional[int] = None, sleep: Callable[[float], None] = time.sleep) -> SessionMirror:
        """Fetch snapshots into ``mirror`` until it reports a terminal status."""
        mirror = mirror or SessionMirror(session_id)
        polls = 0
        while not mirror.finished:
            if max_polls is not None and polls >= max_polls:
                break
            mirror.apply_snapshot(self.snapshot(session_id))
            polls += 1
            if not mirror.finished:
                sleep(interval)
        return mirror
