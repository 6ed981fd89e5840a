"""Settlement with the external custody collaborator.

Settlement runs after a session is finished and persisted, dispatched as a
background task so a slow or failing custody call never stalls gameplay.
Failures mark the session ``settlement=failed``; ``settle_pending`` (exposed
as ``flask settle-pending``) re-invokes them out-of-band.
"""

import logging
import threading
from typing import Callable, Dict, Optional, Protocol

import requests

from chessduel.errors import UpstreamUnavailable
from .store import SessionStore
from .types import MatchSession, Outcome, SettlementState, Status, short


class CustodyClient(Protocol):
    def lock(self, ref: str, identity: str, amount: int) -> None:
        ...

    def release(self, ref: str, winner: str) -> None:
        ...

    def refund(self, ref: str) -> None:
        ...


class HttpCustodyClient:
    """JSON-over-HTTP custody service addressed by settlement reference."""

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.http = session or requests.Session()

    def _post(self, ref: str, action: str, body: Dict) -> Dict:
        url = f"{self.base_url}/escrows/{ref}/{action}"
        try:
            res = self.http.post(url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise UpstreamUnavailable('custody_unreachable', str(exc)) from exc
        if res.status_code >= 300:
            raise UpstreamUnavailable('custody_rejected', f"{action} returned {res.status_code}: {res.text[:200]}")
        try:
            return res.json()
        except ValueError:
            return {}

    def lock(self, ref, identity, amount):
        self._post(ref, 'lock', {'identity': identity, 'amount': str(amount)})

    def release(self, ref, winner):
        self._post(ref, 'release', {'winner': winner})

    def refund(self, ref):
        self._post(ref, 'refund', {})


def inline_dispatch(fn, *args):
    fn(*args)


class SettlementBridge:
    def __init__(self, store: SessionStore, custody: Optional[CustodyClient] = None,
                 dispatch: Callable = inline_dispatch, logger: Optional[logging.Logger] = None):
        self.store = store
        self.custody = custody
        self.dispatch = dispatch
        self.logger = logger or logging.getLogger(__name__)
        self._inflight = set()
        self._guard = threading.Lock()

    # -- triggers (fire-and-forget) --
    def trigger(self, session_id: str) -> None:
        self.dispatch(self.settle, session_id)

    def escrow_stake(self, session_id: str, identity: str) -> None:
        self.dispatch(self._lock_stake, session_id, identity)

    def _lock_stake(self, session_id: str, identity: str) -> None:
        session = self.store.get(session_id)
        if self.custody is None or not session.settlement_ref or session.wager <= 0:
            return
        try:
            self.custody.lock(session.settlement_ref, identity, session.wager)
            self.logger.info(f"[custody-lock] session={session_id} identity={short(identity)} amount={session.wager}")
        except Exception as exc:
            self.logger.error(f"[custody-lock-failed] session={session_id} identity={short(identity)} error={exc}")

    # -- settlement --
    def settle(self, session_id: str) -> SettlementState:
        with self._guard:
            busy = session_id in self._inflight
            self._inflight.add(session_id)
        if busy:
            return self.store.get(session_id).settlement
        try:
            # Read only after claiming, so a settle that just completed is seen as settled.
            session = self.store.get(session_id)
            with self.store.locks.get(session.session_id):
                status, state = session.status, session.settlement
                ref, outcome, winner = session.settlement_ref, session.outcome, session.winner_identity
            if status is not Status.FINISHED or state not in (SettlementState.PENDING, SettlementState.FAILED):
                return state
            if self.custody is None:
                self.logger.info(f"[settle-skip] session={session_id} custody not configured")
                return state
            try:
                if outcome is Outcome.DRAW or winner is None:
                    self.custody.refund(ref)
                    action = 'refund'
                else:
                    self.custody.release(ref, winner)
                    action = f"release winner={short(winner)}"
            except Exception as exc:
                self.logger.error(f"[settle-failed] session={session_id} ref={ref} error={exc}")
                self.store.mutate(session_id, lambda s: _mark(s, SettlementState.FAILED))
                return SettlementState.FAILED
            self.store.mutate(session_id, lambda s: _mark(s, SettlementState.SETTLED))
            self.logger.info(f"[settle-ok] session={session_id} ref={ref} {action}")
            return SettlementState.SETTLED
        finally:
            with self._guard:
                self._inflight.discard(session_id)

    def settle_pending(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in SettlementState}
        for session in self.store.list_sessions([Status.FINISHED]):
            if session.settlement in (SettlementState.PENDING, SettlementState.FAILED):
                counts[self.settle(session.session_id).value] += 1
        return counts


def _mark(session: MatchSession, state: SettlementState) -> None:
    if session.settlement is not SettlementState.SETTLED:
        session.settlement = state
