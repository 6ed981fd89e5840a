"""Lobby lifecycle: create, join, cancel, concede, timeout and moves.

Every operation runs its precondition checks and its mutation inside
``SessionStore.mutate`` so it is serialized with the clock tick and with
concurrent callers on the same session. Fan-out and settlement happen after
the lock is released.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from chessduel.errors import Forbidden, StateConflict, ValidationError
from .engine import MatchEngine
from .fanout import Delivery, Notifier, plan
from .settlement import SettlementBridge
from .store import SessionStore
from .types import (
    JOINED_KEYS,
    MOVE_KEYS,
    UPDATE_KEYS,
    MatchSession,
    Outcome,
    OutcomeReason,
    Side,
    Status,
    short,
    validate_session_id,
)

MAX_SETTLEMENT_REF_LEN = 128
# Enough for any uint256 amount.
MAX_WAGER_DIGITS = 78


@dataclass
class Change:
    view: Dict[str, Any]
    deliveries: List[Delivery] = field(default_factory=list)
    finished: bool = False


def parse_wager(value) -> int:
    """Wagers are non-negative integers; decimal strings are accepted to keep full precision."""
    if value is None or value == '':
        return 0
    if isinstance(value, bool):
        raise ValidationError('invalid_wager', 'Wager must be a non-negative integer')
    if isinstance(value, int):
        wager = value
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        if len(value.strip()) > MAX_WAGER_DIGITS:
            raise ValidationError('invalid_wager', 'Wager is too large')
        wager = int(value.strip())
    else:
        raise ValidationError('invalid_wager', 'Wager must be a non-negative integer')
    if wager < 0 or wager >= 10 ** MAX_WAGER_DIGITS:
        raise ValidationError('invalid_wager', 'Wager must be a non-negative integer')
    return wager


def parse_settlement_ref(value) -> Optional[str]:
    if value is None or value == '':
        return None
    ref = str(value).strip()
    if len(ref) > MAX_SETTLEMENT_REF_LEN or not all(c.isalnum() or c in '-_:.' for c in ref):
        raise ValidationError('invalid_settlement_ref', 'Settlement reference is malformed')
    return ref


def expire(session: MatchSession, loser: Side) -> None:
    """Finish ``session`` on time: ``loser``'s clock reads zero and the other side wins."""
    session.set_remaining_ms(loser, 0)
    session.finish(Outcome.win_for(loser.other), OutcomeReason.TIMEOUT)


class LobbyLifecycle:
    def __init__(self, store: SessionStore, engine: MatchEngine, notifier: Notifier,
                 settlement: SettlementBridge, clock_allotment_ms: int = 600_000,
                 logger: Optional[logging.Logger] = None):
        self.store = store
        self.engine = engine
        self.notifier = notifier
        self.settlement = settlement
        self.clock_allotment_ms = clock_allotment_ms
        self.logger = logger or logging.getLogger(__name__)

    # -- helpers --
    def announce(self, change: Change) -> Change:
        self.notifier.send_all(change.deliveries)
        if change.finished:
            self.settlement.trigger(change.view['session_id'])
        return change

    def _ensure_not_playing(self, identity: str, reason: str = 'already_in_active_session') -> None:
        if self.store.sessions_for(identity, Status.PLAYING):
            raise StateConflict(reason, 'Already playing in another session')

    # -- queries --
    def list_sessions(self, status: Status = Status.WAITING) -> List[Dict[str, Any]]:
        return [s.listing() for s in self.store.list_sessions([status])]

    def counts(self) -> Dict[str, int]:
        sessions = self.store.list_sessions()
        counts = {status.value: 0 for status in Status}
        for session in sessions:
            counts[session.status.value] += 1
        counts['total'] = len(sessions)
        return counts

    # -- lifecycle --
    def create(self, identity: str, wager=0, settlement_ref=None) -> Dict[str, Any]:
        wager = parse_wager(wager)
        settlement_ref = parse_settlement_ref(settlement_ref)
        with self.store.identity_lock(identity):
            existing = [s for s in self.store.sessions_for(identity, Status.WAITING) if s.creator == identity]
            if existing:
                raise StateConflict(
                    'already_has_waiting_session',
                    f"You already have an open session ({existing[0].session_id}). Cancel it or wait for someone to join.",
                )
            self._ensure_not_playing(identity)
            session = MatchSession(
                session_id=str(uuid.uuid4()),
                creator=identity,
                wager=wager,
                settlement_ref=settlement_ref,
            )
            self.store.add(session)
        self.logger.info(f"[session-create] session={session.session_id} creator={short(identity)} wager={wager}")
        return self.store.snapshot(session.session_id)

    def join(self, session_id: str, identity: str) -> Dict[str, Any]:
        session_id = validate_session_id(session_id)
        creator = self.store.get(session_id).creator
        # Identity locks in a fixed order so two crossing joins cannot deadlock.
        first, second = sorted({identity, creator}) if identity != creator else (identity, identity)
        with self.store.identity_lock(first), self.store.identity_lock(second):
            if self.store.get(session_id).status is not Status.WAITING:
                raise StateConflict('not_waiting', 'Session is not open for joining')
            self._ensure_not_playing(identity)
            if creator != identity:
                self._ensure_not_playing(creator, 'creator_in_active_session')

            def _join(s: MatchSession) -> Change:
                if s.status is not Status.WAITING:
                    raise StateConflict('not_waiting', 'Session is not open for joining')
                if s.opponent:
                    raise StateConflict('already_has_opponent', 'Session already has a player')
                if s.creator == identity:
                    raise StateConflict('cannot_join_own_session', 'You cannot join your own session')
                s.opponent = identity
                s.transition(Status.PLAYING)
                s.white_ms = s.black_ms = self.clock_allotment_ms
                s.draw_offer = None
                return Change(s.project(), [plan('session_joined', s, s.delta(JOINED_KEYS))])

            change = self.store.mutate(session_id, _join)
        self.logger.info(f"[session-join] session={session_id} opponent={short(identity)}")
        self.announce(change)
        for who in (creator, identity):
            self.settlement.escrow_stake(session_id, who)
        return change.view

    def cancel(self, session_id: str, identity: str) -> Dict[str, Any]:
        def _cancel(s: MatchSession) -> Change:
            if s.creator != identity:
                raise Forbidden('not_creator', 'Only the session creator can cancel')
            if s.status is not Status.WAITING or s.opponent:
                raise StateConflict('not_waiting', 'Session is not waiting')
            s.transition(Status.CANCELLED)
            s.draw_offer = None
            return self._change(s, 'session_update', UPDATE_KEYS)

        change = self.store.mutate(validate_session_id(session_id), _cancel)
        self.logger.info(f"[session-cancel] session={session_id}")
        return self.announce(change).view

    def concede(self, session_id: str, identity: str) -> Dict[str, Any]:
        def _concede(s: MatchSession) -> Change:
            side = s.side_of(identity)
            if side is None:
                raise Forbidden('not_a_participant', 'Not a player in this game')
            if s.status is not Status.PLAYING:
                raise StateConflict('not_playing', 'Game not in progress')
            s.finish(Outcome.win_for(side.other), OutcomeReason.FORFEITURE)
            change = self._change(s, 'session_update', UPDATE_KEYS, concede=True)
            change.view = s.result()
            return change

        change = self.store.mutate(validate_session_id(session_id), _concede)
        self.logger.info(f"[session-concede] session={session_id} by={short(identity)} outcome={change.view['outcome']}")
        return self.announce(change).view

    def timeout(self, session_id: str, identity: str) -> Dict[str, Any]:
        """The caller declares their own flag fall. Repeats after the session finished are no-ops."""
        def _timeout(s: MatchSession) -> Change:
            side = s.side_of(identity)
            if side is None:
                raise Forbidden('not_a_participant', 'Not a player in this game')
            if s.status is Status.FINISHED:
                return Change(s.result())
            if s.status is not Status.PLAYING:
                raise StateConflict('not_playing', 'Game not in progress')
            expire(s, side)
            change = self._change(s, 'session_update', UPDATE_KEYS)
            change.view = s.result()
            return change

        change = self.store.mutate(validate_session_id(session_id), _timeout)
        if change.deliveries:
            self.logger.info(f"[session-timeout] session={session_id} reported_by={short(identity)}")
        return self.announce(change).view

    def move(self, session_id: str, identity: Optional[str], from_square: str, to_square: str,
             promotion: Optional[str] = 'q') -> Dict[str, Any]:
        if not from_square or not to_square:
            raise ValidationError('missing_squares', 'from and to are required')

        def _move(s: MatchSession) -> Change:
            self.engine.apply_move(s, identity, from_square, to_square, promotion or 'q')
            return self._change(s, 'move', MOVE_KEYS)

        change = self.store.mutate(validate_session_id(session_id), _move)
        self.logger.info(
            f"[session-move] session={session_id} move={change.view['last_move']['uci']} status={change.view['status']}"
        )
        return self.announce(change).view

    @staticmethod
    def _change(s: MatchSession, event: str, keys, **extra) -> Change:
        payload = s.delta(keys)
        payload.update(extra)
        return Change(s.project(), [plan(event, s, payload)], finished=s.status is Status.FINISHED)
