"""Negotiated draws: offer, accept, decline, withdraw.

The pending offer lives on the session as the offering side. Only the other
side may accept or decline it, only the offerer may withdraw it, and any
accepted ply clears it (see MatchEngine.apply_move).
"""

import logging
from typing import Any, Dict, Optional

from chessduel.errors import Forbidden, StateConflict
from .fanout import plan
from .lifecycle import Change, LobbyLifecycle
from .types import UPDATE_KEYS, MatchSession, Outcome, OutcomeReason, Side, Status, validate_session_id


def _participant_side(session: MatchSession, identity: Optional[str]) -> Side:
    if session.status is not Status.PLAYING:
        raise StateConflict('not_playing', 'Game not in progress')
    side = session.side_of(identity)
    if side is None:
        raise Forbidden('not_a_participant', 'Not a player in this game')
    return side


class DrawProtocol:
    def __init__(self, lifecycle: LobbyLifecycle, logger: Optional[logging.Logger] = None):
        self.lifecycle = lifecycle
        self.store = lifecycle.store
        self.logger = logger or logging.getLogger(__name__)

    def _run(self, session_id: str, fn) -> Dict[str, Any]:
        change = self.store.mutate(validate_session_id(session_id), fn)
        return self.lifecycle.announce(change).view

    def offer(self, session_id: str, identity: Optional[str]) -> Dict[str, Any]:
        def _offer(s: MatchSession) -> Change:
            side = _participant_side(s, identity)
            if s.draw_offer is not None:
                raise StateConflict('draw_already_offered', 'A draw offer is already pending')
            s.draw_offer = side
            return Change(s.project(), [plan('draw_offered', s, {**s.delta(('draw_offer',)), 'by': side.value})])

        view = self._run(session_id, _offer)
        self.logger.info(f"[draw-offer] session={session_id} by={view['draw_offer']}")
        return view

    def accept(self, session_id: str, identity: Optional[str]) -> Dict[str, Any]:
        def _accept(s: MatchSession) -> Change:
            side = _participant_side(s, identity)
            if s.draw_offer is not side.other:
                raise StateConflict('no_draw_offer', 'No draw offer from your opponent')
            s.finish(Outcome.DRAW, OutcomeReason.AGREEMENT)
            payload = s.delta(UPDATE_KEYS)
            return Change(s.project(), [plan('session_update', s, payload)], finished=True)

        view = self._run(session_id, _accept)
        self.logger.info(f"[draw-accept] session={session_id}")
        return view

    def decline(self, session_id: str, identity: Optional[str]) -> Dict[str, Any]:
        def _decline(s: MatchSession) -> Change:
            side = _participant_side(s, identity)
            if s.draw_offer is not side.other:
                raise StateConflict('no_draw_offer', 'No draw offer from your opponent')
            s.draw_offer = None
            return Change(s.project(), [plan('draw_declined', s, {**s.delta(('draw_offer',)), 'by': side.value})])

        view = self._run(session_id, _decline)
        self.logger.info(f"[draw-decline] session={session_id}")
        return view

    def withdraw(self, session_id: str, identity: Optional[str]) -> Dict[str, Any]:
        def _withdraw(s: MatchSession) -> Change:
            side = _participant_side(s, identity)
            if s.draw_offer is not side:
                raise StateConflict('no_draw_offer', 'You have no pending draw offer')
            s.draw_offer = None
            return Change(s.project(), [plan('draw_withdrawn', s, {**s.delta(('draw_offer',)), 'by': side.value})])

        view = self._run(session_id, _withdraw)
        self.logger.info(f"[draw-withdraw] session={session_id}")
        return view
