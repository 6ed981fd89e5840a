"""Session aggregate, its closed state space and the projections sent to clients."""

import re
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Dict, Iterable, List, Optional

from chessduel.errors import ValidationError

STARTING_FEN = 'rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1'

_SESSION_ID_RE = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$', re.IGNORECASE
)
_IDENTITY_RE = re.compile(r'^0x[0-9a-f]{40}$')


class Status(StrEnum):
    WAITING = 'waiting'
    PLAYING = 'playing'
    FINISHED = 'finished'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in (Status.FINISHED, Status.CANCELLED)


# Allowed forward transitions; anything else is a bug in the caller.
TRANSITIONS = {
    Status.WAITING: {Status.PLAYING, Status.CANCELLED},
    Status.PLAYING: {Status.FINISHED},
    Status.FINISHED: set(),
    Status.CANCELLED: set(),
}


class Side(StrEnum):
    WHITE = 'white'
    BLACK = 'black'

    @property
    def other(self) -> 'Side':
        return Side.BLACK if self is Side.WHITE else Side.WHITE


class Outcome(StrEnum):
    WHITE = 'white'
    BLACK = 'black'
    DRAW = 'draw'

    @classmethod
    def win_for(cls, side: Side) -> 'Outcome':
        return cls(side.value)


class OutcomeReason(StrEnum):
    NONE = 'none'
    CHECKMATE = 'checkmate'
    TIMEOUT = 'timeout'
    FORFEITURE = 'forfeiture'
    AGREEMENT = 'agreement'
    RULE_DRAW = 'rule_draw'


class DrawRule(StrEnum):
    STALEMATE = 'stalemate'
    INSUFFICIENT_MATERIAL = 'insufficient_material'
    REPETITION = 'repetition'
    MOVE_RULE = 'move_rule'


class SettlementState(StrEnum):
    NOT_REQUIRED = 'not_required'
    PENDING = 'pending'
    SETTLED = 'settled'
    FAILED = 'failed'


def validate_session_id(value: Any) -> str:
    if not isinstance(value, str) or len(value) > 64 or not _SESSION_ID_RE.match(value):
        raise ValidationError('invalid_session_id', 'Session id must be a UUID v4 string')
    return value.lower()


def normalize_identity(value: Any) -> str:
    if not isinstance(value, str) or not _IDENTITY_RE.match(value.lower()):
        raise ValidationError('invalid_identity', 'Identity must be a 0x-prefixed 20-byte hex address')
    return value.lower()


def short(identity: Optional[str]) -> str:
    if not identity:
        return '-'
    return f"{identity[:10]}…"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class MatchSession:
    session_id: str
    creator: str
    wager: int = 0
    settlement_ref: Optional[str] = None
    opponent: Optional[str] = None
    status: Status = Status.WAITING
    outcome: Optional[Outcome] = None
    reason: OutcomeReason = OutcomeReason.NONE
    draw_rule: Optional[DrawRule] = None
    start_position: str = STARTING_FEN
    position: str = STARTING_FEN
    moves: List[str] = field(default_factory=list)
    last_move: Optional[Dict[str, str]] = None
    white_ms: int = 0
    black_ms: int = 0
    draw_offer: Optional[Side] = None
    settlement: SettlementState = SettlementState.NOT_REQUIRED
    version: int = 0
    created_at: int = field(default_factory=now_ms)

    # -- identity helpers --
    @property
    def participants(self) -> List[str]:
        return [p for p in (self.creator, self.opponent) if p]

    def side_of(self, identity: Optional[str]) -> Optional[Side]:
        if not identity:
            return None
        identity = identity.lower()
        if identity == self.creator:
            return Side.WHITE
        if self.opponent and identity == self.opponent:
            return Side.BLACK
        return None

    def identity_of(self, side: Side) -> Optional[str]:
        return self.creator if side is Side.WHITE else self.opponent

    @property
    def side_to_move(self) -> Side:
        # The FEN is the single source of truth for whose turn it is.
        parts = (self.position or '').split()
        return Side.BLACK if len(parts) > 1 and parts[1] == 'b' else Side.WHITE

    @property
    def winner_identity(self) -> Optional[str]:
        if self.outcome in (Outcome.WHITE, Outcome.BLACK):
            return self.identity_of(Side(self.outcome.value))
        return None

    # -- clocks --
    def remaining_ms(self, side: Side) -> int:
        return self.white_ms if side is Side.WHITE else self.black_ms

    def set_remaining_ms(self, side: Side, value: int) -> None:
        value = max(0, int(value))
        if side is Side.WHITE:
            self.white_ms = value
        else:
            self.black_ms = value

    # -- transitions --
    def transition(self, target: Status) -> None:
        if target not in TRANSITIONS[self.status]:
            raise ValueError(f"illegal transition {self.status} -> {target}")
        self.status = target

    def finish(self, outcome: Outcome, reason: OutcomeReason, draw_rule: Optional[DrawRule] = None) -> None:
        """Mark the session finished. Only valid from playing, so an outcome is never overwritten."""
        self.transition(Status.FINISHED)
        self.outcome = outcome
        self.reason = reason
        self.draw_rule = draw_rule if outcome is Outcome.DRAW else None
        self.draw_offer = None
        self.settlement = SettlementState.PENDING if self.settlement_ref else SettlementState.NOT_REQUIRED

    # -- serialization --
    def to_record(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'creator': self.creator,
            'opponent': self.opponent,
            'wager': str(self.wager),
            'settlement_ref': self.settlement_ref,
            'status': self.status.value,
            'outcome': self.outcome.value if self.outcome else None,
            'reason': self.reason.value,
            'draw_rule': self.draw_rule.value if self.draw_rule else None,
            'start_position': self.start_position,
            'position': self.position,
            'moves': list(self.moves),
            'last_move': dict(self.last_move) if self.last_move else None,
            'white_ms': self.white_ms,
            'black_ms': self.black_ms,
            'draw_offer': self.draw_offer.value if self.draw_offer else None,
            'settlement': self.settlement.value,
            'version': self.version,
            'created_at': self.created_at,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> 'MatchSession':
        return cls(
            session_id=data['session_id'],
            creator=data['creator'],
            opponent=data.get('opponent'),
            wager=int(data.get('wager') or 0),
            settlement_ref=data.get('settlement_ref'),
            status=Status(data.get('status') or Status.WAITING),
            outcome=Outcome(data['outcome']) if data.get('outcome') else None,
            reason=OutcomeReason(data.get('reason') or OutcomeReason.NONE),
            draw_rule=DrawRule(data['draw_rule']) if data.get('draw_rule') else None,
            start_position=data.get('start_position') or STARTING_FEN,
            position=data.get('position') or data.get('start_position') or STARTING_FEN,
            moves=list(data.get('moves') or []),
            last_move=data.get('last_move'),
            white_ms=int(data.get('white_ms') or 0),
            black_ms=int(data.get('black_ms') or 0),
            draw_offer=Side(data['draw_offer']) if data.get('draw_offer') else None,
            settlement=SettlementState(data.get('settlement') or SettlementState.NOT_REQUIRED),
            version=int(data.get('version') or 0),
            created_at=int(data.get('created_at') or now_ms()),
        )

    def project(self) -> Dict[str, Any]:
        """Full snapshot served by the pull endpoint and sent on spectate."""
        return {
            'session_id': self.session_id,
            'creator': self.creator,
            'opponent': self.opponent,
            'wager': str(self.wager),
            'settlement_ref': self.settlement_ref,
            'status': self.status.value,
            'outcome': self.outcome.value if self.outcome else None,
            'reason': self.reason.value,
            'draw_rule': self.draw_rule.value if self.draw_rule else None,
            'position': self.position,
            'turn': self.side_to_move.value,
            'moves': list(self.moves),
            'last_move': dict(self.last_move) if self.last_move else None,
            'clocks': {'white': self.white_ms, 'black': self.black_ms},
            'draw_offer': self.draw_offer.value if self.draw_offer else None,
            'settlement': self.settlement.value,
            'version': self.version,
            'created_at': self.created_at,
        }

    def delta(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Push payload: always a strict subset of ``project()`` plus the id and version."""
        full = self.project()
        out = {k: full[k] for k in keys if k in full}
        out['session_id'] = self.session_id
        out['version'] = self.version
        return out

    def listing(self) -> Dict[str, Any]:
        entry = {
            'session_id': self.session_id,
            'creator': self.creator,
            'wager': str(self.wager),
            'settlement_ref': self.settlement_ref,
            'status': self.status.value,
            'created_at': self.created_at,
        }
        if self.status is not Status.WAITING:
            entry.update({
                'opponent': self.opponent,
                'position': self.position,
                'outcome': self.outcome.value if self.outcome else None,
                'clocks': {'white': self.white_ms, 'black': self.black_ms},
            })
        return entry

    def result(self) -> Dict[str, Any]:
        if self.status is not Status.FINISHED:
            return {'session_id': self.session_id, 'status': self.status.value, 'outcome': None}
        return {
            'session_id': self.session_id,
            'status': self.status.value,
            'outcome': self.outcome.value if self.outcome else None,
            'reason': self.reason.value,
            'draw_rule': self.draw_rule.value if self.draw_rule else None,
            'winner_address': self.winner_identity,
            'settlement': self.settlement.value,
        }


# Keys carried by the push events; each list is a subset of MatchSession.project().
MOVE_KEYS = ('position', 'turn', 'moves', 'last_move', 'status', 'outcome', 'reason', 'draw_rule', 'clocks', 'draw_offer')
UPDATE_KEYS = ('status', 'outcome', 'reason', 'draw_rule', 'clocks', 'draw_offer', 'position', 'turn')
JOINED_KEYS = ('creator', 'opponent', 'status', 'position', 'turn', 'clocks')
CLOCK_KEYS = ('clocks', 'turn')
