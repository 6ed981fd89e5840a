"""Move application on top of an external rules collaborator.

The rules engine is a black box: given the start position, the plies played so
far and a candidate ply, it either rejects the ply or returns the new position
and a terminal classification. ``ChessRulesEngine`` is the python-chess
adapter; anything implementing ``RulesEngine.play`` can replace it.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import chess

from chessduel.errors import Forbidden, StateConflict, UpstreamUnavailable
from .types import DrawRule, MatchSession, Outcome, OutcomeReason, Side, Status

PROMOTIONS = {'q': chess.QUEEN, 'r': chess.ROOK, 'b': chess.BISHOP, 'n': chess.KNIGHT}

_DRAW_RULES = {
    chess.Termination.STALEMATE: DrawRule.STALEMATE,
    chess.Termination.INSUFFICIENT_MATERIAL: DrawRule.INSUFFICIENT_MATERIAL,
    chess.Termination.THREEFOLD_REPETITION: DrawRule.REPETITION,
    chess.Termination.FIVEFOLD_REPETITION: DrawRule.REPETITION,
    chess.Termination.FIFTY_MOVES: DrawRule.MOVE_RULE,
    chess.Termination.SEVENTYFIVE_MOVES: DrawRule.MOVE_RULE,
}


class IllegalMove(Exception):
    def __init__(self, reason: str = 'illegal_move'):
        super().__init__(reason)
        self.reason = reason


@dataclass
class Terminal:
    outcome: Outcome
    reason: OutcomeReason
    draw_rule: Optional[DrawRule] = None


@dataclass
class RulesVerdict:
    fen: str
    uci: str
    san: str
    from_square: str
    to_square: str
    terminal: Optional[Terminal] = None


class RulesEngine(Protocol):
    def play(self, start_fen: str, moves: List[str], from_square: str, to_square: str,
             promotion: Optional[str] = 'q') -> RulesVerdict:
        ...


class ChessRulesEngine:
    """Standard chess via python-chess, with automatic draws on claimable repetition and the 50-move rule."""

    def board(self, start_fen: str, moves: List[str]) -> chess.Board:
        board = chess.Board(start_fen)
        for uci in moves:
            board.push_uci(uci)
        return board

    def play(self, start_fen, moves, from_square, to_square, promotion='q'):
        board = self.board(start_fen, moves)
        try:
            src = chess.parse_square(str(from_square).lower())
            dst = chess.parse_square(str(to_square).lower())
        except ValueError:
            raise IllegalMove('invalid_square')

        promo = None
        piece = board.piece_at(src)
        if piece is not None and piece.piece_type == chess.PAWN and chess.square_rank(dst) in (0, 7):
            promo = PROMOTIONS.get((promotion or 'q').lower()[:1])
            if promo is None:
                raise IllegalMove('invalid_promotion')

        move = chess.Move(src, dst, promotion=promo)
        if not board.is_legal(move):
            raise IllegalMove('illegal_move')
        san = board.san(move)
        board.push(move)
        return RulesVerdict(
            fen=board.fen(),
            uci=move.uci(),
            san=san,
            from_square=chess.square_name(src),
            to_square=chess.square_name(dst),
            terminal=self.classify(board),
        )

    def classify(self, board: chess.Board) -> Optional[Terminal]:
        result = board.outcome(claim_draw=True)
        if result is None:
            return None
        if result.termination == chess.Termination.CHECKMATE:
            winner = Side.WHITE if result.winner == chess.WHITE else Side.BLACK
            return Terminal(Outcome.win_for(winner), OutcomeReason.CHECKMATE)
        if result.winner is None:
            return Terminal(Outcome.DRAW, OutcomeReason.RULE_DRAW, _DRAW_RULES.get(result.termination))
        # Variant terminations never occur on a standard board.
        winner = Side.WHITE if result.winner == chess.WHITE else Side.BLACK
        return Terminal(Outcome.win_for(winner), OutcomeReason.CHECKMATE)


def authorize_mover(session: MatchSession, identity: Optional[str]) -> Side:
    """The mover must own the side the position says is to move."""
    if session.status is not Status.PLAYING:
        raise StateConflict('not_playing', 'Game not in progress')
    side = session.side_of(identity)
    if side is None:
        raise Forbidden('not_a_participant', 'Not a player in this game')
    if side is not session.side_to_move:
        raise StateConflict('not_your_turn', 'Not your turn')
    return side


class MatchEngine:
    def __init__(self, rules: Optional[RulesEngine] = None):
        self.rules = rules or ChessRulesEngine()

    def apply_move(self, session: MatchSession, identity: Optional[str], from_square: str, to_square: str,
                   promotion: Optional[str] = 'q') -> Dict[str, Any]:
        """Validate and apply one ply. Mutates ``session`` only when the ply is accepted."""
        authorize_mover(session, identity)
        try:
            verdict = self.rules.play(session.start_position, list(session.moves), from_square, to_square, promotion)
        except IllegalMove as exc:
            raise StateConflict(exc.reason, 'Illegal move') from exc
        except Exception as exc:
            raise UpstreamUnavailable('rules_engine_unavailable', str(exc)) from exc

        session.position = verdict.fen
        session.moves.append(verdict.uci)
        session.last_move = {
            'from': verdict.from_square,
            'to': verdict.to_square,
            'san': verdict.san,
            'uci': verdict.uci,
        }
        # A ply implicitly withdraws or declines any outstanding offer.
        session.draw_offer = None
        if verdict.terminal is not None:
            session.finish(verdict.terminal.outcome, verdict.terminal.reason, verdict.terminal.draw_rule)
        return session.last_move
