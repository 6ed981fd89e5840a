from chessduel import db
import json


def record_columns(data):
    """Map a MatchSession record onto SessionRecord column values."""
    return {
        'id': data['session_id'],
        'creator': data['creator'],
        'opponent': data.get('opponent'),
        'wager': data.get('wager') or '0',
        'settlement_ref': data.get('settlement_ref'),
        'status': data['status'],
        'outcome': data.get('outcome'),
        'reason': data.get('reason') or 'none',
        'draw_rule': data.get('draw_rule'),
        'start_position': data['start_position'],
        'position': data['position'],
        'moves': json.dumps(data.get('moves') or []),
        'last_move': json.dumps(data['last_move']) if data.get('last_move') else None,
        'white_ms': data.get('white_ms') or 0,
        'black_ms': data.get('black_ms') or 0,
        'draw_offer': data.get('draw_offer'),
        'settlement': data.get('settlement') or 'not_required',
        'version': data.get('version') or 0,
        'created_at': data['created_at'],
    }


class SessionRecord(db.Model):
    """One row per match session; columns mirror MatchSession.to_record()."""
    __tablename__ = 'match_session'
    id = db.Column(db.String(36), primary_key=True)
    creator = db.Column(db.String(42), nullable=False, index=True)
    opponent = db.Column(db.String(42), nullable=True, index=True)
    wager = db.Column(db.String(80), nullable=False, default='0')
    settlement_ref = db.Column(db.String(128), nullable=True)
    status = db.Column(db.String(16), nullable=False, default='waiting', index=True)  # waiting, playing, finished, cancelled
    outcome = db.Column(db.String(8), nullable=True)  # white, black, draw
    reason = db.Column(db.String(16), nullable=False, default='none')
    draw_rule = db.Column(db.String(32), nullable=True)
    start_position = db.Column(db.Text, nullable=False)
    position = db.Column(db.Text, nullable=False)
    moves = db.Column(db.Text, nullable=True)  # JSON-encoded list of UCI moves
    last_move = db.Column(db.Text, nullable=True)  # JSON-encoded dict
    white_ms = db.Column(db.Integer, nullable=False, default=0)
    black_ms = db.Column(db.Integer, nullable=False, default=0)
    draw_offer = db.Column(db.String(8), nullable=True)
    settlement = db.Column(db.String(16), nullable=False, default='not_required')
    version = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.BigInteger, nullable=False)

    def apply_record(self, data):
        for key, value in record_columns(data).items():
            setattr(self, key, value)

    def to_record(self):
        return {
            'session_id': self.id,
            'creator': self.creator,
            'opponent': self.opponent,
            'wager': self.wager,
            'settlement_ref': self.settlement_ref,
            'status': self.status,
            'outcome': self.outcome,
            'reason': self.reason,
            'draw_rule': self.draw_rule,
            'start_position': self.start_position,
            'position': self.position,
            'moves': json.loads(self.moves) if self.moves else [],
            'last_move': json.loads(self.last_move) if self.last_move else None,
            'white_ms': self.white_ms,
            'black_ms': self.black_ms,
            'draw_offer': self.draw_offer,
            'settlement': self.settlement,
            'version': self.version,
            'created_at': self.created_at,
        }


class Profile(db.Model):
    __tablename__ = 'profile'
    identity = db.Column(db.String(42), primary_key=True)
    display_name = db.Column(db.String(20), nullable=False)
    updated_at = db.Column(db.BigInteger, nullable=True)

    def to_dict(self):
        return {
            'identity': self.identity,
            'display_name': self.display_name,
        }
