"""Display names and the leaderboard."""

import re
from typing import Any, Dict, List

from chessduel.errors import ValidationError
from chessduel.services.sessions.store import SessionStore
from chessduel.services.sessions.types import Outcome, Side, Status, normalize_identity

MIN_NAME_LEN = 3
MAX_NAME_LEN = 20

# Whole-word, case-insensitive.
BLOCKLIST = frozenset({
    'ass', 'asshole', 'bastard', 'bitch', 'bitches', 'bullshit', 'crap', 'cunt', 'damn', 'dick',
    'fag', 'faggot', 'fuck', 'fucked', 'fucker', 'fucking', 'nigga', 'nigger', 'penis', 'piss',
    'pussy', 'shit', 'shitty', 'slut', 'whore', 'wtf',
})

_WORD_RE = re.compile(r'\w+')
_ALLOWED_RE = re.compile(r'^[\w .\-]+$')


def is_profane(text: str) -> bool:
    if not isinstance(text, str):
        return True
    return any(word in BLOCKLIST for word in _WORD_RE.findall(text.lower()))


def validate_username(value) -> str:
    if not isinstance(value, str):
        raise ValidationError('invalid_username', 'Username must be a string')
    name = value.strip()
    if not MIN_NAME_LEN <= len(name) <= MAX_NAME_LEN:
        raise ValidationError('invalid_username', f"Username must be {MIN_NAME_LEN}-{MAX_NAME_LEN} characters")
    if not _ALLOWED_RE.match(name):
        raise ValidationError('invalid_username', 'Username may only contain letters, digits, spaces, dots and dashes')
    if is_profane(name):
        raise ValidationError('username_not_allowed', 'Username not allowed')
    return name


class ProfileService:
    def __init__(self, store: SessionStore):
        self.store = store

    def set_username(self, identity: str, username) -> Dict[str, Any]:
        name = validate_username(username)
        self.store.set_profile(identity, name)
        return {'identity': identity, 'username': name}

    def get(self, identity) -> Dict[str, Any]:
        identity = normalize_identity(identity)
        return {'identity': identity, 'username': self.store.get_profile(identity)}

    def leaderboard(self, limit: int = 50) -> List[Dict[str, Any]]:
        stats: Dict[str, Dict[str, int]] = {}
        for session in self.store.list_sessions([Status.FINISHED]):
            if not session.opponent or session.outcome is None:
                continue
            for side in (Side.WHITE, Side.BLACK):
                who = session.identity_of(side)
                row = stats.setdefault(who, {'wins': 0, 'losses': 0, 'draws': 0})
                if session.outcome is Outcome.DRAW:
                    row['draws'] += 1
                elif session.outcome.value == side.value:
                    row['wins'] += 1
                else:
                    row['losses'] += 1
        names = self.store.profiles()
        board = [
            {
                'identity': who,
                'username': names.get(who),
                'games': row['wins'] + row['losses'] + row['draws'],
                **row,
            }
            for who, row in stats.items()
        ]
        board.sort(key=lambda r: (-r['wins'], r['losses'], -r['draws'], r['identity']))
        return board[:limit]
