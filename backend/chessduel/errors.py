"""Error taxonomy shared by the HTTP routes and the Socket.IO handlers.

Every error carries a machine-readable ``reason`` string and the HTTP status
used when it is surfaced through the REST API. Socket handlers emit the same
reason as ``<action>_error``.
"""

from typing import Any, Dict, Optional


class ChessDuelError(Exception):
    status_code = 400
    kind = 'error'

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or reason)
        self.reason = reason
        self.message = message or reason

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.reason, 'kind': self.kind, 'message': self.message}


class AuthInvalid(ChessDuelError):
    """Signature could not be recovered or does not cover the claimed fields."""
    status_code = 401
    kind = 'auth_invalid'


class AuthStale(ChessDuelError):
    """Signed timestamp is outside the freshness window."""
    status_code = 401
    kind = 'auth_stale'


class ValidationError(ChessDuelError):
    status_code = 400
    kind = 'validation'


class StateConflict(ChessDuelError):
    """A status, ownership or turn precondition does not hold."""
    status_code = 400
    kind = 'state_conflict'


class Forbidden(StateConflict):
    status_code = 403


class NotFound(ChessDuelError):
    status_code = 404
    kind = 'not_found'


class UpstreamUnavailable(ChessDuelError):
    """Rules engine or custody collaborator failed."""
    status_code = 503
    kind = 'upstream_unavailable'
