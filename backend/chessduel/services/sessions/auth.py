"""Signature-based identity recovery.

Callers never hold a server-issued credential. Each mutating request carries a
human-readable message and an EIP-191 ``personal_sign`` signature over that
exact string; the signer's address is the caller's identity. Messages look
like::

    ChessDuel join session
    SessionId: 3f0c...
    Timestamp: 1718000000000

The embedded timestamp bounds how long a captured message can be replayed.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from chessduel.errors import AuthInvalid, AuthStale, ValidationError
from .types import now_ms

_TIMESTAMP_RE = re.compile(r'^Timestamp:\s*(\d+)\s*$', re.MULTILINE)

PURPOSE_CREATE = 'create session'
PURPOSE_JOIN = 'join session'
PURPOSE_CANCEL = 'cancel session'
PURPOSE_CONCEDE = 'concede session'
PURPOSE_TIMEOUT = 'timeout session'
PURPOSE_REGISTER = 'register identity'
PURPOSE_USERNAME = 'set username'


@dataclass
class SignedMessage:
    purpose: str
    fields: Dict[str, str] = field(default_factory=dict)
    timestamp: Optional[int] = None


def build_message(domain: str, purpose: str, fields: Optional[Mapping[str, object]] = None,
                  timestamp: Optional[int] = None) -> str:
    lines = [f"{domain} {purpose}"]
    for key, value in (fields or {}).items():
        lines.append(f"{key}: {'' if value is None else value}")
    lines.append(f"Timestamp: {now_ms() if timestamp is None else int(timestamp)}")
    return '\n'.join(lines)


def sign_message(message: str, private_key) -> str:
    """Sign ``message`` the way a wallet's personal_sign does. Used by clients and tests."""
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return '0x' + bytes(signed.signature).hex()


def parse_message(message: str, domain: str) -> SignedMessage:
    lines = message.split('\n')
    header = lines[0].strip()
    prefix = f"{domain} "
    purpose = header[len(prefix):] if header.startswith(prefix) else ''
    fields: Dict[str, str] = {}
    for line in lines[1:]:
        key, sep, value = line.partition(':')
        if sep:
            fields[key.strip()] = value.strip()
    match = _TIMESTAMP_RE.search(message)
    timestamp = int(match.group(1)) if match else None
    fields.pop('Timestamp', None)
    return SignedMessage(purpose=purpose, fields=fields, timestamp=timestamp)


class IdentityVerifier:
    def __init__(self, domain: str = 'ChessDuel', ttl_ms: int = 120_000, skew_ms: int = 60_000,
                 clock: Callable[[], int] = now_ms):
        self.domain = domain
        self.ttl_ms = ttl_ms
        self.skew_ms = skew_ms
        self.clock = clock

    def is_fresh(self, timestamp: Optional[int]) -> bool:
        if timestamp is None:
            return False
        now = self.clock()
        return now - timestamp <= self.ttl_ms and timestamp <= now + self.skew_ms

    def recover(self, message: str, signature: str) -> str:
        try:
            address = Account.recover_message(encode_defunct(text=message), signature=signature)
        except Exception as exc:
            raise AuthInvalid('invalid_signature', f"Signature could not be verified: {exc}") from exc
        if not address:
            raise AuthInvalid('invalid_signature')
        return address.lower()

    def verify(self, message, signature, purpose: Optional[str] = None,
               expect: Optional[Mapping[str, object]] = None) -> str:
        """Return the lowercase address that signed ``message``.

        Raises AuthStale when the embedded timestamp is outside the window and
        AuthInvalid when the signature does not recover, the purpose tag is
        wrong, or a signed field disagrees with the value the caller claims.
        """
        if not message or not signature or not isinstance(message, str) or not isinstance(signature, str):
            raise ValidationError('signature_required', 'message and signature required')
        parsed = parse_message(message, self.domain)
        if not self.is_fresh(parsed.timestamp):
            raise AuthStale('stale_signature', 'Signature expired or invalid timestamp')
        identity = self.recover(message, signature)
        if purpose is not None and parsed.purpose != purpose:
            raise AuthInvalid('purpose_mismatch', f"Message was signed for {parsed.purpose!r}, not {purpose!r}")
        for key, claimed in (expect or {}).items():
            signed = parsed.fields.get(key)
            claimed_str = '' if claimed is None else str(claimed)
            if signed is None or signed.lower() != claimed_str.lower():
                raise AuthInvalid('field_mismatch', f"Signed {key} does not match the request")
        return identity

    def verify_payload(self, payload: Optional[Mapping], purpose: str,
                       expect: Optional[Mapping[str, object]] = None) -> str:
        payload = payload or {}
        return self.verify(payload.get('message'), payload.get('signature'), purpose=purpose, expect=expect)

    def message(self, purpose: str, fields: Optional[Mapping[str, object]] = None,
                timestamp: Optional[int] = None) -> str:
        return build_message(self.domain, purpose, fields, timestamp)
