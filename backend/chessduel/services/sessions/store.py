"""Session table and the persistence adapters behind it.

``SessionStore`` keeps the authoritative in-memory copy of every session this
instance has touched and serializes mutations per session. Durable backends
are optional: without one the store is memory-only; with one, sessions are
hydrated lazily and written back after every mutation.

Writes carry the session version and never replace a newer stored version, so
out-of-order writes from this instance are harmless and a concurrent writer on
another instance is detected (and logged) instead of silently reverted.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import update

from chessduel.errors import NotFound
from .types import MatchSession, Status, now_ms, short, validate_session_id

SKIPPED = object()


class SessionBackend(Protocol):
    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...

    def save(self, record: Dict[str, Any]) -> bool:
        """Store ``record`` unless a newer version exists. Returns False when the write lost."""
        ...

    def list(self, statuses: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        ...

    def get_profile(self, identity: str) -> Optional[str]:
        ...

    def set_profile(self, identity: str, display_name: str) -> None:
        ...

    def profiles(self) -> Dict[str, str]:
        ...


class MemoryBackend:
    """Dict-backed stand-in for a shared key-value store."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._profiles: Dict[str, str] = {}
        self._guard = threading.Lock()

    def get(self, session_id):
        with self._guard:
            record = self._records.get(session_id)
            return dict(record) if record else None

    def save(self, record):
        with self._guard:
            current = self._records.get(record['session_id'])
            if current and int(current.get('version') or 0) >= int(record.get('version') or 0):
                return False
            self._records[record['session_id']] = dict(record)
            return True

    def list(self, statuses=None):
        wanted = set(statuses) if statuses else None
        with self._guard:
            return [dict(r) for r in self._records.values() if wanted is None or r['status'] in wanted]

    def get_profile(self, identity):
        return self._profiles.get(identity)

    def set_profile(self, identity, display_name):
        self._profiles[identity] = display_name

    def profiles(self):
        return dict(self._profiles)


class SQLBackend:
    """Flask-SQLAlchemy backend. Safe to call from background tasks: it pushes its own app context."""

    def __init__(self, app):
        self.app = app

    def get(self, session_id):
        from chessduel import db
        from chessduel.models import SessionRecord
        with self.app.app_context():
            row = db.session.get(SessionRecord, session_id)
            return row.to_record() if row else None

    def save(self, record):
        from chessduel import db
        from chessduel.models import SessionRecord, record_columns
        with self.app.app_context():
            try:
                columns = record_columns(record)
                result = db.session.execute(
                    update(SessionRecord)
                    .where(SessionRecord.id == columns['id'], SessionRecord.version < columns['version'])
                    .values(**{k: v for k, v in columns.items() if k != 'id'})
                )
                if result.rowcount:
                    db.session.commit()
                    return True
                if db.session.get(SessionRecord, columns['id']) is not None:
                    db.session.rollback()
                    return False
                row = SessionRecord()
                row.apply_record(record)
                db.session.add(row)
                db.session.commit()
                return True
            except Exception:
                db.session.rollback()
                raise

    def list(self, statuses=None):
        from chessduel.models import SessionRecord
        with self.app.app_context():
            query = SessionRecord.query
            if statuses:
                query = query.filter(SessionRecord.status.in_(list(statuses)))
            return [row.to_record() for row in query.order_by(SessionRecord.created_at).all()]

    def get_profile(self, identity):
        from chessduel import db
        from chessduel.models import Profile
        with self.app.app_context():
            row = db.session.get(Profile, identity)
            return row.display_name if row else None

    def set_profile(self, identity, display_name):
        from chessduel import db
        from chessduel.models import Profile
        with self.app.app_context():
            try:
                row = db.session.get(Profile, identity) or Profile(identity=identity)
                row.display_name = display_name
                row.updated_at = now_ms()
                db.session.add(row)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

    def profiles(self):
        from chessduel.models import Profile
        with self.app.app_context():
            return {row.identity: row.display_name for row in Profile.query.all()}


class LockRegistry:
    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


class SessionStore:
    def __init__(self, backend: Optional[SessionBackend] = None, logger: Optional[logging.Logger] = None):
        self.backend = backend
        self.logger = logger or logging.getLogger(__name__)
        self.locks = LockRegistry()
        self._sessions: Dict[str, MatchSession] = {}
        self._profiles: Dict[str, str] = {}
        self._guard = threading.RLock()

    # -- loading --
    def load_all(self) -> int:
        """Fill memory from the backend at startup. Returns the number of sessions loaded."""
        if self.backend is None:
            return 0
        count = 0
        for record in self.backend.list():
            try:
                session = MatchSession.from_record(record)
            except (KeyError, ValueError) as exc:
                self.logger.warning(f"[store-skip] session={record.get('session_id')} invalid record: {exc}")
                continue
            with self._guard:
                self._sessions[session.session_id] = session
            count += 1
        self._profiles.update(self.backend.profiles())
        self.logger.info(f"[store-load] sessions={count} profiles={len(self._profiles)}")
        return count

    def _hydrate(self, session_id: str) -> Optional[MatchSession]:
        if self.backend is None:
            return None
        try:
            record = self.backend.get(session_id)
        except Exception as exc:
            self.logger.error(f"[store-read-failed] session={session_id} error={exc}")
            return None
        if not record:
            return None
        session = MatchSession.from_record(record)
        with self._guard:
            # Another thread may have hydrated it first; keep whichever is newer.
            current = self._sessions.get(session_id)
            if current is None or current.version < session.version:
                self._sessions[session_id] = session
                self.logger.info(f"[store-hydrate] session={session_id} version={session.version}")
            return self._sessions[session_id]

    # -- reads --
    def find(self, session_id: str) -> Optional[MatchSession]:
        session_id = validate_session_id(session_id)
        with self._guard:
            session = self._sessions.get(session_id)
        return session or self._hydrate(session_id)

    def get(self, session_id: str) -> MatchSession:
        session = self.find(session_id)
        if session is None:
            raise NotFound('session_not_found', 'Session not found')
        return session

    def snapshot(self, session_id: str) -> Dict[str, Any]:
        session = self.get(session_id)
        with self.locks.get(session.session_id):
            return session.project()

    def list_sessions(self, statuses: Optional[Iterable[Status]] = None) -> List[MatchSession]:
        wanted = {Status(s) for s in statuses} if statuses else None
        if self.backend is not None:
            try:
                records = self.backend.list([s.value for s in wanted] if wanted else None)
            except Exception as exc:
                self.logger.error(f"[store-list-failed] error={exc}")
                records = []
            for record in records:
                with self._guard:
                    known = record['session_id'] in self._sessions
                if not known:
                    self._hydrate(record['session_id'])
        with self._guard:
            sessions = list(self._sessions.values())
        if wanted is not None:
            sessions = [s for s in sessions if s.status in wanted]
        return sorted(sessions, key=lambda s: s.created_at)

    def cached(self, statuses: Optional[Iterable[Status]] = None) -> List[MatchSession]:
        """Sessions already in memory, without touching the backend."""
        wanted = {Status(s) for s in statuses} if statuses else None
        with self._guard:
            sessions = list(self._sessions.values())
        return [s for s in sessions if wanted is None or s.status in wanted]

    def sessions_for(self, identity: str, status: Status) -> List[MatchSession]:
        return [s for s in self.list_sessions([status]) if identity in s.participants]

    # -- writes --
    def add(self, session: MatchSession) -> MatchSession:
        with self._guard:
            if session.session_id in self._sessions:
                raise ValueError(f"duplicate session id {session.session_id}")
            session.version = 1
            self._sessions[session.session_id] = session
            record = session.to_record()
        self._persist(record)
        return session

    def mutate(self, session_id: str, fn: Callable[[MatchSession], Any], blocking: bool = True):
        """Run ``fn`` on the session under its lock and persist the result if it changed anything.

        With ``blocking=False`` the call returns SKIPPED instead of waiting when
        another mutation holds the lock.
        """
        session = self.get(session_id)
        lock = self.locks.get(session.session_id)
        if not lock.acquire(blocking=blocking):
            return SKIPPED
        record = None
        try:
            before = session.to_record()
            # fn sees the version this mutation will be stored under; reverted when nothing changes.
            session.version = before['version'] + 1
            try:
                result = fn(session)
            except BaseException:
                session.version = before['version']
                raise
            after = session.to_record()
            after['version'] = before['version']
            if after == before:
                session.version = before['version']
            else:
                record = session.to_record()
        finally:
            lock.release()
        if record is not None:
            self._persist(record)
        return result

    @contextmanager
    def identity_lock(self, identity: str):
        with self.locks.get(f"identity:{identity}"):
            yield

    def _persist(self, record: Dict[str, Any]) -> None:
        if self.backend is None:
            return
        session_id = record['session_id']
        try:
            stored = self.backend.save(record)
        except Exception as exc:
            # Memory stays authoritative until the next successful write.
            self.logger.error(f"[store-write-failed] session={session_id} version={record['version']} error={exc}")
            return
        if stored:
            return
        with self._guard:
            current = self._sessions.get(session_id)
            if current is not None and current.version > record['version']:
                # A newer local write already landed; this one is just late.
                return
            self._sessions.pop(session_id, None)
        self.logger.warning(
            f"[store-conflict] session={session_id} version={record['version']} newer copy in store; evicted for rehydrate"
        )

    # -- profiles --
    def get_profile(self, identity: str) -> Optional[str]:
        name = self._profiles.get(identity)
        if name is None and self.backend is not None:
            try:
                name = self.backend.get_profile(identity)
            except Exception as exc:
                self.logger.error(f"[profile-read-failed] identity={short(identity)} error={exc}")
                name = None
            if name:
                self._profiles[identity] = name
        return name

    def set_profile(self, identity: str, display_name: str) -> None:
        self._profiles[identity] = display_name
        if self.backend is None:
            return
        try:
            self.backend.set_profile(identity, display_name)
        except Exception as exc:
            self.logger.error(f"[profile-write-failed] identity={short(identity)} error={exc}")

    def profiles(self) -> Dict[str, str]:
        return dict(self._profiles)
