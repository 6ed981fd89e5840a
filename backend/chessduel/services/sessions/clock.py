"""Server-side clocks.

A single loop debits the side to move on every playing session once per tick.
Sessions whose lock is held by an in-flight move are skipped for that tick
rather than waited on. A side reaching zero loses on time.
"""

import logging
from typing import List, Optional

from .fanout import Notifier, plan
from .lifecycle import Change, LobbyLifecycle, expire
from .store import SKIPPED
from .types import CLOCK_KEYS, UPDATE_KEYS, MatchSession, Status


class ClockScheduler:
    def __init__(self, lifecycle: LobbyLifecycle, tick_ms: int = 1000, heartbeat_sec: int = 0,
                 logger: Optional[logging.Logger] = None):
        self.lifecycle = lifecycle
        self.store = lifecycle.store
        self.notifier: Notifier = lifecycle.notifier
        self.tick_ms = max(1, int(tick_ms))
        self.heartbeat_sec = int(heartbeat_sec or 0)
        self.logger = logger or logging.getLogger(__name__)
        self.running = False
        self.ticks = 0

    def _debit(self, s: MatchSession) -> Optional[Change]:
        if s.status is not Status.PLAYING:
            return None
        side = s.side_to_move
        remaining = max(0, s.remaining_ms(side) - self.tick_ms)
        s.set_remaining_ms(side, remaining)
        if remaining == 0:
            expire(s, side)
            return Change(s.project(), [plan('session_update', s, s.delta(UPDATE_KEYS))], finished=True)
        return Change(s.project(), [plan('clock_update', s, s.delta(CLOCK_KEYS))])

    def tick(self) -> List[str]:
        """Advance every playing session by one tick. Returns the ids that ran out of time."""
        expired = []
        for session in self.store.cached([Status.PLAYING]):
            change = self.store.mutate(session.session_id, self._debit, blocking=False)
            if change is SKIPPED:
                self.logger.debug(f"[clock-skip] session={session.session_id} busy")
                continue
            if change is None:
                continue
            self.lifecycle.announce(change)
            if change.finished:
                expired.append(session.session_id)
                self.logger.info(f"[clock-expired] session={session.session_id} outcome={change.view['outcome']}")
        self.ticks += 1
        return expired

    def start(self, app, socketio) -> None:
        """Start the tick loop as a background task. No-ops in TESTING unless ENABLE_SCHEDULER_IN_TESTS."""
        if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
            return
        if self.running:
            return
        self.running = True
        app.logger.info(f"[clock-start] tick={self.tick_ms}ms")
        socketio.start_background_task(self._loop, app, socketio)

    def stop(self) -> None:
        self.running = False

    def _loop(self, app, socketio) -> None:
        per_beat = (self.heartbeat_sec * 1000) // self.tick_ms if self.heartbeat_sec > 0 else 0
        while self.running:
            socketio.sleep(self.tick_ms / 1000.0)
            try:
                with app.app_context():
                    self.tick()
            except Exception:
                app.logger.exception('[clock-error] tick failed')
            if per_beat and self.ticks % per_beat == 0:
                playing = len(self.store.cached([Status.PLAYING]))
                app.logger.info(f"[clock-heartbeat] ticks={self.ticks} playing={playing}")
