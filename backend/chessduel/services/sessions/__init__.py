"""Match session domain services.

Signature auth, lobby lifecycle, move adjudication, clocks, draws, fan-out
and settlement. HTTP routes and socket handlers reach these through the
``Services`` container stored on the app, keeping transport concerns out of
the session rules.
"""

from dataclasses import dataclass

from flask import current_app

from .auth import IdentityVerifier
from .clock import ClockScheduler
from .draw import DrawProtocol
from .engine import ChessRulesEngine, MatchEngine
from .fanout import ConnectionRegistry, Notifier
from .lifecycle import LobbyLifecycle
from .settlement import HttpCustodyClient, SettlementBridge, inline_dispatch
from .store import MemoryBackend, SessionStore, SQLBackend

EXTENSION_KEY = 'chessduel'


@dataclass
class Services:
    store: SessionStore
    verifier: IdentityVerifier
    notifier: Notifier
    settlement: SettlementBridge
    lifecycle: LobbyLifecycle
    draws: DrawProtocol
    clock: ClockScheduler
    profiles: 'ProfileService'
    connections: ConnectionRegistry


def build_services(app, socketio, custody=None) -> Services:
    from chessduel.services.profiles import ProfileService

    config = app.config
    logger = app.logger
    persistence = (config.get('PERSISTENCE') or 'sql').lower()
    if persistence == 'sql':
        backend = SQLBackend(app)
    elif persistence == 'memory':
        backend = MemoryBackend()
    else:
        raise ValueError(f"unknown PERSISTENCE {persistence!r}")
    store = SessionStore(backend, logger=logger)

    if custody is None and config.get('CUSTODY_URL'):
        custody = HttpCustodyClient(config['CUSTODY_URL'], timeout=float(config.get('CUSTODY_TIMEOUT_SEC', 10)))
    if config.get('TESTING'):
        dispatch = inline_dispatch
    else:
        def dispatch(fn, *args):
            socketio.start_background_task(fn, *args)

    verifier = IdentityVerifier(
        domain=config.get('MESSAGE_DOMAIN', 'ChessDuel'),
        ttl_ms=int(config.get('SIGNATURE_TTL_SEC', 120)) * 1000,
        skew_ms=int(config.get('SIGNATURE_SKEW_SEC', 60)) * 1000,
    )
    notifier = Notifier(socketio, namespace='/ws', logger=logger)
    settlement = SettlementBridge(store, custody, dispatch=dispatch, logger=logger)
    lifecycle = LobbyLifecycle(
        store,
        MatchEngine(ChessRulesEngine()),
        notifier,
        settlement,
        clock_allotment_ms=int(config.get('CLOCK_ALLOTMENT_SEC', 600)) * 1000,
        logger=logger,
    )
    return Services(
        store=store,
        verifier=verifier,
        notifier=notifier,
        settlement=settlement,
        lifecycle=lifecycle,
        draws=DrawProtocol(lifecycle, logger=logger),
        clock=ClockScheduler(
            lifecycle,
            tick_ms=int(config.get('CLOCK_TICK_MS', 1000)),
            heartbeat_sec=int(config.get('TIMER_HEARTBEAT_SEC', 0)),
            logger=logger,
        ),
        profiles=ProfileService(store),
        connections=ConnectionRegistry(),
    )


def get_services(app=None) -> Services:
    return (app or current_app).extensions[EXTENSION_KEY]
