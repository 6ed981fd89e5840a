import os


def _origins(value):
    if not value:
        return [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    if value.strip() == '*':
        return '*'
    return [o.strip() for o in value.split(',') if o.strip()]


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///chessduel.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Request bodies are small signed JSON documents
    MAX_CONTENT_LENGTH = int(os.environ.get('MAX_CONTENT_LENGTH', str(50 * 1024)))
    # 'sql' persists sessions through SQLAlchemy; 'memory' keeps them in-process only
    PERSISTENCE = os.environ.get('PERSISTENCE', 'sql')
    # Per-side clock allotment (seconds) and scheduler tick (ms)
    CLOCK_ALLOTMENT_SEC = int(os.environ.get('CLOCK_ALLOTMENT_SEC', '600'))
    CLOCK_TICK_MS = int(os.environ.get('CLOCK_TICK_MS', '1000'))
    # Signed message freshness window
    SIGNATURE_TTL_SEC = int(os.environ.get('SIGNATURE_TTL_SEC', '120'))
    SIGNATURE_SKEW_SEC = int(os.environ.get('SIGNATURE_SKEW_SEC', '60'))
    MESSAGE_DOMAIN = os.environ.get('MESSAGE_DOMAIN', 'ChessDuel')
    # Custody service for wagered sessions. Unset disables settlement calls.
    CUSTODY_URL = os.environ.get('CUSTODY_URL')
    CUSTODY_TIMEOUT_SEC = float(os.environ.get('CUSTODY_TIMEOUT_SEC', '10'))
    CORS_ORIGINS = _origins(os.environ.get('CORS_ORIGINS'))
    RATELIMIT_DEFAULT = os.environ.get('RATELIMIT_DEFAULT', '100 per 15 minutes')
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')
    # Optional: heartbeat interval for clock loop logs (sec). 0 disables.
    TIMER_HEARTBEAT_SEC = int(os.environ.get('TIMER_HEARTBEAT_SEC', '0'))
