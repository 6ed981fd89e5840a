from flask import Blueprint, current_app, jsonify, request

from chessduel.services.sessions import get_services
from chessduel.services.sessions.auth import PURPOSE_USERNAME
from chessduel.services.sessions.types import now_ms, short

main = Blueprint('main', __name__)


@main.route('/health')
def health():
    return jsonify({'ok': True, 'time': now_ms()})


@main.route('/status')
def status():
    services = get_services()
    counts = services.lifecycle.counts()
    return jsonify({
        'sessions': counts,
        'connections': len(services.connections),
        'clock_running': services.clock.running,
    })


@main.route('/profile', methods=['POST'])
def set_profile():
    data = request.get_json(silent=True) or {}
    services = get_services()
    username = data.get('username')
    identity = services.verifier.verify_payload(
        data, PURPOSE_USERNAME, expect={'Username': (username or '').strip() if isinstance(username, str) else username},
    )
    profile = services.profiles.set_username(identity, username)
    current_app.logger.info(f"[profile-set] identity={short(identity)} username={profile['username']}")
    return jsonify(profile)


@main.route('/profile/<string:identity>')
def get_profile(identity):
    return jsonify(get_services().profiles.get(identity))


@main.route('/leaderboard')
def leaderboard():
    try:
        limit = max(1, min(int(request.args.get('limit', 50)), 200))
    except ValueError:
        limit = 50
    return jsonify({'leaderboard': get_services().profiles.leaderboard(limit)})
