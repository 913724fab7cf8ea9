# battlemap/auth.py
# Host verification: per-session host flag in the Flask session, shared by routes and sockets

import hmac
from functools import wraps

from flask import current_app, session, jsonify


def check_host_password(password):
    """True if the password matches the configured one. Without a configured password every login succeeds."""
    expected = current_app.config.get('HOST_PASSWORD')
    if not expected: return True
    return isinstance(password, str) and hmac.compare_digest(password.encode('utf-8'), expected.encode('utf-8'))


def grant_host(session_id):
    hosts = set(session.get('host_sessions', []))
    hosts.add(session_id)
    session['host_sessions'] = sorted(hosts)


def is_host(session_id):
    return session_id in session.get('host_sessions', [])


def host_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not is_host(kwargs.get('session_id')):
            return jsonify({"error": "Forbidden"}), 403
        return f(*args, **kwargs)
    return decorated
