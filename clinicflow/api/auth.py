"""
JWT session tokens and the request guard for the Flask API.
"""

import secrets
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import jsonify, request

from clinicflow.config import SECRET_KEY, TOKEN_EXPIRY_HOURS
from clinicflow.models import AppUser

# In-memory session table, one ClinicWorkflow per signed-in client.
# Structure: {token: {"workflow": ClinicWorkflow, "created_at": datetime, "last_activity": datetime}}
sessions: Dict[str, Dict[str, Any]] = {}


def generate_token(user: AppUser) -> str:
    """Generate a JWT token for a signed-in user."""
    now = datetime.utcnow()
    payload = {
        "user_id": user.id,
        "role": user.role,
        "name": user.name,
        "iat": now,
        "exp": now + timedelta(hours=TOKEN_EXPIRY_HOURS),
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm="HS256")


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Verify a JWT token and return the decoded payload (or None)."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def token_required(f):
    """Decorator that protects endpoints with JWT authentication."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = None

        if "Authorization" in request.headers:
            auth_header = request.headers["Authorization"]
            try:
                token = auth_header.split(" ")[1]
            except IndexError:
                return jsonify({"error": "Invalid authorization header format"}), 401

        if not token:
            token = request.args.get("token")

        if not token:
            return jsonify({"error": "Authentication token is missing"}), 401

        payload = verify_token(token)
        if not payload:
            return jsonify({"error": "Invalid or expired token"}), 401

        if token not in sessions or sessions[token]["workflow"].session is None:
            return jsonify({"error": "Session not found. Please login again."}), 401

        sessions[token]["last_activity"] = datetime.utcnow()
        request.session_data = sessions[token]
        request.token = token

        return f(*args, **kwargs)

    return decorated


def end_session(token: str) -> None:
    """Log the workflow out and forget the token."""
    data = sessions.pop(token, None)
    if data is not None:
        data["workflow"].logout()


def cleanup_expired_sessions():
    """Log out sessions that have been inactive beyond TOKEN_EXPIRY_HOURS."""
    now = datetime.utcnow()
    expired = [
        tok for tok, data in sessions.items()
        if (now - data["last_activity"]).total_seconds() > TOKEN_EXPIRY_HOURS * 3600
    ]
    for tok in expired:
        end_session(tok)
    if expired:
        print(f"[cleanup] Removed {len(expired)} expired sessions")
