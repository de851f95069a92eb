# Overview: Service-layer operations for session; encapsulates business logic and database work.

"""
Session Token Management Service

WHY: Secure session management with automatic timeout and revocation.
Tokens are cryptographically secure, hashed in database, and time-limited.

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage (fast, one-way)
- 24-hour absolute timeout (SESSION_ABSOLUTE_TIMEOUT)
- 2-hour idle timeout (SESSION_IDLE_TIMEOUT)
- Revocable on logout or when the account is deactivated
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from ..extensions import db
from ..models import SessionToken, User
from ..time_utils import utcnow


SESSION_ABSOLUTE_TIMEOUT = timedelta(hours=24)
SESSION_IDLE_TIMEOUT = timedelta(hours=2)


@dataclass
class SessionContext:
    """Result of validate_session."""
    user: User
    session: SessionToken


def generate_token() -> str:
    """64-character hex string (32 bytes of entropy); never stored."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    Hash token for database storage using SHA-256.

    WHY SHA-256 not bcrypt: Tokens are already high-entropy (unlike passwords).
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[SessionToken, str]:
    """
    Returns (session_record, plaintext_token).

    Client receives plaintext_token, database stores only the hash.
    """
    user = db.session.get(User, user_id)
    if not user:
        raise ValueError("User not found")
    if not user.is_active:
        raise ValueError("User account is deactivated")

    plaintext_token = generate_token()
    now = utcnow()

    session = SessionToken(
        user_id=user_id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + SESSION_ABSOLUTE_TIMEOUT,
        user_agent=(user_agent or "")[:255] or None,
        ip_address=ip_address,
        is_revoked=False,
    )

    db.session.add(session)
    db.session.commit()

    return session, plaintext_token


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()


def validate_session(token: str) -> SessionContext | None:
    """
    Returns None if the token is unknown, expired, idle too long or revoked,
    or if the user has been deactivated. Updates last_used_at otherwise.
    """
    now = utcnow()

    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()

    if not session:
        return None

    if session.expires_at < now:
        return None

    if now - session.last_used_at > SESSION_IDLE_TIMEOUT:
        _revoke(session, "Idle timeout")
        return None

    user = session.user
    if not user or not user.is_active:
        _revoke(session, "User account deactivated")
        return None

    session.last_used_at = now
    db.session.commit()

    return SessionContext(user=user, session=session)


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """Returns True if session was revoked, False if not found."""
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()

    if not session:
        return False

    _revoke(session, reason)
    return True
