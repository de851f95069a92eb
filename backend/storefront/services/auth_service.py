# Overview: Service-layer operations for auth; password hashing, registration and login.

"""
Authentication Service

WHY: Every order and payment belongs to a user. Uses bcrypt for password
hashing and enforces a minimum password policy at registration.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters with at least one letter and one digit
- Emails are stored lower-cased; uniqueness is case-insensitive
- Session tokens managed separately (see session_service.py)
"""

import re

import bcrypt

from ..extensions import db
from ..models import User
from ..time_utils import utcnow


ROLES = ("user", "moderator", "admin")

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


class RegistrationError(ValueError):
    """Raised when an account cannot be created."""
    pass


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one letter
    - At least one digit
    """
    if not password or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r"[A-Za-z]", password):
        raise PasswordValidationError("Password must contain at least one letter")

    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """Validate then hash with bcrypt (cost factor 12)."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw is timing-safe. A malformed stored hash counts as a
    mismatch.
    """
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_user(
    name: str,
    email: str,
    password: str,
    *,
    role: str = "user",
    phone: str | None = None,
) -> User:
    """
    Create a new account.

    Raises:
        RegistrationError: bad email, unknown role or email already registered
        PasswordValidationError: password does not meet requirements
    """
    email = normalize_email(email)
    if not EMAIL_RE.match(email):
        raise RegistrationError("A valid email is required")
    if role not in ROLES:
        raise RegistrationError(f"Unknown role {role!r}")
    if not (name or "").strip():
        raise RegistrationError("Name is required")

    if db.session.query(User.id).filter_by(email=email).first():
        raise RegistrationError("Email already registered")

    user = User(
        name=name.strip(),
        email=email,
        password_hash=hash_password(password),
        role=role,
        phone=phone,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(email: str, password: str) -> User | None:
    """
    Returns the user if credentials are valid, None otherwise.

    Updates last_login_at and login_count on success.
    """
    user = db.session.query(User).filter(
        User.email == normalize_email(email),
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        user.login_count = (user.login_count or 0) + 1
        db.session.commit()
        return user

    return None


def set_role(user_id: int, role: str) -> User:
    if role not in ROLES:
        raise RegistrationError(f"Unknown role {role!r}")
    user = db.session.get(User, user_id)
    if not user:
        raise RegistrationError("User not found")
    user.role = role
    db.session.commit()
    return user
