# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/storefront/routes/auth.py
"""
Authentication API routes

- Self-registration creates buyer accounts (role "user")
- Login returns a bearer token; only its hash is stored
- Logout revokes the presented token
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import auth_service
from ..services import session_service
from ..services.auth_service import PasswordValidationError, RegistrationError
from ..decorators import require_auth, bearer_token


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/register")
def register_route():
    """
    Create a buyer account and sign it in.

    Request body: {"name": "...", "email": "...", "password": "...", "phone": "..."}

    Returns:
        201: user and token
        400: invalid input or weak password
        409: email already registered
    """
    try:
        data = request.get_json(silent=True) or {}
        name = data.get("name")
        email = data.get("email")
        password = data.get("password")

        if not all([name, email, password]):
            return jsonify({"error": "name, email and password required"}), 400

        user = auth_service.create_user(name, email, password, phone=data.get("phone"))
        _, token = session_service.create_session(
            user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify({"user": user.to_dict(), "token": token}), 201

    except PasswordValidationError as e:
        return jsonify({"error": str(e)}), 400
    except RegistrationError as e:
        status = 409 if "already registered" in str(e) else 400
        return jsonify({"error": str(e)}), status
    except Exception:
        current_app.logger.exception("Registration failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/login")
def login_route():
    """
    Authenticate and create a session token.

    Token must be sent as "Authorization: Bearer <token>".
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")

        if not all([email, password]):
            return jsonify({"error": "email and password required"}), 400

        user = auth_service.authenticate(email, password)
        if not user:
            current_app.logger.warning("Failed login for %s from %s", email, request.remote_addr)
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "expires_at": session.to_dict()["expires_at"],
        })

    except Exception:
        current_app.logger.exception("Login failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    session_service.revoke_session(bearer_token())
    return jsonify({"message": "Logged out"})


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"user": g.current_user.to_dict()})
