"""Backend token handling and route protection for the console.

The backend issues a JWT on login. The console never verifies its
signature (the backend does that on every call); it only reads the claims
to decide where to send the user and when the session has expired.
"""

import base64
import binascii
import json
import logging
import re
import time
from functools import wraps
from typing import Any, Callable, Dict, Optional

from flask import flash, jsonify, redirect, request, session, url_for

from .i18n import gettext

security_logger = logging.getLogger("filedesk.security")

# JSON parsers in other clients round large integers; read the raw digits.
_USER_ID_PATTERN = re.compile(r'"user_id"\s*:\s*"?(\d+)"?')

SESSION_TOKEN_KEY = "api_token"
SESSION_CLAIMS_KEY = "api_claims"


class TokenError(ValueError):
    """Raised for tokens that cannot be decoded."""


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as error:
        raise TokenError("Token payload is not valid base64") from error


def _extract_user_id(raw_payload: str, payload: Dict[str, Any]) -> Optional[str]:
    """Return the top-level ``user_id`` as the digits written in the token.

    Claims nested in other objects may carry their own ``user_id``; only a
    raw match that agrees with the parsed top-level value is used.
    """

    value = payload.get("user_id")
    if value is None or isinstance(value, bool):
        return None
    for match in _USER_ID_PATTERN.finditer(raw_payload):
        digits = match.group(1)
        if isinstance(value, str):
            if digits == value.strip():
                return digits
        elif isinstance(value, int):
            if int(digits) == value:
                return digits
        elif isinstance(value, float) and float(digits) == value:
            return digits
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode the claims of *token* without verifying its signature."""

    parts = (token or "").split(".")
    if len(parts) != 3 or not parts[1]:
        raise TokenError("Token must have three segments")

    raw_payload = _b64url_decode(parts[1]).decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw_payload)
    except json.JSONDecodeError as error:
        raise TokenError("Token payload is not valid JSON") from error
    if not isinstance(payload, dict):
        raise TokenError("Token payload must be an object")

    user_id = _extract_user_id(raw_payload, payload)

    exp = payload.get("exp")
    try:
        exp = float(exp) if exp is not None else None
    except (TypeError, ValueError):
        exp = None

    return {
        "user_id": user_id,
        "is_admin": bool(payload.get("is_admin")),
        "exp": exp,
        "username": payload.get("username") or "",
    }


def token_expired(claims: Dict[str, Any], now: Optional[float] = None) -> bool:
    exp = claims.get("exp")
    if exp is None:
        return False
    now_ms = (time.time() if now is None else now) * 1000
    return not exp * 1000 > now_ms


def store_token(token: str) -> Dict[str, Any]:
    claims = decode_token(token)
    if token_expired(claims):
        raise TokenError("Token has already expired")
    next_url = session.get("next_url")
    locale = session.get("lang")
    session.clear()
    session[SESSION_TOKEN_KEY] = token
    session[SESSION_CLAIMS_KEY] = claims
    if next_url:
        session["next_url"] = next_url
    if locale:
        session["lang"] = locale
    session.modified = True
    return claims


def clear_token() -> None:
    session.pop(SESSION_TOKEN_KEY, None)
    session.pop(SESSION_CLAIMS_KEY, None)
    session.pop("pending_credentials", None)


def current_token() -> Optional[str]:
    if current_claims() is None:
        return None
    return session.get(SESSION_TOKEN_KEY)


def current_claims() -> Optional[Dict[str, Any]]:
    """Return claims for the stored token, dropping it once expired."""

    token = session.get(SESSION_TOKEN_KEY)
    if not token:
        return None
    claims = session.get(SESSION_CLAIMS_KEY)
    if not isinstance(claims, dict):
        try:
            claims = decode_token(token)
        except TokenError:
            clear_token()
            return None
        session[SESSION_CLAIMS_KEY] = claims
    if token_expired(claims):
        security_logger.info("session_expired user_id=%s", claims.get("user_id"))
        clear_token()
        return None
    return claims


def is_authenticated() -> bool:
    return current_claims() is not None


def is_admin() -> bool:
    claims = current_claims()
    return bool(claims and claims.get("is_admin"))


def current_user_id() -> Optional[str]:
    claims = current_claims()
    return claims.get("user_id") if claims else None


def home_endpoint() -> str:
    return "admin_panel" if is_admin() else "dashboard"


def wants_json() -> bool:
    if request.path.startswith(("/api/", "/uploads")):
        return True
    return request.accept_mimetypes.accept_json and not request.accept_mimetypes.accept_html


def login_required(admin_required: bool = False) -> Callable:
    """Protect a view; admin pages also reject signed-in regular users."""

    def decorator(view: Callable) -> Callable:
        @wraps(view)
        def wrapped(*args, **kwargs):
            claims = current_claims()
            if claims is not None and (not admin_required or claims.get("is_admin")):
                return view(*args, **kwargs)

            if wants_json():
                if claims is None:
                    return jsonify({"error": "Authentication required"}), 401
                return jsonify({"error": "Administrator access required"}), 403

            if claims is not None:
                security_logger.warning(
                    "admin_required_denied user_id=%s path=%s",
                    claims.get("user_id"),
                    request.path,
                )
                flash(gettext("admin_required"), "error")
                return redirect(url_for("login"))

            next_target = request.full_path if request.query_string else request.path
            session["next_url"] = (next_target or "/").rstrip("?")
            flash(gettext("login_required"), "info")
            return redirect(url_for("login"))

        return wrapped

    return decorator
