"""
Session cookie verification.

Identity is owned by the auth service; this module only verifies the signed
`session` cookie it issues and exposes the caller's user id and email.
"""

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from http.cookies import CookieError, SimpleCookie

from shared.billing_utils import get_session_secret
from shared.errors import UnauthorizedError
from shared.request_utils import get_header

logger = logging.getLogger(__name__)


def create_session_token(data: dict, secret: str) -> str:
    """Create a signed session token (payload.signature)."""
    payload = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
    signature = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return f"{payload}.{signature}"


def verify_session_token(token: str) -> dict | None:
    """Verify a session token and return the data if valid."""
    session_secret = get_session_secret()
    if not session_secret or not token or "." not in token:
        return None

    try:
        payload, signature = token.rsplit(".", 1)
        expected_sig = hmac.new(session_secret.encode(), payload.encode(), hashlib.sha256).hexdigest()

        if not hmac.compare_digest(signature, expected_sig):
            return None

        data = json.loads(base64.urlsafe_b64decode(payload.encode()))
    except (ValueError, TypeError) as e:
        logger.info(f"Rejected malformed session token: {e}")
        return None

    if data.get("exp", 0) < datetime.now(timezone.utc).timestamp():
        return None

    return data


def require_session(event: dict) -> dict:
    """Return the caller's session data or raise UnauthorizedError."""
    cookie_header = get_header(event, "cookie") or ""
    session_token = None
    if cookie_header:
        cookies = SimpleCookie()
        try:
            cookies.load(cookie_header)
        except CookieError:
            raise UnauthorizedError()
        if "session" in cookies:
            session_token = cookies["session"].value

    if not session_token:
        raise UnauthorizedError()

    session_data = verify_session_token(session_token)
    if not session_data or not session_data.get("user_id"):
        raise UnauthorizedError("Session expired. Please log in again.")

    return session_data
