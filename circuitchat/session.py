"""
Session-scoped credential storage.

Holds the tokens and user identity the identity provider handed out at
login. Nothing here is written to disk: the session lives as long as the
process. Any 401/403 from the API wipes it and fires the auth-failure
hook, which is where a front-end sends the user back to its login route.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Callable

logger = logging.getLogger(__name__)

ACCESS_TOKEN = "accessToken"
REFRESH_TOKEN = "refreshToken"
ID_TOKEN = "idToken"
USER_NAME = "userName"
USER_EMAIL = "userEmail"

SESSION_KEYS = (ACCESS_TOKEN, REFRESH_TOKEN, ID_TOKEN, USER_NAME, USER_EMAIL)

# config.yaml session section -> session key
_CONFIG_KEYS = {
    "access_token": ACCESS_TOKEN,
    "refresh_token": REFRESH_TOKEN,
    "id_token": ID_TOKEN,
    "user_name": USER_NAME,
    "user_email": USER_EMAIL,
}


def decode_jwt(token: str) -> dict | None:
    """Decode a JWT payload without verifying it. None if malformed."""
    if not token or not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3 or not parts[1]:
        return None
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(payload).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        logger.debug("Could not decode JWT payload: %s", e)
        return None
    return data if isinstance(data, dict) else None


def user_from_token(id_token: str) -> dict | None:
    """Extract {"name", "email"} from an ID token."""
    decoded = decode_jwt(id_token)
    if decoded is None:
        return None
    email = decoded.get("email") or ""
    name = (
        decoded.get("name")
        or decoded.get("cognito:username")
        or (email.split("@")[0] if email else "")
        or "User"
    )
    return {"name": name, "email": email}


def initials(name: str) -> str:
    """Two-letter initials for an avatar."""
    parts = (name or "").split()
    if not parts:
        return "U"
    if len(parts) == 1:
        return parts[0][:2].upper()
    return (parts[0][0] + parts[-1][0]).upper()


class SessionStore:
    """In-memory session storage keyed like the browser's sessionStorage."""

    def __init__(
        self,
        values: dict[str, str] | None = None,
        on_auth_failure: Callable[[], None] | None = None,
    ):
        self._values: dict[str, str] = {}
        self.on_auth_failure = on_auth_failure
        for key, value in (values or {}).items():
            if value:
                self.set(key, value)

    @classmethod
    def from_config(cls, cfg: dict, on_auth_failure: Callable[[], None] | None = None) -> "SessionStore":
        section = cfg.get("session", {})
        values = {
            session_key: section.get(cfg_key, "")
            for cfg_key, session_key in _CONFIG_KEYS.items()
        }
        store = cls(values, on_auth_failure=on_auth_failure)
        if store.get(ID_TOKEN) and not store.user_email:
            user = user_from_token(store.get(ID_TOKEN))
            if user:
                store.set(USER_EMAIL, user["email"])
                store.set(USER_NAME, user["name"])
        return store

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str):
        if key not in SESSION_KEYS:
            raise KeyError(f"Unknown session key: {key}")
        self._values[key] = value

    def clear(self):
        self._values.clear()

    def store_tokens(self, access_token: str, refresh_token: str, id_token: str):
        """Store a fresh token set and derive the user identity from the ID token."""
        self.set(ACCESS_TOKEN, access_token)
        self.set(REFRESH_TOKEN, refresh_token)
        self.set(ID_TOKEN, id_token)
        user = user_from_token(id_token)
        if user:
            if user["email"]:
                self.set(USER_EMAIL, user["email"])
            self.set(USER_NAME, user["name"])

    def invalidate(self):
        """Wipe the session after the API rejected it and notify the front-end."""
        logger.warning("Session rejected by the API, clearing credentials")
        self.clear()
        if self.on_auth_failure is not None:
            self.on_auth_failure()

    @property
    def access_token(self) -> str | None:
        return self.get(ACCESS_TOKEN)

    @property
    def user_email(self) -> str | None:
        return self.get(USER_EMAIL)

    @property
    def user_name(self) -> str | None:
        return self.get(USER_NAME)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token and self.user_email)
