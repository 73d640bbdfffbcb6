"""Reddit OAuth token lifecycle."""

from __future__ import annotations

import enum
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import requests

from . import db
from .exceptions import AuthFailure, ConfigurationError

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://www.reddit.com/api/v1/authorize"
TOKEN_URL = "https://www.reddit.com/api/v1/access_token"

ACCESS_TOKEN_KEY = "reddit_access_token"
EXPIRES_AT_KEY = "reddit_access_token_expires_at"
REFRESH_TOKEN_KEY = "reddit_refresh_token"
USERNAME_KEY = "reddit_username"
CREDENTIAL_KEYS = (ACCESS_TOKEN_KEY, EXPIRES_AT_KEY, REFRESH_TOKEN_KEY, USERNAME_KEY)

# Refresh when the cached token has less than this many seconds left.
EXPIRY_MARGIN_SECONDS = 60


class TokenState(enum.Enum):
    UNCONFIGURED = "unconfigured"
    NO_TOKEN = "no_token"
    VALID = "valid"
    EXPIRED = "expired"


@dataclass
class OAuthSettings:
    client_id: Optional[str]
    client_secret: Optional[str]
    redirect_uri: str
    user_agent: str
    scopes: str = "identity read history"

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class TokenManager:
    """Acquire, refresh and persist Reddit credentials."""

    def __init__(
        self,
        settings: OAuthSettings,
        session_factory,
        http: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        timeout: float = 10.0,
    ) -> None:
        self.settings = settings
        self._session_factory = session_factory
        self._http = http or requests.Session()
        self._clock = clock
        self._timeout = timeout
        self._pending: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _require_configured(self) -> None:
        if not self.settings.configured:
            raise ConfigurationError(
                "Reddit is not configured: set REDDIT_CLIENT_ID and REDDIT_CLIENT_SECRET."
            )

    def _load(self) -> Dict[str, str]:
        with self._session_factory() as session:
            return db.get_credentials(session, CREDENTIAL_KEYS)

    def _store(self, values: Dict[str, Optional[str]]) -> None:
        with self._session_factory() as session:
            db.set_credentials(session, values)

    def begin_setup(self, chat_id: str) -> str:
        """Start the authorization flow for a chat and return the consent URL."""
        self._require_configured()
        state = secrets.token_urlsafe(16)
        with self._lock:
            self._pending[str(chat_id)] = state

        query = urlencode(
            {
                "client_id": self.settings.client_id,
                "response_type": "code",
                "state": state,
                "redirect_uri": self.settings.redirect_uri,
                "duration": "permanent",
                "scope": self.settings.scopes,
            }
        )
        logger.info("Started Reddit authorization for chat %s", chat_id)
        return f"{AUTHORIZE_URL}?{query}"

    def complete_setup(self, chat_id: str, redirect_url: str) -> None:
        """Exchange the code from a Reddit redirect URL for tokens.

        The URL's ``state`` parameter must match the one issued to this chat
        by ``begin_setup``.
        """
        self._require_configured()
        code, state = _parse_redirect(redirect_url)
        if not code:
            raise AuthFailure("No authorization code supplied.")

        with self._lock:
            expected = self._pending.get(str(chat_id))
        if expected is None:
            raise AuthFailure("No pending authorization for this chat; start it first.")
        if state is None:
            raise AuthFailure("Paste the full redirect URL, including its state parameter.")
        if not secrets.compare_digest(state, expected):
            raise AuthFailure("Authorization state mismatch.")

        payload = self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.redirect_uri,
            }
        )
        refresh_token = payload.get("refresh_token")
        if not refresh_token:
            raise AuthFailure("Reddit did not return a refresh token.")

        self._store(
            {
                ACCESS_TOKEN_KEY: payload["access_token"],
                EXPIRES_AT_KEY: self._expiry_from(payload),
                REFRESH_TOKEN_KEY: refresh_token,
                USERNAME_KEY: None,
            }
        )
        with self._lock:
            self._pending.pop(str(chat_id), None)
        logger.info("Reddit authorization completed for chat %s", chat_id)

    def get_valid_access_token(self) -> str:
        """Return an access token with more than a minute of validity left."""
        self._require_configured()
        with self._lock:
            stored = self._load()
            token = stored.get(ACCESS_TOKEN_KEY)
            expires_at = _as_float(stored.get(EXPIRES_AT_KEY))
            if token and expires_at - self._clock() > EXPIRY_MARGIN_SECONDS:
                return token

            refresh_token = stored.get(REFRESH_TOKEN_KEY)
            if not refresh_token:
                raise AuthFailure("No Reddit refresh token on file.")

            logger.info("Refreshing Reddit access token")
            payload = self._token_request(
                {"grant_type": "refresh_token", "refresh_token": refresh_token}
            )
            values: Dict[str, Optional[str]] = {
                ACCESS_TOKEN_KEY: payload["access_token"],
                EXPIRES_AT_KEY: self._expiry_from(payload),
            }
            if payload.get("refresh_token"):
                values[REFRESH_TOKEN_KEY] = payload["refresh_token"]
            self._store(values)
            return payload["access_token"]

    def state(self) -> TokenState:
        if not self.settings.configured:
            return TokenState.UNCONFIGURED
        stored = self._load()
        if not stored.get(REFRESH_TOKEN_KEY):
            return TokenState.NO_TOKEN
        expires_at = _as_float(stored.get(EXPIRES_AT_KEY))
        if stored.get(ACCESS_TOKEN_KEY) and expires_at - self._clock() > EXPIRY_MARGIN_SECONDS:
            return TokenState.VALID
        return TokenState.EXPIRED

    def expires_at(self) -> Optional[float]:
        value = self._load().get(EXPIRES_AT_KEY)
        return _as_float(value) if value else None

    def cached_username(self) -> Optional[str]:
        return self._load().get(USERNAME_KEY)

    def remember_username(self, username: str) -> None:
        self._store({USERNAME_KEY: username})

    def logout(self) -> None:
        with self._lock:
            with self._session_factory() as session:
                db.delete_credentials(session, CREDENTIAL_KEYS)
        logger.info("Removed stored Reddit credentials")

    def _expiry_from(self, payload: dict) -> str:
        expires_in = _as_float(payload.get("expires_in")) or 3600.0
        return str(self._clock() + expires_in)

    def _token_request(self, data: dict) -> dict:
        try:
            response = self._http.post(
                TOKEN_URL,
                data=data,
                auth=(self.settings.client_id, self.settings.client_secret),
                headers={"User-Agent": self.settings.user_agent},
                timeout=self._timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise AuthFailure(f"Reddit token exchange failed: {exc}") from exc

        if not isinstance(payload, dict) or "error" in payload or not payload.get("access_token"):
            error = payload.get("error") if isinstance(payload, dict) else payload
            raise AuthFailure(f"Reddit rejected the token request: {error}")
        return payload


def _parse_redirect(value: str):
    value = (value or "").strip()
    if "?" not in value:
        return value, None
    query = parse_qs(urlsplit(value).query)
    code = query.get("code", [None])[0]
    state = query.get("state", [None])[0]
    return code, state


def _as_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
