"""OAuth2 authorization-code authentication for Backlog.

The token manager tries, in order:

1. the cached credential file, if its access token has not expired;
2. the cached refresh token, exchanged for a fresh access token;
3. the interactive flow: open the authorization page in a browser, receive
   the ``code`` on the registered redirect URI and exchange it.

Every successful exchange is written back to the cache file (mode 0600) so
later runs skip the browser. Any failure that leaves no usable token raises
:class:`~backlogkit.errors.AuthenticationError`.
"""

from __future__ import annotations

import json
import os
import secrets
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import requests

from .config import DEFAULT_TOKEN_CACHE, BacklogConfig
from .errors import AuthenticationError, redact
from .logging import get_logger

AUTHORIZE_PATH = "/OAuth2AccessRequest.action"
TOKEN_PATH = "/api/v2/oauth2/token"
HTTP_ERROR_STATUS = 400
REDIRECT_WAIT_SECONDS = 300
_CACHE_FILE_VERSION = 1
_EXPIRY_BUFFER = timedelta(seconds=60)

# (authorization_url, state) -> authorization code
CodeReceiver = Callable[[str, str], str]


@dataclass
class OAuth2App:
    """OAuth2 application registered on the Backlog developer site."""

    client_id: str
    client_secret: str
    redirect_uri: str
    credentials_cache_path: str = DEFAULT_TOKEN_CACHE

    @classmethod
    def from_config(cls, cfg: BacklogConfig) -> OAuth2App:
        return cls(
            client_id=cfg.client_id,
            client_secret=cfg.client_secret,
            redirect_uri=cfg.redirect_uri,
            credentials_cache_path=str(cfg.resolve_token_cache()),
        )


@dataclass
class OAuth2Credentials:
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: datetime | None = None

    def is_valid(self, now: datetime | None = None) -> bool:
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        current = now or datetime.now(timezone.utc)
        return current < self.expires_at - _EXPIRY_BUFFER

    @classmethod
    def from_token_response(
        cls, data: dict[str, Any], now: datetime | None = None
    ) -> OAuth2Credentials:
        token = data.get("access_token")
        if not isinstance(token, str) or not token:
            raise AuthenticationError("Token response did not contain an access_token")
        expires_in = data.get("expires_in")
        expires_at = None
        if isinstance(expires_in, (int, float)) and expires_in > 0:
            expires_at = (now or datetime.now(timezone.utc)) + timedelta(seconds=expires_in)
        refresh = data.get("refresh_token")
        return cls(
            access_token=token,
            refresh_token=refresh if isinstance(refresh, str) and refresh else None,
            token_type=str(data.get("token_type") or "Bearer"),
            expires_at=expires_at,
        )

    def to_cache(self) -> dict[str, Any]:
        return {
            "version": _CACHE_FILE_VERSION,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "cached_at": datetime.now(timezone.utc).isoformat(),
        }

    @classmethod
    def from_cache(cls, data: dict[str, Any]) -> OAuth2Credentials | None:
        token = data.get("access_token")
        if not isinstance(token, str) or not token:
            return None
        expires_at = None
        expires_str = data.get("expires_at")
        if isinstance(expires_str, str) and expires_str:
            try:
                expires_at = datetime.fromisoformat(expires_str)
            except ValueError:
                # Unknown expiry: force a refresh on next use
                expires_at = datetime.fromtimestamp(0, tz=timezone.utc)
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
        refresh = data.get("refresh_token")
        return cls(
            access_token=token,
            refresh_token=refresh if isinstance(refresh, str) and refresh else None,
            token_type=str(data.get("token_type") or "Bearer"),
            expires_at=expires_at,
        )


class OAuth2TokenManager:
    """Obtains and caches Backlog access tokens for one space."""

    def __init__(
        self,
        base_url: str,
        app: OAuth2App,
        *,
        session: requests.Session | None = None,
        code_receiver: CodeReceiver | None = None,
        opener: Callable[[str], Any] = webbrowser.open,
    ):
        self.base_url = base_url.rstrip("/")
        self.app = app
        self.logger = get_logger()
        self._session = session or requests.Session()
        self._code_receiver = code_receiver or default_code_receiver(app.redirect_uri)
        self._opener = opener

    @property
    def cache_path(self) -> Path:
        return Path(self.app.credentials_cache_path)

    def authorize(self) -> OAuth2Credentials:
        if not self.app.client_id or not self.app.client_secret:
            raise AuthenticationError("OAuth2 client_id and client_secret must be configured")

        cached = self._load_cached()
        if cached is not None:
            if cached.is_valid():
                self.logger.debug("Using cached Backlog credentials", source=str(self.cache_path))
                return cached
            if cached.refresh_token:
                refreshed = self._refresh(cached.refresh_token)
                if refreshed is not None:
                    return refreshed

        return self._interactive()

    # ---- cache ----------------------------------------------------------
    def _load_cached(self) -> OAuth2Credentials | None:
        if not self.cache_path.exists():
            return None
        try:
            with self.cache_path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.log_error("Failed to load cached credentials", error=str(exc))
            return None
        if not isinstance(data, dict):
            return None
        return OAuth2Credentials.from_cache(data)

    def _save_cached(self, creds: OAuth2Credentials) -> None:
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.cache_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(creds.to_cache(), f, indent=2)
            # os.open only applies the mode to new files
            self.cache_path.chmod(0o600)
            self.logger.debug("Cached Backlog credentials", source=str(self.cache_path))
        except OSError as exc:
            self.logger.log_error("Failed to cache credentials", error=str(exc))

    def clear(self) -> None:
        if self.cache_path.exists():
            self.cache_path.unlink()
            self.logger.debug("Removed cached credentials", source=str(self.cache_path))

    # ---- token endpoint -------------------------------------------------
    def authorization_url(self, state: str) -> str:
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.app.client_id,
                "redirect_uri": self.app.redirect_uri,
                "state": state,
            }
        )
        return f"{self.base_url}{AUTHORIZE_PATH}?{query}"

    def exchange_code(self, code: str) -> OAuth2Credentials:
        creds = self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.app.redirect_uri,
                "client_id": self.app.client_id,
                "client_secret": self.app.client_secret,
            }
        )
        self._save_cached(creds)
        self.logger.log_operation("oauth2_code_exchanged")
        return creds

    def _refresh(self, refresh_token: str) -> OAuth2Credentials | None:
        try:
            creds = self._token_request(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.app.client_id,
                    "client_secret": self.app.client_secret,
                }
            )
        except AuthenticationError as exc:
            self.logger.warning("Token refresh failed, falling back to login", error=str(exc))
            return None
        if creds.refresh_token is None:
            creds.refresh_token = refresh_token
        self._save_cached(creds)
        self.logger.log_operation("oauth2_token_refreshed")
        return creds

    def _token_request(self, form: dict[str, str]) -> OAuth2Credentials:
        url = f"{self.base_url}{TOKEN_PATH}"
        try:
            response = self._session.post(url, data=form, timeout=30)
        except requests.RequestException as exc:
            raise AuthenticationError(f"Token request to {url} failed: {exc}") from exc
        if response.status_code >= HTTP_ERROR_STATUS:
            raise AuthenticationError(
                f"Token request to {url} failed with {response.status_code}: "
                f"{redact(response.text)}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise AuthenticationError("Token endpoint returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise AuthenticationError("Token endpoint returned an unexpected payload")
        return OAuth2Credentials.from_token_response(data)

    def _interactive(self) -> OAuth2Credentials:
        state = secrets.token_urlsafe(16)
        url = self.authorization_url(state)
        self.logger.info("Opening Backlog authorization page", url=url)
        self._opener(url)
        try:
            code = self._code_receiver(url, state)
        except (OSError, EOFError) as exc:
            raise AuthenticationError(f"Could not receive the authorization code: {exc}") from exc
        if not code:
            raise AuthenticationError("No authorization code received")
        return self.exchange_code(code)


# ---- authorization code receivers -----------------------------------------
def _code_from_query(query: str, state: str) -> str:
    params = parse_qs(query)
    if "error" in params:
        raise AuthenticationError(f"Authorization denied: {params['error'][0]}")
    if params.get("state", [""])[0] != state:
        raise AuthenticationError("Authorization state mismatch")
    codes = params.get("code")
    if not codes or not codes[0]:
        raise AuthenticationError("Authorization response did not include a code")
    return codes[0]


def receive_code_via_localhost(redirect_uri: str) -> CodeReceiver:
    """Listen once on a ``localhost`` redirect URI and capture the code.

    Without an explicit port the scheme default (80 or 443) is used, which
    usually needs elevated privileges; register the redirect URI with a port
    such as ``http://localhost:8765/callback``.
    """
    parsed = urlparse(redirect_uri)
    host = parsed.hostname or "localhost"
    port = parsed.port or (443 if parsed.scheme == "https" else 80)

    def _receive(authorization_url: str, state: str) -> str:
        captured: dict[str, str] = {}

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                captured["query"] = urlparse(self.path).query
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.end_headers()
                self.wfile.write(b"Backlog authorization received. You can close this window.")

            def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
                return

        with HTTPServer((host, port), _Handler) as server:
            server.timeout = REDIRECT_WAIT_SECONDS
            server.handle_request()
        if "query" not in captured:
            raise AuthenticationError("Timed out waiting for the authorization redirect")
        return _code_from_query(captured["query"], state)

    return _receive


def prompt_for_code(authorization_url: str, state: str) -> str:
    """Ask the user to paste the redirected URL (or the bare code)."""
    print(f"Open this URL and authorize access:\n  {authorization_url}")
    answer = input("Paste the redirected URL or the code: ").strip()
    if "code=" in answer:
        return _code_from_query(urlparse(answer).query or answer, state)
    return answer


def default_code_receiver(redirect_uri: str) -> CodeReceiver:
    if urlparse(redirect_uri).hostname in {"localhost", "127.0.0.1"}:
        return receive_code_via_localhost(redirect_uri)
    return prompt_for_code


def create_token_manager(cfg: BacklogConfig, **kwargs: Any) -> OAuth2TokenManager:
    return OAuth2TokenManager(cfg.base_url, OAuth2App.from_config(cfg), **kwargs)


__all__ = [
    "CodeReceiver",
    "OAuth2App",
    "OAuth2Credentials",
    "OAuth2TokenManager",
    "create_token_manager",
    "default_code_receiver",
    "prompt_for_code",
    "receive_code_via_localhost",
]
