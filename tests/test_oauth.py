from __future__ import annotations

import json
import socket
import stat
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from backlogkit import oauth
from backlogkit.client import TicketClient
from backlogkit.config import BacklogConfig
from backlogkit.errors import AuthenticationError
from backlogkit.logging import StructuredLogger
from backlogkit.oauth import (
    OAuth2App,
    OAuth2Credentials,
    OAuth2TokenManager,
    create_token_manager,
    default_code_receiver,
    prompt_for_code,
    receive_code_via_localhost,
)


class _TokenResponse:
    def __init__(self, status_code: int, payload: Any):
        self.status_code = status_code
        self.payload = payload

    def json(self) -> Any:
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    @property
    def text(self) -> str:
        return json.dumps(self.payload) if isinstance(self.payload, dict) else str(self.payload)


class _TokenSession:
    def __init__(self, responses: list[Any]):
        self._responses = responses
        self.posts: list[tuple[str, dict[str, str]]] = []

    def post(self, url: str, *, data: dict[str, str], timeout: float) -> _TokenResponse:
        self.posts.append((url, data))
        if not self._responses:
            raise AssertionError("No token response queued")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


TOKEN_PAYLOAD = {
    "access_token": "access-1",
    "token_type": "Bearer",
    "expires_in": 3600,
    "refresh_token": "refresh-1",
}


def _app(tmp_path, **overrides: Any) -> OAuth2App:
    values = {
        "client_id": "cid",
        "client_secret": "csecret",
        "redirect_uri": "https://example.com/callback",
        "credentials_cache_path": str(tmp_path / "backlog_oauth2cache.json"),
    }
    values.update(overrides)
    return OAuth2App(**values)


def _manager(tmp_path, responses: list[Any], *, receiver=None, app=None):
    opened: list[str] = []
    session = _TokenSession(responses)
    manager = OAuth2TokenManager(
        "https://acme.backlog.com",
        app or _app(tmp_path),
        session=session,  # type: ignore[arg-type]
        code_receiver=receiver or (lambda url, state: "the-code"),
        opener=opened.append,
    )
    return manager, session, opened


def _write_cache(tmp_path, **fields: Any) -> None:
    (tmp_path / "backlog_oauth2cache.json").write_text(json.dumps(fields))


def test_interactive_flow_exchanges_code_and_caches(tmp_path):
    seen_states: list[str] = []

    def receiver(url: str, state: str) -> str:
        seen_states.append(state)
        return "the-code"

    manager, session, opened = _manager(tmp_path, [_TokenResponse(200, TOKEN_PAYLOAD)], receiver=receiver)

    creds = manager.authorize()

    assert creds.access_token == "access-1"
    assert creds.refresh_token == "refresh-1"
    query = parse_qs(urlparse(opened[0]).query)
    assert opened[0].startswith("https://acme.backlog.com/OAuth2AccessRequest.action?")
    assert query["client_id"] == ["cid"]
    assert query["state"] == seen_states
    url, form = session.posts[0]
    assert url == "https://acme.backlog.com/api/v2/oauth2/token"
    assert form["grant_type"] == "authorization_code"
    assert form["code"] == "the-code"
    cache = tmp_path / "backlog_oauth2cache.json"
    assert json.loads(cache.read_text())["access_token"] == "access-1"
    assert stat.S_IMODE(cache.stat().st_mode) == 0o600


def test_valid_cached_token_skips_login(tmp_path):
    expires = datetime.now(timezone.utc) + timedelta(hours=1)
    _write_cache(tmp_path, access_token="cached", refresh_token="r", expires_at=expires.isoformat())
    manager, session, opened = _manager(tmp_path, [])

    creds = manager.authorize()

    assert creds.access_token == "cached"
    assert session.posts == []
    assert opened == []


def test_expired_cached_token_is_refreshed(tmp_path):
    expired = datetime.now(timezone.utc) - timedelta(minutes=1)
    _write_cache(tmp_path, access_token="old", refresh_token="refresh-0", expires_at=expired.isoformat())
    payload = {"access_token": "new", "expires_in": 3600}
    manager, session, opened = _manager(tmp_path, [_TokenResponse(200, payload)])

    creds = manager.authorize()

    assert creds.access_token == "new"
    # refresh token is kept when the server does not rotate it
    assert creds.refresh_token == "refresh-0"
    assert session.posts[0][1]["grant_type"] == "refresh_token"
    assert opened == []


def test_failed_refresh_falls_back_to_login(tmp_path):
    expired = datetime.now(timezone.utc) - timedelta(minutes=1)
    _write_cache(tmp_path, access_token="old", refresh_token="stale", expires_at=expired.isoformat())
    manager, session, opened = _manager(
        tmp_path,
        [_TokenResponse(401, {"errors": [{"message": "invalid"}]}), _TokenResponse(200, TOKEN_PAYLOAD)],
    )

    creds = manager.authorize()

    assert creds.access_token == "access-1"
    assert [form["grant_type"] for _, form in session.posts] == ["refresh_token", "authorization_code"]
    assert len(opened) == 1


def test_corrupt_cache_is_ignored(tmp_path):
    (tmp_path / "backlog_oauth2cache.json").write_text("{not json")
    manager, _, opened = _manager(tmp_path, [_TokenResponse(200, TOKEN_PAYLOAD)])
    assert manager.authorize().access_token == "access-1"
    assert len(opened) == 1


def test_missing_client_credentials_raise(tmp_path):
    manager, session, _ = _manager(tmp_path, [], app=_app(tmp_path, client_secret=""))
    with pytest.raises(AuthenticationError):
        manager.authorize()
    assert session.posts == []


def test_token_endpoint_error_raises(tmp_path):
    manager, _, _ = _manager(tmp_path, [_TokenResponse(400, {"error": "invalid_grant"})])
    with pytest.raises(AuthenticationError, match="400"):
        manager.authorize()


def test_transport_error_raises(tmp_path):
    manager, _, _ = _manager(tmp_path, [requests.ConnectionError("unreachable")])
    with pytest.raises(AuthenticationError, match="unreachable"):
        manager.authorize()


def test_payload_without_access_token_raises(tmp_path):
    manager, _, _ = _manager(tmp_path, [_TokenResponse(200, {"token_type": "Bearer"})])
    with pytest.raises(AuthenticationError):
        manager.authorize()


def test_empty_code_raises(tmp_path):
    manager, session, _ = _manager(tmp_path, [], receiver=lambda url, state: "")
    with pytest.raises(AuthenticationError):
        manager.authorize()
    assert session.posts == []


def test_clear_removes_cache(tmp_path):
    _write_cache(tmp_path, access_token="cached")
    manager, _, _ = _manager(tmp_path, [])
    manager.clear()
    assert not (tmp_path / "backlog_oauth2cache.json").exists()
    manager.clear()


def test_credentials_validity_buffer():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert OAuth2Credentials("t").is_valid(now)
    assert not OAuth2Credentials("t", expires_at=now + timedelta(seconds=30)).is_valid(now)
    assert OAuth2Credentials("t", expires_at=now + timedelta(minutes=5)).is_valid(now)
    assert not OAuth2Credentials("").is_valid(now)


def test_cache_round_trip_keeps_timezone():
    expires = datetime(2026, 1, 1, 12, tzinfo=timezone.utc)
    creds = OAuth2Credentials("t", refresh_token="r", expires_at=expires)
    restored = OAuth2Credentials.from_cache(creds.to_cache())
    assert restored == creds


def test_prompt_for_code_accepts_redirect_url(monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "https://example.com/callback?code=abc&state=s1")
    assert prompt_for_code("https://acme.backlog.com/auth", "s1") == "abc"


def test_prompt_for_code_rejects_state_mismatch(monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "https://example.com/callback?code=abc&state=other")
    with pytest.raises(AuthenticationError):
        prompt_for_code("https://acme.backlog.com/auth", "s1")


def test_prompt_for_code_accepts_bare_code(monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "  raw-code  ")
    assert prompt_for_code("https://acme.backlog.com/auth", "s1") == "raw-code"


def test_default_receiver_prompts_for_remote_redirects():
    assert default_code_receiver("https://example.com/callback") is prompt_for_code
    assert default_code_receiver("http://localhost:8765/cb") is not prompt_for_code


def test_create_token_manager_uses_config(tmp_path):
    source = tmp_path / "backlog.config.yaml"
    cfg = BacklogConfig(
        space_key="acme",
        client_id="cid",
        client_secret="sec",
        redirect_uri="https://example.com/cb",
        source_file=source,
    )
    manager = create_token_manager(cfg, session=_TokenSession([]), opener=lambda url: None)
    assert manager.base_url == "https://acme.backlog.com"
    assert manager.cache_path == tmp_path / "backlog_oauth2cache.json"


@pytest.mark.parametrize("failure", [OSError(98, "Address already in use"), EOFError("no input")])
def test_receiver_failure_raises_authentication_error(tmp_path, failure):
    def receiver(url: str, state: str) -> str:
        raise failure

    manager, session, _ = _manager(tmp_path, [], receiver=receiver)
    with pytest.raises(AuthenticationError, match="authorization code"):
        manager.authorize()
    assert session.posts == []


def test_authenticate_reports_receiver_failure_as_auth_error(tmp_path):
    def receiver(url: str, state: str) -> str:
        raise OSError(98, "Address already in use")

    cfg = BacklogConfig(
        space_key="acme", client_id="cid", client_secret="sec", source_file=tmp_path / "c.yaml"
    )
    client = TicketClient(
        token_manager_factory=lambda c: create_token_manager(
            c, session=_TokenSession([]), code_receiver=receiver, opener=lambda url: None
        ),
        logger=StructuredLogger(name="test-oauth"),
    )
    with pytest.raises(AuthenticationError):
        client.authenticate(cfg)


def test_cache_file_permissions_are_tightened_on_rewrite(tmp_path):
    cache = tmp_path / "backlog_oauth2cache.json"
    cache.write_text("{}")
    cache.chmod(0o644)
    manager, _, _ = _manager(tmp_path, [_TokenResponse(200, TOKEN_PAYLOAD)])

    manager.authorize()

    assert stat.S_IMODE(cache.stat().st_mode) == 0o600
    assert json.loads(cache.read_text())["access_token"] == "access-1"


def test_redirect_without_state_is_rejected(monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "https://example.com/callback?code=abc")
    with pytest.raises(AuthenticationError, match="state"):
        prompt_for_code("https://acme.backlog.com/auth", "s1")


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _run_localhost_receiver(query: str) -> tuple[list[str], list[Exception], requests.Response]:
    port = _free_port()
    receive = receive_code_via_localhost(f"http://127.0.0.1:{port}/cb")
    codes: list[str] = []
    errors: list[Exception] = []

    def _target() -> None:
        try:
            codes.append(receive("https://acme.backlog.com/auth", "s1"))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    thread = threading.Thread(target=_target, daemon=True)
    thread.start()
    deadline = time.monotonic() + 5
    while True:
        try:
            response = requests.get(f"http://127.0.0.1:{port}/cb?{query}", timeout=5)
            break
        except requests.ConnectionError:
            if time.monotonic() > deadline:
                raise
            time.sleep(0.05)
    thread.join(timeout=5)
    return codes, errors, response


def test_localhost_receiver_returns_code():
    codes, errors, response = _run_localhost_receiver("code=abc&state=s1")
    assert response.status_code == 200
    assert "authorization received" in response.text
    assert errors == []
    assert codes == ["abc"]


def test_localhost_receiver_rejects_state_mismatch():
    codes, errors, _ = _run_localhost_receiver("code=abc&state=forged")
    assert codes == []
    assert len(errors) == 1
    assert isinstance(errors[0], AuthenticationError)


def test_localhost_receiver_times_out(monkeypatch):
    monkeypatch.setattr(oauth, "REDIRECT_WAIT_SECONDS", 0.1)
    receive = receive_code_via_localhost(f"http://127.0.0.1:{_free_port()}/cb")
    with pytest.raises(AuthenticationError, match="Timed out"):
        receive("https://acme.backlog.com/auth", "s1")


def test_localhost_receiver_port_defaults_follow_scheme(monkeypatch):
    bound: list[tuple[str, int]] = []

    class _RefusingServer:
        def __init__(self, address, handler):
            bound.append(address)
            raise OSError(13, "Permission denied")

    monkeypatch.setattr(oauth, "HTTPServer", _RefusingServer)
    for uri in ("http://localhost/cb", "https://localhost/cb"):
        with pytest.raises(OSError):
            receive_code_via_localhost(uri)("https://acme.backlog.com/auth", "s1")
    assert bound == [("localhost", 80), ("localhost", 443)]
