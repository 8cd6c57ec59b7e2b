"""Tests for the Discord OAuth2 code exchange and profile parsing."""

from unittest.mock import Mock
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from discordauth.core.discord_oauth import (
    DiscordIdentityResolver,
    avatar_url,
    parse_profile,
)
from discordauth.core.errors import AuthExchangeError

SETTINGS = {
    "DISCORD_CLIENT_ID": "client-123",
    "DISCORD_CLIENT_SECRET": "secret-456",
    "DISCORD_API_BASE": "https://discord.example/api/v10/",
    "DISCORD_SCOPES": "identify email",
    "HTTP_TIMEOUT": 3,
}

REDIRECT_URI = "http://jellyfin.local/DiscordAuth/Callback"


def _response(status_code=200, payload=None, json_error=False):
    resp = Mock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    if json_error:
        resp.json.side_effect = ValueError("not json")
    else:
        resp.json.return_value = payload
    return resp


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def resolver(session):
    return DiscordIdentityResolver(SETTINGS, session=session)


class TestParseProfile:
    def test_prefers_global_name(self):
        identity = parse_profile(
            {"id": "111", "username": "alice_01", "global_name": "Alice", "avatar": "abc", "email": "a@x.io"}
        )

        assert identity.external_id == "111"
        assert identity.display_name == "Alice"
        assert identity.avatar_ref == "https://cdn.discordapp.com/avatars/111/abc.png"
        assert identity.email == "a@x.io"

    def test_falls_back_to_username(self):
        identity = parse_profile({"id": "111", "username": "alice_01", "global_name": None})

        assert identity.display_name == "alice_01"
        assert identity.avatar_ref is None
        assert identity.email is None

    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {"username": "alice"},
            {"id": 111, "username": "alice"},
            {"id": "not-a-snowflake", "username": "alice"},
            {"id": "111"},
            {"id": "111", "username": "  "},
            {"id": "111", "username": "alice", "email": 42},
        ],
    )
    def test_rejects_malformed_payloads(self, payload):
        with pytest.raises(AuthExchangeError):
            parse_profile(payload)


def test_avatar_url_requires_hash():
    assert avatar_url("111", None) is None
    assert avatar_url("111", "") is None
    assert avatar_url("111", "a_f00") == "https://cdn.discordapp.com/avatars/111/a_f00.png"


class TestAuthorizeUrl:
    def test_contains_client_scope_and_state(self, resolver):
        url = resolver.authorize_url(REDIRECT_URI, "state-xyz")

        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert parsed.netloc == "discord.com"
        assert query["client_id"] == ["client-123"]
        assert query["scope"] == ["identify email"]
        assert query["redirect_uri"] == [REDIRECT_URI]
        assert query["state"] == ["state-xyz"]
        assert query["response_type"] == ["code"]

    def test_is_configured_needs_id_and_secret(self):
        assert DiscordIdentityResolver(SETTINGS, session=Mock()).is_configured is True
        assert DiscordIdentityResolver({"DISCORD_CLIENT_ID": "x"}, session=Mock()).is_configured is False


class TestResolveIdentity:
    def test_exchanges_code_then_fetches_profile(self, resolver, session):
        session.post.return_value = _response(payload={"access_token": "tok", "token_type": "Bearer"})
        session.get.return_value = _response(payload={"id": "111", "username": "alice"})

        identity = resolver.resolve_identity("code-1", REDIRECT_URI)

        assert identity.external_id == "111"
        post_args = session.post.call_args
        assert post_args.args[0] == "https://discord.example/api/v10/oauth2/token"
        assert post_args.kwargs["data"]["code"] == "code-1"
        assert post_args.kwargs["data"]["grant_type"] == "authorization_code"
        assert post_args.kwargs["data"]["redirect_uri"] == REDIRECT_URI
        assert post_args.kwargs["timeout"] == 3.0
        get_args = session.get.call_args
        assert get_args.args[0] == "https://discord.example/api/v10/users/@me"
        assert get_args.kwargs["headers"]["Authorization"] == "Bearer tok"

    def test_rejected_code(self, resolver, session):
        session.post.return_value = _response(status_code=400, payload={"error": "invalid_grant"})

        with pytest.raises(AuthExchangeError) as exc_info:
            resolver.resolve_identity("expired", REDIRECT_URI)

        assert exc_info.value.retryable is True
        session.get.assert_not_called()

    def test_network_failure(self, resolver, session):
        session.post.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(AuthExchangeError):
            resolver.resolve_identity("code-1", REDIRECT_URI)

    def test_missing_access_token(self, resolver, session):
        session.post.return_value = _response(payload={"token_type": "Bearer"})

        with pytest.raises(AuthExchangeError):
            resolver.resolve_identity("code-1", REDIRECT_URI)

    def test_profile_not_json(self, resolver, session):
        session.post.return_value = _response(payload={"access_token": "tok"})
        session.get.return_value = _response(json_error=True)

        with pytest.raises(AuthExchangeError):
            resolver.resolve_identity("code-1", REDIRECT_URI)

    def test_profile_failure_status(self, resolver, session):
        session.post.return_value = _response(payload={"access_token": "tok"})
        session.get.return_value = _response(status_code=401)

        with pytest.raises(AuthExchangeError):
            resolver.resolve_identity("code-1", REDIRECT_URI)

    def test_empty_code_is_rejected_without_requests(self, resolver, session):
        with pytest.raises(AuthExchangeError):
            resolver.resolve_identity("", REDIRECT_URI)

        session.post.assert_not_called()
