"""Discord OAuth2 helpers.

Builds the authorize URL and turns an authorization code into a verified
ExternalIdentity. One token exchange and one profile fetch, never retried.
"""

from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import requests

from discordauth.core.errors import AuthExchangeError
from discordauth.core.logger import setup_logger
from discordauth.core.models import ExternalIdentity

logger = setup_logger(__name__)

DISCORD_AUTHORIZE_URL = "https://discord.com/oauth2/authorize"
DISCORD_CDN_URL = "https://cdn.discordapp.com"


def _optional_str(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise AuthExchangeError(f"Discord profile field '{key}' has unexpected type {type(value).__name__}")
    return value.strip() or None


def parse_profile(payload: Any) -> ExternalIdentity:
    """Validate a /users/@me payload and build an ExternalIdentity.

    `id` and `username` are required strings; `global_name`, `avatar` and
    `email` are optional. The display name prefers `global_name`.
    """
    if not isinstance(payload, dict):
        raise AuthExchangeError("Discord profile payload is not an object")

    user_id = payload.get("id")
    if not isinstance(user_id, str) or not user_id.strip().isdigit():
        raise AuthExchangeError("Discord profile is missing a valid id")

    username = _optional_str(payload, "username")
    if not username:
        raise AuthExchangeError("Discord profile is missing a username")

    global_name = _optional_str(payload, "global_name")
    avatar = _optional_str(payload, "avatar")
    email = _optional_str(payload, "email")

    user_id = user_id.strip()
    return ExternalIdentity(
        external_id=user_id,
        display_name=global_name or username,
        avatar_ref=avatar_url(user_id, avatar),
        email=email,
    )


def avatar_url(user_id: str, avatar_hash: Optional[str]) -> Optional[str]:
    if not avatar_hash:
        return None
    return f"{DISCORD_CDN_URL}/avatars/{user_id}/{avatar_hash}.png"


class DiscordIdentityResolver:
    """Exchange authorization codes for Discord identities."""

    def __init__(self, settings: Mapping[str, Any], session: Optional[requests.Session] = None):
        self._settings = settings
        self._session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self._settings.get("DISCORD_CLIENT_ID")) and bool(
            self._settings.get("DISCORD_CLIENT_SECRET")
        )

    def _api_base(self) -> str:
        return str(self._settings.get("DISCORD_API_BASE", "https://discord.com/api/v10")).rstrip("/")

    def _timeout(self) -> float:
        return float(self._settings.get("HTTP_TIMEOUT", 10))

    def authorize_url(self, redirect_uri: str, state: str) -> str:
        scopes = self._settings.get("DISCORD_SCOPES", "identify email")
        if isinstance(scopes, (list, tuple)):
            scopes = " ".join(scopes)
        params = {
            "response_type": "code",
            "client_id": self._settings.get("DISCORD_CLIENT_ID", ""),
            "scope": scopes,
            "redirect_uri": redirect_uri,
            "state": state,
            "prompt": "consent",
        }
        return f"{DISCORD_AUTHORIZE_URL}?{urlencode(params)}"

    def _exchange_code(self, code: str, redirect_uri: str) -> str:
        try:
            resp = self._session.post(
                f"{self._api_base()}/oauth2/token",
                data={
                    "client_id": self._settings.get("DISCORD_CLIENT_ID", ""),
                    "client_secret": self._settings.get("DISCORD_CLIENT_SECRET", ""),
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout(),
            )
        except requests.RequestException as e:
            raise AuthExchangeError(f"Token exchange request failed: {e}") from e

        if not resp.ok:
            raise AuthExchangeError(f"Token exchange returned HTTP {resp.status_code}")

        try:
            token_data: Dict[str, Any] = resp.json()
        except ValueError as e:
            raise AuthExchangeError("Token exchange returned invalid JSON") from e

        access_token = token_data.get("access_token") if isinstance(token_data, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise AuthExchangeError("Token exchange response has no access_token")
        return access_token

    def _fetch_profile(self, access_token: str) -> Any:
        try:
            resp = self._session.get(
                f"{self._api_base()}/users/@me",
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self._timeout(),
            )
        except requests.RequestException as e:
            raise AuthExchangeError(f"Profile request failed: {e}") from e

        if not resp.ok:
            raise AuthExchangeError(f"Profile request returned HTTP {resp.status_code}")

        try:
            return resp.json()
        except ValueError as e:
            raise AuthExchangeError("Profile response is not valid JSON") from e

    def resolve_identity(self, code: str, redirect_uri: str) -> ExternalIdentity:
        """Turn an authorization code into an ExternalIdentity.

        Raises AuthExchangeError on transport failure, non-2xx responses or
        payloads that do not match the expected schema.
        """
        if not code:
            raise AuthExchangeError("Missing authorization code")

        access_token = self._exchange_code(code, redirect_uri)
        identity = parse_profile(self._fetch_profile(access_token))
        logger.info(f"Resolved Discord identity {identity.display_name} ({identity.external_id})")
        return identity
