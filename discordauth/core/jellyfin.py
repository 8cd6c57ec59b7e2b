"""Jellyfin REST client used as the user and library directory.

Only the handful of endpoints needed to look up, create, rename and set
policy on users, plus the virtual folder listing.
"""

from __future__ import annotations

import uuid
from typing import Any, Mapping, Optional

import requests

from discordauth.core.errors import AccountCreationError, AccountUpdateError, DirectoryError
from discordauth.core.logger import setup_logger
from discordauth.core.models import Library, LocalAccount, TargetPermissionState

logger = setup_logger(__name__)

_CLIENT_NAME = "DiscordAuth"


def normalize_guid(value: Any) -> str:
    """Jellyfin returns GUIDs with or without dashes; keep the dashless form."""
    raw = str(value or "").strip()
    try:
        return uuid.UUID(raw).hex
    except ValueError:
        return raw


def account_from_dto(dto: Mapping[str, Any]) -> LocalAccount:
    policy = dto.get("Policy") or {}
    return LocalAccount(
        account_id=normalize_guid(dto.get("Id")),
        name=str(dto.get("Name") or ""),
        is_administrator=bool(policy.get("IsAdministrator", False)),
        can_delete_content=bool(policy.get("EnableContentDeletion", False)),
        all_libraries_visible=bool(policy.get("EnableAllFolders", False)),
        visible_library_ids=frozenset(
            normalize_guid(folder) for folder in policy.get("EnabledFolders") or []
        ),
        is_disabled=bool(policy.get("IsDisabled", False)),
        auth_provider_id=policy.get("AuthenticationProviderId"),
    )


def apply_state_to_policy(policy: Mapping[str, Any], state: TargetPermissionState) -> dict[str, Any]:
    """Overlay the asserted fields of `state` onto a Jellyfin UserPolicy dict."""
    updated = dict(policy)
    updated["IsDisabled"] = state.is_disabled
    if state.is_administrator is not None:
        updated["IsAdministrator"] = state.is_administrator
    if state.can_delete_content is not None:
        updated["EnableContentDeletion"] = state.can_delete_content
    if state.all_libraries_visible is not None:
        updated["EnableAllFolders"] = state.all_libraries_visible
    if state.visible_library_ids is not None:
        updated["EnabledFolders"] = sorted(state.visible_library_ids)
    return updated


class JellyfinDirectory:
    """User and library directory backed by the Jellyfin HTTP API.

    Connection details are read from `settings` on every call so edits to the
    config file apply without rebuilding the client.
    """

    def __init__(self, settings: Mapping[str, Any], session: Optional[requests.Session] = None):
        self._settings = settings
        self._session = session or requests.Session()

    def _base_url(self) -> str:
        return str(self._settings.get("JELLYFIN_URL", "http://localhost:8096")).rstrip("/")

    def _headers(self) -> dict[str, str]:
        token = self._settings.get("JELLYFIN_API_KEY", "")
        return {
            "Authorization": f'MediaBrowser Client="{_CLIENT_NAME}", Token="{token}"',
            "Accept": "application/json",
        }

    def _timeout(self) -> float:
        return float(self._settings.get("HTTP_TIMEOUT", 10))

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        return self._session.request(
            method,
            f"{self._base_url()}{path}",
            headers=self._headers(),
            timeout=self._timeout(),
            **kwargs,
        )

    def _get_user_dto(self, account_id: str) -> Optional[dict[str, Any]]:
        resp = self._request("GET", f"/Users/{account_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    def find_by_id(self, account_id: str) -> Optional[LocalAccount]:
        try:
            dto = self._get_user_dto(account_id)
        except (requests.RequestException, ValueError) as e:
            raise DirectoryError(f"Failed to look up Jellyfin user {account_id}: {e}", account_id=account_id) from e
        return account_from_dto(dto) if dto else None

    def find_by_name(self, name: str) -> Optional[LocalAccount]:
        """Find a user by name. Jellyfin user names are unique ignoring case."""
        wanted = (name or "").strip().casefold()
        if not wanted:
            return None
        try:
            resp = self._request("GET", "/Users")
            resp.raise_for_status()
            users = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise DirectoryError(f"Failed to list Jellyfin users: {e}") from e

        for dto in users or []:
            if str(dto.get("Name") or "").casefold() == wanted:
                return account_from_dto(dto)
        return None

    def create(self, name: str, password: str, auth_provider_id: Optional[str] = None) -> LocalAccount:
        """Create a user and mark it with the external authentication provider."""
        try:
            resp = self._request("POST", "/Users/New", json={"Name": name, "Password": password})
            resp.raise_for_status()
            dto = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise AccountCreationError(f"Failed to create Jellyfin user {name}: {e}") from e

        account_id = normalize_guid(dto.get("Id"))
        if auth_provider_id:
            policy = dict(dto.get("Policy") or {})
            policy["AuthenticationProviderId"] = auth_provider_id
            try:
                resp = self._request("POST", f"/Users/{account_id}/Policy", json=policy)
                resp.raise_for_status()
            except requests.RequestException as e:
                raise AccountCreationError(
                    f"Created Jellyfin user {name} but failed to set its auth provider: {e}",
                    account_id=account_id,
                ) from e
            dto = {**dto, "Policy": policy}
        logger.info(f"Created Jellyfin user {name} ({account_id})")
        return account_from_dto(dto)

    def rename(self, account_id: str, name: str) -> LocalAccount:
        """Update the display/user name of an account."""
        try:
            dto = self._get_user_dto(account_id)
            if dto is None:
                raise AccountUpdateError(f"Jellyfin user {account_id} not found", account_id=account_id)
            dto = {**dto, "Name": name}
            resp = self._request("POST", f"/Users/{account_id}", json=dto)
            resp.raise_for_status()
        except (requests.RequestException, ValueError) as e:
            raise AccountUpdateError(f"Failed to rename Jellyfin user {account_id}: {e}", account_id=account_id) from e
        return account_from_dto(dto)

    def apply_permissions(self, account_id: str, state: TargetPermissionState) -> LocalAccount:
        """Write every asserted field of `state` in a single policy update."""
        try:
            dto = self._get_user_dto(account_id)
            if dto is None:
                raise AccountUpdateError(f"Jellyfin user {account_id} not found", account_id=account_id)
            policy = apply_state_to_policy(dto.get("Policy") or {}, state)
            resp = self._request("POST", f"/Users/{account_id}/Policy", json=policy)
            resp.raise_for_status()
        except (requests.RequestException, ValueError) as e:
            raise AccountUpdateError(
                f"Failed to update policy for Jellyfin user {account_id}: {e}", account_id=account_id
            ) from e
        return account_from_dto({**dto, "Policy": policy})

    def list_libraries(self) -> list[Library]:
        try:
            resp = self._request("GET", "/Library/VirtualFolders")
            resp.raise_for_status()
            folders = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise DirectoryError(f"Failed to list Jellyfin libraries: {e}") from e

        libraries = []
        for folder in folders or []:
            name = folder.get("Name")
            item_id = folder.get("ItemId")
            if name and item_id:
                libraries.append(Library(name=str(name), library_id=normalize_guid(item_id)))
        return libraries
