"""Guild membership lookups and default-role grants over the Discord REST API."""

from __future__ import annotations

from typing import Iterable

import requests

from discordauth.core.errors import MembershipLookupError
from discordauth.core.gateway import DiscordConnection
from discordauth.core.logger import setup_logger
from discordauth.core.models import MembershipSnapshot

logger = setup_logger(__name__)

# Discord JSON error codes meaning "this user is not in the guild".
_UNKNOWN_MEMBER_CODES = frozenset({10007, 10013})


def _error_code(resp: requests.Response) -> int | None:
    try:
        payload = resp.json()
    except ValueError:
        return None
    code = payload.get("code") if isinstance(payload, dict) else None
    return code if isinstance(code, int) else None


class MembershipProvider:
    """Reads point-in-time membership for a Discord user. Nothing is cached."""

    def __init__(self, connection: DiscordConnection):
        self._connection = connection

    def guild_roles(self, group_id: str) -> dict[str, str]:
        """Map role id to role name for a guild, without @everyone."""
        try:
            resp = self._connection.rest("GET", f"/guilds/{group_id}/roles")
            resp.raise_for_status()
            roles = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise MembershipLookupError(f"Failed to fetch roles for guild {group_id}: {e}") from e

        # The @everyone role shares its id with the guild.
        return {
            str(role["id"]): str(role.get("name") or "")
            for role in roles or []
            if role.get("id") is not None and str(role["id"]) != str(group_id)
        }

    def get_snapshot(self, external_id: str, group_id: str) -> MembershipSnapshot:
        """Return membership and non-default role names for `external_id`.

        An empty `group_id` disables gating: the snapshot is ungated and
        places no restriction on the account. Transport failures raise
        MembershipLookupError and are never reported as "not a member".
        """
        group_id = (group_id or "").strip()
        if not group_id:
            logger.debug("Server ID is not set, skipping membership check")
            return MembershipSnapshot.ungated()

        try:
            resp = self._connection.rest("GET", f"/guilds/{group_id}/members/{external_id}")
        except requests.RequestException as e:
            raise MembershipLookupError(
                f"Failed to fetch guild member {external_id}: {e}", external_id=external_id
            ) from e

        if resp.status_code == 404 and _error_code(resp) in _UNKNOWN_MEMBER_CODES:
            return MembershipSnapshot.not_member()
        if not resp.ok:
            raise MembershipLookupError(
                f"Guild member lookup returned HTTP {resp.status_code}", external_id=external_id
            )

        try:
            member = resp.json()
        except ValueError as e:
            raise MembershipLookupError("Guild member response is not valid JSON", external_id=external_id) from e

        member_role_ids = [str(role_id) for role_id in member.get("roles") or []]
        if not member_role_ids:
            return MembershipSnapshot.member()

        roles = self.guild_roles(group_id)
        return MembershipSnapshot.member(roles[role_id] for role_id in member_role_ids if role_id in roles)

    def grant_roles(self, external_id: str, group_id: str, role_ids: Iterable[str]) -> list[str]:
        """Add each existing role to the member and return the names granted.

        Unknown role ids are skipped with a warning; a failed grant does not
        stop the remaining ones.
        """
        role_ids = [str(role_id) for role_id in role_ids]
        group_id = (group_id or "").strip()
        if not role_ids or not group_id:
            return []

        roles = self.guild_roles(group_id)
        granted: list[str] = []
        for role_id in role_ids:
            if role_id not in roles:
                logger.warning(f"Role {role_id} not found in server {group_id}.")
                continue
            try:
                resp = self._connection.rest(
                    "PUT",
                    f"/guilds/{group_id}/members/{external_id}/roles/{role_id}",
                    headers={"X-Audit-Log-Reason": "Default role for new member"},
                )
                resp.raise_for_status()
            except requests.RequestException as e:
                logger.error(f"Failed to add default role {role_id} to {external_id}: {e}")
                continue
            granted.append(roles[role_id])
        return granted
