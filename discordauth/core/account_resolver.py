"""Match a Discord identity to a Jellyfin account, creating one when needed."""

from __future__ import annotations

import secrets
from typing import Any, Optional, Protocol

from discordauth.core.errors import AccountCreationError, LinkConflictError
from discordauth.core.link_store import IdentityLinkStore
from discordauth.core.logger import setup_logger
from discordauth.core.models import (
    AccountMatch,
    AccountResolution,
    ExternalIdentity,
    Found,
    Library,
    LocalAccount,
    NotFound,
    TargetPermissionState,
)

logger = setup_logger(__name__)


class UserDirectory(Protocol):
    def find_by_id(self, account_id: str) -> Optional[LocalAccount]: ...

    def find_by_name(self, name: str) -> Optional[LocalAccount]: ...

    def create(self, name: str, password: str, auth_provider_id: Optional[str] = None) -> LocalAccount: ...

    def rename(self, account_id: str, name: str) -> LocalAccount: ...

    def apply_permissions(self, account_id: str, state: TargetPermissionState) -> LocalAccount: ...

    def list_libraries(self) -> list[Library]: ...


def _normalize_name(value: Any) -> str:
    return str(value or "").strip()


def unusable_password() -> str:
    """Random credential for accounts that only ever log in through Discord."""
    return secrets.token_urlsafe(64)


class AccountResolver:
    """Find or provision the local account for an external identity.

    Matching order: existing link, then an unlinked account with the same
    name, then (if allowed) a new account. Lookups never mutate anything.
    """

    def __init__(
        self,
        link_store: IdentityLinkStore,
        directory: UserDirectory,
        auth_provider_id: Optional[str] = None,
    ):
        self._link_store = link_store
        self._directory = directory
        self._auth_provider_id = auth_provider_id

    def find_account(self, identity: ExternalIdentity) -> AccountMatch:
        link = self._link_store.find_by_external_id(identity.external_id)
        if link is not None:
            linked = self._directory.find_by_id(link.account_id)
            if linked is not None:
                return Found(linked, "link_match")
            logger.warning(
                f"Linked Jellyfin account {link.account_id} for Discord user "
                f"{identity.external_id} no longer exists, falling back to name match"
            )

        name = _normalize_name(identity.display_name)
        by_name = self._directory.find_by_name(name) if name else None
        if by_name is None:
            return NotFound()

        owner = self._link_store.find_by_account_id(by_name.account_id)
        if owner is not None and owner.external_id != identity.external_id:
            raise LinkConflictError(
                f"Jellyfin account {by_name.name} ({by_name.account_id}) is linked to "
                f"Discord user {owner.external_id}",
                external_id=identity.external_id,
                account_id=by_name.account_id,
            )
        return Found(by_name, "name_match")

    def _sync_name(self, account: LocalAccount, identity: ExternalIdentity) -> LocalAccount:
        name = _normalize_name(identity.display_name)
        if not name or account.name == name:
            return account
        logger.info(f"Renaming Jellyfin user {account.name} to {name} ({account.account_id})")
        return self._directory.rename(account.account_id, name)

    def provision(
        self,
        identity: ExternalIdentity,
        match: AccountMatch,
        *,
        allow_create: bool = True,
        context: Optional[str] = None,
    ) -> Optional[AccountResolution]:
        """Turn a match into a usable account, renaming or creating as needed.

        Returns None when nothing matched and creation is not allowed.
        """
        if isinstance(match, Found):
            account = self._sync_name(match.account, identity)
            logger.info(
                "Discord user mapped to existing Jellyfin user "
                f"(context={context or 'unspecified'}, reason={match.reason}, "
                f"external_id={identity.external_id}, account_id={account.account_id}, "
                f"username={account.name})"
            )
            return AccountResolution(account=account, created=False, reason=match.reason)

        if not allow_create:
            logger.debug(
                "Discord user could not be mapped and creation is disabled "
                f"(context={context or 'unspecified'}, external_id={identity.external_id})"
            )
            return None

        name = _normalize_name(identity.display_name)
        if not name:
            raise AccountCreationError(
                "Discord user has no display name to create an account with",
                external_id=identity.external_id,
            )

        logger.info(f"Discord user {name} has no Jellyfin account, creating...")
        created = self._directory.create(
            name,
            password=unusable_password(),
            auth_provider_id=self._auth_provider_id,
        )
        logger.info(
            "Discord user created Jellyfin user "
            f"(context={context or 'unspecified'}, external_id={identity.external_id}, "
            f"account_id={created.account_id}, username={created.name})"
        )
        return AccountResolution(account=created, created=True, reason="created")

    def resolve(
        self,
        identity: ExternalIdentity,
        *,
        allow_create: bool = True,
        context: Optional[str] = None,
    ) -> Optional[AccountResolution]:
        """Find and provision in one step."""
        return self.provision(
            identity,
            self.find_account(identity),
            allow_create=allow_create,
            context=context,
        )
