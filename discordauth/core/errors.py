"""Error taxonomy for identity linking and permission reconciliation.

Each error carries the message shown to the end user, whether retrying
makes sense, and the HTTP status the login routes answer with.
"""

from typing import Optional


class DiscordAuthError(Exception):
    """Base class for all reconciliation failures."""

    user_message = "Something went wrong. Please try again later."
    retryable = False
    status_code = 500

    def __init__(
        self,
        message: str = "",
        *,
        external_id: Optional[str] = None,
        account_id: Optional[str] = None,
    ):
        super().__init__(message or self.user_message)
        self.external_id = external_id
        self.account_id = account_id
        # Reconciliation stage that was running when the error surfaced.
        self.stage: Optional[str] = None


class AuthExchangeError(DiscordAuthError):
    """Bad or expired code, malformed payload, or network failure during login."""

    user_message = "Discord login failed. Please try logging in again."
    retryable = True
    status_code = 400


class MembershipLookupError(DiscordAuthError):
    """The membership source could not be reached. Never means "not a member"."""

    user_message = "Could not verify your server membership. Please try again later."
    retryable = True
    status_code = 503


class NotAMemberError(DiscordAuthError):
    user_message = "You must be a member of the Discord server to access Jellyfin."
    status_code = 403


class NoEligibleRoleError(DiscordAuthError):
    user_message = "You need a Discord role other than @everyone to access Jellyfin."
    status_code = 403


class DirectoryError(DiscordAuthError):
    """The media server's user or library directory failed."""


class AccountCreationError(DirectoryError):
    pass


class AccountUpdateError(DirectoryError):
    pass


class LinkConflictError(DiscordAuthError):
    """A local account is already linked to a different external identity."""

    user_message = "This Jellyfin account is already linked to another Discord user."
    status_code = 409


class ReconciliationTimeout(DiscordAuthError):
    """The login request gave up waiting; the reconciliation itself keeps running."""

    user_message = "Login is taking longer than expected. Please try again in a moment."
    retryable = True
    status_code = 504
