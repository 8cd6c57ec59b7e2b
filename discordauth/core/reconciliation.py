"""Bring one Jellyfin account in line with one Discord identity.

A run walks START -> IDENTITY_KNOWN -> ACCOUNT_RESOLVED -> SNAPSHOT_TAKEN ->
POLICY_COMPUTED -> APPLIED -> LINKED in a single pass. Any step can fail; the
error is tagged with the stage it failed in. Nothing is cached between runs:
every run re-reads the link store, the directory and the membership source,
which is what makes repeated runs idempotent.

The engine does not serialize runs itself. Callers must make sure only one
run per external id is in flight (see dispatch.EventDispatcher).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional

from discordauth.core.account_resolver import AccountResolver, UserDirectory
from discordauth.core.discord_oauth import DiscordIdentityResolver
from discordauth.core.errors import (
    DiscordAuthError,
    DirectoryError,
    NoEligibleRoleError,
    NotAMemberError,
)
from discordauth.core.link_store import IdentityLinkStore
from discordauth.core.logger import setup_logger
from discordauth.core.membership import MembershipProvider
from discordauth.core.models import (
    AccountResolution,
    Found,
    IdentityLink,
    Ineligible,
    IneligibleReason,
    ExternalIdentity,
    MembershipSnapshot,
    NotFound,
    PolicyDecision,
    ReconcileOutcome,
    ReconcileResult,
)
from discordauth.core.permission_policy import (
    DEFAULT_ADMIN_ROLE,
    build_library_map,
    evaluate_permissions,
)

logger = setup_logger(__name__)


class ReconcileStage(str, Enum):
    START = "start"
    IDENTITY_KNOWN = "identity_known"
    ACCOUNT_RESOLVED = "account_resolved"
    SNAPSHOT_TAKEN = "snapshot_taken"
    POLICY_COMPUTED = "policy_computed"
    APPLIED = "applied"
    LINKED = "linked"
    FAILED = "failed"


_REJECTIONS = {
    IneligibleReason.NOT_A_MEMBER: NotAMemberError,
    IneligibleReason.NO_ELIGIBLE_ROLE: NoEligibleRoleError,
}

# Stages whose failure may leave a directory write behind.
_WRITE_STAGES = frozenset({ReconcileStage.APPLIED, ReconcileStage.LINKED})


def rejection_for(decision: Ineligible, external_id: str, account_id: Optional[str] = None) -> DiscordAuthError:
    error = _REJECTIONS[decision.reason](external_id=external_id, account_id=account_id)
    error.stage = ReconcileStage.POLICY_COMPUTED.value
    return error


class _Run:
    """Bookkeeping for a single reconciliation run, used for failure logs."""

    def __init__(self, trigger: str, external_id: str):
        self.trigger = trigger
        self.external_id = external_id
        self.stage = ReconcileStage.START
        self.account_id: Optional[str] = None
        self.decision: Optional[PolicyDecision] = None

    def advance(self, stage: ReconcileStage) -> None:
        self.stage = stage

    def fail(self, error: DiscordAuthError) -> None:
        error.stage = error.stage or self.stage.value
        error.external_id = error.external_id or self.external_id
        error.account_id = error.account_id or self.account_id
        attempted = self.decision.state.describe() if self.decision is not None else "n/a"
        context = (
            f"(trigger={self.trigger}, stage={error.stage}, external_id={self.external_id}, "
            f"account_id={self.account_id or 'n/a'}, attempted_state={attempted})"
        )
        if self.stage in _WRITE_STAGES:
            logger.error_trace(f"Reconciliation failed after directory changes may have applied {context}: {error}")
        elif isinstance(error, DirectoryError):
            logger.error(f"Reconciliation failed {context}: {error}")
        else:
            logger.warning(f"Reconciliation failed {context}: {error}")
        self.stage = ReconcileStage.FAILED


class ReconciliationEngine:
    """Orchestrates identity resolution, account matching, policy and linking."""

    def __init__(
        self,
        *,
        identity_resolver: DiscordIdentityResolver,
        membership: MembershipProvider,
        link_store: IdentityLinkStore,
        directory: UserDirectory,
        settings: Mapping[str, Any],
        account_resolver: Optional[AccountResolver] = None,
    ):
        self._identity_resolver = identity_resolver
        self._membership = membership
        self._link_store = link_store
        self._directory = directory
        self._settings = settings
        self._accounts = account_resolver or AccountResolver(
            link_store,
            directory,
            auth_provider_id=settings.get("AUTH_PROVIDER_ID") or None,
        )

    def _group_id(self) -> str:
        return str(self._settings.get("DISCORD_SERVER_ID", "") or "").strip()

    def _admin_role(self) -> str:
        return str(self._settings.get("DISCORD_ADMIN_ROLE", DEFAULT_ADMIN_ROLE) or "")

    def _decide(self, snapshot: MembershipSnapshot) -> PolicyDecision:
        # Library definitions can change between runs, so read them every time.
        if snapshot.is_member and snapshot.role_names:
            library_map = build_library_map(self._directory.list_libraries())
        else:
            library_map = {}
        return evaluate_permissions(snapshot, library_map, self._admin_role())

    def resolve_identity(self, code: str, redirect_uri: str) -> ExternalIdentity:
        """START -> IDENTITY_KNOWN for the login path."""
        try:
            return self._identity_resolver.resolve_identity(code, redirect_uri)
        except DiscordAuthError as e:
            e.stage = ReconcileStage.START.value
            logger.warning(f"Discord login could not be verified: {e}")
            raise

    def reconcile_from_login(self, code: str, redirect_uri: str) -> ReconcileResult:
        """Full login path: verify the code, then reconcile that identity."""
        return self.reconcile_identity(self.resolve_identity(code, redirect_uri))

    def reconcile_identity(self, identity: ExternalIdentity) -> ReconcileResult:
        """Reconcile a freshly verified login identity.

        Accounts are only created for eligible identities. An ineligible
        identity with an existing account gets that account disabled and its
        link refreshed before the rejection is raised.
        """
        run = _Run("login", identity.external_id)
        run.advance(ReconcileStage.IDENTITY_KNOWN)
        try:
            run.advance(ReconcileStage.ACCOUNT_RESOLVED)
            match = self._accounts.find_account(identity)
            if isinstance(match, Found):
                run.account_id = match.account.account_id

            run.advance(ReconcileStage.SNAPSHOT_TAKEN)
            snapshot = self._membership.get_snapshot(identity.external_id, self._group_id())

            run.advance(ReconcileStage.POLICY_COMPUTED)
            decision = self._decide(snapshot)
            run.decision = decision

            if isinstance(decision, Ineligible) and isinstance(match, NotFound):
                logger.info(
                    f"Discord login rejected for {identity.display_name} "
                    f"({identity.external_id}): {decision.reason.value}"
                )
                raise rejection_for(decision, identity.external_id)

            run.advance(ReconcileStage.ACCOUNT_RESOLVED)
            resolution = self._accounts.provision(
                identity,
                match,
                allow_create=decision.eligible,
                context="login",
            )
            run.account_id = resolution.account.account_id

            result = self._apply_and_link(run, identity, resolution, decision)
        except (NotAMemberError, NoEligibleRoleError):
            raise
        except DiscordAuthError as e:
            run.fail(e)
            raise

        if isinstance(decision, Ineligible):
            logger.info(
                f"Discord login rejected for {identity.display_name} ({identity.external_id}), "
                f"account {result.account_id} disabled: {decision.reason.value}"
            )
            raise rejection_for(decision, identity.external_id, result.account_id)
        return result

    def reconcile_from_membership_event(
        self,
        external_id: str,
        snapshot: MembershipSnapshot,
        identity: Optional[ExternalIdentity] = None,
    ) -> ReconcileResult:
        """Apply an event-supplied snapshot to the account linked to `external_id`.

        The membership source is not consulted. Identities without an account
        are left alone: events never create accounts.
        """
        run = _Run("membership_event", external_id)
        try:
            run.advance(ReconcileStage.ACCOUNT_RESOLVED)
            link = self._link_store.find_by_external_id(external_id)
            known = identity or (link.last_known if link is not None else None)
            if known is None:
                logger.debug(f"Discord user {external_id} has no link and no name to match, skipping")
                return ReconcileResult(external_id=external_id, outcome=ReconcileOutcome.NOT_LINKED)

            resolution = self._accounts.resolve(known, allow_create=False, context="membership_event")
            if resolution is None:
                return ReconcileResult(external_id=external_id, outcome=ReconcileOutcome.NOT_LINKED)
            run.account_id = resolution.account.account_id

            run.advance(ReconcileStage.SNAPSHOT_TAKEN)
            run.advance(ReconcileStage.POLICY_COMPUTED)
            decision = self._decide(snapshot)
            run.decision = decision

            return self._apply_and_link(run, known, resolution, decision)
        except DiscordAuthError as e:
            run.fail(e)
            raise

    def _apply_and_link(
        self,
        run: _Run,
        identity: ExternalIdentity,
        resolution: AccountResolution,
        decision: PolicyDecision,
    ) -> ReconcileResult:
        account = resolution.account
        state = decision.state

        run.advance(ReconcileStage.APPLIED)
        if state.is_satisfied_by(account):
            outcome = ReconcileOutcome.UNCHANGED
            logger.debug(f"Jellyfin user {account.name} ({account.account_id}) already up to date")
        else:
            account = self._directory.apply_permissions(account.account_id, state)
            outcome = ReconcileOutcome.APPLIED if decision.eligible else ReconcileOutcome.DISABLED
            logger.info(
                f"Applied Discord roles to Jellyfin user {account.name} "
                f"(trigger={run.trigger}, external_id={identity.external_id}, "
                f"account_id={account.account_id}, {state.describe()})"
            )

        run.advance(ReconcileStage.LINKED)
        previous = self._link_store.find_by_external_id(identity.external_id)
        self._link_store.upsert(
            IdentityLink(
                account_id=account.account_id,
                external_id=identity.external_id,
                last_known=identity.merged_with(previous.last_known if previous else None),
            )
        )

        return ReconcileResult(
            external_id=identity.external_id,
            outcome=outcome,
            account_id=account.account_id,
            account_name=account.name,
            created=resolution.created,
            state=state,
            decision=decision,
        )
