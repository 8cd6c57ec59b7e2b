"""Value types shared by the identity-linking and reconciliation modules."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Literal, Optional, Union


@dataclass(frozen=True)
class ExternalIdentity:
    """Point-in-time view of a Discord user.

    `external_id` is the durable key; `display_name` may change or collide.
    """

    external_id: str
    display_name: str
    avatar_ref: Optional[str] = None
    email: Optional[str] = None

    def merged_with(self, previous: Optional[ExternalIdentity]) -> ExternalIdentity:
        """Fill fields this view lacks from an earlier view of the same user.

        Gateway events carry no email, so a missing value means "unknown",
        not "removed".
        """
        if previous is None or previous.external_id != self.external_id:
            return self
        return replace(
            self,
            avatar_ref=self.avatar_ref or previous.avatar_ref,
            email=self.email or previous.email,
        )


@dataclass(frozen=True)
class MembershipSnapshot:
    """Whether a user belongs to the guild and which non-default roles they hold.

    `gated` is False when no guild is configured; such a snapshot says nothing
    about roles and must not restrict the account.
    """

    is_member: bool
    role_names: frozenset[str] = field(default_factory=frozenset)
    gated: bool = True

    @classmethod
    def member(cls, role_names: Iterable[str] = ()) -> MembershipSnapshot:
        return cls(is_member=True, role_names=frozenset(role_names))

    @classmethod
    def not_member(cls) -> MembershipSnapshot:
        return cls(is_member=False, role_names=frozenset())

    @classmethod
    def ungated(cls) -> MembershipSnapshot:
        return cls(is_member=True, role_names=frozenset(), gated=False)


@dataclass(frozen=True)
class Library:
    name: str
    library_id: str


@dataclass(frozen=True)
class LocalAccount:
    """A Jellyfin user together with the permission fields this project manages."""

    account_id: str
    name: str
    is_administrator: bool = False
    can_delete_content: bool = False
    all_libraries_visible: bool = False
    visible_library_ids: frozenset[str] = field(default_factory=frozenset)
    is_disabled: bool = False
    auth_provider_id: Optional[str] = None


@dataclass(frozen=True)
class IdentityLink:
    account_id: str
    external_id: str
    last_known: ExternalIdentity
    updated_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "externalId": self.external_id,
            "displayName": self.last_known.display_name,
            "avatar": self.last_known.avatar_ref,
            "email": self.last_known.email,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class TargetPermissionState:
    """Permission fields to write to an account.

    Fields left as None are not asserted and keep the account's current value.
    """

    is_disabled: bool
    is_administrator: Optional[bool] = None
    can_delete_content: Optional[bool] = None
    all_libraries_visible: Optional[bool] = None
    visible_library_ids: Optional[frozenset[str]] = None

    @classmethod
    def disabled(cls) -> TargetPermissionState:
        return cls(is_disabled=True)

    @property
    def disable_only(self) -> bool:
        return (
            self.is_administrator is None
            and self.can_delete_content is None
            and self.all_libraries_visible is None
            and self.visible_library_ids is None
        )

    def is_satisfied_by(self, account: LocalAccount) -> bool:
        """True when writing this state would not change `account`."""
        checks = (
            (self.is_disabled, account.is_disabled),
            (self.is_administrator, account.is_administrator),
            (self.can_delete_content, account.can_delete_content),
            (self.all_libraries_visible, account.all_libraries_visible),
            (self.visible_library_ids, account.visible_library_ids),
        )
        return all(target is None or target == current for target, current in checks)

    def describe(self) -> str:
        if self.disable_only:
            return f"disabled={self.is_disabled}"
        libraries = ",".join(sorted(self.visible_library_ids or ()))
        return (
            f"disabled={self.is_disabled}, admin={self.is_administrator}, "
            f"delete={self.can_delete_content}, all_libraries={self.all_libraries_visible}, "
            f"libraries=[{libraries}]"
        )


class IneligibleReason(str, Enum):
    NOT_A_MEMBER = "not_a_member"
    NO_ELIGIBLE_ROLE = "no_eligible_role"


@dataclass(frozen=True)
class Eligible:
    state: TargetPermissionState
    eligible: Literal[True] = True


@dataclass(frozen=True)
class Ineligible:
    reason: IneligibleReason
    state: TargetPermissionState = field(default_factory=TargetPermissionState.disabled)
    eligible: Literal[False] = False


PolicyDecision = Union[Eligible, Ineligible]

MatchReason = Literal["link_match", "name_match"]


@dataclass(frozen=True)
class Found:
    account: LocalAccount
    reason: MatchReason


@dataclass(frozen=True)
class NotFound:
    pass


AccountMatch = Union[Found, NotFound]


@dataclass(frozen=True)
class AccountResolution:
    account: LocalAccount
    created: bool
    reason: str


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DISABLED = "disabled"
    UNCHANGED = "unchanged"
    NOT_LINKED = "not_linked"


@dataclass(frozen=True)
class ReconcileResult:
    external_id: str
    outcome: ReconcileOutcome
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    created: bool = False
    state: Optional[TargetPermissionState] = None
    decision: Optional[PolicyDecision] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "username": self.account_name,
            "created": self.created,
            "outcome": self.outcome.value,
        }
