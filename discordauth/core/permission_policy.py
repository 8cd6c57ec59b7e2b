"""Role-to-permission policy.

This module is intentionally pure and side-effect free: the same snapshot and
library map always produce the same decision, and no input makes it fail.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from discordauth.core.models import (
    Eligible,
    Ineligible,
    IneligibleReason,
    Library,
    MembershipSnapshot,
    PolicyDecision,
    TargetPermissionState,
)

DEFAULT_ADMIN_ROLE = "Admin"


def build_library_map(libraries: Iterable[Library]) -> dict[str, str]:
    """Map library names to ids. Role names are matched against these names."""
    return {library.name: library.library_id for library in libraries}


def visible_libraries(role_names: Iterable[str], library_map: Mapping[str, str]) -> frozenset[str]:
    roles = set(role_names)
    return frozenset(
        library_id for library_name, library_id in library_map.items() if library_name in roles
    )


def evaluate_permissions(
    snapshot: MembershipSnapshot,
    library_map: Mapping[str, str],
    admin_role: str = DEFAULT_ADMIN_ROLE,
) -> PolicyDecision:
    """Compute the target permission state for a membership snapshot.

    Rules, first match wins:
    - no guild configured: enable only, leave every other field as configured
    - not a member: disable only, leave every other field as configured
    - member without non-default roles: disable only
    - holds the admin role (exact, case-sensitive): full access
    - otherwise: one library per role whose name matches a library name

    Role names that match neither a library nor the admin role are ignored.
    """
    if not snapshot.gated:
        return Eligible(TargetPermissionState(is_disabled=False))

    if not snapshot.is_member:
        return Ineligible(IneligibleReason.NOT_A_MEMBER)

    if not snapshot.role_names:
        return Ineligible(IneligibleReason.NO_ELIGIBLE_ROLE)

    if admin_role and admin_role in snapshot.role_names:
        return Eligible(
            TargetPermissionState(
                is_disabled=False,
                is_administrator=True,
                can_delete_content=True,
                all_libraries_visible=True,
                visible_library_ids=frozenset(),
            )
        )

    return Eligible(
        TargetPermissionState(
            is_disabled=False,
            is_administrator=False,
            can_delete_content=False,
            all_libraries_visible=False,
            visible_library_ids=visible_libraries(snapshot.role_names, library_map),
        )
    )
