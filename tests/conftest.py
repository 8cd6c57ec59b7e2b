"""
Pytest configuration and shared fixtures.
"""

import os
import sys
import tempfile

# Set environment variables BEFORE importing the application
# These override the defaults that try to use system paths like /var/log
_temp_base = tempfile.mkdtemp(prefix="discordauth_test_")

# LOG_DIR is computed as LOG_ROOT / "discordauth"
os.environ["LOG_ROOT"] = _temp_base
os.environ["CONFIG_DIR"] = os.path.join(_temp_base, "config")
os.environ.setdefault("ENABLE_LOGGING", "false")

os.makedirs(os.path.join(_temp_base, "discordauth"), exist_ok=True)  # LOG_DIR
os.makedirs(os.path.join(_temp_base, "config"), exist_ok=True)

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import dataclasses
import uuid

import pytest

from discordauth.core.errors import (
    AccountCreationError,
    AccountUpdateError,
    AuthExchangeError,
    DirectoryError,
)
from discordauth.core.link_store import IdentityLinkStore
from discordauth.core.models import (
    ExternalIdentity,
    Library,
    LocalAccount,
    MembershipSnapshot,
    TargetPermissionState,
)


class InMemoryDirectory:
    """User directory double with the same surface as JellyfinDirectory."""

    def __init__(self, libraries=()):
        self.accounts = {}
        self.passwords = {}
        self.libraries = list(libraries)
        self.created = []
        self.renames = []
        self.policy_writes = []
        self.fail_on = set()

    def _maybe_fail(self, operation, error_cls):
        if operation in self.fail_on:
            raise error_cls(f"{operation} failed")

    def add_account(self, name, **fields):
        account = LocalAccount(account_id=uuid.uuid4().hex, name=name, **fields)
        self.accounts[account.account_id] = account
        return account

    def find_by_id(self, account_id):
        self._maybe_fail("find_by_id", DirectoryError)
        return self.accounts.get(account_id)

    def find_by_name(self, name):
        self._maybe_fail("find_by_name", DirectoryError)
        wanted = name.casefold()
        for account in self.accounts.values():
            if account.name.casefold() == wanted:
                return account
        return None

    def create(self, name, password, auth_provider_id=None):
        self._maybe_fail("create", AccountCreationError)
        if self.find_by_name(name) is not None:
            raise AccountCreationError(f"User {name} already exists")
        account = self.add_account(name, auth_provider_id=auth_provider_id)
        self.passwords[account.account_id] = password
        self.created.append(account.account_id)
        return account

    def rename(self, account_id, name):
        self._maybe_fail("rename", AccountUpdateError)
        account = dataclasses.replace(self.accounts[account_id], name=name)
        self.accounts[account_id] = account
        self.renames.append((account_id, name))
        return account

    def apply_permissions(self, account_id, state: TargetPermissionState):
        self._maybe_fail("apply_permissions", AccountUpdateError)
        changes = {
            key: value
            for key, value in dataclasses.asdict(state).items()
            if value is not None
        }
        account = dataclasses.replace(self.accounts[account_id], **changes)
        self.accounts[account_id] = account
        self.policy_writes.append((account_id, state))
        return account

    def list_libraries(self):
        self._maybe_fail("list_libraries", DirectoryError)
        return list(self.libraries)


class FakeMembership:
    """Membership provider double keyed by external id."""

    def __init__(self, guild_roles=None):
        self.snapshots = {}
        self.guild_roles = dict(guild_roles or {})
        self.calls = []
        self.grants = []
        self.error = None

    def get_snapshot(self, external_id, group_id):
        self.calls.append((external_id, group_id))
        if self.error is not None:
            raise self.error
        if not group_id:
            return MembershipSnapshot.ungated()
        return self.snapshots.get(external_id, MembershipSnapshot.not_member())

    def grant_roles(self, external_id, group_id, role_ids):
        if self.error is not None:
            raise self.error
        granted = [self.guild_roles[role_id] for role_id in role_ids if role_id in self.guild_roles]
        self.grants.append((external_id, group_id, list(role_ids)))
        return granted


class FakeIdentityResolver:
    """Resolves known codes to identities; anything else is a failed exchange."""

    def __init__(self, identities=None):
        self.identities = dict(identities or {})
        self.calls = []

    def resolve_identity(self, code, redirect_uri):
        self.calls.append((code, redirect_uri))
        if code not in self.identities:
            raise AuthExchangeError("Token exchange returned HTTP 400")
        return self.identities[code]


@pytest.fixture
def link_store():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = IdentityLinkStore(os.path.join(tmpdir, "links.db"))
        store.initialize()
        yield store


@pytest.fixture
def libraries():
    return [
        Library(name="Movies", library_id="lib-movies"),
        Library(name="Kids", library_id="lib-kids"),
        Library(name="Anime", library_id="lib-anime"),
    ]


@pytest.fixture
def directory(libraries):
    return InMemoryDirectory(libraries)


@pytest.fixture
def membership():
    return FakeMembership()


@pytest.fixture
def settings():
    return {
        "DISCORD_SERVER_ID": "1000",
        "DISCORD_ADMIN_ROLE": "Admin",
        "DISCORD_DEFAULT_ROLES": "",
        "AUTH_PROVIDER_ID": "DiscordAuth.DiscordAuthenticationProvider",
        "LOGIN_TIMEOUT": 5,
        "RECONCILE_WORKERS": 4,
    }


@pytest.fixture
def alice():
    return ExternalIdentity(
        external_id="111",
        display_name="alice",
        avatar_ref="https://cdn.discordapp.com/avatars/111/abc.png",
        email="alice@example.com",
    )


@pytest.fixture
def bob():
    return ExternalIdentity(external_id="222", display_name="bob")


@pytest.fixture
def identity_resolver():
    return FakeIdentityResolver()


@pytest.fixture
def engine(identity_resolver, membership, link_store, directory, settings):
    from discordauth.core.reconciliation import ReconciliationEngine

    return ReconciliationEngine(
        identity_resolver=identity_resolver,
        membership=membership,
        link_store=link_store,
        directory=directory,
        settings=settings,
    )
