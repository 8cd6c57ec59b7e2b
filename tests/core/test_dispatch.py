"""Tests for per-user serialization and event routing."""

import threading
import time

import pytest

from discordauth.core.dispatch import EventDispatcher, KeyedSerialExecutor
from discordauth.core.errors import NotAMemberError, ReconciliationTimeout
from discordauth.core.models import MembershipSnapshot, ReconcileOutcome


@pytest.fixture
def executor():
    pool = KeyedSerialExecutor(max_workers=4)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def dispatcher(engine, membership, settings, executor):
    return EventDispatcher(engine, membership, settings, executor=executor)


class TestKeyedSerialExecutor:
    def test_same_key_runs_in_submission_order(self, executor):
        seen = []

        def record(value):
            time.sleep(0.01)
            seen.append(value)
            return value

        futures = [executor.submit("111", record, i) for i in range(10)]

        assert [f.result(timeout=5) for f in futures] == list(range(10))
        assert seen == list(range(10))

    def test_same_key_never_overlaps(self, executor):
        active = []
        overlaps = []
        lock = threading.Lock()

        def work():
            with lock:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
            time.sleep(0.01)
            with lock:
                active.pop()

        futures = [executor.submit("111", work) for _ in range(8)]
        for future in futures:
            future.result(timeout=5)

        assert overlaps == []

    def test_different_keys_run_concurrently(self, executor):
        barrier = threading.Barrier(2, timeout=5)

        first = executor.submit("111", barrier.wait)
        second = executor.submit("222", barrier.wait)

        # Both calls return only if they were waiting at the same time.
        first.result(timeout=5)
        second.result(timeout=5)

    def test_failure_does_not_block_the_queue(self, executor):
        def boom():
            raise RuntimeError("boom")

        failed = executor.submit("111", boom)
        after = executor.submit("111", lambda: "ok")

        with pytest.raises(RuntimeError):
            failed.result(timeout=5)
        assert after.result(timeout=5) == "ok"

    def test_submit_after_shutdown_fails_and_frees_the_key(self):
        pool = KeyedSerialExecutor(max_workers=1)
        pool.shutdown(wait=True)

        future = pool.submit("111", lambda: "never")

        assert future.done()
        with pytest.raises(RuntimeError):
            future.result(timeout=1)
        assert pool.pending_keys() == set()

    def test_key_is_released_when_idle(self, executor):
        executor.submit("111", lambda: None).result(timeout=5)

        deadline = time.time() + 5
        while executor.pending_keys() and time.time() < deadline:
            time.sleep(0.01)
        assert executor.pending_keys() == set()


class TestLogin:
    def test_login_returns_reconcile_result(self, dispatcher, identity_resolver, membership, alice):
        identity_resolver.identities["code-a"] = alice
        membership.snapshots["111"] = MembershipSnapshot.member({"Kids"})

        result = dispatcher.login("code-a", "http://jellyfin.local/DiscordAuth/Callback")

        assert result.created is True
        assert result.outcome is ReconcileOutcome.APPLIED

    def test_rejection_reaches_the_caller(self, dispatcher, identity_resolver, alice):
        identity_resolver.identities["code-a"] = alice

        with pytest.raises(NotAMemberError):
            dispatcher.login("code-a", "http://jellyfin.local/DiscordAuth/Callback")

    def test_slow_reconciliation_times_out_but_keeps_running(
        self, dispatcher, executor, identity_resolver, membership, directory, alice
    ):
        identity_resolver.identities["code-a"] = alice
        membership.snapshots["111"] = MembershipSnapshot.member({"Kids"})
        release = threading.Event()
        blocker = executor.submit("111", release.wait, 5)

        with pytest.raises(ReconciliationTimeout) as exc_info:
            dispatcher.login("code-a", "http://jellyfin.local/DiscordAuth/Callback", timeout=0.05)

        assert exc_info.value.status_code == 504
        assert exc_info.value.retryable is True

        release.set()
        blocker.result(timeout=5)
        deadline = time.time() + 5
        while not directory.created and time.time() < deadline:
            time.sleep(0.01)
        assert len(directory.created) == 1


class TestMemberEvents:
    @pytest.fixture
    def alice_account(self, directory, link_store, engine, membership, identity_resolver, alice):
        identity_resolver.identities["code-a"] = alice
        membership.snapshots["111"] = MembershipSnapshot.member({"Kids"})
        result = engine.reconcile_from_login("code-a", "http://jellyfin.local/DiscordAuth/Callback")
        return result.account_id

    def test_member_left_disables_account(self, dispatcher, directory, alice_account):
        result = dispatcher.member_left("111").result(timeout=5)

        assert result.outcome is ReconcileOutcome.DISABLED
        assert directory.accounts[alice_account].is_disabled is True

    def test_member_updated_applies_new_roles(self, dispatcher, directory, alice, alice_account):
        result = dispatcher.member_updated(alice, ["Movies", "Anime"]).result(timeout=5)

        assert result.outcome is ReconcileOutcome.APPLIED
        assert directory.accounts[alice_account].visible_library_ids == frozenset({"lib-movies", "lib-anime"})

    def test_events_for_one_user_apply_in_order(self, dispatcher, directory, alice, alice_account):
        dispatcher.member_left("111")
        dispatcher.member_updated(alice, ["Movies"])
        last = dispatcher.member_left("111")

        last.result(timeout=5)

        assert directory.accounts[alice_account].is_disabled is True

    def test_join_grants_default_roles_before_reconciling(self, engine, membership, settings, directory, alice):
        settings["DISCORD_DEFAULT_ROLES"] = "900, 901"
        membership.guild_roles = {"900": "Movies"}
        existing = directory.add_account("alice", is_disabled=True)
        dispatcher = EventDispatcher(engine, membership, settings)

        try:
            result = dispatcher.member_joined(alice, []).result(timeout=5)
        finally:
            dispatcher.shutdown()

        assert membership.grants == [("111", "1000", ["900", "901"])]
        assert result.account_id == existing.account_id
        account = directory.accounts[existing.account_id]
        assert account.is_disabled is False
        assert account.visible_library_ids == frozenset({"lib-movies"})

    def test_join_without_default_roles_skips_grants(self, dispatcher, membership, alice, alice_account):
        dispatcher.member_joined(alice, ["Kids"]).result(timeout=5)

        assert membership.grants == []

    def test_join_of_unknown_user_creates_nothing(self, dispatcher, directory, bob):
        result = dispatcher.member_joined(bob, ["Kids"]).result(timeout=5)

        assert result.outcome is ReconcileOutcome.NOT_LINKED
        assert directory.created == []
