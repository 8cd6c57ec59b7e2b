"""Route login callbacks and gateway member events into the reconciliation engine.

All work for one Discord user runs one item at a time, in the order it was
submitted; work for different users runs in parallel on a small thread pool.
"""

from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Deque, Dict, Iterable, Mapping, Optional, Tuple

from discordauth.core.config import parse_id_list
from discordauth.core.errors import DiscordAuthError, MembershipLookupError, ReconciliationTimeout
from discordauth.core.logger import setup_logger
from discordauth.core.membership import MembershipProvider
from discordauth.core.models import ExternalIdentity, MembershipSnapshot, ReconcileResult
from discordauth.core.reconciliation import ReconciliationEngine

logger = setup_logger(__name__)

_WorkItem = Tuple[Future, Callable[..., Any], tuple, dict]


class KeyedSerialExecutor:
    """Run callables submitted under the same key one at a time, in FIFO order.

    Each key with pending work occupies at most one pool thread, which drains
    that key's queue and then releases it.
    """

    def __init__(self, max_workers: int = 4, thread_name_prefix: str = "Reconcile"):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=thread_name_prefix)
        self._lock = threading.Lock()
        self._pending: Dict[str, Deque[_WorkItem]] = {}

    def submit(self, key: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        with self._lock:
            queue = self._pending.get(key)
            if queue is not None:
                queue.append((future, fn, args, kwargs))
                return future
            self._pending[key] = deque([(future, fn, args, kwargs)])
            try:
                self._executor.submit(self._drain, key)
            except RuntimeError as e:
                # Pool already shut down: release the key so it is not stuck busy.
                del self._pending[key]
                future.set_exception(e)
        return future

    def _drain(self, key: str) -> None:
        while True:
            with self._lock:
                queue = self._pending[key]
                if not queue:
                    del self._pending[key]
                    return
                future, fn, args, kwargs = queue.popleft()

            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(result)

    def pending_keys(self) -> set[str]:
        with self._lock:
            return set(self._pending)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class EventDispatcher:
    """Entry point for both triggers: interactive logins and member events."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        membership: MembershipProvider,
        settings: Mapping[str, Any],
        executor: Optional[KeyedSerialExecutor] = None,
    ):
        self._engine = engine
        self._membership = membership
        self._settings = settings
        self._executor = executor or KeyedSerialExecutor(
            max_workers=int(settings.get("RECONCILE_WORKERS", 4) or 4)
        )

    def _login_timeout(self) -> float:
        return float(self._settings.get("LOGIN_TIMEOUT", 30) or 30)

    def login(self, code: str, redirect_uri: str, timeout: Optional[float] = None) -> ReconcileResult:
        """Verify a login code and reconcile that user, waiting at most `timeout`.

        On timeout the caller gets ReconciliationTimeout while the run itself
        completes in the background.
        """
        identity = self._engine.resolve_identity(code, redirect_uri)
        future = self._executor.submit(identity.external_id, self._engine.reconcile_identity, identity)
        wait = self._login_timeout() if timeout is None else timeout
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError as e:
            logger.warning(
                f"Login reconciliation for {identity.external_id} exceeded {wait:.0f}s, "
                "continuing in background"
            )
            future.add_done_callback(self._log_failure(identity.external_id, "login"))
            raise ReconciliationTimeout(external_id=identity.external_id) from e

    def member_updated(self, identity: ExternalIdentity, role_names: Iterable[str]) -> Future:
        snapshot = MembershipSnapshot.member(role_names)
        return self._submit_event(
            "member_update",
            identity.external_id,
            self._engine.reconcile_from_membership_event,
            identity.external_id,
            snapshot,
            identity,
        )

    def member_joined(self, identity: ExternalIdentity, role_names: Iterable[str]) -> Future:
        return self._submit_event(
            "member_join",
            identity.external_id,
            self._handle_join,
            identity,
            frozenset(role_names),
        )

    def member_left(self, external_id: str) -> Future:
        return self._submit_event(
            "member_leave",
            external_id,
            self._engine.reconcile_from_membership_event,
            external_id,
            MembershipSnapshot.not_member(),
        )

    def _handle_join(self, identity: ExternalIdentity, role_names: frozenset[str]) -> ReconcileResult:
        default_roles = parse_id_list(self._settings.get("DISCORD_DEFAULT_ROLES", ""))
        granted: list[str] = []
        if default_roles:
            group_id = str(self._settings.get("DISCORD_SERVER_ID", "") or "")
            logger.info(f"Adding default roles to {identity.display_name} ({identity.external_id})")
            try:
                granted = self._membership.grant_roles(identity.external_id, group_id, default_roles)
            except MembershipLookupError as e:
                logger.error(f"Could not grant default roles to {identity.external_id}: {e}")

        snapshot = MembershipSnapshot.member(role_names | frozenset(granted))
        return self._engine.reconcile_from_membership_event(identity.external_id, snapshot, identity)

    def _submit_event(self, trigger: str, key: str, fn: Callable[..., Any], *args: Any) -> Future:
        future = self._executor.submit(key, fn, *args)
        future.add_done_callback(self._log_failure(key, trigger))
        return future

    @staticmethod
    def _log_failure(external_id: str, trigger: str) -> Callable[[Future], None]:
        def _callback(future: Future) -> None:
            if future.cancelled():
                return
            error = future.exception()
            if error is None:
                return
            if isinstance(error, DiscordAuthError):
                logger.debug(f"{trigger} for {external_id} failed: {error}")
            else:
                logger.error(
                    f"Unexpected error handling {trigger} for {external_id}: {error}",
                    exc_info=error,
                )

        return _callback

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
