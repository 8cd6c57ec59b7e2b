"""Discord connection owned by the application.

One object holds both the bot-authenticated REST session used for membership
lookups and the gateway client that delivers member join/leave/update events.
It is opened, reconnected and closed explicitly; nothing here is global.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol

import discord
import requests

from discordauth import __version__
from discordauth.core.discord_oauth import avatar_url
from discordauth.core.logger import forward_library_logs, setup_logger
from discordauth.core.models import ExternalIdentity

logger = setup_logger(__name__)

_CLOSE_TIMEOUT = 10.0


class MemberEventListener(Protocol):
    def member_joined(self, identity: ExternalIdentity, role_names: Iterable[str]) -> Any: ...

    def member_updated(self, identity: ExternalIdentity, role_names: Iterable[str]) -> Any: ...

    def member_left(self, external_id: str) -> Any: ...


def member_role_names(member: Any) -> frozenset[str]:
    """Role names held by a gateway member, without the implicit @everyone role."""
    return frozenset(role.name for role in getattr(member, "roles", []) if not role.is_default())


def member_identity(member: Any) -> ExternalIdentity:
    """Build an identity from a gateway member, naming it the same way login does."""
    user_id = str(member.id)
    avatar = getattr(member, "avatar", None)
    return ExternalIdentity(
        external_id=user_id,
        display_name=getattr(member, "global_name", None) or member.name,
        avatar_ref=avatar_url(user_id, getattr(avatar, "key", None)),
    )


class DiscordConnection:
    """REST session plus gateway client for the configured bot."""

    def __init__(
        self,
        settings: Mapping[str, Any],
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._lock = threading.Lock()
        self._session: Optional[requests.Session] = None
        self._client: Optional[discord.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._listener: Optional[MemberEventListener] = None

    @property
    def is_open(self) -> bool:
        return self._session is not None

    @property
    def gateway_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def _api_base(self) -> str:
        return str(self._settings.get("DISCORD_API_BASE", "https://discord.com/api/v10")).rstrip("/")

    def _server_id(self) -> str:
        return str(self._settings.get("DISCORD_SERVER_ID", "") or "").strip()

    def open(self, listener: Optional[MemberEventListener] = None) -> None:
        """Open the REST session and, when a listener is given, start the gateway."""
        with self._lock:
            if self._session is not None:
                return

            token = str(self._settings.get("DISCORD_BOT_TOKEN", "") or "").strip()
            session = self._session_factory()
            session.headers.update(
                {
                    "Authorization": f"Bot {token}",
                    "User-Agent": f"DiscordBot (discordauth, {__version__})",
                }
            )
            self._session = session
            self._listener = listener

            if not token:
                logger.warning("Discord bot token is not set; membership events are disabled")
                return
            if listener is None:
                return

            forward_library_logs("discord", logger)
            self._loop = asyncio.new_event_loop()
            self._client = self._build_client()
            self._thread = threading.Thread(
                target=self._run_gateway,
                args=(self._client, self._loop, token),
                daemon=True,
                name="DiscordGateway",
            )
            self._thread.start()
            logger.info("Discord gateway client started")

    def close(self) -> None:
        """Log the bot out, stop the gateway thread and close the REST session."""
        with self._lock:
            client, loop, thread, session = self._client, self._loop, self._thread, self._session
            self._client = None
            self._loop = None
            self._thread = None
            self._session = None

        if client is not None and loop is not None and not loop.is_closed():
            try:
                asyncio.run_coroutine_threadsafe(client.close(), loop).result(timeout=_CLOSE_TIMEOUT)
            except Exception as e:
                logger.warning(f"Error while closing Discord gateway: {e}")
        if thread is not None:
            thread.join(timeout=_CLOSE_TIMEOUT)
        if session is not None:
            session.close()
            logger.info("Discord connection closed")

    def reconnect(self) -> None:
        """Close and reopen with the current settings and the same listener."""
        listener = self._listener
        logger.info("Reconnecting Discord connection")
        self.close()
        self.open(listener)

    def rest(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        """Issue a bot-authenticated REST call. Raises requests errors on transport failure."""
        session = self._session
        if session is None:
            raise requests.ConnectionError("Discord connection is not open")
        kwargs.setdefault("timeout", float(self._settings.get("HTTP_TIMEOUT", 10)))
        return session.request(method, f"{self._api_base()}{path}", **kwargs)

    def _run_gateway(self, client: discord.Client, loop: asyncio.AbstractEventLoop, token: str) -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(client.start(token))
        except discord.LoginFailure as e:
            logger.error(f"Discord bot login failed: {e}")
        except Exception as e:
            logger.error_trace(f"Discord gateway stopped unexpectedly: {e}")
        finally:
            if not client.is_closed():
                loop.run_until_complete(client.close())
            loop.close()

    def _build_client(self) -> discord.Client:
        intents = discord.Intents.default()
        intents.members = True
        client = discord.Client(intents=intents)

        @client.event
        async def on_ready():
            logger.info(f"Connected to Discord as {client.user}. Listing guilds...")
            for guild in client.guilds:
                logger.info(f"Guild: {guild.name} ({guild.id})")

        @client.event
        async def on_disconnect():
            logger.info("Disconnected from Discord gateway")

        @client.event
        async def on_member_join(member):
            self.handle_member_join(member)

        @client.event
        async def on_member_update(before, after):
            self.handle_member_update(before, after)

        @client.event
        async def on_raw_member_remove(payload):
            self.handle_member_remove(payload.guild_id, payload.user)

        return client

    def _watches_guild(self, guild_id: Any) -> bool:
        # Without a configured guild there is no membership to reconcile against.
        server_id = self._server_id()
        return bool(server_id) and str(guild_id) == server_id

    def handle_member_join(self, member: Any) -> None:
        listener = self._listener
        if listener is None or getattr(member, "bot", False) or not self._watches_guild(member.guild.id):
            return
        identity = member_identity(member)
        logger.info(f"{identity.display_name} ({identity.external_id}) joined the server")
        listener.member_joined(identity, member_role_names(member))

    def handle_member_update(self, before: Any, after: Any) -> None:
        listener = self._listener
        if listener is None or getattr(after, "bot", False) or not self._watches_guild(after.guild.id):
            return
        roles = member_role_names(after)
        identity = member_identity(after)
        if member_role_names(before) == roles and member_identity(before) == identity:
            return
        logger.info(f"{identity.display_name} ({identity.external_id}) updated")
        listener.member_updated(identity, roles)

    def handle_member_remove(self, guild_id: Any, user: Any) -> None:
        listener = self._listener
        if listener is None or getattr(user, "bot", False) or not self._watches_guild(guild_id):
            return
        logger.info(f"{user.name} ({user.id}) left the server")
        listener.member_left(str(user.id))
