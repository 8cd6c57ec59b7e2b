"""Application wiring: settings -> collaborators -> engine -> dispatcher -> routes."""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from flask import Flask

from discordauth.config import env
from discordauth.core.auth_routes import register_auth_routes
from discordauth.core.config import config
from discordauth.core.discord_oauth import DiscordIdentityResolver
from discordauth.core.dispatch import EventDispatcher
from discordauth.core.gateway import DiscordConnection
from discordauth.core.jellyfin import JellyfinDirectory
from discordauth.core.link_store import IdentityLinkStore
from discordauth.core.logger import setup_logger
from discordauth.core.membership import MembershipProvider
from discordauth.core.reconciliation import ReconciliationEngine

logger = setup_logger(__name__)


@dataclass
class Services:
    settings: Mapping[str, Any]
    link_store: IdentityLinkStore
    connection: DiscordConnection
    identity_resolver: DiscordIdentityResolver
    membership: MembershipProvider
    directory: Any
    engine: ReconciliationEngine
    dispatcher: EventDispatcher

    def start(self) -> None:
        """Open the Discord connection and start delivering member events."""
        self.connection.open(self.dispatcher)

    def reload(self) -> None:
        """Re-read settings and restart the Discord connection with them."""
        refresh = getattr(self.settings, "refresh", None)
        if callable(refresh):
            refresh()
        logger.info("Configuration changed. Restarting Discord connection.")
        self.connection.reconnect()

    def stop(self) -> None:
        self.connection.close()
        self.dispatcher.shutdown()


def build_services(
    settings: Mapping[str, Any] = config,
    links_db_path: Optional[str] = None,
    directory: Any = None,
) -> Services:
    link_store = IdentityLinkStore(links_db_path or str(env.LINKS_DB_PATH))
    link_store.initialize()

    connection = DiscordConnection(settings)
    identity_resolver = DiscordIdentityResolver(settings)
    membership = MembershipProvider(connection)
    directory = directory if directory is not None else JellyfinDirectory(settings)
    engine = ReconciliationEngine(
        identity_resolver=identity_resolver,
        membership=membership,
        link_store=link_store,
        directory=directory,
        settings=settings,
    )
    dispatcher = EventDispatcher(engine, membership, settings)

    return Services(
        settings=settings,
        link_store=link_store,
        connection=connection,
        identity_resolver=identity_resolver,
        membership=membership,
        directory=directory,
        engine=engine,
        dispatcher=dispatcher,
    )


def create_app(services: Services) -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = env.SECRET_KEY
    register_auth_routes(
        app,
        services.dispatcher,
        services.identity_resolver,
        services.link_store,
        services.settings,
    )
    return app
