"""Discord login Flask route handlers.

Registers /DiscordAuth/Login, /DiscordAuth/Callback and /DiscordAuth/Links.
Session and token issuance for Jellyfin happen elsewhere; the callback
answers with the reconciled account as JSON.
"""

import secrets
from typing import Any, Mapping

from flask import Flask, jsonify, redirect, request, session

from discordauth.core.dispatch import EventDispatcher
from discordauth.core.discord_oauth import DiscordIdentityResolver
from discordauth.core.errors import DiscordAuthError
from discordauth.core.link_store import IdentityLinkStore
from discordauth.core.logger import setup_logger

logger = setup_logger(__name__)

CALLBACK_PATH = "/DiscordAuth/Callback"


def _callback_url() -> str:
    return request.url_root.rstrip("/") + CALLBACK_PATH


def _error_response(error: DiscordAuthError):
    return (
        jsonify({"error": error.user_message, "retryable": error.retryable}),
        error.status_code,
    )


def register_auth_routes(
    app: Flask,
    dispatcher: EventDispatcher,
    identity_resolver: DiscordIdentityResolver,
    link_store: IdentityLinkStore,
    settings: Mapping[str, Any],
) -> None:
    """Register Discord authentication routes on the Flask app."""

    @app.route("/DiscordAuth/Login", methods=["GET"])
    def discord_login():
        """Redirect the browser to Discord's consent screen."""
        if not identity_resolver.is_configured:
            return jsonify({"error": "Discord OAuth is not configured"}), 500

        state = secrets.token_urlsafe(32)
        session["discord_oauth_state"] = state
        return redirect(identity_resolver.authorize_url(_callback_url(), state))

    @app.route(CALLBACK_PATH, methods=["GET"])
    def discord_callback():
        """Handle the OAuth2 callback from Discord."""
        code = request.args.get("code")
        state = request.args.get("state")
        error = request.args.get("error")

        if error:
            logger.warning(f"Discord callback error: {error}")
            return jsonify({"error": f"Authentication failed: {error}"}), 400

        expected_state = session.pop("discord_oauth_state", None)
        if not state or state != expected_state:
            return jsonify({"error": "Invalid state parameter"}), 400

        if not code:
            return jsonify({"error": "Missing authorization code"}), 400

        try:
            result = dispatcher.login(code, _callback_url())
        except DiscordAuthError as e:
            return _error_response(e)
        except Exception as e:
            logger.error_trace(f"Discord callback error: {e}")
            return jsonify({"error": "Something went wrong"}), 500

        logger.info(
            f"Discord login successful: {result.account_name} "
            f"(account_id={result.account_id}, created={result.created})"
        )
        return jsonify(result.to_dict())

    @app.route("/DiscordAuth/Links", methods=["GET"])
    def discord_links():
        """List every identity link, for manual inspection and repair."""
        token = str(settings.get("LINKS_API_TOKEN", "") or "")
        if not token:
            return jsonify({"error": "Not found"}), 404

        supplied = request.headers.get("Authorization", "")
        if not secrets.compare_digest(supplied.encode(), f"Bearer {token}".encode()):
            return jsonify({"error": "Unauthorized"}), 401

        return jsonify([link.to_dict() for link in link_store.list_links()])
