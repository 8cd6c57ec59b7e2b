"""Discord account linking and permission sync for Jellyfin."""

__version__ = "1.0.0"
