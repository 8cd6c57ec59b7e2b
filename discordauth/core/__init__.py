"""Core module - identity linking, permission policy and reconciliation."""

from discordauth.core.logger import setup_logger
