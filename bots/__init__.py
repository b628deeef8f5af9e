"""Discord bot and OAuth callback processes built on the ``gatekeeper`` core."""

__all__ = ["callback", "config", "discord_adapter", "runtime"]
