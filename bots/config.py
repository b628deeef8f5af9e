"""Configuration helpers for the bot and callback processes."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta

from gatekeeper.errors import StartupFatalError
from gatekeeper.machine import RejoinPolicy
from gatekeeper.oauth import OAuthSettings

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smh]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


def env_bool(name: str, *, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def env_int(name: str, *, default: int | None = None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def parse_duration(raw: str) -> timedelta:
    """Parse ``"90s"``, ``"10m"``, ``"1h"`` or a bare number of seconds."""
    match = _DURATION_RE.match(raw)
    if match is None:
        raise ValueError(f"invalid duration {raw!r}")
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _DURATION_UNITS[unit.lower()])


def env_duration(name: str, *, default: timedelta) -> timedelta:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = parse_duration(raw)
    except ValueError as exc:
        raise StartupFatalError(f"{name}: {exc}") from exc
    if value <= timedelta(0):
        raise StartupFatalError(f"{name} must be positive")
    return value


@dataclass(frozen=True)
class Settings:
    discord_token: str
    oauth_client_id: str
    oauth_client_secret: str
    oauth_host: str
    oauth_redirect_url: str
    oauth_provider_name: str
    table_name: str
    aws_region: str
    ddb_endpoint_url: str | None
    join_timeout: timedelta
    handler_timeout: timedelta
    reconcile_interval: timedelta
    admin_sync_interval: timedelta
    admin_cache_max_age: timedelta
    rejoin_policy: RejoinPolicy
    greeting_channel_id: int | None
    callback_host: str
    callback_port: int
    log_level: str
    debug: bool

    @property
    def oauth(self) -> OAuthSettings:
        return OAuthSettings(
            client_id=self.oauth_client_id,
            client_secret=self.oauth_client_secret,
            host=self.oauth_host,
            redirect_url=self.oauth_redirect_url,
        )

    @classmethod
    def load(cls, *, require_secret: bool = False) -> Settings:
        """Read the process environment.

        The bot only needs the client id to build login links; the callback
        server also exchanges codes and so needs the secret.
        """
        missing: list[str] = []

        def need(name: str) -> str:
            value = os.getenv(name)
            if not value:
                missing.append(name)
                return ""
            return value

        discord_token = need("DISCORD_TOKEN")
        client_id = need("OAUTH_CLIENT_ID")
        table_name = need("DDB_TABLE_NAME")
        client_secret = (
            need("OAUTH_CLIENT_SECRET")
            if require_secret
            else os.getenv("OAUTH_CLIENT_SECRET", "")
        )

        if missing:
            raise StartupFatalError(
                "Missing env vars: " + ", ".join(sorted(set(missing)))
            )

        raw_policy = os.getenv("REJOIN_POLICY", RejoinPolicy.RESET.value).strip().lower()
        try:
            rejoin_policy = RejoinPolicy(raw_policy)
        except ValueError as exc:
            raise StartupFatalError(f"REJOIN_POLICY: unknown policy {raw_policy!r}") from exc

        admin_sync_interval = env_duration(
            "ADMIN_SYNC_INTERVAL", default=timedelta(minutes=5)
        )

        return cls(
            discord_token=discord_token,
            oauth_client_id=client_id,
            oauth_client_secret=client_secret,
            oauth_host=os.getenv("OAUTH_HOST") or "oauth.ctftime.org",
            oauth_redirect_url=(
                os.getenv("OAUTH_REDIRECT_URL") or "http://localhost:8080/oauth_callback"
            ),
            oauth_provider_name=os.getenv("OAUTH_PROVIDER_NAME") or "CTFtime",
            table_name=table_name,
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            ddb_endpoint_url=os.getenv("DDB_ENDPOINT_URL") or None,
            join_timeout=env_duration("JOIN_TIMEOUT", default=timedelta(minutes=10)),
            handler_timeout=env_duration("HANDLER_TIMEOUT", default=timedelta(seconds=10)),
            reconcile_interval=env_duration(
                "RECONCILE_INTERVAL", default=timedelta(minutes=1)
            ),
            admin_sync_interval=admin_sync_interval,
            admin_cache_max_age=env_duration(
                "ADMIN_CACHE_MAX_AGE", default=admin_sync_interval * 3
            ),
            rejoin_policy=rejoin_policy,
            greeting_channel_id=env_int("GREETING_CHANNEL_ID"),
            callback_host=os.getenv("CALLBACK_HOST") or "0.0.0.0",
            callback_port=env_int("CALLBACK_PORT", default=8080) or 8080,
            log_level=os.getenv("LOG_LEVEL") or "INFO",
            debug=env_bool("DEBUG"),
        )


__all__ = ["Settings", "env_bool", "env_duration", "env_int", "parse_duration"]
