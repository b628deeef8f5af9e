"""OAuth login state and the verification provider client."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Final
from urllib.parse import urlencode

import requests

from .errors import ExternalAPIError

REQUEST_TIMEOUT_SECONDS: Final[int] = 10
OAUTH_SCOPE: Final[str] = "profile:read"

log: Final = logging.getLogger("gatekeeper.oauth")


@dataclass(frozen=True, slots=True)
class OAuthSettings:
    client_id: str
    client_secret: str
    host: str
    redirect_url: str


@dataclass(frozen=True, slots=True)
class LoginState:
    """Round-tripped through the provider unchanged."""

    member_id: int
    group_id: int

    def encode(self) -> str:
        raw = json.dumps(
            {"member_id": str(self.member_id), "group_id": self.group_id},
            separators=(",", ":"),
        ).encode()
        return base64.urlsafe_b64encode(raw).decode("ascii")

    @classmethod
    def decode(cls, value: str) -> LoginState:
        """Parse a state string; raises ValueError on any malformed input."""
        padded = value + "=" * (-len(value) % 4)
        try:
            raw = base64.urlsafe_b64decode(padded.encode("ascii"))
            data = json.loads(raw)
        except (binascii.Error, UnicodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"malformed state: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("malformed state: not an object")
        try:
            member_id = int(str(data["member_id"]))
            group_id = int(data["group_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"malformed state: {exc}") from exc
        return cls(member_id=member_id, group_id=group_id)

    def __str__(self) -> str:
        return f"State(member={self.member_id}, group={self.group_id})"


def authorize_url(state: LoginState, settings: OAuthSettings) -> str:
    query = urlencode(
        {
            "client_id": settings.client_id,
            "redirect_uri": settings.redirect_url,
            "scope": OAUTH_SCOPE,
            "response_type": "code",
            "state": state.encode(),
        }
    )
    return f"https://{settings.host}/authorize?{query}"


class ProviderClient:
    """Exchanges an authorization code for the provider's user id."""

    def __init__(
        self, settings: OAuthSettings, session: requests.Session | None = None
    ) -> None:
        self._settings = settings
        self._session = session or requests.Session()
        self._base_url = f"https://{settings.host}"

    def exchange_code(self, code: str) -> str:
        try:
            resp = self._session.post(
                f"{self._base_url}/token",
                params={
                    "client_id": self._settings.client_id,
                    "client_secret": self._settings.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": self._settings.redirect_url,
                },
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise ExternalAPIError(f"token request failed: {exc}") from exc

        if resp.status_code != 200:
            raise ExternalAPIError(
                f"unexpected status code: {resp.status_code} {resp.text}"
            )
        token = self._json(resp).get("access_token")
        if not token:
            raise ExternalAPIError("token response has no access_token")
        return str(token)

    def fetch_identity(self, token: str) -> int:
        try:
            resp = self._session.get(
                f"{self._base_url}/user",
                headers={"Authorization": f"Bearer {token}"},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise ExternalAPIError(f"user request failed: {exc}") from exc

        if resp.status_code != 200:
            raise ExternalAPIError(
                f"unexpected status code: {resp.status_code} {resp.text}"
            )
        try:
            return int(self._json(resp)["id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ExternalAPIError(f"user response has no usable id: {exc}") from exc

    async def resolve(self, code: str) -> int:
        """Run the code exchange and identity lookup off the event loop."""
        token = await asyncio.to_thread(self.exchange_code, code)
        return await asyncio.to_thread(self.fetch_identity, token)

    @staticmethod
    def _json(resp: requests.Response) -> dict:
        try:
            data = resp.json()
        except ValueError as exc:
            raise ExternalAPIError(f"invalid JSON from provider: {exc}") from exc
        if not isinstance(data, dict):
            raise ExternalAPIError("provider response is not an object")
        return data


__all__ = ["LoginState", "OAuthSettings", "ProviderClient", "authorize_url"]
