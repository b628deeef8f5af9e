"""Error taxonomy shared by the core and the process entry points."""

from __future__ import annotations


class GatekeeperError(Exception):
    """Base class for expected, handled failures."""


class ClassificationError(GatekeeperError):
    """The update does not map onto any known event.

    ``feedback``, when set, is shown to the sender through the platform's
    reply surface.
    """

    def __init__(self, message: str, *, feedback: str | None = None) -> None:
        super().__init__(message)
        self.feedback = feedback


class NotFoundError(GatekeeperError):
    """A member or group record is absent."""


class TransientStoreError(GatekeeperError):
    """The storage backend failed; the operation may succeed later."""


class ExternalAPIError(GatekeeperError):
    """The verification provider returned an error or was unreachable."""


class MessagingError(GatekeeperError):
    """The messaging platform rejected a request."""


class AuthorizationError(GatekeeperError):
    """A privileged action was attempted by someone who is not an admin."""


class StartupFatalError(RuntimeError):
    """Configuration or initial connection failure; the process must exit."""


__all__ = [
    "AuthorizationError",
    "ClassificationError",
    "ExternalAPIError",
    "GatekeeperError",
    "MessagingError",
    "NotFoundError",
    "StartupFatalError",
    "TransientStoreError",
]
