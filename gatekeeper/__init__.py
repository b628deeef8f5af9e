"""Group membership verification core: state machine, stores and reconciler."""

__all__ = [
    "dispatcher",
    "errors",
    "executor",
    "logging_utils",
    "machine",
    "messaging",
    "models",
    "moderator",
    "oauth",
    "reconcile",
    "storage",
]
