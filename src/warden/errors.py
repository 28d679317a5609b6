from __future__ import annotations


class ModerationError(Exception):
    """Base class for every error raised by the enforcement engine."""


class PreconditionError(ModerationError):
    """The action cannot be applied (target not sanctionable, missing community, ...).

    Surfaced to the caller immediately and never retried.
    """


class IdempotentNoOp(ModerationError):
    """The platform reports the target is already in the requested state.

    Raised by ``PlatformAdapter.remove_ban`` when the actor is not banned.
    Callers treat it as success.
    """


class PersistenceError(ModerationError):
    """Reading or writing an action record failed."""
