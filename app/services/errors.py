from __future__ import annotations


class EventFoldError(Exception):
    """An event could not be folded into a daily report."""


class InvalidTransitionError(PermissionError):
    pass


class MissingActorError(ValueError):
    pass
