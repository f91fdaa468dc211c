"""Exception taxonomy.

Every failure is handled at the record transition where it happens. Only a
``PersistenceError`` raised while loading the state file at startup is allowed
to stop the process.
"""

from __future__ import annotations


class EvalBotError(Exception):
    """Base class for all evalbot errors."""


class RecognitionError(EvalBotError):
    """A command was recognized but its arguments are malformed.

    Not a system fault: the user gets usage text instead of silence.
    """

    def __init__(self, kind: str, message: str = "unable to parse the command") -> None:
        super().__init__(message)
        self.kind = kind


class CollaboratorError(EvalBotError):
    """An external service failed, timed out or returned garbage."""

    def __init__(self, collaborator: str, reason: str) -> None:
        super().__init__(f"{collaborator}: {reason}")
        self.collaborator = collaborator
        self.reason = reason


class PersistenceError(EvalBotError):
    """The record file exists but cannot be read, or cannot be written."""


class PlatformActionError(EvalBotError):
    """The messaging platform rejected a send, edit or delete."""

    def __init__(self, method: str, description: str, error_code: int | None = None) -> None:
        super().__init__(f"{method} failed: {description}")
        self.method = method
        self.description = description
        self.error_code = error_code
