"""
Exception hierarchy shared by the engine, the orchestrator and the API.
"""


class QuestError(Exception):
    """Base class for every error raised by the quest backend."""


class InvalidInputError(QuestError, ValueError):
    """A caller passed a value outside an engine function's contract."""


class PersistenceError(QuestError):
    """The completion could not be committed. Nothing was written; retry."""


class ConcurrentUpdateError(PersistenceError):
    """Progress kept changing underneath us and the retry budget ran out."""
