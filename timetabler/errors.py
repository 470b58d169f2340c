"""
Exception types raised by the timetable engine.

Infeasibility is not an exception: the search reports it as a normal
generation result (see ``timetabler.algorithms.search``).
"""
from typing import Iterable, Tuple


class TimetablerError(Exception):
    """Base class for all engine errors."""


class ConfigError(TimetablerError):
    """Raised when the engine configuration is invalid."""


class InvalidStateError(TimetablerError):
    """Raised when an operation is invoked in a state that does not allow it."""


class ModelError(TimetablerError):
    """
    Raised when the input data can never satisfy the hard constraints.

    Attributes:
        kind: ``"inconsistent"`` or ``"overcommitted"``
        entities: Ids of the teachers, groups, lessons or rooms involved
    """
    kind = "model"

    def __init__(self, message: str, entities: Iterable[str] = ()):
        super().__init__(message)
        self.entities: Tuple[str, ...] = tuple(entities)


class InconsistentModelError(ModelError):
    """Broken references, malformed slots or lessons no room can host."""
    kind = "inconsistent"


class OvercommittedModelError(ModelError):
    """A teacher or group needs more lesson slots than it has available."""
    kind = "overcommitted"
