"""
Handle-based engine boundary.

Thin functions over ``TimetableSession`` for callers that manage engine
instances as opaque handles (CLI, REST API, foreign wrappers). Each handle
owns its own session, so handles never share state.
"""
import logging
import uuid
from typing import Any, Mapping, Optional, Union

from .algorithms.search import InfeasibleReason
from .config import EngineConfig
from .errors import ConfigError, InvalidStateError, TimetablerError
from .session import GenerationResult, GenerationStatus, PreviousTimetable, TimetableSession

logger = logging.getLogger(__name__)

EXIT_READY = 0
EXIT_INFEASIBLE = 1
EXIT_INVALID_INPUT = 2
EXIT_CANCELLED = 3


class EngineHandle:
    """Opaque reference to one engine instance."""

    def __init__(self, session: TimetableSession):
        self.id = str(uuid.uuid4())
        self._session: Optional[TimetableSession] = session
        self._error = ""

    @property
    def session(self) -> TimetableSession:
        if self._session is None:
            raise InvalidStateError(f"Engine handle {self.id} has been cleaned up")
        return self._session

    @property
    def closed(self) -> bool:
        return self._session is None

    def __repr__(self) -> str:
        return f"EngineHandle({self.id!r}, closed={self.closed})"


def initialize(config: Union[EngineConfig, Mapping[str, Any], None] = None) -> EngineHandle:
    """
    Create an engine handle.

    Raises:
        ConfigError: a configuration value has the wrong type or range
    """
    if not isinstance(config, EngineConfig):
        try:
            config = EngineConfig.from_mapping(config)
        except ConfigError as e:
            logger.error(f"Invalid configuration: {e}")
            raise
    handle = EngineHandle(TimetableSession(config))
    logger.info(f"Initialized engine {handle.id}")
    return handle


def load_model(handle: EngineHandle, raw: Mapping[str, Any]) -> None:
    handle.session.load_model(raw)


def generate(handle: EngineHandle, previous: Optional[PreviousTimetable] = None) -> GenerationResult:
    return handle.session.generate(previous)


def cancel(handle: EngineHandle) -> None:
    handle.session.cancel()


def last_error(handle: EngineHandle) -> str:
    """Most recent failure detail of the handle; empty after a successful call."""
    if handle.closed:
        return handle._error
    return handle.session.last_error


def cleanup(handle: EngineHandle) -> None:
    """Release everything the handle owns. Using the handle afterwards raises InvalidStateError."""
    session = handle.session
    session.close()
    handle._error = session.last_error
    handle._session = None
    logger.info(f"Cleaned up engine {handle.id}")


def exit_code(outcome: Union[GenerationResult, BaseException]) -> int:
    """
    Map a generation result or an engine error to a process exit code:
    0 ready, 1 infeasible, 2 configuration or model error, 3 cancelled.
    """
    if isinstance(outcome, GenerationResult):
        if outcome.status == GenerationStatus.READY:
            return EXIT_READY
        if outcome.conflict is not None and outcome.conflict.reason == InfeasibleReason.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_INFEASIBLE
    if isinstance(outcome, TimetablerError):
        return EXIT_INVALID_INPUT
    raise TypeError(f"Cannot map {type(outcome).__name__} to an exit code")
