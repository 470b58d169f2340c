"""
School timetable generation engine.

Assigns lessons (course x teacher x group) to time slots and rooms so that
hard constraints hold, then lowers the soft-constraint penalty by local
search.
"""
from .config import EngineConfig
from .engine import cleanup, exit_code, generate, initialize, last_error, load_model
from .errors import (
    ConfigError, InconsistentModelError, InvalidStateError, ModelError,
    OvercommittedModelError, TimetablerError
)
from .session import EngineState, GenerationResult, GenerationStatus, TimetableSession

__version__ = "0.1.0"

__all__ = [
    'ConfigError', 'EngineConfig', 'EngineState', 'GenerationResult', 'GenerationStatus',
    'InconsistentModelError', 'InvalidStateError', 'ModelError', 'OvercommittedModelError',
    'TimetableSession', 'TimetablerError', 'cleanup', 'exit_code', 'generate', 'initialize',
    'last_error', 'load_model',
]
