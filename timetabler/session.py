"""
Session controller for timetable generation.

A ``TimetableSession`` owns one model and drives it through the lifecycle

    IDLE -> LOADED -> SEARCHING -> {FOUND, INFEASIBLE} -> IMPROVING -> READY

Every operation checks the current state first and raises
``InvalidStateError`` when it is not allowed. Sessions share no mutable
state, so independent sessions can run concurrently.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .algorithms.constraints import ConstraintEvaluator
from .algorithms.repair import LocalSearchRepairer, RepairResult
from .algorithms.search import BacktrackingSearch, ConflictSet, InfeasibleReason, SearchResult
from .config import EngineConfig
from .errors import InvalidStateError, ModelError
from .models.entities import Assignment, Placement
from .models.model import Model, build_model

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    IDLE = "idle"
    LOADED = "loaded"
    SEARCHING = "searching"
    FOUND = "found"
    INFEASIBLE = "infeasible"
    IMPROVING = "improving"
    READY = "ready"
    CLOSED = "closed"


class GenerationStatus(str, Enum):
    READY = "ready"
    INFEASIBLE = "infeasible"


LOADABLE_STATES = frozenset({EngineState.IDLE, EngineState.LOADED, EngineState.READY, EngineState.INFEASIBLE})

PreviousTimetable = Union[Assignment, Mapping[str, Placement], Iterable[Mapping[str, Any]]]


@dataclass
class GenerationResult:
    """
    Outcome of one ``generate`` call.

    ``diagnostics`` only holds values that are reproducible for the same
    model, weights and seed; wall-clock timings are kept in ``metrics``.
    """
    status: GenerationStatus
    assignment: Optional[Assignment] = None
    conflict: Optional[ConflictSet] = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return self.status == GenerationStatus.READY

    @property
    def cancelled(self) -> bool:
        return self.conflict is not None and self.conflict.reason == InfeasibleReason.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'timetable': self.assignment.to_records() if self.assignment is not None else None,
            'conflict': self.conflict.to_dict() if self.conflict is not None else None,
            'diagnostics': self.diagnostics,
            'metrics': self.metrics,
        }


@dataclass
class _Attempt:
    worker: int
    search: SearchResult
    repair: Optional[RepairResult] = None
    search_time: float = 0.0
    improve_time: float = 0.0


def placements_from_records(model: Model, records: Iterable[Mapping[str, Any]]) -> Dict[str, Placement]:
    """
    Rebuild placements from timetable records (``Assignment.to_records``).

    Records for lessons the model does not know, or whose duration changed,
    are skipped.
    """
    placements = {}
    for record in records:
        lesson = model.lessons.get(str(record.get('lesson')))
        if lesson is None or int(record.get('duration', lesson.duration)) != lesson.duration:
            continue
        day, period = int(record['day']), int(record['period'])
        if not (0 <= day < model.days and 0 <= period + lesson.duration <= model.periods_per_day):
            continue
        start = model.slot_index(day, period)
        placements[lesson.id] = Placement(tuple(range(start, start + lesson.duration)), str(record['room']))
    return placements


class TimetableSession:
    """
    One engine handle: configuration, current model and lifecycle state.

    Args:
        config: Engine configuration; defaults are used when omitted
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.model: Optional[Model] = None
        self._state = EngineState.IDLE
        self._last_error = ""
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._result: Optional[GenerationResult] = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def last_error(self) -> str:
        """Most recent failure detail of this session, empty if the last call succeeded."""
        return self._last_error

    @property
    def result(self) -> Optional[GenerationResult]:
        return self._result

    def _fail(self, message: str) -> None:
        self._last_error = message
        logger.error(message)

    def _require(self, allowed: Iterable[EngineState], operation: str) -> None:
        if self._state not in allowed:
            message = f"Cannot {operation} in state {self._state.value}"
            self._fail(message)
            raise InvalidStateError(message)

    def _set_state(self, state: EngineState) -> None:
        if self._state == EngineState.CLOSED:
            return
        logger.debug(f"Session state {self._state.value} -> {state.value}")
        self._state = state

    # -- lifecycle ----------------------------------------------------------

    def load_model(self, raw: Mapping[str, Any]) -> Model:
        """
        Validate raw input and make it the current model.

        Raises:
            ModelError: the input can never satisfy the hard constraints;
                the session returns to IDLE
            InvalidStateError: a generation is running or the session is closed
        """
        with self._lock:
            self._require(LOADABLE_STATES, "load a model")
            self._last_error = ""
            self._result = None
            self._cancel.clear()
            try:
                self.model = build_model(raw)
            except ModelError as e:
                self.model = None
                self._set_state(EngineState.IDLE)
                self._fail(f"Model rejected ({e.kind}): {e}")
                raise
            self._set_state(EngineState.LOADED)
            return self.model

    def cancel(self) -> None:
        """Ask a running generation to stop at its next check."""
        logger.info("Cancellation requested")
        self._cancel.set()

    def close(self) -> None:
        """Release the model and results; the session cannot be used afterwards."""
        with self._lock:
            if self._state in (EngineState.SEARCHING, EngineState.IMPROVING):
                self._cancel.set()
            self.model = None
            self._result = None
            self._set_state(EngineState.CLOSED)

    # -- generation ---------------------------------------------------------

    def generate(self, previous: Optional[PreviousTimetable] = None) -> GenerationResult:
        """
        Search for a hard-feasible timetable, then improve its soft penalty.

        Args:
            previous: An earlier timetable whose placements are tried first

        Returns:
            GenerationResult with status READY (frozen assignment) or
            INFEASIBLE (conflict set)
        """
        with self._lock:
            self._require((EngineState.LOADED,), "generate")
            self._last_error = ""
            self._set_state(EngineState.SEARCHING)

        try:
            result = self._generate(self._previous_placements(previous))
        except Exception as e:
            with self._lock:
                self._set_state(EngineState.LOADED)
            self._fail(f"Generation failed: {e}")
            raise
        finally:
            self._cancel.clear()

        with self._lock:
            if self._state != EngineState.CLOSED:
                self._result = result
        return result

    def _previous_placements(self, previous: Optional[PreviousTimetable]) -> Optional[Dict[str, Placement]]:
        if previous is None:
            return None
        if isinstance(previous, Assignment):
            return dict(previous.items())
        if isinstance(previous, Mapping):
            return dict(previous)
        return placements_from_records(self.model, previous)

    def _generate(self, previous: Optional[Dict[str, Placement]]) -> GenerationResult:
        model = self.model
        config = self.config
        total_start = time.monotonic()
        evaluator = ConstraintEvaluator(model, config.soft_weights)
        workers = list(range(config.multi_start))
        logger.info(f"Generating timetable for {len(model.lessons)} lessons with {len(workers)} worker(s)")

        search_deadline = total_start + config.search_deadline_ms / 1000.0
        attempts = self._map(workers, lambda worker: self._search(worker, model, evaluator, previous, search_deadline))
        found = [attempt for attempt in attempts if attempt.search.found]

        if not found:
            self._set_state(EngineState.INFEASIBLE)
            # the canonical worker explains the failure
            attempt = attempts[0]
            conflict = attempt.search.conflict
            logger.warning(f"No feasible timetable: {conflict.reason.value} ({conflict.detail})")
            return GenerationResult(
                status=GenerationStatus.INFEASIBLE,
                conflict=conflict,
                diagnostics={
                    'status': GenerationStatus.INFEASIBLE.value,
                    'reason': conflict.reason.value,
                    'lessons': len(model.lessons),
                    'search': attempt.search.stats.to_dict(),
                    'conflict': conflict.to_dict(),
                },
                metrics=self._metrics(attempts, total_start),
            )

        self._set_state(EngineState.FOUND)
        self._set_state(EngineState.IMPROVING)
        improve_deadline = time.monotonic() + config.improve_deadline_ms / 1000.0
        found = self._map(found, lambda attempt: self._improve(attempt, model, evaluator, improve_deadline))

        best = min(found, key=lambda attempt: (attempt.repair.final_penalty, attempt.worker))
        assignment = best.repair.assignment.freeze()
        self._set_state(EngineState.READY)
        diagnostics = {
            'status': GenerationStatus.READY.value,
            'lessons': len(model.lessons),
            'placed': len(assignment),
            'worker': best.worker,
            'search': best.search.stats.to_dict(),
            'initial_penalty': best.repair.initial_penalty,
            'final_penalty': best.repair.final_penalty,
            'improved': best.repair.improved,
            'improvement': {
                'iterations': best.repair.iterations,
                'accepted_moves': best.repair.accepted_moves,
            },
            'penalty_breakdown': evaluator.penalty_breakdown(assignment),
            'statistics': evaluator.statistics(assignment),
        }
        metrics = self._metrics(attempts, total_start)
        metrics['improve_cancelled'] = best.repair.cancelled
        metrics['improve_deadline_reached'] = best.repair.deadline_reached
        logger.info(
            f"Timetable ready: penalty {best.repair.initial_penalty:.2f} -> {best.repair.final_penalty:.2f} "
            f"in {metrics['total_time']:.2f} seconds"
        )
        return GenerationResult(
            status=GenerationStatus.READY,
            assignment=assignment,
            diagnostics=diagnostics,
            metrics=metrics,
        )

    def _map(self, items: List, fn) -> List:
        """Run ``fn`` over items, in parallel threads when multi-start is on."""
        if len(items) <= 1:
            return [fn(item) for item in items]
        with ThreadPoolExecutor(max_workers=len(items)) as executor:
            return list(executor.map(fn, items))

    def _search(self, worker: int, model: Model, evaluator: ConstraintEvaluator,
                previous: Optional[Dict[str, Placement]], deadline: float) -> _Attempt:
        start = time.monotonic()
        seed = None if worker == 0 else self.config.random_seed + worker
        search = BacktrackingSearch(model, evaluator, self.config.max_backtracks, seed=seed)
        result = search.solve(deadline=deadline, cancel_event=self._cancel, previous=previous)
        return _Attempt(worker=worker, search=result, search_time=time.monotonic() - start)

    def _improve(self, attempt: _Attempt, model: Model, evaluator: ConstraintEvaluator,
                 deadline: float) -> _Attempt:
        start = time.monotonic()
        repairer = LocalSearchRepairer(
            model, evaluator,
            seed=self.config.random_seed + attempt.worker,
            plateau_acceptance=self.config.plateau_acceptance,
        )
        attempt.repair = repairer.improve(
            attempt.search.assignment,
            max_iterations=self.config.improve_iterations,
            deadline=deadline,
            cancel_event=self._cancel,
        )
        attempt.improve_time = time.monotonic() - start
        return attempt

    @staticmethod
    def _metrics(attempts: List[_Attempt], total_start: float) -> Dict[str, Any]:
        return {
            'search_time': max(attempt.search_time for attempt in attempts),
            'improve_time': max((attempt.improve_time for attempt in attempts), default=0.0),
            'total_time': time.monotonic() - total_start,
            'workers': len(attempts),
        }

