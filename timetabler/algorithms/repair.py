"""
Local-improvement repair of a feasible timetable.

Hill climbing over two move types, both of which keep the timetable
hard-feasible at every step:

* relocate: move one lesson to another placement from its static domain
* swap: exchange the placements of two lessons of equal duration

Move deltas are computed on the teacher-days and group-days a move touches
only, so a move costs O(lessons on those days) instead of a full rescore.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from ..models.entities import Assignment
from ..models.model import Model
from .constraints import ConstraintEvaluator

logger = logging.getLogger(__name__)

EPSILON = 1e-9
CANDIDATES_PER_MOVE = 24
SELECTION_SAMPLE = 8


@dataclass
class RepairResult:
    assignment: Assignment
    initial_penalty: float
    final_penalty: float
    iterations: int = 0
    accepted_moves: int = 0
    cancelled: bool = False
    deadline_reached: bool = False

    @property
    def improved(self) -> bool:
        return self.final_penalty < self.initial_penalty - EPSILON

    def to_dict(self) -> Dict:
        return {
            'initial_penalty': self.initial_penalty,
            'final_penalty': self.final_penalty,
            'improved': self.improved,
            'iterations': self.iterations,
            'accepted_moves': self.accepted_moves,
            'cancelled': self.cancelled,
            'deadline_reached': self.deadline_reached,
        }


class LocalSearchRepairer:
    """
    Lowers the soft penalty of a complete, hard-feasible assignment.

    Args:
        model: The immutable scheduling model
        evaluator: Constraint evaluator (carries the soft weights)
        seed: Seed for ``numpy.random.default_rng``
        plateau_acceptance: Probability of accepting a move that leaves the
            penalty unchanged
    """

    def __init__(self, model: Model, evaluator: ConstraintEvaluator,
                 seed: int = 0, plateau_acceptance: float = 0.1):
        self.model = model
        self.evaluator = evaluator
        self.seed = seed
        self.plateau_acceptance = plateau_acceptance
        self.rng = np.random.default_rng(seed)
        self._partners: Dict[str, List[str]] = {}
        for lesson_id in model.lesson_order:
            duration = model.lessons[lesson_id].duration
            self._partners[lesson_id] = [
                other for other in model.lesson_order
                if other != lesson_id and model.lessons[other].duration == duration
            ]

    def improve(self, assignment: Assignment, max_iterations: int,
                deadline: Optional[float] = None,
                cancel_event: Optional[threading.Event] = None) -> RepairResult:
        """
        Improve ``assignment`` without touching it; the result holds a new one.

        The returned penalty never exceeds the input penalty. On cancellation
        or deadline expiry the best assignment seen so far is returned.
        """
        start_time = time.time()
        self.rng = np.random.default_rng(self.seed)
        current = assignment.copy()
        initial_penalty = self.evaluator.soft_penalty(current)
        current_penalty = initial_penalty
        best = current.copy()
        best_penalty = initial_penalty
        result = RepairResult(assignment=best, initial_penalty=initial_penalty, final_penalty=initial_penalty)
        logger.info(f"Starting local improvement from penalty {initial_penalty:.2f}")

        if self.model.lesson_order:
            for iteration in range(max_iterations):
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    result.deadline_reached = True
                    break
                if best_penalty <= EPSILON:
                    break
                result.iterations = iteration + 1

                lesson_id = self._pick_lesson(current, iteration)
                if self.rng.random() < 0.5:
                    delta = self._relocate(current, lesson_id)
                else:
                    delta = self._swap(current, lesson_id)
                if delta is None:
                    continue

                result.accepted_moves += 1
                if delta < -EPSILON:
                    current_penalty = self.evaluator.soft_penalty(current)
                    if current_penalty < best_penalty - EPSILON:
                        best = current.copy()
                        best_penalty = current_penalty
                if iteration % 500 == 0:
                    logger.debug(f"Iteration {iteration}: penalty {current_penalty:.2f}, best {best_penalty:.2f}")

        final_penalty = self.evaluator.soft_penalty(best)
        if self.evaluator.hard_violations(best) or final_penalty > initial_penalty:
            logger.warning("Improved timetable failed verification; keeping the input timetable")
            best = assignment.copy()
            final_penalty = initial_penalty
        result.assignment = best
        result.final_penalty = final_penalty

        logger.info(
            f"Local improvement finished in {time.time() - start_time:.2f} seconds: "
            f"penalty {initial_penalty:.2f} -> {final_penalty:.2f} "
            f"({result.accepted_moves} moves in {result.iterations} iterations)"
        )
        return result

    def _pick_lesson(self, assignment: Assignment, iteration: int) -> str:
        """Uniform choice on even iterations, worst of a small sample on odd ones."""
        order = self.model.lesson_order
        if iteration % 2 == 0:
            return order[int(self.rng.integers(len(order)))]
        sample = self.rng.choice(len(order), size=min(SELECTION_SAMPLE, len(order)), replace=False)
        best_id, best_value = None, -1.0
        for index in sorted(int(i) for i in sample):
            value = self.evaluator.local_penalty(assignment, [order[index]])
            if value > best_value:
                best_id, best_value = order[index], value
        return best_id

    def _accept(self, delta: float) -> bool:
        if delta < -EPSILON:
            return True
        return abs(delta) <= EPSILON and self.rng.random() < self.plateau_acceptance

    def _relocate(self, assignment: Assignment, lesson_id: str) -> Optional[float]:
        """Try moving one lesson; returns the applied delta or None."""
        old = assignment.get(lesson_id)
        candidates = self.model.candidates(lesson_id)
        if len(candidates) < 2:
            return None
        indices = self.rng.permutation(len(candidates))[:CANDIDATES_PER_MOVE]
        for index in indices:
            placement = candidates[int(index)]
            if placement == old:
                continue
            teacher_days, group_days = self.evaluator.affected_keys([(lesson_id, old), (lesson_id, placement)])
            before = self.evaluator.keyed_penalty(assignment, [lesson_id], teacher_days, group_days)
            assignment.unassign(lesson_id)
            if self.evaluator.admits(assignment, lesson_id, placement):
                assignment.assign(lesson_id, placement)
                delta = self.evaluator.keyed_penalty(assignment, [lesson_id], teacher_days, group_days) - before
                if self._accept(delta):
                    return delta
                assignment.unassign(lesson_id)
            assignment.assign(lesson_id, old)
        return None

    def _swap(self, assignment: Assignment, lesson_id: str) -> Optional[float]:
        """Try exchanging placements with an equal-length lesson."""
        partners = self._partners[lesson_id]
        if not partners:
            return None
        first = assignment.get(lesson_id)
        indices = self.rng.permutation(len(partners))[:CANDIDATES_PER_MOVE]
        for index in indices:
            other = partners[int(index)]
            second = assignment.get(other)
            if second == first:
                continue
            teacher_days, group_days = self.evaluator.affected_keys([
                (lesson_id, first), (lesson_id, second), (other, first), (other, second),
            ])
            pair = [lesson_id, other]
            before = self.evaluator.keyed_penalty(assignment, pair, teacher_days, group_days)
            assignment.unassign(lesson_id)
            assignment.unassign(other)
            if self.evaluator.admits(assignment, lesson_id, second):
                assignment.assign(lesson_id, second)
                if self.evaluator.admits(assignment, other, first):
                    assignment.assign(other, first)
                    delta = self.evaluator.keyed_penalty(assignment, pair, teacher_days, group_days) - before
                    if self._accept(delta):
                        return delta
                    assignment.unassign(other)
                assignment.unassign(lesson_id)
            assignment.assign(lesson_id, first)
            assignment.assign(other, second)
        return None
