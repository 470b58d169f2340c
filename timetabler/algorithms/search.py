"""
Backtracking search for a hard-feasible timetable.

The search keeps an explicit stack of decision frames instead of recursing,
so cancellation and the backtrack budget are checked at every step and the
memory used is bounded by the number of lessons.
"""
import logging
import threading
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Set, Tuple

import numpy as np

from ..models.entities import Assignment, ConstraintKind, Placement
from ..models.model import Model
from .constraints import ConstraintEvaluator

logger = logging.getLogger(__name__)

StartGroup = Tuple[int, Tuple[Placement, ...]]  # start slot and its placements, one per room


class SearchStatus(str, Enum):
    FOUND = "found"
    INFEASIBLE = "infeasible"


class InfeasibleReason(str, Enum):
    CONFLICT = "conflict"  # the whole search tree was exhausted
    BUDGET_EXHAUSTED = "budget_exhausted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ConflictSet:
    """Lessons, slots, resources and constraint kinds behind an infeasibility."""
    reason: InfeasibleReason
    lessons: Tuple[str, ...] = ()
    slots: Tuple[str, ...] = ()
    resources: Tuple[str, ...] = ()
    kinds: Tuple[ConstraintKind, ...] = ()
    detail: str = ""

    def to_dict(self) -> Dict:
        return {
            'reason': self.reason.value,
            'lessons': list(self.lessons),
            'slots': list(self.slots),
            'resources': list(self.resources),
            'kinds': [kind.value for kind in self.kinds],
            'detail': self.detail,
        }


@dataclass
class SearchStats:
    nodes: int = 0
    backtracks: int = 0
    max_depth: int = 0
    wipeouts: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class SearchResult:
    status: SearchStatus
    assignment: Optional[Assignment] = None
    conflict: Optional[ConflictSet] = None
    stats: SearchStats = field(default_factory=SearchStats)

    @property
    def found(self) -> bool:
        return self.status == SearchStatus.FOUND


@dataclass
class DecisionFrame:
    """One decision on the search stack: a lesson and its remaining choices."""
    lesson_id: str
    candidates: List[Placement]
    cursor: int = 0
    placed: Optional[Placement] = None
    mark: int = 0  # trail length before this frame's placement was propagated


class _BudgetExhausted(Exception):
    pass


class BacktrackingSearch:
    """
    Chronological backtracking with forward checking.

    Every unplaced lesson keeps its legal candidates grouped by start slot.
    A placement only re-checks the lessons sharing its teacher or group and
    removes its room from the overlapping starts of the lessons that could
    use that room; every change goes on a trail that is unwound when the
    placement is retracted. A lesson left without candidates rejects the
    placement (domain wipe-out), otherwise the lesson with the fewest legal
    candidates is expanded next.

    Args:
        model: The immutable scheduling model
        evaluator: Constraint evaluator used to filter candidates
        max_backtracks: Number of retracted placements allowed before giving up
        seed: When given, candidate order is shuffled with this seed
            (used by multi-start workers); None keeps the canonical order
    """

    def __init__(self, model: Model, evaluator: ConstraintEvaluator,
                 max_backtracks: int = 20000, seed: Optional[int] = None):
        self.model = model
        self.evaluator = evaluator
        self.max_backtracks = max_backtracks
        self.seed = seed
        self.stats = SearchStats()
        self._frontier_depth = -1
        self._frontier: Optional[Tuple[str, Dict[str, Placement]]] = None
        self._failures: Dict[str, int] = {}
        self._domains: Dict[str, List[StartGroup]] = {}
        self._live: Dict[str, Dict[int, Tuple[Placement, ...]]] = {}
        self._sizes: Dict[str, int] = {}
        self._trail: List[Tuple[str, int, Tuple[Placement, ...]]] = []
        self._by_teacher: Dict[str, List[str]] = defaultdict(list)
        self._by_group: Dict[str, List[str]] = defaultdict(list)
        self._by_room: Dict[str, List[str]] = defaultdict(list)
        for lesson_id in model.lesson_order:
            lesson = model.lessons[lesson_id]
            self._by_teacher[lesson.teacher_id].append(lesson_id)
            self._by_group[lesson.group_id].append(lesson_id)
            for room_id in dict.fromkeys(p.room_id for p in model.candidates(lesson_id)):
                self._by_room[room_id].append(lesson_id)

    # -- value ordering -----------------------------------------------------

    def _course_sizes(self) -> Dict[str, int]:
        sizes: Dict[str, int] = {}
        for lesson in self.model.lessons.values():
            sizes[lesson.course_id] = sizes.get(lesson.course_id, 0) + 1
        return sizes

    def _ordered_domains(self, previous: Optional[Mapping[str, Placement]]) -> Dict[str, List[StartGroup]]:
        """
        Candidate order per lesson, grouped by start slot: previous placement
        first, then days rotated by the lesson's position in its course,
        preferred slots, period; rooms smallest first within a start.
        """
        days = self.model.days
        course_sizes = self._course_sizes()
        rng = np.random.default_rng(self.seed) if self.seed is not None else None
        domains = {}
        for lesson_id in self.model.lesson_order:
            lesson = self.model.lessons[lesson_id]
            by_start: Dict[int, List[Placement]] = {}
            for placement in self.model.candidates(lesson_id):
                by_start.setdefault(placement.start, []).append(placement)
            starts = list(by_start)
            if rng is not None:
                starts = [starts[i] for i in rng.permutation(len(starts))]
                for start in starts:
                    rooms = by_start[start]
                    by_start[start] = [rooms[i] for i in rng.permutation(len(rooms))]
            else:
                offset = lesson.ordinal * days // max(1, course_sizes[lesson.course_id])
                ranks = self.model.preference_ranks.get(lesson.teacher_id) or {}
                starts.sort(key=lambda start: ((self.model.day_of(start) - offset) % days,
                                               ranks.get(start, len(ranks)),
                                               self.model.period_of(start)))

            earlier = previous.get(lesson_id) if previous else None
            if earlier is not None and earlier in by_start.get(earlier.start, ()):
                starts.remove(earlier.start)
                starts.insert(0, earlier.start)
                rooms = by_start[earlier.start]
                rooms.remove(earlier)
                rooms.insert(0, earlier)
            domains[lesson_id] = [(start, tuple(by_start[start])) for start in starts]
        return domains

    # -- live domains -------------------------------------------------------

    def _reset(self, assignment: Assignment, previous: Optional[Mapping[str, Placement]]) -> None:
        self._domains = self._ordered_domains(previous)
        self._live = {}
        self._sizes = {}
        self._trail = []
        for lesson_id, groups in self._domains.items():
            live = {
                start: placements for start, placements in groups
                if self.evaluator.start_admits(assignment, lesson_id, start)
            }
            self._live[lesson_id] = live
            self._sizes[lesson_id] = sum(len(placements) for placements in live.values())

    def _candidates(self, lesson_id: str) -> List[Placement]:
        live = self._live[lesson_id]
        return [p for start, _ in self._domains[lesson_id] if start in live for p in live[start]]

    def _shrink(self, lesson_id: str, start: int, kept: Tuple[Placement, ...]) -> None:
        live = self._live[lesson_id]
        old = live[start]
        self._trail.append((lesson_id, start, old))
        if kept:
            live[start] = kept
        else:
            del live[start]
        self._sizes[lesson_id] -= len(old) - len(kept)

    def _undo(self, mark: int) -> None:
        while len(self._trail) > mark:
            lesson_id, start, old = self._trail.pop()
            live = self._live[lesson_id]
            self._sizes[lesson_id] += len(old) - len(live.get(start, ()))
            live[start] = old

    def _propagate(self, assignment: Assignment, lesson_id: str, placement: Placement,
                   unplaced: Set[str]) -> None:
        """Drop the candidates of unplaced lessons that ``placement`` made illegal."""
        lesson = self.model.lessons[lesson_id]
        teacher = self.model.teachers[lesson.teacher_id]
        group = self.model.groups[lesson.group_id]
        day = self.model.day_of(placement.start)
        # weekly gap caps and fixed daily hours reach beyond the placement's day
        whole_week = {
            'teacher': teacher.max_weekly_gaps is not None,
            'group': bool(group.daily_hours),
        }
        checked: Set[str] = set()
        for resource_type, neighbours in (('teacher', self._by_teacher[teacher.id]),
                                          ('group', self._by_group[group.id])):
            for other in neighbours:
                if other not in unplaced:
                    continue
                week = whole_week[resource_type]
                if other in checked and not week:
                    continue
                checked.add(other)
                for start in list(self._live[other]):
                    if not week and self.model.day_of(start) != day:
                        continue
                    if not self.evaluator.start_admits(assignment, other, start):
                        self._shrink(other, start, ())

        low = placement.start
        high = placement.start + len(placement.slots)
        room_id = placement.room_id
        for other in self._by_room[room_id]:
            if other not in unplaced:
                continue
            live = self._live[other]
            for start in range(low - self.model.lessons[other].duration + 1, high):
                placements = live.get(start)
                if placements is None:
                    continue
                kept = tuple(p for p in placements if p.room_id != room_id)
                if len(kept) != len(placements):
                    self._shrink(other, start, kept)

    # -- search loop --------------------------------------------------------

    def solve(self, deadline: Optional[float] = None,
              cancel_event: Optional[threading.Event] = None,
              previous: Optional[Mapping[str, Placement]] = None) -> SearchResult:
        """
        Build a complete hard-feasible assignment or explain why none was found.

        Args:
            deadline: ``time.monotonic()`` value after which the search stops
            cancel_event: Cooperative cancellation flag
            previous: Placements of an earlier timetable to try first

        Returns:
            SearchResult with a complete assignment (FOUND) or a conflict set
            (INFEASIBLE); a partial assignment is never returned.
        """
        start_time = time.time()
        logger.info(f"Starting backtracking search over {len(self.model.lessons)} lessons")
        self.stats = SearchStats()
        self._frontier_depth = -1
        self._frontier = None
        self._failures = {}

        if self._stopped(deadline, cancel_event):
            return self._infeasible(InfeasibleReason.CANCELLED)

        assignment = Assignment(self.model)
        self._reset(assignment, previous)
        unplaced: Set[str] = set(self.model.lesson_order)
        stack: List[DecisionFrame] = []

        try:
            lesson_id = self._select(unplaced)
            while True:
                if self._stopped(deadline, cancel_event):
                    logger.warning("Search cancelled before a complete timetable was found")
                    return self._infeasible(InfeasibleReason.CANCELLED)
                if lesson_id is None:
                    break

                if self._sizes[lesson_id]:
                    stack.append(DecisionFrame(lesson_id, self._candidates(lesson_id)))
                    unplaced.discard(lesson_id)
                    self.stats.nodes += 1
                else:
                    self.stats.wipeouts += 1
                    self._record_dead_end(assignment, lesson_id, len(stack))

                if not self._advance(stack, assignment, unplaced):
                    logger.warning("Search space exhausted: no feasible timetable exists")
                    return self._infeasible(InfeasibleReason.CONFLICT)
                lesson_id = self._select(unplaced)
        except _BudgetExhausted:
            logger.warning(f"Backtrack budget of {self.max_backtracks} exhausted")
            return self._infeasible(InfeasibleReason.BUDGET_EXHAUSTED)

        logger.info(
            f"Search found a complete timetable in {time.time() - start_time:.2f} seconds "
            f"({self.stats.nodes} nodes, {self.stats.backtracks} backtracks)"
        )
        return SearchResult(status=SearchStatus.FOUND, assignment=assignment, stats=self.stats)

    def _advance(self, stack: List[DecisionFrame], assignment: Assignment, unplaced: Set[str]) -> bool:
        """
        Place the next untried candidate of the top frame, popping exhausted
        frames. Returns False once the stack is empty.
        """
        while stack:
            frame = stack[-1]
            if frame.placed is not None:
                assignment.unassign(frame.lesson_id)
                self._undo(frame.mark)
                frame.placed = None
                self.stats.backtracks += 1
                if self.stats.backtracks > self.max_backtracks:
                    raise _BudgetExhausted()
                if self.stats.backtracks % 1000 == 0:
                    logger.debug(f"{self.stats.backtracks} backtracks, depth {len(stack)}")
            if frame.cursor < len(frame.candidates):
                placement = frame.candidates[frame.cursor]
                frame.cursor += 1
                assignment.assign(frame.lesson_id, placement)
                frame.placed = placement
                frame.mark = len(self._trail)
                self._propagate(assignment, frame.lesson_id, placement, unplaced)
                self.stats.max_depth = max(self.stats.max_depth, len(stack))
                return True
            stack.pop()
            unplaced.add(frame.lesson_id)
        return False

    def _select(self, unplaced: Set[str]) -> Optional[str]:
        """
        Most-constrained unplaced lesson, first in model order on ties. A
        lesson with no legal candidate is returned immediately.
        """
        best: Optional[str] = None
        best_size = 0
        for lesson_id in self.model.lesson_order:
            if lesson_id not in unplaced:
                continue
            size = self._sizes[lesson_id]
            if not size:
                return lesson_id
            if best is None or size < best_size:
                best, best_size = lesson_id, size
        return best

    @staticmethod
    def _stopped(deadline: Optional[float], cancel_event: Optional[threading.Event]) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        return deadline is not None and time.monotonic() >= deadline

    # -- explanation --------------------------------------------------------

    def _record_dead_end(self, assignment: Assignment, lesson_id: str, depth: int) -> None:
        self._failures[lesson_id] = self._failures.get(lesson_id, 0) + 1
        if depth > self._frontier_depth:
            self._frontier_depth = depth
            self._frontier = (lesson_id, dict(assignment.items()))

    def _explain(self, lesson_id: str, placements: Mapping[str, Placement]) -> ConflictSet:
        """Collect what blocks every candidate of a lesson given the placements around it."""
        lesson = self.model.lessons[lesson_id]
        candidates = self.model.candidates(lesson_id)
        if not candidates:
            return ConflictSet(
                reason=InfeasibleReason.CONFLICT,
                lessons=(lesson_id,),
                resources=(lesson.teacher_id, lesson.group_id),
                kinds=(ConstraintKind.TEACHER_AVAILABILITY, ConstraintKind.GROUP_AVAILABILITY),
                detail=f"teacher {lesson.teacher_id} and group {lesson.group_id} share no "
                       f"{lesson.duration} consecutive available periods",
            )

        assignment = Assignment(self.model)
        for other, placement in placements.items():
            assignment.assign(other, placement)
        lessons = {lesson_id}
        slots: Set[int] = set()
        resources: Set[str] = set()
        kinds: Set[ConstraintKind] = set()
        for placement in candidates:
            for violation in self.evaluator.placement_violations(assignment, lesson_id, placement):
                lessons.update(violation.lessons)
                slots.update(violation.slots)
                resources.update(violation.resources)
                kinds.add(violation.kind)

        order = {lid: index for index, lid in enumerate(self.model.lesson_order)}
        return ConflictSet(
            reason=InfeasibleReason.CONFLICT,
            lessons=tuple(sorted(lessons, key=order.__getitem__)),
            slots=tuple(str(self.model.slots[s]) for s in sorted(slots)),
            resources=tuple(sorted(resources)),
            kinds=tuple(kind for kind in ConstraintKind if kind in kinds),
            detail=f"no placement left for lesson {lesson_id}",
        )

    def _infeasible(self, reason: InfeasibleReason) -> SearchResult:
        if self._frontier is None:
            conflict = ConflictSet(reason=reason, detail="search stopped before any conflict was recorded")
        else:
            frontier = self._explain(*self._frontier)
            conflict = ConflictSet(
                reason=reason,
                lessons=frontier.lessons,
                slots=frontier.slots,
                resources=frontier.resources,
                kinds=frontier.kinds,
                detail=frontier.detail,
            )
        if self._failures:
            worst = max(self._failures.items(), key=lambda item: (item[1], -self.model.lesson_order.index(item[0])))
            logger.info(f"Most frequently blocked lesson: {worst[0]} ({worst[1]} dead ends)")
        return SearchResult(status=SearchStatus.INFEASIBLE, conflict=conflict, stats=self.stats)
