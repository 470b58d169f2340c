"""
Constraint evaluation for timetable assignments.

Every constraint kind is evaluated through a single dispatch table keyed by
``ConstraintKind``; the table is checked against the enum at import time so
a new kind cannot be added without an evaluator.

Soft penalties are accumulated in a fixed order (lessons in model order,
then teachers and groups sorted by id, days ascending) so the same
assignment and weights always produce the same float.

Weekly gap caps and exact daily hours are checked on partial assignments
against what the unplaced lessons can still change: a teacher's idle
periods can shrink by at most the periods still to be placed, and a group
can only reach its required daily hours with lessons not placed yet. On a
complete assignment both checks are exact.
"""
import logging
from collections import Counter
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from ..models.entities import (
    Assignment, Constraint, ConstraintKind, DEFAULT_WEIGHTS, Group,
    Lesson, Placement, SOFT_KINDS, Teacher, Violation
)
from ..models.model import Model, popcount

logger = logging.getLogger(__name__)

DayKey = Tuple[str, int]

_RESOURCE_OF_KIND = {
    ConstraintKind.TEACHER_CLASH: 'teacher',
    ConstraintKind.GROUP_CLASH: 'group',
    ConstraintKind.ROOM_CLASH: 'room',
    ConstraintKind.TEACHER_DAILY_LOAD: 'teacher',
    ConstraintKind.GROUP_DAILY_LOAD: 'group',
}

# evaluator method per constraint kind
EVALUATORS: Dict[ConstraintKind, str] = {
    ConstraintKind.TEACHER_CLASH: '_clash_violations',
    ConstraintKind.GROUP_CLASH: '_clash_violations',
    ConstraintKind.ROOM_CLASH: '_clash_violations',
    ConstraintKind.TEACHER_AVAILABILITY: '_availability_violations',
    ConstraintKind.GROUP_AVAILABILITY: '_availability_violations',
    ConstraintKind.ROOM_CAPABILITY: '_room_capability_violations',
    ConstraintKind.TEACHER_DAILY_LOAD: '_daily_load_violations',
    ConstraintKind.GROUP_DAILY_LOAD: '_daily_load_violations',
    ConstraintKind.TEACHER_WEEKLY_GAPS: '_weekly_gap_violations',
    ConstraintKind.GROUP_DAILY_HOURS: '_daily_hours_violations',
    ConstraintKind.TEACHER_PREFERENCE: '_preference_violations',
    ConstraintKind.TEACHER_GAPS: '_gap_violations',
    ConstraintKind.GROUP_GAPS: '_gap_violations',
    ConstraintKind.SUBJECT_DISTRIBUTION: '_subject_distribution_violations',
    ConstraintKind.GROUP_LATE_START: '_late_start_violations',
}


def check_dispatch_table(table: Mapping[ConstraintKind, object]) -> None:
    """Raise TypeError unless every constraint kind has an evaluator."""
    missing = [kind.value for kind in ConstraintKind if kind not in table]
    if missing:
        raise TypeError(f"No evaluator for constraint kinds: {', '.join(missing)}")


def _resource_id(lesson: Lesson, placement: Placement, resource_type: str) -> str:
    if resource_type == 'teacher':
        return lesson.teacher_id
    if resource_type == 'group':
        return lesson.group_id
    return placement.room_id


def _gaps(periods: List[int]) -> int:
    """Idle periods between the first and last occupied period."""
    distinct = sorted(set(periods))
    if len(distinct) < 2:
        return 0
    return distinct[-1] - distinct[0] + 1 - len(distinct)


def _weekly_gaps(model: Model, busy: int) -> int:
    """Idle periods inside each day's span of a busy bitset, summed over the week."""
    day_bits = (1 << model.periods_per_day) - 1
    total = 0
    for day in range(model.days):
        bits = busy >> (day * model.periods_per_day) & day_bits
        if bits:
            first = (bits & -bits).bit_length() - 1
            total += bits.bit_length() - first - popcount(bits)
    return total


class ConstraintEvaluator:
    """
    Evaluates hard and soft constraints against an Assignment.

    Args:
        model: The immutable scheduling model
        weights: Soft-constraint weights; missing kinds use DEFAULT_WEIGHTS
    """

    def __init__(self, model: Model, weights: Optional[Mapping[ConstraintKind, float]] = None):
        self.model = model
        merged = dict(DEFAULT_WEIGHTS)
        merged.update(weights or {})
        self.weights: Dict[ConstraintKind, float] = merged
        self.constraints: Tuple[Constraint, ...] = tuple(
            Constraint(c.kind, 0.0 if c.hard else float(merged.get(c.kind, 0.0)))
            for c in model.constraints
        )
        self._dispatch: Dict[ConstraintKind, Callable[[ConstraintKind, Assignment, List[str]], List[Violation]]] = {
            kind: getattr(self, name) for kind, name in EVALUATORS.items()
        }
        check_dispatch_table(self._dispatch)

    # -- full / scoped evaluation -------------------------------------------

    def violations(self, assignment: Assignment, scope: Optional[str] = None,
                   include_soft: bool = True) -> List[Violation]:
        """
        Return violations, ordered by constraint kind then model lesson order.

        Args:
            assignment: Partial or complete assignment
            scope: Lesson id to restrict evaluation to, or None for all lessons
            include_soft: Whether soft-constraint violations are reported
        """
        if scope is not None:
            lesson_ids = [scope] if scope in assignment else []
        else:
            lesson_ids = list(assignment)
        result: List[Violation] = []
        for constraint in self.constraints:
            if not constraint.hard and (not include_soft or constraint.weight == 0):
                continue
            result.extend(self._dispatch[constraint.kind](constraint.kind, assignment, lesson_ids))
        return result

    def hard_violations(self, assignment: Assignment) -> List[Violation]:
        return self.violations(assignment, include_soft=False)

    def is_feasible(self, assignment: Assignment) -> bool:
        """Complete and free of hard violations."""
        return assignment.is_complete() and not self.hard_violations(assignment)

    def _clash_violations(self, kind: ConstraintKind, assignment: Assignment, lesson_ids: List[str]) -> List[Violation]:
        resource_type = _RESOURCE_OF_KIND[kind]
        order = {lid: index for index, lid in enumerate(self.model.lesson_order)}
        seen: Set[Tuple[str, int]] = set()
        result = []
        for lesson_id in lesson_ids:
            lesson = self.model.lessons[lesson_id]
            placement = assignment.get(lesson_id)
            resource = _resource_id(lesson, placement, resource_type)
            for slot in placement.slots:
                if (resource, slot) in seen:
                    continue
                occupants = assignment.occupants(resource_type, resource, slot)
                if len(occupants) > 1:
                    seen.add((resource, slot))
                    result.append(Violation(
                        kind=kind,
                        lessons=tuple(sorted(occupants, key=order.__getitem__)),
                        resources=(resource,),
                        slots=(slot,),
                        reason=f"{resource_type} {resource} double-booked at {self.model.slots[slot]}",
                    ))
        return result

    def _availability_violations(self, kind: ConstraintKind, assignment: Assignment, lesson_ids: List[str]) -> List[Violation]:
        result = []
        for lesson_id in lesson_ids:
            lesson = self.model.lessons[lesson_id]
            violation = self._availability_violation(kind, lesson, assignment.get(lesson_id))
            if violation:
                result.append(violation)
        return result

    def _availability_violation(self, kind: ConstraintKind, lesson: Lesson,
                                placement: Placement) -> Optional[Violation]:
        if kind == ConstraintKind.TEACHER_AVAILABILITY:
            resource_type, resource = 'teacher', self.model.teachers[lesson.teacher_id]
        else:
            resource_type, resource = 'group', self.model.groups[lesson.group_id]
        blocked = placement.mask & ~resource.availability
        if not blocked:
            return None
        slots = tuple(s for s in placement.slots if blocked >> s & 1)
        return Violation(
            kind=kind,
            lessons=(lesson.id,),
            resources=(resource.id,),
            slots=slots,
            reason=f"{resource_type} {resource.id} unavailable at "
                   f"{', '.join(str(self.model.slots[s]) for s in slots)}",
        )

    def _room_capability_violations(self, kind: ConstraintKind, assignment: Assignment, lesson_ids: List[str]) -> List[Violation]:
        result = []
        for lesson_id in lesson_ids:
            violation = self._room_violation(self.model.lessons[lesson_id], assignment.get(lesson_id))
            if violation:
                result.append(violation)
        return result

    def _room_violation(self, lesson: Lesson, placement: Placement) -> Optional[Violation]:
        room = self.model.rooms.get(placement.room_id)
        group = self.model.groups[lesson.group_id]
        if room is not None and room.can_host(lesson.required_tags, group.size):
            return None
        return Violation(
            kind=ConstraintKind.ROOM_CAPABILITY,
            lessons=(lesson.id,),
            resources=(placement.room_id,),
            slots=placement.slots,
            reason=f"room {placement.room_id} cannot host {lesson.id}",
        )

    def _daily_load_violations(self, kind: ConstraintKind, assignment: Assignment, lesson_ids: List[str]) -> List[Violation]:
        resource_type = _RESOURCE_OF_KIND[kind]
        seen: Set[DayKey] = set()
        result = []
        for lesson_id in lesson_ids:
            lesson = self.model.lessons[lesson_id]
            placement = assignment.get(lesson_id)
            resource_id = _resource_id(lesson, placement, resource_type)
            limit = self._daily_limit(resource_type, resource_id)
            day = self.model.day_of(placement.start)
            if limit is None or (resource_id, day) in seen:
                continue
            seen.add((resource_id, day))
            load = assignment.day_load(resource_type, resource_id, day)
            if load > limit:
                result.append(Violation(
                    kind=kind,
                    lessons=tuple(assignment.day_lessons(resource_type, resource_id, day)),
                    resources=(resource_id,),
                    reason=f"{resource_type} {resource_id} has {load} periods on day {day}, limit {limit}",
                ))
        return result

    def _daily_limit(self, resource_type: str, resource_id: str) -> Optional[int]:
        if resource_type == 'teacher':
            return self.model.teachers[resource_id].max_daily_load
        return self.model.groups[resource_id].max_daily_load

    def _weekly_gap_excess(self, assignment: Assignment, teacher: Teacher,
                           mask: int = 0, extra: int = 0) -> int:
        """
        Idle periods above the teacher's weekly cap that the unplaced lessons
        can no longer fill, with an optional extra block of ``extra`` periods
        placed at ``mask``.
        """
        busy = assignment.busy_mask('teacher', teacher.id) | mask
        remaining = self.model.hours_of('teacher', teacher.id) - assignment.load('teacher', teacher.id) - extra
        return _weekly_gaps(self.model, busy) - max(0, remaining) - teacher.max_weekly_gaps

    def _daily_hours_problem(self, assignment: Assignment, group: Group,
                             day: Optional[int] = None, extra: int = 0) -> Optional[str]:
        """Why the group's required daily hours can no longer be met, or None."""
        missing = 0
        for required_day, hours in group.daily_hours.items():
            load = assignment.day_load('group', group.id, required_day) + (extra if required_day == day else 0)
            if load > hours:
                return f"group {group.id} has {load} periods on day {required_day}, exactly {hours} required"
            missing += hours - load
        remaining = self.model.hours_of('group', group.id) - assignment.load('group', group.id) - extra
        if missing > remaining:
            return (f"group {group.id} still needs {missing} periods on its fixed days "
                    f"but only {remaining} remain to be placed")
        return None

    def _resources_in_scope(self, assignment: Assignment, lesson_ids: List[str], attr: str) -> List[str]:
        seen: List[str] = []
        for lesson_id in lesson_ids:
            if lesson_id in assignment:
                resource_id = getattr(self.model.lessons[lesson_id], attr)
                if resource_id not in seen:
                    seen.append(resource_id)
        return seen

    def _placed_lessons_of(self, assignment: Assignment, attr: str, resource_id: str) -> Tuple[str, ...]:
        return tuple(lid for lid in assignment if getattr(self.model.lessons[lid], attr) == resource_id)

    def _weekly_gap_violations(self, kind: ConstraintKind, assignment: Assignment, lesson_ids: List[str]) -> List[Violation]:
        result = []
        for teacher_id in self._resources_in_scope(assignment, lesson_ids, 'teacher_id'):
            teacher = self.model.teachers[teacher_id]
            if teacher.max_weekly_gaps is None:
                continue
            excess = self._weekly_gap_excess(assignment, teacher)
            if excess > 0:
                result.append(Violation(
                    kind=kind,
                    lessons=self._placed_lessons_of(assignment, 'teacher_id', teacher_id),
                    resources=(teacher_id,),
                    reason=f"teacher {teacher_id} has {excess} idle periods above the weekly cap "
                           f"of {teacher.max_weekly_gaps}",
                ))
        return result

    def _daily_hours_violations(self, kind: ConstraintKind, assignment: Assignment, lesson_ids: List[str]) -> List[Violation]:
        result = []
        for group_id in self._resources_in_scope(assignment, lesson_ids, 'group_id'):
            group = self.model.groups[group_id]
            if not group.daily_hours:
                continue
            problem = self._daily_hours_problem(assignment, group)
            if problem:
                result.append(Violation(
                    kind=kind,
                    lessons=self._placed_lessons_of(assignment, 'group_id', group_id),
                    resources=(group_id,),
                    reason=problem,
                ))
        return result

    def _preference_violations(self, kind: ConstraintKind, assignment: Assignment, lesson_ids: List[str]) -> List[Violation]:
        weight = self.weights[ConstraintKind.TEACHER_PREFERENCE]
        result = []
        for lesson_id in lesson_ids:
            lesson = self.model.lessons[lesson_id]
            placement = assignment.get(lesson_id)
            value = self._preference_value(lesson, placement)
            if value > 0:
                result.append(Violation(
                    kind=ConstraintKind.TEACHER_PREFERENCE,
                    lessons=(lesson_id,),
                    resources=(lesson.teacher_id,),
                    slots=placement.slots,
                    reason=f"teacher {lesson.teacher_id} prefers other slots",
                    penalty=weight * value,
                ))
        return result

    def _gap_violations(self, kind: ConstraintKind, assignment: Assignment, lesson_ids: List[str]) -> List[Violation]:
        resource_type = 'teacher' if kind == ConstraintKind.TEACHER_GAPS else 'group'
        teacher_days, group_days = self._keys_for(assignment, lesson_ids)
        keys = teacher_days if resource_type == 'teacher' else group_days
        result = []
        for resource_id, day in sorted(keys):
            gaps = _gaps(assignment.day_periods(resource_type, resource_id, day))
            if gaps:
                result.append(Violation(
                    kind=kind,
                    lessons=tuple(assignment.day_lessons(resource_type, resource_id, day)),
                    resources=(resource_id,),
                    reason=f"{resource_type} {resource_id} has {gaps} idle periods on day {day}",
                    penalty=self.weights[kind] * gaps,
                ))
        return result

    def _subject_distribution_violations(self, kind: ConstraintKind, assignment: Assignment, lesson_ids: List[str]) -> List[Violation]:
        _, group_days = self._keys_for(assignment, lesson_ids)
        weight = self.weights[ConstraintKind.SUBJECT_DISTRIBUTION]
        result = []
        for group_id, day in sorted(group_days):
            day_lessons = assignment.day_lessons('group', group_id, day)
            counts = Counter(self.model.lessons[lid].subject for lid in day_lessons)
            for subject in sorted(counts):
                extra = counts[subject] - 1
                if extra > 0:
                    result.append(Violation(
                        kind=ConstraintKind.SUBJECT_DISTRIBUTION,
                        lessons=tuple(lid for lid in day_lessons if self.model.lessons[lid].subject == subject),
                        resources=(group_id,),
                        reason=f"group {group_id} has {counts[subject]} {subject} lessons on day {day}",
                        penalty=weight * extra,
                    ))
        return result

    def _late_start_violations(self, kind: ConstraintKind, assignment: Assignment, lesson_ids: List[str]) -> List[Violation]:
        _, group_days = self._keys_for(assignment, lesson_ids)
        weight = self.weights[ConstraintKind.GROUP_LATE_START]
        result = []
        for group_id, day in sorted(group_days):
            late = self._late_start(assignment, group_id, day)
            if late:
                result.append(Violation(
                    kind=ConstraintKind.GROUP_LATE_START,
                    lessons=tuple(assignment.day_lessons('group', group_id, day)),
                    resources=(group_id,),
                    reason=f"group {group_id} starts {late} periods late on day {day}",
                    penalty=weight * late,
                ))
        return result

    # -- incremental evaluation ---------------------------------------------

    def placement_violations(self, assignment: Assignment, lesson_id: str,
                             placement: Placement) -> List[Violation]:
        """
        Hard violations that placing ``lesson_id`` at ``placement`` would add.

        The lesson must not currently be placed. Only constraints touching the
        lesson are examined.
        """
        lesson = self.model.lessons[lesson_id]
        result = []
        for kind in (ConstraintKind.TEACHER_AVAILABILITY, ConstraintKind.GROUP_AVAILABILITY):
            violation = self._availability_violation(kind, lesson, placement)
            if violation:
                result.append(violation)
        room_violation = self._room_violation(lesson, placement)
        if room_violation:
            result.append(room_violation)

        for kind in (ConstraintKind.TEACHER_CLASH, ConstraintKind.GROUP_CLASH, ConstraintKind.ROOM_CLASH):
            resource_type = _RESOURCE_OF_KIND[kind]
            resource_id = _resource_id(lesson, placement, resource_type)
            overlap = placement.mask & assignment.busy_mask(resource_type, resource_id)
            for slot in placement.slots:
                if overlap >> slot & 1:
                    result.append(Violation(
                        kind=kind,
                        lessons=(lesson_id,) + tuple(assignment.occupants(resource_type, resource_id, slot)),
                        resources=(resource_id,),
                        slots=(slot,),
                        reason=f"{resource_type} {resource_id} already busy at {self.model.slots[slot]}",
                    ))

        day = self.model.day_of(placement.start)
        for kind in (ConstraintKind.TEACHER_DAILY_LOAD, ConstraintKind.GROUP_DAILY_LOAD):
            resource_type = _RESOURCE_OF_KIND[kind]
            resource_id = _resource_id(lesson, placement, resource_type)
            limit = self._daily_limit(resource_type, resource_id)
            if limit is None:
                continue
            load = assignment.day_load(resource_type, resource_id, day) + lesson.duration
            if load > limit:
                result.append(Violation(
                    kind=kind,
                    lessons=(lesson_id,) + tuple(assignment.day_lessons(resource_type, resource_id, day)),
                    resources=(resource_id,),
                    reason=f"{resource_type} {resource_id} would teach {load} periods on day {day}, limit {limit}",
                ))

        teacher = self.model.teachers[lesson.teacher_id]
        if teacher.max_weekly_gaps is not None:
            excess = self._weekly_gap_excess(assignment, teacher, placement.mask, lesson.duration)
            if excess > 0:
                result.append(Violation(
                    kind=ConstraintKind.TEACHER_WEEKLY_GAPS,
                    lessons=(lesson_id,) + tuple(assignment.day_lessons('teacher', teacher.id, day)),
                    resources=(teacher.id,),
                    slots=placement.slots,
                    reason=f"teacher {teacher.id} would exceed {teacher.max_weekly_gaps} idle periods per week",
                ))
        group = self.model.groups[lesson.group_id]
        if group.daily_hours:
            problem = self._daily_hours_problem(assignment, group, day, lesson.duration)
            if problem:
                result.append(Violation(
                    kind=ConstraintKind.GROUP_DAILY_HOURS,
                    lessons=(lesson_id,) + tuple(assignment.day_lessons('group', group.id, day)),
                    resources=(group.id,),
                    slots=placement.slots,
                    reason=problem,
                ))
        return result

    def start_admits(self, assignment: Assignment, lesson_id: str, start: int) -> bool:
        """
        Check every hard constraint that does not depend on the room: the
        lesson's block starting at ``start`` is free for its teacher and group
        and keeps their daily loads, weekly gaps and daily hours satisfiable.
        """
        lesson = self.model.lessons[lesson_id]
        teacher = self.model.teachers[lesson.teacher_id]
        group = self.model.groups[lesson.group_id]
        mask = ((1 << lesson.duration) - 1) << start
        if mask & ~(teacher.availability & group.availability):
            return False
        if mask & (assignment.busy_mask('teacher', teacher.id) | assignment.busy_mask('group', group.id)):
            return False
        day = self.model.day_of(start)
        if teacher.max_daily_load is not None and \
                assignment.day_load('teacher', teacher.id, day) + lesson.duration > teacher.max_daily_load:
            return False
        if group.max_daily_load is not None and \
                assignment.day_load('group', group.id, day) + lesson.duration > group.max_daily_load:
            return False
        if teacher.max_weekly_gaps is not None and \
                self._weekly_gap_excess(assignment, teacher, mask, lesson.duration) > 0:
            return False
        if group.daily_hours and self._daily_hours_problem(assignment, group, day, lesson.duration):
            return False
        return True

    def admits(self, assignment: Assignment, lesson_id: str, placement: Placement) -> bool:
        """Fast check that a placement adds no hard violation."""
        lesson = self.model.lessons[lesson_id]
        room = self.model.rooms.get(placement.room_id)
        if room is None or not room.can_host(lesson.required_tags, self.model.groups[lesson.group_id].size):
            return False
        if placement.mask & assignment.busy_mask('room', placement.room_id):
            return False
        return self.start_admits(assignment, lesson_id, placement.start)

    def filter_candidates(self, assignment: Assignment, lesson_id: str,
                          candidates: Iterable[Placement]) -> List[Placement]:
        """
        Candidates that ``admits`` would accept, in the given order.

        Room-independent checks run once per start slot and room capability
        once per room.
        """
        lesson = self.model.lessons[lesson_id]
        group = self.model.groups[lesson.group_id]
        start_ok: Dict[int, bool] = {}
        host_ok: Dict[str, bool] = {}
        legal = []
        for placement in candidates:
            if placement.room_id not in host_ok:
                room = self.model.rooms.get(placement.room_id)
                host_ok[placement.room_id] = room is not None and room.can_host(lesson.required_tags, group.size)
            if not host_ok[placement.room_id]:
                continue
            if placement.mask & assignment.busy_mask('room', placement.room_id):
                continue
            start = placement.start
            if start not in start_ok:
                start_ok[start] = self.start_admits(assignment, lesson_id, start)
            if start_ok[start]:
                legal.append(placement)
        return legal

    # -- soft penalty -------------------------------------------------------

    def _preference_value(self, lesson: Lesson, placement: Placement) -> float:
        ranks = self.model.preference_ranks.get(lesson.teacher_id)
        if not ranks:
            return 0.0
        value = 0.0
        for slot in placement.slots:
            rank = ranks.get(slot)
            value += 1.0 if rank is None else rank / len(ranks)
        return value

    def _late_start(self, assignment: Assignment, group_id: str, day: int) -> int:
        periods = assignment.day_periods('group', group_id, day)
        if not periods:
            return 0
        day_availability = self.model.groups[group_id].availability & self.model.day_mask(day)
        if not day_availability:
            return 0
        earliest = self.model.period_of((day_availability & -day_availability).bit_length() - 1)
        return max(0, periods[0] - earliest)

    def _teacher_day_penalty(self, assignment: Assignment, teacher_id: str, day: int) -> float:
        return self.weights[ConstraintKind.TEACHER_GAPS] * _gaps(assignment.day_periods('teacher', teacher_id, day))

    def _group_day_terms(self, assignment: Assignment, group_id: str, day: int) -> Tuple[float, float, float]:
        gaps = _gaps(assignment.day_periods('group', group_id, day))
        counts = Counter(self.model.lessons[lid].subject for lid in assignment.day_lessons('group', group_id, day))
        repeats = sum(count - 1 for _, count in sorted(counts.items()) if count > 1)
        late = self._late_start(assignment, group_id, day)
        return (
            self.weights[ConstraintKind.GROUP_GAPS] * gaps,
            self.weights[ConstraintKind.SUBJECT_DISTRIBUTION] * repeats,
            self.weights[ConstraintKind.GROUP_LATE_START] * late,
        )

    def penalty_breakdown(self, assignment: Assignment) -> Dict[str, float]:
        """Weighted soft penalty per constraint kind."""
        totals = {kind: 0.0 for kind in ConstraintKind if kind in SOFT_KINDS}
        weight = self.weights[ConstraintKind.TEACHER_PREFERENCE]
        for lesson_id, placement in assignment.items():
            totals[ConstraintKind.TEACHER_PREFERENCE] += weight * self._preference_value(
                self.model.lessons[lesson_id], placement)
        for teacher_id in sorted(self.model.teachers):
            for day in range(self.model.days):
                totals[ConstraintKind.TEACHER_GAPS] += self._teacher_day_penalty(assignment, teacher_id, day)
        for group_id in sorted(self.model.groups):
            for day in range(self.model.days):
                gaps, repeats, late = self._group_day_terms(assignment, group_id, day)
                totals[ConstraintKind.GROUP_GAPS] += gaps
                totals[ConstraintKind.SUBJECT_DISTRIBUTION] += repeats
                totals[ConstraintKind.GROUP_LATE_START] += late
        return {kind.value: value for kind, value in totals.items()}

    def soft_penalty(self, assignment: Assignment) -> float:
        """Total weighted soft penalty."""
        total = 0.0
        for value in self.penalty_breakdown(assignment).values():
            total += value
        return total

    def _keys_for(self, assignment: Assignment,
                  lesson_ids: Iterable[str]) -> Tuple[Set[DayKey], Set[DayKey]]:
        teacher_days: Set[DayKey] = set()
        group_days: Set[DayKey] = set()
        for lesson_id in lesson_ids:
            placement = assignment.get(lesson_id)
            if placement is None:
                continue
            lesson = self.model.lessons[lesson_id]
            day = self.model.day_of(placement.start)
            teacher_days.add((lesson.teacher_id, day))
            group_days.add((lesson.group_id, day))
        return teacher_days, group_days

    def affected_keys(self, placements: Iterable[Tuple[str, Placement]]) -> Tuple[FrozenSet[DayKey], FrozenSet[DayKey]]:
        """Teacher-days and group-days touched by the given lesson placements."""
        teacher_days = set()
        group_days = set()
        for lesson_id, placement in placements:
            lesson = self.model.lessons[lesson_id]
            day = self.model.day_of(placement.start)
            teacher_days.add((lesson.teacher_id, day))
            group_days.add((lesson.group_id, day))
        return frozenset(teacher_days), frozenset(group_days)

    def keyed_penalty(self, assignment: Assignment, lesson_ids: Iterable[str],
                      teacher_days: Iterable[DayKey], group_days: Iterable[DayKey]) -> float:
        """Soft penalty restricted to the given lessons, teacher-days and group-days."""
        total = 0.0
        weight = self.weights[ConstraintKind.TEACHER_PREFERENCE]
        for lesson_id in sorted(lesson_ids):
            placement = assignment.get(lesson_id)
            if placement is not None:
                total += weight * self._preference_value(self.model.lessons[lesson_id], placement)
        for teacher_id, day in sorted(teacher_days):
            total += self._teacher_day_penalty(assignment, teacher_id, day)
        for group_id, day in sorted(group_days):
            for term in self._group_day_terms(assignment, group_id, day):
                total += term
        return total

    def local_penalty(self, assignment: Assignment, lesson_ids: Iterable[str]) -> float:
        """Soft penalty of every term touched by the given lessons' current placements."""
        lesson_ids = list(lesson_ids)
        teacher_days, group_days = self._keys_for(assignment, lesson_ids)
        return self.keyed_penalty(assignment, lesson_ids, teacher_days, group_days)

    # -- statistics ---------------------------------------------------------

    def statistics(self, assignment: Assignment) -> Dict:
        """Per-teacher idle periods and daily maxima plus a 0-100 quality score."""
        teacher_gaps: Dict[str, int] = {}
        teacher_daily_max: Dict[str, int] = {}
        for teacher_id in sorted(self.model.teachers):
            teacher_gaps[teacher_id] = sum(
                _gaps(assignment.day_periods('teacher', teacher_id, day)) for day in range(self.model.days)
            )
            teacher_daily_max[teacher_id] = max(
                (assignment.day_load('teacher', teacher_id, day) for day in range(self.model.days)),
                default=0,
            )
        total_gaps = sum(teacher_gaps.values())
        score = 100.0
        if teacher_gaps:
            score = max(0.0, 100.0 - 10.0 * total_gaps / len(teacher_gaps))
        return {
            'total_slots': sum(len(p.slots) for _, p in assignment.items()),
            'total_teacher_gaps': total_gaps,
            'teacher_gaps': teacher_gaps,
            'teacher_daily_max': teacher_daily_max,
            'optimization_score': score,
        }


check_dispatch_table(EVALUATORS)
