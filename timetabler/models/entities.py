"""
Entity models for the timetable generation engine.
These classes represent the core domain objects used in the scheduling process.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple


DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


@dataclass(frozen=True, order=True)
class TimeSlot:
    """Represents one (day, period) cell of the weekly grid."""
    day: int  # 0 = Monday
    period: int  # 0 = first period of the day

    def __str__(self) -> str:
        day_name = DAY_NAMES[self.day] if self.day < len(DAY_NAMES) else f"Day {self.day + 1}"
        return f"{day_name} P{self.period + 1}"


@dataclass(frozen=True)
class Room:
    """Represents a room with its capacity and capability tags."""
    id: str
    capacity: int = 30
    tags: FrozenSet[str] = frozenset()

    def can_host(self, required_tags: FrozenSet[str], group_size: int) -> bool:
        """Check if the room offers every required tag and enough seats."""
        return required_tags <= self.tags and self.capacity >= group_size


@dataclass(frozen=True)
class Teacher:
    """Represents a teacher with availability, load limits and slot preferences."""
    id: str
    name: str = ""
    availability: int = 0  # bitset over slot indices
    max_daily_load: Optional[int] = None
    max_weekly_load: Optional[int] = None
    preferred_slots: Tuple[int, ...] = ()  # ordered, most preferred first
    days_off: FrozenSet[int] = frozenset()
    max_weekly_gaps: Optional[int] = None  # idle periods between lessons, summed over the week

    def is_available(self, slot: int) -> bool:
        """Check if the teacher is available in a given slot."""
        return bool(self.availability >> slot & 1)


@dataclass(frozen=True)
class Group:
    """Represents a class/cohort of students."""
    id: str
    name: str = ""
    size: int = 0
    availability: int = 0  # bitset over slot indices
    max_daily_load: Optional[int] = None
    daily_hours: Mapping[int, int] = field(default_factory=dict)  # day -> exact periods

    def is_available(self, slot: int) -> bool:
        """Check if the group is available in a given slot."""
        return bool(self.availability >> slot & 1)


@dataclass(frozen=True)
class Lesson:
    """A single schedulable unit: one block of a course for one group."""
    id: str
    course_id: str
    subject: str
    teacher_id: str
    group_id: str
    duration: int = 1
    required_tags: FrozenSet[str] = frozenset()
    ordinal: int = 0  # position of this block within its course


@dataclass(frozen=True)
class Placement:
    """Consecutive slots on one day plus the room hosting the lesson."""
    slots: Tuple[int, ...]
    room_id: str
    mask: int = field(init=False, repr=False, compare=False)  # bitset of ``slots``

    def __post_init__(self):
        mask = 0
        for slot in self.slots:
            mask |= 1 << slot
        object.__setattr__(self, 'mask', mask)

    @property
    def start(self) -> int:
        return self.slots[0]


class ConstraintKind(str, Enum):
    """Closed set of constraint kinds understood by the evaluator."""
    TEACHER_CLASH = "teacher_clash"
    GROUP_CLASH = "group_clash"
    ROOM_CLASH = "room_clash"
    TEACHER_AVAILABILITY = "teacher_availability"
    GROUP_AVAILABILITY = "group_availability"
    ROOM_CAPABILITY = "room_capability"
    TEACHER_DAILY_LOAD = "teacher_daily_load"
    GROUP_DAILY_LOAD = "group_daily_load"
    TEACHER_WEEKLY_GAPS = "teacher_weekly_gaps"
    GROUP_DAILY_HOURS = "group_daily_hours"
    TEACHER_PREFERENCE = "teacher_preference"
    TEACHER_GAPS = "teacher_gaps"
    GROUP_GAPS = "group_gaps"
    SUBJECT_DISTRIBUTION = "subject_distribution"
    GROUP_LATE_START = "group_late_start"

    @property
    def hard(self) -> bool:
        return self in HARD_KINDS


HARD_KINDS = frozenset({
    ConstraintKind.TEACHER_CLASH,
    ConstraintKind.GROUP_CLASH,
    ConstraintKind.ROOM_CLASH,
    ConstraintKind.TEACHER_AVAILABILITY,
    ConstraintKind.GROUP_AVAILABILITY,
    ConstraintKind.ROOM_CAPABILITY,
    ConstraintKind.TEACHER_DAILY_LOAD,
    ConstraintKind.GROUP_DAILY_LOAD,
    ConstraintKind.TEACHER_WEEKLY_GAPS,
    ConstraintKind.GROUP_DAILY_HOURS,
})

SOFT_KINDS = frozenset(kind for kind in ConstraintKind if kind not in HARD_KINDS)

DEFAULT_WEIGHTS: Dict[ConstraintKind, float] = {
    ConstraintKind.TEACHER_PREFERENCE: 1.0,
    ConstraintKind.TEACHER_GAPS: 2.0,
    ConstraintKind.GROUP_GAPS: 3.0,
    ConstraintKind.SUBJECT_DISTRIBUTION: 2.0,
    ConstraintKind.GROUP_LATE_START: 0.5,
}


@dataclass(frozen=True)
class Constraint:
    """One active constraint of the model; evaluated by kind."""
    kind: ConstraintKind
    weight: float = 0.0

    @property
    def hard(self) -> bool:
        return self.kind.hard


@dataclass(frozen=True)
class Violation:
    """A violated constraint and the lessons/resources involved."""
    kind: ConstraintKind
    lessons: Tuple[str, ...]
    resources: Tuple[str, ...] = ()
    slots: Tuple[int, ...] = ()
    reason: str = ""
    penalty: float = 0.0

    @property
    def hard(self) -> bool:
        return self.kind.hard

    def to_dict(self) -> Dict:
        return {
            'kind': self.kind.value,
            'hard': self.hard,
            'lessons': list(self.lessons),
            'resources': list(self.resources),
            'slots': list(self.slots),
            'reason': self.reason,
            'penalty': self.penalty,
        }


class Assignment:
    """
    Mapping from lesson id to Placement, with occupancy indexes.

    The indexes (busy bitsets, per-day loads and per-day lesson lists) are
    maintained on every assign/unassign so constraint checks for a single
    candidate placement do not scan the whole timetable. Once frozen the
    assignment can no longer be mutated.
    """

    def __init__(self, model):
        self.model = model
        self._placements: Dict[str, Placement] = {}
        self._occupants: Dict[Tuple[str, str, int], List[str]] = defaultdict(list)
        self._busy: Dict[Tuple[str, str], int] = defaultdict(int)
        self._day_lessons: Dict[Tuple[str, str, int], List[str]] = defaultdict(list)
        self._day_load: Dict[Tuple[str, str, int], int] = defaultdict(int)
        self._load: Dict[Tuple[str, str], int] = defaultdict(int)
        self._frozen = False

    # -- mutation -----------------------------------------------------------

    def assign(self, lesson_id: str, placement: Placement) -> None:
        """Place a lesson. The lesson must not be placed already."""
        self._check_mutable()
        if lesson_id in self._placements:
            raise ValueError(f"Lesson {lesson_id} is already placed")
        lesson = self.model.lessons[lesson_id]
        if len(placement.slots) != lesson.duration:
            raise ValueError(
                f"Lesson {lesson_id} needs {lesson.duration} slots, got {len(placement.slots)}"
            )
        day = self.model.day_of(placement.start)
        for offset, slot in enumerate(placement.slots):
            if slot != placement.start + offset or self.model.day_of(slot) != day:
                raise ValueError(f"Slots of lesson {lesson_id} must be consecutive within one day")

        self._placements[lesson_id] = placement
        for resource in self._resources(lesson, placement):
            for slot in placement.slots:
                self._occupants[resource + (slot,)].append(lesson_id)
            self._busy[resource] |= placement.mask
        for resource in self._resources(lesson, placement)[:2]:
            self._day_lessons[resource + (day,)].append(lesson_id)
            self._day_load[resource + (day,)] += lesson.duration
            self._load[resource] += lesson.duration

    def unassign(self, lesson_id: str) -> Placement:
        """Remove a lesson's placement and return it."""
        self._check_mutable()
        placement = self._placements.pop(lesson_id)
        lesson = self.model.lessons[lesson_id]
        day = self.model.day_of(placement.start)
        for resource in self._resources(lesson, placement):
            for slot in placement.slots:
                occupants = self._occupants[resource + (slot,)]
                occupants.remove(lesson_id)
                if not occupants:
                    del self._occupants[resource + (slot,)]
                    self._busy[resource] &= ~(1 << slot)
        for resource in self._resources(lesson, placement)[:2]:
            self._day_lessons[resource + (day,)].remove(lesson_id)
            self._day_load[resource + (day,)] -= lesson.duration
            self._load[resource] -= lesson.duration
        return placement

    def freeze(self) -> 'Assignment':
        """Make the assignment immutable and return it."""
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def copy(self) -> 'Assignment':
        """Return a mutable copy with the same placements."""
        clone = Assignment(self.model)
        for lesson_id, placement in self.items():
            clone.assign(lesson_id, placement)
        return clone

    # -- queries ------------------------------------------------------------

    def get(self, lesson_id: str) -> Optional[Placement]:
        return self._placements.get(lesson_id)

    def __contains__(self, lesson_id: str) -> bool:
        return lesson_id in self._placements

    def __len__(self) -> int:
        return len(self._placements)

    def __iter__(self) -> Iterator[str]:
        return (lesson_id for lesson_id in self.model.lesson_order if lesson_id in self._placements)

    def items(self) -> Iterator[Tuple[str, Placement]]:
        """Placements in model lesson order."""
        return ((lesson_id, self._placements[lesson_id]) for lesson_id in self)

    def is_complete(self) -> bool:
        return len(self._placements) == len(self.model.lessons)

    def busy_mask(self, resource_type: str, resource_id: str) -> int:
        """Bitset of slots occupied for ``resource_type`` in {teacher, group, room}."""
        return self._busy.get((resource_type, resource_id), 0)

    def occupants(self, resource_type: str, resource_id: str, slot: int) -> List[str]:
        return list(self._occupants.get((resource_type, resource_id, slot), ()))

    def day_lessons(self, resource_type: str, resource_id: str, day: int) -> List[str]:
        """Lessons of a teacher or group on a given day."""
        return list(self._day_lessons.get((resource_type, resource_id, day), ()))

    def day_load(self, resource_type: str, resource_id: str, day: int) -> int:
        return self._day_load.get((resource_type, resource_id, day), 0)

    def load(self, resource_type: str, resource_id: str) -> int:
        """Placed periods of a teacher or group over the whole week."""
        return self._load.get((resource_type, resource_id), 0)

    def day_periods(self, resource_type: str, resource_id: str, day: int) -> List[int]:
        """Sorted periods occupied by a teacher or group on a given day."""
        periods = []
        for lesson_id in self._day_lessons.get((resource_type, resource_id, day), ()):
            periods.extend(self.model.period_of(slot) for slot in self._placements[lesson_id].slots)
        return sorted(periods)

    def to_records(self) -> List[Dict]:
        """Flat records, one per placed lesson, in model lesson order."""
        records = []
        for lesson_id, placement in self.items():
            lesson = self.model.lessons[lesson_id]
            records.append({
                'lesson': lesson_id,
                'course': lesson.course_id,
                'subject': lesson.subject,
                'teacher': lesson.teacher_id,
                'group': lesson.group_id,
                'room': placement.room_id,
                'day': self.model.day_of(placement.start),
                'period': self.model.period_of(placement.start),
                'duration': lesson.duration,
                'slots': [str(self.model.slots[s]) for s in placement.slots],
            })
        return records

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _resources(lesson: Lesson, placement: Placement) -> Tuple[Tuple[str, str], ...]:
        return (('teacher', lesson.teacher_id), ('group', lesson.group_id), ('room', placement.room_id))

    def _check_mutable(self) -> None:
        if self._frozen:
            raise ValueError("Assignment is frozen")
