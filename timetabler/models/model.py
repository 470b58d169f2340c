"""
Immutable scheduling model and its builder.

``build_model`` turns the raw input mapping (as produced by
``timetabler.data``) into a validated ``Model``. Raw input layout::

    {
        "calendar": {"days": 5, "periods_per_day": 6},
        "rooms": [{"id": "R1", "capacity": 30, "tags": ["lab"]}],
        "teachers": [{"id": "T1", "name": "Ada", "unavailable": [[0, 0]],
                      "days_off": [4], "max_daily_load": 5,
                      "max_weekly_load": 18, "max_weekly_gaps": 3,
                      "preferred": ["1:2", "1:3"]}],
        "groups": [{"id": "1A", "size": 24, "max_daily_load": 6,
                    "daily_hours": {"0": 6, "4": 4}}],
        "courses": [{"id": "MATH-1A", "subject": "Math", "teacher": "T1",
                     "group": "1A", "weekly_hours": 4, "duration": 2,
                     "requires": ["lab"]}]
    }

Slots are written as ``[day, period]`` pairs, ``"day:period"`` strings or
``{"day": d, "period": p}`` mappings, all zero-based. Teachers and groups
may give an explicit ``available`` list; otherwise every slot is available.
``daily_hours`` maps a day to the exact number of periods the group spends
in lessons that day.
"""
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from ..errors import InconsistentModelError, OvercommittedModelError
from .entities import (
    Constraint, ConstraintKind, DEFAULT_WEIGHTS, Group, Lesson,
    Placement, Room, Teacher, TimeSlot
)

logger = logging.getLogger(__name__)

DEFAULT_DAYS = 5
DEFAULT_PERIODS_PER_DAY = 6


def popcount(mask: int) -> int:
    return bin(mask).count('1')


@dataclass(frozen=True)
class Model:
    """Read-only description of one scheduling universe."""
    days: int
    periods_per_day: int
    slots: Tuple[TimeSlot, ...]
    rooms: Mapping[str, Room]
    teachers: Mapping[str, Teacher]
    groups: Mapping[str, Group]
    lessons: Mapping[str, Lesson]
    lesson_order: Tuple[str, ...]
    constraints: Tuple[Constraint, ...]
    domains: Mapping[str, Tuple[Placement, ...]]
    preference_ranks: Mapping[str, Mapping[int, int]]
    resource_hours: Mapping[Tuple[str, str], int]  # (teacher|group, id) -> lesson periods

    @property
    def num_slots(self) -> int:
        return self.days * self.periods_per_day

    def day_of(self, slot: int) -> int:
        return slot // self.periods_per_day

    def period_of(self, slot: int) -> int:
        return slot % self.periods_per_day

    def slot_index(self, day: int, period: int) -> int:
        return day * self.periods_per_day + period

    def day_mask(self, day: int) -> int:
        """Bitset of all slots of one day."""
        return ((1 << self.periods_per_day) - 1) << (day * self.periods_per_day)

    def candidates(self, lesson_id: str) -> Tuple[Placement, ...]:
        """Static domain of a lesson: every placement allowed by availability and rooms."""
        return self.domains[lesson_id]

    def hours_of(self, resource_type: str, resource_id: str) -> int:
        """Total lesson periods a teacher or group has to attend per week."""
        return self.resource_hours.get((resource_type, resource_id), 0)

    def lessons_of(self, resource_type: str, resource_id: str) -> List[str]:
        attr = 'teacher_id' if resource_type == 'teacher' else 'group_id'
        return [lid for lid in self.lesson_order if getattr(self.lessons[lid], attr) == resource_id]

    def summary(self) -> Dict[str, int]:
        return {
            'days': self.days,
            'periods_per_day': self.periods_per_day,
            'rooms': len(self.rooms),
            'teachers': len(self.teachers),
            'groups': len(self.groups),
            'lessons': len(self.lessons),
            'lesson_slots': sum(lesson.duration for lesson in self.lessons.values()),
        }


class ModelBuilder:
    """
    Validates raw timetabling input and builds a ``Model``.

    Checks run in two passes so that every broken entity of one kind is
    reported together: referential/structural problems first
    (``InconsistentModelError``), then capacity problems
    (``OvercommittedModelError``).
    """

    def __init__(self, raw: Mapping[str, Any]):
        if not isinstance(raw, Mapping):
            raise InconsistentModelError("Raw input must be a mapping")
        self.raw = raw
        calendar = raw.get('calendar') or {}
        try:
            self.days = int(calendar.get('days', DEFAULT_DAYS))
            self.periods_per_day = int(calendar.get('periods_per_day', DEFAULT_PERIODS_PER_DAY))
        except (TypeError, ValueError):
            raise InconsistentModelError("Calendar days and periods_per_day must be integers", ['calendar'])
        if self.days <= 0 or self.periods_per_day <= 0:
            raise InconsistentModelError("Calendar must have at least one day and one period", ['calendar'])
        self.full_mask = (1 << (self.days * self.periods_per_day)) - 1
        self.issues: List[str] = []
        self.bad_entities: List[str] = []

    # -- parsing ------------------------------------------------------------

    def _parse_slot(self, value: Any, owner: str) -> Optional[int]:
        try:
            if isinstance(value, str):
                day, period = (int(part) for part in value.split(':'))
            elif isinstance(value, Mapping):
                day, period = int(value['day']), int(value['period'])
            else:
                day, period = (int(part) for part in value)
        except (KeyError, TypeError, ValueError):
            self._issue(owner, f"malformed slot {value!r}")
            return None
        if not (0 <= day < self.days and 0 <= period < self.periods_per_day):
            self._issue(owner, f"slot {value!r} is outside the calendar")
            return None
        return day * self.periods_per_day + period

    def _slot_mask(self, values: Optional[Iterable[Any]], owner: str, default: int) -> int:
        if values is None:
            return default
        mask = 0
        for value in values:
            slot = self._parse_slot(value, owner)
            if slot is not None:
                mask |= 1 << slot
        return mask

    def _availability(self, entry: Mapping[str, Any], owner: str) -> Tuple[int, FrozenSet[int]]:
        """Availability bitset and the valid days off of one teacher or group."""
        mask = self._slot_mask(entry.get('available'), owner, self.full_mask)
        mask &= ~self._slot_mask(entry.get('unavailable'), owner, 0)
        days_off = set()
        for value in entry.get('days_off') or ():
            try:
                day = int(value)
            except (TypeError, ValueError):
                self._issue(owner, f"malformed day off {value!r}")
                continue
            if 0 <= day < self.days:
                mask &= ~self._day_mask(day)
                days_off.add(day)
            else:
                self._issue(owner, f"day off {day} is outside the calendar")
        return mask & self.full_mask, frozenset(days_off)

    def _daily_hours(self, entry: Mapping[str, Any], owner: str, availability: int,
                     max_daily_load: Optional[int]) -> Dict[int, int]:
        raw = entry.get('daily_hours') or {}
        if not isinstance(raw, Mapping):
            self._issue(owner, f"daily_hours must map days to periods, got {raw!r}")
            return {}
        hours_by_day = {}
        for key, value in raw.items():
            try:
                day, hours = int(key), int(value)
            except (TypeError, ValueError):
                self._issue(owner, f"malformed daily hours {key!r}: {value!r}")
                continue
            if not 0 <= day < self.days:
                self._issue(owner, f"daily hours for day {day} outside the calendar")
                continue
            open_periods = popcount(availability & self._day_mask(day))
            if hours < 0 or hours > open_periods:
                self._issue(owner, f"needs {hours} periods on day {day} but has {open_periods} available")
                continue
            if max_daily_load is not None and hours > max_daily_load:
                self._issue(owner, f"needs {hours} periods on day {day} above its daily limit {max_daily_load}")
                continue
            hours_by_day[day] = hours
        return dict(sorted(hours_by_day.items()))

    def _optional_int(self, entry: Mapping[str, Any], key: str, owner: str = '') -> Optional[int]:
        value = entry.get(key)
        if value is None or value == '':
            return None
        number = int(value)
        if number < 0:
            self._issue(owner or key, f"{key} must not be negative, got {number}")
        return number

    def _issue(self, entity: str, message: str) -> None:
        self.issues.append(f"{entity}: {message}")
        if entity not in self.bad_entities:
            self.bad_entities.append(entity)

    def _unique(self, entries: Iterable[Mapping[str, Any]], label: str) -> List[Mapping[str, Any]]:
        seen = set()
        result = []
        for entry in entries or ():
            entity_id = str(entry.get('id', '')).strip()
            if not entity_id:
                self._issue(label, "entry without id")
                continue
            if entity_id in seen:
                self._issue(entity_id, f"duplicate {label} id")
                continue
            seen.add(entity_id)
            result.append(entry)
        return result

    def _rooms(self) -> Dict[str, Room]:
        rooms = {}
        for entry in self._unique(self.raw.get('rooms'), 'room'):
            room_id = str(entry['id']).strip()
            rooms[room_id] = Room(
                id=room_id,
                capacity=int(entry.get('capacity', 30)),
                tags=frozenset(str(tag).strip() for tag in entry.get('tags') or ()),
            )
        return rooms

    def _teachers(self) -> Tuple[Dict[str, Teacher], Dict[str, Dict[int, int]]]:
        teachers = {}
        ranks: Dict[str, Dict[int, int]] = {}
        for entry in self._unique(self.raw.get('teachers'), 'teacher'):
            teacher_id = str(entry['id']).strip()
            preferred: List[int] = []
            for value in entry.get('preferred') or ():
                slot = self._parse_slot(value, teacher_id)
                if slot is not None and slot not in preferred:
                    preferred.append(slot)
            availability, days_off = self._availability(entry, teacher_id)
            teachers[teacher_id] = Teacher(
                id=teacher_id,
                name=str(entry.get('name', teacher_id)),
                availability=availability,
                max_daily_load=self._optional_int(entry, 'max_daily_load', teacher_id),
                max_weekly_load=self._optional_int(entry, 'max_weekly_load', teacher_id),
                preferred_slots=tuple(preferred),
                days_off=days_off,
                max_weekly_gaps=self._optional_int(entry, 'max_weekly_gaps', teacher_id),
            )
            ranks[teacher_id] = {slot: rank for rank, slot in enumerate(preferred)}
        return teachers, ranks

    def _groups(self) -> Dict[str, Group]:
        groups = {}
        for entry in self._unique(self.raw.get('groups'), 'group'):
            group_id = str(entry['id']).strip()
            availability, _ = self._availability(entry, group_id)
            max_daily_load = self._optional_int(entry, 'max_daily_load', group_id)
            groups[group_id] = Group(
                id=group_id,
                name=str(entry.get('name', group_id)),
                size=int(entry.get('size', 0)),
                availability=availability,
                max_daily_load=max_daily_load,
                daily_hours=MappingProxyType(self._daily_hours(entry, group_id, availability, max_daily_load)),
            )
        return groups

    def _lessons(self, teachers: Mapping[str, Teacher], groups: Mapping[str, Group]) -> Dict[str, Lesson]:
        """Decompose each course's weekly hours into lesson blocks."""
        lessons: Dict[str, Lesson] = {}
        for entry in self._unique(self.raw.get('courses'), 'course'):
            course_id = str(entry['id']).strip()
            teacher_id = str(entry.get('teacher', '')).strip()
            group_id = str(entry.get('group', '')).strip()
            if teacher_id not in teachers:
                self._issue(course_id, f"unknown teacher {teacher_id!r}")
            if group_id not in groups:
                self._issue(course_id, f"unknown group {group_id!r}")
            weekly_hours = int(entry.get('weekly_hours', 1))
            block = int(entry.get('duration', 1) or 1)
            if weekly_hours <= 0 or block <= 0:
                self._issue(course_id, "weekly_hours and duration must be positive")
                continue
            if min(block, weekly_hours) > self.periods_per_day:
                self._issue(course_id, f"a block of {block} periods does not fit in one day")
                continue

            durations = [block] * (weekly_hours // block)
            if weekly_hours % block:
                durations.append(weekly_hours % block)
            tags = frozenset(str(tag).strip() for tag in entry.get('requires') or ())
            for ordinal, duration in enumerate(durations):
                lesson_id = f"{course_id}#{ordinal + 1}"
                lessons[lesson_id] = Lesson(
                    id=lesson_id,
                    course_id=course_id,
                    subject=str(entry.get('subject', course_id)),
                    teacher_id=teacher_id,
                    group_id=group_id,
                    duration=duration,
                    required_tags=tags,
                    ordinal=ordinal,
                )
        return lessons

    # -- validation ---------------------------------------------------------

    @staticmethod
    def _resource_hours(lessons: Mapping[str, Lesson]) -> Dict[Tuple[str, str], int]:
        required: Dict[Tuple[str, str], int] = {}
        for lesson in lessons.values():
            for key in (('teacher', lesson.teacher_id), ('group', lesson.group_id)):
                required[key] = required.get(key, 0) + lesson.duration
        return required

    def _check_daily_hours(self, groups: Mapping[str, Group],
                           hours: Mapping[Tuple[str, str], int]) -> None:
        for group in groups.values():
            fixed = sum(group.daily_hours.values())
            planned = hours.get(('group', group.id), 0)
            if fixed > planned:
                self._issue(group.id, f"daily hours add up to {fixed} periods but its courses only have {planned}")

    def _check_overcommitment(self, teachers: Mapping[str, Teacher], groups: Mapping[str, Group],
                              hours: Mapping[Tuple[str, str], int]) -> None:
        overcommitted = []
        reasons = []
        for (resource_type, resource_id), needed in hours.items():
            resource = teachers[resource_id] if resource_type == 'teacher' else groups[resource_id]
            available = popcount(resource.availability)
            fixed = getattr(resource, 'daily_hours', {})
            capacity = 0
            for day in range(self.days):
                day_capacity = popcount(resource.availability & self._day_mask(day))
                if resource.max_daily_load is not None:
                    day_capacity = min(day_capacity, resource.max_daily_load)
                if day in fixed:
                    day_capacity = min(day_capacity, fixed[day])
                capacity += day_capacity
            weekly_limit = getattr(resource, 'max_weekly_load', None)
            if weekly_limit is not None:
                capacity = min(capacity, weekly_limit)
            if needed > capacity:
                overcommitted.append(resource_id)
                reasons.append(
                    f"{resource_type} {resource_id} needs {needed} lesson slots "
                    f"but only {capacity} of {available} available slots can be used"
                )

        if overcommitted:
            for reason in reasons:
                logger.error(reason)
            raise OvercommittedModelError("; ".join(reasons), overcommitted)

    def _day_mask(self, day: int) -> int:
        return ((1 << self.periods_per_day) - 1) << (day * self.periods_per_day)

    def _hosts(self, lessons: Mapping[str, Lesson], rooms: Mapping[str, Room],
               groups: Mapping[str, Group]) -> Dict[str, List[str]]:
        """Rooms able to host each lesson, smallest first."""
        ordered_rooms = sorted(rooms.values(), key=lambda r: (r.capacity, r.id))
        hosts = {}
        for lesson_id, lesson in lessons.items():
            group = groups[lesson.group_id]
            room_ids = [room.id for room in ordered_rooms if room.can_host(lesson.required_tags, group.size)]
            if not room_ids:
                self._issue(
                    lesson_id,
                    f"no room offers tags {sorted(lesson.required_tags)} "
                    f"with capacity for {group.size} students"
                )
            hosts[lesson_id] = room_ids
        return hosts

    def _domains(self, lessons: Mapping[str, Lesson], hosts: Mapping[str, List[str]],
                 teachers: Mapping[str, Teacher],
                 groups: Mapping[str, Group]) -> Dict[str, Tuple[Placement, ...]]:
        shared_placements: Dict[Tuple[int, int, str], Placement] = {}
        domains = {}
        for lesson_id, lesson in lessons.items():
            shared = teachers[lesson.teacher_id].availability & groups[lesson.group_id].availability
            block = (1 << lesson.duration) - 1
            placements = []
            for day in range(self.days):
                for period in range(self.periods_per_day - lesson.duration + 1):
                    start = day * self.periods_per_day + period
                    if shared & (block << start) != block << start:
                        continue
                    for room_id in hosts[lesson_id]:
                        key = (start, lesson.duration, room_id)
                        if key not in shared_placements:
                            shared_placements[key] = Placement(tuple(range(start, start + lesson.duration)), room_id)
                        placements.append(shared_placements[key])
            domains[lesson_id] = tuple(placements)
        return domains

    def _raise_issues(self) -> None:
        if self.issues:
            for issue in self.issues:
                logger.error(f"Inconsistent input: {issue}")
            raise InconsistentModelError("; ".join(self.issues), self.bad_entities)

    def build(self) -> Model:
        rooms = self._rooms()
        teachers, ranks = self._teachers()
        groups = self._groups()
        lessons = self._lessons(teachers, groups)
        if not rooms and lessons:
            self._issue('rooms', "no rooms defined")
        self._raise_issues()

        hours = self._resource_hours(lessons)
        hosts = self._hosts(lessons, rooms, groups)
        self._check_daily_hours(groups, hours)
        self._raise_issues()

        self._check_overcommitment(teachers, groups, hours)
        domains = self._domains(lessons, hosts, teachers, groups)

        slots = tuple(TimeSlot(day, period) for day in range(self.days)
                      for period in range(self.periods_per_day))
        constraints = tuple(
            Constraint(kind, DEFAULT_WEIGHTS.get(kind, 0.0)) for kind in ConstraintKind
        )
        model = Model(
            days=self.days,
            periods_per_day=self.periods_per_day,
            slots=slots,
            rooms=MappingProxyType(rooms),
            teachers=MappingProxyType(teachers),
            groups=MappingProxyType(groups),
            lessons=MappingProxyType(lessons),
            lesson_order=tuple(lessons),
            constraints=constraints,
            domains=MappingProxyType(domains),
            preference_ranks=MappingProxyType(ranks),
            resource_hours=MappingProxyType(hours),
        )
        logger.info(f"Model built: {model.summary()}")
        return model


def build_model(raw: Mapping[str, Any]) -> Model:
    """
    Validate raw input and build an immutable Model.

    Raises:
        InconsistentModelError: broken references or unsatisfiable room needs
        OvercommittedModelError: a teacher or group cannot fit its lessons
    """
    try:
        return ModelBuilder(raw).build()
    except (AttributeError, TypeError, ValueError, KeyError) as e:
        raise InconsistentModelError(f"Malformed input: {e}") from e
