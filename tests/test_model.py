"""
Tests for model building and the Assignment container.
"""
import dataclasses

import pytest

from timetabler.errors import InconsistentModelError, OvercommittedModelError
from timetabler.models.entities import Assignment, Placement, TimeSlot
from timetabler.models.model import build_model

from conftest import two_lessons


class TestBuildModel:
    """Test build_model validation and precomputation."""

    def test_small_school(self, small_raw):
        """Test that a consistent input builds a model with decomposed lessons."""
        model = build_model(small_raw)

        assert model.days == 5
        assert model.periods_per_day == 6
        assert len(model.slots) == 30
        assert model.slots[7] == TimeSlot(1, 1)
        # 4 + 1 + 3 lessons per group
        assert len(model.lessons) == 16
        assert model.lessons['PHYS-1A#1'].duration == 2
        assert model.lessons['PHYS-1A#1'].required_tags == frozenset({'lab'})

    def test_block_decomposition(self):
        """Test that weekly hours split into blocks plus a remainder lesson."""
        raw = two_lessons()
        raw['calendar']['periods_per_day'] = 6
        raw['courses'][0].update({'weekly_hours': 5, 'duration': 2})
        model = build_model(raw)

        assert model.lesson_order == ('C#1', 'C#2', 'C#3')
        assert [model.lessons[lid].duration for lid in model.lesson_order] == [2, 2, 1]
        assert [model.lessons[lid].ordinal for lid in model.lesson_order] == [0, 1, 2]

    def test_slot_formats(self):
        """Test that pair, string and mapping slots are equivalent."""
        masks = []
        for available in (['0:1', '0:2'], [[0, 1], [0, 2]], [{'day': 0, 'period': 1}, {'day': 0, 'period': 2}]):
            model = build_model(two_lessons(teacher_available=available))
            masks.append(model.teachers['T'].availability)
        assert masks[0] == masks[1] == masks[2] == 0b110

    def test_days_off_remove_whole_day(self, small_raw):
        model = build_model(small_raw)
        teacher = model.teachers['T3']
        assert not any(teacher.is_available(model.slot_index(4, p)) for p in range(6))
        assert teacher.is_available(model.slot_index(3, 5))

    def test_static_domain(self):
        """Test that candidates cover every start where the block fits."""
        raw = two_lessons()
        raw['calendar']['periods_per_day'] = 4
        raw['courses'][0].update({'weekly_hours': 2, 'duration': 2})
        model = build_model(raw)

        starts = [placement.start for placement in model.candidates('C#1')]
        assert starts == [0, 1, 2]
        assert all(len(placement.slots) == 2 for placement in model.candidates('C#1'))

    def test_model_is_immutable(self, small_raw):
        model = build_model(small_raw)
        with pytest.raises(dataclasses.FrozenInstanceError):
            model.days = 3
        with pytest.raises(TypeError):
            model.lessons['X'] = None

    def test_unknown_teacher(self):
        raw = two_lessons()
        raw['courses'][0]['teacher'] = 'NOBODY'
        with pytest.raises(InconsistentModelError) as exc_info:
            build_model(raw)
        assert exc_info.value.kind == 'inconsistent'
        assert 'C' in exc_info.value.entities

    def test_duplicate_ids(self):
        raw = two_lessons()
        raw['rooms'].append({'id': 'R', 'capacity': 40})
        with pytest.raises(InconsistentModelError) as exc_info:
            build_model(raw)
        assert 'R' in exc_info.value.entities

    def test_no_room_with_required_tags(self):
        """Test that an unsatisfiable room requirement is rejected before search."""
        raw = two_lessons()
        raw['courses'][0]['requires'] = ['lab']
        with pytest.raises(InconsistentModelError) as exc_info:
            build_model(raw)
        assert 'C#1' in exc_info.value.entities

    def test_room_too_small(self):
        raw = two_lessons()
        raw['groups'][0]['size'] = 50
        with pytest.raises(InconsistentModelError):
            build_model(raw)

    def test_malformed_slot(self):
        with pytest.raises(InconsistentModelError) as exc_info:
            build_model(two_lessons(teacher_available=['0:9']))
        assert 'T' in exc_info.value.entities

    def test_invalid_calendar(self):
        raw = two_lessons()
        raw['calendar'] = {'days': 0, 'periods_per_day': 3}
        with pytest.raises(InconsistentModelError):
            build_model(raw)

    def test_overcommitted_teacher(self):
        """Test that a teacher with fewer slots than lessons is named in the error."""
        with pytest.raises(OvercommittedModelError) as exc_info:
            build_model(two_lessons(teacher_available=['0:0']))
        assert exc_info.value.kind == 'overcommitted'
        assert exc_info.value.entities == ('T',)

    def test_overcommitted_by_daily_load(self):
        raw = two_lessons()
        raw['groups'][0]['max_daily_load'] = 1
        with pytest.raises(OvercommittedModelError) as exc_info:
            build_model(raw)
        assert 'G' in exc_info.value.entities

    def test_overcommitted_by_weekly_load(self):
        raw = two_lessons()
        raw['teachers'][0]['max_weekly_load'] = 1
        with pytest.raises(OvercommittedModelError) as exc_info:
            build_model(raw)
        assert 'T' in exc_info.value.entities

    def test_malformed_input(self):
        with pytest.raises(InconsistentModelError):
            build_model({'rooms': ['not-a-mapping']})

    def test_malformed_day_off(self):
        raw = two_lessons()
        raw['teachers'][0]['days_off'] = ['x']
        with pytest.raises(InconsistentModelError) as exc_info:
            build_model(raw)
        assert exc_info.value.entities == ('T',)
        assert 'malformed day off' in str(exc_info.value)

    def test_day_off_outside_calendar(self):
        raw = two_lessons()
        raw['teachers'][0]['days_off'] = [3]
        with pytest.raises(InconsistentModelError) as exc_info:
            build_model(raw)
        assert exc_info.value.entities == ('T',)

    def test_unhostable_lesson_reported_before_overcommitment(self):
        """Test that a lesson no room can host is an inconsistency even when its teacher is also overcommitted."""
        raw = two_lessons(teacher_available=['0:0'])
        raw['courses'][0]['requires'] = ['lab']
        with pytest.raises(InconsistentModelError) as exc_info:
            build_model(raw)
        assert exc_info.value.kind == 'inconsistent'
        assert exc_info.value.entities == ('C#1', 'C#2')


class TestWeekLevelInput:
    """Test weekly gap caps and exact daily hours in the model."""

    def test_parsed(self):
        raw = two_lessons()
        raw['calendar']['days'] = 2
        raw['teachers'][0]['max_weekly_gaps'] = 1
        raw['groups'][0]['daily_hours'] = {'1': 2}
        model = build_model(raw)

        assert model.teachers['T'].max_weekly_gaps == 1
        assert dict(model.groups['G'].daily_hours) == {1: 2}
        assert model.hours_of('group', 'G') == 2
        assert model.hours_of('teacher', 'T') == 2

    def test_defaults(self, small_raw):
        model = build_model(small_raw)
        assert model.teachers['T1'].max_weekly_gaps is None
        assert dict(model.groups['1A'].daily_hours) == {}

    def test_negative_gap_cap(self):
        raw = two_lessons()
        raw['teachers'][0]['max_weekly_gaps'] = -1
        with pytest.raises(InconsistentModelError) as exc_info:
            build_model(raw)
        assert exc_info.value.entities == ('T',)

    def test_daily_hours_above_available_periods(self):
        raw = two_lessons(group_available=['0:0', '0:1'])
        raw['groups'][0]['daily_hours'] = {'0': 3}
        with pytest.raises(InconsistentModelError) as exc_info:
            build_model(raw)
        assert exc_info.value.entities == ('G',)
        assert 'needs 3 periods on day 0 but has 2 available' in str(exc_info.value)

    def test_daily_hours_above_daily_limit(self):
        raw = two_lessons()
        raw['groups'][0].update({'max_daily_load': 1, 'daily_hours': {'0': 2}})
        with pytest.raises(InconsistentModelError) as exc_info:
            build_model(raw)
        assert exc_info.value.entities == ('G',)

    def test_daily_hours_outside_calendar(self):
        raw = two_lessons()
        raw['groups'][0]['daily_hours'] = {'5': 1}
        with pytest.raises(InconsistentModelError):
            build_model(raw)

    def test_daily_hours_exceed_planned_lessons(self):
        """Test that fixed daily hours adding up to more than the group's courses are rejected."""
        raw = two_lessons()
        raw['groups'][0]['daily_hours'] = {'0': 3}
        with pytest.raises(InconsistentModelError) as exc_info:
            build_model(raw)
        assert exc_info.value.entities == ('G',)
        assert 'add up to 3 periods' in str(exc_info.value)

    def test_overcommitted_by_daily_hours(self):
        """Test that a day fixed at zero hours no longer counts as capacity."""
        raw = two_lessons()
        raw['calendar']['days'] = 2
        raw['courses'][0]['weekly_hours'] = 4
        raw['groups'][0]['daily_hours'] = {'0': 0}
        with pytest.raises(OvercommittedModelError) as exc_info:
            build_model(raw)
        assert exc_info.value.entities == ('G',)


class TestPlacement:
    """Test the precomputed slot bitset of a Placement."""

    def test_mask(self):
        placement = Placement((3, 4), 'R')
        assert placement.mask == 0b11000
        assert placement.start == 3

    def test_mask_ignored_by_equality(self):
        first = Placement((3, 4), 'R')
        second = Placement((3, 4), 'R')
        assert first == second
        assert hash(first) == hash(second)
        assert first != Placement((3, 4), 'S')
        assert 'mask' not in repr(first)


class TestAssignment:
    """Test the Assignment occupancy indexes."""

    @pytest.fixture
    def model(self):
        return build_model(two_lessons())

    def test_assign_and_unassign(self, model):
        assignment = Assignment(model)
        assignment.assign('C#1', Placement((0,), 'R'))

        assert 'C#1' in assignment
        assert assignment.busy_mask('teacher', 'T') == 0b1
        assert assignment.busy_mask('room', 'R') == 0b1
        assert assignment.day_load('group', 'G', 0) == 1

        assert assignment.unassign('C#1') == Placement((0,), 'R')
        assert assignment.busy_mask('teacher', 'T') == 0
        assert assignment.day_lessons('group', 'G', 0) == []

    def test_overlapping_lessons_keep_busy_bit(self, model):
        assignment = Assignment(model)
        assignment.assign('C#1', Placement((1,), 'R'))
        assignment.assign('C#2', Placement((1,), 'R'))
        assignment.unassign('C#1')
        assert assignment.busy_mask('teacher', 'T') == 0b10
        assert assignment.occupants('teacher', 'T', 1) == ['C#2']

    def test_rejects_bad_placements(self, model):
        assignment = Assignment(model)
        with pytest.raises(ValueError):
            assignment.assign('C#1', Placement((0, 1), 'R'))
        assignment.assign('C#1', Placement((0,), 'R'))
        with pytest.raises(ValueError):
            assignment.assign('C#1', Placement((1,), 'R'))

    def test_frozen_assignment(self, model):
        assignment = Assignment(model)
        assignment.assign('C#1', Placement((0,), 'R'))
        assignment.freeze()
        with pytest.raises(ValueError):
            assignment.assign('C#2', Placement((1,), 'R'))
        with pytest.raises(ValueError):
            assignment.unassign('C#1')

        clone = assignment.copy()
        clone.assign('C#2', Placement((1,), 'R'))
        assert len(clone) == 2
        assert len(assignment) == 1

    def test_records(self, model):
        assignment = Assignment(model)
        assignment.assign('C#2', Placement((2,), 'R'))
        assignment.assign('C#1', Placement((0,), 'R'))
        records = assignment.to_records()

        assert [r['lesson'] for r in records] == ['C#1', 'C#2']
        assert records[1]['period'] == 2
        assert records[1]['slots'] == ['Monday P3']
