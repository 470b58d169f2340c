"""
Tests for the backtracking search.
"""
import threading
import time

from timetabler.algorithms.constraints import ConstraintEvaluator
from timetabler.algorithms.search import (
    BacktrackingSearch, InfeasibleReason, SearchStatus
)
from timetabler.models.entities import ConstraintKind, Placement
from timetabler.models.model import build_model

from conftest import double_bookings, large_school


def make_search(raw, **kwargs):
    model = build_model(raw)
    evaluator = ConstraintEvaluator(model)
    return model, evaluator, BacktrackingSearch(model, evaluator, **kwargs)


class TestBacktrackingSearch:
    """Test search outcomes and conflict explanations."""

    def test_finds_feasible_timetable(self, small_raw):
        """Test that a consistent school gets a complete hard-feasible timetable."""
        model, evaluator, search = make_search(small_raw)
        result = search.solve()

        assert result.found
        assert result.status == SearchStatus.FOUND
        assert result.conflict is None
        assert result.assignment.is_complete()
        assert evaluator.hard_violations(result.assignment) == []
        assert result.stats.nodes >= len(model.lessons)

    def test_two_lessons_in_three_slots(self, feasible_raw):
        model, evaluator, search = make_search(feasible_raw)
        result = search.solve()

        assert result.found
        starts = sorted(p.start for _, p in result.assignment.items())
        assert len(set(starts)) == 2

    def test_single_shared_slot_conflict(self, single_shared_slot_raw):
        """Test that two lessons needing the only shared slot are reported as a conflict."""
        _, _, search = make_search(single_shared_slot_raw)
        result = search.solve()

        assert not result.found
        assert result.assignment is None
        conflict = result.conflict
        assert conflict.reason == InfeasibleReason.CONFLICT
        assert conflict.lessons == ('C#1', 'C#2')
        assert conflict.slots == ('Monday P2',)
        assert conflict.resources == ('G', 'R', 'T')
        assert conflict.kinds == (ConstraintKind.TEACHER_CLASH, ConstraintKind.GROUP_CLASH,
                                  ConstraintKind.ROOM_CLASH)
        assert result.stats.backtracks == 1

    def test_shared_room_conflict(self, shared_room_raw):
        _, _, search = make_search(shared_room_raw)
        result = search.solve()

        assert result.conflict.reason == InfeasibleReason.CONFLICT
        assert ConstraintKind.ROOM_CLASH in result.conflict.kinds
        assert 'R' in result.conflict.resources

    def test_budget_exhausted(self, shared_room_raw):
        """Test that the first retraction beyond the budget ends the search."""
        _, _, search = make_search(shared_room_raw, max_backtracks=0)
        result = search.solve()

        assert not result.found
        assert result.conflict.reason == InfeasibleReason.BUDGET_EXHAUSTED
        assert result.conflict.lessons
        assert result.stats.backtracks == 1

    def test_empty_domain_explained_by_availability(self):
        raw = {
            'calendar': {'days': 1, 'periods_per_day': 2},
            'rooms': [{'id': 'R'}],
            'teachers': [{'id': 'T', 'available': ['0:0']}],
            'groups': [{'id': 'G', 'size': 5, 'available': ['0:1']}],
            'courses': [{'id': 'C', 'subject': 'Math', 'teacher': 'T', 'group': 'G'}],
        }
        _, _, search = make_search(raw)
        result = search.solve()

        assert result.conflict.reason == InfeasibleReason.CONFLICT
        assert result.conflict.lessons == ('C#1',)
        assert result.conflict.kinds == (ConstraintKind.TEACHER_AVAILABILITY,
                                         ConstraintKind.GROUP_AVAILABILITY)

    def test_cancel_event(self, small_raw):
        _, _, search = make_search(small_raw)
        cancel_event = threading.Event()
        cancel_event.set()
        result = search.solve(cancel_event=cancel_event)

        assert result.conflict.reason == InfeasibleReason.CANCELLED
        assert result.assignment is None

    def test_expired_deadline(self, small_raw):
        _, _, search = make_search(small_raw)
        result = search.solve(deadline=time.monotonic() - 1)
        assert result.conflict.reason == InfeasibleReason.CANCELLED
        assert result.stats.nodes == 0

    def test_previous_placements_tried_first(self, feasible_raw):
        """Test that a feasible earlier timetable is reproduced exactly."""
        _, _, search = make_search(feasible_raw)
        previous = {'C#1': Placement((2,), 'R'), 'C#2': Placement((0,), 'R')}
        result = search.solve(previous=previous)

        assert result.found
        assert dict(result.assignment.items()) == previous
        assert result.stats.backtracks == 0

    def test_deterministic(self, small_raw):
        _, _, first = make_search(small_raw)
        _, _, second = make_search(small_raw)
        assert first.solve().assignment.to_records() == second.solve().assignment.to_records()

    def test_seeded_search(self, small_raw):
        """Test that seeded workers are reproducible and still feasible."""
        model, evaluator, search = make_search(small_raw, seed=7)
        result = search.solve()
        again = BacktrackingSearch(model, evaluator, seed=7).solve()

        assert result.found
        assert evaluator.is_feasible(result.assignment)
        assert result.assignment.to_records() == again.assignment.to_records()

    def test_conflict_to_dict(self, single_shared_slot_raw):
        _, _, search = make_search(single_shared_slot_raw)
        data = search.solve().conflict.to_dict()
        assert data['reason'] == 'conflict'
        assert data['kinds'] == ['teacher_clash', 'group_clash', 'room_clash']
        assert data['slots'] == ['Monday P2']


def gap_school(second_group_slot):
    """Teacher T1 teaches G1 at P1 and G2 at a single allowed slot, with no idle periods allowed."""
    return {
        'calendar': {'days': 1, 'periods_per_day': 3},
        'rooms': [{'id': 'R1', 'capacity': 30}],
        'teachers': [{'id': 'T1', 'max_weekly_gaps': 0}],
        'groups': [
            {'id': 'G1', 'size': 20, 'available': ['0:0']},
            {'id': 'G2', 'size': 20, 'available': [second_group_slot]},
        ],
        'courses': [
            {'id': 'A', 'subject': 'Math', 'teacher': 'T1', 'group': 'G1', 'weekly_hours': 1},
            {'id': 'B', 'subject': 'Art', 'teacher': 'T1', 'group': 'G2', 'weekly_hours': 1},
        ],
    }


class TestWeekLevelConstraints:
    """Test weekly gap caps and exact daily hours during search."""

    def test_weekly_gap_cap_respected(self):
        model, evaluator, search = make_search(gap_school('0:1'))
        result = search.solve()

        assert result.found
        assert evaluator.is_feasible(result.assignment)
        assert result.assignment.day_periods('teacher', 'T1', 0) == [0, 1]

    def test_weekly_gap_cap_conflict(self):
        """Test that a forced idle period is explained by the weekly gap cap."""
        _, _, search = make_search(gap_school('0:2'))
        result = search.solve()

        assert not result.found
        assert result.conflict.reason == InfeasibleReason.CONFLICT
        assert result.conflict.kinds == (ConstraintKind.TEACHER_WEEKLY_GAPS,)
        assert result.conflict.lessons == ('A#1', 'B#1')
        assert result.conflict.resources == ('T1',)

    def test_exact_daily_hours(self):
        """Test that a group gets exactly its fixed periods on each listed day."""
        raw = {
            'calendar': {'days': 2, 'periods_per_day': 3},
            'rooms': [{'id': 'R', 'capacity': 30}],
            'teachers': [{'id': 'T1'}, {'id': 'T2'}],
            'groups': [{'id': 'G', 'size': 20, 'daily_hours': {'0': 1, '1': 3}}],
            'courses': [
                {'id': 'MATH', 'subject': 'Math', 'teacher': 'T1', 'group': 'G', 'weekly_hours': 2},
                {'id': 'ART', 'subject': 'Art', 'teacher': 'T2', 'group': 'G', 'weekly_hours': 2},
            ],
        }
        model, evaluator, search = make_search(raw)
        result = search.solve()

        assert result.found
        assert evaluator.is_feasible(result.assignment)
        assert result.assignment.day_load('group', 'G', 0) == 1
        assert result.assignment.day_load('group', 'G', 1) == 3

    def test_weekly_gap_cap_on_large_school(self):
        """Test that week-wide re-checks keep a 416-lesson school tractable."""
        raw = large_school(num_groups=16)
        for teacher in raw['teachers']:
            # eight lessons a week never leave more than 16 idle periods
            teacher['max_weekly_gaps'] = 16
        model, evaluator, search = make_search(raw)
        assert len(model.lessons) == 416

        result = search.solve(deadline=time.monotonic() + 30)
        assert result.found
        assert result.stats.backtracks == 0
        assert double_bookings(result.assignment) == []
        assert evaluator.hard_violations(result.assignment) == []
