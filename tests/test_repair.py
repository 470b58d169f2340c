"""
Tests for local-improvement repair.
"""
import threading
import time

import pytest

from timetabler.algorithms.constraints import ConstraintEvaluator
from timetabler.algorithms.repair import LocalSearchRepairer
from timetabler.algorithms.search import BacktrackingSearch
from timetabler.models.entities import Assignment, Placement
from timetabler.models.model import build_model


@pytest.fixture
def gappy():
    """Teacher T1 teaching G1 in period 1 and G2 in period 4: two idle periods."""
    raw = {
        'calendar': {'days': 1, 'periods_per_day': 4},
        'rooms': [{'id': 'R1', 'capacity': 30}],
        'teachers': [{'id': 'T1'}],
        'groups': [{'id': 'G1', 'size': 20}, {'id': 'G2', 'size': 20}],
        'courses': [
            {'id': 'A', 'subject': 'Math', 'teacher': 'T1', 'group': 'G1', 'weekly_hours': 1},
            {'id': 'B', 'subject': 'Art', 'teacher': 'T1', 'group': 'G2', 'weekly_hours': 1},
        ],
    }
    model = build_model(raw)
    evaluator = ConstraintEvaluator(model)
    assignment = Assignment(model)
    assignment.assign('A#1', Placement((0,), 'R1'))
    assignment.assign('B#1', Placement((3,), 'R1'))
    return model, evaluator, assignment


class TestLocalSearchRepairer:
    """Test the improvement phase."""

    def test_reduces_gaps(self, gappy):
        """Test that an obvious relocation removes the teacher's idle periods."""
        model, evaluator, assignment = gappy
        result = LocalSearchRepairer(model, evaluator, seed=0).improve(assignment, max_iterations=500)

        assert result.initial_penalty == pytest.approx(5.5)
        assert result.improved
        assert result.final_penalty < result.initial_penalty
        assert evaluator.soft_penalty(result.assignment) == pytest.approx(result.final_penalty)
        assert evaluator.is_feasible(result.assignment)
        assert result.accepted_moves >= 1

    def test_input_not_mutated(self, gappy):
        model, evaluator, assignment = gappy
        before = assignment.to_records()
        LocalSearchRepairer(model, evaluator).improve(assignment, max_iterations=200)
        assert assignment.to_records() == before

    def test_never_worse_on_small_school(self, small_raw):
        model = build_model(small_raw)
        evaluator = ConstraintEvaluator(model)
        found = BacktrackingSearch(model, evaluator).solve().assignment
        result = LocalSearchRepairer(model, evaluator, seed=3).improve(found, max_iterations=1000)

        assert result.final_penalty <= result.initial_penalty
        assert evaluator.is_feasible(result.assignment)

    def test_same_seed_same_result(self, small_raw):
        model = build_model(small_raw)
        evaluator = ConstraintEvaluator(model)
        found = BacktrackingSearch(model, evaluator).solve().assignment
        repairer = LocalSearchRepairer(model, evaluator, seed=11)

        first = repairer.improve(found, max_iterations=300)
        second = repairer.improve(found, max_iterations=300)
        assert first.assignment.to_records() == second.assignment.to_records()
        assert first.final_penalty == second.final_penalty

    def test_cancelled(self, gappy):
        model, evaluator, assignment = gappy
        cancel_event = threading.Event()
        cancel_event.set()
        result = LocalSearchRepairer(model, evaluator).improve(
            assignment, max_iterations=100, cancel_event=cancel_event)

        assert result.cancelled
        assert result.iterations == 0
        assert result.final_penalty == result.initial_penalty
        assert result.assignment.to_records() == assignment.to_records()

    def test_deadline_reached(self, gappy):
        model, evaluator, assignment = gappy
        result = LocalSearchRepairer(model, evaluator).improve(
            assignment, max_iterations=100, deadline=time.monotonic() - 1)
        assert result.deadline_reached
        assert not result.improved

    def test_to_dict(self, gappy):
        model, evaluator, assignment = gappy
        data = LocalSearchRepairer(model, evaluator).improve(assignment, max_iterations=0).to_dict()
        assert data['iterations'] == 0
        assert data['improved'] is False
        assert data['initial_penalty'] == data['final_penalty']
