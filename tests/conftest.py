"""
Shared fixtures: small raw inputs in the engine's layout and CSV input directories.
"""
import copy
import json
import os
import shutil
import tempfile

import pandas as pd
import pytest


SMALL_SCHOOL = {
    'calendar': {'days': 5, 'periods_per_day': 6},
    'rooms': [
        {'id': 'R101', 'capacity': 30},
        {'id': 'R102', 'capacity': 30},
        {'id': 'LAB1', 'capacity': 24, 'tags': ['lab']},
    ],
    'teachers': [
        {'id': 'T1', 'name': 'Ada Byron', 'preferred': ['0:0', '0:1', '1:0', '1:1'], 'max_daily_load': 4},
        {'id': 'T2', 'name': 'Marie Curie', 'unavailable': [[0, 0], [0, 1]], 'max_daily_load': 4},
        {'id': 'T3', 'name': 'Jane Austen', 'days_off': [4]},
    ],
    'groups': [
        {'id': '1A', 'name': 'Class 1A', 'size': 24, 'max_daily_load': 5},
        {'id': '1B', 'name': 'Class 1B', 'size': 20, 'max_daily_load': 5},
    ],
    'courses': [
        {'id': 'MATH-1A', 'subject': 'Math', 'teacher': 'T1', 'group': '1A', 'weekly_hours': 4},
        {'id': 'PHYS-1A', 'subject': 'Physics', 'teacher': 'T2', 'group': '1A',
         'weekly_hours': 2, 'duration': 2, 'requires': ['lab']},
        {'id': 'ENG-1A', 'subject': 'English', 'teacher': 'T3', 'group': '1A', 'weekly_hours': 3},
        {'id': 'MATH-1B', 'subject': 'Math', 'teacher': 'T1', 'group': '1B', 'weekly_hours': 4},
        {'id': 'PHYS-1B', 'subject': 'Physics', 'teacher': 'T2', 'group': '1B',
         'weekly_hours': 2, 'duration': 2, 'requires': ['lab']},
        {'id': 'ENG-1B', 'subject': 'English', 'teacher': 'T3', 'group': '1B', 'weekly_hours': 3},
    ],
}


def two_lessons(teacher_available=None, group_available=None):
    """One teacher, one group, one room and a course of two single-period lessons on a 1 x 3 grid."""
    teacher = {'id': 'T'}
    if teacher_available is not None:
        teacher['available'] = teacher_available
    group = {'id': 'G', 'size': 10}
    if group_available is not None:
        group['available'] = group_available
    return {
        'calendar': {'days': 1, 'periods_per_day': 3},
        'rooms': [{'id': 'R', 'capacity': 20}],
        'teachers': [teacher],
        'groups': [group],
        'courses': [{'id': 'C', 'subject': 'Math', 'teacher': 'T', 'group': 'G', 'weekly_hours': 2}],
    }


def shared_room():
    """Three unrelated lessons competing for one room on a 1 x 2 grid: infeasible only by search."""
    return {
        'calendar': {'days': 1, 'periods_per_day': 2},
        'rooms': [{'id': 'R', 'capacity': 30}],
        'teachers': [{'id': 'T1'}, {'id': 'T2'}, {'id': 'T3'}],
        'groups': [{'id': 'G1', 'size': 10}, {'id': 'G2', 'size': 10}, {'id': 'G3', 'size': 10}],
        'courses': [
            {'id': 'A', 'subject': 'Math', 'teacher': 'T1', 'group': 'G1', 'weekly_hours': 1},
            {'id': 'B', 'subject': 'Art', 'teacher': 'T2', 'group': 'G2', 'weekly_hours': 1},
            {'id': 'C', 'subject': 'Music', 'teacher': 'T3', 'group': 'G3', 'weekly_hours': 1},
        ],
    }


LARGE_SUBJECTS = ['Math', 'English', 'Physics', 'Chemistry', 'Biology',
                  'History', 'Geography', 'Art', 'Music', 'Sport']
LARGE_HOURS = [4, 4, 3, 3, 3, 2, 2, 2, 2, 1]


def large_school(num_groups=20):
    """
    A full week for ``num_groups`` groups of 26 periods each on a 5 x 6 grid,
    one teacher per subject and pair of groups, one room per group.
    Twenty groups give 520 lessons.
    """
    groups = [{'id': f'G{g:02d}', 'size': 25} for g in range(num_groups)]
    teachers = []
    courses = []
    for subject, hours in zip(LARGE_SUBJECTS, LARGE_HOURS):
        for pair in range((num_groups + 1) // 2):
            teacher_id = f'{subject[:3].upper()}-{pair}'
            teachers.append({'id': teacher_id})
            for group in groups[2 * pair:2 * pair + 2]:
                courses.append({
                    'id': f"{subject[:3].upper()}-{group['id']}",
                    'subject': subject,
                    'teacher': teacher_id,
                    'group': group['id'],
                    'weekly_hours': hours,
                })
    return {
        'calendar': {'days': 5, 'periods_per_day': 6},
        'rooms': [{'id': f'R{r:02d}', 'capacity': 30} for r in range(num_groups)],
        'teachers': teachers,
        'groups': groups,
        'courses': courses,
    }


def double_bookings(assignment):
    """(resource type, resource id, slot) keys held by more than one placed lesson."""
    holders = {}
    clashes = []
    for lesson_id, placement in assignment.items():
        lesson = assignment.model.lessons[lesson_id]
        resources = (('teacher', lesson.teacher_id), ('group', lesson.group_id), ('room', placement.room_id))
        for resource in resources:
            for slot in placement.slots:
                key = resource + (slot,)
                if key in holders:
                    clashes.append(key)
                holders[key] = lesson_id
    return clashes


def write_school_csvs(directory):
    """Write a two-teacher, one-group school as CSV input files."""
    pd.DataFrame({'Days': [5], 'Periods Per Day': [6]}).to_csv(
        os.path.join(directory, 'Calendar.csv'), index=False)
    pd.DataFrame({
        'Room ID': ['R101', 'LAB1'],
        'Capacity': [30, 24],
        'Tags': [None, 'lab'],
    }).to_csv(os.path.join(directory, 'Rooms.csv'), index=False)
    pd.DataFrame({
        'Teacher ID': ['T1', 'T2'],
        'Name': ['Ada Byron', 'Marie Curie'],
        'Max Daily Load': [4, None],
        'Max Weekly Load': [None, 10],
        'Days Off': [None, 4],
    }).to_csv(os.path.join(directory, 'Teachers.csv'), index=False)
    pd.DataFrame({
        'Group ID': ['1A'],
        'Name': ['Class 1A'],
        'Size': [24],
        'Max Daily Load': [5],
    }).to_csv(os.path.join(directory, 'Groups.csv'), index=False)
    pd.DataFrame({
        'Course ID': ['MATH-1A', 'PHYS-1A'],
        'Subject': ['Math', 'Physics'],
        'Teacher': ['T1', 'T2'],
        'Group': ['1A', '1A'],
        'Weekly Hours': [4, 2],
        'Duration': [1, 2],
        'Requires': [None, 'lab'],
    }).to_csv(os.path.join(directory, 'Courses.csv'), index=False)
    pd.DataFrame({
        'Teacher ID': ['T2'],
        'Unavailable Slots': ['0:0;0:1'],
    }).to_csv(os.path.join(directory, 'Teacher_Unavailability.csv'), index=False)
    pd.DataFrame({
        'Teacher ID': ['T1'],
        'Preferred Slots': ['0:0;1:0'],
    }).to_csv(os.path.join(directory, 'Teacher_Preferences.csv'), index=False)


def write_json(directory, name, raw):
    path = os.path.join(directory, name)
    with open(path, 'w') as f:
        json.dump(raw, f)
    return path


@pytest.fixture
def csv_dir():
    """Create a temporary directory with CSV input files."""
    temp_dir = tempfile.mkdtemp()
    write_school_csvs(temp_dir)
    yield temp_dir
    shutil.rmtree(temp_dir)


@pytest.fixture
def output_dir():
    """Create a temporary directory for output files."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir)


@pytest.fixture
def small_raw():
    return copy.deepcopy(SMALL_SCHOOL)


@pytest.fixture
def feasible_raw():
    return two_lessons()


@pytest.fixture
def single_shared_slot_raw():
    # teacher free at P1/P2, group free at P2/P3: only P2 is shared
    return two_lessons(teacher_available=['0:0', '0:1'], group_available=['0:1', '0:2'])


@pytest.fixture
def shared_room_raw():
    return shared_room()
