"""
Data converter module.

Handles conversions between different data formats:
- DataFrames to the raw input mapping consumed by ``build_model``
- Generated timetables to DataFrames and CSV/JSON files
"""
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from ..models.entities import Assignment, DAY_NAMES

logger = logging.getLogger(__name__)


def _text(value: Any) -> str:
    """Cell value as a string; integral floats lose their ``.0``."""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _split(value: Any) -> List[str]:
    """Split a ``;``-separated cell, treating empty cells as no values."""
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return []
    return [part.strip() for part in _text(value).split(';') if part.strip()]


def _day_hours(value: Any) -> Dict[str, str]:
    """Parse a ``day:periods;...`` cell into a day -> periods mapping."""
    hours = {}
    for part in _split(value):
        day, _, periods = part.partition(':')
        hours[day.strip()] = periods.strip()
    return hours


def _optional_int(row: pd.Series, column: str) -> Optional[int]:
    value = row.get(column)
    if value is None or pd.isna(value) or value == '':
        return None
    return int(value)


class DataConverter:
    """
    Converts between different data representations used in the system.

    Responsibilities:
    - Convert CSV/DataFrame data to the raw input mapping
    - Convert generated timetables back to DataFrames for output
    - Generate utilization reports from timetables
    """

    @staticmethod
    def convert_calendar(calendar_df: pd.DataFrame) -> Dict[str, int]:
        """
        Convert the calendar DataFrame (one row: Days, Periods Per Day).

        Returns:
            Mapping with ``days`` and ``periods_per_day``
        """
        if calendar_df.empty:
            raise ValueError("Calendar.csv has no rows")
        row = calendar_df.iloc[0]
        return {
            'days': int(row['Days']),
            'periods_per_day': int(row['Periods Per Day']),
        }

    @staticmethod
    def convert_rooms(rooms_df: pd.DataFrame) -> List[Dict[str, Any]]:
        rooms = []
        for _, row in rooms_df.iterrows():
            capacity = _optional_int(row, 'Capacity')
            rooms.append({
                'id': _text(row['Room ID']),
                'capacity': 30 if capacity is None else capacity,
                'tags': _split(row.get('Tags')),
            })
        return rooms

    @staticmethod
    def convert_teachers(teachers_df: pd.DataFrame,
                         unavailability_df: Optional[pd.DataFrame] = None,
                         preferences_df: Optional[pd.DataFrame] = None) -> List[Dict[str, Any]]:
        """
        Convert teachers DataFrame to raw teacher entries.

        Args:
            teachers_df: Teacher ID, Name, Max Daily Load, Max Weekly Load, Days Off,
                Max Weekly Gaps
            unavailability_df: Optional Teacher ID, Unavailable Slots (``day:period;...``)
            preferences_df: Optional Teacher ID, Preferred Slots, most preferred first

        Returns:
            List of teacher mappings
        """
        unavailable = defaultdict(list)
        if unavailability_df is not None:
            for _, row in unavailability_df.iterrows():
                unavailable[_text(row['Teacher ID'])].extend(_split(row.get('Unavailable Slots')))

        preferred = defaultdict(list)
        if preferences_df is not None:
            for _, row in preferences_df.iterrows():
                preferred[_text(row['Teacher ID'])].extend(_split(row.get('Preferred Slots')))

        teachers = []
        for _, row in teachers_df.iterrows():
            teacher_id = _text(row['Teacher ID'])
            name = row.get('Name')
            teachers.append({
                'id': teacher_id,
                'name': _text(name) if name is not None and not pd.isna(name) else teacher_id,
                'unavailable': unavailable.get(teacher_id, []),
                'preferred': preferred.get(teacher_id, []),
                'days_off': [int(day) for day in _split(row.get('Days Off'))],
                'max_daily_load': _optional_int(row, 'Max Daily Load'),
                'max_weekly_load': _optional_int(row, 'Max Weekly Load'),
                'max_weekly_gaps': _optional_int(row, 'Max Weekly Gaps'),
            })
        return teachers

    @staticmethod
    def convert_groups(groups_df: pd.DataFrame,
                       unavailability_df: Optional[pd.DataFrame] = None) -> List[Dict[str, Any]]:
        """Convert groups; ``Daily Hours`` cells read ``day:periods;...``, e.g. ``0:6;4:4``."""
        unavailable = defaultdict(list)
        if unavailability_df is not None:
            for _, row in unavailability_df.iterrows():
                unavailable[_text(row['Group ID'])].extend(_split(row.get('Unavailable Slots')))

        groups = []
        for _, row in groups_df.iterrows():
            group_id = _text(row['Group ID'])
            name = row.get('Name')
            groups.append({
                'id': group_id,
                'name': _text(name) if name is not None and not pd.isna(name) else group_id,
                'size': _optional_int(row, 'Size') or 0,
                'unavailable': unavailable.get(group_id, []),
                'max_daily_load': _optional_int(row, 'Max Daily Load'),
                'daily_hours': _day_hours(row.get('Daily Hours')),
            })
        return groups

    @staticmethod
    def convert_courses(courses_df: pd.DataFrame) -> List[Dict[str, Any]]:
        courses = []
        for _, row in courses_df.iterrows():
            course_id = _text(row['Course ID'])
            subject = row.get('Subject')
            courses.append({
                'id': course_id,
                'subject': _text(subject) if subject is not None and not pd.isna(subject) else course_id,
                'teacher': _text(row['Teacher']),
                'group': _text(row['Group']),
                'weekly_hours': int(row.get('Weekly Hours', 1)),
                'duration': _optional_int(row, 'Duration') or 1,
                'requires': _split(row.get('Requires')),
            })
        return courses

    @classmethod
    def convert_to_raw(cls, data: Dict[str, pd.DataFrame]) -> Dict[str, Any]:
        """Convert loaded DataFrames to the raw input mapping."""
        raw = {
            'calendar': cls.convert_calendar(data['calendar']),
            'rooms': cls.convert_rooms(data['rooms']),
            'teachers': cls.convert_teachers(
                data['teachers'],
                data.get('teacher_unavailability'),
                data.get('teacher_preferences'),
            ),
            'groups': cls.convert_groups(data['groups'], data.get('group_unavailability')),
            'courses': cls.convert_courses(data['courses']),
        }
        logger.info(
            f"Converted {len(raw['courses'])} courses for {len(raw['groups'])} groups "
            f"and {len(raw['teachers'])} teachers"
        )
        return raw

    # -- output -------------------------------------------------------------

    @staticmethod
    def _day_name(day: int) -> str:
        return DAY_NAMES[day] if day < len(DAY_NAMES) else f"Day {day + 1}"

    @classmethod
    def convert_to_master_timetable_df(cls, assignment: Assignment) -> pd.DataFrame:
        """
        One row per lesson, sorted by day, period and group.

        Columns: Lesson ID, Course ID, Subject, Teacher ID, Group ID, Room,
        Day, Period, Duration
        """
        rows = []
        for record in assignment.to_records():
            rows.append({
                'Lesson ID': record['lesson'],
                'Course ID': record['course'],
                'Subject': record['subject'],
                'Teacher ID': record['teacher'],
                'Group ID': record['group'],
                'Room': record['room'],
                'Day': cls._day_name(record['day']),
                'Day Index': record['day'],
                'Period': record['period'] + 1,
                'Duration': record['duration'],
            })
        columns = ['Lesson ID', 'Course ID', 'Subject', 'Teacher ID', 'Group ID', 'Room',
                   'Day', 'Day Index', 'Period', 'Duration']
        df = pd.DataFrame(rows, columns=columns)
        if df.empty:
            return df.drop(columns=['Day Index'])
        df = df.sort_values(['Day Index', 'Period', 'Group ID'], kind='mergesort')
        return df.drop(columns=['Day Index']).reset_index(drop=True)

    @classmethod
    def convert_to_grid_df(cls, assignment: Assignment, resource_type: str) -> pd.DataFrame:
        """
        Weekly grid per teacher or group: one row per (resource, period),
        one column per day, cells ``subject (room)``.
        """
        model = assignment.model
        key = 'teacher' if resource_type == 'teacher' else 'group'
        ids = sorted(model.teachers if key == 'teacher' else model.groups)
        cells = {(resource_id, period): [''] * model.days
                 for resource_id in ids for period in range(model.periods_per_day)}
        for record in assignment.to_records():
            for offset in range(record['duration']):
                label = f"{record['subject']} ({record['room']})"
                if key == 'teacher':
                    label = f"{record['subject']} {record['group']} ({record['room']})"
                cells[(record[key], record['period'] + offset)][record['day']] = label

        rows = []
        id_column = 'Teacher ID' if key == 'teacher' else 'Group ID'
        for (resource_id, period), days in cells.items():
            row = {id_column: resource_id, 'Period': period + 1}
            for day, label in enumerate(days):
                row[cls._day_name(day)] = label
            rows.append(row)
        return pd.DataFrame(rows)

    @staticmethod
    def occupancy_matrix(assignment: Assignment) -> np.ndarray:
        """Rooms x slots matrix of 0/1 occupancy, rooms sorted by id."""
        model = assignment.model
        room_ids = sorted(model.rooms)
        index = {room_id: i for i, room_id in enumerate(room_ids)}
        matrix = np.zeros((len(room_ids), model.num_slots), dtype=np.int8)
        for _, placement in assignment.items():
            matrix[index[placement.room_id], list(placement.slots)] = 1
        return matrix

    @classmethod
    def generate_utilization_report(cls, assignment: Assignment) -> pd.DataFrame:
        """
        Generate a report on room utilization.

        Returns:
            DataFrame with Room, Capacity, Tags, Occupied Slots, Utilization,
            Busiest Day and Status
        """
        model = assignment.model
        matrix = cls.occupancy_matrix(assignment)
        per_day = matrix.reshape(len(model.rooms), model.days, model.periods_per_day).sum(axis=2)
        rows = []
        for i, room_id in enumerate(sorted(model.rooms)):
            room = model.rooms[room_id]
            occupied = int(matrix[i].sum())
            utilization = occupied / model.num_slots if model.num_slots else 0.0
            rows.append({
                'Room': room_id,
                'Capacity': room.capacity,
                'Tags': ';'.join(sorted(room.tags)),
                'Occupied Slots': occupied,
                'Utilization': round(utilization, 4),
                'Busiest Day': cls._day_name(int(np.argmax(per_day[i]))) if occupied else '',
                'Status': 'Low' if utilization < 0.3 else 'High' if utilization > 0.9 else 'Good',
            })
        return pd.DataFrame(rows)

    @classmethod
    def save_results(cls, result, output_dir: str) -> Dict[str, str]:
        """
        Save a generation result to CSV files plus a JSON diagnostics file.

        Args:
            result: GenerationResult from a session
            output_dir: Directory the files are written to

        Returns:
            Dictionary of output file paths
        """
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Saving results to {output_path}")

        output_files = {'diagnostics': str(output_path / 'Diagnostics.json')}
        with open(output_files['diagnostics'], 'w') as f:
            json.dump({
                'status': result.status.value,
                'conflict': result.conflict.to_dict() if result.conflict is not None else None,
                'diagnostics': result.diagnostics,
                'metrics': result.metrics,
            }, f, indent=2)

        if result.assignment is not None:
            output_files['timetable'] = str(output_path / 'Timetable.json')
            with open(output_files['timetable'], 'w') as f:
                json.dump(result.assignment.to_records(), f, indent=2)

            frames = {
                'master_timetable': ('Master_Timetable.csv', cls.convert_to_master_timetable_df(result.assignment)),
                'teacher_timetable': ('Teacher_Timetable.csv', cls.convert_to_grid_df(result.assignment, 'teacher')),
                'group_timetable': ('Group_Timetable.csv', cls.convert_to_grid_df(result.assignment, 'group')),
                'utilization_report': ('Utilization_Report.csv', cls.generate_utilization_report(result.assignment)),
            }
            for name, (file_name, df) in frames.items():
                output_files[name] = str(output_path / file_name)
                df.to_csv(output_files[name], index=False)

        logger.info("Results saved successfully")
        return output_files
