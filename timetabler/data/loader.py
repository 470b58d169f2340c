import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .converter import DataConverter

logger = logging.getLogger(__name__)

BASE_FILES = {
    'calendar': 'Calendar.csv',
    'rooms': 'Rooms.csv',
    'teachers': 'Teachers.csv',
    'groups': 'Groups.csv',
    'courses': 'Courses.csv',
}

RELATIONSHIP_FILES = {
    'teacher_unavailability': ('Teacher_Unavailability.csv', ['Teacher ID', 'Unavailable Slots']),
    'teacher_preferences': ('Teacher_Preferences.csv', ['Teacher ID', 'Preferred Slots']),
    'group_unavailability': ('Group_Unavailability.csv', ['Group ID', 'Unavailable Slots']),
}


class TimetableDataLoader:
    """
    Handles loading and validating timetabling data.

    The input is either a JSON document already in the engine's raw layout
    or a directory of CSV files, one per entity type.
    """

    def __init__(self, input_path: Optional[str] = None, debug_dir: Optional[str] = None):
        """
        Initialize the data loader.

        Args:
            input_path: JSON file or directory containing input CSV files
            debug_dir: Directory for a log file of the load, if wanted
        """
        self.input_path = Path(input_path) if input_path else Path.cwd()
        self.data: Dict[str, pd.DataFrame] = {}

        if not self.input_path.exists():
            logger.error(f"Input not found at {self.input_path}")
            raise FileNotFoundError(f"Input not found at {self.input_path}")

        if debug_dir:
            Path(debug_dir).mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(Path(debug_dir) / 'data_loader.log')
            file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
            logger.addHandler(file_handler)

        logger.info("Data loader initialized successfully")

    @property
    def is_json(self) -> bool:
        return self.input_path.is_file() and self.input_path.suffix.lower() == '.json'

    def load_json(self) -> Dict[str, Any]:
        """Load a JSON document holding the raw input mapping."""
        logger.info(f"Loading JSON input from {self.input_path}")
        with open(self.input_path, 'r') as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"{self.input_path} must contain a JSON object")
        for key in ('rooms', 'teachers', 'groups', 'courses'):
            logger.info(f"{key.capitalize()} loaded: {len(raw.get(key) or [])} records")
        return raw

    def load_base_data(self):
        """
        Load the primary data files required for timetabling:
        - Calendar (days and periods per day)
        - Rooms
        - Teachers
        - Groups
        - Courses
        """
        try:
            logger.info("Loading base data files...")
            for key, file_name in BASE_FILES.items():
                self.data[key] = pd.read_csv(self.input_path / file_name)
                logger.info(f"{key.capitalize()} loaded: {len(self.data[key])} records")
        except FileNotFoundError as e:
            logger.error(f"Missing input file: {e.filename}")
            raise

    def load_relationship_data(self):
        """
        Load optional per-slot data:
        - Teacher unavailability
        - Teacher slot preferences
        - Group unavailability (blocked by external activities)
        """
        logger.info("Loading relationship data...")
        for key, (file_name, columns) in RELATIONSHIP_FILES.items():
            try:
                self.data[key] = pd.read_csv(self.input_path / file_name)
                logger.info(f"{key.replace('_', ' ').capitalize()}: {len(self.data[key])} records")
            except (pd.errors.EmptyDataError, FileNotFoundError):
                self.data[key] = pd.DataFrame(columns=columns)
                logger.warning(f"{file_name} not found or empty, using empty dataset")

    def validate_relationships(self) -> List[str]:
        """
        Check that courses and per-slot files only reference known teachers
        and groups. Problems are returned and logged, not raised; the model
        builder rejects them later with the offending ids.
        """
        logger.info("Validating data relationships...")
        validation_issues = []

        courses = self.data['courses']
        known_teachers = set(self.data['teachers']['Teacher ID'].astype(str))
        known_groups = set(self.data['groups']['Group ID'].astype(str))

        unknown_teachers = set(courses['Teacher'].astype(str)) - known_teachers
        if unknown_teachers:
            issue = f"Unknown teachers in courses: {sorted(unknown_teachers)}"
            validation_issues.append(issue)
            logger.warning(issue)

        unknown_groups = set(courses['Group'].astype(str)) - known_groups
        if unknown_groups:
            issue = f"Unknown groups in courses: {sorted(unknown_groups)}"
            validation_issues.append(issue)
            logger.warning(issue)

        for key, column, known in (
            ('teacher_unavailability', 'Teacher ID', known_teachers),
            ('teacher_preferences', 'Teacher ID', known_teachers),
            ('group_unavailability', 'Group ID', known_groups),
        ):
            frame = self.data.get(key)
            if frame is None or frame.empty:
                continue
            unknown = set(frame[column].astype(str)) - known
            if unknown:
                issue = f"{key.replace('_', ' ').capitalize()} references unknown ids: {sorted(unknown)}"
                validation_issues.append(issue)
                logger.warning(issue)

        if not validation_issues:
            logger.info("All relationships are valid")
        else:
            logger.warning(f"Found {len(validation_issues)} validation issues")

        return validation_issues

    def load_all(self) -> Dict[str, pd.DataFrame]:
        """
        Load and validate all CSV data.

        Returns:
            Dict: Dictionary containing all loaded dataframes
        """
        try:
            logger.info("Starting data load process...")
            self.load_base_data()
            self.load_relationship_data()
            issues = self.validate_relationships()

            if issues:
                logger.warning(f"Data loaded with {len(issues)} validation issues")
            else:
                logger.info("Data loaded and validated successfully")

            return self.data

        except Exception as e:
            logger.error(f"Error during data loading: {str(e)}")
            raise

    def load_raw(self) -> Dict[str, Any]:
        """Load the input in the raw mapping layout the engine consumes."""
        if self.is_json:
            return self.load_json()
        return DataConverter.convert_to_raw(self.load_all())
