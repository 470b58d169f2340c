# Initialize models package
from .entities import (
    Assignment, Constraint, ConstraintKind, DEFAULT_WEIGHTS, Group, HARD_KINDS,
    Lesson, Placement, Room, SOFT_KINDS, Teacher, TimeSlot, Violation
)
from .model import Model, build_model

__all__ = [
    'Assignment', 'Constraint', 'ConstraintKind', 'DEFAULT_WEIGHTS', 'Group', 'HARD_KINDS',
    'Lesson', 'Model', 'Placement', 'Room', 'SOFT_KINDS', 'Teacher', 'TimeSlot', 'Violation',
    'build_model',
]
