# Initialize data package
from .converter import DataConverter
from .loader import TimetableDataLoader

__all__ = ['DataConverter', 'TimetableDataLoader']
