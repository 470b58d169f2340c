# Initialize algorithms package
from . import constraints
from . import search
from . import repair

__all__ = ['constraints', 'search', 'repair']
