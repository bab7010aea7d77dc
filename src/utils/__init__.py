"""
Utils module for the perception pipeline.
"""

from .logger import PerformanceLogger, setup_logging
from . import validation

__all__ = [
    'PerformanceLogger',
    'setup_logging',
    'validation',
]
