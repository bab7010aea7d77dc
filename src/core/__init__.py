"""
Core module for the real-time perception pipeline
"""

from .config import (PipelineConfig, ObjectSettings, ActionSettings, SchedulerSettings,
                     ObjectModelConfig, ActionModelConfig, SchedulerConfig)
from .utils import get_device, round_half_up, format_ms
from .labels import load_labels, load_label_file, get_default_labels

__all__ = [
    'PipelineConfig', 'ObjectSettings', 'ActionSettings', 'SchedulerSettings',
    'ObjectModelConfig', 'ActionModelConfig', 'SchedulerConfig',
    'get_device', 'round_half_up', 'format_ms',
    'load_labels', 'load_label_file', 'get_default_labels'
]
