"""
Utility functions for the perception pipeline
"""

import math

import torch


def get_device(device=None):
    """
    Get the device to use for inference

    Args:
        device: Device string ('auto', 'cuda', 'cpu')

    Returns:
        torch.device object
    """
    if device is None or device == 'auto':
        return torch.device('cuda' if torch.cuda.is_available() else 'cpu')
    return torch.device(device)


def round_half_up(value):
    """Round .5 away from zero (Python's round() uses banker's rounding)."""
    if value >= 0:
        return int(math.floor(value + 0.5))
    return -int(math.floor(-value + 0.5))


def format_ms(seconds):
    """
    Format a duration in seconds as milliseconds

    Args:
        seconds: Time in seconds

    Returns:
        Formatted string (e.g., "12.3ms")
    """
    return f"{seconds * 1000.0:.1f}ms"
