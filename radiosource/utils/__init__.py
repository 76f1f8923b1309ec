"""
Utility functions for radio source localization.

This module provides singularity handling, receiver geometry checks and
position accuracy helpers.
"""

from .geometry import normalize_jacobian_singularities, check_receiver_geometry, average_accuracy

__all__ = [
    'normalize_jacobian_singularities',
    'check_receiver_geometry',
    'average_accuracy',
]
