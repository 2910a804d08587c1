"""Utility modules for megparcel.

This package provides common utilities for:
- Configuration loading
- Logging setup
- Error taxonomy
- Output paths
- Job queue and SLURM submission
- Input validation
"""

from megparcel.utils.errors import (
    ArtifactIOError,
    ConfigurationError,
    MegParcelError,
    NumericalError,
    ResourceExhaustion,
)

__all__ = [
    "ArtifactIOError",
    "ConfigurationError",
    "MegParcelError",
    "NumericalError",
    "ResourceExhaustion",
]
