"""Source reconstruction module.

This module contains the stages of the LCMV pipeline:
- Coordinate alignment to template space
- Band-pass filtering and covariance estimation
- Regularization rank (kappa) selection
- Leadfield computation
- LCMV beamforming
- Atlas projection and parcellation
"""

from megparcel.source_reconstruction import pipeline

__all__ = ["pipeline"]
