"""megparcel: LCMV beamforming and atlas parcellation of resting-state MEG."""

__version__ = "0.1.0"
