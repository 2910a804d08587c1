"""Data containers passed between the source reconstruction stages.

All containers are frozen dataclasses holding numpy arrays. Stages never
modify their inputs; they return new containers. Every geometric container
carries a ``coordsys`` tag that is checked before cross-entity operations.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from megparcel.utils.errors import ConfigurationError

BACKGROUND_LABEL = 0

# Atlas affines worse conditioned than this cannot be inverted reliably
MAX_AFFINE_CONDITION = 1e12


def _freeze(array, dtype=float) -> np.ndarray:
    out = np.array(array, dtype=dtype, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class AffineTransform:
    """Homogeneous transform from one coordinate system to another."""
    matrix: np.ndarray
    from_coordsys: str
    to_coordsys: str

    def __post_init__(self):
        object.__setattr__(self, "matrix", _freeze(self.matrix))


@dataclass(frozen=True, eq=False)
class SensorGeometry:
    """Sensor array: coils plus the coil-to-channel weighting ``tra``.

    Geometry read from a FIF recording also keeps its ``mne.Info``, whose
    ``dev_head_t`` maps device coordinates into ``coordsys``. The leadfield of
    such an array comes from MNE's coil definitions (planar and axial
    gradiometers, compensation); ``coil_positions`` then only hold the channel
    centres.
    """
    labels: Tuple[str, ...]
    coil_positions: np.ndarray
    coil_orientations: np.ndarray
    tra: Optional[np.ndarray] = None
    coordsys: str = "head"
    info: Optional[Any] = None

    def __post_init__(self):
        object.__setattr__(self, "labels", tuple(str(label) for label in self.labels))
        object.__setattr__(self, "coil_positions", _freeze(self.coil_positions))
        object.__setattr__(self, "coil_orientations", _freeze(self.coil_orientations))
        n_coils = self.coil_positions.shape[0]
        tra = np.eye(n_coils) if self.tra is None else self.tra
        object.__setattr__(self, "tra", _freeze(tra))

        if self.coil_orientations.shape != self.coil_positions.shape:
            raise ConfigurationError(
                f"Coil orientations {self.coil_orientations.shape} do not match "
                f"coil positions {self.coil_positions.shape}"
            )
        if self.tra.shape != (len(self.labels), n_coils):
            raise ConfigurationError(
                f"tra has shape {self.tra.shape}, expected ({len(self.labels)}, {n_coils})"
            )

    @property
    def n_channels(self) -> int:
        return len(self.labels)


@dataclass(frozen=True, eq=False)
class SensorData:
    """Trial-segmented sensor recordings, shape (n_trials, n_channels, n_times)."""
    data: np.ndarray
    sfreq: float
    labels: Tuple[str, ...]
    geometry: Optional[SensorGeometry] = None

    def __post_init__(self):
        data = _freeze(self.data)
        if data.ndim == 2:
            data = _freeze(data[np.newaxis])
        if data.ndim != 3:
            raise ConfigurationError(f"Sensor data must be 3-D, got shape {data.shape}")
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "labels", tuple(str(label) for label in self.labels))
        object.__setattr__(self, "sfreq", float(self.sfreq))

        if data.shape[1] != len(self.labels):
            raise ConfigurationError(
                f"Sensor data has {data.shape[1]} channels but {len(self.labels)} labels"
            )
        if self.geometry is not None and self.geometry.labels != self.labels:
            raise ConfigurationError("Sensor geometry channel order differs from the data")

    @property
    def n_trials(self) -> int:
        return self.data.shape[0]

    @property
    def n_times(self) -> int:
        return self.data.shape[2]


@dataclass(frozen=True, eq=False)
class HeadModel:
    """Volume conductor: a single sphere or an infinite homogeneous medium."""
    kind: str = "singlesphere"
    origin: np.ndarray = field(default_factory=lambda: np.zeros(3))
    radius: Optional[float] = None
    conductivity: float = 0.33
    vertices: Optional[np.ndarray] = None
    coordsys: str = "head"

    def __post_init__(self):
        if self.kind not in ("singlesphere", "infinite"):
            raise ConfigurationError(f"Unsupported head model kind: {self.kind}")
        object.__setattr__(self, "origin", _freeze(self.origin))
        if self.vertices is not None:
            object.__setattr__(self, "vertices", _freeze(self.vertices))


@dataclass(frozen=True, eq=False)
class SourceModel:
    """Ordered source grid with optional orientation priors."""
    positions: np.ndarray
    orientations: Optional[np.ndarray] = None
    coordsys: str = "head"

    def __post_init__(self):
        positions = _freeze(self.positions)
        if positions.ndim != 2:
            raise ConfigurationError(f"Source positions must be 2-D, got {positions.shape}")
        object.__setattr__(self, "positions", positions)
        if self.orientations is not None:
            orientations = _freeze(self.orientations)
            if orientations.shape != positions.shape:
                raise ConfigurationError(
                    f"Orientations {orientations.shape} do not match positions {positions.shape}"
                )
            object.__setattr__(self, "orientations", orientations)

    @property
    def n_points(self) -> int:
        return self.positions.shape[0]


@dataclass(frozen=True, eq=False)
class Atlas:
    """Labelled volume; ``affine`` maps voxel indices to world coordinates."""
    labels: np.ndarray
    affine: np.ndarray
    label_names: Dict[int, str]
    coordsys: str = "mni"

    def __post_init__(self):
        labels = _freeze(np.rint(self.labels), dtype=int)
        if labels.ndim != 3:
            raise ConfigurationError(f"Atlas volume must be 3-D, got {labels.shape}")
        object.__setattr__(self, "labels", labels)
        object.__setattr__(self, "affine", _freeze(self.affine))
        affine = self.affine
        if affine.shape != (4, 4) or not np.all(np.isfinite(affine)):
            raise ConfigurationError(f"Atlas affine must be a finite 4x4 matrix, got shape {affine.shape}")
        singular = not np.linalg.cond(affine[:3, :3]) < MAX_AFFINE_CONDITION
        if singular or not np.allclose(affine[3], [0, 0, 0, 1]):
            raise ConfigurationError("Atlas affine is not an invertible voxel-to-world transform")
        object.__setattr__(
            self, "label_names", {int(k): str(v) for k, v in self.label_names.items()}
        )


@dataclass(frozen=True, eq=False)
class CovarianceMatrix:
    """Channel covariance with the channel order it was computed in."""
    data: np.ndarray
    labels: Tuple[str, ...]
    n_samples: int = 0

    def __post_init__(self):
        object.__setattr__(self, "data", _freeze(self.data))
        object.__setattr__(self, "labels", tuple(str(label) for label in self.labels))
        n_chan = len(self.labels)
        if self.data.shape != (n_chan, n_chan):
            raise ConfigurationError(
                f"Covariance has shape {self.data.shape}, expected ({n_chan}, {n_chan})"
            )


@dataclass(frozen=True, eq=False)
class ConditionedData:
    """Output of the signal conditioner.

    ``average_covariance`` (trials pooled) and ``trial_covariance`` (trial
    dimension kept) are separate artifacts from the same demeaned data.
    """
    filtered: SensorData
    average: np.ndarray
    average_covariance: CovarianceMatrix
    trial_covariance: np.ndarray
    l_freq: float
    h_freq: float


@dataclass(frozen=True, eq=False)
class Leadfield:
    """Per-point reduced leadfields.

    ``matrices[i] = full_leadfield[i] @ bases[i]``, so ``bases[i] @ eta`` is
    the dipole direction of a coefficient vector ``eta``.
    """
    matrices: np.ndarray
    bases: np.ndarray
    positions: np.ndarray
    labels: Tuple[str, ...]
    rank: int
    normalized: bool
    coordsys: str
    kappa: Optional[int] = None

    @property
    def n_points(self) -> int:
        return self.matrices.shape[0]


@dataclass(frozen=True, eq=False)
class SourceEstimate:
    """LCMV filters and the averaged source estimate derived from them."""
    positions: np.ndarray
    filters: np.ndarray
    orientations: Optional[np.ndarray]
    power: np.ndarray
    timecourse: np.ndarray
    labels: Tuple[str, ...]
    kappa: int
    lambda_: float
    weight_norm: Optional[str]
    coordsys: str

    @property
    def n_points(self) -> int:
        return self.filters.shape[0]

    @property
    def n_orient(self) -> int:
        return self.filters.shape[1]


@dataclass(frozen=True, eq=False)
class ParcelAssignment:
    """One atlas label per grid point (0 = background)."""
    labels: np.ndarray
    label_names: Dict[int, str]
    positions: np.ndarray

    def parcel_labels(self) -> List[int]:
        """Sorted non-background labels present in the assignment."""
        return [int(v) for v in np.unique(self.labels) if v != BACKGROUND_LABEL]


@dataclass(frozen=True, eq=False)
class ParcelTimeseries:
    """Final artifact: dense (n_trials, n_parcels, n_times) array."""
    data: np.ndarray
    parcel_labels: Tuple[int, ...]
    parcel_names: Tuple[str, ...]
    sfreq: float
    method: str = "pca"
