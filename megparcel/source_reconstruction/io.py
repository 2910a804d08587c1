"""Readers for subject inputs and writers for pipeline artifacts.

Inputs:
- sensor data: MNE ``-epo.fif`` (MEG channels; the measurement info is kept
  so leadfields use MNE's coil definitions) or ``.npz`` with data, sfreq,
  labels and coil arrays
- transform: 4x4 text / ``.npy`` matrix, or MNE ``-trans.fif``
- head and source models: ``.npz``
- atlas: NIfTI volume plus a two-column label table
- noise covariance (optional): ``.npy``

Outputs are ``.npz`` bundles with ``_params.json`` sidecars, written to
temporary files first and renamed into place only when every file of the
set has been written.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import mne
import nibabel as nib
import numpy as np
from mne.transforms import Transform, apply_trans

from megparcel.source_reconstruction.data import (
    AffineTransform,
    Atlas,
    HeadModel,
    ParcelTimeseries,
    SensorData,
    SensorGeometry,
    SourceEstimate,
    SourceModel,
)
from megparcel.utils.errors import ArtifactIOError, ConfigurationError
from megparcel.utils.paths import get_sidecar_path

logger = logging.getLogger(__name__)


class _NumpyEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _check_exists(path: Path, what: str) -> Path:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"{what} not found: {path}")
    return path


def _load_npz(path: Path, what: str) -> Dict[str, np.ndarray]:
    path = _check_exists(path, what)
    try:
        with np.load(path, allow_pickle=False) as npz:
            return {key: npz[key] for key in npz.files}
    except (OSError, ValueError) as e:
        raise ArtifactIOError(f"Failed to read {what} from {path}: {e}") from e


def _require(arrays: Dict[str, np.ndarray], keys: List[str], path: Path) -> None:
    missing = [key for key in keys if key not in arrays]
    if missing:
        raise ConfigurationError(f"{path.name} is missing arrays: {', '.join(missing)}")


def _optional(arrays: Dict[str, np.ndarray], key: str):
    value = arrays.get(key)
    if value is None or value.size == 0:
        return None
    return value


# ============================================================================
# Readers
# ============================================================================


def _read_epochs(path: Path) -> SensorData:
    try:
        epochs = mne.read_epochs(str(path), preload=True, verbose=False)
    except (OSError, ValueError) as e:
        raise ArtifactIOError(f"Failed to read epochs from {path}: {e}") from e

    picks = mne.pick_types(epochs.info, meg=True, ref_meg=False, exclude="bads")
    if len(picks) == 0:
        raise ConfigurationError(f"No MEG channels in {path}")

    # The full info is kept: reference channels and compensation matrices are
    # needed by the forward computation even though only ``picks`` are analysed
    info = epochs.info.copy()
    if info["dev_head_t"] is None:
        info["dev_head_t"] = Transform("meg", "head")

    chs = [info["chs"][idx] for idx in picks]
    labels = [ch["ch_name"] for ch in chs]
    # loc holds the channel centre and normal in device coordinates
    positions = apply_trans(info["dev_head_t"], np.array([ch["loc"][:3] for ch in chs]))
    normals = apply_trans(info["dev_head_t"], np.array([ch["loc"][9:12] for ch in chs]), move=False)

    geometry = SensorGeometry(
        labels=labels,
        coil_positions=positions,
        coil_orientations=normals,
        coordsys="head",
        info=info,
    )
    return SensorData(
        data=epochs.get_data(picks=picks),
        sfreq=info["sfreq"],
        labels=labels,
        geometry=geometry,
    )


def _read_sensor_npz(path: Path) -> SensorData:
    arrays = _load_npz(path, "Sensor data")
    _require(arrays, ["data", "sfreq", "labels", "coil_positions", "coil_orientations"], path)

    labels = [str(label) for label in arrays["labels"]]
    coordsys = str(arrays["coordsys"]) if "coordsys" in arrays else "head"
    geometry = SensorGeometry(
        labels=labels,
        coil_positions=arrays["coil_positions"],
        coil_orientations=arrays["coil_orientations"],
        tra=_optional(arrays, "tra"),
        coordsys=coordsys,
    )
    return SensorData(
        data=arrays["data"],
        sfreq=float(arrays["sfreq"]),
        labels=labels,
        geometry=geometry,
    )


def read_sensor_data(path: Path) -> SensorData:
    """Read trial-segmented sensor data with its sensor geometry."""
    path = _check_exists(path, "Sensor data")
    if path.name.endswith(".fif") or path.name.endswith(".fif.gz"):
        sensor_data = _read_epochs(path)
    elif path.suffix == ".npz":
        sensor_data = _read_sensor_npz(path)
    else:
        raise ConfigurationError(f"Unsupported sensor data format: {path.name}")

    logger.debug(
        f"Loaded {sensor_data.n_trials} trials x {len(sensor_data.labels)} channels "
        f"x {sensor_data.n_times} samples from {path.name}"
    )
    return sensor_data


def read_transform(path: Path, from_coordsys: str = "head", to_coordsys: str = "mni") -> AffineTransform:
    """Read a 4x4 affine from text, ``.npy`` or an MNE ``-trans.fif`` file."""
    path = _check_exists(path, "Transform")
    try:
        if path.name.endswith(".fif"):
            matrix = mne.read_trans(str(path), verbose=False)["trans"]
        elif path.suffix == ".npy":
            matrix = np.load(path, allow_pickle=False)
        else:
            matrix = np.loadtxt(path)
    except (OSError, ValueError) as e:
        raise ArtifactIOError(f"Failed to read transform from {path}: {e}") from e

    return AffineTransform(matrix=matrix, from_coordsys=from_coordsys, to_coordsys=to_coordsys)


def read_head_model(path: Path) -> HeadModel:
    """Read a volume conductor from ``.npz`` (kind, origin, radius, vertices)."""
    arrays = _load_npz(path, "Head model")
    radius = _optional(arrays, "radius")
    conductivity = _optional(arrays, "conductivity")
    return HeadModel(
        kind=str(arrays["kind"]) if "kind" in arrays else "singlesphere",
        origin=arrays["origin"] if "origin" in arrays else np.zeros(3),
        radius=None if radius is None else float(radius),
        conductivity=0.33 if conductivity is None else float(conductivity),
        vertices=_optional(arrays, "vertices"),
        coordsys=str(arrays["coordsys"]) if "coordsys" in arrays else "head",
    )


def read_source_model(path: Path) -> SourceModel:
    """Read a source grid from ``.npz`` (positions and optional orientations)."""
    arrays = _load_npz(path, "Source model")
    _require(arrays, ["positions"], Path(path))
    return SourceModel(
        positions=arrays["positions"],
        orientations=_optional(arrays, "orientations"),
        coordsys=str(arrays["coordsys"]) if "coordsys" in arrays else "head",
    )


def read_label_table(path: Path) -> Dict[int, str]:
    """Read ``<index> <name>`` lines; blank lines and ``#`` comments are skipped."""
    path = _check_exists(path, "Atlas label table")
    names = {}
    with open(path, "r") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split(None, 1)
            try:
                names[int(parts[0])] = parts[1].strip() if len(parts) > 1 else f"parcel-{parts[0]}"
            except ValueError:
                raise ConfigurationError(f"{path.name}:{line_no}: invalid label index '{parts[0]}'")
    return names


def read_atlas(
    path: Path,
    labels_path: Path,
    coordsys: str = "mni",
    scale: float = 1.0,
) -> Atlas:
    """Read a labelled NIfTI volume and its label names.

    Args:
        path: NIfTI file.
        labels_path: Label table.
        coordsys: Coordinate system of the atlas world coordinates.
        scale: Factor applied to the affine so world coordinates match the
            geometry units (e.g. 1e-3 for a millimetre atlas and metre grids).
    """
    if not scale > 0:
        raise ConfigurationError(f"dataset.atlas_scale must be positive, got {scale}")
    path = _check_exists(path, "Atlas")
    try:
        img = nib.load(str(path))
        labels = np.asarray(img.dataobj)
    except (OSError, nib.filebasedimages.ImageFileError) as e:
        raise ArtifactIOError(f"Failed to read atlas from {path}: {e}") from e

    if labels.ndim == 4 and labels.shape[3] == 1:
        labels = labels[..., 0]

    affine = np.array(img.affine, dtype=float)
    affine[:3] *= scale

    atlas = Atlas(
        labels=labels,
        affine=affine,
        label_names=read_label_table(labels_path),
        coordsys=coordsys,
    )
    logger.info(f"Loaded atlas {path.name}: {atlas.labels.shape}, {len(atlas.label_names)} labels")
    return atlas


def read_noise_covariance(path: Optional[Path]) -> Optional[np.ndarray]:
    """Read an optional channel noise covariance from ``.npy``."""
    if path is None:
        return None
    path = _check_exists(path, "Noise covariance")
    try:
        return np.load(path, allow_pickle=False)
    except (OSError, ValueError) as e:
        raise ArtifactIOError(f"Failed to read noise covariance from {path}: {e}") from e


# ============================================================================
# Writers
# ============================================================================


def source_estimate_arrays(estimate: SourceEstimate) -> Dict[str, Any]:
    arrays = {
        "positions": estimate.positions,
        "filters": estimate.filters,
        "power": estimate.power,
        "timecourse": estimate.timecourse,
        "labels": np.array(estimate.labels),
        "kappa": estimate.kappa,
        "lambda": estimate.lambda_,
    }
    if estimate.orientations is not None:
        arrays["orientations"] = estimate.orientations
    return arrays


def parcel_timeseries_arrays(parcels: ParcelTimeseries) -> Dict[str, Any]:
    return {
        "data": parcels.data,
        "parcel_labels": np.array(parcels.parcel_labels, dtype=int),
        "parcel_names": np.array(parcels.parcel_names),
        "sfreq": parcels.sfreq,
    }


def _temp_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.tmp")


def write_artifacts(artifacts: List[Tuple[Path, Dict[str, Any], Dict[str, Any]]]) -> List[Path]:
    """Write a set of ``.npz`` artifacts and their sidecars all-or-nothing.

    Every file is first written under a hidden temporary name. Only when all
    of them succeeded are they renamed into place, in the given order, so the
    last artifact of the list marks a complete set.

    Args:
        artifacts: List of (npz path, arrays, sidecar metadata).

    Returns:
        Final paths written (artifacts and sidecars).

    Raises:
        ArtifactIOError: If any file cannot be written. Temporary files are
            removed and no final file is created.
    """
    staged = []
    try:
        for path, arrays, metadata in artifacts:
            path = Path(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            sidecar = get_sidecar_path(path)

            tmp_sidecar = _temp_path(sidecar)
            staged.append((tmp_sidecar, sidecar))
            with open(tmp_sidecar, "w") as f:
                json.dump(metadata, f, indent=2, cls=_NumpyEncoder)

            tmp_npz = _temp_path(path)
            staged.append((tmp_npz, path))
            with open(tmp_npz, "wb") as f:
                np.savez_compressed(f, **arrays)
    except (OSError, TypeError, ValueError) as e:
        for tmp, _ in staged:
            tmp.unlink(missing_ok=True)
        raise ArtifactIOError(f"Failed to write artifacts: {e}") from e

    written = []
    for tmp, final in staged:
        os.replace(tmp, final)
        written.append(final)
        logger.debug(f"Saved {final}")
    return written


def load_parcel_timeseries(path: Path) -> ParcelTimeseries:
    """Read back a parcel timeseries artifact."""
    arrays = _load_npz(path, "Parcel timeseries")
    metadata = {}
    sidecar = get_sidecar_path(Path(path))
    if sidecar.exists():
        with open(sidecar, "r") as f:
            metadata = json.load(f)
    return ParcelTimeseries(
        data=arrays["data"],
        parcel_labels=tuple(int(v) for v in arrays["parcel_labels"]),
        parcel_names=tuple(str(v) for v in arrays["parcel_names"]),
        sfreq=float(arrays["sfreq"]),
        method=metadata.get("parcellation_method", "pca"),
    )
