"""Atlas projection onto the source grid."""

import logging
from typing import Any, Dict, List

import numpy as np
from mne.transforms import apply_trans

from megparcel.source_reconstruction.alignment import check_same_coordsys
from megparcel.source_reconstruction.data import (
    BACKGROUND_LABEL,
    Atlas,
    ParcelAssignment,
    SourceModel,
)
from megparcel.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

INTERPOLATION_METHODS = ("nearest",)


def assign_labels(atlas: Atlas, positions: np.ndarray, method: str = "nearest") -> np.ndarray:
    """Look up the atlas label of each position.

    World coordinates are mapped to voxel indices through the inverse affine
    and rounded to the nearest voxel. Positions outside the volume get the
    background label.

    Args:
        atlas: Labelled volume.
        positions: World coordinates, shape (n_points, 3).
        method: Interpolation rule. Only "nearest" is supported.

    Returns:
        Integer labels, shape (n_points,).
    """
    if method not in INTERPOLATION_METHODS:
        raise ConfigurationError(
            f"Unsupported atlas interpolation '{method}' (supported: {INTERPOLATION_METHODS})"
        )

    voxels = apply_trans(np.linalg.inv(atlas.affine), np.asarray(positions, dtype=float))
    indices = np.rint(voxels).astype(int)

    shape = np.array(atlas.labels.shape)
    inside = np.all((indices >= 0) & (indices < shape), axis=1)

    labels = np.full(len(indices), BACKGROUND_LABEL, dtype=int)
    labels[inside] = atlas.labels[tuple(indices[inside].T)]
    return labels


def project_atlas(atlas: Atlas, source_model: SourceModel, method: str = "nearest") -> ParcelAssignment:
    """Assign every grid point of an aligned source model to a parcel."""
    check_same_coordsys(atlas=atlas, source_model=source_model)
    labels = assign_labels(atlas, source_model.positions, method=method)
    labels.setflags(write=False)

    n_background = int(np.sum(labels == BACKGROUND_LABEL))
    logger.info(
        f"Projected atlas onto {source_model.n_points} points: "
        f"{len(np.unique(labels[labels != BACKGROUND_LABEL]))} parcels, {n_background} background"
    )
    return ParcelAssignment(
        labels=labels,
        label_names=atlas.label_names,
        positions=source_model.positions,
    )


def parcel_table(assignment: ParcelAssignment) -> List[Dict[str, Any]]:
    """Label, name and point count of each parcel present in the assignment."""
    table = []
    for label in assignment.parcel_labels():
        table.append({
            "label": label,
            "name": assignment.label_names.get(label, f"parcel-{label}"),
            "n_points": int(np.sum(assignment.labels == label)),
        })
    return table
