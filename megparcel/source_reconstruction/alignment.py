"""Coordinate alignment of head model, source grid and sensors.

A subject-specific affine brings subject-native geometry into the template
space shared by all subjects. Positions get the full homogeneous transform;
directions get only its linear part and are renormalised to unit length.
"""

import logging

import numpy as np
from mne.transforms import Transform, apply_trans

from megparcel.source_reconstruction.data import (
    AffineTransform,
    HeadModel,
    SensorGeometry,
    SourceModel,
)
from megparcel.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Transforms worse conditioned than this are treated as singular
MAX_CONDITION = 1e12


def check_transform(transform: AffineTransform, n_dims: int = 3) -> None:
    """Validate an affine transform.

    Args:
        transform: Transform to check.
        n_dims: Dimensionality of the geometry it will be applied to.

    Raises:
        ConfigurationError: If the matrix has the wrong size, is not a
            homogeneous affine, or is not invertible.
    """
    matrix = transform.matrix
    if matrix.shape != (n_dims + 1, n_dims + 1):
        raise ConfigurationError(
            f"Transform {transform.from_coordsys}->{transform.to_coordsys} has shape "
            f"{matrix.shape}, expected {(n_dims + 1, n_dims + 1)} for {n_dims}-D geometry"
        )
    if not np.all(np.isfinite(matrix)):
        raise ConfigurationError("Transform contains non-finite values")

    expected_last_row = np.zeros(n_dims + 1)
    expected_last_row[-1] = 1.0
    if not np.allclose(matrix[-1], expected_last_row):
        raise ConfigurationError(f"Transform last row must be {expected_last_row}, got {matrix[-1]}")

    if not np.linalg.cond(matrix[:n_dims, :n_dims]) < MAX_CONDITION:
        raise ConfigurationError(
            f"Transform {transform.from_coordsys}->{transform.to_coordsys} is not invertible"
        )


def invert_transform(transform: AffineTransform) -> AffineTransform:
    """Inverse transform with swapped coordinate system tags."""
    check_transform(transform)
    return AffineTransform(
        matrix=np.linalg.inv(transform.matrix),
        from_coordsys=transform.to_coordsys,
        to_coordsys=transform.from_coordsys,
    )


def _check_points(transform: AffineTransform, points: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=float)
    if points.ndim != 2 or points.shape[1] != transform.matrix.shape[0] - 1:
        raise ConfigurationError(
            f"Geometry with shape {points.shape} does not match a "
            f"{transform.matrix.shape[0] - 1}-D transform"
        )
    return points


def transform_points(transform: AffineTransform, points: np.ndarray) -> np.ndarray:
    """Apply the full affine (rotation, scaling and translation) to points."""
    check_transform(transform)
    points = _check_points(transform, points)
    return apply_trans(transform.matrix, points, move=True)


def transform_directions(transform: AffineTransform, directions: np.ndarray) -> np.ndarray:
    """Apply only the linear part of the affine and renormalise to unit length."""
    check_transform(transform)
    directions = _check_points(transform, directions)
    rotated = apply_trans(transform.matrix, directions, move=False)
    norms = np.linalg.norm(rotated, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return rotated / norms


def _check_source_space(entity_coordsys: str, transform: AffineTransform, what: str) -> None:
    if entity_coordsys != transform.from_coordsys:
        raise ConfigurationError(
            f"{what} is in '{entity_coordsys}' but the transform maps from "
            f"'{transform.from_coordsys}'"
        )


def align_head_model(head_model: HeadModel, transform: AffineTransform) -> HeadModel:
    """Return the head model expressed in the transform's target space.

    The sphere radius is scaled by the cube root of the volume change of the
    linear part, which leaves it unchanged for rigid transforms.
    """
    _check_source_space(head_model.coordsys, transform, "Head model")
    origin = transform_points(transform, head_model.origin[np.newaxis])[0]

    radius = head_model.radius
    if radius is not None:
        scale = abs(np.linalg.det(transform.matrix[:3, :3])) ** (1.0 / 3.0)
        radius = float(radius * scale)

    vertices = head_model.vertices
    if vertices is not None:
        vertices = transform_points(transform, vertices)

    logger.debug(f"Aligned head model {head_model.coordsys} -> {transform.to_coordsys}")
    return HeadModel(
        kind=head_model.kind,
        origin=origin,
        radius=radius,
        conductivity=head_model.conductivity,
        vertices=vertices,
        coordsys=transform.to_coordsys,
    )


def align_source_model(source_model: SourceModel, transform: AffineTransform) -> SourceModel:
    """Return the source grid expressed in the transform's target space."""
    _check_source_space(source_model.coordsys, transform, "Source model")
    orientations = source_model.orientations
    if orientations is not None:
        orientations = transform_directions(transform, orientations)

    logger.debug(
        f"Aligned {source_model.n_points} grid points "
        f"{source_model.coordsys} -> {transform.to_coordsys}"
    )
    return SourceModel(
        positions=transform_points(transform, source_model.positions),
        orientations=orientations,
        coordsys=transform.to_coordsys,
    )


def align_sensor_geometry(geometry: SensorGeometry, transform: AffineTransform) -> SensorGeometry:
    """Return the sensor array expressed in the transform's target space."""
    _check_source_space(geometry.coordsys, transform, "Sensor geometry")
    info = geometry.info
    if info is not None:
        # MNE places coils through dev_head_t, so the alignment is folded into it
        info = info.copy()
        info["dev_head_t"] = Transform("meg", "head", transform.matrix @ info["dev_head_t"]["trans"])
    return SensorGeometry(
        labels=geometry.labels,
        coil_positions=transform_points(transform, geometry.coil_positions),
        coil_orientations=transform_directions(transform, geometry.coil_orientations),
        tra=geometry.tra,
        coordsys=transform.to_coordsys,
        info=info,
    )


def check_same_coordsys(**entities) -> str:
    """Check that all named entities share one coordinate system.

    Args:
        **entities: Objects with a ``coordsys`` attribute, keyed by a name used
            in the error message.

    Returns:
        The shared coordinate system tag.

    Raises:
        ConfigurationError: If the tags differ.
    """
    tags = {name: entity.coordsys for name, entity in entities.items()}
    if len(set(tags.values())) > 1:
        listing = ", ".join(f"{name}={tag}" for name, tag in tags.items())
        raise ConfigurationError(f"Coordinate systems differ: {listing}")
    return next(iter(tags.values()))
