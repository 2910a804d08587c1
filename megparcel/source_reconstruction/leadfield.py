"""Forward model (leadfield) construction on the source grid.

For each grid point the magnetic field of three orthogonal unit current
dipoles is computed at every coil, combined into channels, reduced to the
configured orientation rank and (optionally) column-normalised so that deep
sources are not systematically weaker than superficial ones.

Volume conductors:
- ``singlesphere``: Sarvas (1987) closed form for a spherically symmetric
  conductor. The radial dipole component is silent, so the full leadfield has
  rank 2 and a rank reduction to 2 loses nothing.
- ``infinite``: Biot-Savart field of a current dipole in an unbounded medium.

Sensor arrays read from FIF files carry their ``mne.Info`` and go through
``mne.make_forward_solution`` on a single-shell sphere instead, so planar and
axial gradiometers are integrated over their real coils.
"""

import logging
from typing import Optional, Tuple

import mne
import numpy as np
from joblib import Parallel, delayed

from megparcel.source_reconstruction.alignment import check_same_coordsys
from megparcel.source_reconstruction.data import (
    HeadModel,
    Leadfield,
    SensorGeometry,
    SourceModel,
)
from megparcel.utils.errors import ConfigurationError, NumericalError

logger = logging.getLogger(__name__)

MU0_OVER_4PI = 1e-7

# Retained singular values below this fraction of the largest are degenerate
DEGENERACY_TOLERANCE = 1e-10


def fit_sphere(vertices: np.ndarray) -> Tuple[np.ndarray, float]:
    """Least-squares sphere through a set of surface points.

    Solves |x|^2 = 2 c.x + (r^2 - |c|^2) for the centre c and radius r.

    Args:
        vertices: Array of shape (n, 3), n >= 4.

    Returns:
        Tuple of (origin, radius).
    """
    vertices = np.asarray(vertices, dtype=float)
    if vertices.shape[0] < 4:
        raise NumericalError(f"Need at least 4 points to fit a sphere, got {vertices.shape[0]}")

    design = np.column_stack([2 * vertices, np.ones(len(vertices))])
    target = np.sum(vertices ** 2, axis=1)
    solution, _, rank, _ = np.linalg.lstsq(design, target, rcond=None)
    if rank < 4:
        raise NumericalError("Head surface points are degenerate; cannot fit a sphere")

    origin = solution[:3]
    radius = float(np.sqrt(solution[3] + origin @ origin))
    return origin, radius


def resolve_sphere(head_model: HeadModel) -> Tuple[np.ndarray, Optional[float]]:
    """Sphere origin and radius, fitted to the head surface when no radius is given."""
    if head_model.kind == "singlesphere" and head_model.radius is None and head_model.vertices is not None:
        origin, radius = fit_sphere(head_model.vertices)
        logger.info(f"Fitted sphere to head surface: origin={np.round(origin, 4)}, radius={radius:.4f}")
        return origin, radius
    return head_model.origin, head_model.radius


def _sarvas_field(position, coil_positions, coil_orientations, origin) -> np.ndarray:
    """Coil fields (n_coils, 3) of unit dipoles along x, y, z (Sarvas 1987)."""
    r0 = position - origin
    r = coil_positions - origin

    a_vec = r - r0
    a = np.linalg.norm(a_vec, axis=1)
    rn = np.linalg.norm(r, axis=1)
    a_dot_r = np.sum(a_vec * r, axis=1)

    big_f = a * (rn * a + rn ** 2 - r @ r0)
    grad_f = (
        (a ** 2 / rn + a_dot_r / a + 2 * a + 2 * rn)[:, np.newaxis] * r
        - (a + 2 * rn + a_dot_r / a)[:, np.newaxis] * r0
    )

    # Rows are q x r0 for q = ex, ey, ez
    q_cross_r0 = np.cross(np.eye(3), r0)

    term1 = big_f[:, np.newaxis] * (coil_orientations @ q_cross_r0.T)
    term2 = (r @ q_cross_r0.T) * np.sum(grad_f * coil_orientations, axis=1)[:, np.newaxis]
    return MU0_OVER_4PI * (term1 - term2) / big_f[:, np.newaxis] ** 2


def _infinite_medium_field(position, coil_positions, coil_orientations) -> np.ndarray:
    """Coil fields (n_coils, 3) of unit current dipoles in an unbounded medium."""
    a_vec = coil_positions - position
    a = np.linalg.norm(a_vec, axis=1)
    return MU0_OVER_4PI * np.cross(a_vec, coil_orientations) / a[:, np.newaxis] ** 3


def compute_forward_fields(
    head_model: HeadModel,
    geometry: SensorGeometry,
    positions: np.ndarray,
    origin: Optional[np.ndarray] = None,
    n_jobs: int = 1,
) -> np.ndarray:
    """Full leadfields of a FIF sensor array, shape (n_points, n_channels, 3).

    The sphere and the grid are handed to ``mne.make_forward_solution``, so
    every coil is integrated with MNE's coil definitions. The identity
    ``trans`` makes MNE's MRI and head frames both the geometry's ``coordsys``.

    Raises:
        ConfigurationError: For a non-spherical head model, or sensors MNE
            cannot model (unknown coil types, unsupported reference channels).
    """
    if head_model.kind != "singlesphere":
        raise ConfigurationError(
            f"FIF sensor arrays need a singlesphere head model, got {head_model.kind}"
        )
    positions = np.atleast_2d(np.asarray(positions, dtype=float))
    sphere_origin = head_model.origin if origin is None else origin

    sphere = mne.make_sphere_model(r0=sphere_origin, head_radius=None, verbose=False)
    normals = np.tile([0.0, 0.0, 1.0], (len(positions), 1))
    src = mne.setup_volume_source_space(pos=dict(rr=positions, nn=normals), verbose=False)
    try:
        fwd = mne.make_forward_solution(
            geometry.info, trans=None, src=src, bem=sphere,
            meg=True, eeg=False, n_jobs=n_jobs, verbose=False,
        )
    except (RuntimeError, ValueError) as e:
        raise ConfigurationError(f"Cannot compute the MEG forward model: {e}") from e

    row_names = list(fwd["sol"]["row_names"])
    missing = [label for label in geometry.labels if label not in row_names]
    if missing:
        raise ConfigurationError(f"Forward model lacks channels: {', '.join(missing)}")
    if fwd["nsource"] != len(positions):
        raise NumericalError(f"Forward model kept {fwd['nsource']} of {len(positions)} grid points")

    # Columns are ordered x, y, z per source
    data = fwd["sol"]["data"][[row_names.index(label) for label in geometry.labels]]
    return data.reshape(geometry.n_channels, len(positions), 3).transpose(1, 0, 2)


def compute_dipole_field(
    head_model: HeadModel,
    geometry: SensorGeometry,
    position: np.ndarray,
    origin: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Full (n_channels, 3) leadfield of one grid point.

    Args:
        head_model: Volume conductor.
        geometry: Sensor array.
        position: Dipole position, shape (3,).
        origin: Sphere origin overriding ``head_model.origin`` (e.g. a fitted one).

    Returns:
        Channel-level field of unit dipoles along x, y, z.
    """
    position = np.asarray(position, dtype=float)
    if geometry.info is not None:
        return compute_forward_fields(head_model, geometry, position, origin=origin)[0]
    if head_model.kind == "singlesphere":
        sphere_origin = head_model.origin if origin is None else origin
        coil_field = _sarvas_field(
            position, geometry.coil_positions, geometry.coil_orientations, sphere_origin
        )
    else:
        coil_field = _infinite_medium_field(
            position, geometry.coil_positions, geometry.coil_orientations
        )
    return geometry.tra @ coil_field


def reduce_rank(leadfield: np.ndarray, rank: int) -> Tuple[np.ndarray, np.ndarray]:
    """Keep the ``rank`` strongest orientation components of a leadfield.

    Args:
        leadfield: Full leadfield, shape (n_channels, 3).
        rank: Number of orientation components to keep.

    Returns:
        Tuple of (reduced leadfield (n_channels, rank), basis (3, rank)) with
        ``reduced = leadfield @ basis``.

    Raises:
        NumericalError: If a retained component is degenerate.
    """
    _, singular_values, vt = np.linalg.svd(leadfield, full_matrices=False)
    if not singular_values[0] > 0 or singular_values[rank - 1] < DEGENERACY_TOLERANCE * singular_values[0]:
        raise NumericalError(
            f"Leadfield is rank-deficient below rank {rank} "
            f"(singular values {singular_values})"
        )
    basis = vt[:rank].T
    return leadfield @ basis, basis


def _reduce_fields(fields, indices, positions, rank, normalize):
    matrices = np.empty((len(indices), fields.shape[1], rank))
    bases = np.empty((len(indices), 3, rank))
    for out_idx, (point_idx, full) in enumerate(zip(indices, fields)):
        try:
            reduced, basis = reduce_rank(full, rank)
        except NumericalError as e:
            raise NumericalError(f"Grid point {point_idx} at {positions[point_idx]}: {e}") from e
        if normalize:
            norms = np.linalg.norm(reduced, axis=0)
            reduced = reduced / norms
            basis = basis / norms
        matrices[out_idx] = reduced
        bases[out_idx] = basis
    return matrices, bases


def _compute_chunk(indices, positions, head_model, geometry, origin, rank, normalize):
    fields = np.stack([compute_dipole_field(head_model, geometry, positions[idx], origin=origin) for idx in indices])
    return _reduce_fields(fields, indices, positions, rank, normalize)


def build_leadfield(
    head_model: HeadModel,
    source_model: SourceModel,
    geometry: SensorGeometry,
    rank: int = 2,
    normalize: bool = True,
    kappa: Optional[int] = None,
    n_jobs: int = 1,
) -> Leadfield:
    """Compute reduced, normalised leadfields for every grid point.

    Args:
        head_model: Aligned volume conductor.
        source_model: Aligned source grid.
        geometry: Aligned sensor array; its channel order is carried along.
        rank: Orientation components kept per point (2 for a planar-sensor /
            spherical approximation).
        normalize: Scale each orientation column to unit norm.
        kappa: Regularization rank of this run, recorded so the beamformer can
            check it is given the same value.
        n_jobs: Number of joblib workers over chunks of grid points.

    Returns:
        Leadfield for the whole grid.
    """
    coordsys = check_same_coordsys(
        head_model=head_model, source_model=source_model, sensors=geometry
    )
    if not 1 <= rank <= 3:
        raise ConfigurationError(f"Leadfield rank must be 1, 2 or 3, got {rank}")

    origin, radius = resolve_sphere(head_model)
    positions = np.asarray(source_model.positions)

    if head_model.kind == "singlesphere" and radius is not None:
        outside = np.linalg.norm(positions - origin, axis=1) >= radius
        if outside.any():
            logger.warning(f"{int(outside.sum())} grid point(s) lie outside the sphere (r={radius:.4f})")

    n_points = len(positions)
    logger.info(
        f"Computing {head_model.kind} leadfield for {n_points} points x "
        f"{geometry.n_channels} channels (rank={rank}, normalize={normalize})"
    )

    if geometry.info is not None:
        logger.debug("Using MNE coil definitions for the FIF sensor array")
        fields = compute_forward_fields(head_model, geometry, positions, origin=origin, n_jobs=n_jobs)
        matrices, bases = _reduce_fields(fields, np.arange(n_points), positions, rank, normalize)
    else:
        n_chunks = max(1, min(n_points, 4 * max(1, n_jobs if n_jobs > 0 else 4)))
        chunks = [c for c in np.array_split(np.arange(n_points), n_chunks) if len(c)]
        results = Parallel(n_jobs=n_jobs)(
            delayed(_compute_chunk)(chunk, positions, head_model, geometry, origin, rank, normalize)
            for chunk in chunks
        )
        matrices = np.concatenate([m for m, _ in results], axis=0)
        bases = np.concatenate([b for _, b in results], axis=0)
    matrices.setflags(write=False)
    bases.setflags(write=False)

    return Leadfield(
        matrices=matrices,
        bases=bases,
        positions=positions,
        labels=geometry.labels,
        rank=rank,
        normalized=normalize,
        coordsys=coordsys,
        kappa=kappa,
    )
