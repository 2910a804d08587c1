"""LCMV beamformer.

Filters are built per grid point from the reduced leadfield and the
trial-averaged covariance. The covariance inverse is taken over the kappa
dominant eigencomponents of the diagonally loaded matrix, which keeps the
noise floor out of the filter weights.
"""

import logging
from typing import Optional, Tuple

import numpy as np
from scipy import linalg

from megparcel.source_reconstruction.data import (
    ConditionedData,
    CovarianceMatrix,
    Leadfield,
    SourceEstimate,
)
from megparcel.utils.errors import ConfigurationError, NumericalError

logger = logging.getLogger(__name__)

DEFAULT_LAMBDA = 5.0

WEIGHT_NORMS = ("unit-noise-gain", None)


def regularized_inverse(covariance: np.ndarray, kappa: int, lambda_: float = DEFAULT_LAMBDA) -> np.ndarray:
    """Truncated inverse of a diagonally loaded covariance.

    Args:
        covariance: Square channel covariance.
        kappa: Number of eigencomponents kept.
        lambda_: Diagonal loading as a percentage of the mean eigenvalue.

    Returns:
        Inverse restricted to the kappa dominant eigenvectors.
    """
    n_chan = covariance.shape[0]
    if not 1 <= kappa <= n_chan:
        raise ConfigurationError(f"kappa must be between 1 and {n_chan}, got {kappa}")
    if lambda_ < 0:
        raise ConfigurationError(f"lambda must be non-negative, got {lambda_}")

    loading = (lambda_ / 100.0) * np.trace(covariance) / n_chan
    loaded = covariance + loading * np.eye(n_chan)

    eigvals, eigvecs = linalg.eigh(loaded)
    order = np.argsort(eigvals)[::-1][:kappa]
    eigvals, eigvecs = eigvals[order], eigvecs[:, order]

    if not np.all(np.isfinite(eigvals)) or np.any(eigvals <= 0):
        raise NumericalError(
            f"Regularized covariance has non-positive eigenvalues in its top {kappa} "
            f"(smallest kept: {eigvals.min():.3e})"
        )

    return (eigvecs / eigvals) @ eigvecs.T


def _orient_filter(lf, basis, inv_cov, covariance, filters, prior):
    """Collapse vector filters to the maximum-power orientation.

    Returns the scalar filter (1, n_chan) and the unit dipole direction.
    """
    source_power = filters @ covariance @ filters.T
    _, eigvecs = linalg.eigh(source_power)
    eta = eigvecs[:, -1]

    direction = basis @ eta
    if prior is not None and np.linalg.norm(prior) > 0:
        if direction @ prior < 0:
            eta = -eta
    elif direction[np.argmax(np.abs(direction))] < 0:
        eta = -eta
    direction = basis @ eta
    direction = direction / np.linalg.norm(direction)

    gain = lf @ eta
    inv_gain = inv_cov @ gain
    denom = gain @ inv_gain
    if not denom > 0:
        raise NumericalError("Oriented leadfield has no power in the retained covariance subspace")
    return (inv_gain / denom)[np.newaxis], direction


def _unit_noise_gain(filters: np.ndarray, noise_covariance: Optional[np.ndarray]) -> np.ndarray:
    if noise_covariance is None:
        noise_power = np.sum(filters ** 2, axis=1)
    else:
        noise_power = np.einsum("ij,jk,ik->i", filters, noise_covariance, filters)
    if not np.all(noise_power > 0):
        raise NumericalError("Filter has non-positive noise power; cannot apply unit-noise-gain")
    return filters / np.sqrt(noise_power)[:, np.newaxis]


def compute_filters(
    leadfield: Leadfield,
    covariance: CovarianceMatrix,
    kappa: int,
    lambda_: float = DEFAULT_LAMBDA,
    fixed_orientation: bool = True,
    weight_norm: Optional[str] = "unit-noise-gain",
    noise_covariance: Optional[np.ndarray] = None,
    orientation_priors: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Compute LCMV spatial filters for every grid point.

    Args:
        leadfield: Reduced leadfield of the grid.
        covariance: Trial-averaged sensor covariance in the leadfield's
            channel order.
        kappa: Number of covariance eigencomponents used in the inverse.
        lambda_: Diagonal loading in percent of the mean eigenvalue.
        fixed_orientation: Collapse each point to one scalar filter along its
            maximum-power orientation.
        weight_norm: "unit-noise-gain" or None.
        noise_covariance: Channel noise covariance for the weight
            normalisation. Identity when None.
        orientation_priors: Per-point directions (n_points, 3) used only to
            fix the sign of the selected orientation.

    Returns:
        Tuple of (filters (n_points, n_orient, n_channels), unit orientations
        (n_points, 3) or None for vector filters).
    """
    if tuple(leadfield.labels) != tuple(covariance.labels):
        raise ConfigurationError("Leadfield and covariance channel orders differ")
    if leadfield.kappa is not None and leadfield.kappa != kappa:
        raise ConfigurationError(
            f"Leadfield was built for kappa={leadfield.kappa} but kappa={kappa} was given"
        )
    if weight_norm not in WEIGHT_NORMS:
        raise ConfigurationError(f"Unsupported weight normalisation: {weight_norm}")

    n_chan = len(covariance.labels)
    if noise_covariance is not None:
        noise_covariance = np.asarray(noise_covariance, dtype=float)
        if noise_covariance.shape != (n_chan, n_chan):
            raise ConfigurationError(
                f"Noise covariance has shape {noise_covariance.shape}, expected ({n_chan}, {n_chan})"
            )
    if orientation_priors is not None and orientation_priors.shape != (leadfield.n_points, 3):
        raise ConfigurationError(
            f"Orientation priors {orientation_priors.shape} do not match "
            f"{leadfield.n_points} grid points"
        )

    data_cov = covariance.data
    inv_cov = regularized_inverse(data_cov, kappa, lambda_)

    n_orient = 1 if fixed_orientation else leadfield.rank
    filters = np.empty((leadfield.n_points, n_orient, n_chan))
    orientations = np.empty((leadfield.n_points, 3)) if fixed_orientation else None

    for idx in range(leadfield.n_points):
        lf = leadfield.matrices[idx]
        inv_lf = inv_cov @ lf
        w = linalg.pinv(lf.T @ inv_lf) @ inv_lf.T

        if fixed_orientation:
            prior = None if orientation_priors is None else orientation_priors[idx]
            w, orientations[idx] = _orient_filter(
                lf, leadfield.bases[idx], inv_cov, data_cov, w, prior
            )

        if weight_norm == "unit-noise-gain":
            try:
                w = _unit_noise_gain(w, noise_covariance)
            except NumericalError as e:
                raise NumericalError(f"Grid point {idx}: {e}") from e

        filters[idx] = w

    logger.info(
        f"Computed {'scalar' if fixed_orientation else 'vector'} LCMV filters for "
        f"{leadfield.n_points} points (kappa={kappa}, lambda={lambda_}%, weight_norm={weight_norm})"
    )
    return filters, orientations


def apply_filters(filters: np.ndarray, data: np.ndarray) -> np.ndarray:
    """Project sensor data through the filters.

    Args:
        filters: Array (n_points, n_orient, n_channels).
        data: Array (n_channels, n_times) or (n_trials, n_channels, n_times).

    Returns:
        Source timecourses (n_points, n_orient, n_times), with a leading trial
        axis for 3-D input.
    """
    if data.shape[-2] != filters.shape[-1]:
        raise ConfigurationError(
            f"Data has {data.shape[-2]} channels but filters expect {filters.shape[-1]}"
        )
    if data.ndim == 2:
        return np.einsum("poc,ct->pot", filters, data)
    return np.einsum("poc,nct->npot", filters, data)


def source_power(filters: np.ndarray, covariance: np.ndarray) -> np.ndarray:
    """Per-point power trace(W C W^T)."""
    return np.einsum("poc,cd,pod->p", filters, covariance, filters)


def lcmv(
    leadfield: Leadfield,
    conditioned: ConditionedData,
    kappa: int,
    lambda_: float = DEFAULT_LAMBDA,
    fixed_orientation: bool = True,
    weight_norm: Optional[str] = "unit-noise-gain",
    noise_covariance: Optional[np.ndarray] = None,
    orientation_priors: Optional[np.ndarray] = None,
) -> SourceEstimate:
    """Beamform the conditioned data onto the grid.

    Returns:
        SourceEstimate with the filters, their power and the time-locked
        average projected to source space.
    """
    covariance = conditioned.average_covariance
    filters, orientations = compute_filters(
        leadfield,
        covariance,
        kappa,
        lambda_=lambda_,
        fixed_orientation=fixed_orientation,
        weight_norm=weight_norm,
        noise_covariance=noise_covariance,
        orientation_priors=orientation_priors,
    )

    return SourceEstimate(
        positions=leadfield.positions,
        filters=filters,
        orientations=orientations,
        power=source_power(filters, covariance.data),
        timecourse=apply_filters(filters, conditioned.average),
        labels=covariance.labels,
        kappa=kappa,
        lambda_=lambda_,
        weight_norm=weight_norm,
        coordsys=leadfield.coordsys,
    )
