"""Reduction of grid-point timecourses to one timecourse per parcel.

Every trial is projected through the averaged-data filters, then the rows
(point x orientation) falling in each parcel are summarised by their first
principal component, or by their mean.
"""

import logging

import numpy as np

from megparcel.source_reconstruction.beamformer import apply_filters
from megparcel.source_reconstruction.data import (
    ParcelAssignment,
    ParcelTimeseries,
    SensorData,
    SourceEstimate,
)
from megparcel.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

METHODS = ("pca", "mean")


def first_principal_component(timeseries: np.ndarray) -> np.ndarray:
    """First principal component of a set of timecourses.

    The component is signed to correlate positively with the plain mean
    timecourse (falling back to a positive mean loading when the mean is
    flat) and scaled so its standard deviation is the loading-weighted mean
    of the constituent standard deviations.

    Args:
        timeseries: Array (n_rows, n_times), one row per timecourse.

    Returns:
        Array (n_times,).
    """
    timeseries = np.asarray(timeseries, dtype=float)
    demeaned = timeseries - timeseries.mean(axis=1, keepdims=True)

    u, s, vt = np.linalg.svd(demeaned, full_matrices=False)
    if s[0] == 0:
        return np.zeros(timeseries.shape[1])

    loadings = u[:, 0]
    component = vt[0] * s[0]

    mean_tc = demeaned.mean(axis=0)
    if mean_tc.std() > 1e-12 * s[0]:
        flip = component @ mean_tc < 0
    else:
        flip = loadings.sum() < 0
    if flip:
        component, loadings = -component, -loadings

    weights = np.abs(loadings)
    target_std = np.sum(weights * timeseries.std(axis=1)) / np.sum(weights)
    return component * (target_std / component.std())


def _reduce(rows: np.ndarray, method: str) -> np.ndarray:
    if method == "pca":
        return first_principal_component(rows)
    return rows.mean(axis=0)


def parcellate(
    trials: SensorData,
    estimate: SourceEstimate,
    assignment: ParcelAssignment,
    method: str = "pca",
) -> ParcelTimeseries:
    """Compute parcel timecourses for every trial.

    Args:
        trials: Filtered trials in the estimate's channel order.
        estimate: Source estimate whose filters are applied.
        assignment: Parcel label of each grid point of the estimate.
        method: "pca" or "mean".

    Returns:
        ParcelTimeseries (n_trials, n_parcels, n_times), parcels sorted by label.
    """
    if method not in METHODS:
        raise ConfigurationError(f"Unsupported parcellation method '{method}' (supported: {METHODS})")
    if tuple(trials.labels) != tuple(estimate.labels):
        raise ConfigurationError("Trial channel order differs from the filters")
    if (
        assignment.positions.shape != estimate.positions.shape
        or not np.allclose(assignment.positions, estimate.positions)
    ):
        raise ConfigurationError("Parcel assignment was made on a different source grid")

    parcels = assignment.parcel_labels()
    if not parcels:
        raise ConfigurationError("No grid point falls inside an atlas parcel")

    # Rows of the flattened filters are (point, orientation) pairs
    n_points, n_orient, n_chan = estimate.filters.shape
    flat_filters = estimate.filters.reshape(n_points * n_orient, 1, n_chan)
    row_labels = np.repeat(assignment.labels, n_orient)
    members = [np.flatnonzero(row_labels == label) for label in parcels]

    data = np.empty((trials.n_trials, len(parcels), trials.n_times))
    for trial_idx in range(trials.n_trials):
        sources = apply_filters(flat_filters, trials.data[trial_idx])[:, 0]
        for parcel_idx, rows in enumerate(members):
            data[trial_idx, parcel_idx] = _reduce(sources[rows], method)

    logger.info(
        f"Parcellated {trials.n_trials} trials into {len(parcels)} parcels ({method})"
    )
    return ParcelTimeseries(
        data=data,
        parcel_labels=tuple(parcels),
        parcel_names=tuple(assignment.label_names.get(p, f"parcel-{p}") for p in parcels),
        sfreq=trials.sfreq,
        method=method,
    )
