"""Tests for parcel timecourse extraction."""

import numpy as np
import pytest

from megparcel.source_reconstruction.data import (
    ParcelAssignment,
    SensorData,
    SourceEstimate,
)
from megparcel.source_reconstruction.parcellation import (
    first_principal_component,
    parcellate,
)
from megparcel.utils.errors import ConfigurationError

N_CHAN = 6
N_TIMES = 300


def _estimate(filters, positions):
    return SourceEstimate(
        positions=positions,
        filters=filters,
        orientations=None,
        power=np.ones(len(positions)),
        timecourse=np.zeros((len(positions), filters.shape[1], N_TIMES)),
        labels=tuple(f"MEG{i}" for i in range(N_CHAN)),
        kappa=3,
        lambda_=5.0,
        weight_norm="unit-noise-gain",
        coordsys="mni",
    )


@pytest.fixture
def setup(rng):
    positions = rng.normal(size=(5, 3))
    filters = rng.normal(size=(5, 1, N_CHAN))
    estimate = _estimate(filters, positions)
    assignment = ParcelAssignment(
        labels=np.array([3, 0, 3, 1, 1]),
        label_names={1: "A", 3: "C"},
        positions=positions,
    )
    trials = SensorData(
        data=rng.normal(size=(4, N_CHAN, N_TIMES)),
        sfreq=100.0,
        labels=estimate.labels,
    )
    return trials, estimate, assignment


def test_first_component_follows_shared_signal(rng):
    signal = np.sin(np.linspace(0, 20, N_TIMES))
    weights = np.array([1.0, 2.0, 0.5, 1.5])
    rows = np.outer(weights, signal) + 0.01 * rng.standard_normal((4, N_TIMES))

    component = first_principal_component(rows)

    assert np.corrcoef(component, signal)[0, 1] > 0.99
    assert component.std() == pytest.approx(np.average(rows.std(axis=1), weights=weights), rel=0.02)


def test_first_component_sign_follows_mean(rng):
    signal = np.sin(np.linspace(0, 20, N_TIMES))
    rows = -np.outer([1.0, 2.0, 0.5], signal) + 0.01 * rng.standard_normal((3, N_TIMES))
    component = first_principal_component(rows)
    assert np.corrcoef(component, -signal)[0, 1] > 0.99


def test_first_component_of_flat_rows_is_zero():
    np.testing.assert_array_equal(first_principal_component(np.ones((3, 10))), np.zeros(10))


def test_output_shape_and_sorted_parcels(setup):
    trials, estimate, assignment = setup
    parcels = parcellate(trials, estimate, assignment)

    assert parcels.data.shape == (4, 2, N_TIMES)
    assert parcels.parcel_labels == (1, 3)
    assert parcels.parcel_names == ("A", "C")
    assert parcels.sfreq == 100.0


def test_mean_method(setup):
    trials, estimate, assignment = setup
    parcels = parcellate(trials, estimate, assignment, method="mean")

    sources = np.einsum("pc,nct->npt", estimate.filters[:, 0], trials.data)
    np.testing.assert_allclose(parcels.data[:, 0], sources[:, [3, 4]].mean(axis=1))
    np.testing.assert_allclose(parcels.data[:, 1], sources[:, [0, 2]].mean(axis=1))


def test_vector_filters_pool_orientations(rng):
    positions = rng.normal(size=(2, 3))
    estimate = _estimate(rng.normal(size=(2, 2, N_CHAN)), positions)
    assignment = ParcelAssignment(labels=np.array([1, 1]), label_names={1: "A"}, positions=positions)
    trials = SensorData(data=rng.normal(size=(2, N_CHAN, N_TIMES)), sfreq=100.0, labels=estimate.labels)

    parcels = parcellate(trials, estimate, assignment, method="mean")

    sources = np.einsum("poc,nct->npot", estimate.filters, trials.data)
    np.testing.assert_allclose(parcels.data[:, 0], sources.reshape(2, 4, N_TIMES).mean(axis=1))


def test_grid_mismatch_rejected(setup, rng):
    trials, estimate, assignment = setup
    other = ParcelAssignment(labels=assignment.labels, label_names={}, positions=rng.normal(size=(5, 3)))
    with pytest.raises(ConfigurationError):
        parcellate(trials, estimate, other)


def test_channel_mismatch_rejected(setup):
    trials, estimate, assignment = setup
    reordered = SensorData(data=trials.data, sfreq=trials.sfreq, labels=trials.labels[::-1])
    with pytest.raises(ConfigurationError):
        parcellate(reordered, estimate, assignment)


def test_unknown_method_rejected(setup):
    trials, estimate, assignment = setup
    with pytest.raises(ConfigurationError):
        parcellate(trials, estimate, assignment, method="max")


def test_all_background_rejected(setup):
    trials, estimate, _ = setup
    empty = ParcelAssignment(labels=np.zeros(5, dtype=int), label_names={}, positions=estimate.positions)
    with pytest.raises(ConfigurationError):
        parcellate(trials, estimate, empty)


def test_first_component_sign_follows_plain_mean_with_mixed_signs(rng):
    signal = np.sin(np.linspace(0, 20, N_TIMES))
    # One row is anti-phase; the plain (not sign-aligned) mean still follows +signal
    rows = np.outer([2.0, 1.0, -0.5], signal) + 0.01 * rng.standard_normal((3, N_TIMES))

    component = first_principal_component(rows)

    assert np.corrcoef(component, rows.mean(axis=0))[0, 1] > 0.99
    assert np.corrcoef(component, signal)[0, 1] > 0.99
