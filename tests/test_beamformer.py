"""Tests for the LCMV beamformer."""

import numpy as np
import pytest

from megparcel.source_reconstruction.beamformer import (
    apply_filters,
    compute_filters,
    lcmv,
    regularized_inverse,
)
from megparcel.source_reconstruction.conditioning import condition
from megparcel.source_reconstruction.data import (
    CovarianceMatrix,
    SensorData,
    SensorGeometry,
    SourceModel,
)
from megparcel.source_reconstruction.leadfield import build_leadfield, compute_dipole_field
from megparcel.utils.errors import ConfigurationError

from conftest import simulate_trials


@pytest.fixture
def four_sensors():
    """Four radial magnetometers on a 12 cm sphere, off the coordinate axes."""
    directions = np.array([
        [0.5, 0.5, np.sqrt(0.5)],
        [-0.5, 0.5, np.sqrt(0.5)],
        [0.5, -0.5, np.sqrt(0.5)],
        [-0.5, -0.5, np.sqrt(0.5)],
    ])
    return SensorGeometry(
        labels=["MEG1", "MEG2", "MEG3", "MEG4"],
        coil_positions=0.12 * directions,
        coil_orientations=directions,
    )


def test_single_dipole_reconstruction_with_four_sensors(sphere_head, four_sensors, rng):
    position = np.array([0.0, 0.0, 0.05])
    moment = np.array([1.0, 0.0, 0.0])
    source = SourceModel(positions=position[np.newaxis], orientations=moment[np.newaxis])

    sfreq, n_times = 200.0, 2000
    t = np.arange(n_times) / sfreq
    waveform = np.sin(2 * np.pi * 10 * t) * (1 + 0.5 * np.sin(2 * np.pi * 0.5 * t))
    gain = compute_dipole_field(sphere_head, four_sensors, position) @ moment
    clean = np.outer(gain, waveform)
    raw = clean + 0.05 * clean.std() * rng.standard_normal(clean.shape)

    data = SensorData(data=raw, sfreq=sfreq, labels=four_sensors.labels, geometry=four_sensors)
    conditioned = condition(data, 1.0, 40.0)
    leadfield = build_leadfield(sphere_head, source, four_sensors, rank=2, kappa=4)

    estimate = lcmv(leadfield, conditioned, kappa=4, orientation_priors=source.orientations)

    reconstructed = estimate.filters[0, 0] @ raw
    assert np.corrcoef(reconstructed, waveform)[0, 1] > 0.99
    assert estimate.orientations[0] @ moment > 0.99


def test_unit_noise_gain_filters_have_unit_norm(sphere_head, helmet, grid):
    data = simulate_trials(helmet, sphere_head, [np.array([0.02, 0.0, 0.05])], [np.array([0.0, 1e-8, 0.0])])
    conditioned = condition(SensorData(data=data, sfreq=200.0, labels=helmet.labels), 1.0, 40.0)
    leadfield = build_leadfield(sphere_head, grid, helmet)

    filters, orientations = compute_filters(leadfield, conditioned.average_covariance, kappa=10)

    assert filters.shape == (grid.n_points, 1, helmet.n_channels)
    np.testing.assert_allclose(np.linalg.norm(filters, axis=2), 1.0)
    np.testing.assert_allclose(np.linalg.norm(orientations, axis=1), 1.0)


def test_unit_noise_gain_with_noise_covariance(sphere_head, helmet, grid, rng):
    data = simulate_trials(helmet, sphere_head, [np.array([0.02, 0.0, 0.05])], [np.array([0.0, 1e-8, 0.0])])
    conditioned = condition(SensorData(data=data, sfreq=200.0, labels=helmet.labels), 1.0, 40.0)
    leadfield = build_leadfield(sphere_head, grid, helmet)
    mixing = rng.normal(size=(helmet.n_channels, helmet.n_channels))
    noise_cov = mixing @ mixing.T / helmet.n_channels + np.eye(helmet.n_channels)

    filters, _ = compute_filters(
        leadfield, conditioned.average_covariance, kappa=10, noise_covariance=noise_cov
    )

    noise_gain = np.einsum("poc,cd,pod->po", filters, noise_cov, filters)
    np.testing.assert_allclose(noise_gain, 1.0)


def test_vector_filters_keep_every_orientation(sphere_head, helmet, grid):
    data = simulate_trials(helmet, sphere_head, [np.array([0.02, 0.0, 0.05])], [np.array([0.0, 1e-8, 0.0])])
    conditioned = condition(SensorData(data=data, sfreq=200.0, labels=helmet.labels), 1.0, 40.0)
    leadfield = build_leadfield(sphere_head, grid, helmet, rank=2)

    estimate = lcmv(leadfield, conditioned, kappa=10, fixed_orientation=False)

    assert estimate.filters.shape == (grid.n_points, 2, helmet.n_channels)
    assert estimate.orientations is None
    assert estimate.timecourse.shape == (grid.n_points, 2, conditioned.average.shape[-1])
    np.testing.assert_allclose(np.linalg.norm(estimate.filters, axis=2), 1.0)
    assert np.all(estimate.power > 0)


def test_power_peaks_near_the_active_source(sphere_head, helmet, grid):
    active = np.array([0.01, 0.01, 0.05])
    data = simulate_trials(helmet, sphere_head, [active], [np.array([0.0, 1e-8, 0.0])], noise=0.2)
    conditioned = condition(SensorData(data=data, sfreq=200.0, labels=helmet.labels), 1.0, 40.0)
    leadfield = build_leadfield(sphere_head, grid, helmet)

    estimate = lcmv(leadfield, conditioned, kappa=10)

    peak = grid.positions[np.argmax(estimate.power)]
    assert np.linalg.norm(peak - active) < 0.025


def test_regularized_inverse_kappa_bounds(rng):
    mixing = rng.normal(size=(5, 5))
    covariance = mixing @ mixing.T
    with pytest.raises(ConfigurationError):
        regularized_inverse(covariance, 0)
    with pytest.raises(ConfigurationError):
        regularized_inverse(covariance, 6)


def test_full_rank_unloaded_inverse_is_exact(rng):
    mixing = rng.normal(size=(5, 5))
    covariance = mixing @ mixing.T + np.eye(5)
    np.testing.assert_allclose(
        regularized_inverse(covariance, 5, lambda_=0.0), np.linalg.inv(covariance), atol=1e-10
    )


def test_kappa_must_match_leadfield(sphere_head, helmet, grid):
    leadfield = build_leadfield(sphere_head, grid, helmet, kappa=8)
    covariance = CovarianceMatrix(data=np.eye(helmet.n_channels), labels=helmet.labels)
    with pytest.raises(ConfigurationError, match="kappa"):
        compute_filters(leadfield, covariance, kappa=9)


def test_channel_order_must_match(sphere_head, helmet, grid):
    leadfield = build_leadfield(sphere_head, grid, helmet)
    covariance = CovarianceMatrix(data=np.eye(helmet.n_channels), labels=helmet.labels[::-1])
    with pytest.raises(ConfigurationError):
        compute_filters(leadfield, covariance, kappa=5)


def test_apply_filters_shapes(rng):
    filters = rng.normal(size=(7, 2, 4))
    assert apply_filters(filters, rng.normal(size=(4, 50))).shape == (7, 2, 50)
    assert apply_filters(filters, rng.normal(size=(3, 4, 50))).shape == (3, 7, 2, 50)
    with pytest.raises(ConfigurationError):
        apply_filters(filters, rng.normal(size=(5, 50)))


def test_fixed_orientation_takes_the_maximum_power_direction(sphere_head, helmet, grid):
    active = np.array([0.01, 0.01, 0.05])
    tangential = np.array([1.0, -1.0, 0.0]) / np.sqrt(2)
    data = simulate_trials(helmet, sphere_head, [active], [1e-8 * tangential])
    conditioned = condition(SensorData(data=data, sfreq=200.0, labels=helmet.labels), 1.0, 40.0)
    leadfield = build_leadfield(sphere_head, grid, helmet)

    estimate = lcmv(leadfield, conditioned, kappa=10)

    point = np.argmin(np.linalg.norm(grid.positions - active, axis=1))
    assert abs(estimate.orientations[point] @ tangential) > 0.95
