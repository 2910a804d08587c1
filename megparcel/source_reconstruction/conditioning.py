"""Signal conditioning: band-pass filtering and covariance estimation.

Produces two separately named covariance products from the same demeaned
data: the trial-averaged covariance used to build the beamformer, and the
trial-resolved covariance kept for later reuse.
"""

import logging

import mne
import numpy as np

from megparcel.source_reconstruction.data import (
    ConditionedData,
    CovarianceMatrix,
    SensorData,
)
from megparcel.utils.errors import ConfigurationError, NumericalError

logger = logging.getLogger(__name__)

DEFAULT_BAND = (1.0, 80.0)

# Zero-phase Butterworth: order 4, run forward and backward
IIR_PARAMS = dict(order=4, ftype="butter", output="sos")


def check_band(l_freq: float, h_freq: float, sfreq: float) -> None:
    """Raise ConfigurationError unless 0 < l_freq < h_freq < Nyquist."""
    nyquist = sfreq / 2.0
    if not 0 < l_freq < h_freq < nyquist:
        raise ConfigurationError(
            f"Invalid band-pass [{l_freq}, {h_freq}] Hz for sfreq={sfreq} Hz "
            f"(need 0 < low < high < {nyquist})"
        )


def bandpass_filter(
    sensor_data: SensorData,
    l_freq: float = DEFAULT_BAND[0],
    h_freq: float = DEFAULT_BAND[1],
) -> SensorData:
    """Zero-phase band-pass filter every trial.

    Args:
        sensor_data: Raw trial-segmented data.
        l_freq: Lower passband edge in Hz.
        h_freq: Upper passband edge in Hz.

    Returns:
        New SensorData with filtered trials.
    """
    check_band(l_freq, h_freq, sensor_data.sfreq)
    if not np.all(np.isfinite(sensor_data.data)):
        raise NumericalError("Sensor data contains non-finite values")

    filtered = mne.filter.filter_data(
        np.array(sensor_data.data, dtype=np.float64),
        sensor_data.sfreq,
        l_freq,
        h_freq,
        method="iir",
        iir_params=IIR_PARAMS,
        phase="zero",
        verbose=False,
    )
    logger.debug(f"Band-pass filtered {sensor_data.n_trials} trials to [{l_freq}, {h_freq}] Hz")

    return SensorData(
        data=filtered,
        sfreq=sensor_data.sfreq,
        labels=sensor_data.labels,
        geometry=sensor_data.geometry,
    )


def compute_covariance(data: np.ndarray) -> np.ndarray:
    """Per-trial covariance of demeaned data.

    Each trial is demeaned over its whole window (no separate baseline).

    Args:
        data: Array of shape (n_trials, n_channels, n_times).

    Returns:
        Array of shape (n_trials, n_channels, n_channels).
    """
    n_times = data.shape[-1]
    if n_times < 2:
        raise NumericalError(f"Need at least 2 samples per trial for a covariance, got {n_times}")

    demeaned = data - data.mean(axis=-1, keepdims=True)
    return np.matmul(demeaned, demeaned.swapaxes(-1, -2)) / (n_times - 1)


def condition(
    sensor_data: SensorData,
    l_freq: float = DEFAULT_BAND[0],
    h_freq: float = DEFAULT_BAND[1],
) -> ConditionedData:
    """Filter the data and compute the average and trial-resolved covariances.

    Args:
        sensor_data: Raw trial-segmented data.
        l_freq: Lower passband edge in Hz.
        h_freq: Upper passband edge in Hz.

    Returns:
        ConditionedData holding the filtered trials, the time-locked average,
        the trial-pooled covariance and the per-trial covariances.
    """
    filtered = bandpass_filter(sensor_data, l_freq, h_freq)

    trial_covariance = compute_covariance(filtered.data)
    trial_covariance.setflags(write=False)

    average_covariance = CovarianceMatrix(
        data=trial_covariance.mean(axis=0),
        labels=filtered.labels,
        n_samples=filtered.n_trials * filtered.n_times,
    )
    if not np.all(np.isfinite(average_covariance.data)):
        raise NumericalError("Average covariance contains non-finite values")

    average = filtered.data.mean(axis=0)
    average.setflags(write=False)

    logger.info(
        f"Conditioned {filtered.n_trials} trials x {len(filtered.labels)} channels "
        f"x {filtered.n_times} samples"
    )
    return ConditionedData(
        filtered=filtered,
        average=average,
        average_covariance=average_covariance,
        trial_covariance=trial_covariance,
        l_freq=l_freq,
        h_freq=h_freq,
    )
