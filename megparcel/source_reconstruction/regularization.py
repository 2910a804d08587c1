"""Selection of the regularization rank (kappa) from the covariance spectrum.

The singular values of a sensor covariance fall off through a high-variance
signal subspace and then flatten into a noise floor. The boundary shows up as
an outlying drop in log10 singular values; kappa is the number of singular
values above that drop.
"""

import logging
from typing import Dict

import numpy as np

from megparcel.source_reconstruction.data import CovarianceMatrix
from megparcel.utils.errors import NumericalError

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 5.0


def _log_spectrum_gaps(covariance: CovarianceMatrix) -> Dict[str, np.ndarray]:
    data = covariance.data
    if not np.all(np.isfinite(data)):
        raise NumericalError("Covariance contains non-finite values")

    singular_values = np.linalg.svd(data, compute_uv=False)
    if singular_values[0] <= 0:
        raise NumericalError("Covariance is identically zero")

    # Exact rank deficiency becomes a finite, large drop
    floored = np.maximum(singular_values, singular_values[0] * np.finfo(float).eps)
    drops = -np.diff(np.log10(floored))

    return {"singular_values": singular_values, "drops": drops}


def eigenspectrum_report(covariance: CovarianceMatrix) -> Dict[str, np.ndarray]:
    """Singular values, log10 drops and their z-scores, for logging and QC."""
    report = _log_spectrum_gaps(covariance)
    drops = report["drops"]
    std = drops.std()
    report["zscores"] = (drops - drops.mean()) / std if std > 0 else np.zeros_like(drops)
    return report


def select_kappa(covariance: CovarianceMatrix, threshold: float = DEFAULT_THRESHOLD) -> int:
    """Select kappa from the average covariance.

    Args:
        covariance: Trial-averaged sensor covariance.
        threshold: z-score a log10 drop must strictly exceed.

    Returns:
        kappa, the number of singular values above the first outlying drop
        (scanning from the largest singular value downward).

    Raises:
        NumericalError: If the spectrum has no drop above the threshold,
            including a flat spectrum where the drops cannot be standardized.
    """
    drops = _log_spectrum_gaps(covariance)["drops"]
    if drops.size < 2:
        raise NumericalError(f"Cannot select kappa from a {drops.size + 1}-channel covariance")

    std = drops.std()
    scale = max(1.0, float(np.abs(drops).max()))
    if std <= 1e-9 * scale:
        raise NumericalError("Covariance eigenspectrum is flat; no signal/noise boundary")

    zscores = (drops - drops.mean()) / std
    above = np.flatnonzero(zscores > threshold)
    if above.size == 0:
        raise NumericalError(
            f"No eigenspectrum drop exceeds z={threshold} (max z={zscores.max():.2f}); "
            "set source_reconstruction.kappa explicitly"
        )

    kappa = int(above[0]) + 1
    logger.info(
        f"Selected kappa={kappa} of {covariance.data.shape[0]} "
        f"(drop z={zscores[above[0]]:.2f})"
    )
    return kappa
