"""
In-situ Aberration Correction
Corrects residual, sample-induced aberration using a second channel imaged on
the same objects: per axis, the measured separation is regressed (through the
origin) on the second-channel separation, and the scaled second-channel
separation is then subtracted.
"""

import logging
from typing import List, Sequence, Tuple

import numpy as np
from astropy.stats import mad_std

from .colocalization_data import CalibrationPoint

logger = logging.getLogger(__name__)

BISQUARE_TUNING = 4.685


def bisquare_linear_fit(
    x: np.ndarray,
    y: np.ndarray,
    intercept: bool = False,
    max_iters: int = 100,
    tol: float = 1e-10,
) -> np.ndarray:
    """
    Robust linear fit of y on x with Tukey bisquare weights.

    Returns [slope] or [slope, intercept].
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if intercept:
        A = np.column_stack([x, np.ones_like(x)])
    else:
        A = x[:, None]
    if len(x) < A.shape[1]:
        raise ValueError("Not enough points for a linear fit.")

    weights = np.ones(len(x))
    params = np.zeros(A.shape[1])
    for _ in range(max_iters):
        w_sqrt = np.sqrt(weights)
        new_params, _, _, _ = np.linalg.lstsq(A * w_sqrt[:, None], y * w_sqrt, rcond=None)
        converged = np.all(np.abs(new_params - params) <= tol * (1.0 + np.abs(new_params)))
        params = new_params

        residuals = y - A @ params
        scale = mad_std(residuals)
        if converged or scale == 0:
            break
        u = residuals / (BISQUARE_TUNING * scale)
        weights = np.where(np.abs(u) < 1.0, (1.0 - u**2) ** 2, 0.0)
        if np.count_nonzero(weights) < A.shape[1]:
            break
    return params


def _scaled_differences(points, reference_channel, channel, scale):
    return np.array([p.vector_difference(reference_channel, channel) * scale for p in points])


def determine_in_situ_slopes(
    points: Sequence[CalibrationPoint],
    reference_channel: int,
    second_channel: int,
    measurement_channel: int,
    scale: np.ndarray,
) -> np.ndarray:
    """Per-axis slope of the measurement separation against the second-channel separation."""
    corr_diffs = _scaled_differences(points, reference_channel, second_channel, scale)
    expt_diffs = _scaled_differences(points, reference_channel, measurement_channel, scale)
    slopes = np.array(
        [bisquare_linear_fit(corr_diffs[:, axis], expt_diffs[:, axis])[0] for axis in range(3)]
    )
    logger.info("in situ aberration slopes: %s", slopes)
    return slopes


def apply_in_situ_correction(
    points: Sequence[CalibrationPoint],
    slopes: np.ndarray,
    reference_channel: int,
    second_channel: int,
    measurement_channel: int,
    scale: np.ndarray,
) -> Tuple[List[np.ndarray], np.ndarray]:
    """
    Removes the aberration predicted from the second channel.

    Returns the corrected vector separations and their norms.
    """
    corr_diffs = _scaled_differences(points, reference_channel, second_channel, scale)
    expt_diffs = _scaled_differences(points, reference_channel, measurement_channel, scale)
    corrected = expt_diffs - corr_diffs * np.asarray(slopes, dtype=float)
    return list(corrected), np.linalg.norm(corrected, axis=1)
