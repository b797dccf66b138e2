"""
Target Registration Error (TRE)
-------------------------------
Leave-one-out validation of a chromatic correction: each calibration point is
withheld in turn, a correction is rebuilt from the rest, and the prediction
error at the withheld point is measured in physical units.

Rebuilds run on a bounded thread pool; results are stored by the withheld
point's index, so the aggregate does not depend on completion order.
"""

import logging
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .colocalization_data import CalibrationPoint
from .correction_core import CorrectionBuilder, UnableToCorrectError, UnderdeterminedFitError

logger = logging.getLogger(__name__)

DEFAULT_POLL_TIMEOUT_S = 0.05

# per-point status codes
TRE_OK = 0
TRE_NO_COVERAGE = 1
TRE_FIT_FAILED = 2


@dataclass
class TREResult:
    """Aggregate and per-point leave-one-out errors."""

    tre: float
    tre_xy: float
    point_tre: np.ndarray
    point_tre_xy: np.ndarray
    status: np.ndarray

    @property
    def success(self) -> np.ndarray:
        return self.status == TRE_OK

    @property
    def n_points(self) -> int:
        return int(self.status.size)

    @property
    def n_no_coverage(self) -> int:
        return int(np.count_nonzero(self.status == TRE_NO_COVERAGE))

    @property
    def n_fit_failures(self) -> int:
        return int(np.count_nonzero(self.status == TRE_FIT_FAILED))

    @property
    def n_excluded(self) -> int:
        return self.n_points - int(np.count_nonzero(self.success))


def _leave_one_out(points, remove_index, builder, scale):
    """Returns (status, tre, tre_xy) for the point at `remove_index`."""
    others = list(points[:remove_index]) + list(points[remove_index + 1 :])
    if len(others) < builder.n_neighbors + 1:
        logger.debug(
            "TRE point %d: %d remaining points are too few for %d neighbours",
            remove_index, len(others), builder.n_neighbors,
        )
        return TRE_FIT_FAILED, np.nan, np.nan
    try:
        correction = builder.build(others)
    except UnderdeterminedFitError as e:
        logger.debug("TRE point %d: rebuild failed (%s)", remove_index, e)
        return TRE_FIT_FAILED, np.nan, np.nan

    withheld = points[remove_index]
    pos = withheld.position(builder.reference_channel)
    try:
        predicted = correction.correct_position(pos[0], pos[1])
    except UnableToCorrectError:
        return TRE_NO_COVERAGE, np.nan, np.nan

    actual = withheld.vector_difference(builder.reference_channel, builder.correction_channel)
    residual = (actual - predicted) * scale
    return TRE_OK, float(np.linalg.norm(residual)), float(np.hypot(residual[0], residual[1]))


def determine_tre(
    points: Sequence[CalibrationPoint],
    builder: CorrectionBuilder,
    scale: np.ndarray,
    max_workers: int = 1,
    poll_timeout: float = DEFAULT_POLL_TIMEOUT_S,
) -> TREResult:
    """
    Leave-one-out TRE over all calibration points.

    Parameters
    ----------
    points : sequence of CalibrationPoint
        Calibration points; never modified.
    builder : CorrectionBuilder
        Builder carrying the channels and neighbour count to validate.
    scale : array of 3 floats
        Pixel-to-physical conversion applied to residuals.
    max_workers : int
        Size of the worker pool.
    poll_timeout : float
        Seconds to wait for a free pool slot before checking again.

    Returns
    -------
    TREResult
        Mean errors over successful points, plus per-point values and the
        count of excluded points.
    """
    if max_workers < 1:
        raise ValueError(f"max_workers must be at least 1, got {max_workers}.")

    points = list(points)
    scale = np.asarray(scale, dtype=float)
    n = len(points)

    point_tre = np.full(n, np.nan)
    point_tre_xy = np.full(n, np.nan)
    status = np.full(n, TRE_FIT_FAILED, dtype=int)

    def _collect(done, futures):
        for fut in done:
            idx = futures.pop(fut)
            status[idx], point_tre[idx], point_tre_xy[idx] = fut.result()

    t0 = time.monotonic()
    futures = {}
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        for remove_index in range(n):
            if remove_index % 10 == 0:
                logger.debug("calculating TRE: point %d of %d", remove_index + 1, n)

            while len(futures) >= max_workers:
                done, _ = wait(futures, timeout=poll_timeout, return_when=FIRST_COMPLETED)
                _collect(done, futures)

            fut = executor.submit(_leave_one_out, points, remove_index, builder, scale)
            futures[fut] = remove_index

        while futures:
            done, _ = wait(futures, return_when=FIRST_COMPLETED)
            _collect(done, futures)

    ok = status == TRE_OK
    if np.any(ok):
        tre = float(np.mean(point_tre[ok]))
        tre_xy = float(np.mean(point_tre_xy[ok]))
    else:
        tre = tre_xy = np.nan

    result = TREResult(tre, tre_xy, point_tre, point_tre_xy, status)
    logger.info("TRE: %s", tre)
    logger.info("x-y TRE: %s", tre_xy)
    if result.n_excluded:
        logger.warning(
            "TRE excluded %d of %d points (%d without coverage, %d failed fits)",
            result.n_excluded, n, result.n_no_coverage, result.n_fit_failures,
        )
    logger.debug("TRE computed in %.2f s with %d workers", time.monotonic() - t0, max_workers)
    return result
