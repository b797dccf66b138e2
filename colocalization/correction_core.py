"""
Chromatic Correction Core Logic
Locally weighted quadratic mapping between two imaging channels:
- One quadratic offset surface per calibration point, fit to its k nearest neighbours.
- Surfaces are blended with a smoothstep weight that vanishes at each surface's cutoff.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from astropy.table import Table
from scipy.linalg import solve_triangular

from .colocalization_data import CalibrationPoint

logger = logging.getLogger(__name__)

N_CORRECTION_PARAMS = 6


class UnableToCorrectError(Exception):
    """Raised when a position lies outside every local surface of a correction."""


class UnderdeterminedFitError(np.linalg.LinAlgError):
    """Raised when a local quadratic surface cannot be determined from its neighbours."""


def smoothstep_weight(t):
    """1 - 3t^2 + 2t^3 on [0, 1], zero beyond."""
    t = np.asarray(t, dtype=float)
    w = 1.0 - 3.0 * t**2 + 2.0 * t**3
    return np.where(t <= 1.0, w, 0.0)


class LocalQuadraticModel:
    """Quadratic in local offsets: basis [1, dx, dy, dx^2, dy^2, dx*dy]."""

    n_coeffs = N_CORRECTION_PARAMS

    def build_design_matrix(self, dx: np.ndarray, dy: np.ndarray) -> np.ndarray:
        dx = np.asarray(dx, dtype=float)
        dy = np.asarray(dy, dtype=float)
        A = np.empty((dx.size, self.n_coeffs))
        A[:, 0] = 1.0
        A[:, 1] = dx
        A[:, 2] = dy
        A[:, 3] = dx**2
        A[:, 4] = dy**2
        A[:, 5] = dx * dy
        return A

    def evaluate(self, coeffs: np.ndarray, dx: np.ndarray, dy: np.ndarray) -> np.ndarray:
        A = self.build_design_matrix(dx, dy)
        return A @ coeffs

    def solve(self, A: np.ndarray, targets: np.ndarray) -> np.ndarray:
        """
        Least-squares solution of A @ C = targets through a QR decomposition.
        `targets` may hold several right-hand sides as columns.
        """
        n_rows, n_cols = A.shape
        if not (np.all(np.isfinite(A)) and np.all(np.isfinite(targets))):
            raise UnderdeterminedFitError("Neighbour positions or offsets are not finite.")
        if n_rows < n_cols:
            raise UnderdeterminedFitError(
                f"Only {n_rows} neighbours for {n_cols} correction parameters."
            )
        Q, R = np.linalg.qr(A, mode="reduced")
        diag = np.abs(np.diag(R))
        tol = max(n_rows, n_cols) * np.finfo(float).eps * (diag.max() if diag.size else 0.0)
        if diag.size == 0 or np.any(diag <= tol):
            raise UnderdeterminedFitError(
                "Design matrix is singular; neighbours do not span a quadratic surface."
            )
        return solve_triangular(R, Q.T @ targets, lower=False)


def nearest_neighbors(distances: np.ndarray, k: int) -> Tuple[np.ndarray, float]:
    """
    Selects the k smallest distances with a bounded max-heap of k + 1 entries.

    Entries are ordered by (distance, index), so equal distances keep the lower
    index. Returns the indices of the k nearest entries and the cutoff radius,
    the midpoint between the k-th and (k+1)-th nearest distances.
    """
    n = len(distances)
    if n < k + 1:
        raise ValueError(f"Need at least {k + 1} points to select {k} neighbours, got {n}.")

    # heapq is a min-heap; negate keys to keep the largest at the top
    heap = [(-float(distances[j]), -j) for j in range(k + 1)]
    heapq.heapify(heap)
    for j in range(k + 1, n):
        d = float(distances[j])
        if d < -heap[0][0]:
            heapq.heapreplace(heap, (-d, -j))

    first_excluded = -heapq.heappop(heap)[0]
    last_included = -heap[0][0]
    cutoff = (first_excluded + last_included) / 2.0

    indices = np.array(sorted(-idx for _, idx in heap), dtype=int)
    return indices, cutoff


@dataclass(frozen=True)
class LocalSurface:
    center: np.ndarray
    cutoff: float
    coeffs_x: np.ndarray
    coeffs_y: np.ndarray
    coeffs_z: np.ndarray


def _readonly(arr, dtype=float):
    out = np.array(arr, dtype=dtype)
    out.setflags(write=False)
    return out


class Correction:
    """
    A queryable set of local correction surfaces.

    Row i of each coefficient matrix, of `distance_cutoffs` and of `positions`
    describes the surface centred on calibration point i (in the
    reference channel).
    """

    def __init__(
        self,
        correction_x: np.ndarray,
        correction_y: np.ndarray,
        correction_z: np.ndarray,
        distance_cutoffs: np.ndarray,
        positions: np.ndarray,
        reference_channel: int,
        correction_channel: int,
        tre: Optional[float] = None,
        tre_xy: Optional[float] = None,
    ):
        self.correction_x = _readonly(correction_x)
        self.correction_y = _readonly(correction_y)
        self.correction_z = _readonly(correction_z)
        self.distance_cutoffs = _readonly(distance_cutoffs)
        self.positions = _readonly(positions)

        n = self.distance_cutoffs.shape[0]
        for name, mat in (
            ("correction_x", self.correction_x),
            ("correction_y", self.correction_y),
            ("correction_z", self.correction_z),
        ):
            if mat.shape != (n, N_CORRECTION_PARAMS):
                raise ValueError(
                    f"{name} has shape {mat.shape}, expected ({n}, {N_CORRECTION_PARAMS})."
                )
        if self.positions.shape != (n, 3):
            raise ValueError(f"positions has shape {self.positions.shape}, expected ({n}, 3).")

        self.reference_channel = int(reference_channel)
        self.correction_channel = int(correction_channel)
        self.tre = tre
        self.tre_xy = tre_xy
        self._model = LocalQuadraticModel()

    def __len__(self):
        return self.distance_cutoffs.shape[0]

    @property
    def n_points(self) -> int:
        return len(self)

    def surface(self, i: int) -> LocalSurface:
        return LocalSurface(
            center=self.positions[i],
            cutoff=float(self.distance_cutoffs[i]),
            coeffs_x=self.correction_x[i],
            coeffs_y=self.correction_y[i],
            coeffs_z=self.correction_z[i],
        )

    @property
    def surfaces(self) -> List[LocalSurface]:
        return [self.surface(i) for i in range(len(self))]

    def correct_position(self, x: float, y: float) -> np.ndarray:
        """
        Estimated (dx, dy, dz) offset of the correction channel relative to the
        reference channel at reference-channel position (x, y).

        Raises UnableToCorrectError if (x, y) is outside every surface cutoff.
        """
        dx = x - self.positions[:, 0]
        dy = y - self.positions[:, 1]
        dist_ratio = np.hypot(dx, dy) / self.distance_cutoffs
        weights = smoothstep_weight(dist_ratio)

        active = weights > 0
        if not np.any(active):
            raise UnableToCorrectError(
                f"Incomplete coverage in correction dataset at (x,y) = ({x}, {y})."
            )

        w = weights[active]
        A = self._model.build_design_matrix(dx[active], dy[active])
        x_corr = np.sum(np.einsum("ij,ij->i", A, self.correction_x[active]) * w)
        y_corr = np.sum(np.einsum("ij,ij->i", A, self.correction_y[active]) * w)
        z_corr = np.sum(np.einsum("ij,ij->i", A, self.correction_z[active]) * w)
        return np.array([x_corr, y_corr, z_corr]) / np.sum(w)

    def correct_positions(self, xy: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Batch version of correct_position; uncovered rows are NaN and False."""
        xy = np.atleast_2d(np.asarray(xy, dtype=float))
        offsets = np.full((xy.shape[0], 3), np.nan)
        ok = np.zeros(xy.shape[0], dtype=bool)
        for i, (x, y) in enumerate(xy[:, :2]):
            try:
                offsets[i] = self.correct_position(x, y)
                ok[i] = True
            except UnableToCorrectError:
                continue
        return offsets, ok

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def to_table(self) -> Table:
        table = Table()
        table["x_position"] = self.positions[:, 0]
        table["y_position"] = self.positions[:, 1]
        table["z_position"] = self.positions[:, 2]
        table["distance_cutoff"] = self.distance_cutoffs
        table["cx"] = self.correction_x
        table["cy"] = self.correction_y
        table["cz"] = self.correction_z
        table.meta["NPOINTS"] = len(self)
        table.meta["REFCHAN"] = self.reference_channel
        table.meta["CORRCHAN"] = self.correction_channel
        # FITS headers cannot hold NaN; an unset TRE is simply omitted
        if self.tre is not None:
            table.meta["TRE"] = float(self.tre)
        if self.tre_xy is not None:
            table.meta["TRE_XY"] = float(self.tre_xy)
        return table

    @classmethod
    def from_table(cls, table: Table) -> "Correction":
        meta = {str(k).upper(): v for k, v in table.meta.items()}
        for key in ("REFCHAN", "CORRCHAN"):
            if key not in meta:
                raise ValueError(f"Correction table is missing '{key}' metadata.")
        n_expected = meta.get("NPOINTS")
        if n_expected is not None and int(n_expected) != len(table):
            raise ValueError(
                f"Correction table declares {n_expected} points but holds {len(table)}."
            )

        def _scalar(key):
            value = meta.get(key)
            return None if value is None else float(value)

        positions = np.column_stack(
            [table["x_position"], table["y_position"], table["z_position"]]
        )
        return cls(
            np.asarray(table["cx"]),
            np.asarray(table["cy"]),
            np.asarray(table["cz"]),
            np.asarray(table["distance_cutoff"]),
            positions,
            reference_channel=int(meta["REFCHAN"]),
            correction_channel=int(meta["CORRCHAN"]),
            tre=_scalar("TRE"),
            tre_xy=_scalar("TRE_XY"),
        )

    def write(self, filename: str):
        """Writes the correction with astropy (format from the file extension)."""
        self.to_table().write(filename, overwrite=True)
        logger.debug("Correction with %d surfaces written to %s", len(self), filename)

    @classmethod
    def read(cls, filename: str) -> "Correction":
        return cls.from_table(Table.read(filename))


class CorrectionBuilder:
    """Fits one local quadratic surface per calibration point."""

    def __init__(self, reference_channel: int, correction_channel: int, n_neighbors: int):
        if reference_channel < 0 or correction_channel < 0:
            raise ValueError("Channel indices must be non-negative.")
        if reference_channel == correction_channel:
            raise ValueError("Reference and correction channels must differ.")
        if n_neighbors < N_CORRECTION_PARAMS:
            raise ValueError(
                f"n_neighbors must be at least {N_CORRECTION_PARAMS}, got {n_neighbors}."
            )
        self.reference_channel = reference_channel
        self.correction_channel = correction_channel
        self.n_neighbors = n_neighbors
        self.model = LocalQuadraticModel()

    def build(self, points: Sequence[CalibrationPoint]) -> Correction:
        n_points = len(points)
        k = self.n_neighbors
        if n_points < k + 1:
            raise ValueError(
                f"Need at least {k + 1} calibration points for {k} neighbours, got {n_points}."
            )

        ref_pos = np.array([p.position(self.reference_channel) for p in points])
        diffs = np.array(
            [p.vector_difference(self.reference_channel, self.correction_channel) for p in points]
        )

        correction_x = np.zeros((n_points, N_CORRECTION_PARAMS))
        correction_y = np.zeros((n_points, N_CORRECTION_PARAMS))
        correction_z = np.zeros((n_points, N_CORRECTION_PARAMS))
        distance_cutoffs = np.zeros(n_points)

        for i in range(n_points):
            distances = np.linalg.norm(ref_pos - ref_pos[i], axis=1)
            neighbors, cutoff = nearest_neighbors(distances, k)
            distance_cutoffs[i] = cutoff

            dx = ref_pos[neighbors, 0] - ref_pos[i, 0]
            dy = ref_pos[neighbors, 1] - ref_pos[i, 1]
            A = self.model.build_design_matrix(dx, dy)
            try:
                coeffs = self.model.solve(A, diffs[neighbors])
            except UnderdeterminedFitError as e:
                raise UnderdeterminedFitError(
                    f"Local fit around calibration point {i} (label {points[i].label}) failed: {e}"
                ) from e

            correction_x[i] = coeffs[:, 0]
            correction_y[i] = coeffs[:, 1]
            correction_z[i] = coeffs[:, 2]

        return Correction(
            correction_x,
            correction_y,
            correction_z,
            distance_cutoffs,
            ref_pos,
            self.reference_channel,
            self.correction_channel,
        )


# =============================================================================
# APPLYING A CORRECTION
# =============================================================================


@dataclass
class AppliedCorrection:
    """Per-object outcome of applying a correction (physical units)."""

    distances: np.ndarray
    vector_differences: np.ndarray
    uncorrected_distances: np.ndarray
    success: np.ndarray

    @property
    def n_failed(self) -> int:
        return int(np.count_nonzero(~self.success))


def apply_correction(
    correction: Correction,
    points: Sequence[CalibrationPoint],
    scale: np.ndarray,
    flip: bool = False,
) -> AppliedCorrection:
    """
    Corrects the reference-to-correction channel separation of every object.

    Objects without coverage get NaN distances and a False success entry.
    """
    ref = correction.reference_channel
    corr = correction.correction_channel
    n = len(points)
    scale = np.asarray(scale, dtype=float)

    raw = np.array([p.vector_difference(ref, corr) for p in points]).reshape(n, 3)
    uncorrected = np.linalg.norm(raw * scale, axis=1)

    vector_diffs = np.full((n, 3), np.nan)
    success = np.zeros(n, dtype=bool)
    for i, p in enumerate(points):
        pos = p.position(ref)
        try:
            offset = correction.correct_position(pos[0], pos[1])
        except UnableToCorrectError:
            continue
        if flip:
            offset = -offset
        vector_diffs[i] = (raw[i] - offset) * scale
        success[i] = True

    distances = np.linalg.norm(vector_diffs, axis=1)

    if n > 0:
        logger.info("mean separation uncorrected = %s", np.mean(uncorrected))
        logger.info(
            "mean separation components uncorrected = %s",
            np.mean(np.abs(raw), axis=0) * scale,
        )
    if np.any(success):
        logger.info("mean separation corrected = %s", np.mean(distances[success]))
    if np.any(~success):
        logger.warning("%d of %d objects could not be corrected", np.count_nonzero(~success), n)

    return AppliedCorrection(distances, vector_diffs, uncorrected, success)


def corrected_position(
    point: CalibrationPoint,
    correction: Correction,
    flip: bool = False,
    inverted_z: bool = False,
) -> np.ndarray:
    """Correction-channel position of `point` with the estimated offset removed."""
    pos = point.position(correction.reference_channel)
    offset = correction.correct_position(pos[0], pos[1])
    if flip:
        offset = -offset
    if inverted_z:
        offset = offset * np.array([1.0, 1.0, -1.0])
    return point.position(correction.correction_channel) - offset
