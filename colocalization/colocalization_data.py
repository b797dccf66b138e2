"""
Colocalization Catalog Handling
-------------------------------
Calibration point containers, position catalog I/O and the fit-quality checks
applied to spot fits before they are used for correction.

Catalog layout (one row per fitted object):
    label, image_id, x_c{n}, y_c{n}, z_c{n}            (required)
    amplitude_c{n}, r2_c{n}, fit_error_c{n}            (optional, per channel)
    max_level, fit_finished                            (optional)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from astropy.table import Table

logger = logging.getLogger(__name__)

_CHANNEL_COL_RE = re.compile(r"^x_c(\d+)$")


@dataclass(frozen=True)
class CalibrationPoint:
    """An object with a fitted 3-D position in every imaging channel."""

    label: int
    positions: Dict[int, np.ndarray]
    image_id: str = ""
    amplitudes: Dict[int, float] = field(default_factory=dict)

    def __post_init__(self):
        frozen = {}
        for ch, pos in self.positions.items():
            arr = np.array(pos, dtype=float)
            if arr.shape != (3,):
                raise ValueError(
                    f"Position for channel {ch} of object {self.label} must have 3 entries."
                )
            arr.setflags(write=False)
            frozen[int(ch)] = arr
        object.__setattr__(self, "positions", frozen)

    @property
    def channels(self) -> List[int]:
        return sorted(self.positions)

    def position(self, channel: int) -> np.ndarray:
        return self.positions[channel]

    def vector_difference(self, reference_channel: int, other_channel: int) -> np.ndarray:
        """Position in `other_channel` minus position in `reference_channel`."""
        return self.positions[other_channel] - self.positions[reference_channel]

    def scalar_difference(
        self, reference_channel: int, other_channel: int, scale: np.ndarray
    ) -> float:
        """Physical-unit distance between the two channel positions."""
        diff = self.vector_difference(reference_channel, other_channel) * scale
        return float(np.linalg.norm(diff))


def pixel_to_distance_scale(pixel_size: float, section_size: float) -> np.ndarray:
    """Per-axis conversion factors (x, y from pixel size, z from section size)."""
    return np.array([pixel_size, pixel_size, section_size], dtype=float)


def catalog_channels(table: Table) -> List[int]:
    """Channel indices for which a full x/y/z column triple is present."""
    channels = []
    for name in table.colnames:
        match = _CHANNEL_COL_RE.match(name)
        if match is None:
            continue
        ch = int(match.group(1))
        if f"y_c{ch}" in table.colnames and f"z_c{ch}" in table.colnames:
            channels.append(ch)
    return sorted(channels)


def points_from_table(
    table: Table, channels: Optional[Sequence[int]] = None
) -> List[CalibrationPoint]:
    if channels is None:
        channels = catalog_channels(table)
    if len(channels) == 0:
        raise ValueError("Catalog has no x_c<n>/y_c<n>/z_c<n> column triples.")

    has_label = "label" in table.colnames
    has_image = "image_id" in table.colnames
    points = []
    for i, row in enumerate(table):
        positions = {
            ch: (row[f"x_c{ch}"], row[f"y_c{ch}"], row[f"z_c{ch}"]) for ch in channels
        }
        amplitudes = {
            ch: float(row[f"amplitude_c{ch}"])
            for ch in channels
            if f"amplitude_c{ch}" in table.colnames
        }
        points.append(
            CalibrationPoint(
                label=int(row["label"]) if has_label else i + 1,
                positions=positions,
                image_id=str(row["image_id"]) if has_image else "",
                amplitudes=amplitudes,
            )
        )
    return points


def points_to_table(points: Sequence[CalibrationPoint]) -> Table:
    if len(points) == 0:
        return Table(names=("label", "image_id"), dtype=(int, str))

    channels = points[0].channels
    table = Table()
    table["label"] = [p.label for p in points]
    table["image_id"] = [p.image_id for p in points]
    for ch in channels:
        coords = np.array([p.position(ch) for p in points])
        table[f"x_c{ch}"] = coords[:, 0]
        table[f"y_c{ch}"] = coords[:, 1]
        table[f"z_c{ch}"] = coords[:, 2]
    for ch in channels:
        if all(ch in p.amplitudes for p in points):
            table[f"amplitude_c{ch}"] = [p.amplitudes[ch] for p in points]
    return table


def read_position_catalog(filename: str) -> Table:
    table = Table.read(filename)
    table.meta["catalog_file"] = str(filename)
    logger.debug("Read %d objects from %s", len(table), filename)
    return table


def write_position_catalog(points: Sequence[CalibrationPoint], filename: str):
    points_to_table(points).write(filename, overwrite=True)


# =============================================================================
# FIT QUALITY CHECKS
# =============================================================================


class FitFailureStatistics:
    """Counts objects rejected by each fit-quality check."""

    R2_FAIL = 0
    EDGE_FAIL = 1
    SAT_FAIL = 2
    SEP_FAIL = 3
    ERR_FAIL = 4

    N_REASONS = 5

    def __init__(self):
        self.fail_counts = np.zeros(self.N_REASONS, dtype=int)

    def add_failure(self, reason: int):
        self.fail_counts[reason] += 1

    def get_failure_count(self, reason: int) -> int:
        return int(self.fail_counts[reason])

    @property
    def total(self) -> int:
        return int(self.fail_counts.sum())

    def __str__(self):
        lines = [
            "Objects on which fitting failed due to:",
            f"Edge proximity: {self.get_failure_count(self.EDGE_FAIL)}",
            f"Brightness: {self.get_failure_count(self.SAT_FAIL)}",
            f"R^2 value: {self.get_failure_count(self.R2_FAIL)}",
            f"Fitting error: {self.get_failure_count(self.ERR_FAIL)}",
            f"Channel separation: {self.get_failure_count(self.SEP_FAIL)}",
        ]
        return "\n".join(lines) + "\n"


@dataclass
class QualityCriteria:
    """Thresholds for accepting a fitted object. `None` disables a check."""

    image_size_xyz: Optional[Tuple[float, float, float]] = None
    border_size: float = 0.0
    half_z_size: float = 0.0
    determine_correction: bool = True
    r2_cutoff: Optional[float] = None
    max_greylevel_cutoff: Optional[float] = None
    distance_cutoff_nm: Optional[float] = None
    fit_error_cutoff: Optional[float] = None
    pixel_size_nm: float = 1.0
    section_size_nm: float = 1.0


def _row_label(row):
    return row["label"] if "label" in row.colnames else row.index


def _check_r2(row, channels, criteria, stats):
    if criteria.r2_cutoff is None:
        return True
    for ch in channels:
        col = f"r2_c{ch}"
        if col in row.colnames and row[col] < criteria.r2_cutoff:
            stats.add_failure(FitFailureStatistics.R2_FAIL)
            logger.debug("check failed for object %s R^2 = %s", _row_label(row), row[col])
            return False
    return True


def _check_edges(row, channels, criteria, stats):
    if criteria.image_size_xyz is None:
        return True
    eps = 0.1
    size_x, size_y, n_planes = criteria.image_size_xyz
    border = criteria.border_size
    half_z = criteria.half_z_size
    if not criteria.determine_correction:
        # keep objects well inside the region the correction covers
        border *= 4

    for ch in channels:
        x, y, z = row[f"x_c{ch}"], row[f"y_c{ch}"], row[f"z_c{ch}"]
        if (
            x - eps > size_x - border
            or x + eps <= border
            or y - eps > size_y - border
            or y + eps <= border
            or z - eps > n_planes - half_z
            or z + eps <= half_z
        ):
            stats.add_failure(FitFailureStatistics.EDGE_FAIL)
            logger.debug("check failed for object %s position: %s, %s, %s", _row_label(row), x, y, z)
            return False
    return True


def _check_saturation(row, criteria, stats):
    if criteria.max_greylevel_cutoff is None or "max_level" not in row.colnames:
        return True
    if row["max_level"] > criteria.max_greylevel_cutoff:
        stats.add_failure(FitFailureStatistics.SAT_FAIL)
        logger.debug("check failed for object %s brightness: %s", _row_label(row), row["max_level"])
        return False
    return True


def _check_separation(row, channels, criteria, stats):
    if criteria.distance_cutoff_nm is None:
        return True
    scale = pixel_to_distance_scale(criteria.pixel_size_nm, criteria.section_size_nm)
    for a_idx, ch_a in enumerate(channels):
        pos_a = np.array([row[f"x_c{ch_a}"], row[f"y_c{ch_a}"], row[f"z_c{ch_a}"]], dtype=float)
        for ch_b in channels[a_idx + 1 :]:
            pos_b = np.array([row[f"x_c{ch_b}"], row[f"y_c{ch_b}"], row[f"z_c{ch_b}"]], dtype=float)
            dist = np.linalg.norm((pos_a - pos_b) * scale)
            if dist > criteria.distance_cutoff_nm:
                stats.add_failure(FitFailureStatistics.SEP_FAIL)
                logger.debug(
                    "check failed for object %s separation: %s from channels %d to %d",
                    _row_label(row), dist, ch_a, ch_b,
                )
                return False
    return True


def _check_fit_error(row, channels, criteria, stats):
    if criteria.fit_error_cutoff is None:
        return True
    errors = [row[f"fit_error_c{ch}"] for ch in channels if f"fit_error_c{ch}" in row.colnames]
    total_error = np.sqrt(np.sum(np.square(errors, dtype=float)))
    if np.isnan(total_error) or total_error > criteria.fit_error_cutoff:
        stats.add_failure(FitFailureStatistics.ERR_FAIL)
        logger.debug("check failed for object %s fit error: %s", _row_label(row), total_error)
        return False
    return True


def _check_finite_positions(row, channels, stats):
    # NaN positions would slip through every threshold comparison below
    for ch in channels:
        pos = np.array([row[f"x_c{ch}"], row[f"y_c{ch}"], row[f"z_c{ch}"]], dtype=float)
        if not np.all(np.isfinite(pos)):
            stats.add_failure(FitFailureStatistics.ERR_FAIL)
            logger.debug("check failed for object %s position: %s", _row_label(row), pos)
            return False
    return True


def check_fit_quality(row, criteria: QualityCriteria, stats: FitFailureStatistics) -> bool:
    """
    Applies the fit checks to one catalog row, in order: finished fitting,
    finite positions, R^2, edge proximity, saturation, channel separation,
    fit error. The first failing check is recorded in `stats`; non-finite
    positions count as a fitting error.
    """
    if "fit_finished" in row.colnames and not row["fit_finished"]:
        return False
    channels = catalog_channels(row.table)
    return (
        _check_finite_positions(row, channels, stats)
        and _check_r2(row, channels, criteria, stats)
        and _check_edges(row, channels, criteria, stats)
        and _check_saturation(row, criteria, stats)
        and _check_separation(row, channels, criteria, stats)
        and _check_fit_error(row, channels, criteria, stats)
    )


def filter_catalog(
    table: Table, criteria: QualityCriteria
) -> Tuple[Table, FitFailureStatistics]:
    stats = FitFailureStatistics()
    keep = np.array([check_fit_quality(row, criteria, stats) for row in table], dtype=bool)
    filtered = table[keep]
    logger.debug("%s", stats)
    return filtered, stats
