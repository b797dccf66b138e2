"""
Colocalization Pipeline Controller
----------------------------------
This module orchestrates the full measurement:
1. Loads the fitted-object catalog and applies the fit-quality checks.
2. Builds (or reads) the chromatic correction between two channels.
3. Estimates the target registration error by leave-one-out validation.
4. Applies the correction and fits the corrected separations to P3D.
5. Optionally removes in-situ aberration using a second channel.
6. Writes the correction, corrected catalog and summary files.
"""

import dataclasses
import datetime
import os
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import yaml

from .colocalization_data import (
    CalibrationPoint,
    QualityCriteria,
    filter_catalog,
    pixel_to_distance_scale,
    points_from_table,
    read_position_catalog,
    write_position_catalog,
)
from .correction_core import (
    Correction,
    CorrectionBuilder,
    UnableToCorrectError,
    apply_correction,
    corrected_position,
)
from .correction_insitu import apply_in_situ_correction, determine_in_situ_slopes
from .correction_tre import determine_tre
from .separation_fitting import P3DFitter


@dataclass
class PipelineConfig:
    """Configuration parameters for the colocalization pipeline."""

    working_dir: str
    file_root: str  # Unique ID for output filenames
    reference_channel: int = 0
    correction_channel: int = 1
    n_neighbors: int = 20  # Points per local quadratic fit (>= 6)
    pixel_size_nm: float = 80.0
    section_size_nm: float = 100.0
    max_workers: int = 4
    determine_correction: bool = True
    determine_tre: bool = True
    correction_file: Optional[str] = None  # Defaults to results/<file_root>_correction.fits
    robust_p3d_fit_cutoff: Optional[float] = None
    fixed_spread: Optional[float] = None
    flip_channels_at_end: bool = False
    inverted_z_axis: bool = False
    output_positions: bool = False
    in_situ_aberr_channel: Optional[int] = None
    in_situ_aberr_catalog: Optional[str] = None
    # fit-quality checks (None disables a check)
    image_size_xyz: Optional[Tuple[float, float, float]] = None
    border_size: float = 0.0
    half_z_size: float = 0.0
    r2_cutoff: Optional[float] = None
    max_greylevel_cutoff: Optional[float] = None
    distance_cutoff_nm: Optional[float] = None
    fit_error_cutoff: Optional[float] = None

    def __post_init__(self):
        if self.reference_channel == self.correction_channel:
            raise ValueError("reference_channel and correction_channel must differ.")
        if self.n_neighbors < 6:
            raise ValueError("n_neighbors must be at least 6.")
        if self.image_size_xyz is not None:
            self.image_size_xyz = tuple(self.image_size_xyz)
        self.res_dir = os.path.join(self.working_dir, "results")
        self.pos_dir = os.path.join(self.working_dir, "positions")
        os.makedirs(self.res_dir, exist_ok=True)
        os.makedirs(self.pos_dir, exist_ok=True)
        if self.correction_file is None:
            self.correction_file = os.path.join(
                self.res_dir, f"{self.file_root}_correction.fits"
            )

    @property
    def scale(self) -> np.ndarray:
        return pixel_to_distance_scale(self.pixel_size_nm, self.section_size_nm)

    @property
    def quality_criteria(self) -> QualityCriteria:
        return QualityCriteria(
            image_size_xyz=self.image_size_xyz,
            border_size=self.border_size,
            half_z_size=self.half_z_size,
            determine_correction=self.determine_correction,
            r2_cutoff=self.r2_cutoff,
            max_greylevel_cutoff=self.max_greylevel_cutoff,
            distance_cutoff_nm=self.distance_cutoff_nm,
            fit_error_cutoff=self.fit_error_cutoff,
            pixel_size_nm=self.pixel_size_nm,
            section_size_nm=self.section_size_nm,
        )

    @classmethod
    def from_yaml(cls, filename: str, **overrides) -> "PipelineConfig":
        """Loads settings from a YAML mapping; keyword overrides take precedence."""
        with open(filename, "r") as f:
            cfg = yaml.safe_load(f) or {}
        if not isinstance(cfg, dict):
            raise ValueError(f"{filename} does not contain a mapping of settings.")
        cfg.update({k: v for k, v in overrides.items() if v is not None})
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(cfg) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys in {filename}: {unknown}")
        return cls(**cfg)


class ColocalizationPipeline:
    def __init__(self, config: PipelineConfig):
        self.config = config
        self.builder = CorrectionBuilder(
            config.reference_channel, config.correction_channel, config.n_neighbors
        )
        self.fitter = P3DFitter(
            robust_cutoff=config.robust_p3d_fit_cutoff,
            fixed_spread=config.fixed_spread,
        )
        self.catalog = None
        self.points = None
        self.failure_stats = None
        self.correction = None
        self.tre_result = None
        self.applied = None
        self.corrected_points = None
        self.fit_result = None
        self.in_situ_slopes = None
        self.in_situ_fit_result = None

    def prepare_and_load_catalogs(self, catalog_file):
        """Loads the fitted-object catalog and keeps objects passing the quality checks."""
        catalog = read_position_catalog(catalog_file)
        self.catalog, self.failure_stats = filter_catalog(
            catalog, self.config.quality_criteria
        )
        self.points = points_from_table(self.catalog)
        print(
            f"Loaded {len(catalog)} objects from {os.path.basename(str(catalog_file))}; "
            f"{len(self.points)} passed fit checks."
        )

    def get_correction(self) -> Correction:
        """Builds a correction from the loaded objects, or reads a stored one."""
        if not self.config.determine_correction:
            correction = Correction.read(self.config.correction_file)
            if (
                correction.reference_channel != self.config.reference_channel
                or correction.correction_channel != self.config.correction_channel
            ):
                raise ValueError(
                    f"Stored correction maps channel {correction.reference_channel} to "
                    f"{correction.correction_channel}, but the configuration asks for "
                    f"{self.config.reference_channel} to {self.config.correction_channel}."
                )
            return correction
        return self.builder.build(self.points)

    def run(self):
        """Main execution: correction, TRE, application and distribution fit."""
        if self.points is None:
            raise ValueError("Load catalogs first.")

        cfg = self.config
        print(f"\n{'=' * 60}\nCOLOCALIZATION: {cfg.file_root}\n{'=' * 60}")

        self.correction = self.get_correction()
        print(f"  >>> Correction: {self.correction.n_points} local surfaces.")

        if cfg.determine_tre and cfg.determine_correction:
            print(f"  >>> Determining TRE ({len(self.points)} points, {cfg.max_workers} workers)...")
            self.tre_result = determine_tre(
                self.points, self.builder, cfg.scale, max_workers=cfg.max_workers
            )
            if np.isfinite(self.tre_result.tre):
                self.correction.tre = self.tre_result.tre
                self.correction.tre_xy = self.tre_result.tre_xy
            print(
                f"  >>> TRE = {self.tre_result.tre:.3f} nm, x-y TRE = {self.tre_result.tre_xy:.3f} nm "
                f"({self.tre_result.n_excluded} points excluded)"
            )

        self.correction.write(cfg.correction_file)

        self.applied = apply_correction(
            self.correction, self.points, cfg.scale, flip=cfg.flip_channels_at_end
        )
        kept = np.flatnonzero(self.applied.success)
        self.corrected_points = [self.points[i] for i in kept]
        distances = self.applied.distances[kept]
        if self.applied.n_failed:
            print(f"  >>> {self.applied.n_failed} objects outside correction coverage removed.")

        self.fit_result = self.fitter.fit(distances)
        print(
            f"  >>> P3D fit: m = {self.fit_result.mean:.3f} nm, s = {self.fit_result.spread:.3f} nm"
            + ("" if self.fit_result.converged else " (NOT CONVERGED)")
        )

        if cfg.in_situ_aberr_catalog is not None and cfg.in_situ_aberr_channel is not None:
            self.run_in_situ_correction()

        self.finalize()

    def _with_corrected_channel(self, points):
        """Copies of `points` whose correction-channel position has the offset removed."""
        cfg = self.config
        out = []
        for p in points:
            try:
                pos = corrected_position(p, self.correction, flip=cfg.flip_channels_at_end)
            except UnableToCorrectError:
                continue
            positions = dict(p.positions)
            positions[cfg.correction_channel] = pos
            out.append(
                CalibrationPoint(p.label, positions, image_id=p.image_id, amplitudes=p.amplitudes)
            )
        return out

    def run_in_situ_correction(self):
        """Fits in-situ aberration slopes on the reference dataset and refits P3D."""
        cfg = self.config
        aberr_points = points_from_table(read_position_catalog(cfg.in_situ_aberr_catalog))
        aberr_points = self._with_corrected_channel(aberr_points)
        self.in_situ_slopes = determine_in_situ_slopes(
            aberr_points,
            cfg.reference_channel,
            cfg.in_situ_aberr_channel,
            cfg.correction_channel,
            cfg.scale,
        )
        _, scalar_diffs = apply_in_situ_correction(
            self._with_corrected_channel(self.corrected_points),
            self.in_situ_slopes,
            cfg.reference_channel,
            cfg.in_situ_aberr_channel,
            cfg.correction_channel,
            cfg.scale,
        )
        self.in_situ_fit_result = self.fitter.fit(scalar_diffs)
        print(
            f"  >>> P3D fit after in situ correction: m = {self.in_situ_fit_result.mean:.3f} nm, "
            f"s = {self.in_situ_fit_result.spread:.3f} nm"
        )

    def finalize(self):
        """Saves the corrected catalog, summary and optional position listing."""
        cfg = self.config
        print(f"\nSaving results to {cfg.working_dir}")

        write_position_catalog(
            self.corrected_points,
            os.path.join(cfg.res_dir, f"{cfg.file_root}_corrected_objects.ecsv"),
        )
        self.write_summary_file(os.path.join(cfg.res_dir, f"{cfg.file_root}_summary.txt"))

        if cfg.output_positions:
            self.write_position_file(os.path.join(cfg.pos_dir, f"{cfg.file_root}.txt"))

    def write_summary_file(self, filename):
        """Writes a concise diagnostic summary to an ASCII file."""
        cfg = self.config
        res = self.fit_result
        with open(filename, "w") as f:
            f.write("COLOCALIZATION SUMMARY\n")
            f.write("=" * 40 + "\n")
            f.write(f"Catalog:        {os.path.basename(str(self.catalog.meta.get('catalog_file', 'N/A')))}\n")
            f.write(f"Generated:      {datetime.datetime.now(datetime.timezone.utc).isoformat()}\n")
            f.write(f"Channels:       {cfg.reference_channel} -> {cfg.correction_channel}\n")
            f.write(f"Neighbours (k): {cfg.n_neighbors}\n")
            f.write(f"Pixel/Section:  {cfg.pixel_size_nm} / {cfg.section_size_nm} nm\n")
            f.write("-" * 40 + "\n")
            f.write(f"Objects Passed: {len(self.points)}\n")
            f.write(str(self.failure_stats))
            f.write(f"Corrected:      {len(self.corrected_points)}\n")
            f.write(f"Uncorrectable:  {self.applied.n_failed}\n")
            f.write("-" * 40 + "\n")
            if self.tre_result is not None:
                f.write(f"TRE (nm):       {self.tre_result.tre:.3f}\n")
                f.write(f"x-y TRE (nm):   {self.tre_result.tre_xy:.3f}\n")
                f.write(f"TRE Excluded:   {self.tre_result.n_excluded} "
                        f"({self.tre_result.n_no_coverage} no coverage, "
                        f"{self.tre_result.n_fit_failures} failed fits)\n")
            elif self.correction.tre is not None:
                f.write(f"TRE (nm):       {self.correction.tre:.3f} (stored)\n")
            f.write("-" * 40 + "\n")
            uncorrected = self.applied.uncorrected_distances
            corrected = self.applied.distances[self.applied.success]
            if uncorrected.size:
                f.write(f"Mean Sep Raw:   {np.mean(uncorrected):.3f} nm\n")
            if corrected.size:
                f.write(f"Mean Sep Corr:  {np.mean(corrected):.3f} nm\n")
            f.write(f"P3D m (nm):     {res.mean:.3f}\n")
            f.write(f"P3D s (nm):     {res.spread:.3f}{' (fixed)' if res.spread_fixed else ''}\n")
            f.write(f"Converged:      {res.converged} ({res.n_iterations} iterations)\n")
            if self.in_situ_fit_result is not None:
                f.write("-" * 40 + "\n")
                f.write(f"In Situ Slopes: {np.array2string(self.in_situ_slopes, precision=4)}\n")
                f.write(f"In Situ m (nm): {self.in_situ_fit_result.mean:.3f}\n")
                f.write(f"In Situ s (nm): {self.in_situ_fit_result.spread:.3f}\n")
            f.write("=" * 40 + "\n")
        print(f"Summary saved to: {filename}")

    def write_position_file(self, filename):
        """
        Writes one line per corrected object, grouped under its image name:
        label, reference xyz, correction xyz, corrected xyz, amplitudes.
        """
        cfg = self.config
        ref, corr = cfg.reference_channel, cfg.correction_channel
        current_image = None
        with open(filename, "w") as f:
            for p in self.corrected_points:
                try:
                    corr_pos = corrected_position(
                        p,
                        self.correction,
                        flip=cfg.flip_channels_at_end,
                        inverted_z=cfg.inverted_z_axis,
                    )
                except UnableToCorrectError:
                    continue
                if p.image_id != current_image:
                    f.write(f"{p.image_id}\n")
                    current_image = p.image_id
                values = np.concatenate([p.position(ref), p.position(corr), corr_pos])
                amps = [p.amplitudes.get(ref, np.nan), p.amplitudes.get(corr, np.nan)]
                f.write(f"{p.label} " + " ".join(f"{v:.6f}" for v in values))
                f.write(" " + " ".join(f"{a:.6g}" for a in amps) + "\n")
        print(f"Positions saved to: {filename}")
