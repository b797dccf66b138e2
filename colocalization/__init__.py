"""
3-D Colocalization Package
--------------------------
Chromatic correction, registration-error estimation and separation
distribution fitting for multi-channel 3-D fluorescence localizations.

Modules:
    run_colocalization: Batch processing script.
    colocalization_pipeline: Core pipeline controller.
    colocalization_data: Calibration points, catalogs and fit-quality checks.
    correction_core: Local quadratic correction surfaces.
    correction_tre: Leave-one-out target registration error.
    correction_insitu: In-situ aberration correction.
    separation_fitting: P3D maximum-likelihood fitting.
"""

from .colocalization_data import CalibrationPoint, FitFailureStatistics, QualityCriteria
from .colocalization_pipeline import ColocalizationPipeline, PipelineConfig
from .correction_core import (
    Correction,
    CorrectionBuilder,
    UnableToCorrectError,
    UnderdeterminedFitError,
    apply_correction,
)
from .correction_tre import TREResult, determine_tre
from .separation_fitting import DistributionFitResult, P3DFitter

__version__ = "1.0.0"
