"""
Separation Distribution Fitting
-------------------------------
Fits corrected 3-D separations to the P3D distribution: the density of the
observed distance between two Gaussian-localized point sources whose true
separation is m, with per-axis localization uncertainty s.

    p(r; m, s) = [exp(-(m-r)^2 / 2s^2) - exp(-(m+r)^2 / 2s^2)] * sqrt(2/pi) * r / (2 m s)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.optimize import minimize

logger = logging.getLogger(__name__)

# returned for out-of-domain parameters so the simplex steps back
OUT_OF_DOMAIN_VALUE = np.finfo(float).max


def p3d(r, m: float, s: float):
    r = np.asarray(r, dtype=float)
    return (
        (np.exp(-((m - r) ** 2) / (2 * s * s)) - np.exp(-((m + r) ** 2) / (2 * s * s)))
        * np.sqrt(2.0 / np.pi)
        * r
        / (2 * m * s)
    )


def log_p3d(r, m: float, s: float):
    """
    Natural log of the P3D density, written so that it stays finite far in
    the tails where p3d itself underflows to zero.
    """
    r = np.asarray(r, dtype=float)
    a = 2.0 * m * r / (s * s)
    with np.errstate(divide="ignore", invalid="ignore"):
        return (
            -((m - r) ** 2) / (2 * s * s)
            + np.log(-np.expm1(-a))
            + 0.5 * np.log(2.0 / np.pi)
            + np.log(r)
            - np.log(2 * m * s)
        )


class P3DObjective:
    """Negative log-likelihood of a set of separations under P3D."""

    def __init__(
        self,
        r: np.ndarray,
        min_prob: Optional[float] = None,
        fixed_s: Optional[float] = None,
    ):
        self.r = np.asarray(r, dtype=float)
        self.max_neg_log_p = None
        if min_prob is not None:
            if not 0.0 < min_prob < 1.0:
                raise ValueError(f"min_prob must lie in (0, 1), got {min_prob}.")
            self.max_neg_log_p = -np.log(min_prob)
        self.fixed_s = fixed_s

    def parameters(self, point):
        m = point[0]
        s = self.fixed_s if self.fixed_s is not None else point[1]
        return m, s

    def __call__(self, point) -> float:
        m, s = self.parameters(point)
        if m <= 0 or s <= 0:
            return OUT_OF_DOMAIN_VALUE

        neg_log_p = -log_p3d(self.r, m, s)
        if self.max_neg_log_p is not None:
            neg_log_p = np.minimum(neg_log_p, self.max_neg_log_p)

        total = float(np.sum(neg_log_p))
        if not np.isfinite(total):
            return OUT_OF_DOMAIN_VALUE
        return total


@dataclass
class DistributionFitResult:
    mean: float
    spread: float
    converged: bool
    n_iterations: int
    neg_log_likelihood: float
    spread_fixed: bool = False
    message: str = ""

    @property
    def parameters(self) -> np.ndarray:
        return np.array([self.mean, self.spread])


class DistributionFitter(ABC):
    """Fits scalar observations to a parametric distribution."""

    @abstractmethod
    def fit(self, distances: np.ndarray) -> DistributionFitResult:
        ...


class P3DFitter(DistributionFitter):
    """
    Maximum-likelihood P3D fit with a Nelder-Mead simplex.

    Parameters
    ----------
    robust_cutoff : float, optional
        Minimum probability; each observation's -ln p is capped at
        -ln(robust_cutoff), bounding the influence of outliers.
    fixed_spread : float, optional
        Holds s at this value and fits only m.
    tol : float
        Objective tolerance, relative to the objective at the starting point
        (never below `tol` itself).
    xtol : float
        Absolute tolerance on the parameters, in the units of the distances.
    max_iter : int
        Iteration limit passed to the optimizer; hitting it flags the fit as not converged.
    """

    def __init__(
        self,
        robust_cutoff: Optional[float] = None,
        fixed_spread: Optional[float] = None,
        tol: float = 1e-12,
        xtol: float = 1e-6,
        max_iter: int = 5000,
    ):
        if fixed_spread is not None and fixed_spread <= 0:
            raise ValueError(f"fixed_spread must be positive, got {fixed_spread}.")
        self.robust_cutoff = robust_cutoff
        self.fixed_spread = fixed_spread
        self.tol = tol
        self.xtol = xtol
        self.max_iter = max_iter

    def fit(self, distances: np.ndarray) -> DistributionFitResult:
        r = np.asarray(distances, dtype=float)
        r = r[np.isfinite(r)]
        if r.size == 0:
            raise ValueError("No finite separations to fit.")

        objective = P3DObjective(r, min_prob=self.robust_cutoff, fixed_s=self.fixed_spread)

        initial_mean = np.mean(r)
        initial_width = np.sqrt(np.mean((r - initial_mean) ** 2))
        if self.fixed_spread is None:
            x0 = np.array([initial_mean, initial_width])
        else:
            x0 = np.array([initial_mean])

        f0 = objective(x0)
        if f0 == OUT_OF_DOMAIN_VALUE:
            fatol = self.tol
        else:
            fatol = self.tol * max(1.0, abs(f0))
        options = dict(xatol=self.xtol, fatol=fatol, maxiter=self.max_iter)

        result = minimize(objective, x0, method="Nelder-Mead", options=options)

        m, s = objective.parameters(result.x)
        fit = DistributionFitResult(
            mean=float(m),
            spread=float(s),
            converged=bool(result.success),
            n_iterations=int(result.nit),
            neg_log_likelihood=float(result.fun),
            spread_fixed=self.fixed_spread is not None,
            message=str(result.message),
        )
        if not fit.converged:
            logger.warning("p3d fit did not converge: %s", fit.message)
        logger.info("p3d fit parameters: m = %s, s = %s", fit.mean, fit.spread)
        return fit
