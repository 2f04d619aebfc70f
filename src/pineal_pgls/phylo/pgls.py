"""
Phylogenetic generalized least squares for one gene.

Both models regress log expression on the binary trait,
``y = b0 + b1 * trait + e``, with ``e ~ N(0, sigma^2 V)``:

- Brownian motion: ``V`` is the tree's shared-path covariance.
- Pagel's lambda: off-diagonal entries of ``V`` are scaled by
  ``lambda`` in [0, 1], chosen by maximum likelihood with the
  coefficients and ``sigma^2`` profiled out.

The trait coefficient ``b1`` is the log2 fold change between trait
groups. Its p-value is the two-sided t-test from the GLS fit.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import statsmodels.api as sm
from scipy.optimize import minimize_scalar

from pineal_pgls.errors import PGLSFitError
from pineal_pgls.phylo.tree import pagel_lambda_covariance

# A residual sum of squares below this fraction of the (uncentered) total
# sum of squares is rounding noise; the fit is exact.
_EXACT_FIT_RTOL = 1e-12
_MIN_SSR = 1e-300
_MAX_CONDITION = 1e12


@dataclass
class PGLSFit:
    """Trait coefficient and fit statistics from one model."""

    coefficient: float
    std_error: float
    pvalue: float
    loglik: float
    lam: Optional[float] = None


def design_matrix(trait: np.ndarray) -> np.ndarray:
    """Intercept plus trait column; the trait must take both values."""
    X = np.column_stack([np.ones_like(trait, dtype=float), trait.astype(float)])
    if np.linalg.matrix_rank(X) < 2:
        raise PGLSFitError("Trait is constant across species; coefficient not identifiable")
    return X


def is_exact_fit(y: np.ndarray, X: np.ndarray) -> bool:
    """
    True when ``y`` lies in the column space of ``X`` up to rounding.

    An exact fit leaves no residual for any covariance, so every lambda
    explains the data equally well.
    """
    beta, _, _, _ = np.linalg.lstsq(X, y, rcond=None)
    resid = y - X @ beta
    return float(resid @ resid) <= _EXACT_FIT_RTOL * float(y @ y)


def _fit_gls(y: np.ndarray, X: np.ndarray, cov: np.ndarray):
    if not np.all(np.isfinite(y)):
        raise PGLSFitError("Expression contains non-finite values")
    if np.linalg.cond(cov) > _MAX_CONDITION:
        raise PGLSFitError("Phylogenetic covariance matrix is singular")
    with np.errstate(divide="ignore", invalid="ignore"):
        return sm.GLS(y, X, sigma=cov).fit()


def profile_loglik(results, cov: np.ndarray) -> float:
    """Maximum likelihood of a GLS fit with sigma^2 profiled out."""
    n = results.nobs
    ssr = max(
        float(results.ssr),
        _EXACT_FIT_RTOL * float(results.uncentered_tss),
        _MIN_SSR,
    )
    sign, logdet = np.linalg.slogdet(cov)
    if sign <= 0:
        raise PGLSFitError("Phylogenetic covariance matrix is not positive definite")
    return -0.5 * n * (np.log(2.0 * np.pi * ssr / n) + 1.0) - 0.5 * logdet


def _trait_statistics(results) -> Tuple[float, float, float]:
    with np.errstate(divide="ignore", invalid="ignore"):
        coefficient = float(results.params[1])
        std_error = float(results.bse[1])
        pvalue = float(results.pvalues[1])
    if not np.isfinite(coefficient):
        raise PGLSFitError("Trait coefficient is not finite")
    return coefficient, std_error, pvalue


def fit_brownian(y: np.ndarray, trait: np.ndarray, cov: np.ndarray) -> PGLSFit:
    """Fit the Brownian-motion PGLS model."""
    X = design_matrix(trait)
    results = _fit_gls(y, X, cov)
    coefficient, std_error, pvalue = _trait_statistics(results)
    return PGLSFit(
        coefficient=coefficient,
        std_error=std_error,
        pvalue=pvalue,
        loglik=profile_loglik(results, cov),
    )


def fit_lambda(
    y: np.ndarray,
    trait: np.ndarray,
    cov: np.ndarray,
    bounds: Tuple[float, float] = (0.0, 1.0),
    max_iterations: int = 500,
) -> PGLSFit:
    """
    Fit the Pagel's lambda PGLS model by maximum likelihood.

    The profile likelihood is maximized over ``bounds`` with a bounded
    Brent search; the two bounds are evaluated too since the optimum is
    often on the boundary.

    When expression is an exact function of the trait the residual is
    zero under every lambda and the likelihood carries no information
    about it; lambda is then the lower bound (0 by default, no
    phylogenetic structure in the residual) without searching.

    Raises:
        PGLSFitError: If the search does not converge or no lambda in
            range gives a valid fit.
    """
    X = design_matrix(trait)

    def negative_loglik(lam: float) -> float:
        scaled = pagel_lambda_covariance(cov, lam)
        try:
            return -profile_loglik(_fit_gls(y, X, scaled), scaled)
        except (PGLSFitError, np.linalg.LinAlgError):
            return np.inf

    if np.all(np.isfinite(y)) and is_exact_fit(y, X):
        candidates = [(negative_loglik(bounds[0]), float(bounds[0]))]
    else:
        opt = minimize_scalar(
            negative_loglik,
            bounds=bounds,
            method="bounded",
            options={"maxiter": max_iterations, "xatol": 1e-6},
        )
        if not opt.success:
            raise PGLSFitError(f"Lambda search did not converge: {opt.message}")

        candidates = [(float(opt.fun), float(opt.x))]
        candidates += [(negative_loglik(b), b) for b in bounds]
    candidates = [c for c in candidates if np.isfinite(c[0])]
    if not candidates:
        raise PGLSFitError("No lambda in range gives a valid covariance matrix")
    best_value, best_lambda = min(candidates)

    scaled = pagel_lambda_covariance(cov, best_lambda)
    results = _fit_gls(y, X, scaled)
    coefficient, std_error, pvalue = _trait_statistics(results)
    return PGLSFit(
        coefficient=coefficient,
        std_error=std_error,
        pvalue=pvalue,
        loglik=-best_value,
        lam=best_lambda,
    )
