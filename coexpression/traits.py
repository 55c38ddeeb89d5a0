"""
Module-trait and gene-trait correlation.

Pearson correlation on pairwise-complete samples with two-sided Student-t
p-values (n - 2 degrees of freedom) and Benjamini-Hochberg FDR.
"""

import logging
import os
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, Tuple
from scipy import stats

from .loader import align_samples

logger = logging.getLogger(__name__)


_TINY = np.finfo(float).tiny


# ================================================================
# Correlation kernel
# ================================================================

def correlation_pvalue(x: pd.DataFrame, y: pd.DataFrame,
                       min_samples: int = 3) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Pairwise-complete Pearson correlation between the columns of x and y.

    Args:
        x, y: samples × variables, same sample order
        min_samples: pairs with fewer shared samples get NaN

    Returns:
        (corr, pvalue, n_obs) DataFrames x.columns × y.columns.
        p-values are two-sided, in (0, 1]; NaN where the correlation is
        undefined (too few samples or a constant variable).
    """
    X = x.to_numpy(dtype=np.float64)
    Y = y.to_numpy(dtype=np.float64)
    # centre columns; r is shift-invariant
    X = X - np.nanmean(X, axis=0)
    Y = Y - np.nanmean(Y, axis=0)
    mx = np.isfinite(X).astype(np.float64)
    my = np.isfinite(Y).astype(np.float64)
    X0 = np.where(mx > 0, X, 0.0)
    Y0 = np.where(my > 0, Y, 0.0)

    n = mx.T @ my
    sx = X0.T @ my
    sy = mx.T @ Y0
    sxx = (X0 ** 2).T @ my
    syy = mx.T @ (Y0 ** 2)
    sxy = X0.T @ Y0

    with np.errstate(invalid='ignore', divide='ignore'):
        cov = sxy - sx * sy / n
        vx = sxx - sx ** 2 / n
        vy = syy - sy ** 2 / n
        # constant overlap leaves only rounding residue
        degenerate = (vx <= 1e-12 * np.maximum(sxx, 1e-300)) | (vy <= 1e-12 * np.maximum(syy, 1e-300))
        r = cov / np.sqrt(vx * vy)
    undefined = degenerate | (n < max(min_samples, 3)) | ~np.isfinite(r)
    r = np.where(undefined, np.nan, np.clip(r, -1.0, 1.0))

    dof = n - 2
    with np.errstate(invalid='ignore', divide='ignore'):
        t = r * np.sqrt(dof / (1.0 - r ** 2))
    t = np.where(np.abs(r) >= 1.0, np.copysign(np.inf, r), t)
    p = 2.0 * stats.t.sf(np.abs(t), np.maximum(dof, 1))
    p = np.where(undefined, np.nan, np.clip(p, _TINY, 1.0))

    n_undefined = int(undefined.sum())
    if n_undefined:
        logger.warning(f"[traits] {n_undefined} correlations undefined "
                       f"(< {min_samples} shared samples or constant values)")

    kw = dict(index=x.columns, columns=y.columns)
    return pd.DataFrame(r, **kw), pd.DataFrame(p, **kw), pd.DataFrame(n.astype(int), **kw)


def fdr_bh(pvals: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values; NaN entries are left out and kept NaN."""
    pvals = np.asarray(pvals, dtype=float)
    result = np.full(pvals.shape, np.nan)
    valid = np.isfinite(pvals)
    p = pvals[valid]
    m = len(p)
    if m == 0:
        return result
    sorted_idx = np.argsort(p)
    sorted_p = p[sorted_idx]
    adjusted = sorted_p * m / np.arange(1, m + 1)
    adjusted = np.minimum(adjusted, 1.0)
    for i in range(m - 2, -1, -1):
        adjusted[i] = min(adjusted[i], adjusted[i + 1])
    out = np.empty(m)
    out[sorted_idx] = adjusted
    result[valid] = out
    return result


# ================================================================
# Data Structures
# ================================================================

@dataclass
class ModuleTraitCorrelation:
    """
    Module × trait correlation table.

    Attributes:
        correlation: values in [-1, 1]
        pvalue: two-sided Student-t p-values in (0, 1]
        fdr: Benjamini-Hochberg over the whole matrix
        n_obs: samples used per pair
    """
    correlation: pd.DataFrame
    pvalue: pd.DataFrame
    fdr: pd.DataFrame
    n_obs: pd.DataFrame

    def to_long(self) -> pd.DataFrame:
        """One row per (module, trait)."""
        frames = {'correlation': self.correlation, 'pvalue': self.pvalue,
                  'fdr': self.fdr, 'n_obs': self.n_obs}
        idx = pd.MultiIndex.from_product([self.correlation.index, self.correlation.columns],
                                         names=['module', 'trait'])
        long = pd.DataFrame({k: v.to_numpy().ravel() for k, v in frames.items()}, index=idx)
        return long.reset_index()

    def significant(self, alpha: float = 0.05, use_fdr: bool = False) -> pd.DataFrame:
        col = 'fdr' if use_fdr else 'pvalue'
        long = self.to_long()
        return long[long[col] < alpha].sort_values(col).reset_index(drop=True)

    def save(self, out_dir: str, prefix: str = 'module_trait') -> Dict[str, str]:
        paths = {}
        for name, df in (('correlation', self.correlation), ('pvalue', self.pvalue),
                         ('fdr', self.fdr), ('n_obs', self.n_obs)):
            path = os.path.join(out_dir, f"{prefix}_{name}.csv")
            df.to_csv(path)
            paths[name] = path
        return paths

    def __repr__(self) -> str:
        return (f"ModuleTraitCorrelation(n_modules={self.correlation.shape[0]}, "
                f"n_traits={self.correlation.shape[1]})")


# ================================================================
# Trait Correlator
# ================================================================

class TraitCorrelator:
    """
    Correlates module eigengenes with sample traits.

    Inputs are not mutated; traits are re-ordered to the eigengene sample
    order by identifier (InputShapeError when identifiers differ).
    """

    def __init__(self, min_samples: int = 3):
        self.min_samples = max(int(min_samples), 3)

    def correlate(self, eigengenes: pd.DataFrame, traits: pd.DataFrame) -> ModuleTraitCorrelation:
        aligned = align_samples(eigengenes, traits, stage='traits')
        corr, pval, n_obs = correlation_pvalue(eigengenes, aligned, self.min_samples)
        fdr = pd.DataFrame(fdr_bh(pval.to_numpy().ravel()).reshape(pval.shape),
                           index=pval.index, columns=pval.columns)
        result = ModuleTraitCorrelation(correlation=corr, pvalue=pval, fdr=fdr, n_obs=n_obs)
        logger.info(f"[traits] {result}")
        return result


def gene_significance(expr: pd.DataFrame, traits: pd.DataFrame, min_samples: int = 3):
    """
    Gene × trait correlation (gene significance) and p-values.

    Returns:
        (gs, pvalue) DataFrames genes × 'GS.{trait}'
    """
    aligned = align_samples(expr, traits, stage='traits')
    corr, pval, _ = correlation_pvalue(expr, aligned, min_samples)
    cols = {c: f"GS.{c}" for c in corr.columns}
    return corr.rename(columns=cols), pval.rename(columns=cols)


# ================================================================
# Standalone Function
# ================================================================

def module_trait_correlation(eigengenes: pd.DataFrame, traits: pd.DataFrame,
                             min_samples: int = 3) -> ModuleTraitCorrelation:
    return TraitCorrelator(min_samples).correlate(eigengenes, traits)
