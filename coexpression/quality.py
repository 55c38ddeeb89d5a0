"""
Quality filtering of the expression matrix.

Iterative good-samples / good-genes check: genes with too much missing data
or no variance are dropped, then samples with too much missing data among
the remaining genes, repeated until nothing changes. Every removal is
recorded in a QualityReport with its reason.
"""

import json
import logging
import warnings
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import DegenerateDataError

logger = logging.getLogger(__name__)


# ================================================================
# Data Structures
# ================================================================

@dataclass
class QualityReport:
    """
    Audit record of the quality filter.

    Attributes:
        removed_genes: gene id → reason ('missing', 'too_few_samples', 'zero_variance')
        removed_samples: sample id → reason ('missing', 'too_few_genes')
        n_genes_in / n_samples_in: input dimensions
        n_iterations: passes until the filter was stable
    """
    removed_genes: Dict[str, str] = field(default_factory=dict)
    removed_samples: Dict[str, str] = field(default_factory=dict)
    n_genes_in: int = 0
    n_samples_in: int = 0
    n_iterations: int = 0

    @property
    def n_removed_genes(self) -> int:
        return len(self.removed_genes)

    @property
    def n_removed_samples(self) -> int:
        return len(self.removed_samples)

    @property
    def n_genes_out(self) -> int:
        return self.n_genes_in - self.n_removed_genes

    @property
    def n_samples_out(self) -> int:
        return self.n_samples_in - self.n_removed_samples

    @property
    def all_ok(self) -> bool:
        return not self.removed_genes and not self.removed_samples

    def reason_counts(self) -> Dict[str, int]:
        counts = {}
        for reason in list(self.removed_genes.values()) + list(self.removed_samples.values()):
            counts[reason] = counts.get(reason, 0) + 1
        return counts

    def to_dict(self) -> dict:
        return {
            'n_genes_in': self.n_genes_in,
            'n_samples_in': self.n_samples_in,
            'n_genes_out': self.n_genes_out,
            'n_samples_out': self.n_samples_out,
            'n_removed_genes': self.n_removed_genes,
            'n_removed_samples': self.n_removed_samples,
            'n_iterations': self.n_iterations,
            'reason_counts': self.reason_counts(),
            'removed_genes': self.removed_genes,
            'removed_samples': self.removed_samples,
        }

    def save_json(self, path: str) -> str:
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        return path

    def __repr__(self) -> str:
        return (f"QualityReport(genes={self.n_genes_in}→{self.n_genes_out}, "
                f"samples={self.n_samples_in}→{self.n_samples_out}, "
                f"iterations={self.n_iterations})")


# ================================================================
# Quality Filter
# ================================================================

class QualityFilter:
    """
    Removes non-informative genes and samples.

    Parameters
    ----------
    max_missing_fraction : float
        Genes (samples) with a larger fraction of missing values are removed.
    min_n_samples : int
        Minimum number of present values a gene needs.
    min_n_genes : int
        Minimum number of present values a sample needs.
    tol : float, optional
        Variance tolerance; a gene is constant if var <= tol**2.
        Default: 1e-10 * max(|expression|).
    """

    def __init__(self, max_missing_fraction: float = 0.5, min_n_samples: int = 4,
                 min_n_genes: int = 4, tol: Optional[float] = None):
        self.max_missing_fraction = float(max_missing_fraction)
        self.min_n_samples = int(min_n_samples)
        self.min_n_genes = int(min_n_genes)
        self.tol = tol

    @classmethod
    def from_config(cls, cfg: dict) -> 'QualityFilter':
        qc = cfg.get('quality', {})
        return cls(max_missing_fraction=qc.get('max_missing_fraction', 0.5),
                   min_n_samples=qc.get('min_n_samples', 4),
                   min_n_genes=qc.get('min_n_genes', 4),
                   tol=qc.get('tol'))

    def filter(self, expr: pd.DataFrame):
        """
        Args:
            expr: samples × genes

        Returns:
            (filtered expression, QualityReport)

        Raises:
            DegenerateDataError: filtering would remove every gene or every sample
        """
        values = expr.to_numpy(dtype=np.float64)
        n_samples, n_genes = values.shape
        report = QualityReport(n_genes_in=n_genes, n_samples_in=n_samples)

        if n_samples == 0 or n_genes == 0:
            raise DegenerateDataError(
                f"Empty expression matrix ({n_samples} samples × {n_genes} genes)",
                stage='quality', details={'shape': (n_samples, n_genes)})

        tol = self.tol
        if tol is None:
            finite = np.abs(values[np.isfinite(values)])
            tol = 1e-10 * (finite.max() if finite.size else 1.0)

        present = np.isfinite(values)
        good_genes = np.ones(n_genes, dtype=bool)
        good_samples = np.ones(n_samples, dtype=bool)

        changed = True
        while changed:
            changed = False
            report.n_iterations += 1

            # genes, over currently kept samples
            sub_present = present[good_samples]
            n_kept = int(good_samples.sum())
            n_present = sub_present.sum(axis=0)
            miss_frac = 1.0 - n_present / max(n_kept, 1)
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", category=RuntimeWarning)
                var = np.nanvar(np.where(sub_present, values[good_samples], np.nan),
                                axis=0, ddof=1) if n_kept > 1 else np.zeros(n_genes)
            var = np.nan_to_num(var, nan=0.0)

            for j in np.where(good_genes)[0]:
                reason = None
                if miss_frac[j] > self.max_missing_fraction:
                    reason = 'missing'
                elif n_present[j] < self.min_n_samples:
                    reason = 'too_few_samples'
                elif var[j] <= tol ** 2:
                    reason = 'zero_variance'
                if reason is not None:
                    good_genes[j] = False
                    report.removed_genes[str(expr.columns[j])] = reason
                    changed = True

            if not good_genes.any():
                break

            # samples, over currently kept genes
            sub_present = present[:, good_genes]
            n_kept_genes = int(good_genes.sum())
            n_present_s = sub_present.sum(axis=1)
            miss_frac_s = 1.0 - n_present_s / n_kept_genes
            for i in np.where(good_samples)[0]:
                reason = None
                if miss_frac_s[i] > self.max_missing_fraction:
                    reason = 'missing'
                elif n_present_s[i] < min(self.min_n_genes, n_kept_genes):
                    reason = 'too_few_genes'
                if reason is not None:
                    good_samples[i] = False
                    report.removed_samples[str(expr.index[i])] = reason
                    changed = True

            if not good_samples.any():
                break

        if not good_genes.any() or not good_samples.any():
            raise DegenerateDataError(
                f"Quality filter removed all {'genes' if not good_genes.any() else 'samples'} "
                f"({report.n_removed_genes} genes, {report.n_removed_samples} samples removed)",
                stage='quality', details=report.to_dict())

        logger.info(f"[quality] Removed {report.n_removed_genes} genes, "
                    f"{report.n_removed_samples} samples "
                    f"({report.n_iterations} passes): {report.reason_counts()}")

        filtered = expr.loc[good_samples, good_genes].copy()
        return filtered, report


# ================================================================
# Standalone Function
# ================================================================

def filter_expression(expr: pd.DataFrame, **kwargs):
    """QualityFilter(**kwargs).filter(expr)"""
    return QualityFilter(**kwargs).filter(expr)
