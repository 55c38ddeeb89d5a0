"""
Weighted co-expression network construction.

Correlation → similarity → soft-thresholded adjacency → topological overlap.

The O(n²) / O(n³) kernels (per-power connectivity and TOM) are computed in
disjoint row blocks so peak memory stays bounded and blocks can be run on a
joblib thread pool; numpy matmul is multi-threaded underneath.
"""

import logging
import numpy as np
import pandas as pd
from typing import List, Optional, Sequence, Tuple
from scipy import stats
from tqdm import tqdm
from joblib import Parallel, delayed

from .errors import NumericalDegeneracyError
from .utils import NETWORK_TYPES, chunk_ranges

logger = logging.getLogger(__name__)


_EPS = 1e-12


# ================================================================
# Correlation / similarity
# ================================================================

def correlation_matrix(expr, min_periods: int = 3) -> Tuple[np.ndarray, List[int]]:
    """
    Gene × gene Pearson correlation.

    Uses pairwise-complete observations when missing values are present.
    Undefined correlations (too few shared samples, constant overlap) are
    zero-filled and the affected genes returned.

    Args:
        expr: samples × genes (DataFrame or array)

    Returns:
        corr: (n_genes, n_genes) float64, diagonal 1
        undefined: indices of genes with at least one undefined correlation
    """
    values = expr.to_numpy(dtype=np.float64) if isinstance(expr, pd.DataFrame) \
        else np.asarray(expr, dtype=np.float64)

    if np.isnan(values).any():
        corr = pd.DataFrame(values).corr(method='pearson',
                                         min_periods=min_periods).to_numpy(copy=True)
    else:
        centered = values - values.mean(axis=0)
        norms = np.sqrt((centered ** 2).sum(axis=0))
        with np.errstate(invalid='ignore', divide='ignore'):
            scaled = centered / norms
            # X.T @ X runs as a symmetric rank-k update: both triangles are identical
            corr = scaled.T @ scaled

    # all fixes below are in place; corr is the only n x n float matrix alive
    bad = np.isfinite(corr)
    np.logical_not(bad, out=bad)
    np.fill_diagonal(bad, False)
    undefined = np.where(bad.any(axis=1))[0].tolist()
    if undefined:
        logger.warning(f"[network] {len(undefined)} genes have undefined correlations; "
                       f"zero-filled")
    corr[bad] = 0.0
    del bad
    np.clip(corr, -1.0, 1.0, out=corr)
    np.fill_diagonal(corr, 1.0)
    return corr, undefined


def similarity_from_correlation(corr: np.ndarray, network_type: str = 'signed',
                                out: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Correlation → similarity in [0, 1].

        signed:        (1 + r) / 2
        unsigned:      |r|
        signed_hybrid: r if r > 0 else 0

    ``out`` (same shape as ``corr``) receives the result without a temporary.
    """
    if network_type == 'signed':
        out = np.add(corr, 1.0, out=out)
        out *= 0.5
        return out
    if network_type == 'unsigned':
        return np.abs(corr, out=out)
    if network_type == 'signed_hybrid':
        return np.maximum(corr, 0.0, out=out)
    raise ValueError(f"Unknown network type '{network_type}'. Use: {NETWORK_TYPES}")


def symmetrize_blocks(m: np.ndarray, block_size: int = 2000) -> np.ndarray:
    """
    Replace m by (m + m.T) / 2 in place, one row block at a time.

    Only a (block_size, n) temporary is allocated.
    """
    for s, e in chunk_ranges(m.shape[0], block_size):
        avg = m[s:e, s:] + m[s:, s:e].T
        avg *= 0.5
        m[s:e, s:] = avg
        m[s:, s:e] = avg.T
    return m


# ================================================================
# Scale-free fit
# ================================================================

def scale_free_fit(k: np.ndarray, n_breaks: int = 10) -> dict:
    """
    Scale-free topology fit index of a connectivity vector.

    Connectivity is binned into ``n_breaks`` equal-width bins; log10 of the
    bin frequency is regressed on log10 of the mean connectivity per bin
    (empty bins use the bin midpoint).

    Returns:
        dict with sft_r2, slope, truncated_r2
    """
    k = np.asarray(k, dtype=np.float64)
    k = k[np.isfinite(k)]
    nan_fit = {'sft_r2': np.nan, 'slope': np.nan, 'truncated_r2': np.nan}
    if k.size < 2 or np.ptp(k) <= _EPS:
        return nan_fit

    edges = np.linspace(k.min(), k.max(), n_breaks + 1)
    # right-closed bins, lowest value falls in the first bin
    bins = np.clip(np.searchsorted(edges, k, side='left') - 1, 0, n_breaks - 1)
    counts = np.bincount(bins, minlength=n_breaks).astype(np.float64)
    sums = np.bincount(bins, weights=k, minlength=n_breaks)
    mids = (edges[:-1] + edges[1:]) / 2.0

    with np.errstate(invalid='ignore', divide='ignore'):
        dk = np.where(counts > 0, sums / counts, mids)
    dk = np.where(dk == 0, mids, dk)
    p_dk = counts / k.size

    ok = dk > 0
    if ok.sum() < 3:
        return nan_fit
    log_dk = np.log10(dk[ok])
    log_p = np.log10(p_dk[ok] + 1e-9)

    fit = stats.linregress(log_dk, log_p)
    r2 = float(fit.rvalue ** 2)

    # truncated exponential fit: log p ~ log k + k, adjusted R²
    design = np.column_stack([np.ones_like(log_dk), log_dk, dk[ok]])
    coef, _, rank, _ = np.linalg.lstsq(design, log_p, rcond=None)
    resid = log_p - design @ coef
    ss_res = float((resid ** 2).sum())
    ss_tot = float(((log_p - log_p.mean()) ** 2).sum())
    n_obs = len(log_p)
    if ss_tot > 0 and n_obs - rank > 0:
        trunc = 1.0 - (ss_res / (n_obs - rank)) / (ss_tot / (n_obs - 1))
    else:
        trunc = np.nan

    return {'sft_r2': r2, 'slope': float(fit.slope), 'truncated_r2': float(trunc)}


# ================================================================
# Soft Threshold Selector
# ================================================================

def _connectivity_block(sim: np.ndarray, start: int, stop: int,
                        powers: Sequence[int], out: np.ndarray):
    """Fill out[:, start:stop] with per-power connectivity of rows start..stop."""
    block = sim[start:stop].copy()
    block[np.arange(stop - start), np.arange(start, stop)] = 0.0
    for i, p in enumerate(powers):
        out[i, start:stop] = (block ** p).sum(axis=1)


class SoftThresholdSelector:
    """
    Scans candidate powers and reports the scale-free fit curve.

    The selector only reports the table; choosing a power from it is a
    policy decision (see ``select_power``).
    """

    def __init__(self, powers: Sequence[int], network_type: str = 'signed',
                 n_breaks: int = 10, block_size: int = 2000,
                 parallel: bool = True, n_jobs: int = -1):
        self.powers = [int(p) for p in powers]
        self.network_type = network_type
        self.n_breaks = int(n_breaks)
        self.block_size = int(block_size)
        self.n_jobs = n_jobs if parallel else 1

    def connectivity(self, corr: np.ndarray) -> np.ndarray:
        """(n_powers, n_genes) whole-network connectivity for each power."""
        sim = similarity_from_correlation(corr, self.network_type)
        n = sim.shape[0]
        out = np.zeros((len(self.powers), n), dtype=np.float64)
        ranges = chunk_ranges(n, self.block_size)
        Parallel(n_jobs=self.n_jobs, prefer="threads")(
            delayed(_connectivity_block)(sim, s, e, self.powers, out)
            for s, e in ranges
        )
        return out

    def scan(self, expr) -> pd.DataFrame:
        """
        Args:
            expr: samples × genes

        Returns:
            DataFrame with columns power, sft_r2, slope, signed_r2,
            truncated_r2, mean_k, median_k, max_k (one row per power)
        """
        corr, _ = correlation_matrix(expr)
        return self.scan_correlation(corr)

    def scan_correlation(self, corr: np.ndarray) -> pd.DataFrame:
        """Same as ``scan`` for a precomputed gene × gene correlation."""
        k_all = self.connectivity(corr)

        rows = []
        for i, p in enumerate(tqdm(self.powers, desc="Soft-threshold scan")):
            k = k_all[i]
            fit = scale_free_fit(k, self.n_breaks)
            slope = fit['slope']
            signed_r2 = -np.sign(slope) * fit['sft_r2'] if np.isfinite(slope) else np.nan
            rows.append({
                'power': p,
                'sft_r2': fit['sft_r2'],
                'slope': slope,
                'signed_r2': signed_r2,
                'truncated_r2': fit['truncated_r2'],
                'mean_k': float(np.mean(k)),
                'median_k': float(np.median(k)),
                'max_k': float(np.max(k)),
            })

        table = pd.DataFrame(rows)
        logger.info(f"[network] Soft-threshold scan over {len(self.powers)} powers "
                    f"({self.network_type})")
        return table


def select_power(table: pd.DataFrame, r2_cutoff: float = 0.90,
                 mean_k_cutoff: Optional[float] = None) -> Optional[int]:
    """
    Smallest power whose signed R² reaches ``r2_cutoff`` (and whose mean
    connectivity is at most ``mean_k_cutoff`` when given).

    Returns:
        power, or None if no power qualifies
    """
    ok = table['signed_r2'].to_numpy(dtype=float) >= r2_cutoff
    if mean_k_cutoff is not None:
        ok &= table['mean_k'].to_numpy(dtype=float) <= mean_k_cutoff
    if not ok.any():
        return None
    return int(table.loc[ok, 'power'].min())


# ================================================================
# Adjacency Builder
# ================================================================

class AdjacencyBuilder:
    """
    Expression → weighted adjacency (similarity ** power, zero diagonal).
    """

    def __init__(self, power: int, network_type: str = 'signed', dtype: str = 'float64'):
        if network_type not in NETWORK_TYPES:
            raise ValueError(f"Unknown network type '{network_type}'. Use: {NETWORK_TYPES}")
        self.power = int(power)
        self.network_type = network_type
        self.dtype = np.dtype(dtype)
        self.undefined_genes: List[int] = []

    def build(self, expr) -> np.ndarray:
        corr, self.undefined_genes = correlation_matrix(expr)
        return self.from_correlation(corr)

    def from_correlation(self, corr: np.ndarray) -> np.ndarray:
        """Adjacency as one new matrix of ``dtype``; ``corr`` must be symmetric."""
        adj = np.empty(corr.shape, dtype=self.dtype)
        similarity_from_correlation(corr, self.network_type, out=adj)
        np.power(adj, self.power, out=adj)
        np.fill_diagonal(adj, 0.0)
        np.clip(adj, 0.0, 1.0, out=adj)
        return adj


def soft_connectivity(adj: np.ndarray) -> np.ndarray:
    """Row sums of a zero-diagonal adjacency."""
    return np.asarray(adj).sum(axis=1, dtype=np.float64)


# ================================================================
# Topological Overlap
# ================================================================

def _tom_block(adj: np.ndarray, k: np.ndarray, start: int, stop: int,
               out: np.ndarray) -> List[int]:
    """
    TOM for rows start..stop written into out[start:stop].

    Returns:
        row indices whose denominator collapsed off the diagonal
    """
    rows, cols = np.arange(stop - start), np.arange(start, stop)
    a = adj[start:stop]
    block = out[start:stop]
    np.matmul(a, adj, out=block)
    block += a

    denom = np.minimum.outer(k[start:stop], k)
    denom += 1.0
    denom -= a
    collapsed = denom <= _EPS
    collapsed[rows, cols] = False
    denom[collapsed] = 1.0
    block /= denom
    del denom
    block[collapsed] = 0.0
    np.clip(block, 0.0, 1.0, out=block)
    block[rows, cols] = 1.0
    return (np.where(collapsed.any(axis=1))[0] + start).tolist()


class TopologicalOverlapComputer:
    """
    Adjacency → topological overlap matrix.

        TOM[i,j] = (sum_u a[i,u] a[u,j] + a[i,j]) / (min(k_i, k_j) + 1 - a[i,j])

    with k the adjacency row sums. A collapsed denominator yields 0 for that
    pair; isolated genes (k = 0) are reported in ``degenerate_genes``.

    Args:
        block_size: rows per block
        parallel / n_jobs: joblib thread pool over blocks
        dtype: output dtype ('float64' or 'float32')
        strict: raise NumericalDegeneracyError instead of zero-filling
    """

    def __init__(self, block_size: int = 2000, parallel: bool = True, n_jobs: int = -1,
                 dtype: str = 'float64', strict: bool = False):
        self.block_size = int(block_size)
        self.n_jobs = n_jobs if parallel else 1
        self.dtype = np.dtype(dtype)
        self.strict = strict
        self.degenerate_genes: List[int] = []

    def compute(self, adj: np.ndarray) -> np.ndarray:
        adj = np.asarray(adj)
        n = adj.shape[0]
        if adj.ndim != 2 or adj.shape[1] != n:
            raise ValueError(f"Adjacency must be square, got {adj.shape}")

        # blocks are written straight into `out`; adj must already match its dtype
        if adj.dtype != self.dtype or np.any(np.diagonal(adj) != 0):
            adj = np.array(adj, dtype=self.dtype)
            np.fill_diagonal(adj, 0)
        k = soft_connectivity(adj)
        out = np.empty((n, n), dtype=self.dtype)

        ranges = chunk_ranges(n, self.block_size)
        collapsed = Parallel(n_jobs=self.n_jobs, prefer="threads")(
            delayed(_tom_block)(adj, k, s, e, out)
            for s, e in tqdm(ranges, desc="TOM blocks", disable=len(ranges) < 2)
        )
        collapsed = sorted({i for rows in collapsed for i in rows})
        isolated = np.where(k <= _EPS)[0].tolist()
        self.degenerate_genes = sorted(set(collapsed) | set(isolated))

        if self.degenerate_genes:
            if self.strict:
                raise NumericalDegeneracyError(
                    f"TOM denominator collapsed for {len(self.degenerate_genes)} genes",
                    stage='tom', details={'genes': self.degenerate_genes})
            logger.warning(f"[network] {len(self.degenerate_genes)} isolated genes: "
                           f"overlap with all other genes set to 0")

        # blocks are computed independently; restore exact symmetry
        return symmetrize_blocks(out, self.block_size)


def tom_dissimilarity(tom: np.ndarray) -> np.ndarray:
    """1 - TOM as a new matrix, zero diagonal."""
    diss = 1.0 - tom
    np.fill_diagonal(diss, 0.0)
    np.clip(diss, 0.0, 1.0, out=diss)
    return diss


# ================================================================
# Standalone Functions
# ================================================================

def pick_soft_threshold(expr, powers: Sequence[int], network_type: str = 'signed',
                        n_breaks: int = 10, **kwargs) -> pd.DataFrame:
    return SoftThresholdSelector(powers, network_type, n_breaks, **kwargs).scan(expr)


def adjacency(expr, power: int, network_type: str = 'signed',
              dtype: str = 'float64') -> np.ndarray:
    return AdjacencyBuilder(power, network_type, dtype).build(expr)


def tom_similarity(adj: np.ndarray, **kwargs) -> np.ndarray:
    return TopologicalOverlapComputer(**kwargs).compute(adj)
