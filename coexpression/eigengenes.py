"""
Module eigengenes, module merging and module membership.

EigengeneCalculator summarises each module by the first principal component
of its standardised member genes. ModuleMerger clusters eigengenes on
1 - correlation and merges modules joined below a threshold, repeating until
nothing merges. Membership (kME), intramodular connectivity and hub genes are
derived from eigengenes and the expression matrix.
"""

import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from scipy.cluster.hierarchy import fcluster

from .clustering import UNASSIGNED, Dendrogram, HierarchicalClusterer, ModuleAssignment
from .errors import DegenerateDataError
from .network import AdjacencyBuilder
from .traits import correlation_pvalue

logger = logging.getLogger(__name__)


ME_PREFIX = 'ME'


def me_name(module: str) -> str:
    return f"{ME_PREFIX}{module}"


def module_from_me(name: str) -> str:
    return name[len(ME_PREFIX):] if name.startswith(ME_PREFIX) else name


def standardize(values: np.ndarray) -> np.ndarray:
    """Column z-scores (ddof=1); missing values imputed with the column mean (0)."""
    values = np.asarray(values, dtype=np.float64)
    mean = np.nanmean(values, axis=0)
    sd = np.nanstd(values, axis=0, ddof=1)
    sd = np.where(np.isfinite(sd) & (sd > 0), sd, 1.0)
    z = (values - mean) / sd
    return np.where(np.isfinite(z), z, 0.0)


# ================================================================
# Data Structures
# ================================================================

@dataclass
class Eigengenes:
    """
    Attributes:
        eigengenes: samples × 'ME{module}' (unit-norm vectors)
        variance_explained: module → fraction of variance of the first PC
        average_expression: samples × 'AE{module}' mean standardised expression
    """
    eigengenes: pd.DataFrame
    variance_explained: pd.Series
    average_expression: pd.DataFrame

    @property
    def modules(self) -> List[str]:
        return [module_from_me(c) for c in self.eigengenes.columns]

    def get(self, module: str) -> pd.Series:
        return self.eigengenes[me_name(module)]

    def __len__(self) -> int:
        return self.eigengenes.shape[1]

    def __repr__(self) -> str:
        return (f"Eigengenes(n_modules={len(self)}, "
                f"n_samples={self.eigengenes.shape[0]})")


@dataclass
class MergeResult:
    """
    Output of ModuleMerger.

    Attributes:
        assignment / eigengenes: merged modules
        old_assignment / old_eigengenes: input modules
        dendrogram: eigengene dendrogram of the input modules (None if < 2)
        merge_map: input label → merged label
        n_iterations: merge passes (the last one merges nothing)
    """
    assignment: ModuleAssignment
    eigengenes: Eigengenes
    old_assignment: ModuleAssignment
    old_eigengenes: Eigengenes
    dendrogram: Optional[Dendrogram]
    merge_map: Dict[str, str] = field(default_factory=dict)
    n_iterations: int = 0
    threshold: float = 0.0

    @property
    def n_merged(self) -> int:
        return self.old_assignment.n_modules - self.assignment.n_modules

    def __repr__(self) -> str:
        return (f"MergeResult(modules={self.old_assignment.n_modules}→"
                f"{self.assignment.n_modules}, threshold={self.threshold}, "
                f"iterations={self.n_iterations})")


# ================================================================
# Eigengene Calculator
# ================================================================

class EigengeneCalculator:
    """
    First principal component per module.

    The sign is fixed so each eigengene correlates positively with its
    module's average standardised expression. A single-gene module uses
    that gene's standardised profile (scaled to unit norm).
    """

    def __init__(self, include_unassigned: bool = False):
        self.include_unassigned = include_unassigned

    def compute(self, expr: pd.DataFrame, assignment: ModuleAssignment) -> Eigengenes:
        modules = assignment.modules()
        if self.include_unassigned and assignment.n_unassigned > 0:
            modules = modules + [UNASSIGNED]

        me_cols, ae_cols, var_exp = {}, {}, {}
        for module in modules:
            genes = assignment.members(module)
            pc, avg, ve = self._eigengene(expr[genes].to_numpy(), module)
            me_cols[me_name(module)] = pc
            ae_cols[f"AE{module}"] = avg
            var_exp[module] = ve

        eig = pd.DataFrame(me_cols, index=expr.index)
        avg = pd.DataFrame(ae_cols, index=expr.index)
        return Eigengenes(eigengenes=eig,
                          variance_explained=pd.Series(var_exp, name='variance_explained',
                                                       dtype=float),
                          average_expression=avg)

    def _eigengene(self, values: np.ndarray, module: str):
        z = standardize(values)
        average = z.mean(axis=1)

        if z.shape[1] == 1:
            logger.info(f"[eigengenes] Module '{module}' has a single gene; "
                        f"using its standardised profile")
            pc = z[:, 0].copy()
            norm = np.linalg.norm(pc)
            if norm <= 0:
                raise DegenerateDataError(f"Eigengene of module '{module}' is undefined "
                                          f"(constant single gene)", stage='eigengenes',
                                          details={'module': module})
            return pc / norm, average, 1.0

        try:
            u, s, _ = np.linalg.svd(z, full_matrices=False)
        except np.linalg.LinAlgError as e:
            raise DegenerateDataError(f"SVD failed for module '{module}': {e}",
                                      stage='eigengenes', details={'module': module}) from e
        total = float((s ** 2).sum())
        if total <= 0:
            raise DegenerateDataError(f"Eigengene of module '{module}' is undefined "
                                      f"(no variance)", stage='eigengenes',
                                      details={'module': module, 'n_genes': z.shape[1]})
        pc = u[:, 0]
        if np.dot(pc - pc.mean(), average - average.mean()) < 0:
            pc = -pc
        return pc, average, float(s[0] ** 2 / total)


# ================================================================
# Module Merger
# ================================================================

class ModuleMerger:
    """
    Merges modules whose eigengenes are too similar.

    Eigengene dissimilarity is 1 - Pearson correlation; modules joined by
    average linkage at a height <= ``threshold`` are merged. The merged
    module keeps the label of its largest member module. Repeats until a
    pass merges nothing, so merging an already merged assignment is a no-op.
    """

    def __init__(self, threshold: float = 0.10, calculator: Optional[EigengeneCalculator] = None,
                 max_iterations: int = 20):
        self.threshold = float(threshold)
        self.calculator = calculator or EigengeneCalculator()
        self.clusterer = HierarchicalClusterer('average')
        self.max_iterations = max_iterations

    def merge(self, expr: pd.DataFrame, assignment: ModuleAssignment,
              eigengenes: Optional[Eigengenes] = None) -> MergeResult:
        old_me = eigengenes if eigengenes is not None else self.calculator.compute(expr, assignment)
        current, current_me = assignment, old_me
        merge_map = {m: m for m in assignment.modules()}
        first_dendro = None
        n_iter = 0

        while n_iter < self.max_iterations:
            n_iter += 1
            modules = current.modules()
            if len(modules) < 2:
                break
            dendro = self.eigengene_dendrogram(current_me)
            if first_dendro is None:
                first_dendro = dendro

            groups = fcluster(dendro.linkage, t=self.threshold, criterion='distance')
            if len(set(groups)) == len(modules):
                break

            rename = self._rename_map(current, dendro.labels, groups)
            new_labels = current.labels.map(lambda m: rename.get(m, m))
            current = ModuleAssignment(new_labels.rename('module'))
            merge_map = {orig: rename.get(cur, cur) for orig, cur in merge_map.items()}
            current_me = self.calculator.compute(expr, current)
            logger.info(f"[merge] Pass {n_iter}: {len(modules)} → {current.n_modules} modules")

        result = MergeResult(assignment=current, eigengenes=current_me,
                             old_assignment=assignment, old_eigengenes=old_me,
                             dendrogram=first_dendro, merge_map=merge_map,
                             n_iterations=n_iter, threshold=self.threshold)
        logger.info(f"[merge] {result}")
        return result

    def eigengene_dendrogram(self, eigengenes: Eigengenes) -> Dendrogram:
        me = eigengenes.eigengenes.drop(columns=[me_name(UNASSIGNED)], errors='ignore')
        corr = me.corr().to_numpy()
        diss = 1.0 - np.nan_to_num(corr, nan=0.0)
        return self.clusterer.cluster(diss, labels=[module_from_me(c) for c in me.columns])

    @staticmethod
    def _rename_map(assignment: ModuleAssignment, modules: List[str],
                    groups: np.ndarray) -> Dict[str, str]:
        sizes = assignment.sizes()
        rename = {}
        for g in np.unique(groups):
            members = [m for m, gg in zip(modules, groups) if gg == g]
            if len(members) < 2:
                continue
            # sizes is ordered largest first, stable on ties
            target = next(m for m in sizes.index if m in members)
            for m in members:
                rename[m] = target
        return rename


# ================================================================
# Module membership / connectivity
# ================================================================

def module_membership(expr: pd.DataFrame, eigengenes: Eigengenes, min_samples: int = 3):
    """
    kME: correlation of every gene with every module eigengene.

    Returns:
        (kme, pvalue) DataFrames genes × 'kME{module}'
    """
    corr, pval, _ = correlation_pvalue(expr, eigengenes.eigengenes, min_samples=min_samples)
    cols = {c: f"kME{module_from_me(c)}" for c in corr.columns}
    return corr.rename(columns=cols), pval.rename(columns=cols)


def intramodular_connectivity(expr: pd.DataFrame, assignment: ModuleAssignment,
                              power: int, network_type: str = 'signed',
                              k_total: Optional[pd.Series] = None) -> pd.DataFrame:
    """
    Per-gene connectivity within its own module (adjacency rebuilt on the
    module's genes only).

    Returns:
        DataFrame genes × [module, k_within, k_total, k_out, k_diff]
        (k_total / k_out / k_diff only when ``k_total`` is given)
    """
    builder = AdjacencyBuilder(power, network_type)
    k_within = pd.Series(np.nan, index=assignment.labels.index, dtype=float)
    for module in assignment.modules():
        genes = assignment.members(module)
        if len(genes) < 2:
            k_within.loc[genes] = 0.0
            continue
        adj = builder.build(expr[genes])
        k_within.loc[genes] = adj.sum(axis=1)

    out = pd.DataFrame({'module': assignment.labels, 'k_within': k_within})
    if k_total is not None:
        out['k_total'] = k_total.reindex(out.index).astype(float)
        out['k_out'] = out['k_total'] - out['k_within']
        out['k_diff'] = out['k_within'] - out['k_out']
    return out


def hub_genes(kme: pd.DataFrame, assignment: ModuleAssignment, n: int = 10) -> Dict[str, List[str]]:
    """Top ``n`` genes by kME within each module."""
    hubs = {}
    for module in assignment.modules():
        col = f"kME{module}"
        if col not in kme.columns:
            continue
        members = assignment.members(module)
        ranked = kme.loc[members, col].sort_values(ascending=False, kind='mergesort')
        hubs[module] = ranked.index[:n].tolist()
    return hubs


# ================================================================
# Standalone Functions
# ================================================================

def module_eigengenes(expr: pd.DataFrame, assignment: ModuleAssignment,
                      include_unassigned: bool = False) -> Eigengenes:
    return EigengeneCalculator(include_unassigned).compute(expr, assignment)


def merge_close_modules(expr: pd.DataFrame, assignment: ModuleAssignment,
                        threshold: float = 0.10) -> MergeResult:
    return ModuleMerger(threshold).merge(expr, assignment)
