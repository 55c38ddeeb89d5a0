"""
Hierarchical clustering and dynamic branch cutting.

HierarchicalClusterer builds an average-linkage dendrogram from a
dissimilarity matrix (scipy). DynamicModuleDetector walks that dendrogram
bottom-up and cuts it adaptively into modules; genes that do not end up in
a confirmed branch are left unassigned ('grey').
"""

import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from scipy.cluster.hierarchy import linkage, leaves_list
from scipy.spatial.distance import squareform

logger = logging.getLogger(__name__)


UNASSIGNED = 'grey'

MODULE_COLORS = [
    'turquoise', 'blue', 'brown', 'yellow', 'green', 'red', 'black', 'pink',
    'magenta', 'purple', 'greenyellow', 'tan', 'salmon', 'cyan', 'midnightblue',
    'lightcyan', 'grey60', 'lightgreen', 'lightyellow', 'royalblue', 'darkred',
    'darkgreen', 'darkturquoise', 'darkgrey', 'orange', 'darkorange', 'white',
    'skyblue', 'saddlebrown', 'steelblue', 'paleturquoise', 'violet',
    'darkolivegreen', 'darkmagenta', 'sienna3', 'yellowgreen', 'skyblue3',
    'plum1', 'orangered4', 'mediumpurple3', 'lightsteelblue1', 'lightcyan1',
    'ivory', 'floralwhite', 'darkorange2', 'brown4', 'bisque4', 'darkslateblue',
    'plum2', 'thistle2', 'thistle1', 'salmon4', 'palevioletred3', 'navajowhite2',
    'maroon', 'lightpink4', 'lavenderblush3', 'honeydew1', 'darkseagreen4', 'coral1',
]

# deep_split 0..4 → maximum core scatter (fraction of the height range)
_DEFAULT_MAX_CORE_SCATTER = [0.64, 0.73, 0.82, 0.91, 0.95]
_DEFAULT_MIN_GAP = [(1.0 - s) * 3.0 / 4.0 for s in _DEFAULT_MAX_CORE_SCATTER]


def labels_to_colors(labels: Sequence[int]) -> List[str]:
    """Integer labels (0 = unassigned, 1 = largest module) → colour names."""
    out = []
    for lab in labels:
        lab = int(lab)
        if lab <= 0:
            out.append(UNASSIGNED)
        elif lab <= len(MODULE_COLORS):
            out.append(MODULE_COLORS[lab - 1])
        else:
            out.append(f"color{lab}")
    return out


# ================================================================
# Data Structures
# ================================================================

@dataclass
class Dendrogram:
    """
    Binary merge tree over genes.

    Attributes:
        linkage: (n-1, 4) scipy linkage matrix
        labels: leaf identifiers in matrix order
    """
    linkage: np.ndarray
    labels: List[str]

    @property
    def n_leaves(self) -> int:
        return len(self.labels)

    @property
    def heights(self) -> np.ndarray:
        return self.linkage[:, 2]

    def leaf_order(self) -> List[str]:
        return [self.labels[i] for i in leaves_list(self.linkage)]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.linkage, columns=['left', 'right', 'height', 'size'])

    def __repr__(self) -> str:
        h = self.heights
        rng = f"{h.min():.3f}~{h.max():.3f}" if len(h) else "n/a"
        return f"Dendrogram(n_leaves={self.n_leaves}, heights={rng})"


@dataclass
class ModuleAssignment:
    """
    Gene → module label. ``UNASSIGNED`` marks genes in no module.

    Attributes:
        labels: Series indexed by gene id with colour labels
    """
    labels: pd.Series

    @classmethod
    def from_labels(cls, genes: Sequence[str], labels: Sequence[str]) -> 'ModuleAssignment':
        return cls(pd.Series(list(labels), index=pd.Index(list(genes), name='gene'),
                             name='module'))

    @property
    def genes(self) -> List[str]:
        return self.labels.index.tolist()

    def sizes(self) -> pd.Series:
        """Module sizes, largest first (unassigned excluded)."""
        counts = self.labels[self.labels != UNASSIGNED].value_counts()
        return counts.sort_values(ascending=False, kind='mergesort')

    def modules(self) -> List[str]:
        return self.sizes().index.tolist()

    @property
    def n_modules(self) -> int:
        return len(self.modules())

    @property
    def n_unassigned(self) -> int:
        return int((self.labels == UNASSIGNED).sum())

    def members(self, module: str) -> List[str]:
        return self.labels.index[self.labels == module].tolist()

    def gene_lists(self) -> Dict[str, List[str]]:
        return {m: self.members(m) for m in self.modules()}

    def to_frame(self) -> pd.DataFrame:
        return self.labels.rename('module').to_frame()

    def __repr__(self) -> str:
        return (f"ModuleAssignment(n_genes={len(self.labels)}, "
                f"n_modules={self.n_modules}, unassigned={self.n_unassigned})")


# ================================================================
# Hierarchical Clusterer
# ================================================================

class HierarchicalClusterer:
    """
    Agglomerative clustering of a square dissimilarity matrix.
    """

    def __init__(self, method: str = 'average'):
        self.method = method

    def cluster(self, dissimilarity, labels: Optional[Sequence[str]] = None) -> Dendrogram:
        """
        Args:
            dissimilarity: (n, n) symmetric matrix or DataFrame
            labels: leaf identifiers (defaults to DataFrame index or 0..n-1)
        """
        if isinstance(dissimilarity, pd.DataFrame):
            if labels is None:
                labels = dissimilarity.index.astype(str).tolist()
            dissimilarity = dissimilarity.to_numpy()
        d = np.asarray(dissimilarity)
        n = d.shape[0]
        if labels is None:
            labels = [str(i) for i in range(n)]
        if n < 2:
            raise ValueError(f"Need at least 2 items to cluster, got {n}")

        # symmetric: the transpose of a Fortran-ordered matrix is a C-ordered view
        if not d.flags.c_contiguous and d.flags.f_contiguous:
            d = d.T
        # only the upper triangle is read; the diagonal is ignored
        condensed = squareform(d, checks=False).astype(np.float64, copy=False)
        Z = linkage(condensed, method=self.method)
        return Dendrogram(linkage=Z, labels=list(labels))


# ================================================================
# Dynamic Module Detector
# ================================================================

class _Branch:
    """Bookkeeping for one dendrogram branch during the bottom-up walk."""

    __slots__ = ('is_basic', 'is_top_basic', 'singletons', 'basic_clusters',
                 'size', 'attach_height')

    def __init__(self, singletons=None, basic_clusters=None, is_basic=True, size=0):
        self.is_basic = is_basic
        self.is_top_basic = is_basic
        self.singletons = list(singletons or [])
        self.basic_clusters = list(basic_clusters or [])
        self.size = size
        self.attach_height = None


def _core_size(n_singletons: int, min_size: int) -> int:
    base = min_size / 2.0 + 1.0
    if base < n_singletons:
        return int(base + np.sqrt(n_singletons - base))
    return n_singletons


class DynamicModuleDetector:
    """
    Adaptive dendrogram cut (tree variant of the hybrid dynamic tree cut).

    Branches are merged bottom-up; a basic branch (one built only from
    singletons) is absorbed by its sibling when it is too small, too
    scattered, not separated by a large enough gap, or joins below the
    minimum split height. Otherwise the two branches become parts of a
    composite branch and are never relabelled at a higher level.

    Args:
        min_module_size: minimum genes per module
        deep_split: 0 (coarse) .. 4 (fine)
        cut_height: maximum joining height; default 99% of the range above
            the 5th-percentile merge height
    """

    def __init__(self, min_module_size: int = 35, deep_split: float = 2,
                 cut_height: Optional[float] = None):
        self.min_module_size = int(min_module_size)
        self.deep_split = deep_split
        self.cut_height = cut_height

    def cut(self, dendrogram: Dendrogram, dissimilarity) -> ModuleAssignment:
        labels = self.cut_labels(dendrogram, dissimilarity)
        return ModuleAssignment.from_labels(dendrogram.labels, labels_to_colors(labels))

    def cut_labels(self, dendrogram: Dendrogram, dissimilarity) -> np.ndarray:
        """
        Returns:
            (n,) integer labels; 0 = unassigned, 1 = largest module
        """
        if isinstance(dissimilarity, pd.DataFrame):
            dissimilarity = dissimilarity.to_numpy()
        D = np.asarray(dissimilarity)
        Z = dendrogram.linkage
        n = dendrogram.n_leaves
        heights = Z[:, 2]
        n_merge = len(heights)
        min_size = self.min_module_size

        sorted_h = np.sort(heights)
        ref_merge = max(int(round(n_merge * 0.05)), 1)
        ref_height = sorted_h[ref_merge - 1]
        max_height = sorted_h[-1]
        if self.cut_height is None:
            cut_height = 0.99 * (max_height - ref_height) + ref_height
        else:
            cut_height = min(float(self.cut_height), max_height)

        n_below = int((heights <= cut_height).sum())
        if n_below < min_size:
            logger.info(f"[modules] Only {n_below} merges below cut height "
                        f"{cut_height:.4f}; all genes unassigned")
            return np.zeros(n, dtype=int)

        max_core_scatter = float(np.interp(self.deep_split, range(5), _DEFAULT_MAX_CORE_SCATTER))
        min_gap = float(np.interp(self.deep_split, range(5), _DEFAULT_MIN_GAP))
        max_abs_core_scatter = ref_height + max_core_scatter * (cut_height - ref_height)
        min_abs_gap = min_gap * (cut_height - ref_height)
        min_abs_split_height = ref_height

        def core_scatter(branch: _Branch) -> float:
            size = _core_size(len(branch.singletons), min_size)
            core = branch.singletons[:size]
            if size < 2:
                return 0.0
            sub = D[np.ix_(core, core)].astype(np.float64)
            return float(np.mean(sub.sum(axis=0) / (size - 1)))

        def fails(branch: _Branch, scatter: float, height: float) -> bool:
            return branch.is_basic and (branch.size < min_size
                                        or scatter > max_abs_core_scatter
                                        or height - scatter < min_abs_gap
                                        or height < min_abs_split_height)

        branches: List[_Branch] = []
        merge_to_branch = np.full(n_merge, -1, dtype=int)

        for m in range(n_merge):
            h = float(heights[m])
            if h > cut_height:
                continue
            a, b = int(Z[m, 0]), int(Z[m, 1])

            if a < n and b < n:
                branches.append(_Branch(singletons=[a, b], size=2))
                merge_to_branch[m] = len(branches) - 1

            elif a < n or b < n:
                gene, node = (a, b) if a < n else (b, a)
                cid = merge_to_branch[node - n]
                br = branches[cid]
                if br.is_basic:
                    br.singletons.append(gene)
                br.size += 1
                merge_to_branch[m] = cid

            else:
                c1, c2 = merge_to_branch[a - n], merge_to_branch[b - n]
                # ties keep the first child as the small branch
                small, large = (c1, c2) if branches[c1].size <= branches[c2].size else (c2, c1)
                bs, bl = branches[small], branches[large]
                s_scatter = core_scatter(bs) if bs.is_basic else 0.0
                l_scatter = core_scatter(bl) if bl.is_basic else 0.0

                if fails(bs, s_scatter, h):
                    do_merge = True
                elif fails(bl, l_scatter, h):
                    do_merge = True
                    small, large = large, small
                    bs, bl = bl, bs
                else:
                    do_merge = False

                if do_merge:
                    bs.attach_height = h
                    bs.is_top_basic = False
                    if bl.is_basic:
                        bl.singletons.extend(bs.singletons)
                    bl.size += bs.size
                    merge_to_branch[m] = large
                else:
                    if bl.is_basic and not bs.is_basic:
                        small, large = large, small
                        bs, bl = bl, bs
                    if bl.is_basic:
                        composite = _Branch(basic_clusters=[small, large], is_basic=False,
                                            size=bs.size + bl.size)
                        bs.attach_height = h
                        bl.attach_height = h
                        branches.append(composite)
                        merge_to_branch[m] = len(branches) - 1
                    else:
                        added = [small] if bs.is_basic else bs.basic_clusters
                        bl.basic_clusters.extend(added)
                        bs.attach_height = h
                        bl.size += bs.size
                        merge_to_branch[m] = large

        raw = np.zeros(n, dtype=int)
        next_label = 0
        for br in branches:
            if not br.is_top_basic:
                continue
            attach = cut_height if br.attach_height is None else br.attach_height
            scatter = core_scatter(br)
            if (br.size >= min_size and scatter < max_abs_core_scatter
                    and attach - scatter > min_abs_gap):
                next_label += 1
                raw[br.singletons] = next_label

        labels = _relabel_by_size(raw)
        logger.info(f"[modules] Dynamic cut: {labels.max()} modules, "
                    f"{int((labels == 0).sum())} unassigned "
                    f"(cut_height={cut_height:.4f}, deep_split={self.deep_split})")
        return labels


def _relabel_by_size(raw: np.ndarray) -> np.ndarray:
    """Renumber non-zero labels so 1 is the largest (ties by first label)."""
    ids = [lab for lab in np.unique(raw) if lab != 0]
    sizes = [(-(raw == lab).sum(), lab) for lab in ids]
    order = [lab for _, lab in sorted(sizes)]
    out = np.zeros_like(raw)
    for new, old in enumerate(order, start=1):
        out[raw == old] = new
    return out


# ================================================================
# Standalone Functions
# ================================================================

def hierarchical_clustering(dissimilarity, labels=None, method: str = 'average') -> Dendrogram:
    return HierarchicalClusterer(method).cluster(dissimilarity, labels)


def cut_tree_dynamic(dendrogram: Dendrogram, dissimilarity, min_module_size: int = 35,
                     deep_split: float = 2, cut_height: Optional[float] = None) -> ModuleAssignment:
    return DynamicModuleDetector(min_module_size, deep_split, cut_height).cut(dendrogram,
                                                                             dissimilarity)
