"""
Differential-expression comparison records.

Each upstream comparison (e.g. infected vs control) is a ComparisonResult;
a ComparisonSet maps label → ComparisonResult and is passed explicitly to the
stages that need it. Classification, filtering and export are plain
functions over a single record.
"""

import logging
import os
import pandas as pd
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from .clustering import UNASSIGNED, ModuleAssignment
from .errors import InputShapeError
from .utils import ensure_dir, write_gene_list

logger = logging.getLogger(__name__)


LOG2FC_COLUMNS = ('log2FoldChange', 'log2fc', 'log2FC', 'logFC', 'log2_fold_change')
PADJ_COLUMNS = ('padj', 'adj.P.Val', 'FDR', 'fdr', 'qvalue', 'p_adj', 'padj_bh')
REGULATION = ('up', 'down', 'ns')


def _find_column(df: pd.DataFrame, candidates, what: str, label: str,
                 explicit: Optional[str] = None) -> str:
    if explicit is not None:
        if explicit not in df.columns:
            raise InputShapeError(f"Comparison '{label}': column '{explicit}' not found",
                                  stage='comparisons', details={'columns': list(df.columns)})
        return explicit
    for col in candidates:
        if col in df.columns:
            return col
    raise InputShapeError(f"Comparison '{label}': no {what} column (tried {list(candidates)})",
                          stage='comparisons', details={'columns': list(df.columns)})


# ================================================================
# Data Structures
# ================================================================

@dataclass(frozen=True)
class ComparisonResult:
    """
    One differential-expression comparison.

    Attributes:
        label: comparison name
        table: genes × ['log2fc', 'padj'] (extra columns kept)
    """
    label: str
    table: pd.DataFrame

    @classmethod
    def from_table(cls, label: str, df: pd.DataFrame, log2fc_col: Optional[str] = None,
                   padj_col: Optional[str] = None) -> 'ComparisonResult':
        fc = _find_column(df, LOG2FC_COLUMNS, 'log2 fold change', label, log2fc_col)
        pa = _find_column(df, PADJ_COLUMNS, 'adjusted p-value', label, padj_col)
        table = df.rename(columns={fc: 'log2fc', pa: 'padj'}).copy()
        table.index = table.index.astype(str)
        table['log2fc'] = pd.to_numeric(table['log2fc'], errors='coerce')
        table['padj'] = pd.to_numeric(table['padj'], errors='coerce')
        return cls(label=label, table=table)

    @property
    def genes(self) -> List[str]:
        return self.table.index.tolist()

    def __repr__(self) -> str:
        return f"ComparisonResult(label='{self.label}', n_genes={len(self.table)})"


class ComparisonSet(Mapping):
    """Explicit label → ComparisonResult mapping."""

    def __init__(self, results: Optional[Dict[str, ComparisonResult]] = None):
        self._results = dict(results or {})

    @classmethod
    def from_tables(cls, tables: Dict[str, pd.DataFrame]) -> 'ComparisonSet':
        return cls({label: ComparisonResult.from_table(label, df)
                    for label, df in tables.items()})

    def __getitem__(self, label: str) -> ComparisonResult:
        return self._results[label]

    def __iter__(self) -> Iterator[str]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def add(self, result: ComparisonResult) -> 'ComparisonSet':
        """New set with ``result`` added (or replaced)."""
        results = dict(self._results)
        results[result.label] = result
        return ComparisonSet(results)

    def summary(self, log2fc_threshold: float = 1.0, padj_threshold: float = 0.05) -> pd.DataFrame:
        rows = []
        for label, result in self.items():
            counts = classify_regulation(result, log2fc_threshold, padj_threshold).value_counts()
            rows.append({'comparison': label, 'n_genes': len(result.table),
                         **{f"n_{r}": int(counts.get(r, 0)) for r in REGULATION}})
        return pd.DataFrame(rows, columns=['comparison', 'n_genes', 'n_up', 'n_down', 'n_ns'])

    def __repr__(self) -> str:
        return f"ComparisonSet({list(self._results)})"


# ================================================================
# Per-comparison functions
# ================================================================

def classify_regulation(result: ComparisonResult, log2fc_threshold: float = 1.0,
                        padj_threshold: float = 0.05) -> pd.Series:
    """
    'up' / 'down' when padj < padj_threshold and |log2fc| >= log2fc_threshold,
    otherwise 'ns' (missing values are 'ns').
    """
    t = result.table
    sig = (t['padj'] < padj_threshold) & (t['log2fc'].abs() >= log2fc_threshold)
    out = pd.Series('ns', index=t.index, name='regulation')
    out[sig & (t['log2fc'] > 0)] = 'up'
    out[sig & (t['log2fc'] < 0)] = 'down'
    return out


def filter_significant(result: ComparisonResult, log2fc_threshold: float = 1.0,
                       padj_threshold: float = 0.05,
                       direction: Optional[str] = None) -> pd.DataFrame:
    """Significant rows (optionally only 'up' or 'down'), sorted by padj."""
    reg = classify_regulation(result, log2fc_threshold, padj_threshold)
    if direction is None:
        keep = reg != 'ns'
    elif direction in ('up', 'down'):
        keep = reg == direction
    else:
        raise ValueError(f"direction must be 'up', 'down' or None, got {direction!r}")
    out = result.table.loc[keep].copy()
    out['regulation'] = reg[keep]
    return out.sort_values('padj', kind='mergesort')


def export_gene_lists(result: ComparisonResult, out_dir: str, log2fc_threshold: float = 1.0,
                      padj_threshold: float = 0.05) -> Dict[str, str]:
    """
    Write {label}_up.txt, {label}_down.txt and {label}_significant.txt
    (one gene id per line).
    """
    ensure_dir(out_dir)
    sig = filter_significant(result, log2fc_threshold, padj_threshold)
    paths = {}
    for name, genes in (('up', sig.index[sig['regulation'] == 'up']),
                        ('down', sig.index[sig['regulation'] == 'down']),
                        ('significant', sig.index)):
        paths[name] = write_gene_list(os.path.join(out_dir, f"{result.label}_{name}.txt"), genes)
    logger.info(f"[comparisons] '{result.label}': {int((sig['regulation'] == 'up').sum())} up, "
                f"{int((sig['regulation'] == 'down').sum())} down")
    return paths


def module_overlap(comparisons: ComparisonSet, assignment: ModuleAssignment,
                   log2fc_threshold: float = 1.0, padj_threshold: float = 0.05) -> pd.DataFrame:
    """
    Number of up / down regulated genes per module for every comparison.

    Returns:
        DataFrame modules × '{label}_up' / '{label}_down'
    """
    modules = assignment.modules() + [UNASSIGNED]
    cols = {}
    for label, result in comparisons.items():
        reg = classify_regulation(result, log2fc_threshold, padj_threshold)
        reg = reg.reindex(assignment.labels.index).fillna('ns')
        for direction in ('up', 'down'):
            hits = assignment.labels[reg == direction].value_counts()
            cols[f"{label}_{direction}"] = [int(hits.get(m, 0)) for m in modules]
    return pd.DataFrame(cols, index=pd.Index(modules, name='module'))
