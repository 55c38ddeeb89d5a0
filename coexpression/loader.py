"""
Data loading and sample alignment.

Class-based loading for expression matrices, trait tables and
differential-expression comparison tables. Everything is returned as pandas
DataFrames oriented samples × features.
"""

import logging
import os
import numpy as np
import pandas as pd
from typing import Dict, Optional

from .errors import InputShapeError

logger = logging.getLogger(__name__)


ORIENTATIONS = ('genes_x_samples', 'samples_x_genes')
_TRUE_TOKENS = {'1', 'true', 'yes', 'y', 't'}
_FALSE_TOKENS = {'0', 'false', 'no', 'n', 'f'}


def _read_table(path: str, sep: Optional[str] = None) -> pd.DataFrame:
    """Read CSV/TSV with identifiers in the first column."""
    if sep is None:
        lower = path.lower()
        if lower.endswith(('.tsv', '.txt', '.tab', '.tsv.gz', '.txt.gz')):
            sep = '\t'
        else:
            sep = ','
    return pd.read_csv(path, sep=sep, index_col=0)


def _check_unique(index: pd.Index, what: str, stage: str):
    dup = index[index.duplicated()].unique().tolist()
    if dup:
        raise InputShapeError(f"Duplicate {what} identifiers: {dup[:10]}",
                              stage=stage, details={f'duplicate_{what}': dup})


# ================================================================
# Expression Loader
# ================================================================

class ExpressionLoader:
    """
    Loads a numeric expression matrix from CSV/TSV.

    Expected format:
        first column: identifiers (genes or samples, see ``orientation``)
        header row:   the other axis' identifiers
    """

    def __init__(self, path: str, orientation: str = 'genes_x_samples',
                 sep: Optional[str] = None):
        """
        Args:
            path: Path to expression table
            orientation: 'genes_x_samples' (rows are genes) or 'samples_x_genes'
            sep: Column separator (None = infer from extension)
        """
        if orientation not in ORIENTATIONS:
            raise InputShapeError(f"Unknown orientation '{orientation}'. Use: {ORIENTATIONS}",
                                  stage='loader', details={'orientation': orientation})
        self.path = path
        self.orientation = orientation
        self.sep = sep
        self._expr = None

    def load(self) -> pd.DataFrame:
        """
        Returns:
            DataFrame samples × genes (float64)
        """
        if not os.path.isfile(self.path):
            raise FileNotFoundError(f"Expression file not found: {self.path}")
        logger.info(f"Loading expression: {self.path}")

        raw = _read_table(self.path, self.sep)
        expr = raw.T if self.orientation == 'genes_x_samples' else raw
        self._expr = to_expression_frame(expr, stage='loader')

        logger.info(f"Loaded expression: {self._expr.shape[0]} samples × "
                    f"{self._expr.shape[1]} genes")
        return self._expr

    @property
    def expression(self) -> Optional[pd.DataFrame]:
        """Return loaded expression (or None if not loaded)."""
        return self._expr


def to_expression_frame(expr: pd.DataFrame, stage: str = 'loader') -> pd.DataFrame:
    """Coerce a samples × genes frame to float, checking identifiers."""
    expr = expr.copy()
    expr.index = expr.index.astype(str)
    expr.columns = expr.columns.astype(str)
    _check_unique(expr.index, 'sample', stage)
    _check_unique(expr.columns, 'gene', stage)

    numeric = expr.apply(pd.to_numeric, errors='coerce')
    bad_cols = numeric.columns[(numeric.isna() & expr.notna()).any(axis=0)].tolist()
    if bad_cols:
        raise InputShapeError(f"Non-numeric expression values in genes: {bad_cols[:10]}",
                              stage=stage, details={'non_numeric_genes': bad_cols})
    numeric = numeric.replace([np.inf, -np.inf], np.nan)
    return numeric.astype(np.float64)


# ================================================================
# Trait Loader
# ================================================================

class TraitLoader:
    """
    Loads a samples × traits table. Binary text traits (yes/no, true/false)
    are coerced to 0/1; any other non-numeric column is rejected.
    """

    def __init__(self, path: str, sep: Optional[str] = None):
        self.path = path
        self.sep = sep
        self._traits = None

    def load(self) -> pd.DataFrame:
        if not os.path.isfile(self.path):
            raise FileNotFoundError(f"Trait file not found: {self.path}")
        logger.info(f"Loading traits: {self.path}")
        self._traits = encode_traits(_read_table(self.path, self.sep))
        logger.info(f"Loaded traits: {self._traits.shape[0]} samples × "
                    f"{self._traits.shape[1]} traits")
        return self._traits

    @property
    def traits(self) -> Optional[pd.DataFrame]:
        return self._traits


def encode_traits(traits: pd.DataFrame, stage: str = 'loader') -> pd.DataFrame:
    """Numeric/binary trait columns → float frame."""
    traits = traits.copy()
    traits.index = traits.index.astype(str)
    traits.columns = traits.columns.astype(str)
    _check_unique(traits.index, 'sample', stage)

    out = {}
    rejected = []
    for col in traits.columns:
        s = traits[col]
        if pd.api.types.is_bool_dtype(s):
            out[col] = s.astype(float)
            continue
        num = pd.to_numeric(s, errors='coerce')
        if not (num.isna() & s.notna()).any():
            out[col] = num.astype(float)
            continue
        tokens = s.dropna().astype(str).str.strip().str.lower()
        if tokens.isin(_TRUE_TOKENS | _FALSE_TOKENS).all():
            out[col] = s.map(lambda v: np.nan if pd.isna(v)
                             else float(str(v).strip().lower() in _TRUE_TOKENS))
            continue
        levels = tokens.unique()
        if len(levels) == 2:
            # two arbitrary levels: first level in sorted order → 0
            lo = sorted(levels)[0]
            out[col] = s.map(lambda v: np.nan if pd.isna(v)
                             else float(str(v).strip().lower() != lo))
            logger.info(f"[traits] '{col}': binary levels {sorted(levels)} → 0/1")
            continue
        rejected.append(col)

    if rejected:
        raise InputShapeError(f"Non-numeric, non-binary trait columns: {rejected}",
                              stage=stage, details={'rejected_traits': rejected})
    return pd.DataFrame(out, index=traits.index)


# ================================================================
# Sample alignment
# ================================================================

def align_samples(expr: pd.DataFrame, traits: pd.DataFrame,
                  stage: str = 'alignment') -> pd.DataFrame:
    """
    Reorder trait rows to match expression rows.

    Order-independent but identifier-exact: every expression sample must
    have a trait row and vice versa.

    Raises:
        InputShapeError: listing missing and extra sample identifiers
    """
    expr_ids = pd.Index(expr.index.astype(str))
    trait_ids = pd.Index(traits.index.astype(str))
    missing = expr_ids.difference(trait_ids).tolist()
    extra = trait_ids.difference(expr_ids).tolist()
    if missing or extra:
        raise InputShapeError(
            f"Sample identifiers do not align: {len(missing)} expression samples "
            f"without traits {missing[:10]}, {len(extra)} trait rows without "
            f"expression {extra[:10]}",
            stage=stage, details={'missing_in_traits': missing, 'extra_in_traits': extra})
    aligned = traits.copy()
    aligned.index = trait_ids
    return aligned.loc[expr_ids]


# ================================================================
# Comparison tables
# ================================================================

def load_comparison_tables(paths: Dict[str, str],
                           sep: Optional[str] = None) -> Dict[str, pd.DataFrame]:
    """label → raw differential-expression table (genes × statistics)."""
    tables = {}
    for label, path in (paths or {}).items():
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Comparison table '{label}' not found: {path}")
        df = _read_table(path, sep)
        df.index = df.index.astype(str)
        tables[label] = df
        logger.info(f"Loaded comparison '{label}': {len(df)} genes from {path}")
    return tables

