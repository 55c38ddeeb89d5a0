"""
Stage 1: Data Loading & Quality Filtering
=========================================
Pipeline:
  1. Load expression matrix (+ traits, comparison tables)
  2. Align trait rows to expression samples
  3. Quality filter (missing values, zero variance)
"""

import logging
import os
import pandas as pd
from typing import Optional
from dataclasses import dataclass, field

from .comparisons import ComparisonSet
from .loader import (ExpressionLoader, TraitLoader, align_samples, encode_traits,
                     load_comparison_tables, to_expression_frame)
from .quality import QualityFilter, QualityReport

logger = logging.getLogger(__name__)


# ================================================================
# Data Structures
# ================================================================

@dataclass
class PreprocessedData:
    """
    Container for filtered inputs.

    Attributes:
        expression: samples × genes after quality filtering
        traits: samples × traits aligned to expression (or None)
        quality_report: removed genes/samples with reasons
        comparisons: label → ComparisonResult
    """
    expression: pd.DataFrame
    traits: Optional[pd.DataFrame]
    quality_report: QualityReport
    comparisons: ComparisonSet = field(default_factory=ComparisonSet)

    @property
    def n_samples(self) -> int:
        return self.expression.shape[0]

    @property
    def n_genes(self) -> int:
        return self.expression.shape[1]

    def __repr__(self) -> str:
        n_traits = 0 if self.traits is None else self.traits.shape[1]
        return (f"PreprocessedData(n_samples={self.n_samples}, n_genes={self.n_genes}, "
                f"n_traits={n_traits}, n_comparisons={len(self.comparisons)})")


# ================================================================
# Stage 1 Class
# ================================================================

class Stage1Preprocessing:
    """
    Stage 1: loading, alignment and quality filtering.

    Inputs come from ``cfg['paths']`` unless frames are passed directly.
    """

    def __init__(self, cfg: dict, expression: Optional[pd.DataFrame] = None,
                 traits: Optional[pd.DataFrame] = None,
                 comparisons: Optional[ComparisonSet] = None):
        """
        Args:
            cfg: Full configuration dict
            expression: samples × genes (skips loading when given)
            traits: samples × traits (skips loading when given)
            comparisons: prebuilt ComparisonSet
        """
        self.cfg = cfg
        self.expression = expression
        self.traits = traits
        self.comparisons = comparisons

    @classmethod
    def run(cls, cfg: dict, expression: Optional[pd.DataFrame] = None,
            traits: Optional[pd.DataFrame] = None,
            comparisons: Optional[ComparisonSet] = None) -> PreprocessedData:
        stage = cls(cfg, expression, traits, comparisons)
        return stage.execute()

    def execute(self) -> PreprocessedData:
        logger.info("=" * 60)
        logger.info("  Stage 1: Data Loading & Quality Filtering")
        logger.info("=" * 60)

        # Step 1: Load
        expr, traits, comparisons = self._load()

        # Step 2: Align traits (fails before any filtering)
        if traits is not None:
            traits = align_samples(expr, traits, stage='alignment')
            logger.info(f"[Step 2] Traits aligned: {traits.shape[1]} traits")
        else:
            logger.info("[Step 2] No traits")

        # Step 3: Quality filter
        filtered, report = self._quality_filter(expr)
        if traits is not None:
            traits = traits.loc[filtered.index]

        data = PreprocessedData(expression=filtered, traits=traits,
                                quality_report=report, comparisons=comparisons)
        logger.info(f"[Stage1] Complete: {data}")
        return data

    def _load(self):
        logger.info("[Step 1] Loading data...")
        paths = self.cfg['paths']
        inp = self.cfg.get('input', {})

        if self.expression is not None:
            expr = to_expression_frame(self.expression)
        else:
            expr = ExpressionLoader(paths['expression'],
                                    orientation=inp.get('orientation', 'genes_x_samples'),
                                    sep=inp.get('sep')).load()

        if self.traits is not None:
            traits = encode_traits(self.traits)
        elif paths.get('traits'):
            traits = TraitLoader(paths['traits'], sep=inp.get('sep')).load()
        else:
            traits = None

        if self.comparisons is not None:
            comparisons = self.comparisons
        else:
            comparisons = ComparisonSet.from_tables(
                load_comparison_tables(paths.get('comparisons') or {}, sep=inp.get('sep')))

        logger.info(f"[Step 1] {expr.shape[0]} samples × {expr.shape[1]} genes, "
                    f"{len(comparisons)} comparisons")
        return expr, traits, comparisons

    def _quality_filter(self, expr: pd.DataFrame):
        logger.info("[Step 3] Quality filtering...")
        filtered, report = QualityFilter.from_config(self.cfg).filter(expr)
        logger.info(f"[Step 3] {report}")
        return filtered, report

    def save_results(self, data: PreprocessedData, out_dir: str, param_str: str):
        """Quality report JSON."""
        path = os.path.join(out_dir, f"quality_{param_str}.json")
        data.quality_report.save_json(path)
        logger.info(f"  Saved: {path}")


# ================================================================
# Standalone Function
# ================================================================

def run_preprocessing(cfg: dict, expression: Optional[pd.DataFrame] = None,
                      traits: Optional[pd.DataFrame] = None) -> PreprocessedData:
    return Stage1Preprocessing.run(cfg, expression, traits)
