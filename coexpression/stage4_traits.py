"""
Stage 4: Traits & Comparisons
=============================
Pipeline:
  1. Module eigengene × trait correlation (p-values, FDR)
  2. Gene significance per trait
  3. Differential-expression comparisons: regulation classes, gene lists,
     overlap with modules
"""

import logging
import os
import pandas as pd
from typing import Dict, Optional
from dataclasses import dataclass, field

from .comparisons import export_gene_lists, module_overlap
from .stage1_preprocessing import PreprocessedData
from .stage3_modules import ModuleResults
from .traits import ModuleTraitCorrelation, TraitCorrelator, gene_significance

logger = logging.getLogger(__name__)


# ================================================================
# Data Structures
# ================================================================

@dataclass
class TraitResults:
    """
    Container for Stage 4 output.

    Attributes:
        module_trait: module × trait correlation (None without traits)
        gene_significance / gs_pvalue: genes × traits (None without traits)
        comparison_summary: up / down / ns counts per comparison
        comparison_modules: modules × '{label}_up' / '{label}_down' counts
    """
    module_trait: Optional[ModuleTraitCorrelation] = None
    gene_significance: Optional[pd.DataFrame] = None
    gs_pvalue: Optional[pd.DataFrame] = None
    comparison_summary: Optional[pd.DataFrame] = None
    comparison_modules: Optional[pd.DataFrame] = None
    comparison_files: Dict[str, Dict[str, str]] = field(default_factory=dict)

    def __repr__(self) -> str:
        mt = repr(self.module_trait) if self.module_trait is not None else 'None'
        n_cmp = 0 if self.comparison_summary is None else len(self.comparison_summary)
        return f"TraitResults(module_trait={mt}, n_comparisons={n_cmp})"


# ================================================================
# Stage 4 Class
# ================================================================

class Stage4Traits:
    """
    Stage 4: relate final modules to sample traits and DE comparisons.
    """

    def __init__(self, cfg: dict, preprocessed: PreprocessedData, modules: ModuleResults):
        self.cfg = cfg
        self.preprocessed = preprocessed
        self.modules = modules

    @classmethod
    def run(cls, cfg: dict, preprocessed: PreprocessedData, modules: ModuleResults) -> TraitResults:
        stage = cls(cfg, preprocessed, modules)
        return stage.execute()

    def execute(self) -> TraitResults:
        logger.info("=" * 60)
        logger.info("  Stage 4: Traits & Comparisons")
        logger.info("=" * 60)

        results = TraitResults()
        traits = self.preprocessed.traits
        min_samples = self.cfg['traits'].get('min_samples', 3)

        if traits is None or traits.shape[1] == 0:
            logger.info("[Step 1] No traits; skipping module-trait correlation")
        elif len(self.modules.eigengenes) == 0:
            logger.warning("[Step 1] No modules; skipping module-trait correlation")
        else:
            logger.info(f"[Step 1] Module-trait correlation: {len(self.modules.eigengenes)} "
                        f"modules × {traits.shape[1]} traits")
            results.module_trait = TraitCorrelator(min_samples).correlate(
                self.modules.eigengenes.eigengenes, traits)
            self._log_top(results.module_trait)

            logger.info("[Step 2] Gene significance...")
            results.gene_significance, results.gs_pvalue = gene_significance(
                self.preprocessed.expression, traits, min_samples)

        comparisons = self.preprocessed.comparisons
        if len(comparisons):
            cmp_cfg = self.cfg['comparisons']
            logger.info(f"[Step 3] {len(comparisons)} comparisons "
                        f"(|log2FC| >= {cmp_cfg['log2fc_threshold']}, "
                        f"padj < {cmp_cfg['padj_threshold']})")
            results.comparison_summary = comparisons.summary(cmp_cfg['log2fc_threshold'],
                                                             cmp_cfg['padj_threshold'])
            results.comparison_modules = module_overlap(comparisons, self.modules.assignment,
                                                        cmp_cfg['log2fc_threshold'],
                                                        cmp_cfg['padj_threshold'])
        else:
            logger.info("[Step 3] No comparisons")

        logger.info(f"[Stage4] Complete: {results}")
        return results

    def _log_top(self, mt: ModuleTraitCorrelation, n: int = 5):
        top = mt.to_long().dropna(subset=['pvalue']).sort_values('pvalue').head(n)
        for _, row in top.iterrows():
            logger.info(f"  {row['module']} ~ {row['trait']}: r={row['correlation']:+.3f}, "
                        f"p={row['pvalue']:.2e}, FDR={row['fdr']:.2e}")

    def save_results(self, results: TraitResults, dirs: Dict[str, str], param_str: str):
        """
        Module-trait matrices, gene significance, comparison gene lists and
        module overlap.
        """
        logger.info("[Stage4] Saving results...")
        run_dir = dirs['run_dir']

        if results.module_trait is not None:
            paths = results.module_trait.save(run_dir, prefix=f"module_trait_{param_str}")
            for path in paths.values():
                logger.info(f"  Saved: {path}")

        if results.gene_significance is not None:
            gs_path = os.path.join(run_dir, f"gene_significance_{param_str}.csv")
            gs = pd.concat([results.gene_significance,
                            results.gs_pvalue.add_prefix('p.')], axis=1)
            gs.insert(0, 'module', self.modules.assignment.labels.reindex(gs.index))
            gs.rename_axis('gene').to_csv(gs_path)
            logger.info(f"  Saved: {gs_path}")

        comparisons = self.preprocessed.comparisons
        if len(comparisons):
            cmp_cfg = self.cfg['comparisons']
            for label, result in comparisons.items():
                results.comparison_files[label] = export_gene_lists(
                    result, dirs['comparisons_dir'],
                    cmp_cfg['log2fc_threshold'], cmp_cfg['padj_threshold'])
            results.comparison_summary.to_csv(
                os.path.join(run_dir, f"comparisons_{param_str}.csv"), index=False)
            results.comparison_modules.to_csv(
                os.path.join(run_dir, f"comparison_modules_{param_str}.csv"))
            logger.info(f"  Saved: {len(comparisons)} comparison gene lists → "
                        f"{dirs['comparisons_dir']}")


# ================================================================
# Standalone Function
# ================================================================

def run_traits(cfg: dict, preprocessed: PreprocessedData, modules: ModuleResults) -> TraitResults:
    return Stage4Traits.run(cfg, preprocessed, modules)
