"""
Stage 3: Module Detection
=========================
Pipeline:
  1. Average-linkage dendrogram on 1 - TOM
  2. Dynamic tree cut → pre-merge modules
  3. Eigengenes of the pre-merge modules
  4. Merge modules with similar eigengenes
  5. Module membership (kME), intramodular connectivity, hub genes
"""

import logging
import os
import pandas as pd
from typing import Dict, List, Optional
from dataclasses import dataclass, field

from .clustering import Dendrogram, DynamicModuleDetector, HierarchicalClusterer, ModuleAssignment
from .eigengenes import (EigengeneCalculator, Eigengenes, MergeResult, ModuleMerger,
                         hub_genes, intramodular_connectivity, module_membership)
from .stage1_preprocessing import PreprocessedData
from .stage2_network import NetworkData
from .utils import ensure_dir, write_gene_list

logger = logging.getLogger(__name__)


# ================================================================
# Data Structures
# ================================================================

@dataclass
class ModuleResults:
    """
    Container for module detection output.

    Attributes:
        dendrogram: gene dendrogram
        dynamic: pre-merge assignment
        merge: MergeResult (pre-merge eigengenes in ``merge.old_eigengenes``)
        kme / kme_pvalue: genes × modules membership (None when disabled)
        connectivity: per-gene k_within / k_total table (None when disabled)
        hubs: module → top genes by kME
    """
    dendrogram: Dendrogram
    dynamic: ModuleAssignment
    merge: MergeResult
    kme: Optional[pd.DataFrame] = None
    kme_pvalue: Optional[pd.DataFrame] = None
    connectivity: Optional[pd.DataFrame] = None
    hubs: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def assignment(self) -> ModuleAssignment:
        return self.merge.assignment

    @property
    def eigengenes(self) -> Eigengenes:
        return self.merge.eigengenes

    def __repr__(self) -> str:
        return (f"ModuleResults(premerge={self.dynamic.n_modules}, "
                f"merged={self.assignment.n_modules}, "
                f"unassigned={self.assignment.n_unassigned})")


# ================================================================
# Stage 3 Class
# ================================================================

class Stage3Modules:
    """
    Stage 3: clustering, dynamic cut, eigengenes, merging and membership.
    """

    def __init__(self, cfg: dict, preprocessed: PreprocessedData, network: NetworkData):
        self.cfg = cfg
        self.preprocessed = preprocessed
        self.network = network

    @classmethod
    def run(cls, cfg: dict, preprocessed: PreprocessedData, network: NetworkData) -> ModuleResults:
        stage = cls(cfg, preprocessed, network)
        return stage.execute()

    def execute(self) -> ModuleResults:
        logger.info("=" * 60)
        logger.info("  Stage 3: Module Detection")
        logger.info("=" * 60)

        mods = self.cfg['modules']
        expr = self.preprocessed.expression

        logger.info("[Step 1] Hierarchical clustering (average linkage)...")
        dendro = HierarchicalClusterer('average').cluster(self.network.dissimilarity,
                                                          labels=self.network.genes)
        logger.info(f"[Step 1] {dendro}")

        logger.info(f"[Step 2] Dynamic tree cut: min_module_size={mods['min_module_size']}, "
                    f"deep_split={mods['deep_split']}")
        detector = DynamicModuleDetector(mods['min_module_size'], mods['deep_split'],
                                         mods.get('cut_height'))
        dynamic = detector.cut(dendro, self.network.dissimilarity)
        logger.info(f"[Step 2] {dynamic}")

        logger.info("[Step 3] Eigengenes of pre-merge modules...")
        calculator = EigengeneCalculator()
        premerge_me = calculator.compute(expr, dynamic)

        logger.info(f"[Step 4] Merging modules (threshold={mods['merge_threshold']})...")
        merge = ModuleMerger(mods['merge_threshold'], calculator).merge(expr, dynamic, premerge_me)

        results = ModuleResults(dendrogram=dendro, dynamic=dynamic, merge=merge)
        if mods.get('membership', True) and merge.assignment.n_modules > 0:
            self._membership(results)

        logger.info(f"[Stage3] Complete: {results}")
        return results

    def _membership(self, results: ModuleResults):
        logger.info("[Step 5] Module membership and intramodular connectivity...")
        expr = self.preprocessed.expression
        min_samples = self.cfg['traits'].get('min_samples', 3)

        results.kme, results.kme_pvalue = module_membership(expr, results.eigengenes, min_samples)
        results.connectivity = intramodular_connectivity(
            expr, results.assignment, self.network.power, self.cfg['network']['type'],
            k_total=self.network.connectivity)
        results.hubs = hub_genes(results.kme, results.assignment,
                                 self.cfg['modules'].get('n_hub_genes', 10))
        for module, genes in results.hubs.items():
            logger.info(f"[Step 5] {module}: hubs {', '.join(genes[:5])}")

    def save_results(self, results: ModuleResults, dirs: Dict[str, str], param_str: str):
        """
        Module assignments, eigengenes, gene lists (pre- and post-merge),
        membership and connectivity tables.
        """
        logger.info("[Stage3] Saving results...")
        run_dir = dirs['run_dir']

        assign = pd.DataFrame({
            'premerge': results.dynamic.labels,
            'module': results.assignment.labels,
        }).rename_axis('gene')
        assign_path = os.path.join(run_dir, f"modules_{param_str}.csv")
        assign.to_csv(assign_path)
        logger.info(f"  Saved: {assign_path}")

        for name, me in (('eigengenes', results.eigengenes),
                         ('eigengenes_premerge', results.merge.old_eigengenes)):
            path = os.path.join(run_dir, f"{name}_{param_str}.csv")
            me.eigengenes.rename_axis('sample').to_csv(path)
            logger.info(f"  Saved: {path}")

        var_path = os.path.join(run_dir, f"variance_explained_{param_str}.csv")
        results.eigengenes.variance_explained.rename_axis('module').to_csv(var_path)

        merge_path = os.path.join(run_dir, f"merge_map_{param_str}.csv")
        pd.Series(results.merge.merge_map, name='merged_into').rename_axis('module').to_csv(merge_path)
        logger.info(f"  Saved: {merge_path}")

        n_lists = _write_module_lists(results.assignment, dirs['modules_dir'])
        n_pre = _write_module_lists(results.dynamic, dirs['premerge_dir'])
        logger.info(f"  Saved: {n_lists} module gene lists, {n_pre} pre-merge lists")

        if results.kme is not None:
            kme_path = os.path.join(run_dir, f"kme_{param_str}.csv")
            results.kme.rename_axis('gene').to_csv(kme_path)
            results.kme_pvalue.rename_axis('gene').to_csv(
                os.path.join(run_dir, f"kme_pvalue_{param_str}.csv"))
            logger.info(f"  Saved: {kme_path}")

        if results.connectivity is not None:
            k_path = os.path.join(run_dir, f"intramodular_connectivity_{param_str}.csv")
            results.connectivity.rename_axis('gene').to_csv(k_path)
            logger.info(f"  Saved: {k_path}")

        if results.hubs:
            hubs = pd.DataFrame([{'module': m, 'rank': i + 1, 'gene': g}
                                 for m, genes in results.hubs.items()
                                 for i, g in enumerate(genes)])
            hubs.to_csv(os.path.join(run_dir, f"hub_genes_{param_str}.csv"), index=False)


def _write_module_lists(assignment: ModuleAssignment, out_dir: str) -> int:
    ensure_dir(out_dir)
    lists = assignment.gene_lists()
    for module, genes in lists.items():
        write_gene_list(os.path.join(out_dir, f"{module}.txt"), genes)
    return len(lists)


# ================================================================
# Standalone Function
# ================================================================

def run_modules(cfg: dict, preprocessed: PreprocessedData, network: NetworkData) -> ModuleResults:
    return Stage3Modules.run(cfg, preprocessed, network)
