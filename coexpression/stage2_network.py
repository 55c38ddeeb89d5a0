"""
Stage 2: Network Construction
=============================
Pipeline:
  1. Gene × gene correlation, shared by the scan and the adjacency;
     soft-threshold scan over candidate powers
  2. Power selection (configured power, or the scan policy with fallback)
  3. Weighted adjacency
  4. Topological overlap (block-parallel) → dissimilarity
"""

import gc
import logging
import os
import numpy as np
import pandas as pd
from typing import List, Optional
from dataclasses import dataclass, field

from .network import (AdjacencyBuilder, SoftThresholdSelector, TopologicalOverlapComputer,
                      correlation_matrix, select_power, soft_connectivity,
                      tom_dissimilarity)
from .stage1_preprocessing import PreprocessedData
from .utils import write_gene_list

logger = logging.getLogger(__name__)


# ================================================================
# Data Structures
# ================================================================

@dataclass
class NetworkData:
    """
    Container for network construction output.

    Attributes:
        soft_threshold: scan table (one row per candidate power)
        power: power used for the adjacency
        power_source: 'config', 'scan' or 'fallback'
        genes: gene ids in matrix order
        dissimilarity: (n, n) 1 - TOM
        connectivity: whole-network connectivity per gene
        tom: (n, n) TOM, only kept when network.keep_tom is set
        degenerate_genes: genes with zero-filled correlation or overlap
    """
    soft_threshold: pd.DataFrame
    power: int
    power_source: str
    genes: List[str]
    dissimilarity: np.ndarray
    connectivity: pd.Series
    tom: Optional[np.ndarray] = None
    degenerate_genes: List[str] = field(default_factory=list)

    @property
    def n_genes(self) -> int:
        return len(self.genes)

    def __repr__(self) -> str:
        return (f"NetworkData(n_genes={self.n_genes}, power={self.power} "
                f"({self.power_source}), degenerate={len(self.degenerate_genes)}, "
                f"dtype={self.dissimilarity.dtype})")


# ================================================================
# Stage 2 Class
# ================================================================

class Stage2Network:
    """
    Stage 2: soft threshold, adjacency and topological overlap.

    At most two n × n matrices are alive at once: adjacency is released as
    soon as TOM exists, and TOM is released after the dissimilarity unless
    ``network.keep_tom`` is set.
    """

    def __init__(self, cfg: dict, preprocessed: PreprocessedData):
        self.cfg = cfg
        self.preprocessed = preprocessed

    @classmethod
    def run(cls, cfg: dict, preprocessed: PreprocessedData) -> NetworkData:
        stage = cls(cfg, preprocessed)
        return stage.execute()

    def execute(self) -> NetworkData:
        logger.info("=" * 60)
        logger.info("  Stage 2: Network Construction")
        logger.info("=" * 60)

        net = self.cfg['network']
        expr = self.preprocessed.expression
        genes = expr.columns.tolist()

        corr, undefined = correlation_matrix(expr)
        table = self._scan_powers(corr)
        power, source = self._choose_power(table)

        logger.info(f"[Step 3] Adjacency: {net['type']}, power={power}, dtype={net['dtype']}")
        builder = AdjacencyBuilder(power, net['type'], net['dtype'])
        adj = builder.from_correlation(corr)
        del corr
        gc.collect()
        connectivity = pd.Series(soft_connectivity(adj), index=genes, name='k_total')

        logger.info(f"[Step 4] Topological overlap over {len(genes)} genes "
                    f"(block_size={net['block_size']})...")
        computer = TopologicalOverlapComputer(
            block_size=net['block_size'],
            parallel=self.cfg['compute']['parallel'],
            n_jobs=self.cfg['compute']['n_jobs'],
            dtype=net['dtype'],
        )
        tom = computer.compute(adj)
        del adj
        gc.collect()

        dissimilarity = tom_dissimilarity(tom)
        if not net.get('keep_tom', False):
            tom = None
            gc.collect()

        degenerate_idx = sorted(set(undefined) | set(computer.degenerate_genes))
        data = NetworkData(
            soft_threshold=table,
            power=power,
            power_source=source,
            genes=genes,
            dissimilarity=dissimilarity,
            connectivity=connectivity,
            tom=tom,
            degenerate_genes=[genes[i] for i in degenerate_idx],
        )
        logger.info(f"[Stage2] Complete: {data}")
        return data

    def _scan_powers(self, corr: np.ndarray) -> pd.DataFrame:
        net = self.cfg['network']
        logger.info(f"[Step 1] Soft-threshold scan: powers={net['powers']}")
        selector = SoftThresholdSelector(
            net['powers'], net['type'], n_breaks=net.get('n_breaks', 10),
            block_size=net['block_size'],
            parallel=self.cfg['compute']['parallel'],
            n_jobs=self.cfg['compute']['n_jobs'],
        )
        return selector.scan_correlation(corr)

    def _choose_power(self, table: pd.DataFrame):
        """Configured power wins; 'auto' applies the scan policy, then the fallback."""
        net = self.cfg['network']
        if net['power'] != 'auto':
            logger.info(f"[Step 2] Using configured power {net['power']}")
            return int(net['power']), 'config'

        power = select_power(table, net['r2_cutoff'], net.get('mean_k_cutoff'))
        if power is not None:
            logger.info(f"[Step 2] Power {power}: first with signed R² >= {net['r2_cutoff']}")
            return power, 'scan'

        fallback = net['fallback_power']
        logger.warning(f"[Step 2] No power reached signed R² >= {net['r2_cutoff']} "
                       f"(max {table['signed_r2'].max():.3f}); using fallback power {fallback}")
        return int(fallback), 'fallback'

    def save_results(self, data: NetworkData, out_dir: str, param_str: str):
        """Soft-threshold table, connectivity and degenerate gene list."""
        logger.info("[Stage2] Saving results...")

        sft_path = os.path.join(out_dir, f"soft_threshold_{param_str}.csv")
        data.soft_threshold.to_csv(sft_path, index=False)
        logger.info(f"  Saved: {sft_path}")

        k_path = os.path.join(out_dir, f"connectivity_{param_str}.csv")
        data.connectivity.rename_axis('gene').to_csv(k_path)
        logger.info(f"  Saved: {k_path}")

        if data.degenerate_genes:
            deg_path = os.path.join(out_dir, f"degenerate_genes_{param_str}.txt")
            write_gene_list(deg_path, data.degenerate_genes)
            logger.info(f"  Saved: {deg_path}")


# ================================================================
# Standalone Function
# ================================================================

def run_network(cfg: dict, preprocessed: PreprocessedData) -> NetworkData:
    return Stage2Network.run(cfg, preprocessed)
