"""
Weighted Gene Co-expression Network Pipeline: main entry point.

The pipeline is a strict 4-stage chain:

    Stage 1  Preprocessing   →  PreprocessedData
    Stage 2  Network          →  NetworkData
    Stage 3  Modules          →  ModuleResults
    Stage 4  Traits           →  TraitResults + CSVs

Each stage is self-contained in ``coexpression/stage{N}_*.py`` and can be
developed, tested, or replaced independently.

Usage:
    # Default config
    python main.py

    # Custom config
    python main.py --config configs/my_config.yaml

    # Override parameters
    python main.py --power 8 --min-module-size 30 --deep-split 3

    # Batch: re-run module detection for several powers
    python main.py --power-sweep
"""

import argparse
import logging
import os

import pandas as pd

from coexpression.utils import (
    load_config,
    override_config,
    validate_config,
    setup_run_dirs,
    setup_logging,
    param_string,
)
from coexpression.stage1_preprocessing import Stage1Preprocessing
from coexpression.stage2_network import Stage2Network
from coexpression.stage3_modules import Stage3Modules
from coexpression.stage4_traits import Stage4Traits

logger = logging.getLogger("coexpression.pipeline")


POWER_SWEEP = [4, 6, 8, 10, 12, 14, 16, 18, 20]


def _stage(name: str, fn, *args, **kwargs):
    """Run one stage; on failure log which stage failed and re-raise."""
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        logger.error("[pipeline] %s FAILED: %s", name, e)
        raise


# ================================================================
# Single pipeline run
# ================================================================

def run_pipeline(cfg: dict, expression: pd.DataFrame = None, traits: pd.DataFrame = None,
                 comparisons=None) -> dict:
    """
    Execute the full 4-stage pipeline for one configuration.

    Args:
        cfg: full configuration dict
        expression / traits / comparisons: in-memory inputs (override cfg paths)

    Returns:
        dict with keys: preprocessed, network, modules, traits, dirs, cfg
    """
    validate_config(cfg)
    dirs = setup_run_dirs(cfg)
    pstr = dirs['param_str']

    logger.info("=" * 60)
    logger.info("CO-EXPRESSION PIPELINE")
    logger.info("  Run dir : %s", dirs['run_dir'])
    logger.info("  Input   : %s", cfg['paths']['expression'] if expression is None else 'in-memory')
    logger.info("  Network : %s, power=%s", cfg['network']['type'], cfg['network']['power'])
    logger.info("=" * 60)

    # ---- Stage 1: Loading & quality filter ----
    preprocessed = _stage("Stage 1 (preprocessing)", Stage1Preprocessing.run,
                          cfg, expression, traits, comparisons)
    Stage1Preprocessing(cfg).save_results(preprocessed, dirs['run_dir'], pstr)

    # ---- Stage 2: Network ----
    network = _stage("Stage 2 (network)", Stage2Network.run, cfg, preprocessed)
    Stage2Network(cfg, preprocessed).save_results(network, dirs['run_dir'], pstr)

    # ---- Stage 3: Modules ----
    modules = _stage("Stage 3 (modules)", Stage3Modules.run, cfg, preprocessed, network)
    Stage3Modules(cfg, preprocessed, network).save_results(modules, dirs, pstr)

    # ---- Stage 4: Traits & comparisons ----
    trait_results = _stage("Stage 4 (traits)", Stage4Traits.run, cfg, preprocessed, modules)
    Stage4Traits(cfg, preprocessed, modules).save_results(trait_results, dirs, pstr)

    # ---- Done ----
    logger.info("[output] Results : %s", dirs['run_dir'])
    logger.info("[output] Modules : %s", dirs['modules_dir'])

    return {
        'preprocessed': preprocessed,
        'network': network,
        'modules': modules,
        'traits': trait_results,
        'dirs': dirs,
        'cfg': cfg,
    }


# ================================================================
# Batch mode
# ================================================================

def run_power_sweep(base_cfg: dict, powers=None) -> pd.DataFrame:
    """Run the pipeline once per power and summarise module counts."""
    powers = powers or POWER_SWEEP

    logger.info("#" * 60)
    logger.info("  POWER SWEEP: %d powers", len(powers))
    logger.info("#" * 60)

    all_results = []
    for p in powers:
        cfg = override_config(base_cfg, {'network': {'power': p}})
        try:
            res = run_pipeline(cfg)
            all_results.append(res)
        except Exception as e:
            logger.error("[SWEEP] power=%s FAILED: %s", p, e)

    summary = _sweep_summary(all_results)
    if all_results:
        summary_path = os.path.join(base_cfg['paths']['output_dir'], 'power_sweep_summary.csv')
        summary.to_csv(summary_path, index=False)
        logger.info("Sweep summary → %s", summary_path)
        print(summary.to_string(index=False))
    return summary


def _sweep_summary(results_list: list) -> pd.DataFrame:
    """Create summary DataFrame from multiple pipeline runs."""
    rows = []
    for res in results_list:
        c = res['cfg']
        net = res['network']
        mods = res['modules']
        sft = net.soft_threshold.set_index('power')
        row = {
            'label': param_string(c),
            'power': net.power,
            'n_genes': net.n_genes,
            'n_premerge': mods.dynamic.n_modules,
            'n_modules': mods.assignment.n_modules,
            'n_unassigned': mods.assignment.n_unassigned,
        }
        if net.power in sft.index:
            row['signed_r2'] = sft.loc[net.power, 'signed_r2']
            row['mean_k'] = sft.loc[net.power, 'mean_k']
        mt = res['traits'].module_trait
        if mt is not None:
            row['min_trait_p'] = float(mt.pvalue.min().min())
        rows.append(row)
    return pd.DataFrame(rows)


# ================================================================
# CLI
# ================================================================

def parse_args():
    parser = argparse.ArgumentParser(
        description="Weighted Gene Co-expression Network Pipeline")
    parser.add_argument('--config', default='configs/default.yaml',
                        help='Path to YAML config')
    parser.add_argument('--power', type=int, default=None,
                        help='Soft-threshold power (default: config, auto = scan policy)')
    parser.add_argument('--min-module-size', type=int, default=None)
    parser.add_argument('--deep-split', type=int, default=None, choices=range(5))
    parser.add_argument('--merge-threshold', type=float, default=None)
    parser.add_argument('--expression', type=str, default=None,
                        help='Override expression table path')
    parser.add_argument('--traits', type=str, default=None,
                        help='Override trait table path')
    parser.add_argument('--power-sweep', action='store_true',
                        help='Run the pipeline for several powers')
    parser.add_argument('--no-parallel', action='store_true',
                        help='Disable parallel processing')
    return parser.parse_args()


def main():
    setup_logging()
    args = parse_args()

    # Load base config
    cfg = load_config(args.config)
    setup_logging(cfg['logging']['level'], cfg['logging']['file'])

    # CLI overrides
    overrides = {}
    if args.power is not None:
        overrides.setdefault('network', {})['power'] = args.power
    if args.min_module_size is not None:
        overrides.setdefault('modules', {})['min_module_size'] = args.min_module_size
    if args.deep_split is not None:
        overrides.setdefault('modules', {})['deep_split'] = args.deep_split
    if args.merge_threshold is not None:
        overrides.setdefault('modules', {})['merge_threshold'] = args.merge_threshold
    if args.expression is not None:
        overrides.setdefault('paths', {})['expression'] = args.expression
    if args.traits is not None:
        overrides.setdefault('paths', {})['traits'] = args.traits
    if args.no_parallel:
        overrides.setdefault('compute', {})['parallel'] = False
    if overrides:
        cfg = override_config(cfg, overrides)

    # Batch or single
    if args.power_sweep:
        run_power_sweep(cfg)
    else:
        run_pipeline(cfg)


if __name__ == '__main__':
    main()
