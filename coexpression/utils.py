"""
Utility functions: config loading and validation, path management, parameter strings,
shared helpers.

This module centralises all cross-cutting concerns so that the four pipeline
stages (preprocessing → network → modules → traits) and main.py never need
to duplicate logic.
"""

import os
import yaml
import logging
from copy import deepcopy
from datetime import datetime
from typing import Dict, Iterable, List

from .errors import ConfigurationError, DegenerateDataError

logger = logging.getLogger(__name__)


NETWORK_TYPES = ('signed', 'unsigned', 'signed_hybrid')
DTYPES = ('float64', 'float32')
MAX_POWER = 50

DEFAULT_CONFIG = {
    'paths': {
        'expression': None,
        'traits': None,
        'comparisons': {},
        'output_dir': 'results',
    },
    'input': {
        'orientation': 'genes_x_samples',
        'sep': None,
    },
    'quality': {
        'max_missing_fraction': 0.5,
        'min_n_samples': 4,
        'min_n_genes': 4,
        'tol': None,
    },
    'network': {
        'type': 'signed',
        'powers': list(range(1, 11)) + list(range(12, 31, 2)),
        'power': 'auto',
        'r2_cutoff': 0.90,
        'mean_k_cutoff': None,
        'fallback_power': 12,
        'n_breaks': 10,
        'dtype': 'float64',
        'block_size': 2000,
        'keep_tom': False,
    },
    'modules': {
        'min_module_size': 35,
        'deep_split': 2,
        'cut_height': None,
        'merge_threshold': 0.10,
        'membership': True,
        'n_hub_genes': 10,
    },
    'traits': {
        'min_samples': 3,
    },
    'comparisons': {
        'log2fc_threshold': 1.0,
        'padj_threshold': 0.05,
    },
    'compute': {
        'parallel': True,
        'n_jobs': -1,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
    },
}


# ================================================================
# Config helpers
# ================================================================

def default_config() -> dict:
    """Fresh copy of the built-in defaults."""
    return deepcopy(DEFAULT_CONFIG)


def load_config(config_path: str) -> dict:
    """Load YAML config, layered over the built-in defaults."""
    with open(config_path, 'r', encoding='utf-8') as f:
        user_cfg = yaml.safe_load(f) or {}
    cfg = override_config(default_config(), user_cfg)
    logger.info(f"Config loaded: {config_path}")
    return cfg


def override_config(cfg: dict, overrides: dict) -> dict:
    """
    Deep-merge overrides into cfg.

    Usage::

        cfg = override_config(cfg, {'network': {'power': 8}})
    """
    cfg = deepcopy(cfg)
    for key, val in overrides.items():
        if isinstance(val, dict) and key in cfg and isinstance(cfg[key], dict):
            cfg[key] = override_config(cfg[key], val)
        else:
            cfg[key] = val
    return cfg


def validate_config(cfg: dict) -> dict:
    """
    Check every numeric parameter before any expensive stage runs.

    Raises:
        ConfigurationError: a parameter is out of range (named in the message)
        DegenerateDataError: the exponent search is empty
    """
    stage = 'configuration'
    net = cfg['network']
    mods = cfg['modules']
    qc = cfg['quality']

    powers = net.get('powers')
    if powers is None or len(powers) == 0:
        raise DegenerateDataError("Soft-threshold search has no candidate powers",
                                  stage=stage, details={'powers': powers})
    bad = [p for p in powers
           if isinstance(p, bool) or not isinstance(p, int) or not 1 <= p <= MAX_POWER]
    if bad:
        raise ConfigurationError(
            f"network.powers must be integers in 1..{MAX_POWER}; invalid: {bad}",
            stage=stage, details={'powers': bad})

    power = net.get('power', 'auto')
    if power != 'auto':
        if isinstance(power, bool) or not isinstance(power, int) or not 1 <= power <= MAX_POWER:
            raise ConfigurationError(
                f"network.power must be 'auto' or an integer in 1..{MAX_POWER}, got {power!r}",
                stage=stage, details={'power': power})

    fallback = net.get('fallback_power')
    if fallback is not None and (isinstance(fallback, bool) or not isinstance(fallback, int)
                                 or not 1 <= fallback <= MAX_POWER):
        raise ConfigurationError(
            f"network.fallback_power must be an integer in 1..{MAX_POWER}, got {fallback!r}",
            stage=stage, details={'fallback_power': fallback})

    if net.get('type') not in NETWORK_TYPES:
        raise ConfigurationError(
            f"network.type must be one of {NETWORK_TYPES}, got {net.get('type')!r}",
            stage=stage, details={'type': net.get('type')})
    if net.get('dtype', 'float64') not in DTYPES:
        raise ConfigurationError(
            f"network.dtype must be one of {DTYPES}, got {net.get('dtype')!r}",
            stage=stage, details={'dtype': net.get('dtype')})
    if int(net.get('block_size', 1)) < 1:
        raise ConfigurationError("network.block_size must be >= 1", stage=stage,
                                 details={'block_size': net.get('block_size')})
    if not 0.0 < float(net.get('r2_cutoff', 0.9)) <= 1.0:
        raise ConfigurationError("network.r2_cutoff must be in (0, 1]", stage=stage,
                                 details={'r2_cutoff': net.get('r2_cutoff')})

    min_size = mods.get('min_module_size')
    if isinstance(min_size, bool) or not isinstance(min_size, int) or min_size < 2:
        raise ConfigurationError(
            f"modules.min_module_size must be an integer >= 2, got {min_size!r}",
            stage=stage, details={'min_module_size': min_size})

    deep_split = mods.get('deep_split')
    if isinstance(deep_split, bool) or not isinstance(deep_split, (int, float)) \
            or not 0 <= deep_split <= 4:
        raise ConfigurationError(
            f"modules.deep_split must be in [0, 4], got {deep_split!r}",
            stage=stage, details={'deep_split': deep_split})

    threshold = mods.get('merge_threshold')
    if not isinstance(threshold, (int, float)) or not 0.0 <= threshold <= 2.0:
        raise ConfigurationError(
            f"modules.merge_threshold must be in [0, 2], got {threshold!r}",
            stage=stage, details={'merge_threshold': threshold})

    cut_height = mods.get('cut_height')
    if cut_height is not None and not 0.0 < float(cut_height) <= 1.0:
        raise ConfigurationError(
            f"modules.cut_height must be in (0, 1], got {cut_height!r}",
            stage=stage, details={'cut_height': cut_height})

    frac = qc.get('max_missing_fraction')
    if not 0.0 <= float(frac) < 1.0:
        raise ConfigurationError(
            f"quality.max_missing_fraction must be in [0, 1), got {frac!r}",
            stage=stage, details={'max_missing_fraction': frac})
    for key in ('min_n_samples', 'min_n_genes'):
        if int(qc.get(key, 1)) < 1:
            raise ConfigurationError(f"quality.{key} must be >= 1", stage=stage,
                                     details={key: qc.get(key)})

    if int(cfg['traits'].get('min_samples', 3)) < 3:
        raise ConfigurationError("traits.min_samples must be >= 3 (n - 2 degrees of freedom)",
                                 stage=stage, details={'min_samples': cfg['traits'].get('min_samples')})

    return cfg


# ================================================================
# Parameter / path helpers
# ================================================================

def param_string(cfg: dict) -> str:
    """Config → filename-safe parameter string."""
    net = cfg['network']
    mods = cfg['modules']
    power = net['power'] if net['power'] != 'auto' else 'auto'
    return (f"{net['type']}_p{power}_m{mods['min_module_size']}"
            f"_ds{mods['deep_split']}_mt{int(round(mods['merge_threshold'] * 100)):02d}")


def ensure_dir(path: str) -> str:
    """Create directory if not exists, return path."""
    os.makedirs(path, exist_ok=True)
    return path


def setup_run_dirs(cfg: dict) -> Dict[str, str]:
    """
    Create the full output directory tree for a single pipeline run.

    Returns:
        Dict with keys: run_dir, modules_dir, premerge_dir, comparisons_dir, param_str
    """
    pstr = param_string(cfg)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_name = f"run_{pstr}_{timestamp}"
    run_dir = ensure_dir(os.path.join(cfg['paths']['output_dir'], run_name))
    modules_dir = ensure_dir(os.path.join(run_dir, 'modules'))
    premerge_dir = ensure_dir(os.path.join(modules_dir, 'premerge'))
    comparisons_dir = ensure_dir(os.path.join(run_dir, 'comparisons'))
    return {
        'run_dir': run_dir,
        'modules_dir': modules_dir,
        'premerge_dir': premerge_dir,
        'comparisons_dir': comparisons_dir,
        'param_str': pstr,
    }


# ================================================================
# Export helpers
# ================================================================

def write_gene_list(path: str, genes: Iterable[str]) -> str:
    """Write one identifier per line."""
    with open(path, 'w', encoding='utf-8') as f:
        for g in genes:
            f.write(f"{g}\n")
    return path


def chunk_ranges(n: int, block_size: int) -> List[tuple]:
    """Disjoint [start, stop) ranges covering 0..n."""
    block_size = max(1, int(block_size))
    return [(s, min(s + block_size, n)) for s in range(0, n, block_size)]


# ================================================================
# Logging setup
# ================================================================

def setup_logging(level=logging.INFO, log_file: str = None):
    """
    Configure logging in consensus-style format.

    Args:
        level: Logging level (int or string)
        log_file: Optional file path for persistent logs
    """
    if isinstance(level, str):
        numeric_level = getattr(logging, level.upper(), logging.INFO)
    else:
        numeric_level = level

    formatter = logging.Formatter(
        fmt='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
