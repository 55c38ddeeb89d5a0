"""
Weighted Gene Co-expression Network Pipeline
--------------------------------------------

Pipeline stages (the canonical entry points):

    Stage1Preprocessing  →  PreprocessedData
    Stage2Network        →  NetworkData
    Stage3Modules        →  ModuleResults
    Stage4Traits         →  TraitResults

Supporting modules (imported by stages internally):

    loader       – expression / trait / comparison table I/O, sample alignment
    quality      – missing-value and zero-variance filtering
    network      – correlation, soft threshold, adjacency, topological overlap
    clustering   – dendrogram and dynamic tree cut
    eigengenes   – eigengenes, module merging, membership
    traits       – module-trait correlation, gene significance
    comparisons  – differential-expression comparison records
    errors       – pipeline error types
    utils        – config, paths, shared helpers
"""

# ---- Stage classes (primary public API) ----
from .stage1_preprocessing import Stage1Preprocessing, PreprocessedData
from .stage2_network import Stage2Network, NetworkData
from .stage3_modules import Stage3Modules, ModuleResults
from .stage4_traits import Stage4Traits, TraitResults

# ---- Components ----
from .quality import QualityFilter, QualityReport
from .network import (
    SoftThresholdSelector,
    AdjacencyBuilder,
    TopologicalOverlapComputer,
    select_power,
)
from .clustering import (
    HierarchicalClusterer,
    DynamicModuleDetector,
    Dendrogram,
    ModuleAssignment,
    UNASSIGNED,
)
from .eigengenes import EigengeneCalculator, Eigengenes, ModuleMerger, MergeResult
from .traits import TraitCorrelator, ModuleTraitCorrelation
from .comparisons import (
    ComparisonResult,
    ComparisonSet,
    classify_regulation,
    filter_significant,
    export_gene_lists,
)
from .errors import (
    CoexpressionError,
    InputShapeError,
    DegenerateDataError,
    NumericalDegeneracyError,
    ConfigurationError,
)

# ---- Shared utilities ----
from .utils import (
    default_config,
    load_config,
    override_config,
    validate_config,
    param_string,
    ensure_dir,
    setup_run_dirs,
    setup_logging,
)

__all__ = [
    # Stages
    "Stage1Preprocessing",
    "Stage2Network",
    "Stage3Modules",
    "Stage4Traits",
    # Data containers
    "PreprocessedData",
    "NetworkData",
    "ModuleResults",
    "TraitResults",
    # Components
    "QualityFilter",
    "QualityReport",
    "SoftThresholdSelector",
    "AdjacencyBuilder",
    "TopologicalOverlapComputer",
    "select_power",
    "HierarchicalClusterer",
    "DynamicModuleDetector",
    "Dendrogram",
    "ModuleAssignment",
    "UNASSIGNED",
    "EigengeneCalculator",
    "Eigengenes",
    "ModuleMerger",
    "MergeResult",
    "TraitCorrelator",
    "ModuleTraitCorrelation",
    "ComparisonResult",
    "ComparisonSet",
    "classify_regulation",
    "filter_significant",
    "export_gene_lists",
    # Errors
    "CoexpressionError",
    "InputShapeError",
    "DegenerateDataError",
    "NumericalDegeneracyError",
    "ConfigurationError",
    # Utils
    "default_config",
    "load_config",
    "override_config",
    "validate_config",
    "param_string",
    "ensure_dir",
    "setup_run_dirs",
    "setup_logging",
]
