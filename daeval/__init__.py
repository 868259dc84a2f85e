"""
daeval — Differential Abundance EVALuation on semisynthetic microbiome data

Top-level package exposing the daeval public API.
"""

from daeval import simulate
from daeval.simulate import simulate_counts, CountSimulator, get_ground_truth
from daeval.preprocess import clr_transform, tmm_factors, align_metadata, design_matrix, to_long
from daeval.differential import (
    DAMethod,
    AncomBCConfig,
    LimmaVoomConfig,
    DESeq2Config,
    WilcoxCLRConfig,
    differential_analysis,
    get_adapter,
)
from daeval.evaluate import da_metrics, power_analysis, summarize_power
from daeval.exceptions import (
    DAError,
    InvalidMethod,
    SchemaMismatch,
    DegenerateNullSet,
    FittingFailure,
)
from daeval.viz import plot_power, plot_abundance, plot_volcano

__version__ = "0.1.0"
__all__ = [
    "simulate",
    "simulate_counts",
    "CountSimulator",
    "get_ground_truth",
    "clr_transform",
    "tmm_factors",
    "align_metadata",
    "design_matrix",
    "to_long",
    "DAMethod",
    "AncomBCConfig",
    "LimmaVoomConfig",
    "DESeq2Config",
    "WilcoxCLRConfig",
    "differential_analysis",
    "get_adapter",
    "da_metrics",
    "power_analysis",
    "summarize_power",
    "DAError",
    "InvalidMethod",
    "SchemaMismatch",
    "DegenerateNullSet",
    "FittingFailure",
    "plot_power",
    "plot_abundance",
    "plot_volcano",
]
