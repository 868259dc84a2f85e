"""
daeval/viz.py

Plotting functions for DA benchmarking results.

    plot_power     — power and FDR against samples per group, one line per
                     method, from a power_analysis() sweep.

    plot_abundance — per-feature boxplots of a long-format table
                     (feature, value, group, source), e.g. real vs
                     simulated counts side by side.

    plot_volcano   — effect size against −log₁₀(p) for one contrast of a
                     differential_analysis() result.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import matplotlib.patches as mpatches
import seaborn as sns
from typing import Optional

_SIG_COLOR = "#c0392b"
_NS_COLOR = "#aaaaaa"
_TARGET_COLOR = "goldenrod"


def plot_power(
    sweep: pd.DataFrame,
    level: Optional[float] = 0.1,
    figsize: tuple = (10, 4),
) -> plt.Figure:
    """
    Two-panel summary of a power_analysis() sweep.

    Left panel — power, right panel — FDR, each against samples per group
    with one line per method (mean over repetitions, ± 1 SD band). The
    nominal FDR level is drawn as a dashed line on the right panel.

    Parameters
    ----------
    sweep : pd.DataFrame
        Output of power_analysis(), with columns method, n_per_group, rep,
        metric, value.
    level : float, optional
        Nominal FDR level to mark. No line if None.
    figsize : tuple
        (width, height) in inches.

    Returns
    -------
    matplotlib.figure.Figure
    """
    fig, axes = plt.subplots(1, 2, figsize=figsize, sharex=True)

    for ax_, metric in zip(axes, ["power", "FDR"]):
        data = sweep[sweep["metric"] == metric]
        if not data.empty:
            sns.lineplot(
                data=data, x="n_per_group", y="value", hue="method",
                errorbar="sd", marker="o", ax=ax_,
            )
        ax_.set_ylim(-0.02, 1.02)
        ax_.set_xlabel("Samples per group")
        ax_.set_ylabel(metric)
        ax_.set_title(metric)

    if level is not None:
        axes[1].axhline(level, color=_TARGET_COLOR, lw=1.2, ls="--", label=f"FDR = {level}")

    fig.tight_layout()
    return fig


def plot_abundance(
    long_df: pd.DataFrame,
    features: Optional[list] = None,
    log: bool = True,
    figsize: tuple = (10, 4),
) -> plt.Figure:
    """
    Per-feature boxplots of abundance by group, split by source.

    Parameters
    ----------
    long_df : pd.DataFrame
        Long-format table with columns feature, value, group, source
        (preprocess.to_long output; concatenate several sources to compare
        real and simulated data).
    features : list of str, optional
        Features to plot. Defaults to the first 4 features (alphabetical).
    log : bool
        Plot log1p(value) instead of raw counts.
    figsize : tuple
        (width, height) in inches per *row* of subplots.

    Returns
    -------
    matplotlib.figure.Figure
    """
    missing = {"feature", "value", "group", "source"} - set(long_df.columns)
    if missing:
        raise ValueError(f"long_df is missing columns: {sorted(missing)}")

    if features is None:
        features = sorted(long_df["feature"].unique())[:4]

    n_feats = len(features)
    ncols = min(n_feats, 4)
    nrows = (n_feats + ncols - 1) // ncols
    fig, axes_arr = plt.subplots(
        nrows, ncols,
        figsize=(figsize[0] * ncols / min(n_feats, 4), figsize[1] * nrows),
        squeeze=False,
    )
    axes_flat = axes_arr.flatten().tolist()
    for unused in axes_flat[n_feats:]:
        unused.set_visible(False)

    for ax_, feat in zip(axes_flat, features):
        feat_df = long_df[long_df["feature"] == feat].copy()
        if log:
            feat_df["value"] = np.log1p(feat_df["value"])
        sns.boxplot(data=feat_df, x="group", y="value", hue="source", ax=ax_, fliersize=2)
        ax_.set_title(feat, fontsize=10)
        ax_.set_xlabel("")
        ax_.set_ylabel("log(1 + count)" if log else "count")

    fig.tight_layout()
    return fig


def plot_volcano(
    results: pd.DataFrame,
    contrast=None,
    level: float = 0.1,
    ax=None,
    figsize: tuple = (6, 5),
) -> plt.Figure:
    """
    Volcano plot of one contrast of a DA result table.

    Points are coloured red when the contrast's q-value is below ``level``.

    Parameters
    ----------
    results : pd.DataFrame
        Output of differential_analysis().
    contrast : optional
        Non-reference level to plot. Defaults to the last contrast.
    level : float
        q-value threshold for colouring.
    ax : matplotlib.axes.Axes, optional
        Pre-existing axes to draw into.

    Returns
    -------
    matplotlib.figure.Figure
    """
    if contrast is None:
        contrast = results.columns[-1][len("q_value("):-1]
    cols = [f"log_FC({contrast})", f"p_value({contrast})", f"q_value({contrast})"]
    missing = [c for c in cols if c not in results.columns]
    if missing:
        raise ValueError(f"Contrast '{contrast}' not found in results: missing {missing}")

    lfc, p, q = (results[c] for c in cols)
    neg_log_p = -np.log10(p.clip(lower=1e-300))
    sig = (q < level).to_numpy()

    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.get_figure()

    ax.scatter(lfc[~sig], neg_log_p[~sig], color=_NS_COLOR, s=18, alpha=0.8)
    ax.scatter(lfc[sig], neg_log_p[sig], color=_SIG_COLOR, s=24, alpha=0.9)
    ax.axvline(0, color="black", lw=0.8)
    ax.set_xlabel(f"log fold change ({contrast} vs reference)")
    ax.set_ylabel("−log₁₀(p-value)")
    method = results.attrs.get("method")
    ax.set_title(f"{method}: {contrast}" if method else str(contrast))

    sig_patch = mpatches.Patch(color=_SIG_COLOR, label=f"q < {level}")
    ns_patch = mpatches.Patch(color=_NS_COLOR, label=f"q ≥ {level}")
    ax.legend(handles=[sig_patch, ns_patch], loc="upper left", fontsize=8)

    fig.tight_layout()
    return fig
