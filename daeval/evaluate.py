"""
daeval/evaluate.py

Scoring DA results against ground truth.

    da_metrics      — false discovery rate and power of one result table
                      against a declared null set.

    power_analysis  — repeated simulate → test → score sweep over sample
                      sizes and methods.

    summarize_power — mean / SD / count of each metric per method and
                      sample size.
"""

import logging
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from daeval.differential import DAMethod, differential_analysis
from daeval.exceptions import DegenerateNullSet, FittingFailure

logger = logging.getLogger(__name__)


def da_metrics(
    results: pd.DataFrame,
    null: Iterable,
    level: float = 0.1,
    focus_col=None,
) -> pd.DataFrame:
    """
    False discovery rate and power of a DA result table.

    A feature is flagged when its q-value in ``focus_col`` is strictly
    below ``level``; missing q-values are never flagged.

        FDR   = |flagged ∩ null| / max(1, |flagged|)
        power = |flagged ∩ nonnull| / |nonnull|

    where nonnull is every result feature not in ``null``. Null ids absent
    from the results are ignored.

    Parameters
    ----------
    results : pd.DataFrame
        Output of differential_analysis (any table indexed by feature works).
    null : iterable
        Feature ids with no true effect.
    level : float
        Significance threshold on the q-value. Default 0.1.
    focus_col : str or int, optional
        Column label or position to threshold. Defaults to the last column.

    Returns
    -------
    pd.DataFrame
        Two rows with columns metric ("FDR", "power") and value.

    Raises
    ------
    DegenerateNullSet
        If every result feature is in ``null`` (power is undefined).
    ValueError
        If ``level`` is outside (0, 1] or ``focus_col`` is not in the table.
    """
    if not 0.0 < level <= 1.0:
        raise ValueError(f"level must be in (0, 1], got {level}.")

    if focus_col is None:
        q = results.iloc[:, -1]
    elif isinstance(focus_col, (int, np.integer)):
        q = results.iloc[:, focus_col]
    elif focus_col in results.columns:
        q = results[focus_col]
    else:
        raise ValueError(
            f"Column '{focus_col}' not found. Available columns: {list(results.columns)}"
        )

    null = set(null)
    flagged = set(results.index[(q < level).to_numpy()])
    nonnull = set(results.index) - null
    if not nonnull:
        raise DegenerateNullSet(
            f"All {len(results)} result features are declared null; power is undefined."
        )

    fdr = len(flagged & null) / max(1, len(flagged))
    power = len(flagged & nonnull) / len(nonnull)
    return pd.DataFrame({"metric": ["FDR", "power"], "value": [fdr, power]})


def power_analysis(
    simulator,
    methods: Sequence,
    sample_sizes: Sequence[int],
    n_reps: int = 5,
    null: Optional[Iterable] = None,
    level: float = 0.1,
    focus_col=None,
    configs: Optional[dict] = None,
    seed: Optional[int] = 42,
    **da_kwargs,
) -> pd.DataFrame:
    """
    Estimate FDR and power of several DA methods across sample sizes.

    For every sample size and repetition a fresh table is drawn from
    ``simulator`` (with its own seed derived from ``seed``), every method is
    run on it, and the result is scored with da_metrics. Repetitions where a
    method raises FittingFailure are skipped for that method with a warning;
    any other error propagates.

    Parameters
    ----------
    simulator : CountSimulator
        Estimated simulator. Must provide ``sample(n_per_group=, seed=)``,
        ``group`` and ``null_features``.
    methods : sequence of DAMethod or str
        Methods to compare. Validated before anything is sampled.
    sample_sizes : sequence of int
        Samples per group.
    n_reps : int
        Repetitions per sample size.
    null : iterable, optional
        Null feature ids. Defaults to ``simulator.null_features``.
    level, focus_col
        Passed to da_metrics.
    configs : dict, optional
        Method → config dataclass.
    seed : int, optional
        Seed of the whole sweep.
    **da_kwargs
        Passed to differential_analysis (reference, covariates).

    Returns
    -------
    pd.DataFrame
        Long format with columns method, n_per_group, rep, metric, value.
    """
    methods = [DAMethod.parse(m) for m in methods]
    configs = {DAMethod.parse(k): v for k, v in (configs or {}).items()}
    if null is None:
        null = simulator.null_features
    null = list(null)

    seeds = np.random.SeedSequence(seed).generate_state(len(sample_sizes) * n_reps)
    records = []
    for i, n in enumerate(sample_sizes):
        for rep in range(n_reps):
            rep_seed = int(seeds[i * n_reps + rep])
            counts, meta = simulator.sample(n_per_group=n, seed=rep_seed)
            for method in methods:
                try:
                    res = differential_analysis(
                        counts, meta, method,
                        group=simulator.group,
                        config=configs.get(method),
                        **da_kwargs,
                    )
                except FittingFailure as err:
                    logger.warning(
                        "Skipping %s at n_per_group=%d, rep %d: %s", method.value, n, rep, err
                    )
                    continue
                report = da_metrics(res, null, level=level, focus_col=focus_col)
                for metric, value in zip(report["metric"], report["value"]):
                    records.append({
                        "method": method.value,
                        "n_per_group": n,
                        "rep": rep,
                        "metric": metric,
                        "value": value,
                    })
        logger.info("Power sweep: finished n_per_group=%d", n)

    return pd.DataFrame(records, columns=["method", "n_per_group", "rep", "metric", "value"])


def summarize_power(sweep: pd.DataFrame) -> pd.DataFrame:
    """
    Average a power_analysis sweep over repetitions.

    Returns
    -------
    pd.DataFrame
        Columns method, n_per_group, metric, mean, sd, n_reps.
    """
    return (
        sweep.groupby(["method", "n_per_group", "metric"])["value"]
        .agg(mean="mean", sd="std", n_reps="count")
        .reset_index()
    )
