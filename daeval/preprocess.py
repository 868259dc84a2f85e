"""
daeval/preprocess.py

Preprocessing functions for microbiome count tables.

Validates a count table against its sample metadata, builds treatment-coded
design matrices, and provides the two normalisations the DA adapters rely
on: the centered log-ratio (CLR) transform for compositional rank tests and
TMM normalisation factors for log-CPM based linear models.

Count tables are always features × samples (rows = taxa, columns = sample ids).
"""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from daeval.exceptions import SchemaMismatch


INTERCEPT = "(Intercept)"


@dataclass
class Design:
    """
    Treatment-coded design for a categorical grouping variable.

    Attributes
    ----------
    matrix : pd.DataFrame
        Samples × coefficients design matrix. The first column is the
        intercept, followed by one indicator per non-reference level and
        then any continuous covariates.
    group : str
        Name of the grouping column.
    reference : object
        Reference level of the grouping variable.
    contrasts : list
        Non-reference levels, in column order. One contrast per level.
    labels : pd.Series
        Group label of every sample, aligned with ``matrix``.
    covariates : list
        Names of the continuous covariate columns appended after the group
        indicators.
    rank : int
        Numerical rank of ``matrix`` (property); below the column count the
        design is not estimable.
    """

    matrix: pd.DataFrame
    group: str
    reference: object
    contrasts: list
    labels: pd.Series
    covariates: list = field(default_factory=list)

    def coef(self, level) -> str:
        """Design column name for the contrast ``level`` vs the reference."""
        return f"{self.group}{level}"

    @property
    def rank(self) -> int:
        return int(np.linalg.matrix_rank(self.matrix.to_numpy(dtype=float)))


def align_metadata(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    group: str = "group",
) -> pd.DataFrame:
    """
    Check that a count table and sample metadata correspond.

    Parameters
    ----------
    counts : pd.DataFrame
        Features × samples count table.
    metadata : pd.DataFrame
        Sample metadata indexed by sample id.
    group : str
        Grouping column that must be present in ``metadata``.

    Returns
    -------
    pd.DataFrame
        A copy of ``metadata`` re-ordered to match ``counts.columns``.

    Raises
    ------
    SchemaMismatch
        If identifiers are duplicated, sample ids do not match one-to-one,
        the grouping column is missing or has missing values, or the table
        holds negative or non-numeric entries.
    """
    if counts.index.has_duplicates:
        dup = counts.index[counts.index.duplicated()].unique().tolist()
        raise SchemaMismatch(f"Duplicate feature ids in count table: {dup[:5]}")
    if counts.columns.has_duplicates:
        dup = counts.columns[counts.columns.duplicated()].unique().tolist()
        raise SchemaMismatch(f"Duplicate sample ids in count table: {dup[:5]}")
    if metadata.index.has_duplicates:
        dup = metadata.index[metadata.index.duplicated()].unique().tolist()
        raise SchemaMismatch(f"Duplicate sample ids in metadata: {dup[:5]}")

    non_numeric = [c for c, dt in counts.dtypes.items() if not pd.api.types.is_numeric_dtype(dt)]
    if non_numeric:
        raise SchemaMismatch(f"Count table has non-numeric sample columns: {non_numeric[:5]}")
    values = counts.to_numpy(dtype=float)
    if np.isnan(values).any():
        raise SchemaMismatch("Count table contains missing values.")
    if (values < 0).any():
        bad = counts.index[(values < 0).any(axis=1)].tolist()
        raise SchemaMismatch(f"Count table contains negative counts for features: {bad[:5]}")

    missing = [s for s in counts.columns if s not in metadata.index]
    extra = [s for s in metadata.index if s not in counts.columns]
    if missing or extra:
        raise SchemaMismatch(
            f"Sample ids do not match between counts ({counts.shape[1]}) and "
            f"metadata ({len(metadata)}): missing from metadata {missing[:5]}, "
            f"absent from counts {extra[:5]}."
        )

    if group not in metadata.columns:
        raise SchemaMismatch(
            f"Grouping column '{group}' not found in metadata. "
            f"Available columns: {list(metadata.columns)}"
        )
    aligned = metadata.loc[list(counts.columns)].copy()
    if aligned[group].isna().any():
        bad = aligned.index[aligned[group].isna()].tolist()
        raise SchemaMismatch(f"Grouping column '{group}' is missing for samples: {bad[:5]}")
    return aligned


def group_levels(labels: pd.Series, reference=None) -> list:
    """
    Ordered levels of a grouping variable, reference first.

    Categorical columns keep their category order (unused categories are
    dropped); other columns are sorted. An explicit ``reference`` is moved
    to the front.
    """
    if isinstance(labels.dtype, pd.CategoricalDtype):
        present = set(labels.dropna().unique())
        levels = [c for c in labels.cat.categories if c in present]
    else:
        levels = sorted(labels.dropna().unique().tolist(), key=str)

    if reference is not None:
        if reference not in levels:
            raise SchemaMismatch(
                f"Reference level '{reference}' not found in grouping levels {levels}."
            )
        levels = [reference] + [lv for lv in levels if lv != reference]
    return levels


def design_matrix(
    metadata: pd.DataFrame,
    group: str = "group",
    reference=None,
    covariates: Optional[list] = None,
) -> Design:
    """
    Build a treatment-coded design matrix ``~ group + covariates``.

    Parameters
    ----------
    metadata : pd.DataFrame
        Sample metadata, already aligned to the count table.
    group : str
        Categorical grouping column.
    reference : optional
        Reference level. Defaults to the first level (see group_levels).
    covariates : list of str, optional
        Continuous covariates appended after the group indicators.

    Returns
    -------
    Design

    Raises
    ------
    SchemaMismatch
        If the grouping variable has fewer than two levels or a covariate is
        missing or non-numeric.
    """
    covariates = list(covariates or [])
    labels = metadata[group]
    levels = group_levels(labels, reference)
    if len(levels) < 2:
        raise SchemaMismatch(
            f"Grouping column '{group}' needs at least two levels, found {levels}."
        )
    ref, contrasts = levels[0], levels[1:]

    matrix = pd.DataFrame({INTERCEPT: 1.0}, index=metadata.index)
    for level in contrasts:
        matrix[f"{group}{level}"] = (labels == level).astype(float).to_numpy()

    for cov in covariates:
        if cov not in metadata.columns:
            raise SchemaMismatch(f"Covariate '{cov}' not found in metadata.")
        if not pd.api.types.is_numeric_dtype(metadata[cov]):
            raise SchemaMismatch(f"Covariate '{cov}' must be numeric.")
        if metadata[cov].isna().any():
            raise SchemaMismatch(f"Covariate '{cov}' has missing values.")
        matrix[cov] = metadata[cov].astype(float).to_numpy()

    return Design(
        matrix=matrix,
        group=group,
        reference=ref,
        contrasts=contrasts,
        labels=labels,
        covariates=covariates,
    )


def clr_transform(
    counts: pd.DataFrame,
    pseudo_count: float = 1e-6,
) -> pd.DataFrame:
    """
    Apply the centered log-ratio (CLR) transform to every sample.

    Exact zeros are *replaced* by ``pseudo_count`` (non-zero counts are left
    untouched), then each sample's feature vector is log-transformed and
    centered by its own mean log value. The choice of replacement constant
    changes downstream rank statistics, so it is a fixed, documented default.

    Parameters
    ----------
    counts : pd.DataFrame
        Features × samples count table.
    pseudo_count : float
        Value substituted for exact zeros before the log.

    Returns
    -------
    pd.DataFrame
        Samples × features table of CLR values. One row per input sample;
        every row sums to zero.

    Notes
    -----
    CLR(x)_i = log(x_i) - mean_j log(x_j), i.e. log(x_i / geometric_mean(x)).
    """
    if pseudo_count <= 0:
        raise ValueError(f"pseudo_count must be positive, got {pseudo_count}.")
    values = counts.to_numpy(dtype=float, copy=True)
    values[values == 0] = pseudo_count
    log_vals = np.log(values)
    clr = log_vals - log_vals.mean(axis=0, keepdims=True)
    return pd.DataFrame(clr.T, index=counts.columns, columns=counts.index)


def tmm_factors(
    counts: pd.DataFrame,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
) -> pd.Series:
    """
    Trimmed mean of M-values (TMM) normalisation factors.

    The reference sample is the one whose upper-quartile scaled counts are
    closest to the mean upper quartile. For every other sample, M-values
    (log ratios against the reference) are trimmed by ``logratio_trim`` and
    A-values (average log abundance) by ``sum_trim`` on each side, and the
    precision-weighted mean of the remaining M-values gives the factor.
    Factors are scaled to a geometric mean of one.

    Parameters
    ----------
    counts : pd.DataFrame
        Features × samples count table.

    Returns
    -------
    pd.Series
        One factor per sample, indexed by sample id.
    """
    x = counts.to_numpy(dtype=float)
    x = x[x.sum(axis=1) > 0]
    lib = x.sum(axis=0)

    with np.errstate(divide="ignore", invalid="ignore"):
        upper_q = np.quantile(x / lib, 0.75, axis=0)
    ref_idx = int(np.argmin(np.abs(upper_q - upper_q.mean())))

    factors = np.array([
        _tmm_factor(x[:, j], x[:, ref_idx], lib[j], lib[ref_idx], logratio_trim, sum_trim)
        for j in range(x.shape[1])
    ])
    factors = factors / np.exp(np.mean(np.log(factors)))
    return pd.Series(factors, index=counts.columns, name="norm_factor")


def to_long(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    group: str = "group",
    source: str = "observed",
) -> pd.DataFrame:
    """
    Melt a count table into the long format consumed by daeval.viz.

    Returns
    -------
    pd.DataFrame
        Columns: feature, sample, value, group, source.
    """
    meta = align_metadata(counts, metadata, group)
    long = (
        counts.rename_axis(index="feature")
        .reset_index()
        .melt(id_vars="feature", var_name="sample", value_name="value")
    )
    long["group"] = long["sample"].map(meta[group])
    long["source"] = source
    return long


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _tmm_factor(obs, ref, lib_obs, lib_ref, logratio_trim, sum_trim) -> float:
    """TMM factor of one sample against the reference sample."""
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        var = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    keep = np.isfinite(log_r) & np.isfinite(abs_e)
    log_r, abs_e, var = log_r[keep], abs_e[keep], var[keep]
    if len(log_r) == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = len(log_r)
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    trimmed = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not trimmed.any():
        return 1.0

    f = np.sum(log_r[trimmed] / var[trimmed]) / np.sum(1.0 / var[trimmed])
    return float(2 ** f) if np.isfinite(f) else 1.0
