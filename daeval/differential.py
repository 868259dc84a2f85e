"""
daeval/differential.py

Differential-abundance (DA) adapter layer.

One calling convention over four DA procedures whose native inputs and
outputs have nothing in common:

    ANCOMBC     — linear model on log counts with sample-level sampling
                  fraction removal and a per-contrast compositional bias
                  correction (ANCOM-BC style). Effects are natural-log fold
                  changes.

    LIMMA_voom  — TMM-normalised log-CPM, voom mean–variance precision
                  weights, weighted least squares and empirical Bayes
                  variance shrinkage (moderated t). Effects are log2 fold
                  changes.

    DESeq2      — negative-binomial GLM with "poscount" size factors and
                  Wald tests, via PyDESeq2. Effects are log2 fold changes.

    wilcox-clr  — two-sided Wilcoxon rank-sum test per contrast on CLR
                  values (exact zeros replaced by 1e-6 before the per-sample
                  CLR). Effects are differences in mean CLR.

Every adapter returns the same canonical result table: one row per input
feature, then for every non-reference level a ``log_FC(level)`` column, a
``p_value(level)`` column and a ``q_value(level)`` column, grouped by
statistic. q-values are Benjamini–Hochberg adjusted independently per
contrast. Features an adapter cannot test carry NaN, never zero.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

from daeval.exceptions import FittingFailure, InvalidMethod
from daeval.preprocess import (
    Design,
    align_metadata,
    clr_transform,
    design_matrix,
    tmm_factors,
)

logger = logging.getLogger(__name__)

_P_ADJUST_METHODS = ("fdr_bh", "fdr_by", "bonferroni", "holm")


# =============================================================================
# METHODS AND CONFIGURATION
# =============================================================================


class DAMethod(Enum):
    """Supported differential-abundance methods."""

    ANCOMBC = "ANCOMBC"
    LIMMA_VOOM = "LIMMA_voom"
    DESEQ2 = "DESeq2"
    WILCOX_CLR = "wilcox-clr"

    @classmethod
    def parse(cls, method: Union["DAMethod", str]) -> "DAMethod":
        """Resolve a method selector, raising InvalidMethod for unknown values."""
        if isinstance(method, cls):
            return method
        try:
            return cls(method)
        except ValueError:
            raise InvalidMethod(
                f"Unknown DA method '{method}'. "
                f"Choose from: {', '.join(repr(m.value) for m in cls)}."
            ) from None


@dataclass
class _AdapterConfig:
    p_adj_method: str = "fdr_bh"

    def __post_init__(self):
        if self.p_adj_method not in _P_ADJUST_METHODS:
            raise ValueError(
                f"p_adj_method must be one of {_P_ADJUST_METHODS}, got '{self.p_adj_method}'."
            )


@dataclass
class AncomBCConfig(_AdapterConfig):
    """
    Settings for the ANCOM-BC style adapter.

    Attributes:
        pseudo_count: Added to counts before the log.
        prv_cut: Features present (count > 0) in fewer than this fraction of
            samples are not tested and reported as NaN.
    """

    pseudo_count: float = 1.0
    prv_cut: float = 0.1

    def __post_init__(self):
        super().__post_init__()
        if self.pseudo_count <= 0:
            raise ValueError(f"pseudo_count must be positive, got {self.pseudo_count}.")
        if not 0.0 <= self.prv_cut < 1.0:
            raise ValueError(f"prv_cut must be in [0, 1), got {self.prv_cut}.")


@dataclass
class LimmaVoomConfig(_AdapterConfig):
    """
    Settings for the limma-voom adapter.

    Attributes:
        span: lowess span of the voom mean–variance trend.
        tmm: Use TMM normalisation factors; raw library sizes otherwise.
    """

    span: float = 0.5
    tmm: bool = True

    def __post_init__(self):
        super().__post_init__()
        if not 0.0 < self.span <= 1.0:
            raise ValueError(f"span must be in (0, 1], got {self.span}.")


@dataclass
class DESeq2Config(_AdapterConfig):
    """Settings passed through to PyDESeq2."""

    size_factors_fit_type: str = "poscount"
    refit_cooks: bool = True
    cooks_filter: bool = True
    independent_filter: bool = True
    alpha: float = 0.05

    def __post_init__(self):
        super().__post_init__()
        if self.size_factors_fit_type not in ("ratio", "poscount", "iterative"):
            raise ValueError(
                "size_factors_fit_type must be 'ratio', 'poscount' or 'iterative', "
                f"got '{self.size_factors_fit_type}'."
            )


@dataclass
class WilcoxCLRConfig(_AdapterConfig):
    """
    Settings for the rank-sum adapter.

    Attributes:
        clr: CLR-transform counts before testing; raw counts otherwise.
        pseudo_count: Replacement value for exact zeros before the CLR.
    """

    clr: bool = True
    pseudo_count: float = 1e-6


# =============================================================================
# ADAPTERS
# =============================================================================


class DAAdapter:
    """
    Shared interface of the per-method adapters.

    Subclasses implement ``_contrasts`` and return, for every contrast level,
    per-feature effect sizes and p-values (and optionally adjusted p-values
    when the native procedure computes its own). ``fit`` turns those into the
    canonical result table.
    """

    method: DAMethod
    config_class = _AdapterConfig

    def __init__(self, config=None):
        if config is None:
            config = self.config_class()
        if not isinstance(config, self.config_class):
            raise InvalidMethod(
                f"{self.method.value} expects a {self.config_class.__name__}, "
                f"got {type(config).__name__}."
            )
        self.config = config

    def fit(self, counts: pd.DataFrame, metadata: pd.DataFrame, design: Design) -> pd.DataFrame:
        """
        Run the method on aligned inputs and return the canonical result table.

        Parameters
        ----------
        counts : pd.DataFrame
            Features × samples count table.
        metadata : pd.DataFrame
            Sample metadata aligned to ``counts.columns``.
        design : Design
            Treatment-coded design built from ``metadata``.
        """
        per_contrast = self._contrasts(counts, metadata, design)
        return self._assemble(counts.index, design, per_contrast)

    def _contrasts(self, counts, metadata, design) -> Dict[object, pd.DataFrame]:
        raise NotImplementedError

    def _adjust(self, pvalues: pd.Series) -> pd.Series:
        """Multiple-testing adjustment over the non-missing p-values of one contrast."""
        adjusted = pd.Series(np.nan, index=pvalues.index)
        tested = pvalues.notna()
        if tested.any():
            _, q, _, _ = multipletests(pvalues[tested].to_numpy(), method=self.config.p_adj_method)
            adjusted[tested] = q
        return adjusted

    def _assemble(self, features: pd.Index, design: Design, per_contrast: dict) -> pd.DataFrame:
        lfc, pval, qval = {}, {}, {}
        for level in design.contrasts:
            res = per_contrast[level].reindex(features)
            padj = res["padj"] if "padj" in res.columns else self._adjust(res["pvalue"])
            lfc[f"log_FC({level})"] = res["lfc"]
            pval[f"p_value({level})"] = res["pvalue"]
            qval[f"q_value({level})"] = padj

        result = pd.concat(
            [pd.DataFrame(lfc), pd.DataFrame(pval), pd.DataFrame(qval)], axis=1
        ).reindex(features)
        result.index.name = features.name
        result.attrs = {
            "method": self.method.value,
            "group": design.group,
            "reference": design.reference,
            "contrasts": list(design.contrasts),
        }
        return result


class AncomBCAdapter(DAAdapter):
    """
    ANCOM-BC style bias-corrected linear model.

    Per feature, log counts are regressed on the design. Sample-specific
    sampling fractions are the per-sample mean log count with the design
    projected out; removing them leaves the coefficients unchanged but takes
    sequencing-depth noise out of the residual variance. The remaining
    compositional bias of each group coefficient is shared by all features
    and is estimated as the median coefficient across tested features (the
    bulk of features is assumed null), then subtracted. Test statistics are
    Wald statistics referred to a t distribution with the residual degrees
    of freedom.
    """

    method = DAMethod.ANCOMBC
    config_class = AncomBCConfig

    def _contrasts(self, counts, metadata, design):
        cfg = self.config
        raw = counts.to_numpy(dtype=float)
        prevalence = (raw > 0).mean(axis=1)
        tested = prevalence >= cfg.prv_cut
        if tested.sum() < 2:
            raise FittingFailure(
                f"ANCOMBC needs at least two features above prevalence {cfg.prv_cut}, "
                f"found {int(tested.sum())}.",
                method=self.method.value,
                features=counts.index[~tested],
            )
        if (~tested).any():
            logger.info(
                "ANCOMBC: %d features below prevalence cut %.2f are not tested",
                int((~tested).sum()), cfg.prv_cut,
            )

        y = np.log(raw[tested] + cfg.pseudo_count)
        X = design.matrix.to_numpy(dtype=float)
        n, p = X.shape
        dof = n - p - 1
        if dof <= 0:
            raise FittingFailure(
                f"ANCOMBC: {n} samples leave no residual degrees of freedom for {p} coefficients.",
                method=self.method.value,
            )

        xtx_inv = np.linalg.inv(X.T @ X)
        hat = X @ xtx_inv @ X.T
        beta = y @ X @ xtx_inv                      # features × coefficients
        sampling_fraction = y.mean(axis=0) @ (np.eye(n) - hat)
        resid = y - beta @ X.T - sampling_fraction
        sigma2 = (resid ** 2).sum(axis=1) / dof

        names = counts.index[tested]
        degenerate = sigma2 <= 1e-12
        if degenerate.any():
            logger.warning(
                "ANCOMBC: zero residual variance for features %s; reported as missing",
                names[degenerate].tolist()[:5],
            )

        columns = list(design.matrix.columns)
        out = {}
        for level in design.contrasts:
            k = columns.index(design.coef(level))
            bias = float(np.median(beta[:, k]))
            lfc = beta[:, k] - bias
            with np.errstate(divide="ignore", invalid="ignore"):
                se = np.sqrt(sigma2 * xtx_inv[k, k])
                w = lfc / se
            pvalue = 2 * stats.t.sf(np.abs(w), dof)
            lfc = np.where(degenerate, np.nan, lfc)
            pvalue = np.where(degenerate, np.nan, pvalue)
            out[level] = pd.DataFrame({"lfc": lfc, "pvalue": pvalue}, index=names)
            logger.debug("ANCOMBC: bias estimate for %s = %.4f", level, bias)
        return out


class LimmaVoomAdapter(DAAdapter):
    """
    limma-voom: precision-weighted linear model with moderated t-statistics.

    Counts are converted to log2-CPM using TMM-scaled library sizes. An
    unweighted fit gives residual SDs whose square roots are smoothed against
    mean log-count by lowess; the smoothed trend evaluated at each fitted
    value gives the observation weights. A weighted fit follows, and residual
    variances are shrunk toward a common prior estimated from their
    distribution (empirical Bayes). Features with zero counts in every sample
    are not tested.
    """

    method = DAMethod.LIMMA_VOOM
    config_class = LimmaVoomConfig

    def _contrasts(self, counts, metadata, design):
        cfg = self.config
        x = counts.to_numpy(dtype=float)
        lib = x.sum(axis=0)
        if (lib == 0).any():
            raise FittingFailure(
                f"LIMMA_voom: samples with zero library size: {counts.columns[lib == 0].tolist()[:5]}",
                method=self.method.value,
                features=counts.columns[lib == 0],
            )

        nonzero = x.sum(axis=1) > 0
        names = counts.index[nonzero]
        x = x[nonzero]
        factors = tmm_factors(counts).to_numpy() if cfg.tmm else np.ones_like(lib)
        lib_eff = lib * factors

        X = design.matrix.to_numpy(dtype=float)
        n, p = X.shape
        dof = n - p
        if dof <= 0 or len(names) < 2:
            raise FittingFailure(
                f"LIMMA_voom: cannot fit {p} coefficients to {n} samples and {len(names)} features.",
                method=self.method.value,
            )

        y = np.log2((x + 0.5) / (lib_eff + 1.0) * 1e6)
        weights = self._voom_weights(y, X, lib_eff, names)

        try:
            beta, unscaled_sd, s2 = _weighted_fit(y, X, weights, dof)
        except np.linalg.LinAlgError as err:
            raise FittingFailure(f"LIMMA_voom: weighted fit failed: {err}", method=self.method.value) from err

        d0, s2_prior = _fit_f_dist(s2, dof)
        if np.isinf(d0):
            s2_post = np.full_like(s2, s2_prior)
        else:
            s2_post = (d0 * s2_prior + dof * s2) / (d0 + dof)
        df_total = min(dof + d0, dof * len(names))
        logger.debug("LIMMA_voom: prior df %.3f, prior variance %.4g", d0, s2_prior)

        columns = list(design.matrix.columns)
        out = {}
        for level in design.contrasts:
            k = columns.index(design.coef(level))
            t = beta[:, k] / (unscaled_sd[:, k] * np.sqrt(s2_post))
            pvalue = 2 * stats.t.sf(np.abs(t), df_total)
            out[level] = pd.DataFrame({"lfc": beta[:, k], "pvalue": pvalue}, index=names)
        return out

    def _voom_weights(self, y, X, lib_eff, names):
        """Observation weights from the lowess fit of sqrt(residual SD) on mean log-count."""
        n, p = X.shape
        beta, _, _, _ = np.linalg.lstsq(X, y.T, rcond=None)
        beta = beta.T
        fitted = beta @ X.T
        sigma = np.sqrt(((y - fitted) ** 2).sum(axis=1) / (n - p))

        mean_log_lib = np.mean(np.log2(lib_eff + 1.0))
        sx = y.mean(axis=1) + mean_log_lib - np.log2(1e6)
        sy = np.sqrt(sigma)
        trend = lowess(sy, sx, frac=self.config.span, return_sorted=True)
        if not np.isfinite(trend).all():
            raise FittingFailure(
                "LIMMA_voom: mean-variance trend could not be estimated.",
                method=self.method.value,
                features=names[~(np.isfinite(sx) & np.isfinite(sy))],
            )

        fitted_logcount = fitted + np.log2(lib_eff + 1.0) - np.log2(1e6)
        curve = np.interp(fitted_logcount, trend[:, 0], trend[:, 1])
        return 1.0 / np.maximum(curve, 1e-8) ** 4


class DESeq2Adapter(DAAdapter):
    """Negative-binomial GLM via PyDESeq2, one Wald contrast per non-reference level."""

    method = DAMethod.DESEQ2
    config_class = DESeq2Config

    def _contrasts(self, counts, metadata, design):
        from pydeseq2.dds import DeseqDataSet
        from pydeseq2.ds import DeseqStats

        cfg = self.config
        group = design.group
        clinical = metadata[[group] + design.covariates].copy()
        clinical[group] = clinical[group].astype(str)
        formula = "~" + " + ".join([group] + design.covariates)

        try:
            dds = DeseqDataSet(
                counts=counts.round().astype(int).T,
                metadata=clinical,
                design=formula,
                size_factors_fit_type=cfg.size_factors_fit_type,
                refit_cooks=cfg.refit_cooks,
                quiet=True,
            )
            dds.deseq2()

            out = {}
            for level in design.contrasts:
                stat_res = DeseqStats(
                    dds,
                    contrast=[group, str(level), str(design.reference)],
                    alpha=cfg.alpha,
                    cooks_filter=cfg.cooks_filter,
                    independent_filter=cfg.independent_filter,
                    quiet=True,
                )
                stat_res.summary()
                res = stat_res.results_df
                frame = pd.DataFrame({
                    "lfc": res["log2FoldChange"],
                    "pvalue": res["pvalue"],
                })
                # PyDESeq2 only adjusts with BH; other rules are applied here.
                if cfg.p_adj_method == "fdr_bh":
                    frame["padj"] = res["padj"]
                out[level] = frame
        except (ValueError, RuntimeError, np.linalg.LinAlgError, FloatingPointError) as err:
            raise FittingFailure(f"DESeq2 fit failed: {err}", method=self.method.value) from err
        return out


class WilcoxCLRAdapter(DAAdapter):
    """Two-sided rank-sum test of each level against the reference, per feature."""

    method = DAMethod.WILCOX_CLR
    config_class = WilcoxCLRConfig

    def _contrasts(self, counts, metadata, design):
        cfg = self.config
        if cfg.clr:
            values = clr_transform(counts, pseudo_count=cfg.pseudo_count)
        else:
            values = counts.T.astype(float)

        labels = design.labels.to_numpy()
        ref = values.to_numpy()[labels == design.reference]
        out = {}
        for level in design.contrasts:
            other = values.to_numpy()[labels == level]
            with np.errstate(divide="ignore", invalid="ignore"):
                res = stats.mannwhitneyu(other, ref, alternative="two-sided", axis=0)
            out[level] = pd.DataFrame(
                {"lfc": other.mean(axis=0) - ref.mean(axis=0), "pvalue": res.pvalue},
                index=values.columns,
            )
        return out


_ADAPTERS = {
    DAMethod.ANCOMBC: AncomBCAdapter,
    DAMethod.LIMMA_VOOM: LimmaVoomAdapter,
    DAMethod.DESEQ2: DESeq2Adapter,
    DAMethod.WILCOX_CLR: WilcoxCLRAdapter,
}


# =============================================================================
# PUBLIC API
# =============================================================================


def get_adapter(method: Union[DAMethod, str], config=None) -> DAAdapter:
    """Instantiate the adapter for ``method`` with an optional config."""
    return _ADAPTERS[DAMethod.parse(method)](config)


def differential_analysis(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    method: Union[DAMethod, str],
    group: str = "group",
    reference=None,
    covariates: Optional[list] = None,
    config=None,
) -> pd.DataFrame:
    """
    Run one differential-abundance method and return the canonical result table.

    Parameters
    ----------
    counts : pd.DataFrame
        Features × samples table of non-negative counts.
    metadata : pd.DataFrame
        Sample metadata indexed by sample id. Must contain ``group`` and any
        ``covariates``; re-ordered by key to match ``counts.columns``.
    method : DAMethod or str
        One of "ANCOMBC", "LIMMA_voom", "DESeq2", "wilcox-clr".
    group : str
        Categorical grouping column.
    reference : optional
        Reference level; defaults to the first category (categorical column)
        or the first level in sorted order.
    covariates : list of str, optional
        Continuous covariates added to the design. Ignored by wilcox-clr.
    config : optional
        Method-specific config dataclass (AncomBCConfig, LimmaVoomConfig,
        DESeq2Config or WilcoxCLRConfig).

    Returns
    -------
    pd.DataFrame
        Indexed like ``counts``. Columns ``log_FC(level)`` for every
        non-reference level, then ``p_value(level)``, then ``q_value(level)``.
        ``attrs`` records method, group, reference and contrasts.

    Raises
    ------
    InvalidMethod
        Unknown method or mismatched config type, before any fitting.
    SchemaMismatch
        Counts and metadata do not correspond.
    FittingFailure
        Rank-deficient design or a failing numerical fit.

    Examples
    --------
    >>> counts, meta = simulate.simulate_counts(seed=0)
    >>> res = differential_analysis(counts, meta, "wilcox-clr")
    >>> res.filter(like="q_value").head()
    """
    adapter = get_adapter(method, config)

    meta = align_metadata(counts, metadata, group)
    design = design_matrix(meta, group, reference, covariates)
    if design.rank < design.matrix.shape[1]:
        raise FittingFailure(
            f"{adapter.method.value}: design matrix with columns {list(design.matrix.columns)} "
            "is rank deficient.",
            method=adapter.method.value,
        )

    logger.info(
        "Running %s on %d features x %d samples (%d contrasts vs '%s')",
        adapter.method.value, counts.shape[0], counts.shape[1],
        len(design.contrasts), design.reference,
    )
    return adapter.fit(counts.copy(), meta, design)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _weighted_fit(y, X, weights, dof):
    """
    Per-feature weighted least squares.

    Returns coefficients (features × coefficients), unscaled coefficient
    standard deviations (same shape) and residual variances (features).
    """
    xtwx = np.einsum("sp,fs,sq->fpq", X, weights, X)
    xtwy = np.einsum("sp,fs,fs->fp", X, weights, y)
    beta = np.linalg.solve(xtwx, xtwy[..., None])[..., 0]
    unscaled_sd = np.sqrt(np.diagonal(np.linalg.inv(xtwx), axis1=1, axis2=2))
    resid = y - beta @ X.T
    s2 = (weights * resid ** 2).sum(axis=1) / dof
    return beta, unscaled_sd, s2


def _fit_f_dist(s2, dof):
    """
    Moment estimates of the scaled-F prior on residual variances.

    Returns (prior degrees of freedom, prior variance). Prior df is infinite
    when the observed spread of log-variances is no larger than sampling
    noise alone would give, and zero when too few variances are usable.
    """
    usable = np.isfinite(s2) & (s2 > 1e-15)
    if usable.sum() < 3:
        return 0.0, float(np.nanmean(s2))

    half = dof / 2.0
    e = np.log(s2[usable]) - digamma(half) + np.log(half)
    e_mean = e.mean()
    e_var = ((e - e_mean) ** 2).sum() / (len(e) - 1) - polygamma(1, half)
    if e_var > 0:
        d0 = 2.0 * _trigamma_inverse(e_var)
        s2_prior = float(np.exp(e_mean + digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    else:
        d0 = np.inf
        s2_prior = float(np.exp(e_mean))
    return d0, s2_prior


def _trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x for y by Newton iteration."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = polygamma(1, y)
        step = tri * (1.0 - tri / x) / polygamma(2, y)
        y += step
        if -step / y < 1e-8:
            break
    return float(y)
