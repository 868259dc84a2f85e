"""
daeval/simulate.py

Simulation framework for DA benchmarking.

Generates count tables with a known set of null features so that
differential-abundance methods can be scored against ground truth.

Two entry points:

    simulate_counts  — fully parametric: negative-binomial counts for a
                       grouped design with a chosen set of differentially
                       abundant features and a fixed fold change.

    CountSimulator   — semisynthetic: learns per-feature, per-group
                       negative-binomial marginals from a real template
                       table (setup → estimate), can have features rewritten
                       to a chosen effect (mutate), and draws new tables of
                       any size (sample). Features are sampled independently;
                       no dependence structure between features is modelled.

Every stochastic call takes an explicit seed; there is no global RNG state.
"""

import copy
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from daeval.exceptions import FittingFailure, SchemaMismatch
from daeval.preprocess import align_metadata, group_levels


# ---------------------------------------------------------------------------
# Parametric simulation
# ---------------------------------------------------------------------------

def simulate_counts(
    n_features: int = 10,
    n_per_group: int = 20,
    groups: Sequence[str] = ("control", "case"),
    de_features: Optional[list] = None,
    fold_change: float = 4.0,
    base_mean: float = 200.0,
    dispersion: float = 0.1,
    depth_sd: float = 0.0,
    zero_inflation: float = 0.0,
    seed: Optional[int] = 42,
):
    """
    Simulate a grouped count table with known differentially abundant features.

    Parameters
    ----------
    n_features : int
        Number of features (taxa).
    n_per_group : int
        Samples per group.
    groups : sequence of str
        Group levels; the first is the reference.
    de_features : list of int, optional
        Indices of features whose mean differs between groups. Defaults to
        the first two features.
    fold_change : float
        Mean ratio between every non-reference group and the reference for
        DE features. DE features alternate up (×fold_change) and down
        (÷fold_change) so that the total composition stays balanced.
    base_mean : float
        Median per-feature mean count in the reference group. Individual
        feature means are drawn log-normally around it.
    dispersion : float
        Negative-binomial dispersion (Var = mu + dispersion * mu²).
        0 gives Poisson counts.
    depth_sd : float
        SD of log sequencing-depth factors across samples. 0 = equal depth.
    zero_inflation : float
        Proportion of counts replaced with structural zeros.
    seed : int, optional
        Random seed for reproducibility.

    Returns
    -------
    counts : pd.DataFrame
        Features × samples integer counts. Ground truth is stored in
        ``counts.attrs`` (see get_ground_truth).
    metadata : pd.DataFrame
        Indexed by sample id with a categorical ``group`` column (reference
        first) and ``log_depth`` (log total count per sample).

    Examples
    --------
    >>> counts, meta = simulate_counts(n_features=10, n_per_group=20, seed=0)
    >>> get_ground_truth(counts)["de_features"]
    ['taxon_000', 'taxon_001']
    """
    if len(groups) < 2:
        raise ValueError(f"Need at least two groups, got {list(groups)}.")
    if fold_change <= 0:
        raise ValueError(f"fold_change must be positive, got {fold_change}.")
    if dispersion < 0:
        raise ValueError(f"dispersion must be non-negative, got {dispersion}.")

    rng = np.random.default_rng(seed)

    if de_features is None:
        de_features = [0, 1]
    features = [f"taxon_{i:03d}" for i in range(n_features)]
    samples = [f"sample_{i:03d}" for i in range(n_per_group * len(groups))]
    labels = np.repeat(list(groups), n_per_group)

    # Reference-group means, log-normal around base_mean
    ref_mean = base_mean * rng.lognormal(0.0, 0.5, size=n_features)

    # Per-sample mean matrix: features × samples
    effect = np.ones((n_features, len(groups)))
    for rank, feat_idx in enumerate(de_features):
        direction = 1.0 if rank % 2 == 0 else -1.0
        effect[feat_idx, 1:] = fold_change ** direction
    group_idx = np.repeat(np.arange(len(groups)), n_per_group)
    depth = np.exp(rng.normal(0.0, depth_sd, size=len(samples)))
    mu = ref_mean[:, None] * effect[:, group_idx] * depth[None, :]

    values = _draw_nb(rng, mu, np.full(n_features, dispersion))

    if zero_inflation > 0:
        values[rng.random(values.shape) < zero_inflation] = 0

    counts = pd.DataFrame(values, index=features, columns=samples)
    counts.index.name = "feature"
    metadata = pd.DataFrame(
        {
            "group": pd.Categorical(labels, categories=list(groups)),
            "log_depth": np.log(counts.sum(axis=0).clip(lower=1)).to_numpy(),
        },
        index=pd.Index(samples, name="sample"),
    )

    de_names = [features[i] for i in de_features]
    counts.attrs["de_features"] = de_names
    counts.attrs["null_features"] = [f for f in features if f not in de_names]
    counts.attrs["fold_change"] = fold_change
    counts.attrs["groups"] = list(groups)

    return counts, metadata


# ---------------------------------------------------------------------------
# Semisynthetic simulation from a template
# ---------------------------------------------------------------------------

class CountSimulator:
    """
    Negative-binomial marginal simulator trained on a template count table.

    Typical workflow::

        sim = CountSimulator.setup(template, metadata, group="bmi_group")
        sim.estimate()
        sim = sim.mutate(null_taxa, fold_change=1.0)   # erase their group effect
        counts, meta = sim.sample(n_per_group=30, seed=1)

    Attributes
    ----------
    mean_ : pd.DataFrame
        Features × levels depth-normalised mean counts (after estimate()).
    dispersion_ : pd.DataFrame
        Features × levels negative-binomial dispersions (after estimate()).
    null_features : list
        Features declared to have no group effect via mutate().
    """

    def __init__(self, template: pd.DataFrame, metadata: pd.DataFrame, group: str = "group"):
        self.metadata = align_metadata(template, metadata, group)
        self.template = template.copy()
        self.group = group
        self.levels = group_levels(self.metadata[group])
        self.mean_ = None
        self.dispersion_ = None
        self.size_factors_ = None
        self.null_features = []

    @classmethod
    def setup(cls, template: pd.DataFrame, metadata: pd.DataFrame, group: str = "group"):
        """Create an untrained simulator for ``template`` grouped by ``group``."""
        return cls(template, metadata, group)

    @property
    def is_estimated(self) -> bool:
        return self.mean_ is not None

    def estimate(self, min_dispersion: float = 1e-8) -> "CountSimulator":
        """
        Fit per-feature, per-group negative-binomial marginals by moments.

        Counts are divided by median-of-ratios size factors computed over
        positive counts only, then for every feature and
        group the mean and the moment dispersion max((var − mean) / mean²,
        min_dispersion) are recorded.

        Returns
        -------
        CountSimulator
            ``self``, for chaining.
        """
        x = self.template.to_numpy(dtype=float)
        lib = x.sum(axis=0)
        if (lib == 0).any():
            raise FittingFailure(
                "Template has samples with zero total count: "
                f"{self.template.columns[lib == 0].tolist()[:5]}",
                features=self.template.columns[lib == 0],
            )
        sf = _poscount_size_factors(x)
        norm = x / sf

        labels = self.metadata[self.group].to_numpy()
        means, disps = {}, {}
        for level in self.levels:
            block = norm[:, labels == level]
            if block.shape[1] < 2:
                raise FittingFailure(
                    f"Group level '{level}' has fewer than two template samples."
                )
            m = block.mean(axis=1)
            v = block.var(axis=1, ddof=1)
            with np.errstate(divide="ignore", invalid="ignore"):
                d = np.where(m > 0, (v - m) / m ** 2, min_dispersion)
            means[level] = m
            disps[level] = np.maximum(d, min_dispersion)

        self.mean_ = pd.DataFrame(means, index=self.template.index)
        self.dispersion_ = pd.DataFrame(disps, index=self.template.index)
        self.size_factors_ = sf
        return self

    def mutate(self, features: list, fold_change: float = 1.0, level=None) -> "CountSimulator":
        """
        Return a copy of the simulator with new group effects for ``features``.

        Parameters
        ----------
        features : list
            Feature ids to rewrite.
        fold_change : float
            1.0 removes the group effect: every group gets the sample-weighted
            pooled mean and dispersion, and the features are recorded as null.
            Any other value sets the mean of ``level`` (or every
            non-reference level) to reference mean × fold_change.
        level : optional
            Non-reference level to change. Defaults to all of them.
        """
        self._require_estimate()
        unknown = [f for f in features if f not in self.mean_.index]
        if unknown:
            raise SchemaMismatch(f"Features not in template: {unknown[:5]}")
        if fold_change <= 0:
            raise ValueError(f"fold_change must be positive, got {fold_change}.")

        new = copy.deepcopy(self)
        features = list(features)
        if fold_change == 1.0:
            sizes = self.metadata[self.group].value_counts().reindex(self.levels).to_numpy(dtype=float)
            w = sizes / sizes.sum()
            pooled_mean = new.mean_.loc[features].to_numpy() @ w
            pooled_disp = new.dispersion_.loc[features].to_numpy() @ w
            for lv in self.levels:
                new.mean_.loc[features, lv] = pooled_mean
                new.dispersion_.loc[features, lv] = pooled_disp
            new.null_features = list(dict.fromkeys(self.null_features + features))
        else:
            reference = self.levels[0]
            targets = [level] if level is not None else self.levels[1:]
            for lv in targets:
                if lv not in self.levels[1:]:
                    raise SchemaMismatch(f"'{lv}' is not a non-reference level of {self.levels}.")
                new.mean_.loc[features, lv] = new.mean_.loc[features, reference] * fold_change
            new.null_features = [f for f in self.null_features if f not in features]
        return new

    def sample(
        self,
        metadata: Optional[pd.DataFrame] = None,
        n_per_group: Optional[int] = None,
        seed: Optional[int] = None,
    ):
        """
        Draw a new count table from the fitted marginals.

        Parameters
        ----------
        metadata : pd.DataFrame, optional
            New sample metadata containing the grouping column. Takes
            precedence over ``n_per_group``.
        n_per_group : int, optional
            Balanced design with this many samples per level. If neither
            argument is given the template design is reused.
        seed : int, optional
            Random seed for reproducibility.

        Returns
        -------
        counts : pd.DataFrame
            Features × samples; ``attrs["null_features"]`` lists the null set.
        metadata : pd.DataFrame
            Sample metadata with the grouping column and ``log_depth``.
        """
        self._require_estimate()
        rng = np.random.default_rng(seed)

        if metadata is not None:
            if self.group not in metadata.columns:
                raise SchemaMismatch(f"Grouping column '{self.group}' not found in metadata.")
            unknown = set(metadata[self.group].dropna()) - set(self.levels)
            if unknown:
                raise SchemaMismatch(f"Unknown group levels {sorted(unknown, key=str)}.")
            meta = metadata.copy()
        elif n_per_group is not None:
            labels = np.repeat(self.levels, n_per_group)
            meta = pd.DataFrame(
                {self.group: pd.Categorical(labels, categories=self.levels)},
                index=pd.Index([f"sim_{i:04d}" for i in range(len(labels))], name="sample"),
            )
        else:
            meta = self.metadata.copy()

        labels = meta[self.group].to_numpy()
        sf = rng.choice(self.size_factors_, size=len(meta), replace=True)
        mu = self.mean_[list(labels)].to_numpy() * sf[None, :]
        disp = self.dispersion_[list(labels)].to_numpy()
        values = _draw_nb(rng, mu, disp)

        counts = pd.DataFrame(values, index=self.template.index, columns=meta.index)
        meta["log_depth"] = np.log(counts.sum(axis=0).clip(lower=1)).to_numpy()
        counts.attrs["null_features"] = list(self.null_features)
        counts.attrs["de_features"] = [f for f in counts.index if f not in self.null_features]
        return counts, meta

    def _require_estimate(self):
        if not self.is_estimated:
            raise FittingFailure("Simulator has not been estimated; call estimate() first.")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def get_ground_truth(counts: pd.DataFrame) -> dict:
    """
    Extract ground truth metadata from a simulated count table.

    Parameters
    ----------
    counts : pd.DataFrame
        Output of simulate_counts or CountSimulator.sample.

    Returns
    -------
    dict
        de_features, null_features, fold_change, groups.
    """
    if "null_features" not in counts.attrs:
        raise ValueError(
            "This table does not have simulation metadata. "
            "Make sure it was generated by simulate_counts or CountSimulator.sample."
        )
    return {
        "de_features": counts.attrs.get("de_features"),
        "null_features": counts.attrs.get("null_features"),
        "fold_change": counts.attrs.get("fold_change"),
        "groups": counts.attrs.get("groups"),
    }


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _poscount_size_factors(x):
    """Median-of-ratios size factors using positive counts, scaled to geometric mean 1."""
    x = x[(x > 0).any(axis=1)]
    with np.errstate(divide="ignore"):
        log_x = np.where(x > 0, np.log(x), np.nan)
    log_geo = np.nanmean(log_x, axis=1)
    sf = np.exp(np.nanmedian(log_x - log_geo[:, None], axis=0))
    return sf / np.exp(np.mean(np.log(sf)))


def _draw_nb(rng, mu, dispersion):
    """
    Negative-binomial draws with mean ``mu`` and dispersion ``dispersion``.

    ``dispersion`` broadcasts against ``mu`` (per feature as a column
    vector, or per entry). Zero dispersion gives Poisson draws.
    """
    mu = np.asarray(mu, dtype=float)
    disp = np.broadcast_to(
        np.asarray(dispersion, dtype=float).reshape(-1, 1)
        if np.ndim(dispersion) == 1 else np.asarray(dispersion, dtype=float),
        mu.shape,
    )
    out = np.empty(mu.shape, dtype=np.int64)
    poisson = disp <= 1e-8
    out[poisson] = rng.poisson(mu[poisson])
    size = 1.0 / disp[~poisson]
    out[~poisson] = rng.negative_binomial(size, size / (size + mu[~poisson]))
    return out
