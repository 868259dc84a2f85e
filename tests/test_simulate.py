"""
tests/test_simulate.py

Unit tests for the daeval simulation framework.
These tests verify that simulated tables have the correct structure,
the declared ground truth, and that the semisynthetic simulator
reproduces and rewrites group effects as requested.
"""

import pytest
import numpy as np
import pandas as pd
from daeval import simulate
from daeval.exceptions import FittingFailure, SchemaMismatch


# ---------------------------------------------------------------------------
# Test simulate_counts
# ---------------------------------------------------------------------------

class TestSimulateCounts:

    def test_output_shape(self):
        counts, meta = simulate.simulate_counts(n_features=12, n_per_group=7, seed=0)
        assert counts.shape == (12, 14)
        assert len(meta) == 14
        assert list(meta.index) == list(counts.columns)

    def test_counts_are_non_negative_integers(self):
        counts, _ = simulate.simulate_counts(seed=0)
        assert (counts.values >= 0).all()
        assert np.issubdtype(counts.values.dtype, np.integer)

    def test_group_column_is_categorical_reference_first(self):
        _, meta = simulate.simulate_counts(groups=("obese", "overweight", "lean"), seed=0)
        assert list(meta["group"].cat.categories) == ["obese", "overweight", "lean"]
        assert (meta["group"].value_counts() == 20).all()

    def test_log_depth_column(self):
        counts, meta = simulate.simulate_counts(seed=0)
        np.testing.assert_allclose(meta["log_depth"].values, np.log(counts.sum(axis=0).values))

    def test_de_features_shift_in_alternating_directions(self):
        counts, meta = simulate.simulate_counts(
            n_features=6, n_per_group=50, de_features=[0, 1], fold_change=4.0,
            dispersion=0.01, seed=0,
        )
        case = counts.loc[:, (meta["group"] == "case").values].mean(axis=1)
        ctrl = counts.loc[:, (meta["group"] == "control").values].mean(axis=1)
        ratio = case / ctrl
        assert 3.0 < ratio["taxon_000"] < 5.5
        assert 1 / 5.5 < ratio["taxon_001"] < 1 / 3.0
        assert 0.8 < ratio["taxon_005"] < 1.25

    def test_ground_truth_metadata(self):
        counts, _ = simulate.simulate_counts(n_features=5, de_features=[1, 3], seed=0)
        truth = simulate.get_ground_truth(counts)
        assert truth["de_features"] == ["taxon_001", "taxon_003"]
        assert truth["null_features"] == ["taxon_000", "taxon_002", "taxon_004"]
        assert truth["fold_change"] == 4.0

    def test_zero_inflation(self):
        counts, _ = simulate.simulate_counts(zero_inflation=0.5, seed=0)
        zero_rate = (counts.values == 0).mean()
        assert 0.35 < zero_rate < 0.65

    def test_poisson_when_dispersion_zero(self):
        counts, _ = simulate.simulate_counts(dispersion=0.0, seed=0)
        assert (counts.values >= 0).all()

    def test_reproducibility(self):
        c1, m1 = simulate.simulate_counts(seed=42)
        c2, m2 = simulate.simulate_counts(seed=42)
        pd.testing.assert_frame_equal(c1, c2)
        pd.testing.assert_frame_equal(m1, m2)

    def test_different_seeds_differ(self):
        c1, _ = simulate.simulate_counts(seed=1)
        c2, _ = simulate.simulate_counts(seed=2)
        assert not c1.equals(c2)

    def test_single_group_raises(self):
        with pytest.raises(ValueError, match="at least two groups"):
            simulate.simulate_counts(groups=("only",))

    def test_no_metadata_raises(self):
        df = pd.DataFrame({"a": [1, 2]})
        with pytest.raises(ValueError, match="simulation metadata"):
            simulate.get_ground_truth(df)


# ---------------------------------------------------------------------------
# Test CountSimulator
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def template():
    return simulate.simulate_counts(
        n_features=8, n_per_group=30, de_features=[0, 1], fold_change=4.0,
        dispersion=0.05, seed=3,
    )


@pytest.fixture(scope="module")
def fitted(template):
    counts, meta = template
    return simulate.CountSimulator.setup(counts, meta).estimate()


class TestCountSimulator:

    def test_sample_before_estimate_raises(self, template):
        counts, meta = template
        sim = simulate.CountSimulator.setup(counts, meta)
        with pytest.raises(FittingFailure, match="estimate"):
            sim.sample(seed=0)

    def test_empty_template_sample_named_in_error(self, template):
        counts, meta = template
        counts = counts.copy()
        counts.iloc[:, 2] = 0
        sim = simulate.CountSimulator.setup(counts, meta)
        with pytest.raises(FittingFailure, match="zero total count") as excinfo:
            sim.estimate()
        assert excinfo.value.features == [counts.columns[2]]

    def test_setup_checks_schema(self, template):
        counts, meta = template
        with pytest.raises(SchemaMismatch):
            simulate.CountSimulator.setup(counts, meta.iloc[1:])

    def test_estimate_shapes(self, fitted, template):
        counts, _ = template
        assert fitted.mean_.shape == (counts.shape[0], 2)
        assert list(fitted.mean_.columns) == ["control", "case"]
        assert (fitted.dispersion_.values > 0).all()

    def test_estimate_recovers_fold_change(self, fitted):
        ratio = fitted.mean_["case"] / fitted.mean_["control"]
        assert 2.5 < ratio["taxon_000"] < 6.0
        assert 0.8 < ratio["taxon_004"] < 1.25

    def test_sample_balanced_design(self, fitted):
        counts, meta = fitted.sample(n_per_group=10, seed=0)
        assert counts.shape == (8, 20)
        assert (meta["group"].value_counts() == 10).all()
        assert "log_depth" in meta.columns

    def test_sample_reuses_template_design(self, fitted, template):
        counts, meta = fitted.sample(seed=0)
        assert counts.shape == template[0].shape
        assert list(meta.index) == list(template[1].index)

    def test_sample_with_new_metadata(self, fitted):
        new_meta = pd.DataFrame(
            {"group": ["case"] * 3 + ["control"] * 2},
            index=[f"new_{i}" for i in range(5)],
        )
        counts, meta = fitted.sample(metadata=new_meta, seed=0)
        assert list(counts.columns) == list(new_meta.index)

    def test_sample_unknown_level_raises(self, fitted):
        new_meta = pd.DataFrame({"group": ["obese", "case"]}, index=["a", "b"])
        with pytest.raises(SchemaMismatch, match="Unknown group levels"):
            fitted.sample(metadata=new_meta, seed=0)

    def test_sample_reproducible(self, fitted):
        c1, _ = fitted.sample(n_per_group=5, seed=11)
        c2, _ = fitted.sample(n_per_group=5, seed=11)
        pd.testing.assert_frame_equal(c1, c2)

    def test_mutate_to_null_equalises_groups(self, fitted):
        nulled = fitted.mutate(["taxon_000"], fold_change=1.0)
        row = nulled.mean_.loc["taxon_000"]
        assert row["case"] == pytest.approx(row["control"])
        assert "taxon_000" in nulled.null_features

    def test_mutate_returns_copy(self, fitted):
        before = fitted.mean_.copy()
        fitted.mutate(["taxon_000"], fold_change=1.0)
        pd.testing.assert_frame_equal(fitted.mean_, before)
        assert fitted.null_features == []

    def test_mutate_sets_fold_change(self, fitted):
        nulls = [f"taxon_{i:03d}" for i in range(2, 8)]
        sim = fitted.mutate(nulls, fold_change=1.0).mutate(["taxon_002"], fold_change=3.0)
        row = sim.mean_.loc["taxon_002"]
        assert row["case"] / row["control"] == pytest.approx(3.0)
        assert "taxon_002" not in sim.null_features

    def test_sampled_attrs_carry_null_set(self, fitted):
        nulls = [f"taxon_{i:03d}" for i in range(2, 8)]
        counts, _ = fitted.mutate(nulls, fold_change=1.0).sample(n_per_group=5, seed=0)
        assert counts.attrs["null_features"] == nulls
        assert counts.attrs["de_features"] == ["taxon_000", "taxon_001"]

    def test_mutate_unknown_feature_raises(self, fitted):
        with pytest.raises(SchemaMismatch, match="not in template"):
            fitted.mutate(["taxon_999"])
