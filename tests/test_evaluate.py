"""
tests/test_evaluate.py

Unit tests for daeval.evaluate: the FDR / power metric and the
simulate → test → score power sweep.
"""

import logging

import pytest
import numpy as np
import pandas as pd
from daeval import simulate
from daeval.differential import differential_analysis
from daeval.evaluate import da_metrics, power_analysis, summarize_power
from daeval.exceptions import DegenerateNullSet, InvalidMethod


FEATURES = [f"taxon_{i:03d}" for i in range(6)]
NULL = FEATURES[2:]
NONNULL = FEATURES[:2]


def _results(flagged):
    """Result table with q = 0.01 for flagged features and 0.5 otherwise."""
    q = [0.01 if f in flagged else 0.5 for f in FEATURES]
    return pd.DataFrame(
        {"log_FC(case)": 1.0, "p_value(case)": q, "q_value(case)": q},
        index=FEATURES,
    )


def _metric(report, name):
    return float(report.loc[report["metric"] == name, "value"].iloc[0])


# ---------------------------------------------------------------------------
# da_metrics
# ---------------------------------------------------------------------------

class TestDAMetrics:

    def test_report_shape(self):
        report = da_metrics(_results(NONNULL), NULL)
        assert list(report.columns) == ["metric", "value"]
        assert list(report["metric"]) == ["FDR", "power"]

    def test_nothing_flagged(self):
        report = da_metrics(_results([]), NULL)
        assert _metric(report, "FDR") == 0.0
        assert _metric(report, "power") == 0.0

    def test_flagged_equals_null(self):
        report = da_metrics(_results(NULL), NULL)
        assert _metric(report, "FDR") == 1.0
        assert _metric(report, "power") == 0.0

    def test_flagged_equals_nonnull(self):
        report = da_metrics(_results(NONNULL), NULL)
        assert _metric(report, "FDR") == 0.0
        assert _metric(report, "power") == 1.0

    def test_mixed(self):
        report = da_metrics(_results([FEATURES[0], FEATURES[2], FEATURES[3]]), NULL)
        assert _metric(report, "FDR") == pytest.approx(2 / 3)
        assert _metric(report, "power") == pytest.approx(0.5)

    def test_all_null_raises(self):
        with pytest.raises(DegenerateNullSet):
            da_metrics(_results(FEATURES[:3]), FEATURES)

    def test_degenerate_null_is_value_error(self):
        with pytest.raises(ValueError):
            da_metrics(_results([]), FEATURES)

    def test_null_ids_absent_from_results_ignored(self):
        report = da_metrics(_results(NONNULL), NULL + ["not_a_taxon"])
        assert _metric(report, "power") == 1.0

    def test_threshold_is_strict(self):
        res = _results(NONNULL)
        res.loc[NONNULL[0], "q_value(case)"] = 0.1
        report = da_metrics(res, NULL, level=0.1)
        assert _metric(report, "power") == 0.5

    def test_missing_q_not_flagged(self):
        res = _results(NONNULL)
        res.loc[NONNULL[1], "q_value(case)"] = np.nan
        report = da_metrics(res, NULL)
        assert _metric(report, "power") == 0.5

    def test_focus_col_by_name_and_position(self):
        res = _results(NONNULL)
        res["q_value(case)"] = 0.5           # last column flags nothing
        res["p_value(case)"] = _results(NONNULL)["q_value(case)"]
        assert _metric(da_metrics(res, NULL), "power") == 0.0
        assert _metric(da_metrics(res, NULL, focus_col="p_value(case)"), "power") == 1.0
        assert _metric(da_metrics(res, NULL, focus_col=1), "power") == 1.0

    def test_unknown_focus_col_raises(self):
        with pytest.raises(ValueError, match="not found"):
            da_metrics(_results([]), NULL, focus_col="q_value(lean)")

    def test_invalid_level_raises(self):
        with pytest.raises(ValueError, match="level"):
            da_metrics(_results([]), NULL, level=0.0)


# ---------------------------------------------------------------------------
# End-to-end scenarios with the rank-based method
# ---------------------------------------------------------------------------

class TestRankMethodScenario:

    def test_two_true_positives_recovered(self):
        """10 taxa, 2 with a 4-fold difference, 20 samples per group."""
        fdrs = []
        for seed in range(10):
            counts, meta = simulate.simulate_counts(
                n_features=10, n_per_group=20, de_features=[0, 1],
                fold_change=4.0, dispersion=0.05, seed=seed,
            )
            null = simulate.get_ground_truth(counts)["null_features"]
            res = differential_analysis(counts, meta, "wilcox-clr")
            report = da_metrics(res, null, level=0.1)
            assert _metric(report, "power") == 1.0
            fdrs.append(_metric(report, "FDR"))
        assert np.mean(fdrs) < 0.25

    def test_all_null_declaration_raises(self):
        counts, meta = simulate.simulate_counts(n_features=10, n_per_group=20, seed=0)
        res = differential_analysis(counts, meta, "wilcox-clr")
        with pytest.raises(DegenerateNullSet):
            da_metrics(res, list(counts.index))


# ---------------------------------------------------------------------------
# power_analysis / summarize_power
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def simulator():
    counts, meta = simulate.simulate_counts(
        n_features=8, n_per_group=25, de_features=[0, 1], dispersion=0.05, seed=7,
    )
    nulls = [f"taxon_{i:03d}" for i in range(2, 8)]
    return simulate.CountSimulator.setup(counts, meta).estimate().mutate(nulls, fold_change=1.0)


class _ZeroDepthSimulator:
    """Stub simulator whose first sample is empty, which limma-voom cannot fit."""

    group = "group"
    null_features = [f"taxon_{i:03d}" for i in range(2, 10)]

    def sample(self, n_per_group, seed=None):
        counts, meta = simulate.simulate_counts(n_per_group=n_per_group, seed=seed)
        counts.iloc[:, 0] = 0
        return counts, meta


class TestPowerAnalysis:

    def test_sweep_layout(self, simulator):
        sweep = power_analysis(
            simulator, ["wilcox-clr", "ANCOMBC"], sample_sizes=[5, 10], n_reps=2, seed=0,
        )
        assert list(sweep.columns) == ["method", "n_per_group", "rep", "metric", "value"]
        assert len(sweep) == 2 * 2 * 2 * 2
        assert set(sweep["method"]) == {"wilcox-clr", "ANCOMBC"}
        assert sweep["value"].between(0, 1).all()

    def test_sweep_reproducible(self, simulator):
        a = power_analysis(simulator, ["wilcox-clr"], sample_sizes=[6], n_reps=2, seed=3)
        b = power_analysis(simulator, ["wilcox-clr"], sample_sizes=[6], n_reps=2, seed=3)
        pd.testing.assert_frame_equal(a, b)

    def test_invalid_method_fails_before_sampling(self, simulator):
        with pytest.raises(InvalidMethod):
            power_analysis(simulator, ["wilcox-clr", "MaAsLin2"], sample_sizes=[5])

    def test_fitting_failure_skipped_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="daeval.evaluate"):
            sweep = power_analysis(
                _ZeroDepthSimulator(), ["LIMMA_voom", "wilcox-clr"],
                sample_sizes=[10], n_reps=2, seed=0,
            )
        assert set(sweep["method"]) == {"wilcox-clr"}
        assert "Skipping LIMMA_voom" in caplog.text

    def test_power_increases_with_sample_size(self, simulator):
        sweep = power_analysis(simulator, ["ANCOMBC"], sample_sizes=[3, 25], n_reps=3, seed=1)
        power = sweep[sweep["metric"] == "power"].groupby("n_per_group")["value"].mean()
        assert power[25] >= power[3]
        assert power[25] == 1.0

    def test_summarize(self, simulator):
        sweep = power_analysis(simulator, ["wilcox-clr"], sample_sizes=[5, 8], n_reps=3, seed=0)
        summary = summarize_power(sweep)
        assert list(summary.columns) == ["method", "n_per_group", "metric", "mean", "sd", "n_reps"]
        assert len(summary) == 2 * 2
        assert (summary["n_reps"] == 3).all()
