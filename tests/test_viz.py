"""
tests/test_viz.py

Unit tests for daeval.viz.

All tests use matplotlib's Agg backend (non-interactive) and close figures
after each check to prevent resource leaks.
"""

import pytest
import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import matplotlib.figure

from daeval import simulate
from daeval.differential import differential_analysis
from daeval.preprocess import to_long
from daeval.viz import plot_power, plot_abundance, plot_volcano


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def sim():
    return simulate.simulate_counts(n_features=6, n_per_group=10, seed=42)


@pytest.fixture(scope="module")
def long_df(sim):
    """Observed and re-simulated counts stacked in long format."""
    counts, meta = sim
    fitted = simulate.CountSimulator.setup(counts, meta).estimate()
    sim_counts, sim_meta = fitted.sample(seed=0)
    return pd.concat(
        [to_long(counts, meta, source="observed"),
         to_long(sim_counts, sim_meta, source="simulated")],
        ignore_index=True,
    )


@pytest.fixture(scope="module")
def sweep_df():
    """Minimal power_analysis-style sweep."""
    rng = np.random.default_rng(0)
    records = []
    for method in ["wilcox-clr", "ANCOMBC"]:
        for n in [5, 10, 20]:
            for rep in range(3):
                records.append({"method": method, "n_per_group": n, "rep": rep,
                                "metric": "power", "value": rng.uniform(0, 1)})
                records.append({"method": method, "n_per_group": n, "rep": rep,
                                "metric": "FDR", "value": rng.uniform(0, 0.2)})
    return pd.DataFrame(records)


@pytest.fixture(scope="module")
def results(sim):
    counts, meta = sim
    return differential_analysis(counts, meta, "wilcox-clr")


# ---------------------------------------------------------------------------
# plot_power
# ---------------------------------------------------------------------------

class TestPlotPower:

    def test_returns_figure(self, sweep_df):
        fig = plot_power(sweep_df)
        assert isinstance(fig, matplotlib.figure.Figure)
        plt.close(fig)

    def test_two_panels(self, sweep_df):
        fig = plot_power(sweep_df)
        assert len(fig.axes) == 2
        assert [ax.get_title() for ax in fig.axes] == ["power", "FDR"]
        plt.close(fig)

    def test_level_line_drawn(self, sweep_df):
        fig = plot_power(sweep_df, level=0.05)
        ys = [line.get_ydata()[0] for line in fig.axes[1].get_lines()
              if line.get_linestyle() == "--"]
        assert 0.05 in ys
        plt.close(fig)

    def test_no_level_line(self, sweep_df):
        fig = plot_power(sweep_df, level=None)
        assert isinstance(fig, matplotlib.figure.Figure)
        plt.close(fig)


# ---------------------------------------------------------------------------
# plot_abundance
# ---------------------------------------------------------------------------

class TestPlotAbundance:

    def test_returns_figure(self, long_df):
        fig = plot_abundance(long_df)
        assert isinstance(fig, matplotlib.figure.Figure)
        plt.close(fig)

    def test_default_features_up_to_four(self, long_df):
        fig = plot_abundance(long_df)
        n_visible = sum(ax.get_visible() for ax in fig.axes)
        assert n_visible == 4
        plt.close(fig)

    def test_subplot_titles_match_features(self, long_df):
        fig = plot_abundance(long_df, features=["taxon_000", "taxon_003"])
        titles = [ax.get_title() for ax in fig.axes if ax.get_visible()]
        assert titles == ["taxon_000", "taxon_003"]
        plt.close(fig)

    def test_raw_scale(self, long_df):
        fig = plot_abundance(long_df, features=["taxon_000"], log=False)
        assert fig.axes[0].get_ylabel() == "count"
        plt.close(fig)

    def test_missing_columns_raise(self, long_df):
        with pytest.raises(ValueError, match="missing columns"):
            plot_abundance(long_df.drop(columns=["source"]))


# ---------------------------------------------------------------------------
# plot_volcano
# ---------------------------------------------------------------------------

class TestPlotVolcano:

    def test_returns_figure(self, results):
        fig = plot_volcano(results)
        assert isinstance(fig, matplotlib.figure.Figure)
        plt.close(fig)

    def test_title_names_method_and_contrast(self, results):
        fig = plot_volcano(results, contrast="case")
        assert fig.axes[0].get_title() == "wilcox-clr: case"
        plt.close(fig)

    def test_uses_existing_axes(self, results):
        fig, ax = plt.subplots()
        out = plot_volcano(results, ax=ax)
        assert out is fig
        plt.close(fig)

    def test_unknown_contrast_raises(self, results):
        with pytest.raises(ValueError, match="not found"):
            plot_volcano(results, contrast="lean")
