"""Rebuild tutorial.ipynb cleanly using nbformat."""
import nbformat

nb = nbformat.v4.new_notebook()

def md(src):
    return nbformat.v4.new_markdown_cell(src)

def code(src):
    return nbformat.v4.new_code_cell(src)

nb.cells = [

# ── Header ───────────────────────────────────────────────────────────────────
md("""\
# Evaluating differential-abundance methods on semisynthetic data

This notebook walks through the full benchmarking loop: \
learn a simulator from a template count table, declare which taxa carry \
*no* group effect, draw new tables with that ground truth, run four \
differential-abundance (DA) methods through one interface, and score \
each one's false discovery rate and power.

| Module | Purpose |
|--------|---------|
| `simulate` | Parametric and template-based count simulation |
| `preprocess` | Schema checks, design matrices, CLR and TMM |
| `differential` | One call over ANCOM-BC, limma-voom, DESeq2, Wilcoxon-CLR |
| `evaluate` | FDR / power against a null set, power sweeps |
| `viz` | Power curves, abundance comparisons, volcano plots |\
"""),

# ── Imports ───────────────────────────────────────────────────────────────────
md("""\
---
## Setup\
"""),

code("""\
import logging
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

import daeval
from daeval import simulate

logging.basicConfig(level=logging.INFO, format='%(name)s: %(message)s')
sns.set_theme(style='whitegrid', palette='muted')
print('daeval', daeval.__version__)\
"""),

# ═════════════════════════════════════════════════════════════════════════════
# §1  template
# ═════════════════════════════════════════════════════════════════════════════
md("""\
---
## 1  A template table

In practice the template is a real study (taxa × subjects with a BMI group \
per subject). Here a parametric simulation stands in for it: three BMI groups, \
`obese` as the reference level, and eight taxa that differ 3-fold between groups.\
"""),

code("""\
template, template_meta = simulate.simulate_counts(
    n_features=40,
    n_per_group=25,
    groups=('obese', 'overweight', 'lean'),
    de_features=list(range(8)),   # the first 8 taxa differ between groups
    fold_change=3.0,
    dispersion=0.2,
    depth_sd=0.3,                 # uneven sequencing depth
    zero_inflation=0.05,
    seed=42,
)
template_meta['group'].value_counts()\
"""),

# ═════════════════════════════════════════════════════════════════════════════
# §2  simulator
# ═════════════════════════════════════════════════════════════════════════════
md("""\
---
## 2  Train, mutate, sample

`CountSimulator` fits a negative-binomial mean and dispersion per taxon and \
group. `mutate(..., fold_change=1.0)` erases the group effect of the listed \
taxa and records them as the **null set**; everything else keeps the effect \
learned from the template.\
"""),

code("""\
sim = simulate.CountSimulator.setup(template, template_meta, group='group').estimate()

null_taxa = list(template.index[8:])
sim = sim.mutate(null_taxa, fold_change=1.0)

counts, meta = sim.sample(n_per_group=20, seed=1)
print(counts.shape, 'null taxa:', len(sim.null_features))\
"""),

code("""\
long_df = pd.concat([
    daeval.to_long(template, template_meta, source='template'),
    daeval.to_long(counts, meta, source='simulated'),
], ignore_index=True)

fig = daeval.plot_abundance(long_df, features=['taxon_000', 'taxon_001', 'taxon_020', 'taxon_030'])
plt.show()\
"""),

# ═════════════════════════════════════════════════════════════════════════════
# §3  DA methods
# ═════════════════════════════════════════════════════════════════════════════
md("""\
---
## 3  One interface, four DA methods

`differential_analysis` returns the same table for every method: \
`log_FC(level)`, `p_value(level)` and `q_value(level)` for each non-reference \
level, with q-values BH-adjusted per contrast. The Wilcoxon method replaces \
exact zeros with `1e-6` before the CLR transform.\
"""),

code("""\
results = {
    m.value: daeval.differential_analysis(counts, meta, m, group='group')
    for m in daeval.DAMethod
}
results['LIMMA_voom'].head()\
"""),

code("""\
fig, axes = plt.subplots(1, 4, figsize=(18, 4))
for ax, (name, res) in zip(axes, results.items()):
    daeval.plot_volcano(res, contrast='lean', ax=ax)
plt.show()\
"""),

# ═════════════════════════════════════════════════════════════════════════════
# §4  metrics
# ═════════════════════════════════════════════════════════════════════════════
md("""\
---
## 4  FDR and power

A taxon is flagged when its q-value (by default the last column, here \
`q_value(lean)`) is strictly below 0.1.\
"""),

code("""\
pd.concat({
    name: daeval.da_metrics(res, sim.null_features, level=0.1).set_index('metric')['value']
    for name, res in results.items()
}, axis=1)\
"""),

# ═════════════════════════════════════════════════════════════════════════════
# §5  power analysis
# ═════════════════════════════════════════════════════════════════════════════
md("""\
---
## 5  Power analysis

Repeat sample → test → score over a grid of sample sizes. Each repetition \
gets its own seed derived from the sweep seed, and a repetition whose fit \
fails is skipped with a warning rather than stopping the sweep.\
"""),

code("""\
sweep = daeval.power_analysis(
    sim,
    methods=['ANCOMBC', 'LIMMA_voom', 'wilcox-clr'],
    sample_sizes=[5, 10, 20, 40],
    n_reps=5,
    seed=0,
)
daeval.summarize_power(sweep).pivot_table(
    index=['method', 'n_per_group'], columns='metric', values='mean'
)\
"""),

code("""\
fig = daeval.plot_power(sweep, level=0.1)
plt.show()\
"""),

]  # end nb.cells

nbformat.write(nb, 'tutorial.ipynb')
print(f'Written {len(nb.cells)} cells.')
