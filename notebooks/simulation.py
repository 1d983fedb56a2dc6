# ---
# jupyter:
#   jupytext:
#     formats: ipynb,py:percent
#     text_representation:
#       extension: .py
#       format_name: percent
#       format_version: '1.3'
#       jupytext_version: 1.18.1
#   kernelspec:
#     display_name: dml-replication
#     language: python
#     name: python3
# ---

# %% [markdown]
# # Monte Carlo Replication: Overfitting Bias and Sample Splitting in DML
#
# ---
#
# ## Research Goal
#
# This notebook replicates the central simulation of Chernozhukov et al. (2018):
# in the partially linear model
#
# $$Y = \theta_0 D + g_0(X) + \varepsilon, \qquad D = m_0(X) + V,$$
#
# a flexible learner plugged into a **non-orthogonal** moment produces a biased
# $\hat\theta$, and an orthogonal moment evaluated **on the training sample** is
# biased by overfitting. Orthogonalization combined with sample splitting
# removes both, and cross-fitting recovers the efficiency lost by splitting.
#
# ## Estimators
#
# | Strategy | Moment | Fit on | Evaluate on |
# |----------|--------|--------|-------------|
# | naive | $\frac{1}{n}\sum D(Y-\hat g) / \frac{1}{n}\sum D^2$ | $S_1$ | $S_2$ |
# | dml_no_split | $\frac{1}{n}\sum \hat V(Y-\hat g) / \frac{1}{n}\sum \hat V D$ | all | all |
# | dml_split | same | $S_1$ | $S_2$ |
# | dml_cross_fit | size-weighted average of both directions | $S_1$, $S_2$ | $S_2$, $S_1$ |
#
# In the DML rows $\hat V = D - \hat m$ and $\hat g = \hat\ell - \tilde\theta\,\hat m$,
# where $\hat\ell$ regresses $Y$ on $X$ and
# $\tilde\theta = \sum \hat V (Y - \hat\ell) / \sum \hat V^2$.
#
# ## Design
#
# $X \sim N(0, \Sigma)$ with Toeplitz $\Sigma_{jk} = s^{|j-k|}$, $N = 250$,
# $\theta_0 = 0.5$, $s = 0.5$, and covariate dimension $p \in \{1, 10, 100\}$.

# %% [markdown]
# ## 1. Setup and Imports

# %%
import sys
import logging
import threading
from pathlib import Path

import matplotlib.pyplot as plt

# Add project root to path
sys.path.insert(0, '..')

from dml_replication import (
    get_learner,
    NuisanceFitter,
    run_simulation_grid,
    save_distributions,
    stop_on_interrupt,
    summary_table,
)
from dml_replication.config import (
    load_config,
    save_config,
    build_simulation_configs,
    build_fitter,
    get_strategies,
)
from dml_replication.plotting import plot_estimate_densities, save_figure
from dml_replication.tuning import tune_rf_hyperparameters

logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(levelname)s %(message)s')

# Configure matplotlib
plt.rcParams.update({
    'font.size': 12,
    'figure.figsize': (12, 8),
    'figure.dpi': 150,
    'savefig.dpi': 300,
    'savefig.bbox': 'tight',
})

CONFIG_PATH = Path('../configs/replication.yaml')
config = load_config(CONFIG_PATH)

RESULTS_DIR = Path('..') / config.get('run', {}).get('output_dir', 'results')
RESULTS_DIR.mkdir(exist_ok=True)

print("Setup complete.")
print(f"Configuration: {CONFIG_PATH}")

# %% [markdown]
# ## 2. Simulation Configuration

# %%
# =============================================================================
# SIMULATION PARAMETERS
# =============================================================================

SIM_CONFIGS = build_simulation_configs(config)
STRATEGIES = get_strategies(config)
N_JOBS = config.get('run', {}).get('n_jobs', -1)
PRE_TUNE = config.get('run', {}).get('pre_tune', False)

print("Simulation Configuration:")
for sim_config in SIM_CONFIGS:
    print(f"  {sim_config.label}: N = {sim_config.n}, θ₀ = {sim_config.theta0}, "
          f"s = {sim_config.s}, nuisance = {sim_config.nuisance}, nSim = {sim_config.n_sim}")
print(f"  Strategies: {STRATEGIES}")
print(f"  Total replications: {len(SIM_CONFIGS) * len(STRATEGIES) * SIM_CONFIGS[0].n_sim:,}")

# %% [markdown]
# ## 3. Optional Pre-Tuning
#
# With `run.pre_tune: true` the random forest is tuned ONCE per dimension on a
# separate validation sample, and the tuned parameters are held fixed across
# all replicates of that dimension.

# %%
# =============================================================================
# PRE-TUNING (ONE SEARCH PER DIMENSION)
# =============================================================================

fitters = {}
tuned_params = {}
for sim_config in SIM_CONFIGS:
    if PRE_TUNE:
        print(f"  Tuning for {sim_config.label}...", end=" ")
        params = tune_rf_hyperparameters(sim_config, target='D', random_state=sim_config.seed)
        learner_section = config.get('learner', {})
        fitters[sim_config.label] = NuisanceFitter(
            get_learner(
                'RF_Tuned',
                random_state=learner_section.get('random_state', 42),
                params=params,
            )
        )
        tuned_params[sim_config.label] = params
        print(f"Done. Best: {params}")
    else:
        fitters[sim_config.label] = build_fitter(config)

print(f"Nuisance learner: {fitters[SIM_CONFIGS[0].label].learner_y}")

# Store the configuration actually run beside the results
run_config = dict(config)
if tuned_params:
    run_config['tuned_params'] = tuned_params
print(f"Run configuration: {save_config(run_config, RESULTS_DIR / 'run_config.yaml')}")

# %% [markdown]
# ## 4. Run Monte Carlo Simulation
#
# Replicates are dispatched to a joblib pool in batches. While the grid runs,
# SIGINT (Ctrl+C, or "Interrupt" in Jupyter) only raises the stop flag: the
# current batch finishes, the interrupted pair keeps its completed replicates
# (flagged `cancelled`) and the remaining pairs are skipped.

# %%
# =============================================================================
# RUN SIMULATION WITH PARALLEL PROCESSING
# =============================================================================

stop_event = threading.Event()
distributions = []

with stop_on_interrupt(stop_event):
    for sim_config in SIM_CONFIGS:
        distributions.extend(run_simulation_grid(
            [sim_config],
            STRATEGIES,
            fitters[sim_config.label],
            n_jobs=N_JOBS,
            stop_event=stop_event,
            show_progress=True,
        ))

if stop_event.is_set():
    cancelled = [f"{d.label}/{d.strategy}" for d in distributions if d.cancelled]
    print(f"Interrupted: kept partial results for {cancelled or 'no pair'}.")

skipped = sum(dist.n_skipped for dist in distributions)
print(f"\nCompleted {len(distributions)} (configuration, strategy) pairs; "
      f"{skipped} replicates skipped.")

# %% [markdown]
# ## 5. Persist Estimate Distributions
#
# One CSV per strategy, one column per configuration label.

# %%
for strategy in STRATEGIES:
    dists = [dist for dist in distributions if dist.strategy == strategy]
    if not dists:
        continue
    path = save_distributions(dists, RESULTS_DIR / f'{strategy}.csv')
    print(f"Saved {strategy}: {path}")

df_summary = summary_table(distributions)
summary_path = RESULTS_DIR / 'summary.csv'
df_summary.to_csv(summary_path, index=False)

print("\nSummary:")
print(df_summary.round(4).to_string(index=False))

# %% [markdown]
# ## 6. Visualization: Sampling Distributions of $\hat\theta$
#
# One panel per strategy, one density per dimension. The dashed line marks
# $\theta_0$.

# %%
# =============================================================================
# PLOT: DENSITY OF θ̂ BY STRATEGY
# =============================================================================

TITLES = {
    'naive': 'Naive (non-orthogonal)',
    'dml_no_split': 'DML without sample splitting',
    'dml_split': 'DML with sample splitting',
    'dml_cross_fit': 'DML with cross-fitting',
}

theta0 = SIM_CONFIGS[0].theta0
fig, axes = plt.subplots(2, 2, figsize=(14, 10), sharex=True)

for ax, strategy in zip(axes.ravel(), STRATEGIES):
    dists = [dist for dist in distributions if dist.strategy == strategy]
    plot_estimate_densities(dists, theta0=theta0, ax=ax, title=TITLES.get(strategy, strategy))

for ax in axes.ravel()[len(STRATEGIES):]:
    ax.set_visible(False)

plt.tight_layout()
save_figure(fig, RESULTS_DIR / 'theta_densities.png')
plt.show()

# %%
# One figure per strategy for the report
for strategy in STRATEGIES:
    dists = [dist for dist in distributions if dist.strategy == strategy]
    if not dists:
        continue
    ax = plot_estimate_densities(dists, theta0=theta0, title=TITLES.get(strategy, strategy))
    save_figure(ax.figure, RESULTS_DIR / f'density_{strategy}.png')
    plt.close(ax.figure)

# %% [markdown]
# ## 7. Bias Comparison

# %%
pivot = df_summary.pivot(index='label', columns='strategy', values='bias')
pivot = pivot.reindex(index=[c.label for c in SIM_CONFIGS], columns=STRATEGIES)
print("Monte Carlo bias (mean θ̂ − θ₀):")
print(pivot.round(4).to_string())

print("\nKey findings:")
for sim_config in SIM_CONFIGS:
    row = pivot.loc[sim_config.label]
    if row.isna().all():
        continue
    worst = row.abs().idxmax()
    best = row.abs().idxmin()
    print(f"  {sim_config.label}: largest |bias| {worst} ({row[worst]:+.3f}), "
          f"smallest {best} ({row[best]:+.3f})")
