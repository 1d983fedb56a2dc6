"""
DML Replication Study - Source Modules
======================================

Replication of the Double Machine Learning estimator of Chernozhukov et al.
(2018) for the partially linear model, comparing the sampling distribution
of θ̂ under four strategies: naive, DML without sample splitting, DML with
sample splitting and DML with cross-fitting.

Modules
-------
- dgp: partially linear DGP with Toeplitz covariates and nuisance pairs
- learners: NuisanceFitter, learner factory, oracle and memorizing learners
- dml: sample splits and the four estimation strategies
- simulation: Monte Carlo harness and estimate distributions
- reporting: summary tables and persisted CSV outputs
- plotting: density plots of θ̂ distributions
- config: YAML run configuration
- tuning: random forest hyperparameter pre-tuning
"""

from dml_replication.exceptions import (
    DMLReplicationError,
    InvalidConfiguration,
    DegenerateMoment,
    FitFailure,
)
from dml_replication.dgp import (
    # Constants
    THETA0,
    NUISANCE_SPECS,
    # DGP
    Dataset,
    NuisanceSpec,
    PartialLinearDGP,
    make_toeplitz_cov,
    generate_plr_data,
    get_nuisance_spec,
)
from dml_replication.learners import (
    NuisanceFitter,
    FittedNuisance,
    OracleLearner,
    MemorizingLearner,
    oracle_fitter,
    get_learner,
)
from dml_replication.dml import (
    STRATEGIES,
    Split,
    draw_split,
    DMLEstimator,
    DMLResult,
    estimate_theta,
)
from dml_replication.simulation import (
    SimulationConfig,
    EstimateDistribution,
    ReplicationFailure,
    run_single_replication,
    run_simulation,
    run_simulation_grid,
    stop_on_interrupt,
)
from dml_replication.reporting import (
    summary_table,
    save_distributions,
    load_distributions,
)

__version__ = "1.0.0"

__all__ = [
    # Errors
    "DMLReplicationError",
    "InvalidConfiguration",
    "DegenerateMoment",
    "FitFailure",
    # DGP
    "THETA0",
    "NUISANCE_SPECS",
    "Dataset",
    "NuisanceSpec",
    "PartialLinearDGP",
    "make_toeplitz_cov",
    "generate_plr_data",
    "get_nuisance_spec",
    # Learners
    "NuisanceFitter",
    "FittedNuisance",
    "OracleLearner",
    "MemorizingLearner",
    "oracle_fitter",
    "get_learner",
    # Estimation
    "STRATEGIES",
    "Split",
    "draw_split",
    "DMLEstimator",
    "DMLResult",
    "estimate_theta",
    # Simulation
    "SimulationConfig",
    "EstimateDistribution",
    "ReplicationFailure",
    "run_single_replication",
    "run_simulation",
    "run_simulation_grid",
    "stop_on_interrupt",
    # Reporting
    "summary_table",
    "save_distributions",
    "load_distributions",
]
