"""
Error kinds raised by the estimation core and the simulation harness.
"""


class DMLReplicationError(Exception):
    """Base class for all errors raised by dml_replication."""
    pass


class InvalidConfiguration(DMLReplicationError, ValueError):
    """
    Raised when a dataset, estimator or simulation is configured with values
    outside their valid range (non-positive n, p or n_sim, s outside (0, 1),
    unknown nuisance pair or strategy).

    Configuration errors abort a simulation before any replicate runs.
    """
    pass


class DegenerateMoment(DMLReplicationError, ArithmeticError):
    """
    Raised when the denominator of the moment equation is numerically zero,
    e.g. a treatment without variation on the evaluation sample.
    """
    pass


class FitFailure(DMLReplicationError, RuntimeError):
    """Raised when the nuisance learner fails to fit or predict."""
    pass
