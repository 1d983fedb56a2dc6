"""
Run configuration for the replication study.

A run is described by one YAML mapping with the sections 'simulation',
'strategies', 'learner' and 'run' (see configs/replication.yaml). The
notebook writes the resolved mapping next to its results so every CSV in the
output directory can be traced back to the parameters that produced it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from dml_replication.dml import STRATEGIES
from dml_replication.exceptions import InvalidConfiguration
from dml_replication.learners import NuisanceFitter, get_learner
from dml_replication.simulation import SimulationConfig


PathLike = Union[str, Path]


# =============================================================================
# YAML I/O
# =============================================================================

def load_config(path: PathLike) -> Dict[str, Any]:
    """
    Read a run configuration.

    Raises
    ------
    FileNotFoundError
        If path does not exist.
    InvalidConfiguration
        If the file is not valid YAML or its top level is not a mapping.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"no run configuration at {path}")

    try:
        config = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise InvalidConfiguration(f"Error parsing {path}: {exc}") from exc

    if not isinstance(config, dict):
        raise InvalidConfiguration(
            f"{path}: expected a mapping of sections, got {type(config).__name__}"
        )
    return config


def save_config(config: Dict[str, Any], path: PathLike) -> Path:
    """
    Write a run configuration, keeping section order.

    Used by the study notebook to store the configuration actually run
    (including pre-tuned learner parameters) beside its outputs.

    Returns
    -------
    path : Path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(config, sort_keys=False))
    return path


# =============================================================================
# SECTIONS
# =============================================================================

def build_simulation_configs(config: Dict[str, Any]) -> List[SimulationConfig]:
    """
    Expand the 'simulation' section into one SimulationConfig per dimension.

    The section holds the SimulationConfig fields; 'dimensions' (a list of p)
    replaces 'p' and produces configurations labelled 'p=<p>'. Every
    configuration is validated.
    """
    section = dict(config.get('simulation') or {})
    dimensions = section.pop('dimensions', None)
    unknown = set(section) - set(SimulationConfig.__dataclass_fields__)
    if unknown:
        raise InvalidConfiguration(f"unknown simulation keys: {sorted(unknown)}")

    if dimensions is None:
        configs = [SimulationConfig(**section)]
    else:
        section.pop('p', None)
        section.pop('label', None)
        configs = [SimulationConfig(p=int(p), **section) for p in dimensions]

    for sim_config in configs:
        sim_config.validate()
    return configs


def get_strategies(config: Dict[str, Any]) -> List[str]:
    """Strategies to run; all four if the key is absent."""
    strategies = list(config.get('strategies') or STRATEGIES)
    unknown = [strategy for strategy in strategies if strategy not in STRATEGIES]
    if unknown:
        raise InvalidConfiguration(
            f"unknown strategies {unknown}. Choose from: {', '.join(STRATEGIES)}"
        )
    return strategies


def build_fitter(config: Dict[str, Any]) -> NuisanceFitter:
    """
    Build the NuisanceFitter described by the 'learner' section.

    Keys: name (default 'RF'), random_state (default 42), n_jobs (default 1),
    params (hyperparameter overrides). The same learner specification is
    used for both nuisance functions.
    """
    section = dict(config.get('learner') or {})
    learner = get_learner(
        section.get('name', 'RF'),
        random_state=section.get('random_state', 42),
        n_jobs=section.get('n_jobs', 1),
        params=section.get('params'),
    )
    return NuisanceFitter(learner_y=learner)
