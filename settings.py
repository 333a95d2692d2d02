"""
# Settings ------------------------------------------------------------------

Sampler configuration and the fixed constants of the hierarchical models.
"""
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from errors import ConfigurationError

# Model constants ----------------------------------------------------------

# precision of the pseudo-observation pinning sum(spatial effect) to zero
SUM_TO_ZERO_PRECISION = 10.0

# truncation point of the gamma prior on the adaptive weights c
C_LOWER = 0.001

# upper bound of the Uniform(0, .) prior on every standard deviation
SIGMA_UPPER = 5.0

BACKENDS = ("process", "thread", "serial")


# Run configuration --------------------------------------------------------

@dataclass(frozen=True)
class RunConfig:
    # defaults reproduce the reference runs: 3 x 334 = 1002 retained draws
    n_iter: int = 100000
    n_burnin: int = 30000
    n_chains: int = 3
    n_thin: int = 209
    seed: int = 123
    backend: str = "process"
    max_workers: Optional[int] = None
    chain_timeout: Optional[float] = None

    def __post_init__(self):
        self.validate()

    def validate(self):
        for name in ("n_iter", "n_burnin", "n_chains", "n_thin"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(name + " must be an integer, got " + repr(value))
        if self.n_iter <= 0:
            raise ConfigurationError("n_iter must be positive")
        if not 0 <= self.n_burnin < self.n_iter:
            raise ConfigurationError("n_burnin must satisfy 0 <= n_burnin < n_iter")
        if self.n_chains < 1:
            raise ConfigurationError("n_chains must be at least 1")
        if self.n_thin < 1:
            raise ConfigurationError("n_thin must be at least 1")
        if self.draws_per_chain < 1:
            raise ConfigurationError(
                "no draws retained: (n_iter - n_burnin) // n_thin is zero")
        if self.backend not in BACKENDS:
            raise ConfigurationError(
                "backend must be one of " + ", ".join(BACKENDS) + ", got " + repr(self.backend))
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if self.chain_timeout is not None and self.chain_timeout <= 0:
            raise ConfigurationError("chain_timeout must be positive")

    @property
    def draws_per_chain(self) -> int:
        return (self.n_iter - self.n_burnin) // self.n_thin

    @property
    def n_draws(self) -> int:
        return self.draws_per_chain * self.n_chains

    @classmethod
    def from_draw_count(cls, n_iter, n_burnin, n_chains, n_draws, **kwargs) -> "RunConfig":
        """Derive the thinning interval that retains about n_draws in total."""
        if n_draws < n_chains:
            raise ConfigurationError("n_draws must be at least n_chains")
        per_chain = -(-n_draws // n_chains)
        n_thin = max((n_iter - n_burnin) // per_chain, 1)
        return cls(n_iter=n_iter, n_burnin=n_burnin, n_chains=n_chains, n_thin=n_thin, **kwargs)

    def with_options(self, **kwargs) -> "RunConfig":
        return replace(self, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# YAML loading -------------------------------------------------------------

def load_config(config_path) -> Dict[str, Any]:
    """
    Load a run configuration file.

    The file holds a ``sampler`` section with the RunConfig fields (or
    ``n_draws`` in place of ``n_thin``) and an optional ``models`` list.

    Returns:
        Dictionary with ``sampler`` (a RunConfig) and ``models`` (list of keys)
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError("Config file not found: " + str(config_path))

    with open(config_path, "r") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigurationError("config file must hold a mapping")

    sampler = dict(raw.get("sampler") or {})
    unknown = set(sampler) - set(RunConfig.__dataclass_fields__) - {"n_draws"}
    if unknown:
        raise ConfigurationError("unknown sampler settings: " + ", ".join(sorted(unknown)))

    if "n_draws" in sampler:
        if "n_thin" in sampler:
            raise ConfigurationError("give either n_thin or n_draws, not both")
        defaults = RunConfig.__dataclass_fields__
        n_draws = sampler.pop("n_draws")
        n_iter = sampler.pop("n_iter", defaults["n_iter"].default)
        n_burnin = sampler.pop("n_burnin", defaults["n_burnin"].default)
        n_chains = sampler.pop("n_chains", defaults["n_chains"].default)
        run_config = RunConfig.from_draw_count(n_iter, n_burnin, n_chains, n_draws, **sampler)
    else:
        run_config = RunConfig(**sampler)

    models = raw.get("models") or []
    if isinstance(models, str):
        models = [models]

    return {"sampler": run_config, "models": list(models)}
