"""
Run configuration for cohortnet.

One dataclass per pipeline stage, aggregated by PipelineConfig. Every config
round-trips through plain dictionaries so a run can be described by a JSON file:

    config = load_config("run.json")
    config.resampling.n_trials = 20
    config.save("run_small.json")
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


@dataclass
class CorrelationConfig:
    """Configuration for the blocked correlation engine."""

    block_size: int = 2000
    storage_dir: Optional[str] = None  # None keeps blocks in memory
    dtype: str = "float64"
    pseudocount: float = 1.0  # log2(x + pseudocount) before standardizing
    n_jobs: int = 1

    def __post_init__(self):
        if self.block_size < 1:
            raise ValueError(f"block_size must be >= 1, got {self.block_size}")


@dataclass
class DivergenceConfig:
    """Configuration for the cross-cohort divergence weighter."""

    # Genes whose profiles have cosine similarity <= this value are excluded
    min_cosine_similarity: float = 0.25

    def __post_init__(self):
        if not -1.0 <= self.min_cosine_similarity <= 1.0:
            raise ValueError(
                f"min_cosine_similarity must be in [-1, 1], got {self.min_cosine_similarity}"
            )

    @property
    def max_angular_distance(self) -> float:
        """Angular-distance threshold equivalent to min_cosine_similarity."""
        return math.acos(self.min_cosine_similarity) / math.pi


@dataclass
class ClassifierConfig:
    """Configuration for the elastic-net logistic classifier."""

    l1_ratio: float = 0.9
    l1_ratio_grid: Tuple[float, ...] = (0.5, 0.6, 0.7, 0.8, 0.9)
    n_lambdas: int = 30
    lambda_min_ratio: Optional[float] = None  # None: 0.01 if n < p else 1e-4
    max_iter: int = 5000
    tol: float = 1e-4
    min_penalty_factor: float = 1e-2
    threshold: float = 0.5

    def __post_init__(self):
        if not 0.0 < self.l1_ratio <= 1.0:
            raise ValueError(f"l1_ratio must be in (0, 1], got {self.l1_ratio}")
        if self.n_lambdas < 2:
            raise ValueError(f"n_lambdas must be >= 2, got {self.n_lambdas}")
        self.l1_ratio_grid = tuple(float(r) for r in self.l1_ratio_grid)


@dataclass
class ResamplingConfig:
    """Configuration for the repeated train/test resampling."""

    n_trials: int = 100
    test_fraction: float = 0.25
    n_folds: int = 10
    seed: int = 1234
    max_redraws: int = 10
    n_jobs: int = 1  # -1 for all CPUs
    show_progress: bool = True

    def __post_init__(self):
        if not 0.0 < self.test_fraction < 1.0:
            raise ValueError(f"test_fraction must be in (0, 1), got {self.test_fraction}")
        if self.n_folds < 2:
            raise ValueError(f"n_folds must be >= 2, got {self.n_folds}")
        if self.n_trials < 1:
            raise ValueError(f"n_trials must be >= 1, got {self.n_trials}")


@dataclass
class SelectionConfig:
    """Thresholds for 'always' and 'frequently' selected genes."""

    always_fraction: float = 1.0
    frequent_fraction: float = 0.75

    def __post_init__(self):
        for name in ("always_fraction", "frequent_fraction"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ValueError(f"{name} must be in (0, 1], got {value}")

    def always_min_count(self, n_trials: int) -> int:
        """Smallest count that qualifies as 'always selected'."""
        return max(1, math.ceil(self.always_fraction * n_trials - 1e-9))

    def is_frequent(self, count: int, n_trials: int) -> bool:
        return count > self.frequent_fraction * n_trials


_SECTIONS = {
    "correlation": CorrelationConfig,
    "divergence": DivergenceConfig,
    "classifier": ClassifierConfig,
    "resampling": ResamplingConfig,
    "selection": SelectionConfig,
}


@dataclass
class PipelineConfig:
    """Configuration for the complete signature pipeline."""

    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    divergence: DivergenceConfig = field(default_factory=DivergenceConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    resampling: ResamplingConfig = field(default_factory=ResamplingConfig)
    selection: SelectionConfig = field(default_factory=SelectionConfig)

    # Output
    output_dir: str = "results"
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["classifier"]["l1_ratio_grid"] = list(self.classifier.l1_ratio_grid)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """Build a config from a (possibly partial) dictionary."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            section = _SECTIONS.get(key)
            kwargs[key] = section(**value) if section is not None else value
        return cls(**kwargs)

    def save(self, path: str) -> None:
        """Save configuration to a JSON file."""
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(path: Optional[str] = None) -> PipelineConfig:
    """Load a PipelineConfig from JSON; defaults when path is None."""
    if path is None:
        return PipelineConfig()
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(config_path) as f:
        return PipelineConfig.from_dict(json.load(f))
