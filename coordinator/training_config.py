"""
Training configuration for the POLR coordinator.

The coordinator owns all training decisions:
- Model shape (categories, features)
- Annealing schedule and regularization
- Number of passes over each shard and round size
- How worker snapshots are combined

Workers fetch this configuration from the coordinator on startup so every
worker trains with identical hyperparameters.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List
import json
import logging

from coordinator.aggregator import COMBINE_RULES
from core.priors import PRIORS

logger = logging.getLogger(__name__)


@dataclass
class TrainingConfig:
    """
    Global training configuration managed by the coordinator.

    All workers must follow this configuration for consistent distributed training.
    """

    # Model shape
    num_categories: int = 2
    num_features: int = 10000

    # Regularization
    lambda_: float = 1.0e-4
    prior: str = "uniform"  # "uniform", "none", "l1", "l2", "elastic"
    prior_params: Dict[str, float] = field(default_factory=dict)  # e.g. {"scale": 1.0}

    # Annealing schedule
    learning_rate: float = 10.0
    decay_factor: float = 1.0
    step_offset: int = 1000
    forgetting_exponent: float = -0.9
    per_term_annealing_offset: int = 20

    # Rounds
    num_iterations: int = 1  # Passes over each shard
    num_workers: int = 2
    batch_size: Optional[int] = None  # Records per round (None = whole shard)
    combine: str = "weighted_mean"  # "weighted_mean", "mean"
    round_timeout: Optional[float] = None  # Seconds (None = wait indefinitely)

    # Worker identities, by rank (empty = "worker_0" .. "worker_{num_workers-1}")
    worker_ids: List[str] = field(default_factory=list)

    def expected_worker_ids(self) -> List[str]:
        """Worker identifiers the aggregator waits for each round."""
        if self.worker_ids:
            return list(self.worker_ids)
        return [f"worker_{rank}" for rank in range(self.num_workers)]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrainingConfig':
        """Create from dictionary."""
        return cls(**data)

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> 'TrainingConfig':
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(json_str))

    @classmethod
    def from_json_file(cls, path: str) -> 'TrainingConfig':
        """Load from JSON file."""
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))

    def to_json_file(self, path: str):
        """Save to JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def get_worker_config(self, worker_id: str, rank: int) -> Dict[str, Any]:
        """
        Get configuration for a specific worker.

        Args:
            worker_id: Worker identifier
            rank: Worker rank in training cluster

        Returns:
            Configuration dict for this worker
        """
        config = self.to_dict()
        config['worker_id'] = worker_id
        config['rank'] = rank
        config['world_size'] = self.num_workers
        return config

    def validate(self) -> List[str]:
        """
        Validate training configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.num_categories < 2:
            errors.append(f"num_categories must be >= 2: {self.num_categories}")

        if self.num_features < 1:
            errors.append(f"num_features must be positive: {self.num_features}")

        if self.lambda_ < 0:
            errors.append(f"lambda_ must be non-negative: {self.lambda_}")

        if self.prior not in PRIORS:
            errors.append(f"Invalid prior: {self.prior}")

        if self.learning_rate <= 0:
            errors.append(f"learning_rate must be positive: {self.learning_rate}")

        if not 0 < self.decay_factor <= 1:
            errors.append(f"decay_factor must be in (0, 1]: {self.decay_factor}")

        if self.step_offset < 0:
            errors.append(f"step_offset must be non-negative: {self.step_offset}")

        # (step + offset) ** exponent is undefined at step 0 with offset 0
        if self.step_offset == 0 and self.forgetting_exponent != 0:
            errors.append("step_offset must be positive when forgetting_exponent is non-zero")

        if self.per_term_annealing_offset <= 0:
            errors.append(
                f"per_term_annealing_offset must be positive: {self.per_term_annealing_offset}"
            )

        if self.num_iterations <= 0:
            errors.append(f"num_iterations must be positive: {self.num_iterations}")

        if self.num_workers <= 0:
            errors.append(f"num_workers must be positive: {self.num_workers}")

        if self.worker_ids and len(set(self.worker_ids)) != self.num_workers:
            errors.append(
                f"worker_ids must list {self.num_workers} distinct ids: {self.worker_ids}"
            )

        if self.batch_size is not None and self.batch_size <= 0:
            errors.append(f"batch_size must be positive: {self.batch_size}")

        if self.combine not in COMBINE_RULES:
            errors.append(f"Invalid combine rule: {self.combine}")

        if self.round_timeout is not None and self.round_timeout <= 0:
            errors.append(f"round_timeout must be positive: {self.round_timeout}")

        return errors
