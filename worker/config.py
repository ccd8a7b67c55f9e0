"""
Worker configuration for POLR distributed training.

Defines the operational parameters of a worker process. Training
hyperparameters come from the coordinator's TrainingConfig.
"""

from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any
import json


@dataclass
class WorkerConfig:
    """
    Configuration for a POLR worker process.

    This includes identity, coordinator connection settings, local data
    settings and logging.
    """

    # Identity
    worker_id: str = "worker_0"
    rank: Optional[int] = None  # Assigned by the coordinator when None

    # Coordinator connection
    coordinator_url: str = "http://localhost:8000"
    coordinator_timeout: float = 30.0  # seconds
    coordinator_retry_attempts: int = 3
    coordinator_retry_delay: float = 1.0  # seconds
    poll_interval: float = 0.5  # seconds between global snapshot polls
    round_wait_timeout: Optional[float] = None  # None = wait indefinitely

    # Local data (synthetic shard)
    seed: int = 42
    num_samples: int = 1000  # Global dataset size before sharding
    nnz: int = 5  # Non-zero features per synthetic sample

    # Output
    model_path: Optional[str] = None  # Save the final model here

    # Logging
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert config to dictionary.

        Returns:
            Configuration as dictionary
        """
        return asdict(self)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'WorkerConfig':
        """
        Create config from dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            WorkerConfig instance
        """
        return cls(**config_dict)

    @classmethod
    def from_json_file(cls, path: str) -> 'WorkerConfig':
        """
        Load config from JSON file.

        Args:
            path: Path to JSON config file

        Returns:
            WorkerConfig instance
        """
        with open(path, 'r') as f:
            config_dict = json.load(f)
        return cls.from_dict(config_dict)

    def to_json_file(self, path: str):
        """
        Save config to JSON file.

        Args:
            path: Path to save JSON config
        """
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"WorkerConfig(worker_id='{self.worker_id}', "
            f"coordinator='{self.coordinator_url}', "
            f"rank={self.rank})"
        )
