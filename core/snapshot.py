"""
Round snapshots exchanged between workers and the aggregator.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict

import torch


@dataclass(frozen=True, eq=False)
class Snapshot:
    """
    Immutable copy of a coefficient matrix plus round metadata.

    The matrix is owned by the snapshot: producers clone before building
    one and consumers clone before adopting it.
    """

    beta: torch.Tensor
    worker_id: str = ""
    round_id: int = 0
    iteration: int = 0
    trained_records: int = 0  # cumulative
    round_records: int = 0  # processed in this round
    avg_log_likelihood: float = 0.0
    percent_correct: float = 0.0
    more_records: bool = False

    @property
    def shape(self):
        return tuple(self.beta.shape)

    def with_round(self, round_id: int) -> 'Snapshot':
        """Copy of this snapshot tagged with another round id."""
        return replace(self, round_id=round_id)

    def summary(self) -> Dict[str, Any]:
        """Metadata without the matrix, for logging and API responses."""
        return {
            'worker_id': self.worker_id,
            'round_id': self.round_id,
            'iteration': self.iteration,
            'shape': list(self.shape),
            'trained_records': self.trained_records,
            'round_records': self.round_records,
            'avg_log_likelihood': self.avg_log_likelihood,
            'percent_correct': self.percent_correct,
            'more_records': self.more_records,
        }
