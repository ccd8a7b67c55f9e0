"""
Learning-rate annealing for online logistic regression.

Two schedules are combined during training:
- A global rate that decays with the step counter
  (exponential decay times a power-law forgetting term)
- A per-feature rate that shrinks as a feature is seen more often
"""

import math
from dataclasses import dataclass

import torch


@dataclass
class AnnealingSchedule:
    """
    Global and per-term learning-rate schedule.

    currentLearningRate(t) = learning_rate * decay_factor^t * (t + step_offset)^forgetting_exponent
    perTermLearningRate(j) = sqrt(per_term_annealing_offset / update_counts[j])
    """

    learning_rate: float = 1.0
    decay_factor: float = 1 - 1.0e-3
    step_offset: int = 10
    # -1 weights all examples evenly, 0 leaves only exponential annealing
    forgetting_exponent: float = -0.5
    per_term_annealing_offset: int = 20

    def __post_init__(self):
        self.forgetting_exponent = self.decaying(self.forgetting_exponent)

    @staticmethod
    def decaying(exponent: float) -> float:
        """Force a forgetting exponent to be non-positive."""
        if exponent > 0:
            return -exponent
        return exponent

    def current_learning_rate(self, step: int) -> float:
        """
        Global learning rate at a given step.

        Args:
            step: Global step counter (number of samples trained so far)

        Returns:
            Annealed learning rate
        """
        return (
            self.learning_rate
            * math.pow(self.decay_factor, step)
            * math.pow(step + self.step_offset, self.forgetting_exponent)
        )

    def per_term_learning_rate(self, update_counts: torch.Tensor) -> torch.Tensor:
        """
        Per-feature learning rates for the given update counts.

        Args:
            update_counts: Update counts of the features of interest

        Returns:
            Tensor of per-feature rates, same shape as update_counts
        """
        return torch.sqrt(self.per_term_annealing_offset / update_counts)
