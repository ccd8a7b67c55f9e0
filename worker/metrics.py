"""
Running training metrics for a worker.
"""

import math
from dataclasses import dataclass

# Window cap for the running averages
MAX_AVERAGING_WINDOW = 200


@dataclass
class RunningMetrics:
    """
    Exponentially weighted running averages of log-likelihood and accuracy.

    The k-th observation (0-based) is weighted by 1 / min(k + 1, 200), so
    early records form a plain mean and later ones a moving average over
    roughly the last 200 records.
    """

    records_seen: int = 0
    avg_log_likelihood: float = 0.0
    avg_correct: float = 0.0

    def update(self, log_likelihood: float, correct: bool):
        """
        Fold one record into the averages.

        A non-finite log-likelihood contributes 0.
        """
        mu = min(self.records_seen + 1, MAX_AVERAGING_WINDOW)
        if not math.isfinite(log_likelihood):
            log_likelihood = 0.0

        self.avg_log_likelihood += (log_likelihood - self.avg_log_likelihood) / mu
        self.avg_correct += ((1.0 if correct else 0.0) - self.avg_correct) / mu
        self.records_seen += 1

    @property
    def percent_correct(self) -> float:
        return self.avg_correct * 100.0

    def reset(self):
        self.records_seen = 0
        self.avg_log_likelihood = 0.0
        self.avg_correct = 0.0
