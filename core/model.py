"""
Parallel online logistic regression model.

Multinomial logistic regression trained one sparse sample at a time with
SGD. The last category is the reference category: its coefficients are
implicitly zero, so the matrix has num_categories - 1 rows.

Annealing state (step counter, per-feature update counts and last-touched
steps) is local to each worker. Only the coefficient matrix is exchanged
between rounds.
"""

import logging
import math
from typing import Optional

import torch

from core.annealing import AnnealingSchedule
from core.priors import PriorFunction, RegularizationPolicy, UniformPrior, create_prior
from core.sample import Sample
from core.snapshot import Snapshot

logger = logging.getLogger(__name__)

MIN_LOG_LIKELIHOOD = -100.0

DTYPE = torch.float64


class GradientModel:
    """
    Owns the coefficient matrix and per-feature bookkeeping for one worker.

    Not thread-safe: exactly one thread trains a given instance.
    """

    def __init__(
        self,
        num_categories: int,
        num_features: int,
        prior: Optional[PriorFunction] = None,
        schedule: Optional[AnnealingSchedule] = None,
        lambda_: float = 1.0e-5
    ):
        """
        Args:
            num_categories: Number of target categories (>= 2)
            num_features: Size of the feature space
            prior: Regularization prior (uniform when None)
            schedule: Learning-rate schedule (library defaults when None)
            lambda_: Regularization strength
        """
        if num_categories < 2:
            raise ValueError(f"num_categories must be >= 2, got {num_categories}")
        if num_features < 1:
            raise ValueError(f"num_features must be >= 1, got {num_features}")

        self.num_categories = num_categories
        self.num_features = num_features
        self.schedule = schedule or AnnealingSchedule()
        self.regularizer = RegularizationPolicy(prior or UniformPrior(), lambda_)

        self.beta = torch.zeros((num_categories - 1, num_features), dtype=DTYPE)
        self.update_counts = torch.full(
            (num_features,), float(self.schedule.per_term_annealing_offset), dtype=DTYPE
        )
        self.update_steps = torch.zeros(num_features, dtype=torch.int64)
        self.step = 0

    # Chainable configuration

    def alpha(self, alpha: float) -> 'GradientModel':
        """Set the exponential decay factor of the learning rate."""
        self.schedule.decay_factor = alpha
        return self

    def lambda_(self, lambda_: float) -> 'GradientModel':
        """Set the regularization strength."""
        self.regularizer.lambda_ = lambda_
        return self

    def learning_rate(self, learning_rate: float) -> 'GradientModel':
        """Set the initial learning rate."""
        self.schedule.learning_rate = learning_rate
        return self

    def step_offset(self, step_offset: int) -> 'GradientModel':
        self.schedule.step_offset = step_offset
        return self

    def decay_exponent(self, exponent: float) -> 'GradientModel':
        """Set the forgetting exponent; positive values are negated."""
        self.schedule.forgetting_exponent = AnnealingSchedule.decaying(exponent)
        return self

    @property
    def prior(self) -> PriorFunction:
        return self.regularizer.prior

    @property
    def lambda_value(self) -> float:
        return self.regularizer.lambda_

    # Rates

    def current_learning_rate(self) -> float:
        return self.schedule.current_learning_rate(self.step)

    def per_term_learning_rate(self, j: int) -> float:
        return float(self.schedule.per_term_learning_rate(self.update_counts[j]))

    # Scoring

    def validate_sample(self, sample: Sample):
        """Raise InvalidSampleError if the sample does not fit this model."""
        sample.validate(self.num_categories, self.num_features)

    def predict(self, sample: Sample) -> torch.Tensor:
        """
        Class probabilities for a sample.

        Args:
            sample: Sparse sample (label is ignored)

        Returns:
            Probability vector of length num_categories; the last entry is
            the reference category
        """
        scores = torch.zeros(self.num_categories, dtype=DTYPE)
        if sample.nnz:
            scores[:-1] = self.beta[:, sample.indices] @ sample.values
        # Shift by the max score so exp() cannot overflow
        scores = scores - scores.max()
        exp_scores = torch.exp(scores)
        return exp_scores / exp_scores.sum()

    def classify(self, sample: Sample) -> int:
        """Most probable category for a sample."""
        return int(torch.argmax(self.predict(sample)))

    def log_likelihood(self, sample: Sample) -> float:
        """
        Log probability of the sample's label, floored at MIN_LOG_LIKELIHOOD.

        May return NaN when the coefficients are not finite.
        """
        p = float(self.predict(sample)[sample.label])
        if math.isnan(p):
            return p
        if p <= 0.0:
            return MIN_LOG_LIKELIHOOD
        return max(MIN_LOG_LIKELIHOOD, math.log(p))

    # Training

    def gradient(self, sample: Sample) -> torch.Tensor:
        """
        Classification error for the non-reference categories.

        gradient[i] = 1{label == i} - p[i], for i < num_categories - 1
        """
        probabilities = self.predict(sample)[:-1]
        target = torch.zeros_like(probabilities)
        if sample.label < self.num_categories - 1:
            target[sample.label] = 1.0
        return target - probabilities

    def train(self, sample: Sample):
        """
        One SGD step on a sample.

        Catches the sample's columns up on regularization, applies the
        gradient step scaled by the global and per-term rates, then
        advances the step counter. The step counter advances even for a
        sample with no non-zero features.

        Raises:
            InvalidSampleError: Sample does not fit this model (no state
                is modified)
        """
        self.validate_sample(sample)
        learning_rate = self.current_learning_rate()
        columns = sample.indices

        if sample.nnz:
            per_term = self.schedule.per_term_learning_rate(self.update_counts[columns])
            self.regularizer.catch_up(
                self.beta, self.update_steps, self.step, columns, learning_rate * per_term
            )

            gradient = self.gradient(sample)
            if not bool(torch.isfinite(gradient).all()):
                logger.warning(f"Non-finite gradient at step {self.step}; zeroing it")
                gradient = torch.nan_to_num(gradient, nan=0.0, posinf=0.0, neginf=0.0)

            # The per-term rate of the gradient step counts this sample's touch
            self.update_counts[columns] += 1
            per_term = self.schedule.per_term_learning_rate(self.update_counts[columns])
            self.beta[:, columns] += torch.outer(gradient, learning_rate * per_term * sample.values)
            self.update_steps[columns] = self.step

        self.step += 1

    def regularize_all(self) -> int:
        """
        Catch every column up to the current step without advancing it.

        Returns:
            Number of columns that needed catching up
        """
        columns = torch.arange(self.num_features)
        rates = self.current_learning_rate() * self.schedule.per_term_learning_rate(self.update_counts)
        return self.regularizer.catch_up(self.beta, self.update_steps, self.step, columns, rates)

    # Synchronization

    def snapshot(self, **metadata) -> Snapshot:
        """
        Deep copy of the coefficient matrix plus caller-supplied metadata.

        Model state is not modified.
        """
        return Snapshot(beta=self.beta.clone(), **metadata)

    def replace(self, snapshot: Snapshot):
        """
        Overwrite the coefficient matrix with a snapshot's matrix.

        Step counter, update counts and last-touched steps are kept.

        Raises:
            ValueError: Snapshot matrix has a different shape
        """
        if tuple(snapshot.beta.shape) != tuple(self.beta.shape):
            raise ValueError(
                f"Snapshot shape {tuple(snapshot.beta.shape)} does not match "
                f"model shape {tuple(self.beta.shape)}"
            )
        self.beta = snapshot.beta.to(DTYPE).clone()

    def copy(self) -> 'GradientModel':
        """Independent deep copy of the model, including annealing state."""
        schedule = AnnealingSchedule(
            learning_rate=self.schedule.learning_rate,
            decay_factor=self.schedule.decay_factor,
            step_offset=self.schedule.step_offset,
            forgetting_exponent=self.schedule.forgetting_exponent,
            per_term_annealing_offset=self.schedule.per_term_annealing_offset,
        )
        other = GradientModel(
            self.num_categories,
            self.num_features,
            prior=self.prior,
            schedule=schedule,
            lambda_=self.lambda_value,
        )
        other.beta = self.beta.clone()
        other.update_counts = self.update_counts.clone()
        other.update_steps = self.update_steps.clone()
        other.step = self.step
        return other

    def __repr__(self) -> str:
        return (
            f"GradientModel(num_categories={self.num_categories}, "
            f"num_features={self.num_features}, prior={self.prior!r}, step={self.step})"
        )


def create_model(config) -> GradientModel:
    """
    Build a model from a TrainingConfig.

    Args:
        config: coordinator.training_config.TrainingConfig

    Returns:
        Freshly initialized GradientModel
    """
    prior = create_prior(config.prior, **config.prior_params)
    schedule = AnnealingSchedule(
        learning_rate=config.learning_rate,
        decay_factor=config.decay_factor,
        step_offset=config.step_offset,
        forgetting_exponent=config.forgetting_exponent,
        per_term_annealing_offset=config.per_term_annealing_offset,
    )
    model = GradientModel(
        config.num_categories,
        config.num_features,
        prior=prior,
        schedule=schedule,
        lambda_=config.lambda_,
    )
    logger.info(
        f"Created model: {config.num_categories} categories x {config.num_features} features, "
        f"prior={prior!r}, lambda={config.lambda_}"
    )
    return model
