"""
Prior functions and lazy regularization.

A prior "ages" a coefficient by applying its penalty for a number of
skipped steps at once. Columns of the coefficient matrix are only caught
up when a training sample touches them, which keeps the per-sample cost
proportional to the number of non-zero features.

Coefficients can diverge to +/-inf or NaN under a pathological prior
(e.g. an L2 scale below sqrt(rate)); no guard is applied.
"""

from typing import Callable, Dict, List, Type

import torch


class PriorFunction:
    """
    Base class for regularization priors.

    Subclasses implement age(); parameters() and the constructor
    arguments must agree so a prior can be persisted.
    """

    name: str = "base"

    def age(self, values: torch.Tensor, generations: torch.Tensor, rate: torch.Tensor) -> torch.Tensor:
        """
        Apply the penalty for `generations` steps at the given rate.

        Args:
            values: Current coefficient values
            generations: Number of skipped steps (broadcastable to values)
            rate: Effective learning rate (broadcastable to values)

        Returns:
            Adjusted coefficient values
        """
        raise NotImplementedError

    def parameters(self) -> List[float]:
        """Constructor parameters, in order."""
        return []

    def __eq__(self, other):
        return type(self) is type(other) and self.parameters() == other.parameters()

    def __repr__(self) -> str:
        params = ", ".join(str(p) for p in self.parameters())
        return f"{type(self).__name__}({params})"


PRIORS: Dict[str, Type[PriorFunction]] = {}


def register_prior(name: str) -> Callable[[Type[PriorFunction]], Type[PriorFunction]]:
    """
    Class decorator registering a prior under a name.

    Args:
        name: Registry key (used in configs and persisted models)
    """
    def decorator(cls: Type[PriorFunction]) -> Type[PriorFunction]:
        if name in PRIORS:
            raise ValueError(f"Prior '{name}' already registered")
        PRIORS[name] = cls
        return cls
    return decorator


def create_prior(name: str, *params: float, **kwargs) -> PriorFunction:
    """
    Factory for registered priors.

    Args:
        name: One of the registered names ('uniform', 'none', 'l1', 'l2', 'elastic')

    Returns:
        PriorFunction instance
    """
    if name not in PRIORS:
        raise ValueError(f"Unknown prior '{name}'. Choose from: {sorted(PRIORS.keys())}")
    return PRIORS[name](*params, **kwargs)


@register_prior("uniform")
class UniformPrior(PriorFunction):
    """No-op prior: coefficients are never pulled toward zero."""

    name = "uniform"

    def age(self, values, generations, rate):
        return values


@register_prior("none")
class NoPrior(UniformPrior):
    name = "none"


@register_prior("l1")
class L1Prior(PriorFunction):
    """
    Laplacian prior.

    Moves each coefficient toward zero by rate per step and stops at zero
    instead of crossing it.
    """

    name = "l1"

    def age(self, values, generations, rate):
        new_values = values - torch.sign(values) * rate * generations
        return torch.where(new_values * values < 0, torch.zeros_like(new_values), new_values)


@register_prior("l2")
class L2Prior(PriorFunction):
    """Gaussian prior with the given scale (standard deviation)."""

    name = "l2"

    def __init__(self, scale: float = 1.0):
        if scale <= 0:
            raise ValueError(f"L2 scale must be positive, got {scale}")
        self.scale = float(scale)
        self.s2 = self.scale * self.scale

    def age(self, values, generations, rate):
        return values * torch.pow(1 - rate / self.s2, generations)

    def parameters(self) -> List[float]:
        return [self.scale]


@register_prior("elastic")
class ElasticBandPrior(PriorFunction):
    """L2 shrinkage followed by an L1 step (elastic net)."""

    name = "elastic"

    def __init__(self, alpha_by_lambda: float = 1.0):
        self.alpha_by_lambda = float(alpha_by_lambda)

    def age(self, values, generations, rate):
        shrunk = values * torch.pow(1 - self.alpha_by_lambda * rate, generations)
        new_values = shrunk - torch.sign(shrunk) * rate * generations
        return torch.where(new_values * shrunk < 0, torch.zeros_like(new_values), new_values)

    def parameters(self) -> List[float]:
        return [self.alpha_by_lambda]


class RegularizationPolicy:
    """
    Lazily applies a prior to the columns touched by a sample.

    Every skipped step of a column is charged at the current effective
    rate, so catch-up costs O(nnz) per sample instead of O(num_features).
    """

    def __init__(self, prior: PriorFunction, lambda_: float = 1.0e-5):
        """
        Args:
            prior: Prior applied to stale columns
            lambda_: Regularization strength
        """
        self.prior = prior
        self.lambda_ = lambda_

    def catch_up(
        self,
        beta: torch.Tensor,
        last_touched: torch.Tensor,
        step: int,
        columns: torch.Tensor,
        rates: torch.Tensor
    ) -> int:
        """
        Bring the given columns of beta up to the current step in place.

        Args:
            beta: Coefficient matrix, (num_categories - 1) x num_features
            last_touched: Step at which each feature was last caught up
            step: Current global step
            columns: Feature indices to catch up
            rates: learning_rate * per_term_rate for each of `columns`

        Returns:
            Number of columns that needed catching up
        """
        missing = step - last_touched[columns]
        stale = missing > 0
        if not bool(stale.any()):
            return 0

        cols = columns[stale]
        generations = missing[stale].to(beta.dtype)
        rate = self.lambda_ * rates[stale]

        beta[:, cols] = self.prior.age(beta[:, cols], generations, rate)
        last_touched[cols] = step
        return int(cols.numel())
