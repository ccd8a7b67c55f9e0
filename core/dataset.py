"""
Record sources and dataset utilities.

A record source is a rewindable cursor over one worker's shard. Parsing
raw text into samples happens upstream; sources here yield ready-made
Sample objects.
"""

import logging
from typing import Iterator, List, Optional, Sequence

import torch

from core.sample import Sample

logger = logging.getLogger(__name__)


class RecordSourceError(IOError):
    """The record source failed to produce the next record (not end-of-shard)."""


class RecordSource:
    """
    Cursor over a shard of samples.

    Subclasses implement has_more(), next() and reset(). next() raises
    RecordSourceError for hard failures; running out of records is
    signalled by has_more() returning False.
    """

    def has_more(self) -> bool:
        raise NotImplementedError

    def next(self) -> Sample:
        raise NotImplementedError

    def reset(self):
        raise NotImplementedError

    def __iter__(self) -> Iterator[Sample]:
        while self.has_more():
            yield self.next()


class InMemoryRecordSource(RecordSource):
    """Record source over a list of samples held in memory."""

    def __init__(self, samples: Sequence[Sample]):
        self.samples = list(samples)
        self.position = 0

    def has_more(self) -> bool:
        return self.position < len(self.samples)

    def next(self) -> Sample:
        if not self.has_more():
            raise RecordSourceError(f"Read past end of shard ({len(self.samples)} records)")
        sample = self.samples[self.position]
        self.position += 1
        return sample

    def reset(self):
        self.position = 0

    def __len__(self) -> int:
        return len(self.samples)


def shard_samples(samples: Sequence[Sample], rank: int, world_size: int) -> List[Sample]:
    """
    Interleaved shard of a dataset for one worker.

    Worker `rank` gets samples rank, rank + world_size, rank + 2 * world_size, ...

    Args:
        samples: Full dataset
        rank: Worker rank (0 to world_size-1)
        world_size: Total number of workers

    Returns:
        This worker's samples, in dataset order
    """
    if world_size < 1:
        raise ValueError(f"world_size must be >= 1, got {world_size}")
    if not 0 <= rank < world_size:
        raise ValueError(f"rank {rank} outside [0, {world_size})")
    return list(samples[rank::world_size])


def create_synthetic_dataset(
    num_categories: int,
    num_features: int,
    num_samples: int,
    nnz: int = 5,
    seed: int = 42,
    noise: float = 0.1,
    true_beta: Optional[torch.Tensor] = None
) -> List[Sample]:
    """
    Generate a learnable sparse classification dataset.

    Labels are drawn from a multinomial logistic model with a random
    ground-truth coefficient matrix, so SGD has something to recover.
    The same seed always produces the same samples.

    Args:
        num_categories: Number of target categories
        num_features: Feature space size
        num_samples: Number of samples to generate
        nnz: Non-zero features per sample
        seed: Random seed
        noise: Scale of Gaussian noise added to the scores
        true_beta: Optional ground-truth matrix, (num_categories - 1) x num_features

    Returns:
        List of samples
    """
    generator = torch.Generator().manual_seed(seed)
    nnz = min(nnz, num_features)

    if true_beta is None:
        true_beta = torch.randn(
            (num_categories - 1, num_features), generator=generator, dtype=torch.float64
        ) * 2.0

    samples = []
    for _ in range(num_samples):
        indices = torch.randperm(num_features, generator=generator)[:nnz]
        values = torch.rand(nnz, generator=generator, dtype=torch.float64) + 0.5

        scores = torch.zeros(num_categories, dtype=torch.float64)
        scores[:-1] = true_beta[:, indices] @ values
        scores += noise * torch.randn(num_categories, generator=generator, dtype=torch.float64)
        probabilities = torch.softmax(scores, dim=0)
        label = int(torch.multinomial(probabilities, 1, generator=generator))

        samples.append(Sample.from_features(label, zip(indices.tolist(), values.tolist())))

    logger.debug(
        f"Generated {num_samples} synthetic samples "
        f"({num_categories} categories, {num_features} features, seed={seed})"
    )
    return samples


def create_distributed_dataset(
    num_categories: int,
    num_features: int,
    num_samples: int,
    rank: int,
    world_size: int,
    nnz: int = 5,
    seed: int = 42
) -> List[Sample]:
    """
    One worker's shard of a seeded synthetic dataset.

    All workers generate the same global dataset from the shared seed and
    keep their interleaved slice of it.
    """
    samples = create_synthetic_dataset(num_categories, num_features, num_samples, nnz=nnz, seed=seed)
    return shard_samples(samples, rank, world_size)
