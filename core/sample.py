"""
Sparse training samples.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Tuple, Union

import torch


class InvalidSampleError(ValueError):
    """A sample is malformed or does not fit the model's shape."""


@dataclass(frozen=True, eq=False)
class Sample:
    """
    A labelled sparse feature vector.

    Only non-zero entries are stored; they are the features a training
    step touches.
    """

    label: int
    indices: torch.Tensor  # int64
    values: torch.Tensor  # float64

    @classmethod
    def from_features(
        cls,
        label: int,
        features: Union[Mapping[int, float], Iterable[Tuple[int, float]]]
    ) -> 'Sample':
        """
        Build a sample from an index -> value mapping or (index, value) pairs.

        Later pairs override earlier ones for the same index. Zero values
        are dropped.

        Example:
            >>> s = Sample.from_features(1, {0: 1.0, 3: 0.5})
            >>> s.nnz
            2
        """
        items = features.items() if isinstance(features, Mapping) else features
        merged: Dict[int, float] = {}
        for index, value in items:
            merged[int(index)] = float(value)

        nonzero = sorted((i, v) for i, v in merged.items() if v != 0.0)
        indices = torch.tensor([i for i, _ in nonzero], dtype=torch.int64)
        values = torch.tensor([v for _, v in nonzero], dtype=torch.float64)
        return cls(label=int(label), indices=indices, values=values)

    @property
    def nnz(self) -> int:
        """Number of non-zero features."""
        return int(self.indices.numel())

    def to_dict(self) -> Dict[int, float]:
        return dict(zip(self.indices.tolist(), self.values.tolist()))

    def validate(self, num_categories: int, num_features: int):
        """
        Check the sample against a model shape.

        Raises:
            InvalidSampleError: Indices that are not a 1-D int64 tensor,
                values that are not a float64 tensor of the same length,
                repeated indices, a label outside [0, num_categories) or an
                index outside [0, num_features)
        """
        if self.indices.dtype != torch.int64 or self.values.dtype != torch.float64:
            raise InvalidSampleError(
                f"Expected int64 indices and float64 values, "
                f"got {self.indices.dtype} and {self.values.dtype}"
            )
        if self.indices.dim() != 1 or self.values.shape != self.indices.shape:
            raise InvalidSampleError(
                f"Indices {tuple(self.indices.shape)} and values "
                f"{tuple(self.values.shape)} must be 1-D and the same length"
            )
        # Each touched feature is updated once per step
        if self.indices.unique().numel() != self.nnz:
            raise InvalidSampleError("Duplicate feature indices")
        if not 0 <= self.label < num_categories:
            raise InvalidSampleError(
                f"Label {self.label} outside [0, {num_categories})"
            )
        if self.nnz:
            low = int(self.indices.min())
            high = int(self.indices.max())
            if low < 0 or high >= num_features:
                bad = low if low < 0 else high
                raise InvalidSampleError(
                    f"Feature index {bad} outside [0, {num_features})"
                )
