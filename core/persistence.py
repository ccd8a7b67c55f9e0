"""
Versioned binary save/restore of a GradientModel.

Layout (big-endian), in order:
    version i32, learning_rate f64, decay_factor f64, step_offset i32,
    step i32, forgetting_exponent f64, per_term_annealing_offset i32,
    num_categories i32, beta (rows i32, cols i32, rows*cols f64),
    prior (name length i32, utf-8 name, param count i32, params f64...),
    lambda f64, update_counts (len i32, f64...), update_steps (len i32, f64...)

The version is checked before anything else is read.
"""

import io
import logging
import struct
from pathlib import Path
from typing import BinaryIO, Union

import numpy as np
import torch

from core.annealing import AnnealingSchedule
from core.model import DTYPE, GradientModel
from core.priors import create_prior

logger = logging.getLogger(__name__)

WRITABLE_VERSION = 1


class IncompatibleModelVersionError(IOError):
    """Persisted model was written with a different format version."""

    def __init__(self, found: int, expected: int = WRITABLE_VERSION):
        super().__init__(f"Incorrect object version, wanted {expected} got {found}")
        self.found = found
        self.expected = expected


class ModelFormatError(IOError):
    """Persisted model is truncated or malformed."""


def _write_int(out: BinaryIO, value: int):
    out.write(struct.pack(">i", int(value)))


def _write_double(out: BinaryIO, value: float):
    out.write(struct.pack(">d", float(value)))


def _write_doubles(out: BinaryIO, tensor: torch.Tensor):
    out.write(tensor.detach().cpu().numpy().astype(">f8").tobytes())


def _read_exact(stream: BinaryIO, n: int) -> bytes:
    data = stream.read(n)
    if len(data) != n:
        raise ModelFormatError(f"Unexpected end of model data (wanted {n} bytes, got {len(data)})")
    return data


def _read_int(stream: BinaryIO) -> int:
    return struct.unpack(">i", _read_exact(stream, 4))[0]


def _read_double(stream: BinaryIO) -> float:
    return struct.unpack(">d", _read_exact(stream, 8))[0]


def _read_doubles(stream: BinaryIO, count: int) -> torch.Tensor:
    if count < 0:
        raise ModelFormatError(f"Negative length {count}")
    array = np.frombuffer(_read_exact(stream, 8 * count), dtype=">f8")
    # frombuffer arrays are read-only and big-endian
    return torch.from_numpy(array.astype(np.float64))


def save_model(model: GradientModel, out: BinaryIO):
    """
    Write a model to a binary stream.

    Args:
        model: Model to persist
        out: Writable binary stream
    """
    schedule = model.schedule
    _write_int(out, WRITABLE_VERSION)
    _write_double(out, schedule.learning_rate)
    _write_double(out, schedule.decay_factor)
    _write_int(out, schedule.step_offset)
    _write_int(out, model.step)
    _write_double(out, schedule.forgetting_exponent)
    _write_int(out, schedule.per_term_annealing_offset)
    _write_int(out, model.num_categories)

    rows, cols = model.beta.shape
    _write_int(out, rows)
    _write_int(out, cols)
    _write_doubles(out, model.beta.contiguous())

    name = model.prior.name.encode('utf-8')
    params = model.prior.parameters()
    _write_int(out, len(name))
    out.write(name)
    _write_int(out, len(params))
    for p in params:
        _write_double(out, p)
    _write_double(out, model.lambda_value)

    _write_int(out, model.update_counts.numel())
    _write_doubles(out, model.update_counts)
    _write_int(out, model.update_steps.numel())
    _write_doubles(out, model.update_steps.to(DTYPE))


def load_model(stream: BinaryIO) -> GradientModel:
    """
    Read a model written by save_model.

    Raises:
        IncompatibleModelVersionError: Version field does not match
        ModelFormatError: Data is truncated or inconsistent
    """
    version = _read_int(stream)
    if version != WRITABLE_VERSION:
        raise IncompatibleModelVersionError(version)

    learning_rate = _read_double(stream)
    decay_factor = _read_double(stream)
    step_offset = _read_int(stream)
    step = _read_int(stream)
    forgetting_exponent = _read_double(stream)
    per_term_annealing_offset = _read_int(stream)
    num_categories = _read_int(stream)

    rows = _read_int(stream)
    cols = _read_int(stream)
    if num_categories < 2:
        raise ModelFormatError(f"Model needs at least 2 categories, found {num_categories}")
    if rows != num_categories - 1 or cols < 1:
        raise ModelFormatError(
            f"Matrix shape ({rows}, {cols}) inconsistent with {num_categories} categories"
        )
    beta = _read_doubles(stream, rows * cols).reshape(rows, cols)

    name_length = _read_int(stream)
    if name_length < 0:
        raise ModelFormatError(f"Negative prior name length {name_length}")
    try:
        prior_name = _read_exact(stream, name_length).decode('utf-8')
    except UnicodeDecodeError as e:
        raise ModelFormatError(f"Prior name is not valid UTF-8: {e}") from e
    num_params = _read_int(stream)
    if num_params < 0:
        raise ModelFormatError(f"Negative prior parameter count {num_params}")
    params = [_read_double(stream) for _ in range(num_params)]
    try:
        prior = create_prior(prior_name, *params)
    except (TypeError, ValueError) as e:
        raise ModelFormatError(f"Cannot restore prior '{prior_name}': {e}") from e
    lambda_ = _read_double(stream)

    update_counts = _read_doubles(stream, _read_int(stream))
    update_steps = _read_doubles(stream, _read_int(stream)).to(torch.int64)
    if update_counts.numel() != cols or update_steps.numel() != cols:
        raise ModelFormatError(
            f"Bookkeeping vectors ({update_counts.numel()}, {update_steps.numel()}) "
            f"do not match {cols} features"
        )

    try:
        schedule = AnnealingSchedule(
            learning_rate=learning_rate,
            decay_factor=decay_factor,
            step_offset=step_offset,
            forgetting_exponent=forgetting_exponent,
            per_term_annealing_offset=per_term_annealing_offset,
        )
        model = GradientModel(num_categories, cols, prior=prior, schedule=schedule, lambda_=lambda_)
    except ValueError as e:
        raise ModelFormatError(f"Inconsistent model parameters: {e}") from e
    model.beta = beta
    model.update_counts = update_counts
    model.update_steps = update_steps
    model.step = step
    return model


def model_to_bytes(model: GradientModel) -> bytes:
    buffer = io.BytesIO()
    save_model(model, buffer)
    return buffer.getvalue()


def model_from_bytes(data: bytes) -> GradientModel:
    return load_model(io.BytesIO(data))


def save_model_file(model: GradientModel, path: Union[str, Path]):
    """Write a model to a file, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        save_model(model, f)
    logger.info(f"Saved model (step {model.step}) to {path}")


def load_model_file(path: Union[str, Path]) -> GradientModel:
    """Read a model from a file."""
    with open(path, 'rb') as f:
        model = load_model(f)
    logger.info(f"Loaded model (step {model.step}) from {path}")
    return model
