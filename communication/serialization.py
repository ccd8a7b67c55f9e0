"""
Snapshot serialization for transport between workers and the aggregator.

A snapshot travels as an opaque blob:

    magic b"POLR", version u16, header length u32, JSON header (utf-8),
    rows*cols big-endian float64 values

The JSON header carries the round metadata and the matrix shape. The
matrix values are written as raw doubles so a blob round-trips bit-exactly.
"""

import json
import struct
from typing import Any, Dict

import numpy as np
import torch

from core.snapshot import Snapshot

MAGIC = b"POLR"
BLOB_VERSION = 1

_PREAMBLE = struct.Struct(">4sHI")

# Metadata fields carried in the header, with their types
_HEADER_FIELDS = {
    'worker_id': str,
    'round_id': int,
    'iteration': int,
    'trained_records': int,
    'round_records': int,
    'avg_log_likelihood': float,
    'percent_correct': float,
    'more_records': bool,
}


class SnapshotFormatError(ValueError):
    """Blob is not a valid serialized snapshot."""


def serialize_snapshot(snapshot: Snapshot) -> bytes:
    """
    Convert a snapshot to bytes.

    Args:
        snapshot: Snapshot to serialize

    Returns:
        Blob ready for network transmission
    """
    # Ensure tensor is contiguous and 2-D for the raw dump
    beta = snapshot.beta.detach().contiguous()
    if beta.dim() != 2:
        raise SnapshotFormatError(f"Snapshot matrix must be 2-D, got shape {tuple(beta.shape)}")

    header: Dict[str, Any] = {name: getattr(snapshot, name) for name in _HEADER_FIELDS}
    header['shape'] = list(beta.shape)
    header_bytes = json.dumps(header, sort_keys=True).encode('utf-8')

    data = beta.cpu().numpy().astype(">f8").tobytes()
    return _PREAMBLE.pack(MAGIC, BLOB_VERSION, len(header_bytes)) + header_bytes + data


def deserialize_snapshot(blob: bytes) -> Snapshot:
    """
    Convert bytes back to a snapshot.

    Args:
        blob: Bytes produced by serialize_snapshot

    Returns:
        Snapshot with a freshly allocated float64 matrix

    Raises:
        SnapshotFormatError: Blob is truncated, has a bad magic or version,
            or its header does not match its payload
    """
    if len(blob) < _PREAMBLE.size:
        raise SnapshotFormatError(f"Blob too short ({len(blob)} bytes)")

    magic, version, header_length = _PREAMBLE.unpack_from(blob)
    if magic != MAGIC:
        raise SnapshotFormatError(f"Bad magic {magic!r}")
    if version != BLOB_VERSION:
        raise SnapshotFormatError(f"Unsupported snapshot blob version {version}")

    header_end = _PREAMBLE.size + header_length
    if len(blob) < header_end:
        raise SnapshotFormatError("Blob truncated inside header")
    try:
        header = json.loads(blob[_PREAMBLE.size:header_end].decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SnapshotFormatError(f"Corrupt snapshot header: {e}") from e

    try:
        rows, cols = (int(n) for n in header['shape'])
        metadata = {name: kind(header[name]) for name, kind in _HEADER_FIELDS.items()}
    except (KeyError, TypeError, ValueError) as e:
        raise SnapshotFormatError(f"Incomplete snapshot header: {e}") from e

    payload = blob[header_end:]
    if rows < 0 or cols < 0 or len(payload) != 8 * rows * cols:
        raise SnapshotFormatError(
            f"Payload of {len(payload)} bytes does not match shape ({rows}, {cols})"
        )

    # frombuffer creates read-only big-endian arrays; copy into native float64
    values = np.frombuffer(payload, dtype=">f8").astype(np.float64).reshape(rows, cols)
    return Snapshot(beta=torch.from_numpy(values), **metadata)
