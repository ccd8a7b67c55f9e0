"""
Communication module for POLR distributed training.

Provides the snapshot codec shared by the HTTP transport and the
in-process simulator.
"""

from communication.serialization import (
    SnapshotFormatError,
    deserialize_snapshot,
    serialize_snapshot,
)

__version__ = "0.1.0"

__all__ = [
    "SnapshotFormatError",
    "serialize_snapshot",
    "deserialize_snapshot",
]
