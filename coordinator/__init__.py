"""
Coordinator module for POLR distributed training.

The coordinator is responsible for:
- The per-round barrier over all active workers
- Combining worker snapshots into one global snapshot
- Serving the training configuration to workers
"""

__version__ = "0.1.0"
