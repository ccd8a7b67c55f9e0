"""
Worker module for POLR distributed training.

Workers are the compute nodes that:
- Train a local logistic regression model on their shard
- Exchange snapshots with the coordinator each round
- Track running log-likelihood and accuracy
"""

__version__ = "0.1.0"
