"""
POLR Simulation

This module contains a single-machine simulation of synchronous parallel
SGD for multinomial logistic regression: several workers train on their
shards and exchange snapshots with an in-process aggregator.
"""

__version__ = "0.1.0"
