"""
GasWatch - Sei Gas Price Monitor
================================

Samples a predictive gas-price feed and the Sei chain itself, reconciles
both into one record per block height, and serves time-ranged comparisons.
"""

__version__ = "0.1.0"
__author__ = "GasWatch"
