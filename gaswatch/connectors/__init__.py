"""Upstream feed connectors."""
from .base import JsonApiClient, RetryConfig
from .blocknative import BlocknativeClient, PredictedPrices, parse_block_prices
from .sei_rpc import ChainHead, SeiEvmClient, SeiStatusClient, parse_status

__all__ = [
    'JsonApiClient', 'RetryConfig', 'BlocknativeClient', 'PredictedPrices',
    'parse_block_prices', 'ChainHead', 'SeiEvmClient', 'SeiStatusClient', 'parse_status',
]
