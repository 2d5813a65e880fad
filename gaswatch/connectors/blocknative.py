"""
Blocknative Gas Price Client
============================

Predictive feed: confidence-leveled gas price estimates for the next block
on a given chain, plus the base fee.

Endpoint: GET https://api.blocknative.com/gasprices/blockprices?chainid=<id>
An API key is optional for low request rates; when configured it is sent
as the ``Authorization`` header.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

from ..core.errors import IncompleteResponse
from ..core.models import CONFIDENCE_LEVELS
from ..core.utils import safe_float
from .base import JsonApiClient, RetryConfig

BLOCKNATIVE_URL = "https://api.blocknative.com/gasprices/blockprices"
SEI_CHAIN_ID = 1329


@dataclass(frozen=True)
class PredictedPrices:
    """One blockPrices entry reduced to what the Record Store keeps."""
    base_fee: Optional[float]
    prices: Dict[int, Optional[float]] = field(default_factory=dict)

    def price(self, level: int = 99) -> Optional[float]:
        return self.prices.get(level)


def parse_block_prices(payload: Any) -> PredictedPrices:
    """
    Extract the next-block estimate from a blockprices response.

    Raises:
        IncompleteResponse: no ``blockPrices`` entry or no estimates
    """
    if not isinstance(payload, dict):
        raise IncompleteResponse("blockprices response is not an object")
    block_prices = payload.get('blockPrices') or []
    if not block_prices or not isinstance(block_prices[0], dict):
        raise IncompleteResponse("blockprices response has no blockPrices")

    block = block_prices[0]
    estimates = block.get('estimatedPrices') or []
    if not estimates:
        raise IncompleteResponse("blockprices entry has no estimatedPrices")

    prices: Dict[int, Optional[float]] = {level: None for level in CONFIDENCE_LEVELS}
    for estimate in estimates:
        if not isinstance(estimate, dict):
            continue
        try:
            level = int(estimate.get('confidence'))
        except (TypeError, ValueError):
            continue
        if level in prices:
            prices[level] = safe_float(estimate.get('price'))

    return PredictedPrices(base_fee=safe_float(block.get('baseFeePerGas')), prices=prices)


class BlocknativeClient(JsonApiClient):
    """Async client for the Blocknative blockprices endpoint."""

    def __init__(
        self,
        url: str = BLOCKNATIVE_URL,
        chain_id: int = SEI_CHAIN_ID,
        api_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
        retry: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__('blocknative', timeout_seconds=timeout_seconds, retry=retry, session=session)
        self._url = url
        self.chain_id = chain_id
        self._api_key = api_key or None

    async def fetch_block_prices(self) -> PredictedPrices:
        """Latest next-block prediction.

        Raises:
            UpstreamUnavailable: request failed after retries
            IncompleteResponse: payload missing estimates
        """
        headers = {'Authorization': self._api_key} if self._api_key else None
        payload = await self._request_json(
            'GET', self._url, params={'chainid': self.chain_id}, headers=headers,
        )
        return parse_block_prices(payload)
