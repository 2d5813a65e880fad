"""
Sei Chain Clients
=================

Authoritative feed for block heights, block times and on-chain gas prices.

* ``SeiStatusClient``: Tendermint RPC ``/status`` (latest height + block time).
* ``SeiEvmClient``: EVM JSON-RPC (``eth_blockNumber``, ``eth_gasPrice``,
  ``eth_getBlockByNumber``).  Quantities are hex strings; gas prices are
  reported in wei and converted to gwei here.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from ..core.errors import IncompleteResponse, UpstreamUnavailable
from ..core.utils import epoch_to_iso, hex_to_int, normalize_timestamp, wei_to_gwei
from .base import JsonApiClient, RetryConfig

SEI_STATUS_URL = "https://rpc.sei.basementnodes.ca/status"
SEI_EVM_RPC_URL = "https://evm-rpc.sei.basementnodes.ca"


@dataclass(frozen=True)
class ChainHead:
    height: int
    block_time: Optional[str]  # canonical ISO, None if not reported


def parse_status(payload: Any) -> ChainHead:
    """
    Extract latest height and block time from a Tendermint ``/status`` body.

    Accepts both the JSON-RPC envelope (``result.sync_info``) and a bare
    ``sync_info`` object.

    Raises:
        IncompleteResponse: missing or malformed height
    """
    if not isinstance(payload, dict):
        raise IncompleteResponse("status response is not an object")
    result = payload.get('result') if isinstance(payload.get('result'), dict) else payload
    sync_info = result.get('sync_info') or {}
    raw_height = sync_info.get('latest_block_height')
    try:
        height = int(raw_height)
    except (TypeError, ValueError):
        raise IncompleteResponse(f"status has no usable latest_block_height: {raw_height!r}") from None
    if height <= 0:
        raise IncompleteResponse(f"status reported non-positive height {height}")

    block_time = None
    raw_time = sync_info.get('latest_block_time')
    if raw_time:
        try:
            block_time = normalize_timestamp(raw_time)
        except ValueError:
            block_time = None
    return ChainHead(height=height, block_time=block_time)


def parse_block_timestamp(block: Any, height: int) -> str:
    """Canonical timestamp of an ``eth_getBlockByNumber`` result."""
    if not isinstance(block, dict) or 'timestamp' not in block:
        raise IncompleteResponse(f"block {height} not available")
    try:
        return epoch_to_iso(hex_to_int(block['timestamp']))
    except ValueError as exc:
        raise IncompleteResponse(f"block {height} has bad timestamp: {exc}") from exc


class SeiStatusClient(JsonApiClient):
    """Async client for the Tendermint ``/status`` endpoint."""

    def __init__(
        self,
        url: str = SEI_STATUS_URL,
        timeout_seconds: float = 5.0,
        retry: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__('sei_status', timeout_seconds=timeout_seconds, retry=retry, session=session)
        self._url = url

    async def fetch_latest_block(self) -> ChainHead:
        payload = await self._request_json('GET', self._url)
        return parse_status(payload)


class SeiEvmClient(JsonApiClient):
    """Async JSON-RPC client for the Sei EVM endpoint."""

    def __init__(
        self,
        url: str = SEI_EVM_RPC_URL,
        timeout_seconds: float = 5.0,
        retry: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__('sei_evm', timeout_seconds=timeout_seconds, retry=retry, session=session)
        self._url = url
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: List[Any], max_attempts: Optional[int] = None) -> Any:
        """One JSON-RPC call; returns ``result`` or raises.

        Raises:
            UpstreamUnavailable: transport failure or JSON-RPC error object
        """
        request: Dict[str, Any] = {
            'jsonrpc': '2.0',
            'method': method,
            'params': params,
            'id': next(self._ids),
        }
        payload = await self._request_json('POST', self._url, json=request, max_attempts=max_attempts)
        if not isinstance(payload, dict):
            raise IncompleteResponse(f"{method}: response is not an object")
        if payload.get('error'):
            raise UpstreamUnavailable(f"{method}: rpc error {payload['error']}")
        return payload.get('result')

    async def block_number(self) -> int:
        result = await self._call('eth_blockNumber', [])
        try:
            return hex_to_int(result)
        except ValueError as exc:
            raise IncompleteResponse(f"eth_blockNumber: {exc}") from exc

    async def gas_price_gwei(self) -> float:
        result = await self._call('eth_gasPrice', [])
        try:
            return wei_to_gwei(hex_to_int(result))
        except ValueError as exc:
            raise IncompleteResponse(f"eth_gasPrice: {exc}") from exc

    async def get_block_timestamp(self, height: int) -> str:
        """Historical block time, single attempt (used by the backfiller)."""
        block = await self._call('eth_getBlockByNumber', [hex(height), False], max_attempts=1)
        return parse_block_timestamp(block, height)
