"""
GasWatch Query API
==================

Lightweight aiohttp server exposing the read side of the process.

Routes
------
GET /api/chart-data?range=<1h|6h|12h|24h|72h|7d>[&confidence=<50|70|90|99>]
    Predicted and actual series plus a metrics snapshot.  Unknown
    ``range`` or ``confidence`` values get a 400; there is no default range.
GET /api/metrics
    Metrics snapshot.
GET /api/status
    Buffer, batcher, backfill, scheduler and store statistics.
"""

import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web

from ..core.errors import InvalidQuery
from ..core.logger import uptime
from ..core.metrics import MetricsTracker
from ..core.query import RangeQuery

logger = logging.getLogger('gaswatch.dashboard')

StatusCallback = Callable[[], Awaitable[Dict[str, Any]]]


def _ensure_json_safe(payload: Dict[str, Any]) -> Dict[str, Any]:
    try:
        json.dumps(payload)
        return payload
    except TypeError:
        return json.loads(json.dumps(payload, default=str))


class GasWatchWebServer:
    """Serves range queries over HTTP."""

    def __init__(
        self,
        range_query: RangeQuery,
        metrics: MetricsTracker,
        host: str = '127.0.0.1',
        port: int = 3303,
        get_status: Optional[StatusCallback] = None,
    ):
        self.host = host
        self.port = port
        self._range_query = range_query
        self._metrics = metrics
        self._get_status = get_status
        self._runner: Optional[web.AppRunner] = None

        self.app = web.Application()
        self.app.router.add_get('/api/chart-data', self._handle_chart_data)
        self.app.router.add_get('/api/metrics', self._handle_metrics)
        self.app.router.add_get('/api/status', self._handle_status)

    async def start(self):
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"Query API running at http://{self.host}:{self.port}")

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _handle_chart_data(self, request):
        start = time.perf_counter()
        status_code = 200
        timeframe = request.query.get('range')
        try:
            result = await self._range_query.query(
                timeframe, request.query.get('confidence', '99'),
            )
            payload = result.to_dict()
        except InvalidQuery as e:
            status_code = 400
            payload = {'error': str(e)}
        except Exception as e:
            # Internal failures still produce a well-formed, empty body
            logger.error(f"/api/chart-data error: {e}", exc_info=True)
            payload = {
                'range': timeframe,
                'predicted': [],
                'actual': [],
                'metrics': self._metrics.snapshot().to_dict(),
            }
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.debug(f"/api/chart-data range={timeframe} {status_code} in {duration_ms:.1f}ms")

        return web.json_response(payload, status=status_code)

    async def _handle_metrics(self, request):
        return web.json_response(self._metrics.snapshot().to_dict())

    async def _handle_status(self, request):
        result: Dict[str, Any] = {'uptime': uptime()}
        if self._get_status:
            try:
                result.update(await self._get_status())
            except Exception as e:
                logger.error(f"/api/status error: {e}")
                result['error'] = str(e)
        return web.json_response(_ensure_json_safe(result))
