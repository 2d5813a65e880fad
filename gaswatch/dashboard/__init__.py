"""HTTP query API."""
from .web import GasWatchWebServer

__all__ = ['GasWatchWebServer']
