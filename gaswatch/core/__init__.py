"""Core module - record store, buffering, backfill, metrics, query, config, logging."""
from .batcher import WriteBackBatcher
from .buffer import RecentWindowBuffer
from .config import ConfigurationError, load_config
from .database import RecordStore
from .errors import (
    GasWatchError, IncompleteResponse, InvalidQuery, PersistenceFailure,
    StartupFailure, UpstreamUnavailable,
)
from .logger import get_logger, setup_logger
from .metrics import MetricsTracker
from .models import CONFIDENCE_LEVELS, BlockRecord, MetricsSnapshot

__all__ = [
    'WriteBackBatcher', 'RecentWindowBuffer', 'ConfigurationError', 'load_config',
    'RecordStore', 'GasWatchError', 'IncompleteResponse', 'InvalidQuery',
    'PersistenceFailure', 'StartupFailure', 'UpstreamUnavailable', 'get_logger',
    'setup_logger', 'MetricsTracker', 'CONFIDENCE_LEVELS', 'BlockRecord', 'MetricsSnapshot',
]
