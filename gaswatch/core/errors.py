"""
GasWatch Error Taxonomy
=======================

Every failure the ingestion and query paths know how to handle derives from
:class:`GasWatchError`.  Only :class:`StartupFailure` is fatal.
"""


class GasWatchError(Exception):
    """Base class for GasWatch errors."""


class UpstreamUnavailable(GasWatchError):
    """A feed request timed out or errored after all retries."""


class IncompleteResponse(GasWatchError):
    """A feed returned a well-formed payload that is missing data."""


class PersistenceFailure(GasWatchError):
    """A Record Store write failed; the caller keeps its data for retry."""


class InvalidQuery(GasWatchError, ValueError):
    """A client supplied an unrecognised timeframe or confidence level."""


class StartupFailure(GasWatchError):
    """The persistent store could not be opened or initialised."""
