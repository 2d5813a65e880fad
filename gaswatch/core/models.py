"""
GasWatch Data Model
===================

``BlockRecord`` is the canonical entity, one per block height.  Both feeds
produce *partial* records (the predictive feed fills the confidence columns
and base fee, the chain feed fills ``actual_price``) which are merged field
by field wherever they meet: in the Recent Window Buffer, in the Write-Back
Batcher and in the Record Store upsert.

Merge rules
-----------
* Price fields: last non-null value wins.  A null never clears a set field.
* ``observed_at``: first non-null value wins and is never overwritten.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional, Tuple

CONFIDENCE_LEVELS: Tuple[int, ...] = (50, 70, 90, 99)

# Column order shared by every SQL statement touching gas_prices
RECORD_COLUMNS: Tuple[str, ...] = (
    "height",
    "observed_at",
    "base_fee",
    "confidence_50",
    "confidence_70",
    "confidence_90",
    "confidence_99",
    "actual_price",
)

_PRICE_FIELDS: Tuple[str, ...] = RECORD_COLUMNS[2:]


def confidence_column(level: int) -> str:
    """Column / attribute name for a confidence level."""
    if level not in CONFIDENCE_LEVELS:
        raise ValueError(f"Unknown confidence level: {level}")
    return f"confidence_{level}"


@dataclass(frozen=True)
class BlockRecord:
    """One block height, possibly only partially known."""
    height: int
    observed_at: Optional[str] = None
    base_fee: Optional[float] = None
    confidence_50: Optional[float] = None
    confidence_70: Optional[float] = None
    confidence_90: Optional[float] = None
    confidence_99: Optional[float] = None
    actual_price: Optional[float] = None

    @classmethod
    def placeholder(cls, height: int, observed_at: str) -> "BlockRecord":
        """Timestamp-only record inserted by the backfiller."""
        return cls(height=height, observed_at=observed_at)

    @classmethod
    def from_prediction(
        cls,
        height: int,
        observed_at: Optional[str],
        base_fee: Optional[float],
        prices: Mapping[int, Optional[float]],
    ) -> "BlockRecord":
        return cls(
            height=height,
            observed_at=observed_at,
            base_fee=base_fee,
            **{confidence_column(level): prices.get(level) for level in CONFIDENCE_LEVELS},
        )

    @classmethod
    def from_row(cls, row: Any) -> "BlockRecord":
        """Build from a ``gas_prices`` row (tuple or ``aiosqlite.Row``)."""
        return cls(**{name: row[i] for i, name in enumerate(RECORD_COLUMNS)})

    def to_row(self) -> Tuple[Any, ...]:
        return tuple(getattr(self, name) for name in RECORD_COLUMNS)

    def predicted(self, level: int = 99) -> Optional[float]:
        return getattr(self, confidence_column(level))

    def merge(self, newer: "BlockRecord") -> "BlockRecord":
        """Return the union of ``self`` and a later partial record for the same height."""
        if newer.height != self.height:
            raise ValueError(
                f"Cannot merge records for different heights ({self.height} != {newer.height})"
            )
        updates: Dict[str, Any] = {
            name: getattr(newer, name)
            for name in _PRICE_FIELDS
            if getattr(newer, name) is not None
        }
        if self.observed_at is None and newer.observed_at is not None:
            updates["observed_at"] = newer.observed_at
        return replace(self, **updates) if updates else self

    def is_placeholder(self) -> bool:
        return all(getattr(self, name) is None for name in _PRICE_FIELDS)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable copy of the ingestion counters."""
    missed_blocks: int = 0
    null_values: int = 0
    api_errors: int = 0
    clamped_blocks: int = 0
    last_processed_height: int = 0
    last_sync_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
