"""
Tests for the Recent Window Buffer.

Run with:  python -m pytest tests/test_recent_buffer.py -v
"""

from gaswatch.core.buffer import RecentWindowBuffer
from gaswatch.core.models import BlockRecord


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _buffer(window: float = 30.0):
    clock = FakeClock()
    return RecentWindowBuffer(window_seconds=window, clock=clock), clock


class TestPut:

    def test_put_merges_partials_for_same_height(self):
        buf, _ = _buffer()
        buf.put(BlockRecord(height=500, observed_at="2024-05-01T00:00:00.000Z", confidence_99=120.5))
        merged = buf.put(BlockRecord(height=500, actual_price=118.0))

        assert len(buf) == 1
        assert merged.confidence_99 == 120.5
        assert merged.actual_price == 118.0
        assert buf.get(500) == merged

    def test_recent_is_height_ordered(self):
        buf, _ = _buffer()
        for h in (7, 3, 5):
            buf.put(BlockRecord(height=h))
        assert [r.height for r in buf.recent()] == [3, 5, 7]

    def test_get_unknown_height(self):
        buf, _ = _buffer()
        assert buf.get(1) is None
        assert 1 not in buf


class TestEviction:

    def test_evict_drops_only_stale_entries(self):
        buf, clock = _buffer(window=30.0)
        buf.put(BlockRecord(height=1))
        clock.now += 20
        buf.put(BlockRecord(height=2))
        clock.now += 15

        assert buf.evict() == 1
        assert 1 not in buf
        assert 2 in buf
        assert buf.stats()['evicted_total'] == 1

    def test_merge_refreshes_entry_age(self):
        buf, clock = _buffer(window=30.0)
        buf.put(BlockRecord(height=1, confidence_50=1.0))
        clock.now += 25
        buf.put(BlockRecord(height=1, actual_price=2.0))
        clock.now += 10

        assert buf.evict() == 0
        assert buf.get(1).confidence_50 == 1.0

    def test_recent_respects_window_before_eviction(self):
        buf, clock = _buffer(window=30.0)
        buf.put(BlockRecord(height=1))
        clock.now += 40
        buf.put(BlockRecord(height=2))

        assert [r.height for r in buf.recent()] == [2]
        assert [r.height for r in buf.recent(window_seconds=60)] == [1, 2]

    def test_size_bounded_by_window_not_rate(self):
        buf, clock = _buffer(window=10.0)
        for h in range(1, 1001):
            buf.put(BlockRecord(height=h))
            clock.now += 0.1
            if h % 50 == 0:
                buf.evict()
        # 10 s window at 10 blocks/s, plus at most one eviction interval of slack
        assert len(buf) <= 150


def test_stats_empty_and_populated():
    buf, _ = _buffer()
    assert buf.stats()['buffer_size'] == 0
    assert buf.stats()['oldest_height'] is None

    buf.put(BlockRecord(height=4))
    buf.put(BlockRecord(height=9))
    stats = buf.stats()
    assert stats['buffer_size'] == 2
    assert stats['oldest_height'] == 4
    assert stats['newest_height'] == 9
