"""
Unit tests for the PositionSnapshotCache.

Tests:
1. Round-trip across process restart (reload from disk)
2. Full refresh marks vanished positions closed
3. Partial-close history and closed flag
4. Corrupt file handling
"""

import json
import pytest

from conftest import make_perp, make_spot
from position_guard.position import Domain, PositionSnapshotCache


@pytest.fixture
def cache_file(tmp_path):
    return tmp_path / "cache" / "positions.json"


def test_round_trip_across_reload(cache_file):
    cache = PositionSnapshotCache(str(cache_file))
    cache.update(Domain.PERPS, [make_perp("pos-1"), make_perp("pos-2", symbol="ETH-PERP")])
    cache.record_partial_close(Domain.PERPS, "pos-1", 0.25, 25.0, -4.0)

    reloaded = PositionSnapshotCache(str(cache_file))

    positions = {p.id: p for p in reloaded.get(Domain.PERPS)}
    assert set(positions) == {"pos-1", "pos-2"}
    assert positions["pos-2"].target == "ETH-PERP"
    assert positions["pos-1"].current_value_usd == pytest.approx(75.0)
    assert positions["pos-1"].size == pytest.approx(75.0)

    history = reloaded.get_entry(Domain.PERPS, "pos-1").partial_history
    assert len(history) == 1
    assert history[0].proportion == 0.25
    assert history[0].realized_value_usd == 25.0
    assert history[0].realized_pnl_usd == -4.0


def test_document_layout(cache_file):
    cache = PositionSnapshotCache(str(cache_file))
    cache.update(Domain.SPOT, [make_spot("spot-1")])

    document = json.loads(cache_file.read_text())

    entry = document["spot"]["spot-1"]
    assert set(entry) == {"position", "partial_history", "closed", "updated_at"}
    assert entry["closed"] is False
    assert list(cache_file.parent.glob("*.tmp")) == []


def test_refresh_marks_missing_positions_closed(cache_file):
    cache = PositionSnapshotCache(str(cache_file))
    cache.update(Domain.PERPS, [make_perp("pos-1"), make_perp("pos-2")])
    cache.record_partial_close(Domain.PERPS, "pos-1", 0.5, 50.0, 0.0)

    cache.update(Domain.PERPS, [make_perp("pos-1")])

    assert [p.id for p in cache.get(Domain.PERPS)] == ["pos-1"]
    assert cache.get_entry(Domain.PERPS, "pos-2").closed is True
    assert len(cache.get(Domain.PERPS, include_closed=True)) == 2
    # History survives a refresh
    assert len(cache.get_entry(Domain.PERPS, "pos-1").partial_history) == 1


def test_mark_closed_and_find(cache_file):
    cache = PositionSnapshotCache(str(cache_file))
    cache.update(Domain.SPOT, [make_spot("spot-1", "SOL"), make_spot("spot-2", "JUP")])

    cache.mark_closed(Domain.SPOT, "spot-1", final_value_usd=900.0, realized_pnl=-100.0)

    entry = cache.get_entry(Domain.SPOT, "spot-1")
    assert entry.closed is True
    assert entry.position.realized_pnl == -100.0
    assert entry.position.closed_at is not None

    assert cache.find(Domain.SPOT, lambda p: p.target == "JUP").id == "spot-2"
    assert cache.find(Domain.SPOT, lambda p: p.target == "SOL") is None
    assert cache.mark_closed(Domain.SPOT, "unknown") is None
    assert cache.record_partial_close(Domain.SPOT, "unknown", 0.5, 1.0, 0.0) is None


def test_corrupt_file_starts_empty(cache_file):
    cache_file.parent.mkdir(parents=True)
    cache_file.write_text("{not json")

    cache = PositionSnapshotCache(str(cache_file))

    assert len(cache) == 0
    cache.update(Domain.SPOT, [make_spot()])
    assert len(PositionSnapshotCache(str(cache_file))) == 1


def test_track_adds_unknown_position_once(cache_file):
    cache = PositionSnapshotCache(str(cache_file))
    position = make_spot("spot-1")

    cache.track(position)
    cache.record_partial_close(Domain.SPOT, "spot-1", 0.5, 500.0, 0.0)
    cache.track(make_spot("spot-1", entry_value=2000.0))

    entry = PositionSnapshotCache(str(cache_file)).get_entry(Domain.SPOT, "spot-1")
    assert entry.position.current_value_usd == pytest.approx(500.0)
    assert len(entry.partial_history) == 1
