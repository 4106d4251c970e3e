import json
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

import storage.json_store as js
from core.models import Freshness, Holding, PortfolioSummary, PriceQuote
from core.valuation import value
from storage.snapshot_store import SnapshotStore


def _summary(btc_price="20000", at=None):
    holdings = {"BTC": Holding("BTC", Decimal("2"), Decimal("15000"), Decimal("30000"))}
    prices = {"BTC": PriceQuote(Decimal(btc_price), Decimal("1.2"), Freshness.LIVE)}
    return value(holdings, prices, computed_at=at or datetime(2024, 6, 1, tzinfo=timezone.utc))


def _rewrite(path, mutate):
    with open(path, "r", encoding="utf-8") as f:
        record = json.load(f)
    mutate(record)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(record, f)


@pytest.mark.asyncio
async def test_save_then_load_round_trip(tmp_path):
    store = SnapshotStore(str(tmp_path))
    s = _summary()
    assert await store.save(s) is True
    loaded = await store.load()
    assert loaded == s
    assert loaded.total_value == Decimal("40000")


@pytest.mark.asyncio
async def test_missing_snapshot_loads_none(tmp_path):
    assert await SnapshotStore(str(tmp_path)).load() is None


@pytest.mark.asyncio
async def test_garbage_file_is_ignored(tmp_path):
    store = SnapshotStore(str(tmp_path))
    with open(store.path, "w", encoding="utf-8") as f:
        f.write("{\"schema\": \"portfolio-snap")
    assert await store.load() is None


@pytest.mark.asyncio
async def test_other_schema_version_is_ignored(tmp_path):
    store = SnapshotStore(str(tmp_path))
    await store.save(_summary())
    _rewrite(store.path, lambda r: r.update(version=2))
    assert await store.load() is None


@pytest.mark.asyncio
async def test_tampered_summary_fails_checksum(tmp_path):
    store = SnapshotStore(str(tmp_path))
    await store.save(_summary())
    _rewrite(store.path, lambda r: r["summary"].update(total_value="999999"))
    assert await store.load() is None


@pytest.mark.asyncio
async def test_future_dated_record_is_rejected(tmp_path):
    store = SnapshotStore(str(tmp_path))
    await store.save(_summary())
    future = (datetime.now(timezone.utc) + timedelta(days=2)).isoformat()
    _rewrite(store.path, lambda r: r.update(saved_at=future))
    assert await SnapshotStore(str(tmp_path)).load() is None


@pytest.mark.asyncio
async def test_corrupt_primary_falls_back_to_backup(tmp_path):
    store = SnapshotStore(str(tmp_path))
    first = _summary("20000")
    await store.save(first)
    await store.save(_summary("25000"))
    with open(store.path, "w", encoding="utf-8") as f:
        f.write("truncated")
    assert await store.load() == first


@pytest.mark.asyncio
async def test_inconsistent_summary_is_not_written(tmp_path):
    store = SnapshotStore(str(tmp_path))
    good = _summary()
    bad = PortfolioSummary(
        total_value=good.total_value + 1,
        total_invested=good.total_invested,
        profit_loss=good.profit_loss + 1,
        profit_loss_percent=good.profit_loss_percent,
        asset_valuations=good.asset_valuations,
        computed_at=good.computed_at,
        price_data_freshness=good.price_data_freshness,
    )
    assert await store.save(bad) is False
    assert await store.load() is None


@pytest.mark.asyncio
async def test_saved_at_never_goes_backwards(tmp_path):
    store = SnapshotStore(str(tmp_path))
    stamps = []
    for _ in range(3):
        await store.save(_summary())
        with open(store.path, "r", encoding="utf-8") as f:
            stamps.append(json.load(f)["saved_at"])
    parsed = [datetime.fromisoformat(s) for s in stamps]
    assert parsed == sorted(parsed)
    assert len(set(parsed)) == 3


@pytest.mark.asyncio
async def test_clear_removes_both_records(tmp_path):
    store = SnapshotStore(str(tmp_path))
    await store.save(_summary("20000"))
    await store.save(_summary("21000"))
    await store.clear()
    assert await store.load() is None


@pytest.mark.asyncio
async def test_separate_keys_do_not_collide(tmp_path):
    a = SnapshotStore(str(tmp_path), key="alpha")
    b = SnapshotStore(str(tmp_path), key="beta")
    await a.save(_summary("20000"))
    assert await b.load() is None


@pytest.mark.asyncio
async def test_history_line_per_save(tmp_path):
    hist = str(tmp_path / "history.jsonl")
    store = SnapshotStore(str(tmp_path), history_path=hist)
    await store.save(_summary("20000"))
    await store.save(_summary("22000"))
    rows = js.read_last_history(10, hist)
    assert [r["total_value"] for r in rows] == ["40000", "44000"]
    assert rows[-1]["freshness"] == "live"


@pytest.mark.asyncio
async def test_history_append_runs_off_the_event_loop(tmp_path, monkeypatch):
    seen = []
    monkeypatch.setattr(js, "append_history_line",
                        lambda record, path=None: seen.append(threading.current_thread()))
    store = SnapshotStore(str(tmp_path), history_path=str(tmp_path / "history.jsonl"))

    assert await store.save(_summary()) is True
    assert len(seen) == 1
    assert seen[0] is not threading.main_thread()
