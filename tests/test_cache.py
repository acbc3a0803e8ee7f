from datetime import timedelta

import orjson
import pytest

from ompbrowser.cache import ResultCache, merge_stale
from ompbrowser.errors import CacheIOFailure
from ompbrowser.models import ServerRecord

from conftest import NOW


def make_cache(path, saved_at):
    return ResultCache(path, ttl=timedelta(hours=1), clock=lambda: saved_at)


def test_merge_carries_probe_results_forward():
    previous = ServerRecord(
        host="1.2.3.4",
        port=7777,
        name="old name",
        ping=0.042,
        rules={"a": "b"},
        last_updated=NOW,
    )
    fresh = [
        ServerRecord(host="1.2.3.4", port=7777, name="new name"),
        ServerRecord(host="5.6.7.8", port=7777),
    ]

    merged = merge_stale(fresh, [previous])

    assert merged[0].ping == 0.042
    assert merged[0].rules == {"a": "b"}
    assert merged[0].last_updated == NOW
    assert merged[0].name == "new name"
    assert merged[1].last_updated is None
    assert all(r.loading for r in merged)


def test_merge_matches_on_port_too():
    previous = ServerRecord(host="1.2.3.4", port=7778, ping=0.042)
    fresh = [ServerRecord(host="1.2.3.4", port=7777)]
    merge_stale(fresh, [previous])
    assert fresh[0].ping == 0.0


def test_cache_expires_after_ttl(tmp_path):
    path = tmp_path / "cache.json"
    make_cache(path, NOW - timedelta(minutes=61)).save([ServerRecord("1.1.1.1", 7777)])
    assert make_cache(path, NOW).load() is None
    assert path.exists()


def test_cache_intact_within_ttl(tmp_path):
    path = tmp_path / "cache.json"
    saved = [
        ServerRecord(
            "1.1.1.1",
            7777,
            name="Alpha",
            players=3,
            max_players=100,
            ping=0.031,
            rules={"version": "omp 1.2"},
            last_updated=NOW - timedelta(minutes=59),
        )
    ]
    make_cache(path, NOW - timedelta(minutes=59)).save(saved)

    loaded = make_cache(path, NOW).load()
    assert loaded == saved


def test_loading_flag_is_not_persisted(tmp_path):
    path = tmp_path / "cache.json"
    make_cache(path, NOW).save([ServerRecord("1.1.1.1", 7777, loading=True)])
    envelope = orjson.loads(path.read_bytes())
    assert "loading" not in envelope["servers"][0]
    assert envelope["updated_at"] == "2026-01-01T12:00:00Z"
    assert make_cache(path, NOW).load()[0].loading is False


def test_missing_or_corrupt_cache_is_absent(tmp_path):
    path = tmp_path / "cache.json"
    assert make_cache(path, NOW).load() is None
    path.write_text("{not json")
    assert make_cache(path, NOW).load() is None
    path.write_bytes(orjson.dumps({"servers": "nope"}))
    assert make_cache(path, NOW).load() is None


def test_save_failure_raises(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    cache = make_cache(blocker / "cache.json", NOW)
    with pytest.raises(CacheIOFailure):
        cache.save([ServerRecord("1.1.1.1", 7777)])
