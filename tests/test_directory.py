import httpx
import orjson
import pytest

from ompbrowser.directory import DirectoryFetcher
from ompbrowser.errors import (
    DirectoryUnavailable,
    EmptyDirectory,
    TransportFailure,
)

from conftest import directory_client

URL = "https://directory.test/servers"

ENTRIES = [
    {"ip": "1.2.3.4:7777", "hn": "Alpha", "pc": 10, "pm": 100, "pa": False},
    {"ip": "5.6.7.8", "hn": "Beta", "pc": 0, "pm": 50, "pa": True, "gm": "DM"},
    {"hn": "no address"},
    {"ip": "bad:port:entry"},
    {"ip": "1.2.3.4:7777", "hn": "Alpha duplicate"},
]


@pytest.mark.asyncio
async def test_fetch_decodes_entries():
    fetcher = DirectoryFetcher(client=directory_client(ENTRIES))
    records = await fetcher.fetch(URL)

    assert [r.key for r in records] == [("1.2.3.4", 7777), ("5.6.7.8", 7777)]
    alpha, beta = records
    assert alpha.name == "Alpha"
    assert (alpha.players, alpha.max_players) == (10, 100)
    assert beta.passworded is True
    assert all(r.loading and r.last_updated is None and r.ping == 0 for r in records)


@pytest.mark.asyncio
async def test_fetch_rejects_bad_status():
    fetcher = DirectoryFetcher(client=directory_client(ENTRIES, status_code=503))
    with pytest.raises(TransportFailure, match="503"):
        await fetcher.fetch(URL)


@pytest.mark.asyncio
async def test_fetch_rejects_non_json():
    def handler(request):
        return httpx.Response(200, content=b"<html>")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(TransportFailure):
        await DirectoryFetcher(client=client).fetch(URL)


@pytest.mark.asyncio
async def test_fetch_network_error_is_transport_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(TransportFailure):
        await DirectoryFetcher(client=client).fetch(URL)


@pytest.mark.asyncio
async def test_fetch_empty_directory():
    fetcher = DirectoryFetcher(client=directory_client([]))
    with pytest.raises(EmptyDirectory):
        await fetcher.fetch(URL)


@pytest.mark.asyncio
async def test_empty_url_is_rejected():
    with pytest.raises(TransportFailure):
        await DirectoryFetcher(client=directory_client(ENTRIES)).fetch("")


@pytest.mark.asyncio
async def test_fallback_used_when_remote_fails(tmp_path):
    fallback = tmp_path / "servers.json"
    fallback.write_bytes(
        orjson.dumps(
            [
                {"name": "Local", "host": "127.0.0.1", "port": 7777},
                {"name": "Default port", "host": "10.0.0.2"},
            ]
        )
    )
    fetcher = DirectoryFetcher(
        fallback_path=fallback, client=directory_client([], status_code=500)
    )

    records = await fetcher.fetch_with_fallback(URL)

    assert [r.key for r in records] == [("127.0.0.1", 7777), ("10.0.0.2", 7777)]
    assert records[0].name == "Local"
    assert all(r.loading for r in records)


@pytest.mark.asyncio
async def test_both_sources_failing_reports_remote_error(tmp_path):
    fetcher = DirectoryFetcher(
        fallback_path=tmp_path / "missing.json",
        client=directory_client([], status_code=500),
    )

    with pytest.raises(DirectoryUnavailable) as info:
        await fetcher.fetch_with_fallback(URL)

    assert isinstance(info.value.cause, TransportFailure)
    assert "500" in str(info.value)


@pytest.mark.asyncio
async def test_master_reports_size():
    fetcher = DirectoryFetcher(client=directory_client(ENTRIES))
    assert await fetcher.test_master(URL) == len(ENTRIES)


@pytest.mark.asyncio
async def test_master_rejects_entries_without_ip():
    fetcher = DirectoryFetcher(client=directory_client([{"hn": "x"}]))
    with pytest.raises(TransportFailure, match="ip"):
        await fetcher.test_master(URL)

    fetcher = DirectoryFetcher(client=directory_client([]))
    with pytest.raises(EmptyDirectory):
        await fetcher.test_master(URL)


@pytest.mark.asyncio
async def test_non_ascii_digit_port_drops_only_that_entry():
    entries = [{"ip": "1.2.3.4:²", "hn": "Superscript"}, ENTRIES[0]]
    fetcher = DirectoryFetcher(client=directory_client(entries))

    records = await fetcher.fetch(URL)

    assert [r.key for r in records] == [("1.2.3.4", 7777)]


def test_fallback_entries_with_bad_ports_are_dropped(tmp_path):
    fallback = tmp_path / "servers.json"
    fallback.write_bytes(
        orjson.dumps(
            [
                {"name": "Zero", "host": "10.0.0.1", "port": 0},
                {"name": "Negative", "host": "10.0.0.2", "port": -5},
                {"name": "Too big", "host": "10.0.0.3", "port": 70000},
                {"name": "Word", "host": "10.0.0.4", "port": "abc"},
                {"name": "Text port", "host": "10.0.0.5", "port": "7778"},
                {"name": "Good", "host": "10.0.0.6", "port": 7779},
            ]
        )
    )

    records = DirectoryFetcher(fallback_path=fallback).load_fallback()

    assert [r.key for r in records] == [("10.0.0.5", 7778), ("10.0.0.6", 7779)]


def test_fallback_with_only_bad_ports_is_unusable(tmp_path):
    fallback = tmp_path / "servers.json"
    fallback.write_bytes(orjson.dumps([{"host": "10.0.0.1", "port": 0}]))

    with pytest.raises(ValueError):
        DirectoryFetcher(fallback_path=fallback).load_fallback()
