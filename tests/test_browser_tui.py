import asyncio

import pytest

from ompbrowser.browser_tui import ServerBrowserTUI, format_name, format_ping, format_row
from ompbrowser.models import ServerRecord
from ompbrowser.pipeline import SortMode


def test_ping_colours():
    cases = [(0.0, "-", "dim"), (0.05, "50ms", "green"), (0.2, "200ms", "yellow")]
    cases.append((0.5, "500ms", "red"))
    for ping, text, style in cases:
        cell = format_ping(ServerRecord("h", 1, ping=ping))
        assert (cell.plain, cell.style) == (text, style)


def test_name_placeholders():
    assert format_name(ServerRecord("h", 1, name="Alpha")).plain == "Alpha"
    assert "loading" in format_name(ServerRecord("h", 1, loading=True)).plain
    assert "unnamed" in format_name(ServerRecord("h", 1)).plain


def test_server_text_is_not_markup():
    record = ServerRecord("::1", 7777, name="[RU] [b]Drift[/b]", passworded=True)
    name, address, players, ping, password = format_row(record)
    assert name.plain == "[RU] [b]Drift[/b]"
    assert name.spans == []
    assert address.plain == "[::1]:7777"
    assert password.plain == "Yes"


@pytest.mark.asyncio
async def test_bindings_drive_the_engine(settings, probe):
    # no master URL and no fallback file: the refresh fails without network
    settings.master_server = ""
    app = ServerBrowserTUI(settings=settings, probe=probe)

    async with app.run_test() as pilot:
        await pilot.press("s")
        assert app.engine.sort_mode is SortMode.PING
        await pilot.press("1")
        assert app.engine.filters == {"0.3.7"}
        await asyncio.sleep(0.1)
        await pilot.pause()
        assert not app.engine.refreshing
        await app.engine.stop()
