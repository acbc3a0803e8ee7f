#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import sys
from typing import Optional

import pyperclip
from loguru import logger
from rich.markup import escape
from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, Vertical
from textual.reactive import reactive
from textual.widgets import (
    DataTable,
    Footer,
    Header,
    Input,
    RichLog,
    Sparkline,
    Static,
)

from ompbrowser.config import (
    Settings,
    config_dir,
    debug_enabled,
    load_settings,
    save_settings,
)
from ompbrowser.engine import DirectoryEngine
from ompbrowser.errors import FetchError
from ompbrowser.events import (
    PingHistoryChanged,
    PlayersChanged,
    ProgressChanged,
    RowChanged,
    RulesChanged,
    SelectionCleared,
    StatusChanged,
    ViewChanged,
    ViewEvent,
)
from ompbrowser.models import ServerRecord
from ompbrowser.pipeline import (
    SERVER_VERSION_037,
    SERVER_VERSION_03DL,
    SERVER_VERSION_OPENMP,
    version_tag,
)
from ompbrowser.probe import ProbeClient, SampQueryProbe

# Configure logging (disabled by default, see main())
logger.remove()

COLUMNS = (
    ("Name", "name"),
    ("Address", "address"),
    ("Players", "players"),
    ("Ping", "ping"),
    ("Password", "password"),
)


def format_name(record: ServerRecord) -> Text:
    if record.name:
        return Text(record.name)
    if record.loading:
        return Text("(loading...)", style="dim")
    return Text("(unnamed)", style="dim")


def format_ping(record: ServerRecord) -> Text:
    ping_ms = record.ping_ms
    if ping_ms <= 0:
        return Text("-", style="dim")
    if ping_ms < 100:
        style = "green"
    elif ping_ms < 300:
        style = "yellow"
    else:
        style = "red"
    return Text(f"{ping_ms}ms", style=style)


def format_row(record: ServerRecord) -> tuple[Text, ...]:
    """Table cells; server-supplied text is never parsed as markup."""
    return (
        format_name(record),
        Text(record.address),
        Text(f"{record.players}/{record.max_players}"),
        format_ping(record),
        Text("Yes", style="red") if record.passworded else Text("No", style="dim"),
    )


class StatsWidget(Static):
    """Display directory statistics."""

    total = reactive(0)
    updated = reactive(0)
    skipped = reactive(0)
    failed = reactive(0)
    visible = reactive(0)
    sort_label = reactive("")
    filter_text = reactive("No filters active")

    def render(self) -> str:
        sort_text = self.sort_label or "none"
        return f"""[b cyan]open.mp Server Browser[/b cyan]

[yellow]Servers:[/yellow] {self.total:,}  [yellow]Shown:[/yellow] {self.visible:,}
[green]Updated:[/green] {self.updated}  [white]Skipped:[/white] {self.skipped}  [red]Failed:[/red] {self.failed}
[yellow]Sort:[/yellow] {sort_text}  [dim]{self.filter_text}[/dim]
"""


class CustomProgressBar(Static):
    """Refresh progress as a ▓▒ bar with a counter."""

    progress = reactive(0)
    total = reactive(0)
    bar_width = 40

    def render(self) -> str:
        if self.total <= 0:
            fraction = 0.0
        else:
            fraction = min(1.0, self.progress / self.total)
        filled = int(fraction * self.bar_width)
        return (
            f"[green]{'▓' * filled}[/green][dim]{'▒' * (self.bar_width - filled)}[/dim]"
            f" [cyan]{self.progress}/{self.total}[/cyan]"
        )

    def update_progress(self, progress: int, total: int) -> None:
        self.progress = progress
        self.total = total


class ServerBrowserTUI(App):
    """open.mp / SA-MP server browser with Textual TUI."""

    ENABLE_COMMAND_PALETTE = False

    CSS = """
    Screen {
        background: #0d1117;
    }

    Header {
        background: #161b22;
        color: #58a6ff;
    }

    Footer {
        background: #161b22;
        color: #8b949e;
    }

    #stats {
        width: 100%;
        height: auto;
        border: solid #238636;
        background: #161b22;
        padding: 0 1;
        margin: 0 1;
        color: #c9d1d9;
    }

    #progress-container {
        width: 100%;
        height: 3;
        margin: 0 1;
        border: solid #30363d;
        background: #161b22;
        padding: 0 1;
    }

    #progress-bar {
        width: 100%;
        height: 1;
        content-align: center middle;
    }

    #status-line {
        width: 100%;
        height: 1;
        padding: 0 2;
        color: #8b949e;
    }

    Input {
        background: #21262d;
        border: solid #30363d;
        color: #c9d1d9;
        height: 3;
        margin: 0 1;
    }

    Input:focus {
        border: solid #58a6ff;
    }

    #main-content {
        width: 100%;
        height: 1fr;
    }

    #results {
        width: 65%;
        height: 100%;
        border: solid #58a6ff;
        background: #161b22;
        margin: 0 1;
    }

    #details {
        width: 35%;
        height: 100%;
        margin: 0 1 0 0;
    }

    #server-info {
        height: auto;
        border: solid #30363d;
        background: #161b22;
        padding: 0 1;
        color: #c9d1d9;
    }

    #ping-graph {
        height: 5;
        border: solid #238636;
        background: #161b22;
        padding: 0 1;
    }

    Sparkline > .sparkline--max-color {
        color: #f85149;
    }

    Sparkline > .sparkline--min-color {
        color: #3fb950;
    }

    #players {
        height: 1fr;
        border: solid #d29922;
        background: #161b22;
        padding: 0 1;
        color: #c9d1d9;
        overflow-y: auto;
    }

    #rules {
        height: 1fr;
        border: solid #8957e5;
        background: #161b22;
    }

    #logs {
        width: 100%;
        height: 8;
        border: solid #d29922;
        background: #161b22;
        margin: 0 1;
    }

    DataTable {
        height: 100%;
        background: #161b22;
    }

    DataTable > .datatable--header {
        background: #21262d;
        color: #58a6ff;
        text-style: bold;
    }

    DataTable > .datatable--cursor {
        background: #30363d;
        color: #c9d1d9;
    }

    DataTable > .datatable--hover {
        background: #21262d;
    }

    RichLog {
        height: 100%;
        background: #161b22;
        color: #c9d1d9;
    }
    """

    BINDINGS = [
        ("r", "refresh", "Refresh"),
        ("s", "cycle_sort", "Sort"),
        ("slash", "focus_search", "Search"),
        ("1", f"toggle_filter('{SERVER_VERSION_037}')", SERVER_VERSION_037),
        ("2", f"toggle_filter('{SERVER_VERSION_03DL}')", SERVER_VERSION_03DL),
        ("3", f"toggle_filter('{SERVER_VERSION_OPENMP}')", SERVER_VERSION_OPENMP),
        ("t", "test_master", "Test master"),
        ("c", "copy_address", "Copy"),
        ("q", "quit", "Quit"),
    ]

    def __init__(
        self,
        settings: Optional[Settings] = None,
        probe: Optional[ProbeClient] = None,
    ):
        super().__init__()
        self.settings = settings or load_settings()
        self._own_probe: Optional[SampQueryProbe] = None
        if probe is None:
            # one thread per pool worker plus one for the selection poller
            probe = self._own_probe = SampQueryProbe(
                max_workers=self.settings.concurrency + 1
            )
        self.engine = DirectoryEngine(self.settings, probe, self)

    def compose(self) -> ComposeResult:
        """Create child widgets."""
        yield Header(show_clock=False)
        yield StatsWidget(id="stats")
        with Container(id="progress-container"):
            yield CustomProgressBar(id="progress-bar")
        yield Static("", id="status-line")
        yield Input(
            placeholder="Search by name or address (press / to focus)",
            id="input-search",
            value=self.settings.last_search,
        )
        with Horizontal(id="main-content"):
            with Container(id="results"):
                yield DataTable(id="results-table")
            with Vertical(id="details"):
                yield Static("[dim]No server selected[/dim]", id="server-info")
                with Container(id="ping-graph"):
                    yield Sparkline([], summary_function=max, id="ping-sparkline")
                yield Static("", id="players")
                with Container(id="rules"):
                    yield DataTable(id="rules-table")
        with Container(id="logs"):
            yield RichLog(id="log-display", highlight=True, markup=True)
        yield Footer()

    def on_mount(self) -> None:
        """Initialize when app is mounted."""
        table = self.query_one("#results-table", DataTable)
        for label, key in COLUMNS:
            table.add_column(label, key=key)
        table.cursor_type = "row"
        table.focus()

        rules_table = self.query_one("#rules-table", DataTable)
        rules_table.add_columns("Rule", "Value")
        rules_table.cursor_type = "none"

        self.run_worker(self.engine.start(), exclusive=True, group="engine")

    # Engine events

    def handle_engine_event(self, event: ViewEvent) -> None:
        """Apply one engine event to the widgets."""
        try:
            if isinstance(event, StatusChanged):
                self.query_one("#status-line", Static).update(event.text)
                self._log(event.text)
            elif isinstance(event, ProgressChanged):
                self._show_progress(event)
            elif isinstance(event, ViewChanged):
                self._rebuild_table(event)
            elif isinstance(event, RowChanged):
                self._update_table_row(event.index, event.record)
            elif isinstance(event, PingHistoryChanged):
                self.query_one("#ping-sparkline", Sparkline).data = list(event.samples)
                self._show_server_info()
            elif isinstance(event, PlayersChanged):
                self._show_players(event)
            elif isinstance(event, RulesChanged):
                self._show_rules(event.rules)
            elif isinstance(event, SelectionCleared):
                self._clear_details()
        except Exception as e:
            # Widgets are gone during shutdown
            logger.debug(f"Could not apply {type(event).__name__}: {e}")

    def _show_progress(self, event: ProgressChanged) -> None:
        stats = self.query_one("#stats", StatsWidget)
        stats.total = event.total
        stats.updated = event.completed
        stats.skipped = event.skipped
        stats.failed = event.failed
        done = event.completed + event.skipped + event.failed
        self.query_one("#progress-bar", CustomProgressBar).update_progress(
            done, event.total
        )

    def _rebuild_table(self, event: ViewChanged) -> None:
        """Rebuild the server table from the engine's visible list."""
        table = self.query_one("#results-table", DataTable)
        table.clear()
        for record in event.rows:
            table.add_row(*format_row(record), key=record.address)

        stats = self.query_one("#stats", StatsWidget)
        stats.total = len(self.engine.records)
        stats.visible = len(event.rows)
        stats.sort_label = event.sort_mode.label
        stats.filter_text = event.filter_text

        selected = self.engine.selected
        if selected is None:
            return
        for index, record in enumerate(event.rows):
            if record.key == selected.key:
                table.move_cursor(row=index, animate=False)
                break

    def _update_table_row(self, index: int, record: ServerRecord) -> None:
        table = self.query_one("#results-table", DataTable)
        if index >= table.row_count:
            return
        for (_, column), value in zip(COLUMNS, format_row(record)):
            table.update_cell(record.address, column, value)

    def _show_server_info(self) -> None:
        record = self.engine.selected
        if record is None:
            return
        history = self.engine.ping_history
        last_ping = f"{history[-1]}ms" if history else "-"
        version = version_tag(record) or "unknown"
        name = format_name(record)
        name.stylize("bold")
        info = Text.assemble(
            name,
            (" (password)", "red") if record.passworded else "",
            "\n",
            (record.address, "cyan"),
            "  ",
            ("Version:", "yellow"),
            f" {version}\n",
            ("Ping:", "yellow"),
            f" {last_ping}  ",
            ("Players:", "yellow"),
            f" {record.players}/{record.max_players}",
        )
        self.query_one("#server-info", Static).update(info)

    def _show_players(self, event: PlayersChanged) -> None:
        lines = [f"[b]Players ({event.count})[/b]"]
        if event.names:
            lines.extend(escape(name) for name in event.names)
        elif event.count:
            lines.append("[dim]Player list unavailable[/dim]")
        else:
            lines.append("[dim]No players online[/dim]")
        self.query_one("#players", Static).update("\n".join(lines))

    def _show_rules(self, rules: dict[str, str]) -> None:
        table = self.query_one("#rules-table", DataTable)
        table.clear()
        for name in sorted(rules):
            table.add_row(Text(name), Text(rules[name]))

    def _clear_details(self) -> None:
        self.query_one("#server-info", Static).update("[dim]No server selected[/dim]")
        self.query_one("#ping-sparkline", Sparkline).data = []
        self.query_one("#players", Static).update("")
        self.query_one("#rules-table", DataTable).clear()

    # Widget events

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        """Moving the cursor selects the server for live polling."""
        if event.data_table.id != "results-table":
            return
        # Ignore highlights left over from a table rebuild
        if event.cursor_row != event.data_table.cursor_row:
            return
        self.engine.select(event.cursor_row)
        self._show_server_info()

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        """Enter on a row copies its address to the clipboard."""
        if event.data_table.id != "results-table":
            return
        self.action_copy_address()

    def on_input_changed(self, event: Input.Changed) -> None:
        if event.input.id == "input-search":
            self.engine.set_search(event.value)

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "input-search":
            return
        self.settings.last_search = event.value.strip()
        save_settings(self.settings)
        self.query_one("#results-table", DataTable).focus()

    # Actions

    def action_refresh(self) -> None:
        if not self.engine.refresh(force_refresh=True):
            self.notify("Refresh already in progress", severity="warning", timeout=2)

    def action_cycle_sort(self) -> None:
        mode = self.engine.cycle_sort()
        self._log(f"[cyan]Sort:[/cyan] {mode.label or 'none'}")

    def action_focus_search(self) -> None:
        self.query_one("#input-search", Input).focus()

    def action_toggle_filter(self, tag: str) -> None:
        active = self.engine.toggle_filter(tag)
        state = "on" if active else "off"
        self._log(f"[cyan]Filter {tag}:[/cyan] {state}")

    def action_copy_address(self) -> None:
        record = self.engine.selected
        if record is None:
            self.notify("No server selected", severity="warning", timeout=2)
            return
        try:
            pyperclip.copy(record.address)
            self.notify(f"{record.address} copied!", severity="information", timeout=2)
        except pyperclip.PyperclipException as e:
            logger.debug(f"Clipboard unavailable: {e}")
            self.notify(f"Clipboard unavailable: {e}", severity="error", timeout=3)

    def action_test_master(self) -> None:
        self.run_worker(self._test_master(), exclusive=True, group="test-master")

    async def _test_master(self) -> None:
        url = self.settings.master_server
        self._log(f"[cyan]Testing master server[/cyan] {url}")
        try:
            count = await self.engine.fetcher.test_master(url)
        except FetchError as e:
            self._log(f"[red]Master server test failed:[/red] {e}")
            self.notify(f"Master server test failed: {e}", severity="error")
            return
        self._log(f"[green]Master server OK:[/green] {count} servers")
        self.notify(f"Master server OK: {count} servers", severity="information")

    async def action_quit(self) -> None:
        """Stop the engine and exit."""
        await self.engine.stop()
        if self._own_probe is not None:
            self._own_probe.close()
        self.exit()

    def _log(self, message: str) -> None:
        """Add message to log display."""
        try:
            log_widget = self.query_one("#log-display", RichLog)
            log_widget.write(message)
        except Exception as e:
            logger.debug(f"Log widget not available: {e}")


def main():
    """Main entry point."""
    try:
        if debug_enabled():
            log_dir = config_dir() / "logs"
            log_dir.mkdir(parents=True, exist_ok=True)
            logger.add(
                log_dir / "omp-browser_{time}.log",
                rotation="50 MB",
                compression="zip",
                level="DEBUG",
            )

        logger.info("omp-browser starting")

        app = ServerBrowserTUI()
        app.run()

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
