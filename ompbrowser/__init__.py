"""
omp-browser - A live server browser for open.mp and SA-MP with a terminal UI.

This package keeps a continuously refreshed directory of game servers,
queries each one over UDP for live status and shows the result in a
Terminal User Interface with live polling of the selected server.
"""

__version__ = "0.1.0"
__author__ = "xullexer"

from ompbrowser.browser_tui import main, ServerBrowserTUI
from ompbrowser.engine import DirectoryEngine

__all__ = ["main", "ServerBrowserTUI", "DirectoryEngine", "__version__"]
