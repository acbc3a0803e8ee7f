"""Exception hierarchy for the directory engine."""


class BrowserError(Exception):
    """Base class for all omp-browser errors."""


class InvalidAddress(BrowserError, ValueError):
    """Malformed ``host[:port]`` input."""


class FetchError(BrowserError):
    """The server directory could not be retrieved."""


class TransportFailure(FetchError):
    """Network error, timeout, bad status or undecodable body."""


class EmptyDirectory(FetchError):
    """The directory answered but contained no usable entries."""


class DirectoryUnavailable(FetchError):
    """Both the remote directory and the local fallback failed."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class ProbeFailure(BrowserError):
    """A single server did not answer a query in time."""


class CacheIOFailure(BrowserError):
    """The result cache could not be written."""
