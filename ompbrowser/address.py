"""Parsing and formatting of ``host[:port]`` server addresses."""

from __future__ import annotations

from ompbrowser.errors import InvalidAddress

DEFAULT_PORT = 7777


def parse_port(text: str) -> int:
    """Decimal port in 1..65535; anything else raises :class:`InvalidAddress`."""
    text = text.strip()
    if not (text.isascii() and text.isdigit()):
        raise InvalidAddress(f"invalid port: {text!r}")
    port = int(text)
    if port < 1 or port > 65535:
        raise InvalidAddress("port must be between 1 and 65535")
    return port


def parse_address(text: str) -> tuple[str, int]:
    """Split ``text`` into ``(host, port)``.

    The port defaults to 7777. IPv6 hosts must be bracketed
    (``[::1]`` or ``[::1]:7777``).

    Raises:
        InvalidAddress: empty host, stray colons, or a bad port.
    """
    value = (text or "").strip()
    if not value:
        raise InvalidAddress("host cannot be empty")

    if value.startswith("["):
        end = value.find("]")
        if end == -1:
            raise InvalidAddress(f"unterminated IPv6 host: {value!r}")
        host = value[1:end].strip()
        rest = value[end + 1 :]
        if not host:
            raise InvalidAddress("host cannot be empty")
        if not rest:
            return host, DEFAULT_PORT
        if not rest.startswith(":"):
            raise InvalidAddress(f"invalid address format: {value!r}")
        return host, parse_port(rest[1:])

    if value.count(":") > 1:
        raise InvalidAddress(
            "invalid address format. Expected 'host:port' or 'host' "
            "(e.g., '127.0.0.1:7777' or '127.0.0.1')"
        )

    host, sep, port_text = value.rpartition(":")
    if not sep:
        return value, DEFAULT_PORT
    host = host.strip()
    if not host:
        raise InvalidAddress("host cannot be empty")
    return host, parse_port(port_text)


def format_address(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"
