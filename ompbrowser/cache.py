"""Persistence of the last full probe results with a freshness horizon."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Optional

import orjson
from loguru import logger

from ompbrowser.errors import CacheIOFailure
from ompbrowser.models import (
    ServerKey,
    ServerRecord,
    format_timestamp,
    parse_timestamp,
    utcnow,
)


class ResultCache:
    """Reads and writes the ``{servers, updated_at}`` cache envelope.

    An envelope older than ``ttl`` is treated as absent; the file itself is
    left in place.
    """

    def __init__(
        self,
        path: Path,
        ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.path = Path(path)
        self.ttl = ttl
        self._clock = clock

    def load(self) -> Optional[list[ServerRecord]]:
        try:
            if not self.path.exists():
                return None
            envelope = orjson.loads(self.path.read_bytes())
            saved_at = parse_timestamp(envelope["updated_at"])
            servers = envelope["servers"]
            records = [ServerRecord.from_dict(item) for item in servers]
        except (OSError, orjson.JSONDecodeError) as e:
            logger.debug(f"Cache file unreadable, ignoring: {e}")
            return None
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Cache file malformed, ignoring: {e}")
            return None

        age = self._clock() - saved_at
        if age >= self.ttl:
            logger.debug(f"Cache is {age} old, ignoring")
            return None
        return records

    def save(self, records: Iterable[ServerRecord]) -> None:
        """Overwrite the envelope with ``records`` stamped with the current time.

        Raises:
            CacheIOFailure: the directory or file could not be written.
        """
        envelope = {
            "servers": [record.to_dict() for record in records],
            "updated_at": format_timestamp(self._clock()),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_bytes(orjson.dumps(envelope, option=orjson.OPT_INDENT_2))
        except OSError as e:
            raise CacheIOFailure(f"failed to write {self.path}: {e}") from e
        logger.debug(f"Saved {len(envelope['servers'])} servers to {self.path}")


def merge_stale(
    fresh: list[ServerRecord], existing: Iterable[ServerRecord]
) -> list[ServerRecord]:
    """Carry ping, rules and last_updated forward from ``existing`` by key.

    Every fresh record is marked loading; the list is modified in place and
    returned for convenience.
    """
    known: dict[ServerKey, ServerRecord] = {record.key: record for record in existing}
    for record in fresh:
        previous = known.get(record.key)
        if previous is not None:
            record.ping = previous.ping
            record.rules = previous.rules
            record.last_updated = previous.last_updated
        record.loading = True
    return fresh
