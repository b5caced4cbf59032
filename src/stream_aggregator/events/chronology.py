"""Replay filtering against per-stream connection cutoffs.

When a connection becomes ready the lifecycle service records, per stream
id, the time the connection went live (epoch microseconds).  Platforms
replay recent history on connect; any event whose message time is at or
before that cutoff is history and must not be delivered again.

Events that carry no stream id are checked against the platform's own
connection time, stored under :data:`CONNECTION_CUTOFF_KEY`; only events
strictly older than the connection are dropped there.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from stream_aggregator.core.clock import Clock, SystemClock
from stream_aggregator.events.timestamps import iso_to_epoch_us

logger = logging.getLogger(__name__)

CONNECTION_CUTOFF_KEY = "*"
"""Cutoff key holding the platform connection time for events without a stream id."""


class ChronologyFilter:
    """Stateless cutoff check.

    Message time resolution, first match wins:

    1. ``metadata["timestamp_usec"]`` (YouTube items carry it);
    2. a numeric ``timestamp``, taken in the cutoff unit (microseconds);
    3. an ISO-8601 ``timestamp`` converted to microseconds;
    4. the clock's current time (ingest time).

    Args:
        clock: Clock for the ingest-time fallback.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()

    def message_time_us(self, event: Mapping[str, Any]) -> int:
        metadata = event.get("metadata")
        if isinstance(metadata, Mapping):
            usec = metadata.get("timestamp_usec")
            if isinstance(usec, (int, float)) and not isinstance(usec, bool):
                return int(usec)
        timestamp = event.get("timestamp")
        if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
            return int(timestamp)
        if isinstance(timestamp, str):
            parsed = iso_to_epoch_us(timestamp)
            if parsed is not None:
                return parsed
        return self._clock.now_ms() * 1000

    def should_deliver(
        self,
        event: Mapping[str, Any],
        stream_id: str | None,
        cutoffs: Mapping[str, int] | None,
    ) -> bool:
        """Return False when the event predates the connection cutoff of *stream_id*.

        An event whose stream has no recorded cutoff is always delivered.
        Without a stream id the platform connection cutoff applies, if any.
        """
        if not cutoffs:
            return True
        if stream_id:
            cutoff = cutoffs.get(stream_id)
            if cutoff is None:
                return True
            message_time = self.message_time_us(event)
            replayed = message_time <= cutoff
        else:
            cutoff = cutoffs.get(CONNECTION_CUTOFF_KEY)
            if cutoff is None:
                return True
            message_time = self.message_time_us(event)
            replayed = message_time < cutoff
        if replayed:
            logger.debug(
                "chronology: dropping replayed %s event — stream=%s message_time=%d cutoff=%d",
                event.get("platform"),
                stream_id,
                message_time,
                cutoff,
            )
            return False
        return True
