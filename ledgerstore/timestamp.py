"""
Hybrid Logical Clock timestamps for replicated edits.

A timestamp is (millis, counter, node):
  millis : wall-clock milliseconds, never moving backwards locally
  counter: 16-bit logical counter for events within the same millisecond
  node   : 16 hex digit id of the originating device

Text form (what both backends store and compare):

    2024-05-01T12:00:00.000Z-0000-4F2A9C0D11E3B7A5

The fields are fixed width, so ordering the strings lexicographically is the
same as ordering (millis, counter, node). Two edits stamped in the same
millisecond with the same counter on different devices are ordered by node id.

Usage:
    clock = Clock(make_node_id())
    ts = clock.send()              # stamp a local edit
    clock.recv(Timestamp.parse(remote_text))   # merge a remote edit
"""

import json
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

MAX_DRIFT_MS = 60_000
MAX_COUNTER = 0xFFFF

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})\.(\d{3})Z-([0-9A-Fa-f]{4})-([0-9A-Fa-f]{16})$"
)


class ClockError(Exception):
    pass


class ClockDriftError(ClockError):
    def __init__(self, remote_ms: int, local_ms: int):
        super().__init__(
            f"Maximum clock drift exceeded: remote={remote_ms} local={local_ms} "
            f"max={MAX_DRIFT_MS}ms"
        )


class ClockOverflowError(ClockError):
    pass


class DuplicateNodeError(ClockError):
    pass


def make_node_id() -> str:
    return uuid.uuid4().hex[-16:].upper()


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True, order=True)
class Timestamp:
    millis: int
    counter: int
    node: str

    def __post_init__(self):
        if self.millis < 0:
            raise ValueError(f"millis must be non-negative, got {self.millis}")
        if not 0 <= self.counter <= MAX_COUNTER:
            raise ValueError(f"counter out of range: {self.counter}")
        if not re.fullmatch(r"[0-9A-F]{16}", self.node):
            raise ValueError(f"node must be 16 uppercase hex digits, got {self.node!r}")

    def __str__(self) -> str:
        dt = _EPOCH + timedelta(milliseconds=self.millis)
        return (
            f"{dt.strftime('%Y-%m-%dT%H:%M:%S')}.{self.millis % 1000:03d}Z"
            f"-{self.counter:04X}-{self.node}"
        )

    @classmethod
    def parse(cls, text: str) -> "Timestamp":
        """Parse the text form; raises ValueError on anything else."""
        if not isinstance(text, str):
            raise ValueError(f"timestamp must be a string, got {type(text).__name__}")
        m = _PATTERN.match(text)
        if not m:
            raise ValueError(f"invalid timestamp: {text!r}")
        seconds, ms, counter, node = m.groups()
        dt = datetime.strptime(seconds, "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)
        millis = (dt - _EPOCH) // timedelta(milliseconds=1) + int(ms)
        return cls(millis, int(counter, 16), node.upper())


class Clock:
    """Mutable hybrid logical clock owned by one device."""

    def __init__(
        self,
        node: Optional[str] = None,
        timestamp: Optional[Timestamp] = None,
        now: Callable[[], int] = _now_ms,
    ):
        node = (node or make_node_id()).upper()
        self._now = now
        self.timestamp = timestamp or Timestamp(0, 0, node)
        if self.timestamp.node != node:
            self.timestamp = Timestamp(self.timestamp.millis, self.timestamp.counter, node)

    @property
    def node(self) -> str:
        return self.timestamp.node

    def send(self) -> Timestamp:
        """Timestamp for a new local event; always greater than anything seen."""
        phys = self._now()
        last = self.timestamp
        millis = max(last.millis, phys)
        counter = last.counter + 1 if millis == last.millis else 0

        if millis - phys > MAX_DRIFT_MS:
            raise ClockDriftError(millis, phys)
        if counter > MAX_COUNTER:
            raise ClockOverflowError("timestamp counter overflow")

        self.timestamp = Timestamp(millis, counter, self.node)
        return self.timestamp

    def recv(self, remote: Timestamp) -> Timestamp:
        """Merge a remote timestamp into the local clock."""
        phys = self._now()
        if remote.node == self.node:
            raise DuplicateNodeError(f"remote timestamp has local node id {self.node}")
        if remote.millis - phys > MAX_DRIFT_MS:
            raise ClockDriftError(remote.millis, phys)

        last = self.timestamp
        millis = max(last.millis, phys, remote.millis)
        if millis == last.millis and millis == remote.millis:
            counter = max(last.counter, remote.counter) + 1
        elif millis == last.millis:
            counter = last.counter + 1
        elif millis == remote.millis:
            counter = remote.counter + 1
        else:
            counter = 0

        if millis - phys > MAX_DRIFT_MS:
            raise ClockDriftError(millis, phys)
        if counter > MAX_COUNTER:
            raise ClockOverflowError("timestamp counter overflow")

        self.timestamp = Timestamp(millis, counter, self.node)
        return self.timestamp

    def serialize(self) -> str:
        return json.dumps({"timestamp": str(self.timestamp)})

    @classmethod
    def deserialize(cls, data: str, now: Callable[[], int] = _now_ms) -> "Clock":
        ts = Timestamp.parse(json.loads(data)["timestamp"])
        return cls(ts.node, ts, now=now)
