"""Hybrid logical clock timestamps.

A timestamp is the triple (millis, counter, replica_id). Its canonical string
form is fixed width, so sorting the strings sorts the timestamps:

    2024-05-01T12:30:00.000Z-0000-00000000000000AB

The time component also drives the merkle index: ``bucket_path`` turns the
minute a timestamp falls in into a fixed-length base 3 key.
"""

import re
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from .exceptions import (
    ClockDriftError,
    CounterOverflowError,
    DuplicateReplicaError,
    FormatError,
)

# Index buckets are minutes, written as 17 base 3 digits (good until 2215)
BUCKET_BASE = 3
BUCKET_DEPTH = 17
BUCKET_MILLIS = 60 * 1000
MAX_MILLIS = BUCKET_BASE**BUCKET_DEPTH * BUCKET_MILLIS - 1

MAX_COUNTER = 0xFFFF
REPLICA_ID_LENGTH = 16
DEFAULT_MAX_DRIFT_MS = 60 * 1000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_TIMESTAMP_RE = re.compile(
    r"([0-9]{4})-([0-9]{2})-([0-9]{2})"
    r"T([0-9]{2}):([0-9]{2}):([0-9]{2})\.([0-9]{3})Z"
    r"-([0-9A-Fa-f]{4})"
    r"-([0-9A-Za-z]{16})"
)
_REPLICA_ID_RE = re.compile(r"[0-9A-Za-z]{1,16}")


def normalize_replica_id(replica_id: str) -> str:
    """Validate a replica id and left-pad it with zeros to 16 characters."""
    if not isinstance(replica_id, str):
        raise FormatError(f"Replica id must be a string, got {type(replica_id).__name__}")
    # Only ASCII letters and digits, so no padded id sorts below "0" * 16
    if not _REPLICA_ID_RE.fullmatch(replica_id):
        raise FormatError(
            f"Replica id must be 1-{REPLICA_ID_LENGTH} ASCII letters or digits: {replica_id!r}"
        )
    return replica_id.rjust(REPLICA_ID_LENGTH, "0")


@dataclass(frozen=True, order=True)
class Timestamp:
    """A point in hybrid logical time.

    Field order gives the total order: millis, then counter, then replica_id.
    Short replica ids are left-padded with zeros to 16 characters.
    """

    millis: int
    counter: int
    replica_id: str

    def __post_init__(self) -> None:
        if isinstance(self.millis, bool) or not isinstance(self.millis, int):
            raise FormatError(f"millis must be an int, got {self.millis!r}")
        if not 0 <= self.millis <= MAX_MILLIS:
            raise FormatError(f"millis out of range: {self.millis}")
        if isinstance(self.counter, bool) or not isinstance(self.counter, int):
            raise FormatError(f"counter must be an int, got {self.counter!r}")
        if not 0 <= self.counter <= MAX_COUNTER:
            raise FormatError(f"counter out of range: {self.counter}")
        object.__setattr__(self, "replica_id", normalize_replica_id(self.replica_id))

    def __str__(self) -> str:
        return to_string(self)


def to_string(ts: Timestamp) -> str:
    """Format a timestamp in its canonical, sortable form."""
    dt = _EPOCH + timedelta(milliseconds=ts.millis)
    return (
        f"{dt.year:04d}-{dt.month:02d}-{dt.day:02d}"
        f"T{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d}"
        f".{dt.microsecond // 1000:03d}Z"
        f"-{ts.counter:04X}"
        f"-{ts.replica_id}"
    )


def parse(text: str) -> Timestamp:
    """Parse a canonical timestamp string.

    Raises:
        FormatError: If the text is not a well-formed timestamp.
    """
    if not isinstance(text, str):
        raise FormatError(f"Timestamp must be a string, got {type(text).__name__}")

    match = _TIMESTAMP_RE.fullmatch(text)
    if match is None:
        raise FormatError(f"Malformed timestamp: {text!r}")

    year, month, day, hour, minute, second, ms = (int(g) for g in match.groups()[:7])
    try:
        dt = datetime(
            year, month, day, hour, minute, second, ms * 1000, tzinfo=timezone.utc
        )
    except ValueError as e:
        raise FormatError(f"Malformed timestamp: {text!r} ({e})") from e

    millis = (dt - _EPOCH) // timedelta(milliseconds=1)
    return Timestamp(millis, int(match.group(8), 16), match.group(9))


def compare(a: Timestamp, b: Timestamp) -> int:
    """Return -1, 0 or 1 as a sorts before, equal to or after b."""
    return (a > b) - (a < b)


def bucket_path(value: Timestamp | int) -> str:
    """Return the merkle index key of a timestamp (or raw millis).

    The key is the minute since the epoch in base 3, left-padded to
    BUCKET_DEPTH digits. Counter and replica id do not take part.
    """
    millis = value.millis if isinstance(value, Timestamp) else value
    if not 0 <= millis <= MAX_MILLIS:
        raise FormatError(f"millis out of range: {millis}")

    minutes = millis // BUCKET_MILLIS
    digits = []
    for _ in range(BUCKET_DEPTH):
        minutes, digit = divmod(minutes, BUCKET_BASE)
        digits.append(str(digit))
    return "".join(reversed(digits))


def bucket_start(path: str) -> int:
    """Return the first millisecond covered by a (possibly partial) key."""
    if len(path) > BUCKET_DEPTH or any(c not in "012" for c in path):
        raise ValueError(f"Invalid bucket path: {path!r}")
    return int(path.ljust(BUCKET_DEPTH, "0"), BUCKET_BASE) * BUCKET_MILLIS


def make_replica_id() -> str:
    """Generate a random 16 character replica id."""
    return uuid.uuid4().hex[-REPLICA_ID_LENGTH:].upper()


def _wall_millis() -> int:
    return int(time.time() * 1000)


class HybridClock:
    """Per-replica hybrid logical clock.

    Every replica owns exactly one of these. ``send`` stamps local events and
    ``recv`` folds in timestamps seen on messages from other replicas, so
    the replica's next local timestamp sorts after everything it has seen.
    """

    def __init__(
        self,
        replica_id: str,
        max_drift_ms: int = DEFAULT_MAX_DRIFT_MS,
        now: Callable[[], int] | None = None,
    ):
        """Initialize the clock.

        Args:
            replica_id: Identifier of the owning replica.
            max_drift_ms: How far logical time may run ahead of wall time.
            now: Wall clock in epoch milliseconds (defaults to time.time).
        """
        self._last = Timestamp(0, 0, replica_id)
        self.max_drift_ms = max_drift_ms
        self._now = now or _wall_millis
        self._lock = threading.Lock()

    @property
    def replica_id(self) -> str:
        return self._last.replica_id

    @property
    def last(self) -> Timestamp:
        """The most recently issued timestamp."""
        return self._last

    def _check(self, millis: int, counter: int, physical: int) -> None:
        if millis - physical > self.max_drift_ms:
            raise ClockDriftError(
                f"Clock drift {millis - physical}ms exceeds {self.max_drift_ms}ms"
            )
        if counter > MAX_COUNTER:
            raise CounterOverflowError(f"Counter overflow at {millis}")

    def send(self) -> Timestamp:
        """Issue a timestamp for a local event."""
        with self._lock:
            physical = self._now()
            old_millis, old_counter = self._last.millis, self._last.counter

            millis = max(old_millis, physical)
            counter = old_counter + 1 if millis == old_millis else 0

            self._check(millis, counter, physical)
            self._last = Timestamp(millis, counter, self.replica_id)
            return self._last

    def recv(self, remote: Timestamp) -> Timestamp:
        """Merge a timestamp received from another replica.

        Raises:
            DuplicateReplicaError: If the timestamp carries our own replica id.
            ClockDriftError: If the remote or resulting time is too far ahead.
            CounterOverflowError: If the counter would exceed 0xFFFF.
        """
        with self._lock:
            physical = self._now()

            if remote.replica_id == self.replica_id:
                raise DuplicateReplicaError(
                    f"Received timestamp from own replica id {self.replica_id}"
                )
            if remote.millis - physical > self.max_drift_ms:
                raise ClockDriftError(
                    f"Remote clock {remote.millis - physical}ms ahead of wall time"
                )

            old_millis, old_counter = self._last.millis, self._last.counter
            millis = max(old_millis, physical, remote.millis)

            if millis == old_millis and millis == remote.millis:
                counter = max(old_counter, remote.counter) + 1
            elif millis == old_millis:
                counter = old_counter + 1
            elif millis == remote.millis:
                counter = remote.counter + 1
            else:
                counter = 0

            self._check(millis, counter, physical)
            self._last = Timestamp(millis, counter, self.replica_id)
            return self._last
