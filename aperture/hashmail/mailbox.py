"""Mailbox streams: a single-writer, single-reader message pipe.

Each stream has one read end and one write end that clients borrow and
return. Messages written are length-prefixed with a BigSize varint and are
delivered to the reader in order. Writes are rate limited, and a stream
whose ends are both idle for too long is reported stale.

Cancellation is signalled with a ``threading.Event``; a cancelled wait
raises ``concurrent.futures.CancelledError``.
"""

from __future__ import annotations

import io
import logging
import threading
import time
from collections import deque
from concurrent.futures import CancelledError
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Optional

log = logging.getLogger(__name__)

# Seconds between messages: two messages per second by default.
DEFAULT_MSG_RATE = 0.5
DEFAULT_MSG_BURST_ALLOWANCE = 10
# Seconds after which a mailbox with no occupied ends is torn down.
DEFAULT_STALE_TIMEOUT = 3600.0
DEFAULT_BUF_SIZE = 4096
# Seconds without reads after which an activity entry is pruned.
STREAM_TTL = 24 * 3600.0

STREAM_ID_SIZE = 64
BASE_ID_SIZE = 16

_PIPE_CAPACITY = 2
_POLL_INTERVAL = 0.05
_MAX_UINT64 = (1 << 64) - 1

Cancel = Optional[threading.Event]


def _cancelled() -> CancelledError:
    return CancelledError("context canceled")


# --- BigSize varints --------------------------------------------------------

def write_varint(value: int) -> bytes:
    """Encode ``value`` as a BigSize varint."""
    if not 0 <= value <= _MAX_UINT64:
        raise ValueError(f"varint value out of range: {value}")
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "big")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "big")
    return b"\xff" + value.to_bytes(8, "big")


_VARINT_WIDTHS = {0xFD: (2, 0xFD), 0xFE: (4, 0x10000), 0xFF: (8, 0x100000000)}


def read_varint(reader: BinaryIO) -> int:
    """Decode a BigSize varint, rejecting non-canonical encodings."""
    first = reader.read(1)
    if not first:
        raise EOFError("EOF")
    discriminant = first[0]
    if discriminant < 0xFD:
        return discriminant

    size, minimum = _VARINT_WIDTHS[discriminant]
    raw = reader.read(size)
    if len(raw) != size:
        raise EOFError("unexpected EOF")
    value = int.from_bytes(raw, "big")
    if value < minimum:
        raise ValueError("decoded bigsize is not canonical")
    return value


# --- stream identifiers -----------------------------------------------------

def new_stream_id(raw: bytes) -> bytes:
    """A 64-byte stream ID: ``raw`` truncated or zero-padded."""
    return bytes(raw[:STREAM_ID_SIZE]).ljust(STREAM_ID_SIZE, b"\x00")


def base_id(stream_id: bytes) -> bytes:
    """The leading 16 bytes shared by both streams of a bidirectional pair."""
    return bytes(stream_id[:BASE_ID_SIZE])


def is_odd(stream_id: bytes) -> bool:
    return bool(stream_id[STREAM_ID_SIZE - 1] & 0x01)


# --- rate limiting ----------------------------------------------------------

class RateLimiter:
    """Token bucket: one event per ``interval`` seconds, bursts up to ``burst``.

    An ``interval`` of zero or less means no limit.
    """

    def __init__(self, interval: float, burst: int) -> None:
        self._interval = interval
        self._burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def _advance(self, now: float) -> None:
        elapsed = max(0.0, now - self._last)
        self._tokens = min(float(self._burst),
                           self._tokens + elapsed / self._interval)
        self._last = now

    def wait(self, cancel: Cancel = None) -> None:
        """Block until an event is allowed, or raise if cancelled first."""
        if self._interval <= 0:
            return
        if self._burst < 1:
            raise ValueError(
                f"rate: Wait(n=1) exceeds limiter's burst {self._burst}"
            )
        if cancel is not None and cancel.is_set():
            raise _cancelled()

        with self._lock:
            self._advance(time.monotonic())
            self._tokens -= 1
            delay = -self._tokens * self._interval if self._tokens < 0 else 0.0

        if delay <= 0:
            return
        if cancel is None:
            time.sleep(delay)
            return
        if cancel.wait(delay):
            with self._lock:
                self._advance(time.monotonic())
                self._tokens = min(float(self._burst), self._tokens + 1)
            raise _cancelled()


# --- the pipe between the two ends -----------------------------------------

class _FramePipe:
    """A small bounded queue of length-prefixed frames."""

    def __init__(self, capacity: int = _PIPE_CAPACITY) -> None:
        self._frames: deque[bytes] = deque()
        self._capacity = capacity
        self._closed = False
        self._cond = threading.Condition()

    def put(self, frame: bytes, cancel: Cancel) -> None:
        with self._cond:
            while True:
                if self._closed:
                    raise BrokenPipeError("io: read/write on closed pipe")
                if cancel is not None and cancel.is_set():
                    raise _cancelled()
                if len(self._frames) < self._capacity:
                    self._frames.append(frame)
                    self._cond.notify_all()
                    return
                self._cond.wait(_POLL_INTERVAL)

    def get(self, cancel: Cancel) -> bytes:
        with self._cond:
            while True:
                if cancel is not None and cancel.is_set():
                    raise _cancelled()
                if self._frames:
                    frame = self._frames.popleft()
                    self._cond.notify_all()
                    return frame
                if self._closed:
                    raise EOFError("EOF")
                self._cond.wait(_POLL_INTERVAL)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._frames.clear()
            self._cond.notify_all()


# --- the two ends -----------------------------------------------------------

class ReadStream:
    """The read end of a stream, borrowed by one reader at a time."""

    def __init__(self, parent: "Stream", pipe: _FramePipe) -> None:
        self.parent = parent
        self._pipe = pipe

    def read_next_msg(self, cancel: Cancel = None) -> bytes:
        """Block until the next message arrives and return it."""
        reader = io.BytesIO(self._pipe.get(cancel))
        msg_len = read_varint(reader)
        return reader.read(msg_len)

    def return_stream(self) -> None:
        log.debug("Returning read stream")
        self.parent.return_read_stream(self)


class WriteStream:
    """The write end of a stream, borrowed by one writer at a time."""

    def __init__(self, parent: "Stream", pipe: _FramePipe) -> None:
        self.parent = parent
        self._pipe = pipe

    def write_msg(self, msg: bytes, cancel: Cancel = None) -> None:
        """Write one message; blocks on the rate limit and a full pipe."""
        self.parent.limiter.wait(cancel)
        self._pipe.put(write_varint(len(msg)) + bytes(msg), cancel)

    def return_stream(self) -> None:
        self.parent.return_write_stream(self)


# --- occupancy tracking -----------------------------------------------------

class StreamStatus:
    """Tracks which ends are borrowed and calls ``on_stale`` when idle.

    The stale timer runs while neither end is occupied. A negative
    ``stale_timeout`` disables tracking altogether.
    """

    def __init__(self, on_stale: Callable[[], Any],
                 stale_timeout: float) -> None:
        self.disabled = stale_timeout < 0
        self.stale_timeout = stale_timeout
        self.read_stream_occupied = False
        self.write_stream_occupied = False
        self._on_stale = on_stale
        self._stopped = False
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        if not self.disabled:
            self._start_timer()

    def _start_timer(self) -> None:
        self._timer = threading.Timer(self.stale_timeout, self._fire)
        self._timer.daemon = True
        self._timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()

    def _fire(self) -> None:
        try:
            self._on_stale()
        except Exception as exc:  # noqa: BLE001 - reported, not propagated
            log.error("Error from onStale callback: %s", exc)

    def stop(self) -> None:
        if self.disabled:
            return
        with self._lock:
            self._stopped = True
            self._cancel_timer()

    def stream_taken(self, read: bool) -> None:
        if self.disabled:
            return
        with self._lock:
            if read:
                self.read_stream_occupied = True
            else:
                self.write_stream_occupied = True
            self._cancel_timer()

    def stream_returned(self, read: bool) -> None:
        if self.disabled:
            return
        with self._lock:
            if read:
                self.read_stream_occupied = False
            else:
                self.write_stream_occupied = False
            if (not self.read_stream_occupied
                    and not self.write_stream_occupied
                    and not self._stopped):
                self._cancel_timer()
                self._start_timer()


# --- the stream -------------------------------------------------------------

class Stream:
    """A mailbox: one read end and one write end over a message pipe."""

    def __init__(self, stream_id: bytes, limiter: RateLimiter,
                 equiv_auth: Callable[[Any], Any],
                 on_stale: Callable[[], Any], stale_timeout: float) -> None:
        self.id = new_stream_id(stream_id)
        self.limiter = limiter
        # Checks that a tear-down request uses the creator's authentication.
        self.equiv_auth = equiv_auth
        self.status = StreamStatus(on_stale, stale_timeout)
        self._pipe = _FramePipe()
        self._lock = threading.Lock()
        self._read_end: Optional[ReadStream] = ReadStream(self, self._pipe)
        self._write_end: Optional[WriteStream] = WriteStream(self, self._pipe)

    def request_read_stream(self) -> ReadStream:
        log.debug("Requested read stream")
        with self._lock:
            reader, self._read_end = self._read_end, None
        if reader is None:
            raise RuntimeError("read stream occupied")
        self.status.stream_taken(True)
        return reader

    def request_write_stream(self) -> WriteStream:
        log.debug("Requesting write stream")
        with self._lock:
            writer, self._write_end = self._write_end, None
        if writer is None:
            raise RuntimeError("write stream occupied")
        self.status.stream_taken(False)
        return writer

    def return_read_stream(self, reader: ReadStream) -> None:
        if reader.parent is not self:
            raise ValueError("read stream belongs to another stream")
        with self._lock:
            if self._read_end is not None:
                raise ValueError("read stream already returned")
            self._read_end = reader
        self.status.stream_returned(True)

    def return_write_stream(self, writer: WriteStream) -> None:
        if writer.parent is not self:
            raise ValueError("write stream belongs to another stream")
        with self._lock:
            if self._write_end is not None:
                raise ValueError("write stream already returned")
            self._write_end = writer
        self.status.stream_returned(False)

    def tear_down(self) -> None:
        """Close the pipe; pending and later reads and writes fail."""
        self.status.stop()
        self._pipe.close()


# --- activity tracking ------------------------------------------------------

@dataclass
class _ActivityEntry:
    count: int = 0
    last_update: float = 0.0


class StreamActivity:
    """Counts reads per mailbox session to classify sessions by read rate."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._streams: dict[str, _ActivityEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._streams)

    def record(self, base_id: str) -> None:
        with self._lock:
            entry = self._streams.setdefault(base_id, _ActivityEntry())
            entry.count += 1
            entry.last_update = self._clock()

    def classify_and_reset(self) -> tuple[int, int, int]:
        """Return (active, standby, in_use) counts and start a new window.

        In use means at least 0.5 reads per second, standby a lower but
        non-zero rate; active counts both.
        """
        active = standby = in_use = 0
        with self._lock:
            now = self._clock()
            for key, entry in list(self._streams.items()):
                inactive = now - entry.last_update
                if entry.count == 0 and inactive > STREAM_TTL:
                    del self._streams[key]
                    continue

                elapsed = inactive if inactive > 0 else 1.0
                rate = entry.count / elapsed
                if rate >= 0.5:
                    in_use += 1
                elif rate > 0:
                    standby += 1
                if rate > 0:
                    active += 1

                entry.count = 0
                entry.last_update = now
        return active, standby, in_use