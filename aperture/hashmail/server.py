"""The mail server: encrypted mailboxes that clients create, write and read.

A mailbox is identified by a stream ID. One client at a time may hold its
write end and one its read end; messages written are delivered to the reader
in order. Mailboxes whose ends are both left idle for too long are torn down.

Streaming calls take an iterable of incoming messages or a ``send`` callable
for outgoing ones, plus an optional ``threading.Event`` that cancels the call.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from ..l402.client_interceptor import StatusCode, StatusError
from .mailbox import (
    DEFAULT_MSG_BURST_ALLOWANCE,
    DEFAULT_MSG_RATE,
    DEFAULT_STALE_TIMEOUT,
    RateLimiter,
    ReadStream,
    Stream,
    StreamActivity,
    WriteStream,
    base_id,
    is_odd,
    new_stream_id,
)

log = logging.getLogger(__name__)

_END = object()


@dataclass(frozen=True)
class CipherBoxDesc:
    """Names the mailbox a message or request is about."""

    stream_id: Optional[bytes] = None


@dataclass(frozen=True)
class CipherBoxAuth:
    """A request to create or delete a mailbox, with its authentication."""

    desc: Optional[CipherBoxDesc] = None
    auth: Any = None


@dataclass(frozen=True)
class CipherBox:
    """One message travelling through a mailbox."""

    desc: Optional[CipherBoxDesc]
    msg: bytes = b""


@dataclass
class HashMailConfig:
    """Server settings; a zero value selects the default.

    ``msg_rate`` is the number of seconds between messages and
    ``stale_timeout`` the seconds after which an idle mailbox is removed;
    a negative ``stale_timeout`` keeps idle mailboxes forever.
    """

    msg_rate: float = 0
    msg_burst_allowance: int = 0
    stale_timeout: float = 0


class AlreadyExistsError(StatusError):
    """A mailbox with the requested stream ID is already active."""

    def __init__(self, message: str = "stream already active") -> None:
        super().__init__(StatusCode.ALREADY_EXISTS, message)


def validate_auth_req(req: CipherBoxAuth) -> None:
    """Basic sanity checks on a create or delete request."""
    if req.desc is None:
        raise ValueError("cipher box descriptor required")
    if req.desc.stream_id is None:
        raise ValueError("stream_id required")
    if req.auth is None:
        raise ValueError("auth type required")


class HashMailServer:
    """Holds the active mailboxes and serves reads and writes on them."""

    def __init__(self, config: Optional[HashMailConfig] = None) -> None:
        config = config or HashMailConfig()
        self.config = HashMailConfig(
            msg_rate=config.msg_rate or DEFAULT_MSG_RATE,
            msg_burst_allowance=(config.msg_burst_allowance
                                 or DEFAULT_MSG_BURST_ALLOWANCE),
            stale_timeout=config.stale_timeout or DEFAULT_STALE_TIMEOUT,
        )
        # Read activity of bidirectional sessions, keyed by hex base ID.
        self.activity = StreamActivity()
        self._streams: dict[bytes, Stream] = {}
        self._lock = threading.Lock()
        self._quit = threading.Event()

    @property
    def mailbox_count(self) -> int:
        with self._lock:
            return len(self._streams)

    def stop(self) -> None:
        """Tear down every mailbox and refuse further streaming."""
        self._quit.set()
        with self._lock:
            for stream in self._streams.values():
                try:
                    stream.tear_down()
                except Exception as exc:  # noqa: BLE001 - best effort
                    log.warning("unable to tear down stream: %s", exc)

    def _tear_down_stale_stream(self, stream_id: bytes) -> None:
        log.debug("Tearing down stale HashMail stream")
        with self._lock:
            stream = self._streams.get(stream_id)
            if stream is None:
                raise LookupError("stream not found")
            stream.tear_down()
            del self._streams[stream_id]

    def validate_stream_auth(self, auth: CipherBoxAuth) -> None:
        """Check the authentication used to claim or revoke a mailbox.

        Any well-formed request is accepted; credentials themselves are not
        checked yet.
        """
        if not isinstance(auth, CipherBoxAuth):
            raise TypeError(
                f"expected CipherBoxAuth, got {type(auth).__name__}")
        log.debug("Accepting stream auth, auth=%r", auth.auth)

    def init_stream(self, auth: CipherBoxAuth) -> None:
        """Create the mailbox named in ``auth``."""
        sid = new_stream_id(auth.desc.stream_id)
        log.debug("Creating new HashMail Stream")
        with self._lock:
            if sid in self._streams:
                raise AlreadyExistsError("stream already active")

            limiter = RateLimiter(self.config.msg_rate,
                                  self.config.msg_burst_allowance)
            self._streams[sid] = Stream(
                sid, limiter,
                lambda _auth: None,
                lambda: self._tear_down_stale_stream(sid),
                self.config.stale_timeout,
            )

    def _lookup(self, stream_id: bytes) -> Stream:
        with self._lock:
            stream = self._streams.get(new_stream_id(stream_id))
        if stream is None:
            raise LookupError("stream not found")
        return stream

    def lookup_read_stream(self, stream_id: bytes) -> ReadStream:
        """Borrow the read end of a mailbox."""
        return self._lookup(stream_id).request_read_stream()

    def lookup_write_stream(self, stream_id: bytes) -> WriteStream:
        """Borrow the write end of a mailbox."""
        return self._lookup(stream_id).request_write_stream()

    def tear_down_stream(self, stream_id: bytes,
                         auth: CipherBoxAuth) -> None:
        """Close a mailbox for good; only its creator's auth may do so."""
        sid = new_stream_id(stream_id)
        with self._lock:
            stream = self._streams.get(sid)
            if stream is None:
                raise LookupError("stream not found")
            try:
                stream.equiv_auth(auth)
            except Exception as exc:
                raise ValueError(f"invalid auth: {exc}") from exc
            self.validate_stream_auth(auth)

            log.debug("Tearing down HashMail stream, auth=%r", auth.auth)
            stream.tear_down()
            del self._streams[sid]

    def new_cipher_box(self, auth: CipherBoxAuth) -> None:
        """Create a mailbox; fails if it is active or the request invalid."""
        validate_auth_req(auth)
        log.debug("New HashMail stream init, stream_id=%s, auth=%r",
                  auth.desc.stream_id.hex(), auth.auth)
        try:
            self.validate_stream_auth(auth)
        except Exception as exc:
            log.debug("Stream creation validation failed: %s", exc)
            raise
        self.init_stream(auth)

    def del_cipher_box(self, auth: CipherBoxAuth) -> None:
        """Delete a mailbox, using the authentication it was created with."""
        validate_auth_req(auth)
        log.debug("New HashMail stream deletion, stream_id=%s, auth=%r",
                  auth.desc.stream_id.hex(), auth.auth)
        self.tear_down_stream(auth.desc.stream_id, auth)

    def send_stream(self, boxes: Iterable[CipherBox],
                    cancel: Optional[threading.Event] = None) -> None:
        """Write every incoming message into the mailbox the first names."""
        log.debug("New HashMail write stream pending...")
        incoming = iter(boxes)
        first = next(incoming, _END)
        if first is _END:
            raise EOFError("EOF")

        if first.desc is None:
            raise ValueError("cipher box descriptor required")
        if first.desc.stream_id is None:
            raise ValueError("stream_id required")

        writer = self.lookup_write_stream(first.desc.stream_id)
        try:
            log.debug("Sending message to stream, msg_len=%d", len(first.msg))
            writer.write_msg(first.msg, cancel)

            while True:
                if cancel is not None and cancel.is_set():
                    log.debug("SendStream: Context done, exiting")
                    return
                if self._quit.is_set():
                    raise RuntimeError("server shutting down")

                box = next(incoming, _END)
                if box is _END:
                    log.debug("SendStream: Exiting write stream RPC")
                    return
                log.debug("Sending message to stream, msg_len=%d",
                          len(box.msg))
                writer.write_msg(box.msg, cancel)
        finally:
            writer.return_stream()

    def recv_stream(self, desc: CipherBoxDesc,
                    send: Callable[[CipherBox], Any],
                    cancel: Optional[threading.Event] = None) -> None:
        """Pass every message of the mailbox to ``send`` until cancelled."""
        reader = self.lookup_read_stream(desc.stream_id)
        log.debug("New HashMail read stream")
        sid = new_stream_id(desc.stream_id)
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    log.debug("Read stream context done.")
                    return
                if self._quit.is_set():
                    raise RuntimeError("server shutting down")

                try:
                    msg = reader.read_next_msg(cancel)
                except Exception as exc:
                    log.error("Got error on read stream read: %s", exc)
                    raise
                log.debug("Read bytes, msg_len=%d", len(msg))

                # Only the odd stream of a pair is counted, so a session is
                # recorded once, under the base ID both streams share.
                if is_odd(sid):
                    self.activity.record(base_id(sid).hex())

                send(CipherBox(desc=desc, msg=msg))
        finally:
            reader.return_stream()