"""
Channel I/O drivers for the event-loop engine

Every driver exposes the same completion-style interface so the event loop
never branches on the I/O strategy:

    driver.submit_read(channel)     # keep one read outstanding per channel
    driver.submit_write(channel)    # at most one write outstanding per channel
    events = driver.poll_events(timeout)   # -> [IoEvent, ...]
    driver.unregister(channel)      # drop a failed channel, close its socket

A failed socket call is reported as an IoEvent carrying `error` so the
other events of the same poll are still delivered.

Strategies:
    ReadinessDriver   selectors-based; write interest registered only while
                      the channel has unsent bytes
    CompletionDriver  operations go through a bounded submission queue and
                      are reported as completions once executed
    DryRunDriver      no sockets; writes complete immediately and every
                      request carrying an id gets a synthesized
                      `result: null` reply

The strategy is picked once at start-up by create_driver().
"""

import logging
import selectors
import socket
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, List, NamedTuple, Optional, Tuple

from rpcbench.engine.channel import Channel
from rpcbench.errors import ChannelClosedError, SubmissionQueueFull
from rpcbench.protocol import parse_request, serialize, synthesize_response

logger = logging.getLogger(__name__)

OP_READ = 0
OP_WRITE = 1

DEFAULT_READ_CHUNK_SIZE = 4096


class IoEvent(NamedTuple):
    """A completed read or write on one channel"""

    channel_index: int
    op: int
    data: bytes = b""
    nbytes: int = 0
    error: Optional[ChannelClosedError] = None


def encode_user_data(channel_index: int, op: int) -> int:
    return (channel_index << 1) | (op & 1)


def decode_user_data(user_data: int) -> Tuple[int, int]:
    return user_data >> 1, user_data & 1


def next_power_of_two(value: int) -> int:
    return 1 if value <= 1 else 1 << (value - 1).bit_length()


class ChannelIoDriver(ABC):
    """Common interface for all channel I/O strategies"""

    name = "abstract"

    def __init__(self, read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE):
        self.read_chunk_size = read_chunk_size
        self.channels: Dict[int, Channel] = {}

    @abstractmethod
    def register(self, channel: Channel, sock: Optional[socket.socket] = None) -> None:
        """Attach a channel (and its connected socket) to the driver"""

    @abstractmethod
    def submit_read(self, channel: Channel) -> None:
        """Request a read on the channel (no-op if one is outstanding)"""

    @abstractmethod
    def submit_write(self, channel: Channel) -> None:
        """Request a write of the channel's unsent bytes (no-op if one is outstanding)"""

    @abstractmethod
    def poll_events(self, timeout: Optional[float] = None) -> List[IoEvent]:
        """Wait up to `timeout` seconds for at least one completion"""

    def unregister(self, channel: Channel) -> None:
        """Forget a channel; no events are reported for it afterwards"""
        self.channels.pop(channel.index, None)

    def flush(self) -> None:
        """Hand queued submissions to the kernel side (completion drivers only)"""

    def close(self) -> None:
        pass


class _SocketDriver(ChannelIoDriver):
    """Shared selector and socket bookkeeping for the socket-backed drivers"""

    def __init__(self, read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE):
        super().__init__(read_chunk_size)
        self._selector = selectors.DefaultSelector()
        self._sockets: Dict[int, socket.socket] = {}
        self._interest: Dict[int, int] = {}

    def register(self, channel: Channel, sock: Optional[socket.socket] = None) -> None:
        if sock is None:
            raise ValueError(f"{self.name} driver requires a socket for channel {channel.index}")
        sock.setblocking(False)
        self.channels[channel.index] = channel
        self._sockets[channel.index] = sock
        self._interest[channel.index] = 0

    def _set_interest(self, channel: Channel, events: int) -> None:
        current = self._interest[channel.index]
        if events == current:
            return
        sock = self._sockets[channel.index]
        if current == 0:
            self._selector.register(sock, events, channel)
        elif events == 0:
            self._selector.unregister(sock)
        else:
            self._selector.modify(sock, events, channel)
        self._interest[channel.index] = events

    def _do_write(self, channel: Channel) -> Optional[IoEvent]:
        sock = self._sockets[channel.index]
        try:
            with channel.outgoing() as view:
                nbytes = sock.send(view)
        except BlockingIOError:
            return None
        except OSError as exc:
            return self._failed(channel, OP_WRITE, f"Failed to send request: {exc}", exc)
        return IoEvent(channel.index, OP_WRITE, nbytes=nbytes)

    def _do_read(self, channel: Channel) -> Optional[IoEvent]:
        sock = self._sockets[channel.index]
        try:
            data = sock.recv(self.read_chunk_size)
        except BlockingIOError:
            return None
        except OSError as exc:
            return self._failed(channel, OP_READ, f"Failed to read response: {exc}", exc)
        return IoEvent(channel.index, OP_READ, data=data)

    @staticmethod
    def _failed(channel: Channel, op: int, reason: str, cause: OSError) -> IoEvent:
        error = ChannelClosedError(reason, channel.server)
        error.__cause__ = cause
        return IoEvent(channel.index, op, error=error)

    def unregister(self, channel: Channel) -> None:
        if self._interest.pop(channel.index, 0):
            self._selector.unregister(self._sockets[channel.index])
        sock = self._sockets.pop(channel.index, None)
        if sock is not None:
            try:
                sock.close()
            except OSError as exc:
                logger.debug(f"Ignoring error while closing socket: {exc}")
        super().unregister(channel)

    def close(self) -> None:
        self._selector.close()
        for sock in self._sockets.values():
            try:
                sock.close()
            except OSError as exc:
                logger.debug(f"Ignoring error while closing socket: {exc}")
        self._sockets.clear()


class ReadinessDriver(_SocketDriver):
    """
    Readiness-based multiplexer (selectors)

    Read interest stays registered once submitted. Write interest is
    registered by submit_write() and dropped after each write completes,
    so a drained channel never wakes the loop.
    """

    name = "readiness"

    def submit_read(self, channel: Channel) -> None:
        if channel.read_inflight:
            return
        channel.begin_read()
        self._set_interest(channel, self._interest[channel.index] | selectors.EVENT_READ)

    def submit_write(self, channel: Channel) -> None:
        if channel.write_inflight or not channel.has_unsent():
            return
        channel.begin_write()
        self._set_interest(channel, self._interest[channel.index] | selectors.EVENT_WRITE)

    def poll_events(self, timeout: Optional[float] = None) -> List[IoEvent]:
        events: List[IoEvent] = []
        for key, mask in self._selector.select(timeout):
            channel: Channel = key.data

            if mask & selectors.EVENT_WRITE and channel.write_inflight:
                event = self._do_write(channel)
                if event is not None:
                    self._set_interest(channel, self._interest[channel.index] & ~selectors.EVENT_WRITE)
                    events.append(event)

            if mask & selectors.EVENT_READ and channel.read_inflight:
                event = self._do_read(channel)
                if event is not None:
                    events.append(event)

        return events


class CompletionDriver(_SocketDriver):
    """
    Completion-queue driver

    Reads and writes are pushed as tagged entries onto a bounded submission
    queue, moved in flight by flush(), executed once their socket is ready,
    and reported back as completions. A full submission queue raises
    SubmissionQueueFull; callers flush() and retry, nothing is dropped.
    """

    name = "completion"

    def __init__(self, ring_entries: int, read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE):
        super().__init__(read_chunk_size)
        if ring_entries < 1:
            raise ValueError(f"ring_entries must be >= 1, got {ring_entries}")
        self.ring_entries = ring_entries
        self._submissions: Deque[int] = deque()
        self._inflight_ops: Dict[int, int] = {}  # channel index -> op bitmask

        # Statistics
        self.total_submitted = 0
        self.total_completed = 0

    @staticmethod
    def ring_entries_for(channel_count: int, min_entries: int = 8) -> int:
        return max(min_entries, next_power_of_two(channel_count * 2))

    def _push(self, channel: Channel, op: int) -> None:
        if len(self._submissions) >= self.ring_entries:
            raise SubmissionQueueFull(self.ring_entries)
        self._submissions.append(encode_user_data(channel.index, op))
        self.total_submitted += 1

    def submit_read(self, channel: Channel) -> None:
        if channel.read_inflight:
            return
        self._push(channel, OP_READ)
        channel.begin_read()

    def submit_write(self, channel: Channel) -> None:
        if channel.write_inflight or not channel.has_unsent():
            return
        self._push(channel, OP_WRITE)
        channel.begin_write()

    @property
    def pending_submissions(self) -> int:
        return len(self._submissions)

    def flush(self) -> None:
        while self._submissions:
            channel_index, op = decode_user_data(self._submissions.popleft())
            ops = self._inflight_ops.get(channel_index, 0) | (1 << op)
            self._inflight_ops[channel_index] = ops
            self._set_interest(self.channels[channel_index], self._events_for(ops))

    @staticmethod
    def _events_for(ops: int) -> int:
        events = 0
        if ops & (1 << OP_READ):
            events |= selectors.EVENT_READ
        if ops & (1 << OP_WRITE):
            events |= selectors.EVENT_WRITE
        return events

    def unregister(self, channel: Channel) -> None:
        self._submissions = deque(
            user_data for user_data in self._submissions
            if decode_user_data(user_data)[0] != channel.index
        )
        self._inflight_ops.pop(channel.index, None)
        super().unregister(channel)

    def _complete(self, channel: Channel, op: int) -> None:
        ops = self._inflight_ops.get(channel.index, 0) & ~(1 << op)
        self._inflight_ops[channel.index] = ops
        self._set_interest(channel, self._events_for(ops))
        self.total_completed += 1

    def poll_events(self, timeout: Optional[float] = None) -> List[IoEvent]:
        self.flush()
        if not any(self._inflight_ops.values()):
            return []

        events: List[IoEvent] = []
        for key, mask in self._selector.select(timeout):
            channel: Channel = key.data
            ops = self._inflight_ops.get(channel.index, 0)

            if mask & selectors.EVENT_WRITE and ops & (1 << OP_WRITE):
                event = self._do_write(channel)
                if event is not None:
                    self._complete(channel, OP_WRITE)
                    events.append(event)

            if mask & selectors.EVENT_READ and ops & (1 << OP_READ):
                event = self._do_read(channel)
                if event is not None:
                    self._complete(channel, OP_READ)
                    events.append(event)

        return events


class DryRunDriver(ChannelIoDriver):
    """
    Socket-free driver used by --dry-run

    Writes complete in full on the next poll. Each written request that
    carries an id produces a synthesized reply that becomes readable on the
    same channel, so dispatch, correlation and timing run unchanged.
    """

    name = "dry-run"

    def __init__(self, read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE):
        super().__init__(read_chunk_size)
        self._completed_writes: Deque[IoEvent] = deque()
        self._replies: Dict[int, bytearray] = {}

    def register(self, channel: Channel, sock: Optional[socket.socket] = None) -> None:
        self.channels[channel.index] = channel
        self._replies[channel.index] = bytearray()

    def unregister(self, channel: Channel) -> None:
        self._replies.pop(channel.index, None)
        self._completed_writes = deque(
            event for event in self._completed_writes if event.channel_index != channel.index
        )
        super().unregister(channel)

    def submit_read(self, channel: Channel) -> None:
        if channel.read_inflight:
            return
        channel.begin_read()

    def submit_write(self, channel: Channel) -> None:
        if channel.write_inflight or not channel.has_unsent():
            return
        channel.begin_write()
        with channel.outgoing() as view:
            data = bytes(view)

        replies = self._replies[channel.index]
        for line in data.split(b"\n"):
            if not line.strip():
                continue
            reply = synthesize_response(parse_request(line))
            if reply is not None:
                replies += serialize(reply).encode("utf-8") + b"\n"

        self._completed_writes.append(IoEvent(channel.index, OP_WRITE, nbytes=len(data)))

    def poll_events(self, timeout: Optional[float] = None) -> List[IoEvent]:
        events = list(self._completed_writes)
        self._completed_writes.clear()

        for index, replies in self._replies.items():
            channel = self.channels[index]
            if replies and channel.read_inflight:
                chunk = bytes(replies[: self.read_chunk_size])
                del replies[: self.read_chunk_size]
                events.append(IoEvent(index, OP_READ, data=chunk))

        return events


def create_driver(
    kind: str,
    channel_count: int,
    dry_run: bool = False,
    read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
    min_ring_entries: int = 8,
) -> ChannelIoDriver:
    """
    Select the I/O strategy once at start-up

    Args:
        kind: "readiness" or "completion" (ignored for dry runs)
        channel_count: Number of channels that will be registered
        dry_run: Use the socket-free driver

    Raises:
        ValueError: If the kind is unknown
    """
    if dry_run:
        return DryRunDriver(read_chunk_size)
    if kind == "readiness":
        return ReadinessDriver(read_chunk_size)
    if kind == "completion":
        ring_entries = CompletionDriver.ring_entries_for(channel_count, min_ring_entries)
        return CompletionDriver(ring_entries, read_chunk_size)
    raise ValueError(f"Unknown I/O driver: {kind}")
