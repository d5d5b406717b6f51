"""
Non-blocking channel state

A Channel owns the byte-level state of one connection: an active send
buffer with a write offset, a queue of sends made while a write was in
flight, and a receive accumulator split on newline boundaries. It never
touches a socket itself; an I/O driver (or a blocking transport) performs
the system calls and reports results through on_writable()/on_readable().

Partial writes and partial reads are the normal case here: a single
enqueue() may need several write completions and a single message may
arrive across several reads.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

from rpcbench.errors import CapacityError, ChannelClosedError, ProtocolError

logger = logging.getLogger(__name__)

MESSAGE_DELIMITER = b"\n"


@dataclass(frozen=True)
class Completion:
    """One complete newline-delimited message received on a channel"""

    line: bytes
    end_time_us: int


class Channel:
    """
    Buffered send/receive state for one TCP connection

    Usage:
        channel = Channel(0, "127.0.0.1:8080", pipelining=4)
        if channel.enqueue(request.to_line(), expects_response=True):
            driver.submit_write(channel)

        # later, from the driver's completions
        channel.on_writable(nbytes)
        for completion in channel.on_readable(data, clock.elapsed_us()):
            ...

    Note: outgoing() returns a memoryview over the send buffer; release it
    (use it as a context manager) before calling enqueue() again.
    """

    def __init__(self, index: int, server: str, pipelining: Optional[int] = None):
        if pipelining is not None and pipelining < 1:
            raise ValueError(f"pipelining must be >= 1, got {pipelining}")

        self.index = index
        self.server = server
        self.pipelining = pipelining

        self._send_buf = bytearray()
        self._send_offset = 0
        self._pending_sends: Deque[bytes] = deque()
        self._recv_buf = bytearray()

        self.write_inflight = False
        self.read_inflight = False
        self.inflight = 0

        # Transport accounting
        self.bytes_sent = 0
        self.bytes_received = 0
        self.messages_received = 0

    def __repr__(self) -> str:
        return f"Channel(index={self.index}, server={self.server!r}, inflight={self.inflight})"

    # ------------------------------------------------------------------
    # Send side
    # ------------------------------------------------------------------

    def enqueue(self, data: bytes, expects_response: bool = True) -> bool:
        """
        Queue one serialized message for sending

        Args:
            data: Message bytes including the trailing newline
            expects_response: False for notifications (no pipelining slot used)

        Returns:
            True if the caller must submit a write (none is in flight)

        Raises:
            CapacityError: If the channel is already at its pipelining limit
        """
        if expects_response:
            if self.pipelining is not None and self.inflight >= self.pipelining:
                raise CapacityError(
                    f"Channel {self.index} is at its pipelining limit ({self.pipelining})",
                    self.server,
                )
            self.inflight += 1

        if self.write_inflight:
            self._pending_sends.append(bytes(data))
            return False

        self._send_buf += data
        return True

    def has_unsent(self) -> bool:
        return self._send_offset < len(self._send_buf) or bool(self._pending_sends)

    def outgoing(self) -> memoryview:
        """View of the bytes not yet written"""
        return memoryview(self._send_buf)[self._send_offset:]

    def begin_write(self) -> None:
        if self.write_inflight:
            raise RuntimeError(f"Channel {self.index} already has a write in flight")
        self._swap_in_pending()
        self.write_inflight = True

    def on_writable(self, nbytes: int) -> bool:
        """
        Account for a completed write

        Args:
            nbytes: Bytes the kernel accepted

        Returns:
            True if unsent bytes remain and another write must be submitted

        Raises:
            ChannelClosedError: If zero bytes were written (peer closed)
        """
        self.write_inflight = False
        if nbytes <= 0:
            raise ChannelClosedError("Connection closed by server (0 bytes written)", self.server)

        remaining = len(self._send_buf) - self._send_offset
        if nbytes > remaining:
            raise RuntimeError(
                f"Channel {self.index} wrote {nbytes} bytes but only {remaining} were queued"
            )

        self._send_offset += nbytes
        self.bytes_sent += nbytes
        if self._send_offset >= len(self._send_buf):
            self._send_buf.clear()
            self._send_offset = 0
            self._swap_in_pending()

        return self.has_unsent()

    def _swap_in_pending(self) -> None:
        if self._send_offset < len(self._send_buf):
            # Active buffer still has data; pending sends go after it
            while self._pending_sends:
                self._send_buf += self._pending_sends.popleft()
            return

        self._send_buf.clear()
        self._send_offset = 0
        while self._pending_sends:
            self._send_buf += self._pending_sends.popleft()

    # ------------------------------------------------------------------
    # Receive side
    # ------------------------------------------------------------------

    def begin_read(self) -> None:
        if self.read_inflight:
            raise RuntimeError(f"Channel {self.index} already has a read in flight")
        self.read_inflight = True

    def on_readable(self, data: bytes, end_time_us: int) -> List[Completion]:
        """
        Accumulate received bytes and cut out complete messages

        Only the newly appended bytes are scanned for the delimiter.

        Args:
            data: Bytes returned by the read
            end_time_us: Timestamp stamped on every message completed by this read

        Returns:
            Completed messages (blank lines are skipped)

        Raises:
            ChannelClosedError: If zero bytes were read (peer closed)
            ProtocolError: If more responses arrived than requests are in flight
        """
        self.read_inflight = False
        if not data:
            raise ChannelClosedError("Connection closed by server", self.server)

        self.bytes_received += len(data)
        scan_from = len(self._recv_buf)
        self._recv_buf += data

        completions: List[Completion] = []
        line_start = 0
        pos = self._recv_buf.find(MESSAGE_DELIMITER, scan_from)
        while pos != -1:
            line = bytes(self._recv_buf[line_start:pos])
            if line.strip():
                completions.append(Completion(line=line, end_time_us=end_time_us))
            line_start = pos + 1
            pos = self._recv_buf.find(MESSAGE_DELIMITER, line_start)

        if line_start:
            del self._recv_buf[:line_start]

        if completions:
            if len(completions) > self.inflight:
                raise ProtocolError(
                    f"Too many responses ({len(completions)} received, {self.inflight} in flight)",
                    completions[-1].line.decode("utf-8", errors="replace"),
                    self.server,
                )
            self.inflight -= len(completions)
            self.messages_received += len(completions)

        return completions

    @property
    def buffered_bytes(self) -> int:
        """Bytes received that do not yet form a complete message"""
        return len(self._recv_buf)
