"""
Connection setup and blocking transports for the worker-per-channel model

SocketTransport reuses Channel for its buffering so partial sends and
messages split across reads are handled by the same code as the event
loop. DryRunTransport answers every request locally with `result: null`.

With a stall timeout set, a SocketTransport never blocks silently: every
`stall_warning_s` without progress it reports the wait through `on_stall`
(receive) or a log line (send) and keeps waiting.
"""

import logging
import socket
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, Optional

from rpcbench.addresses import split_host_port
from rpcbench.engine.channel import Channel, Completion
from rpcbench.errors import ChannelClosedError, ConnectionSetupError
from rpcbench.protocol import Request, serialize, synthesize_response
from rpcbench.records import MonotonicClock

logger = logging.getLogger(__name__)

# Called with the seconds spent waiting so far
StallCallback = Callable[[float], None]


def open_socket(server: str, timeout_s: float, tcp_nodelay: bool = True) -> socket.socket:
    """
    Connect to a `host:port` target

    Raises:
        ConnectionSetupError: If the address is invalid or the connection fails
    """
    try:
        host, port = split_host_port(server)
    except ValueError as exc:
        raise ConnectionSetupError(server, str(exc)) from exc

    try:
        sock = socket.create_connection((host, port), timeout=timeout_s)
    except OSError as exc:
        raise ConnectionSetupError(server, str(exc)) from exc

    sock.settimeout(None)
    if tcp_nodelay:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    logger.debug(f"Connected to {server}")
    return sock


def peer_name(sock: socket.socket, fallback: str) -> str:
    """`host:port` of the connected peer (IPv6 hosts bracketed)"""
    try:
        address = sock.getpeername()
    except OSError:
        return fallback
    host, port = address[0], address[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class Transport(ABC):
    """Blocking, line-oriented connection used by one ChannelWorker"""

    server: str

    @abstractmethod
    def send(self, request: Request) -> None:
        """Write one request line (blocks until fully written)"""

    @abstractmethod
    def recv_line(self, on_stall: Optional[StallCallback] = None) -> Completion:
        """Block until one complete response line is available"""

    def close(self) -> None:
        pass


class SocketTransport(Transport):
    def __init__(
        self,
        sock: socket.socket,
        server: str,
        clock: MonotonicClock,
        read_chunk_size: int = 4096,
        stall_warning_s: Optional[float] = None,
    ):
        self.sock = sock
        self.server = server
        self.clock = clock
        self.read_chunk_size = read_chunk_size
        self.stall_warning_s = stall_warning_s
        if stall_warning_s:
            sock.settimeout(stall_warning_s)
        self._channel = Channel(0, server)
        self._ready: Deque[Completion] = deque()

    def send(self, request: Request) -> None:
        self._channel.enqueue(request.to_line(), expects_response=not request.is_notification)
        more = True
        while more:
            self._channel.begin_write()
            try:
                with self._channel.outgoing() as view:
                    nbytes = self.sock.send(view)
            except socket.timeout:
                self._channel.write_inflight = False
                logger.warning(
                    f"Send to {self.server} blocked for {self.stall_warning_s:.1f}s; "
                    f"{self._channel.inflight} call(s) in flight"
                )
                continue
            except OSError as exc:
                raise ChannelClosedError(f"Failed to send request: {exc}", self.server) from exc
            more = self._channel.on_writable(nbytes)

    def recv_line(self, on_stall: Optional[StallCallback] = None) -> Completion:
        waited_s = 0.0
        while not self._ready:
            self._channel.begin_read()
            try:
                data = self.sock.recv(self.read_chunk_size)
            except socket.timeout:
                self._channel.read_inflight = False
                waited_s += self.stall_warning_s
                if on_stall is not None:
                    on_stall(waited_s)
                continue
            except OSError as exc:
                raise ChannelClosedError(f"Failed to read response: {exc}", self.server) from exc
            self._ready.extend(self._channel.on_readable(data, self.clock.elapsed_us()))
        return self._ready.popleft()

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError as exc:
            logger.debug(f"Ignoring error while closing {self.server}: {exc}")


class DryRunTransport(Transport):
    """Answers locally; replies come back in send order"""

    def __init__(self, server: str, clock: MonotonicClock):
        self.server = server
        self.clock = clock
        self._replies: Deque[bytes] = deque()

    def send(self, request: Request) -> None:
        reply = synthesize_response(request)
        if reply is not None:
            self._replies.append(serialize(reply).encode("utf-8"))

    def recv_line(self, on_stall: Optional[StallCallback] = None) -> Completion:
        if not self._replies:
            raise ChannelClosedError("Dry run has no response pending", self.server)
        return Completion(line=self._replies.popleft(), end_time_us=self.clock.elapsed_us())
