"""
Worker-per-channel engine used by `call` and `stream-call`

Thread layout:
    reader (calling thread)  parses input, reassigns ids, balances work
    ChannelWorker x N        blocking send/receive on one connection each
    OutputWriter             prints records in arrival order

Each worker keeps up to `pipelining` calls outstanding on its connection.
A worker that hits a fatal error logs it and exits; the others keep going.
Workers share one SessionIds set so an id in flight on one connection is
rejected on every other.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

from rpcbench.config_loader import Config, get_config
from rpcbench.engine.correlator import Correlator, IdAllocator, SessionIds
from rpcbench.engine.scheduler import QueueBalancer
from rpcbench.engine.transport import (
    DryRunTransport,
    SocketTransport,
    Transport,
    open_socket,
    peer_name,
)
from rpcbench.errors import ProtocolError, RpcBenchError
from rpcbench.protocol import Request, RequestId, parse_request, parse_response
from rpcbench.records import MonotonicClock, OutputRecord

logger = logging.getLogger(__name__)

# Queue sentinel: no more input (workers) / no more records (writer)
CLOSE = object()


@dataclass
class WorkItem:
    """One parsed input line routed to a worker"""

    request: Request
    collect_metadata: bool = False
    original_id: Optional[RequestId] = None


class ChannelWorker(threading.Thread):
    """
    Owns one Transport and the calls in flight on it

    Args:
        index: Worker number (used in the thread name)
        transport: Connected transport
        input_queue: Bounded queue fed by the reader
        output_queue: Shared queue drained by the OutputWriter
        pipelining: Max calls outstanding on this connection
        clock: Shared timestamp source
        session_ids: Ids in flight across all workers of the session
    """

    def __init__(
        self,
        index: int,
        transport: Transport,
        input_queue: "queue.Queue[Any]",
        output_queue: "queue.Queue[Any]",
        pipelining: int,
        clock: MonotonicClock,
        session_ids: Optional[SessionIds] = None,
    ):
        super().__init__(name=f"rpcbench-worker-{index}", daemon=True)
        if pipelining < 1:
            raise ValueError(f"pipelining must be >= 1, got {pipelining}")

        self.index = index
        self.transport = transport
        self.input_queue = input_queue
        self.output_queue = output_queue
        self.pipelining = pipelining
        self.clock = clock
        self.correlator = Correlator(transport.server, pipelining, session_ids=session_ids)

        self.inflight = 0
        self.peak_inflight = 0
        self.error: Optional[BaseException] = None
        self._input_closed = False

        # Statistics
        self.sent = 0
        self.received = 0
        self.stall_warnings = 0

    def run(self) -> None:
        try:
            while self._step():
                pass
        except (RpcBenchError, OSError) as exc:
            self.error = exc
            logger.error(f"Thread aborted: {exc}")
        finally:
            abandoned = self.correlator.abandon()
            if abandoned:
                logger.debug(f"Worker {self.index} abandoned {abandoned} pending call(s)")
            self.transport.close()
            logger.debug(
                f"Worker {self.index} ({self.transport.server}) finished: "
                f"sent={self.sent} received={self.received}"
            )

    def _step(self) -> bool:
        """Fill the pipeline from the input queue, then wait for one response"""
        while not self._input_closed and self.inflight < self.pipelining:
            # Only block for input when nothing is outstanding
            try:
                item = self.input_queue.get(block=self.inflight == 0)
            except queue.Empty:
                break
            if item is CLOSE:
                self._input_closed = True
                break
            self._send(item)

        if self.inflight == 0:
            return False

        self._receive()
        return True

    def _send(self, item: WorkItem) -> None:
        request = item.request
        start_time_us = self.clock.elapsed_us()
        self.correlator.register(request, start_time_us, item.collect_metadata, item.original_id)
        self.transport.send(request)
        self.sent += 1
        if not request.is_notification:
            self.inflight += 1
            self.peak_inflight = max(self.peak_inflight, self.inflight)

    def _receive(self) -> None:
        completion = self.transport.recv_line(self._warn_stall)
        try:
            response = parse_response(completion.line)
        except ProtocolError as exc:
            raise ProtocolError(exc.reason, exc.text, self.transport.server) from exc

        record = self.correlator.resolve(response, completion.end_time_us)
        self.inflight -= 1
        self.received += 1
        self.output_queue.put(record)

    def _warn_stall(self, waited_s: float) -> None:
        self.stall_warnings += 1
        logger.warning(
            f"No response from {self.transport.server} for {waited_s:.1f}s; "
            f"{self.correlator.pending_count} pending, ids {self.correlator.pending_ids()[:5]}"
        )


class OutputWriter(threading.Thread):
    """Drains the shared output queue into `write` until CLOSE arrives"""

    def __init__(self, output_queue: "queue.Queue[Any]", write: Callable[[OutputRecord], None]):
        super().__init__(name="rpcbench-output", daemon=True)
        self.output_queue = output_queue
        self.write = write
        self.written = 0
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        while True:
            record = self.output_queue.get()
            if record is CLOSE:
                return
            if self.error is not None:
                continue
            try:
                self.write(record)
                self.written += 1
            except Exception as exc:
                # Keep draining so workers never block on a dead writer
                self.error = exc
                logger.error(f"Failed to write output: {exc}")


class StreamCaller:
    """
    Fan input lines out over one worker per server

    Usage:
        caller = StreamCaller(["127.0.0.1:8080"], pipelining=4, sink=print_record)
        failed = caller.run(sys.stdin)

    Args:
        servers: Target addresses, one connection (and worker) each
        pipelining: Max outstanding calls per connection
        add_metadata: Attach Metadata and reassign ids to globally unique integers
        dry_run: Use DryRunTransport instead of sockets
        sink: Receives each OutputRecord on the writer thread
        config: Runtime configuration (defaults to get_config())
    """

    def __init__(
        self,
        servers: List[str],
        sink: Callable[[OutputRecord], None],
        pipelining: Optional[int] = None,
        add_metadata: bool = False,
        dry_run: bool = False,
        config: Optional[Config] = None,
    ):
        if not servers:
            raise ValueError("StreamCaller requires at least one server")

        self.config = config or get_config()
        self.servers = servers
        self.sink = sink
        self.pipelining = pipelining if pipelining is not None else self.config.pipelining
        if self.pipelining < 1:
            raise ValueError(f"pipelining must be >= 1, got {self.pipelining}")
        self.add_metadata = add_metadata
        self.dry_run = dry_run

        self.clock = MonotonicClock()
        self.ids = IdAllocator()
        self.session_ids = SessionIds()
        self.workers: List[ChannelWorker] = []
        self.writer: Optional[OutputWriter] = None

    @property
    def queue_capacity(self) -> int:
        return 2 * self.pipelining + self.config.queue_slack

    def _open_transports(self) -> List[Transport]:
        transports: List[Transport] = []
        try:
            for server in self.servers:
                if self.dry_run:
                    transports.append(DryRunTransport(server, self.clock))
                    continue
                sock = open_socket(
                    server,
                    self.config.get_connect_timeout_seconds(),
                    self.config.tcp_nodelay,
                )
                transports.append(
                    SocketTransport(
                        sock,
                        peer_name(sock, server),
                        self.clock,
                        self.config.read_chunk_size,
                        self.config.get_stall_warning_seconds(),
                    )
                )
        except BaseException:
            for transport in transports:
                transport.close()
            raise
        return transports

    def _start(self) -> QueueBalancer:
        transports = self._open_transports()
        output_queue: "queue.Queue[Any]" = queue.Queue()

        self.writer = OutputWriter(output_queue, self.sink)
        self.workers = [
            ChannelWorker(
                index,
                transport,
                queue.Queue(maxsize=self.queue_capacity),
                output_queue,
                self.pipelining,
                self.clock,
                self.session_ids,
            )
            for index, transport in enumerate(transports)
        ]

        self.writer.start()
        for worker in self.workers:
            worker.start()
        logger.info(
            f"Started {len(self.workers)} worker(s) with pipelining {self.pipelining}"
        )

        return QueueBalancer(
            [worker.input_queue for worker in self.workers],
            lambda index: self.workers[index].is_alive(),
            backoff_s=self.config.get_queue_put_backoff_seconds(),
        )

    def _to_item(self, request: Request) -> WorkItem:
        if not self.add_metadata:
            return WorkItem(request=request)
        request, original_id = self.ids.reassign(request)
        return WorkItem(request=request, collect_metadata=True, original_id=original_id)

    def _close_worker(self, worker: ChannelWorker) -> None:
        # A dead worker may leave its queue full; never block on it
        while worker.is_alive():
            try:
                worker.input_queue.put(CLOSE, timeout=self.config.get_queue_put_backoff_seconds())
                return
            except queue.Full:
                continue

    def _shutdown(self) -> None:
        for worker in self.workers:
            self._close_worker(worker)
        for worker in self.workers:
            worker.join()
        if self.writer is not None:
            self.writer.output_queue.put(CLOSE)
            self.writer.join()

    def run(self, lines: Iterable[str], preread: bool = False) -> int:
        """
        Send every non-blank input line and print every response

        Args:
            lines: JSON-RPC request lines
            preread: Parse all input before the first send

        Returns:
            Number of workers that aborted

        Raises:
            ConnectionSetupError: If a server cannot be reached
            ProtocolError: If an input line is not a valid request
            ChannelClosedError: If every worker died before input ran out
        """
        if preread:
            requests: Iterable[Request] = [parse_request(line) for line in lines if line.strip()]
            logger.debug(f"Preread {len(requests)} request(s)")
        else:
            requests = (parse_request(line) for line in lines if line.strip())

        balancer = self._start()
        try:
            for request in requests:
                balancer.put(self._to_item(request))
        finally:
            self._shutdown()

        if self.writer is not None and self.writer.error is not None:
            raise self.writer.error

        failed = sum(1 for worker in self.workers if worker.error is not None)
        if failed:
            logger.warning(f"{failed} of {len(self.workers)} worker(s) aborted")
        return failed
