"""
Single-threaded event-loop engine used by `bench`

One thread owns every channel, the scheduler and the correlators, so no
locks are needed. The loop only suspends inside driver.poll_events().
"""

import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional

from rpcbench.config_loader import Config, get_config
from rpcbench.engine.channel import Channel
from rpcbench.engine.correlator import Correlator, SessionIds
from rpcbench.engine.driver import OP_WRITE, ChannelIoDriver, IoEvent, create_driver
from rpcbench.engine.scheduler import DispatchScheduler
from rpcbench.engine.transport import open_socket, peer_name
from rpcbench.errors import ProtocolError, RpcBenchError, SubmissionQueueFull
from rpcbench.protocol import Request, parse_response
from rpcbench.records import MonotonicClock, OutputRecord

logger = logging.getLogger(__name__)

Sink = Callable[[OutputRecord], None]

# Upper bound on one poll so stall warnings fire on time
MAX_POLL_TIMEOUT_S = 1.0


class BenchRunner:
    """
    Pipelined multi-channel dispatcher

    Usage:
        with BenchRunner.connect(["127.0.0.1:8080"], concurrency=16, sink=records.append) as runner:
            runner.run(requests)

    Args:
        channels: Registered channels, indexed 0..n-1
        driver: I/O driver the channels are registered with
        concurrency: Global in-flight budget across all channels
        sink: Called once per response in completion order
        clock: Shared timestamp source
        collect_metadata: Attach Metadata to every record
        stall_warning_s: Log pending calls after this long without events
    """

    def __init__(
        self,
        channels: List[Channel],
        driver: ChannelIoDriver,
        concurrency: int,
        sink: Sink,
        clock: Optional[MonotonicClock] = None,
        collect_metadata: bool = True,
        stall_warning_s: float = 5.0,
    ):
        if not channels:
            raise ValueError("BenchRunner requires at least one channel")

        self.channels = channels
        self.driver = driver
        self.sink = sink
        self.clock = clock or MonotonicClock()
        self.collect_metadata = collect_metadata
        self.stall_warning_s = stall_warning_s

        self.scheduler = DispatchScheduler(len(channels), concurrency)
        self._session_ids = SessionIds()
        # With a budget of one no channel ever has two calls outstanding
        positional = 1 if concurrency == 1 else None
        self.correlators = [
            Correlator(channel.server, positional, session_ids=self._session_ids)
            for channel in channels
        ]

        # Statistics
        self.records_emitted = 0
        self.notifications_sent = 0
        self.stall_warnings = 0
        self.calls_abandoned = 0
        # Channel index -> the error that took it down
        self.failed_channels: Dict[int, RpcBenchError] = {}

    @classmethod
    def connect(
        cls,
        servers: List[str],
        concurrency: int,
        sink: Sink,
        io_driver: Optional[str] = None,
        dry_run: bool = False,
        collect_metadata: bool = True,
        config: Optional[Config] = None,
    ) -> "BenchRunner":
        """
        Open one channel per server and register it with a fresh driver

        Raises:
            ConnectionSetupError: If any server cannot be reached
        """
        config = config or get_config()
        driver = create_driver(
            io_driver or config.io_driver,
            len(servers),
            dry_run=dry_run,
            read_chunk_size=config.read_chunk_size,
            min_ring_entries=config.min_ring_entries,
        )

        channels: List[Channel] = []
        try:
            for index, server in enumerate(servers):
                if dry_run:
                    channel = Channel(index, server)
                    driver.register(channel)
                else:
                    sock = open_socket(server, config.get_connect_timeout_seconds(), config.tcp_nodelay)
                    channel = Channel(index, peer_name(sock, server))
                    driver.register(channel, sock)
                channels.append(channel)
        except BaseException:
            driver.close()
            raise

        logger.info(
            f"Connected {len(channels)} channel(s) using {driver.name} driver "
            f"(concurrency={concurrency})"
        )
        return cls(
            channels,
            driver,
            concurrency,
            sink,
            collect_metadata=collect_metadata,
            stall_warning_s=config.get_stall_warning_seconds(),
        )

    def __enter__(self) -> "BenchRunner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.driver.close()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self, requests: Iterable[Request]) -> int:
        """
        Dispatch every request and emit every response

        A channel whose peer closes, whose socket fails or whose server
        misbehaves is dropped with its pending calls; the remaining channels
        carry the rest of the input. failed_channels lists what was lost.

        Returns:
            Number of records handed to the sink

        Raises:
            ChannelClosedError: If the last live peer closes or its socket fails
            ProtocolError: If the last live server sends malformed or excess responses
            CorrelationError: If input ids are duplicated, or the last live
                server answers an unknown id
        """
        pending: Deque[Request] = deque(requests)
        total = len(pending)
        logger.debug(f"Starting run with {total} request(s)")

        for channel in self.channels:
            self._submit(self.driver.submit_read, channel)
        self._flush()

        last_event = time.monotonic()
        while pending or self.scheduler.total_inflight or self._has_unsent():
            self._dispatch(pending)
            self._flush()

            events = self.driver.poll_events(self._poll_timeout())
            if not events:
                idle = time.monotonic() - last_event
                if idle >= self.stall_warning_s:
                    self._warn_stall(idle)
                    last_event = time.monotonic()
                continue

            last_event = time.monotonic()
            for event in events:
                if self.scheduler.is_dead(event.channel_index):
                    continue
                channel = self.channels[event.channel_index]
                try:
                    self._handle(channel, event)
                except RpcBenchError as exc:
                    self._fail_channel(channel, exc)

        if self.failed_channels:
            logger.error(
                f"Run finished with {len(self.failed_channels)} failed channel(s): "
                f"{self.calls_abandoned} call(s) abandoned"
            )
        logger.info(
            f"Run complete: {self.records_emitted} record(s), "
            f"{self.notifications_sent} notification(s), "
            f"peak in-flight {self.scheduler.peak_inflight}"
        )
        return self.records_emitted

    def _poll_timeout(self) -> float:
        return min(self.stall_warning_s, MAX_POLL_TIMEOUT_S)

    def _has_unsent(self) -> bool:
        return any(
            channel.has_unsent() or channel.write_inflight
            for channel in self.channels
            if not self.scheduler.is_dead(channel.index)
        )

    def _fail_channel(self, channel: Channel, exc: RpcBenchError) -> None:
        correlator = self.correlators[channel.index]
        pending_ids = correlator.pending_ids()
        abandoned = correlator.abandon()
        self.scheduler.mark_dead(channel.index)
        self.driver.unregister(channel)
        self.failed_channels[channel.index] = exc
        self.calls_abandoned += abandoned

        logger.error(
            f"Channel {channel.server} failed, abandoning {abandoned} call(s) "
            f"(ids {pending_ids[:5]}): {exc}"
        )
        if not self.scheduler.live_count:
            raise exc

    def _dispatch(self, pending: Deque[Request]) -> None:
        while pending:
            request = pending[0]
            if request.is_notification:
                index = self.scheduler.least_loaded()
            elif self.scheduler.has_capacity():
                index = self.scheduler.acquire()
            else:
                return
            pending.popleft()

            channel = self.channels[index]
            start_time_us = self.clock.elapsed_us()
            self.correlators[index].register(request, start_time_us, self.collect_metadata)
            if request.is_notification:
                self.notifications_sent += 1
            if channel.enqueue(request.to_line(), expects_response=not request.is_notification):
                self._submit(self.driver.submit_write, channel)

    def _handle(self, channel: Channel, event: IoEvent) -> None:
        if event.error is not None:
            raise event.error

        if event.op == OP_WRITE:
            if channel.on_writable(event.nbytes):
                self._submit(self.driver.submit_write, channel)
            return

        end_time_us = self.clock.elapsed_us()
        correlator = self.correlators[channel.index]
        for completion in channel.on_readable(event.data, end_time_us):
            try:
                response = parse_response(completion.line)
            except ProtocolError as exc:
                raise ProtocolError(exc.reason, exc.text, channel.server) from exc
            record = correlator.resolve(response, completion.end_time_us)
            self.scheduler.release(channel.index)
            self.sink(record)
            self.records_emitted += 1

        self._submit(self.driver.submit_read, channel)

    def _submit(self, submit: Callable[[Channel], None], channel: Channel) -> None:
        try:
            submit(channel)
        except SubmissionQueueFull:
            logger.debug("Submission queue full, flushing before retry")
            self.driver.flush()
            submit(channel)

    def _flush(self) -> None:
        self.driver.flush()

    def _warn_stall(self, idle_s: float) -> None:
        self.stall_warnings += 1
        waiting = [
            f"{correlator.server} ({correlator.pending_count} pending, ids {correlator.pending_ids()[:5]})"
            for correlator in self.correlators
            if correlator.pending_count
        ]
        logger.warning(
            f"No I/O completions for {idle_s:.1f}s; still waiting on: "
            f"{', '.join(waiting) if waiting else 'nothing pending'}"
        )
