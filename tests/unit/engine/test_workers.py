"""
Unit tests for the worker-per-channel engine

Test Coverage:
- ChannelWorker pipelining bound and notification handling
- duplicate ids across workers and stall reporting on a silent peer
- SocketTransport framing over a socketpair
- StreamCaller dry runs, id reassignment and worker failure
"""

import queue
import socket
import threading
import time
from collections import deque

import orjson
import pytest

from rpcbench.engine.channel import Completion
from rpcbench.engine.correlator import SessionIds
from rpcbench.engine.transport import DryRunTransport, SocketTransport, Transport
from rpcbench.engine.workers import CLOSE, ChannelWorker, OutputWriter, StreamCaller, WorkItem
from rpcbench.errors import ChannelClosedError, CorrelationError, ProtocolError
from rpcbench.protocol import parse_request, serialize, synthesize_response
from rpcbench.records import MonotonicClock


class CountingTransport(Transport):
    """Answers in order and records the most calls ever outstanding"""

    def __init__(self, server="fake:1"):
        self.server = server
        self.clock = MonotonicClock()
        self.outstanding = deque()
        self.max_outstanding = 0
        self.sent = []
        self.closed = False

    def send(self, request):
        self.sent.append(request)
        reply = synthesize_response(request)
        if reply is not None:
            self.outstanding.append(serialize(reply).encode())
            self.max_outstanding = max(self.max_outstanding, len(self.outstanding))

    def recv_line(self, on_stall=None):
        return Completion(self.outstanding.popleft(), self.clock.elapsed_us())

    def close(self):
        self.closed = True


class FailingTransport(CountingTransport):
    def recv_line(self, on_stall=None):
        raise ChannelClosedError("Connection closed by server", self.server)


class GatedTransport(CountingTransport):
    """Holds every reply until `gate` is set"""

    def __init__(self, server="gated:1"):
        super().__init__(server)
        self.gate = threading.Event()

    def recv_line(self, on_stall=None):
        self.gate.wait(5.0)
        return super().recv_line(on_stall)


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


def lines(count, notify_every=0):
    out = []
    for index in range(count):
        if notify_every and index % notify_every == 1:
            out.append(f'{{"jsonrpc":"2.0","method":"n{index}"}}\n')
        else:
            out.append(f'{{"jsonrpc":"2.0","method":"m","id":"req-{index}"}}\n')
    return out


def run_worker(transport, items, pipelining, session_ids=None):
    input_queue = queue.Queue()
    output_queue = queue.Queue()
    for item in items:
        input_queue.put(item)
    input_queue.put(CLOSE)
    worker = ChannelWorker(0, transport, input_queue, output_queue, pipelining, MonotonicClock(), session_ids)
    worker.start()
    worker.join(5.0)
    records = []
    while not output_queue.empty():
        records.append(output_queue.get_nowait())
    return worker, records


class TestChannelWorker:
    """Test a single worker against a fake transport"""

    @pytest.mark.parametrize("pipelining", [1, 3, 8])
    def test_inflight_never_exceeds_pipelining(self, pipelining):
        """Test at most `pipelining` calls are outstanding"""
        transport = CountingTransport()
        items = [WorkItem(parse_request(line)) for line in lines(30)]

        worker, records = run_worker(transport, items, pipelining)

        assert not worker.is_alive()
        assert worker.error is None
        assert len(records) == 30
        assert transport.max_outstanding <= pipelining
        assert worker.peak_inflight <= pipelining
        assert transport.closed is True

    def test_send_order_is_assignment_order(self):
        """Test requests go out in the order they were queued"""
        transport = CountingTransport()
        items = [WorkItem(parse_request(line)) for line in lines(10)]

        run_worker(transport, items, pipelining=4)

        assert [request.id for request in transport.sent] == [f"req-{i}" for i in range(10)]

    def test_notifications_do_not_wait(self):
        """Test notifications are sent without occupying a slot"""
        transport = CountingTransport()
        items = [WorkItem(parse_request(line)) for line in lines(10, notify_every=2)]

        worker, records = run_worker(transport, items, pipelining=1)

        assert len(transport.sent) == 10
        assert len(records) == 5
        assert worker.sent == 10
        assert worker.received == 5

    def test_metadata_collected(self):
        transport = CountingTransport()
        items = [WorkItem(parse_request(line), collect_metadata=True, original_id="orig") for line in lines(2)]

        _, records = run_worker(transport, items, pipelining=2)

        for record in records:
            assert record.metadata.server == "fake:1"
            assert record.metadata.original_id == "orig"
            assert record.metadata.start_time_us <= record.metadata.end_time_us

    def test_abort_logs_and_records_error(self, caplog):
        """Test a failing channel aborts only its worker with a log line"""
        transport = FailingTransport("bad:1")
        items = [WorkItem(parse_request(line)) for line in lines(3)]

        with caplog.at_level("ERROR", logger="rpcbench.engine.workers"):
            worker, records = run_worker(transport, items, pipelining=1)

        assert isinstance(worker.error, ChannelClosedError)
        assert records == []
        assert "Thread aborted" in caplog.text
        assert "bad:1" in caplog.text
        assert transport.closed is True

    def test_id_in_flight_on_another_worker(self):
        """Test a duplicate id held by one worker aborts the other worker"""
        session = SessionIds()
        duplicate = parse_request('{"jsonrpc":"2.0","method":"m","id":"dup"}')
        held = GatedTransport("held:1")
        holder_input = queue.Queue()
        holder_output = queue.Queue()
        holder = ChannelWorker(1, held, holder_input, holder_output, 1, MonotonicClock(), session)
        holder_input.put(WorkItem(duplicate))
        holder.start()
        wait_for(lambda: "dup" in session)

        other = CountingTransport("other:1")
        worker, records = run_worker(other, [WorkItem(duplicate)], pipelining=1, session_ids=session)

        assert isinstance(worker.error, CorrelationError)
        assert other.sent == []
        assert records == []

        held.gate.set()
        holder_input.put(CLOSE)
        holder.join(5.0)
        assert holder.error is None
        assert holder_output.qsize() == 1
        assert len(session) == 0

    def test_silent_peer_is_reported(self, caplog):
        """Test a worker waiting on a silent server logs the server and pending ids"""
        left, right = socket.socketpair()
        transport = SocketTransport(left, "silent:1", MonotonicClock(), stall_warning_s=0.05)
        input_queue = queue.Queue()
        output_queue = queue.Queue()
        worker = ChannelWorker(0, transport, input_queue, output_queue, 1, MonotonicClock())
        input_queue.put(WorkItem(parse_request(lines(1)[0])))
        input_queue.put(CLOSE)

        with caplog.at_level("WARNING", logger="rpcbench.engine.workers"):
            worker.start()
            wait_for(lambda: worker.stall_warnings >= 1)
            right.sendall(b'{"jsonrpc":"2.0","id":"req-0","result":null}\n')
            worker.join(5.0)

        assert worker.error is None
        assert output_queue.qsize() == 1
        assert "silent:1" in caplog.text
        assert "req-0" in caplog.text
        right.close()


class TestOutputWriter:
    def test_writes_until_close(self):
        output_queue = queue.Queue()
        written = []
        writer = OutputWriter(output_queue, written.append)
        writer.start()
        output_queue.put("a")
        output_queue.put("b")
        output_queue.put(CLOSE)
        writer.join(5.0)

        assert written == ["a", "b"]
        assert writer.written == 2

    def test_keeps_draining_after_write_error(self):
        """Test a broken sink never blocks producers"""
        output_queue = queue.Queue()

        def broken(record):
            raise BrokenPipeError("stdout closed")

        writer = OutputWriter(output_queue, broken)
        writer.start()
        for item in range(5):
            output_queue.put(item)
        output_queue.put(CLOSE)
        writer.join(5.0)

        assert not writer.is_alive()
        assert isinstance(writer.error, BrokenPipeError)
        assert output_queue.empty()

    def test_any_sink_error_is_kept(self):
        """Test a non-OS sink failure is recorded and draining continues"""
        output_queue = queue.Queue()

        def unencodable(record):
            raise UnicodeEncodeError("ascii", "\u00e9", 0, 1, "ordinal not in range(128)")

        writer = OutputWriter(output_queue, unencodable)
        writer.start()
        for item in range(3):
            output_queue.put(item)
        output_queue.put(CLOSE)
        writer.join(5.0)

        assert not writer.is_alive()
        assert isinstance(writer.error, UnicodeEncodeError)
        assert writer.written == 0


class TestSocketTransport:
    """Test blocking framing over a socketpair"""

    def test_send_and_split_reply(self):
        """Test a reply split across reads is reassembled"""
        left, right = socket.socketpair()
        transport = SocketTransport(left, "pair:1", MonotonicClock(), read_chunk_size=8)
        request = parse_request('{"jsonrpc":"2.0","method":"m","id":1}')

        transport.send(request)
        assert right.recv(1024) == request.to_line()

        right.sendall(b'{"jsonrpc":"2.0",')
        right.sendall(b'"id":1,"result":null}\n')
        completion = transport.recv_line()

        assert completion.line == b'{"jsonrpc":"2.0","id":1,"result":null}'
        transport.close()
        right.close()

    def test_two_replies_in_one_read(self):
        left, right = socket.socketpair()
        transport = SocketTransport(left, "pair:1", MonotonicClock())
        transport.send(parse_request('{"jsonrpc":"2.0","method":"m","id":1}'))
        transport.send(parse_request('{"jsonrpc":"2.0","method":"m","id":2}'))

        right.sendall(b'{"jsonrpc":"2.0","id":1,"result":1}\n{"jsonrpc":"2.0","id":2,"result":2}\n')

        assert orjson.loads(transport.recv_line().line)["id"] == 1
        assert orjson.loads(transport.recv_line().line)["id"] == 2
        transport.close()
        right.close()

    def test_peer_close(self):
        left, right = socket.socketpair()
        transport = SocketTransport(left, "pair:1", MonotonicClock())
        transport.send(parse_request('{"jsonrpc":"2.0","method":"m","id":1}'))
        right.close()

        with pytest.raises(ChannelClosedError):
            transport.recv_line()
        transport.close()

    def test_stall_callback_while_waiting(self):
        """Test each timeout without data reports the total wait and keeps reading"""
        left, right = socket.socketpair()
        transport = SocketTransport(left, "pair:1", MonotonicClock(), stall_warning_s=0.05)
        transport.send(parse_request('{"jsonrpc":"2.0","method":"m","id":1}'))
        stalls = []

        def on_stall(waited_s):
            stalls.append(waited_s)
            if len(stalls) == 2:
                right.sendall(b'{"jsonrpc":"2.0","id":1,"result":null}\n')

        completion = transport.recv_line(on_stall)

        assert orjson.loads(completion.line)["id"] == 1
        assert stalls == pytest.approx([0.05, 0.1])
        transport.close()
        right.close()

    def test_dry_run_transport(self):
        transport = DryRunTransport("dry:1", MonotonicClock())
        transport.send(parse_request('{"jsonrpc":"2.0","method":"m","id":7}'))
        transport.send(parse_request('{"jsonrpc":"2.0","method":"n"}'))

        assert orjson.loads(transport.recv_line().line) == {"jsonrpc": "2.0", "id": 7, "result": None}
        with pytest.raises(ChannelClosedError):
            transport.recv_line()


class TestStreamCaller:
    """Test fan-out over several workers"""

    def test_dry_run_multiple_servers(self, test_config):
        """Test every request is answered exactly once across workers"""
        records = []
        lock = threading.Lock()

        def sink(record):
            with lock:
                records.append(record)

        caller = StreamCaller(["a:1", "b:2"], sink, pipelining=4, dry_run=True, config=test_config)
        failed = caller.run(lines(40, notify_every=4) + ["\n", "   \n"])

        assert failed == 0
        assert len(records) == 30
        assert sorted(r.response.id for r in records) == sorted(
            f"req-{i}" for i in range(40) if i % 4 != 1
        )
        assert all(worker.sent > 0 for worker in caller.workers)

    def test_queue_capacity(self, test_config):
        caller = StreamCaller(["a:1"], lambda record: None, pipelining=3, dry_run=True, config=test_config)

        assert caller.queue_capacity == 2 * 3 + test_config.queue_slack

    def test_add_metadata_reassigns_ids(self, test_config):
        """Test ids become unique integers and the caller's id is kept"""
        records = []
        caller = StreamCaller(
            ["a:1", "b:2"], records.append, pipelining=2, add_metadata=True, dry_run=True, config=test_config
        )
        # The same caller id twice would collide without reassignment
        same_id = '{"jsonrpc":"2.0","method":"m","id":"dup"}\n'

        caller.run([same_id, same_id, same_id])

        assert sorted(record.response.id for record in records) == [0, 1, 2]
        assert all(record.metadata.original_id == "dup" for record in records)

    def test_preread(self, test_config):
        records = []
        caller = StreamCaller(["a:1"], records.append, dry_run=True, config=test_config)

        assert caller.run(iter(lines(5)), preread=True) == 0
        assert len(records) == 5

    def test_malformed_input_raises(self, test_config):
        """Test a bad input line stops the run with ProtocolError"""
        records = []
        caller = StreamCaller(["a:1"], records.append, dry_run=True, config=test_config)

        with pytest.raises(ProtocolError):
            caller.run(lines(2) + ["not json\n"] + lines(2))
        assert all(not worker.is_alive() for worker in caller.workers)

    def test_failed_worker_counted(self, test_config):
        """Test a dead worker is reported while the others finish"""
        records = []
        caller = StreamCaller(["bad:1", "good:2"], records.append, pipelining=1, config=test_config)
        good = DryRunTransport("good:2", caller.clock)
        caller._open_transports = lambda: [FailingTransport("bad:1"), good]

        failed = caller.run(lines(20))

        assert failed == 1
        assert 0 < len(records) < 20
        assert all(record.response.id is not None for record in records)

    def test_output_error_is_raised(self, test_config):
        """Test a sink failure surfaces from run() after shutdown"""
        def unencodable(record):
            raise UnicodeEncodeError("ascii", "\u00e9", 0, 1, "ordinal not in range(128)")

        caller = StreamCaller(["a:1"], unencodable, dry_run=True, config=test_config)

        with pytest.raises(UnicodeEncodeError):
            caller.run(lines(3))
        assert all(not worker.is_alive() for worker in caller.workers)

    def test_requires_server(self, test_config):
        with pytest.raises(ValueError):
            StreamCaller([], lambda record: None, config=test_config)
