"""
Pytest configuration for TCP integration tests

Runs the echo server on an ephemeral loopback port in a background thread
so blocking clients can talk to it from the test thread.
"""

import asyncio
import socket
import threading

import pytest

from rpcbench.echo_server import EchoServer


class EchoServerThread(threading.Thread):
    """Own event loop hosting one EchoServer"""

    def __init__(self):
        super().__init__(daemon=True, name="echo-server")
        self.server = EchoServer("127.0.0.1", 0)
        self.loop = asyncio.new_event_loop()
        self.ready = threading.Event()

    @property
    def addr(self):
        host, port = self.server.address
        return f"{host}:{port}"

    def run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_until_complete(self.server.start())
        self.ready.set()
        self.loop.run_forever()
        self.loop.run_until_complete(self.server.stop())
        self.loop.close()

    def stop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.join(5.0)


@pytest.fixture
def echo_server():
    """Running echo server; yields the thread (see `.addr`, `.server`)"""
    thread = EchoServerThread()
    thread.start()
    assert thread.ready.wait(5.0), "echo server did not start"

    yield thread

    thread.stop()


class HangupServerThread(threading.Thread):
    """Accepts connections and closes each one after its first read"""

    def __init__(self):
        super().__init__(daemon=True, name="hangup-server")
        self.listener = socket.create_server(("127.0.0.1", 0))
        self.listener.settimeout(0.2)
        self.stopping = threading.Event()

    @property
    def addr(self):
        host, port = self.listener.getsockname()[:2]
        return f"{host}:{port}"

    def run(self):
        with self.listener:
            while not self.stopping.is_set():
                try:
                    conn, _ = self.listener.accept()
                except socket.timeout:
                    continue
                with conn:
                    conn.settimeout(2.0)
                    try:
                        conn.recv(4096)
                    except OSError:
                        pass

    def stop(self):
        self.stopping.set()
        self.join(5.0)


@pytest.fixture
def hangup_server():
    """Server that drops every connection once a request arrives"""
    thread = HangupServerThread()
    thread.start()

    yield thread

    thread.stop()
