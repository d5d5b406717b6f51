"""
JSON-RPC echo server (development and testing)

Every request is answered with a response whose `result` is the request
object itself. Notifications get no answer. Batches are answered with an
array holding one echo per entry that carries an id.
"""

import asyncio
import logging
import signal
from typing import Any, Dict, Optional, Tuple

from rpcbench.addresses import normalize_server_addr, split_host_port
from rpcbench.errors import ProtocolError
from rpcbench.protocol import JSONRPC_VERSION, Request, parse_request, serialize

logger = logging.getLogger(__name__)

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600

# Longest request line accepted from a client
MAX_LINE_BYTES = 16 * 1024 * 1024


def echo_response(request: Request) -> Optional[Any]:
    """Response value for a parsed request (None if nothing should be sent)"""
    if request.is_notification:
        return None
    if request.is_batch:
        return [
            {"jsonrpc": JSONRPC_VERSION, "id": obj["id"], "result": obj}
            for obj in request.value
            if obj.get("id") is not None
        ]
    return {"jsonrpc": JSONRPC_VERSION, "id": request.id, "result": request.value}


def error_response(code: int, message: str) -> Dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": None,
        "error": {"code": code, "message": message},
    }


def handle_line(line: bytes) -> Optional[Any]:
    """
    Turn one request line into the value to send back

    Invalid input is answered with an error object carrying a null id.
    """
    try:
        request = parse_request(line)
    except ProtocolError as exc:
        code = PARSE_ERROR if exc.reason.startswith("Invalid JSON") else INVALID_REQUEST
        logger.debug(f"Rejecting request: {exc}")
        return error_response(code, exc.reason)
    return echo_response(request)


class EchoServer:
    """
    asyncio TCP server speaking JSON Lines

    Usage:
        server = EchoServer("127.0.0.1", 0)
        await server.start()
        print(server.address)
        await server.serve_forever()
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 8080):
        self.host = host
        self.port = port
        self._server: Optional[asyncio.AbstractServer] = None

        # Statistics
        self.connections = 0
        self.requests_handled = 0

    @property
    def address(self) -> Tuple[str, int]:
        """(host, port) actually bound; resolves port 0"""
        if self._server is None or not self._server.sockets:
            return self.host, self.port
        sockname = self._server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self.handle_client, self.host, self.port, limit=MAX_LINE_BYTES
        )
        addrs = ", ".join(str(sock.getsockname()) for sock in self._server.sockets)
        logger.info(f"Echo server listening on {addrs}")

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            logger.info(
                f"Echo server stopped after {self.connections} connection(s), "
                f"{self.requests_handled} request(s)"
            )

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        addr = writer.get_extra_info("peername")
        self.connections += 1
        logger.debug(f"Client connected: {addr}")
        try:
            while True:
                try:
                    line = await reader.readuntil(b"\n")
                except asyncio.IncompleteReadError as exc:
                    # Peer closed; a trailing unterminated line is still answered
                    line = exc.partial
                    if not line.strip():
                        break
                if not line.strip():
                    continue

                self.requests_handled += 1
                reply = handle_line(line)
                if reply is not None:
                    writer.write(serialize(reply).encode("utf-8") + b"\n")
                    await writer.drain()
                if reader.at_eof():
                    break
        except asyncio.LimitOverrunError:
            logger.warning(f"Client {addr} sent a line longer than {MAX_LINE_BYTES} bytes")
        except ConnectionError as exc:
            logger.debug(f"Client {addr} disconnected: {exc}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError as exc:
                logger.debug(f"Error while closing {addr}: {exc}")
            logger.debug(f"Client closed: {addr}")


async def run_echo_server(addr: str) -> None:
    """Serve on `addr` until SIGINT/SIGTERM"""
    host, port = split_host_port(normalize_server_addr(addr))
    server = EchoServer(host, port)
    await server.start()

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.debug(f"Signal handlers unavailable for {sig!r}")

    serve_task = asyncio.create_task(server.serve_forever())
    await stop_event.wait()
    serve_task.cancel()
    try:
        await serve_task
    except asyncio.CancelledError:
        pass
    await server.stop()
