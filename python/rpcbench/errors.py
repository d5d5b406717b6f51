"""
Custom exception types for rpcbench

Provides typed exceptions for consistent error reporting and exit codes.
All domain-specific errors should inherit from these base types.
"""

from typing import Optional


class RpcBenchError(Exception):
    """Base exception for all rpcbench errors"""

    def __init__(self, message: str, server: Optional[str] = None):
        self.message = message
        self.server = server
        if server:
            message = f"[{server}] {message}"
        super().__init__(message)


class ConnectionSetupError(RpcBenchError):
    """Raised when a connection to a target server cannot be established"""

    def __init__(self, server: str, reason: str):
        super().__init__(f"Failed to connect to '{server}': {reason}", server)
        self.reason = reason


class ChannelClosedError(RpcBenchError):
    """Raised when a peer closes the connection or a socket operation fails"""

    def __init__(self, reason: str = "Connection closed by server", server: Optional[str] = None):
        super().__init__(reason, server)
        self.reason = reason


class ProtocolError(RpcBenchError):
    """Raised for malformed JSON-RPC text or a response lacking a required id"""

    def __init__(self, reason: str, text: Optional[str] = None, server: Optional[str] = None):
        message = f"{reason}: {text}" if text is not None else reason
        super().__init__(message, server)
        self.reason = reason
        self.text = text


class CorrelationError(RpcBenchError):
    """Raised when a response id matches no pending call, or an id is reused while pending"""


class CapacityError(RpcBenchError):
    """Raised when a pipelining slot or submission entry is not available"""


class SubmissionQueueFull(CapacityError):
    """Raised when the completion driver's submission queue has no free entries"""

    def __init__(self, capacity: int):
        super().__init__(f"Submission queue is full ({capacity} entries)")
        self.capacity = capacity


# Process exit code mapping
# Setup problems exit with 2, failures during a run exit with 1
EXIT_CODE_MAP = {
    ConnectionSetupError: 2,
    ProtocolError: 2,
    ChannelClosedError: 1,
    CorrelationError: 1,
    CapacityError: 1,
    RpcBenchError: 1,
}


def exit_code_for(exc: BaseException) -> int:
    """Return the process exit code for an exception (most specific class wins)"""
    for cls in type(exc).__mro__:
        if cls in EXIT_CODE_MAP:
            return EXIT_CODE_MAP[cls]
    return 1
