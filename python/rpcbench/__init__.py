"""rpcbench: JSON-RPC 2.0 client and benchmark harness over JSON Lines / TCP."""

__version__ = "0.1.0"

from .errors import (
    CapacityError,
    ChannelClosedError,
    ConnectionSetupError,
    CorrelationError,
    ProtocolError,
    RpcBenchError,
    SubmissionQueueFull,
)
from .protocol import Request, Response, parse_request, parse_response
from .records import Metadata, OutputRecord

__all__ = [
    "__version__",
    "RpcBenchError",
    "ConnectionSetupError",
    "ChannelClosedError",
    "ProtocolError",
    "CorrelationError",
    "CapacityError",
    "SubmissionQueueFull",
    "Request",
    "Response",
    "parse_request",
    "parse_response",
    "Metadata",
    "OutputRecord",
]
