"""Dispatch engines: single-threaded event loop (bench) and worker-per-channel (stream-call)."""

from .channel import Channel, Completion
from .correlator import Correlator, IdAllocator, SessionIds
from .driver import CompletionDriver, DryRunDriver, ReadinessDriver, create_driver
from .event_loop import BenchRunner
from .scheduler import DispatchScheduler, QueueBalancer
from .workers import ChannelWorker, StreamCaller

__all__ = [
    "Channel",
    "Completion",
    "Correlator",
    "IdAllocator",
    "SessionIds",
    "ReadinessDriver",
    "CompletionDriver",
    "DryRunDriver",
    "create_driver",
    "BenchRunner",
    "DispatchScheduler",
    "QueueBalancer",
    "ChannelWorker",
    "StreamCaller",
]
