"""
Request/response correlation

Each channel owns one Correlator and only that channel's thread (or the
single event-loop thread) touches it. Every dispatched non-notification
request is registered under all of its ids; the matching response removes
the entry exactly once. A peer that never answers leaves the entry pending,
which pending_ids() exposes for hang diagnostics.

Matching rules:
    - a response is matched by any id it echoes (batch replies may come
      back in any order)
    - a response without an id is matched positionally only when the
      channel's pipelining is 1 and a single call is outstanding
    - an id that matches nothing is a CorrelationError, never dropped

A SessionIds set shared by several Correlators extends duplicate detection
across channels; it is the only state that crosses threads.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from rpcbench.errors import CorrelationError, ProtocolError
from rpcbench.protocol import Request, RequestId, Response, with_ids
from rpcbench.records import Metadata, OutputRecord

logger = logging.getLogger(__name__)


@dataclass
class PendingCall:
    """A dispatched call awaiting its response"""

    request: Request
    start_time_us: int
    metadata: Optional[Metadata] = None


class Correlator:
    """Per-channel table from RequestId to the pending call"""

    def __init__(
        self,
        server: str,
        pipelining: Optional[int] = None,
        session_ids: Optional["SessionIds"] = None,
    ):
        self.server = server
        self.pipelining = pipelining
        # Ids in flight across every channel of the session
        self.session_ids = session_ids
        # Insertion order doubles as dispatch order for positional matching
        self._pending: Dict[RequestId, PendingCall] = {}
        self._call_count = 0

    @property
    def pending_count(self) -> int:
        """Number of outstanding calls (a batch counts once)"""
        return self._call_count

    def pending_ids(self) -> List[RequestId]:
        return list(self._pending)

    def register(
        self,
        request: Request,
        start_time_us: int,
        collect_metadata: bool = False,
        original_id: Optional[RequestId] = None,
    ) -> Optional[PendingCall]:
        """
        Track a request that was just sent

        Args:
            request: The request as written to the wire
            start_time_us: Dispatch timestamp
            collect_metadata: Build Metadata for this call
            original_id: Caller's id before reassignment, if any

        Returns:
            The pending entry, or None for notifications

        Raises:
            CorrelationError: If an id is already pending (or repeats inside a batch)
        """
        if request.is_notification:
            return None

        if len(set(request.ids)) != len(request.ids):
            raise CorrelationError(f"Request contains duplicate ID: {request.text}", self.server)
        for request_id in request.ids:
            if request_id in self._pending:
                raise CorrelationError(
                    f"Request contains duplicate ID (previous call still pending): {request.text}",
                    self.server,
                )
        if self.session_ids is not None and self.session_ids.claim(request.ids) is not None:
            raise CorrelationError(
                f"Request contains duplicate ID (in flight on another channel): {request.text}",
                self.server,
            )

        metadata = None
        if collect_metadata:
            metadata = Metadata(
                request=request.value,
                server=self.server,
                start_time_us=start_time_us,
                original_id=original_id,
                request_text=request.text,
            )

        call = PendingCall(request=request, start_time_us=start_time_us, metadata=metadata)
        for request_id in request.ids:
            self._pending[request_id] = call
        self._call_count += 1
        return call

    def resolve(self, response: Response, end_time_us: int) -> OutputRecord:
        """
        Pair a response with its pending call

        Returns:
            OutputRecord carrying the completed Metadata (None if the call was
            registered without metadata)

        Raises:
            ProtocolError: If the response has no id and positional matching is not allowed
            CorrelationError: If the response id matches no pending call
        """
        call = None
        for response_id in response.ids:
            call = self._pending.get(response_id)
            if call is not None:
                break

        if call is None:
            if response.ids:
                raise CorrelationError(
                    f"Response ID does not match any pending request: {response.text}",
                    self.server,
                )
            if self.pipelining == 1 and self._call_count == 1:
                call = next(iter(self._pending.values()))
            else:
                raise ProtocolError("Response missing required 'id' field", response.text, self.server)

        for request_id in call.request.ids:
            self._pending.pop(request_id, None)
        if self.session_ids is not None:
            self.session_ids.release(call.request.ids)
        self._call_count -= 1

        if call.metadata is not None:
            call.metadata.end_time_us = end_time_us
        return OutputRecord(response=response, metadata=call.metadata)

    def abandon(self) -> int:
        """
        Drop every pending call (the channel is gone)

        Returns:
            Number of calls dropped
        """
        dropped = self._call_count
        if self.session_ids is not None:
            self.session_ids.release(list(self._pending))
        self._pending.clear()
        self._call_count = 0
        return dropped


class SessionIds:
    """
    Ids in flight across every channel of one session

    Worker threads share one instance, so every operation takes the lock.
    """

    def __init__(self) -> None:
        self._ids: Set[RequestId] = set()
        self._lock = threading.Lock()

    def __contains__(self, request_id: RequestId) -> bool:
        with self._lock:
            return request_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def claim(self, request_ids: Iterable[RequestId]) -> Optional[RequestId]:
        """
        Mark ids as in flight, all or nothing

        Returns:
            The first id already in flight (nothing is claimed), or None
        """
        request_ids = list(request_ids)
        with self._lock:
            for request_id in request_ids:
                if request_id in self._ids:
                    return request_id
            self._ids.update(request_ids)
            return None

    def release(self, request_ids: Iterable[RequestId]) -> None:
        with self._lock:
            self._ids.difference_update(request_ids)


class IdAllocator:
    """
    Issues globally unique integer ids for reassignment

    Shared across the fan-out boundary, so issuance is guarded by a lock.
    """

    def __init__(self, start: int = 0):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            return next(self._counter)

    def reassign(self, request: Request) -> Tuple[Request, Optional[RequestId]]:
        """
        Rewrite every id in the request to fresh consecutive integers

        Returns:
            (rewritten request, caller's original first id); notifications
            are returned unchanged with None
        """
        if request.is_notification:
            return request, None
        with self._lock:
            new_ids = [next(self._counter) for _ in request.ids]
        return with_ids(request, new_ids), request.id
