"""
Timing metadata and output records

An OutputRecord pairs a Response with the optional Metadata captured when
its request was dispatched. Records serialize to the response object with
an injected `metadata` member, which is what `stats` reads back.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import orjson

from rpcbench.errors import ProtocolError
from rpcbench.protocol import RequestId, Response, parse_response, serialize


class MonotonicClock:
    """Microsecond clock relative to a shared base instant"""

    def __init__(self) -> None:
        self._base_ns = time.perf_counter_ns()

    def elapsed_us(self) -> int:
        return (time.perf_counter_ns() - self._base_ns) // 1000


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


@dataclass
class Metadata:
    """Timing and routing details for one call"""

    request: Any
    server: str
    start_time_us: int
    end_time_us: int = 0
    original_id: Optional[RequestId] = None
    # Exact text as sent; not serialized, byte accounting only
    request_text: Optional[str] = None
    # Size read back from an output record
    recorded_byte_size: Optional[int] = None

    @property
    def request_byte_size(self) -> int:
        if self.recorded_byte_size is not None:
            return self.recorded_byte_size
        text = self.request_text if self.request_text is not None else serialize(self.request)
        return len(text.encode("utf-8"))

    @property
    def latency_us(self) -> int:
        return self.end_time_us - self.start_time_us

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "request": self.request,
            "server": self.server,
            "start_time_us": self.start_time_us,
            "end_time_us": self.end_time_us,
            "request_byte_size": self.request_byte_size,
        }
        if self.original_id is not None:
            payload["original_id"] = self.original_id
        return payload

    @classmethod
    def from_dict(cls, payload: Any, text: str) -> "Metadata":
        try:
            return cls(
                request=payload["request"],
                server=str(payload["server"]),
                start_time_us=int(payload["start_time_us"]),
                end_time_us=int(payload["end_time_us"]),
                original_id=payload.get("original_id"),
                recorded_byte_size=_optional_int(payload.get("request_byte_size")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(f"Malformed 'metadata' member ({exc})", text) from exc


@dataclass
class OutputRecord:
    """A response in completion order, optionally carrying its Metadata"""

    response: Response
    metadata: Optional[Metadata] = None

    def to_value(self) -> Any:
        if self.metadata is None:
            return self.response.value
        if self.response.is_batch:
            value = [dict(item) for item in self.response.value]
            value[0]["metadata"] = self.metadata.to_dict()
            return value
        value = dict(self.response.value)
        value["metadata"] = self.metadata.to_dict()
        return value

    def to_json(self) -> str:
        if self.metadata is None:
            return self.response.text
        return serialize(self.to_value())


def parse_output_record(text: Union[str, bytes]) -> OutputRecord:
    """
    Parse one output line (as printed by `stream-call` or `bench`)

    The `metadata` member is stripped before the response is rebuilt so the
    response text, and therefore its byte size, excludes the wrapper.

    Raises:
        ProtocolError: If the line is not a response object or batch
    """
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = text.strip()
    try:
        value = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise ProtocolError(f"Invalid JSON in output record ({exc})", text) from exc

    metadata_payload = None
    if isinstance(value, dict) and "metadata" in value:
        metadata_payload = value.pop("metadata")
    elif isinstance(value, list):
        for item in value:
            if isinstance(item, dict) and "metadata" in item:
                if metadata_payload is None:
                    metadata_payload = item.pop("metadata")
                else:
                    item.pop("metadata")

    if metadata_payload is None:
        return OutputRecord(response=parse_response(text))

    response = parse_response(serialize(value))
    return OutputRecord(response=response, metadata=Metadata.from_dict(metadata_payload, text))
