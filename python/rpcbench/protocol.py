"""
JSON-RPC 2.0 codec for JSON Lines transport

Parses request and response objects (single or batch) into immutable typed
records that keep the exact serialized text alongside the parsed value.
The engine never re-parses text to find ids: everything it needs is on
the Request/Response records built here.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

import orjson

from rpcbench.errors import ProtocolError

RequestId = Union[int, str]

JSONRPC_VERSION = "2.0"


def serialize(value: Any) -> str:
    """Serialize a JSON value to compact text (no trailing newline)"""
    return orjson.dumps(value).decode("utf-8")


def _loads(text: Union[str, bytes], kind: str) -> Any:
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise ProtocolError(f"Invalid JSON in {kind} ({exc})", _as_text(text)) from exc


def _as_text(text: Union[str, bytes]) -> str:
    if isinstance(text, bytes):
        return text.decode("utf-8", errors="replace")
    return text


def _is_request_id(value: Any) -> bool:
    # bool is a subclass of int but never a valid id
    return isinstance(value, str) or (isinstance(value, int) and not isinstance(value, bool))


@dataclass(frozen=True)
class Request:
    """A parsed JSON-RPC request object or batch"""

    text: str
    value: Any
    ids: Tuple[RequestId, ...]
    is_batch: bool = False

    @property
    def id(self) -> Optional[RequestId]:
        """First id carried by the request (None for notifications)"""
        return self.ids[0] if self.ids else None

    @property
    def is_notification(self) -> bool:
        return not self.ids

    @property
    def byte_size(self) -> int:
        return len(self.text.encode("utf-8"))

    def to_line(self) -> bytes:
        return self.text.encode("utf-8") + b"\n"


@dataclass(frozen=True)
class Response:
    """A parsed JSON-RPC response object or batch"""

    text: str
    value: Any
    ids: Tuple[RequestId, ...]
    is_batch: bool = False
    is_error: bool = False

    @property
    def id(self) -> Optional[RequestId]:
        """First echoed id (None only for error responses to unidentifiable requests)"""
        return self.ids[0] if self.ids else None

    @property
    def byte_size(self) -> int:
        return len(self.text.encode("utf-8"))


def _validate_request_object(obj: Any, text: str) -> Optional[RequestId]:
    if not isinstance(obj, dict):
        raise ProtocolError("Request must be a JSON object", text)
    if obj.get("jsonrpc") != JSONRPC_VERSION:
        raise ProtocolError("Request 'jsonrpc' member must be \"2.0\"", text)
    if not isinstance(obj.get("method"), str):
        raise ProtocolError("Request 'method' member must be a string", text)
    if "params" in obj and not isinstance(obj["params"], (list, dict)):
        raise ProtocolError("Request 'params' member must be an array or object", text)

    request_id = obj.get("id")
    if request_id is None:
        return None
    if not _is_request_id(request_id):
        raise ProtocolError("Request 'id' member must be an integer or a string", text)
    return request_id


def parse_request(text: Union[str, bytes]) -> Request:
    """
    Parse one line of input into a Request

    Args:
        text: Serialized request object or batch array

    Returns:
        Request record (ids empty for notifications)

    Raises:
        ProtocolError: If the text is not a valid JSON-RPC request
    """
    text = _as_text(text).strip()
    value = _loads(text, "request")

    if isinstance(value, list):
        if not value:
            raise ProtocolError("Batch request must not be empty", text)
        ids = tuple(
            request_id
            for request_id in (_validate_request_object(obj, text) for obj in value)
            if request_id is not None
        )
        return Request(text=text, value=value, ids=ids, is_batch=True)

    request_id = _validate_request_object(value, text)
    ids = (request_id,) if request_id is not None else ()
    return Request(text=text, value=value, ids=ids)


def _validate_response_object(obj: Any, text: str) -> Tuple[Optional[RequestId], bool]:
    if not isinstance(obj, dict):
        raise ProtocolError("Response must be a JSON object", text)
    if obj.get("jsonrpc") != JSONRPC_VERSION:
        raise ProtocolError("Response 'jsonrpc' member must be \"2.0\"", text)

    response_id = obj.get("id")
    if response_id is not None and not _is_request_id(response_id):
        raise ProtocolError("Response 'id' member must be an integer or a string", text)

    if "error" in obj:
        error = obj["error"]
        if (
            not isinstance(error, dict)
            or not isinstance(error.get("code"), int)
            or not isinstance(error.get("message"), str)
        ):
            raise ProtocolError("Response 'error' member is malformed", text)
        return response_id, True

    if "result" not in obj:
        raise ProtocolError("Response has neither 'result' nor 'error'", text)
    if response_id is None:
        raise ProtocolError("Response missing required 'id' field", text)
    return response_id, False


def parse_response(text: Union[str, bytes]) -> Response:
    """
    Parse one line received from a server into a Response

    Raises:
        ProtocolError: If the text is not a valid JSON-RPC response
    """
    text = _as_text(text).strip()
    value = _loads(text, "response")

    if isinstance(value, list):
        if not value:
            raise ProtocolError("Batch response must not be empty", text)
        checked = [_validate_response_object(obj, text) for obj in value]
        ids = tuple(response_id for response_id, _ in checked if response_id is not None)
        return Response(
            text=text,
            value=value,
            ids=ids,
            is_batch=True,
            is_error=any(is_error for _, is_error in checked),
        )

    response_id, is_error = _validate_response_object(value, text)
    ids = (response_id,) if response_id is not None else ()
    return Response(text=text, value=value, ids=ids, is_error=is_error)


def response_from_value(value: Any) -> Response:
    """Build a Response from an already-decoded value (text is re-serialized)"""
    return parse_response(serialize(value))


def make_request(
    method: str,
    params: Optional[Union[List[Any], Dict[str, Any]]] = None,
    request_id: Optional[RequestId] = None,
) -> Dict[str, Any]:
    """Build a request object (used by the `req` command)"""
    if params is not None and not isinstance(params, (list, dict)):
        raise ProtocolError("params must be an array or object", serialize(params))
    request: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        request["params"] = params
    if request_id is not None:
        if not _is_request_id(request_id):
            raise ProtocolError("id must be an integer or a string", serialize(request_id))
        request["id"] = request_id
    return request


def with_ids(request: Request, new_ids: List[RequestId]) -> Request:
    """
    Return a copy of the request with each carried id replaced in order

    Entries without an id (notifications inside a batch) are left untouched.
    """
    if len(new_ids) != len(request.ids):
        raise ValueError(f"expected {len(request.ids)} ids, got {len(new_ids)}")

    remaining = iter(new_ids)
    if request.is_batch:
        value = []
        for obj in request.value:
            obj = dict(obj)
            if obj.get("id") is not None:
                obj["id"] = next(remaining)
            value.append(obj)
    else:
        value = dict(request.value)
        if value.get("id") is not None:
            value["id"] = next(remaining)

    return Request(text=serialize(value), value=value, ids=tuple(new_ids), is_batch=request.is_batch)


def synthesize_response(request: Request) -> Optional[Any]:
    """
    Build the `result: null` reply a dry run returns for a request

    Returns None for notifications (no reply expected).
    """
    if request.is_notification:
        return None
    if request.is_batch:
        return [
            {"jsonrpc": JSONRPC_VERSION, "id": obj["id"], "result": None}
            for obj in request.value
            if obj.get("id") is not None
        ]
    return {"jsonrpc": JSONRPC_VERSION, "id": request.id, "result": None}
